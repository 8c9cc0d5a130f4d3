#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Device controller module for Node Disk Agent.
This module reacts to device record changes of the local node: it evaluates
the provisioning transition, records the next phase and hands the requested
effect to the EffectsExecutor.
"""
import logging
import threading
from typing import List

from ndm_agent.backend.provisioner import ProvisionerContext, ProvisionerError, make_provisioner
from ndm_agent.models import IN_FLIGHT_CONDITIONS, LABEL_PARENT_DEVICE, BlockDevice, DeviceState, DeviceType
from ndm_agent.state.store import EVENT_DELETED, KIND_BLOCK_DEVICE, NotFoundError, RecordClient, StoreError
from ndm_agent.utils.command import CommandError

from .effects import EffectsExecutor
from .transitions import EffectKind, TransitionTable, recovery_phase
from .workqueue import WorkQueue

logger = logging.getLogger("ndm-agent")


class DeviceController:
    """Work-queue driven reconciler of device records."""

    def __init__(
        self,
        ctx: ProvisionerContext,
        transitions: TransitionTable,
        effects: EffectsExecutor,
        workers: int = 4,
    ):
        self.ctx = ctx
        self.transitions = transitions
        self.effects = effects
        self.workers = workers
        self.devices = RecordClient(ctx.store, KIND_BLOCK_DEVICE, ctx.namespace)
        self.queue = WorkQueue()
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        self.ctx.store.watch(KIND_BLOCK_DEVICE, self.on_event)
        for i in range(self.workers):
            t = threading.Thread(target=self._worker, name=f"ndm-device-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        for bd in self._local_devices():
            self.queue.add(bd.name)
        logger.info("Device controller started with %d workers", self.workers)

    def stop(self) -> None:
        self.queue.shutdown()
        for t in self._threads:
            t.join(timeout=5)
        self._threads.clear()

    def _local_devices(self) -> List[BlockDevice]:
        return [bd for bd in self.devices.list() if bd.spec.node_name == self.ctx.node_name]

    def on_event(self, event: str, bd: BlockDevice) -> None:
        if bd.spec.node_name != self.ctx.node_name:
            return
        if event == EVENT_DELETED:
            self.on_delete(bd)
            return
        self.queue.add(bd.name)

    def _worker(self) -> None:
        while not self.queue.is_shutdown:
            name = self.queue.get(timeout=1.0)
            if name is None:
                continue
            try:
                self.sync(name)
            except Exception:
                logger.exception("Failed to reconcile device %s", name)
            finally:
                self.queue.done(name)

    def sync(self, name: str) -> None:
        """Evaluate one device and dispatch its next effect."""
        try:
            bd = self.devices.get(name)
        except NotFoundError:
            return
        if bd.spec.node_name != self.ctx.node_name:
            return
        current = bd.status.provision_phase
        phase, effect = self.transitions.next(bd)
        in_flight = effect.in_flight if effect is not None else None
        if phase != current or in_flight is not None:
            logger.info("Device %s: %s -> %s", name, current.value, phase.value)

            def advance(d: BlockDevice) -> None:
                d.status.provision_phase = phase
                if in_flight is not None:
                    d.status.set_condition(in_flight, True, "")

            try:
                self.devices.update_with_retry(name, advance)
            except StoreError as e:
                logger.warning("Failed to record phase of %s, requeue: %s", name, e)
                self.queue.add_after(name, self.transitions.enqueue_delay)
                return
        if effect is None:
            return
        if effect.kind == EffectKind.ENQUEUE:
            self.queue.add_after(name, effect.delay)
            return
        self.effects.dispatch(effect, name)

    def recover_in_flight(self) -> int:
        """Reset devices whose effect was interrupted by a restart. Returns how many were reset."""
        count = 0
        for bd in self._local_devices():
            if not bd.in_flight():
                continue
            phase = recovery_phase(bd)
            logger.info("Device %s was interrupted in %s, resuming from %s",
                        bd.name, bd.status.provision_phase.value, phase.value)

            def reset(d: BlockDevice, phase=phase) -> None:
                d.status.provision_phase = phase
                for cond in IN_FLIGHT_CONDITIONS:
                    if d.status.is_condition_true(cond):
                        d.status.set_condition(cond, False, "Interrupted by agent restart")

            self.devices.update_with_retry(bd.name, reset)
            count += 1
        return count

    def on_delete(self, bd: BlockDevice) -> None:
        """Best-effort release of backend resources of a removed record."""
        threading.Thread(target=self._cleanup, args=(bd,), name=f"ndm-cleanup-{bd.name}", daemon=True).start()

    def _cleanup(self, bd: BlockDevice) -> None:
        logger.info("Device record %s removed, releasing backend resources", bd.name)
        self.ctx.disk_tags.delete(bd.name)
        bd.status.state = DeviceState.INACTIVE
        try:
            provisioner = make_provisioner(bd, self.ctx)
            if provisioner.backend_path() is not None:
                provisioner.unprovision()
        except (ProvisionerError, CommandError, StoreError) as e:
            logger.warning("Failed to release backend resources of %s: %s", bd.name, e)
        if bd.status.device_status.details.device_type == DeviceType.DISK:
            self._delete_children(bd.name)

    def _delete_children(self, parent: str) -> None:
        for child in self.devices.list({LABEL_PARENT_DEVICE: parent}):
            try:
                self.devices.delete(child.name)
                logger.info("Deleted partition record %s of removed disk %s", child.name, parent)
            except NotFoundError:
                pass
