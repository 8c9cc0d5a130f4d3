#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Effects module for Node Disk Agent.
This module runs the side effects requested by provisioning transitions
(partition, format, mount, unmount, provision, unprovision, update) on a
worker pool and writes their outcome back to the device record.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Optional, Tuple

from ndm_agent.backend.provisioner import (
    ProvisionerContext,
    ProvisionerError,
    make_provisioner,
    resolve_persistent_dev_path,
)
from ndm_agent.models import BlockDevice, ConditionType, FilesystemSpec, ProvisionPhase
from ndm_agent.state.store import KIND_BLOCK_DEVICE, NotFoundError, RecordClient, StoreError
from ndm_agent.utils.command import CommandError
from ndm_agent.utils.filesystem import is_fs_corrupted, make_gpt_partition, mount_disk

from .transitions import Effect, EffectKind

logger = logging.getLogger("ndm-agent")

# Condition reporting the result of an effect
RESULT_CONDITION = {
    EffectKind.PARTITION: ConditionType.PARTITIONED,
    EffectKind.FORMAT: ConditionType.FORMATTED,
    EffectKind.MOUNT: ConditionType.MOUNTED,
    EffectKind.UNMOUNT: ConditionType.MOUNTED,
    EffectKind.PROVISION: ConditionType.ADDED_TO_NODE,
    EffectKind.UNPROVISION: ConditionType.ADDED_TO_NODE,
}

UPDATE_ERROR_PREFIX = "Backend update failed: "


class RetryLater(Exception):
    """The effect cannot finish yet and is run again after the requeue delay."""

    pass


class EffectsExecutor:
    """Worker pool carrying out transition effects."""

    def __init__(
        self,
        ctx: ProvisionerContext,
        enqueue_delay: float = 10.0,
        max_workers: int = 8,
        on_topology_change: Optional[Callable[[], None]] = None,
    ):
        self.ctx = ctx
        self.enqueue_delay = enqueue_delay
        self.devices = RecordClient(ctx.store, KIND_BLOCK_DEVICE, ctx.namespace)
        self.on_topology_change = on_topology_change
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ndm-effect")
        # one pending retry per (device, effect kind)
        self._pending: Dict[Tuple[str, EffectKind], threading.Timer] = {}
        self._lock = threading.Lock()
        self._stopped = False
        self._handlers = {
            EffectKind.PARTITION: self._partition,
            EffectKind.FORMAT: self._format,
            EffectKind.MOUNT: self._mount,
            EffectKind.UNMOUNT: self._unmount,
            EffectKind.PROVISION: self._provision,
            EffectKind.UNPROVISION: self._unprovision,
            EffectKind.UPDATE: self._update,
            EffectKind.PREPARE_CHILD: self._prepare_child,
        }

    def dispatch(self, effect: Effect, name: str) -> None:
        """Queue `effect` for device `name`. Returns immediately."""
        with self._lock:
            if self._stopped:
                logger.debug("Executor stopped, dropping %s effect for %s", effect.kind.value, name)
                return
            self._pool.submit(self.run, effect, name)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._stopped = True
            timers = list(self._pending.values())
            self._pending.clear()
        for timer in timers:
            timer.cancel()
        self._pool.shutdown(wait=wait)

    def pending_retries(self) -> int:
        with self._lock:
            return len(self._pending)

    def _retry_later(self, effect: Effect, name: str) -> None:
        key = (name, effect.kind)

        def fire() -> None:
            with self._lock:
                if self._pending.get(key) is timer:
                    del self._pending[key]
            self.dispatch(effect, name)

        timer = threading.Timer(self.enqueue_delay, fire)
        timer.daemon = True
        with self._lock:
            if self._stopped:
                return
            if key in self._pending:
                logger.debug("Retry of %s for %s already pending", effect.kind.value, name)
                return
            self._pending[key] = timer
        timer.start()

    def run(self, effect: Effect, name: str) -> None:
        """Execute one effect synchronously and record its outcome."""
        handler = self._handlers.get(effect.kind)
        if handler is None:
            logger.error("No handler for effect %s of %s", effect.kind.value, name)
            return
        try:
            bd = self.devices.get(name)
        except NotFoundError:
            logger.info("Device %s was deleted, dropping %s effect", name, effect.kind.value)
            return
        logger.debug("Running %s effect for %s", effect.kind.value, name)
        try:
            handler(effect, bd)
        except RetryLater as e:
            logger.info("Requeue %s of %s: %s", effect.kind.value, name, e)
            self._retry_later(effect, name)
        except ProvisionerError as e:
            if e.requeue:
                logger.info("Requeue %s of %s: %s", effect.kind.value, name, e)
                self._retry_later(effect, name)
            else:
                self._fail(effect, name, str(e))
        except CommandError as e:
            self._fail(effect, name, str(e))
        except StoreError as e:
            logger.warning("Failed to record %s of %s, retrying: %s", effect.kind.value, name, e)
            self._retry_later(effect, name)
        except Exception as e:
            logger.exception("Unexpected error running %s for %s", effect.kind.value, name)
            self._fail(effect, name, f"unexpected error: {e}")

    # outcome writers

    def _complete(self, effect: Effect, name: str, phase: ProvisionPhase, mutate=None) -> None:
        in_flight = effect.in_flight

        def finish(d: BlockDevice) -> None:
            if mutate is not None:
                mutate(d)
            d.status.provision_phase = phase
            if in_flight is not None:
                d.status.set_condition(in_flight, False, "")

        self.devices.update_with_retry(name, finish)
        logger.info("Device %s is now %s", name, phase.value)

    def _fail(self, effect: Effect, name: str, message: str) -> None:
        logger.error("Effect %s failed for device %s: %s", effect.kind.value, name, message)
        in_flight = effect.in_flight
        result = RESULT_CONDITION.get(effect.kind)
        if in_flight is None:
            # update effects never fail the device; the next reconcile runs them again
            self._record_update_error(name, message)
            return

        def failed(d: BlockDevice) -> None:
            d.status.provision_phase = ProvisionPhase.FAILED
            d.status.set_condition(in_flight, False, "")
            if result is not None:
                d.status.set_condition(result, d.status.is_condition_true(result), message)
            d.status.set_condition(ConditionType.FAILED, True, message)

        try:
            self.devices.update_with_retry(name, failed)
        except StoreError as e:
            logger.error("Failed to mark device %s as failed: %s", name, e)

    def _set_update_message(self, name: str, message: str) -> None:
        """Write the DiskAddedToNode message, skipping the write when it is already current."""
        try:
            current = self.devices.get(name).status.get_condition(ConditionType.ADDED_TO_NODE)
            if current is not None and current.message == message:
                return

            def annotate(d: BlockDevice) -> None:
                added = d.status.is_condition_true(ConditionType.ADDED_TO_NODE)
                d.status.set_condition(ConditionType.ADDED_TO_NODE, added, message)

            self.devices.update_with_retry(name, annotate)
        except StoreError as e:
            logger.error("Failed to record update status of device %s: %s", name, e)

    def _record_update_error(self, name: str, message: str) -> None:
        self._set_update_message(name, UPDATE_ERROR_PREFIX + message)

    def _notify_topology(self) -> None:
        if self.on_topology_change is not None:
            self.on_topology_change()

    # handlers

    def _partition(self, effect: Effect, bd: BlockDevice) -> None:
        dev_path = resolve_persistent_dev_path(bd, self.ctx)
        logger.info("Partitioning device %s (%s)", bd.name, dev_path)
        make_gpt_partition(self.ctx.executor, dev_path)

        def partitioned(d: BlockDevice) -> None:
            d.status.device_status.partitioned = True
            d.status.set_condition(ConditionType.PARTITIONED, True, "Device partitioned")

        self._complete(effect, bd.name, ProvisionPhase.PARTITIONED, partitioned)
        self._notify_topology()

    def _format(self, effect: Effect, bd: BlockDevice) -> None:
        provisioner = make_provisioner(bd, self.ctx)
        dev_path = resolve_persistent_dev_path(bd, self.ctx)
        formatted, requeue = provisioner.format(dev_path)
        if requeue:
            raise RetryLater("format concurrency limit reached")

        def done(d: BlockDevice) -> None:
            provisioner.updates.replay(d)
            d.status.set_condition(ConditionType.FORMATTED, formatted, "Device formatted")

        self._complete(effect, bd.name, ProvisionPhase.FORMATTED, done)
        self._notify_topology()

    def _mount(self, effect: Effect, bd: BlockDevice) -> None:
        dev_path = resolve_persistent_dev_path(bd, self.ctx)
        target = effect.target or bd.spec.filesystem.mount_point
        logger.info("Mounting device %s (%s) at %s", bd.name, dev_path, target)
        try:
            mount_disk(self.ctx.executor, dev_path, target)
        except CommandError as e:
            if is_fs_corrupted(e):
                logger.warning("Filesystem of device %s is corrupted", bd.name)
                self.devices.update_with_retry(
                    bd.name, lambda d: setattr(d.status.device_status.filesystem, "corrupted", True)
                )
            raise

        def mounted(d: BlockDevice) -> None:
            d.status.device_status.filesystem.mount_point = target
            d.status.set_condition(ConditionType.MOUNTED, True, f"Mounted at {target}")

        self._complete(effect, bd.name, ProvisionPhase.MOUNTED, mounted)

    def _unmount(self, effect: Effect, bd: BlockDevice) -> None:
        provisioner = make_provisioner(bd, self.ctx)
        logger.info("Unmounting device %s from %s", bd.name, effect.target)
        provisioner.unformat()

        def unmounted(d: BlockDevice) -> None:
            provisioner.updates.replay(d)
            d.status.device_status.filesystem.mount_point = ""
            d.status.set_condition(ConditionType.MOUNTED, False, "Device unmounted")

        self._complete(effect, bd.name, ProvisionPhase.FORMATTED, unmounted)

    def _provision(self, effect: Effect, bd: BlockDevice) -> None:
        provisioner = make_provisioner(bd, self.ctx)
        requeue = provisioner.provision()
        if requeue:
            if len(provisioner.updates):
                self.devices.update_with_retry(bd.name, provisioner.updates.replay)
            raise RetryLater("backend has not accepted the device yet")
        self._complete(effect, bd.name, ProvisionPhase.PROVISIONED, provisioner.updates.replay)

    def _unprovision(self, effect: Effect, bd: BlockDevice) -> None:
        provisioner = make_provisioner(bd, self.ctx)
        requeue = provisioner.unprovision()
        if requeue:
            if len(provisioner.updates):
                self.devices.update_with_retry(bd.name, provisioner.updates.replay)
            raise RetryLater("backend is still draining the device")
        self._complete(effect, bd.name, ProvisionPhase.UNPROVISIONED, provisioner.updates.replay)

    def _update(self, effect: Effect, bd: BlockDevice) -> None:
        provisioner = make_provisioner(bd, self.ctx)
        requeue = provisioner.update()
        if len(provisioner.updates):
            self.devices.update_with_retry(bd.name, provisioner.updates.replay)
        if requeue:
            raise RetryLater("backend settings are not in sync yet")
        added = bd.status.get_condition(ConditionType.ADDED_TO_NODE)
        if added is not None and added.message.startswith(UPDATE_ERROR_PREFIX):
            self._set_update_message(bd.name, "")

    def _prepare_child(self, effect: Effect, bd: BlockDevice) -> None:
        """Hand the parent's provisioning intent to its first partition."""
        child_name = effect.target
        fs_spec = bd.spec.filesystem.model_copy(deep=True)
        provisioner_spec = bd.spec.provisioner.model_copy(deep=True) if bd.spec.provisioner else None
        provision, tags = bd.spec.provision, list(bd.spec.tags)

        def inherit(child: BlockDevice) -> None:
            child.spec.filesystem = fs_spec.model_copy(deep=True)
            child.spec.provision = provision
            child.spec.provisioner = provisioner_spec
            child.spec.tags = tags

        self.devices.update_with_retry(child_name, inherit)
        logger.info("Partition %s inherited the provisioning intent of %s", child_name, bd.name)

        def clear(parent: BlockDevice) -> None:
            parent.spec.filesystem = FilesystemSpec()
            parent.spec.provision = False

        self.devices.update_with_retry(bd.name, clear)
