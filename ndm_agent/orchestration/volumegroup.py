#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Volume group controller module for Node Disk Agent.
This module reconciles the LVM volume group records of the local node with
the host: it creates, extends, reduces, activates and removes volume groups
so that the group's physical volumes match the record's device map.
"""
import logging
import threading
from typing import Dict, List, Optional

from ndm_agent.backend.provisioner import ProvisionerContext
from ndm_agent.backend.provisioner import lvm_helpers
from ndm_agent.models import LVMVolumeGroup, LVMVolumeGroupStatus, VGDesiredState, VGStatus
from ndm_agent.state.store import EVENT_DELETED, KIND_VOLUME_GROUP, NotFoundError, RecordClient, StoreError

from .workqueue import WorkQueue

logger = logging.getLogger("ndm-agent")

CONDITION_READY = "Ready"


class VolumeGroupController:
    """Single-worker reconciler of volume group records."""

    def __init__(self, ctx: ProvisionerContext, requeue_delay: float = 10.0):
        self.ctx = ctx
        self.requeue_delay = requeue_delay
        self.vgs = RecordClient(ctx.store, KIND_VOLUME_GROUP, ctx.namespace)
        self.queue = WorkQueue()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self.ctx.store.watch(KIND_VOLUME_GROUP, self.on_event)
        self._thread = threading.Thread(target=self._worker, name="ndm-volumegroup", daemon=True)
        self._thread.start()
        for vg in self.vgs.list():
            if vg.spec.node_name == self.ctx.node_name:
                self.queue.add(vg.name)

    def stop(self) -> None:
        self.queue.shutdown()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def on_event(self, event: str, vg: LVMVolumeGroup) -> None:
        if vg.spec.node_name != self.ctx.node_name:
            return
        if event == EVENT_DELETED:
            self.remove_vg(vg)
            return
        self.queue.add(vg.name)

    def _worker(self) -> None:
        while not self.queue.is_shutdown:
            name = self.queue.get(timeout=1.0)
            if name is None:
                continue
            try:
                self.sync(name)
            except Exception:
                logger.exception("Failed to reconcile volume group %s", name)
            finally:
                self.queue.done(name)

    def sync(self, name: str) -> None:
        try:
            vg = self.vgs.get(name)
        except NotFoundError:
            return
        if vg.spec.node_name != self.ctx.node_name:
            return
        status = vg.status.model_copy(deep=True) if vg.status else LVMVolumeGroupStatus()
        try:
            with self.ctx.vg_lock:
                if vg.spec.desired_state == VGDesiredState.DISABLED:
                    self._deactivate(vg, status)
                else:
                    self._reconcile_devices(vg, status)
            status.set_condition(CONDITION_READY, True, "")
        except lvm_helpers.LVMError as e:
            logger.error("Volume group %s: %s", vg.spec.vg_name, e)
            status.set_condition(CONDITION_READY, False, str(e))
            self.queue.add_after(name, self.requeue_delay)
        status.parameters = vg.spec.parameters
        self._write_status(name, status)

    def _deactivate(self, vg: LVMVolumeGroup, status: LVMVolumeGroupStatus) -> None:
        if lvm_helpers.vg_exists(self.ctx.executor, vg.spec.vg_name):
            lvm_helpers.activate_vg(self.ctx.executor, vg.spec.vg_name, False)
        status.status = VGStatus.INACTIVE

    def _reconcile_devices(self, vg: LVMVolumeGroup, status: LVMVolumeGroupStatus) -> None:
        """Apply spec.devices to the host; status.devices tracks what has been applied."""
        executor, vg_name = self.ctx.executor, vg.spec.vg_name
        applied: Dict[str, str] = dict(status.devices)
        pv_map = lvm_helpers.get_pv_vg_map(executor)

        for dev_name, path in vg.spec.devices.items():
            if applied.get(dev_name) == path and pv_map.get(path) == vg_name:
                continue
            if path not in pv_map:
                lvm_helpers.create_pv(executor, path)
            if not lvm_helpers.vg_exists(executor, vg_name):
                lvm_helpers.create_vg(executor, vg_name, [path])
            elif pv_map.get(path) != vg_name:
                lvm_helpers.extend_vg(executor, vg_name, path)
            applied[dev_name] = path
            logger.info("Device %s (%s) joined volume group %s", dev_name, path, vg_name)
            pv_map = lvm_helpers.get_pv_vg_map(executor)

        removed: List[str] = [n for n in applied if n not in vg.spec.devices]
        for dev_name in removed:
            path = applied[dev_name]
            if pv_map.get(path) == vg_name:
                lvm_helpers.wipe_lvm_metadata(executor, path, vg_name)
                pv_map = lvm_helpers.get_pv_vg_map(executor)
            applied.pop(dev_name)
            logger.info("Device %s (%s) left volume group %s", dev_name, path, vg_name)

        status.devices = applied
        if applied and lvm_helpers.vg_exists(executor, vg_name):
            lvm_helpers.activate_vg(executor, vg_name, True)
            status.status = VGStatus.ACTIVE
        else:
            status.status = VGStatus.INACTIVE

    def _write_status(self, name: str, status: LVMVolumeGroupStatus) -> None:
        def apply(obj: LVMVolumeGroup) -> None:
            obj.status = status.model_copy(deep=True)

        try:
            self.vgs.update_with_retry(name, apply)
        except NotFoundError:
            logger.debug("Volume group record %s disappeared", name)
        except StoreError as e:
            logger.warning("Failed to update status of volume group %s: %s", name, e)
            self.queue.add_after(name, self.requeue_delay)

    def remove_vg(self, vg: LVMVolumeGroup) -> None:
        """Remove the host volume group of a deleted record."""
        vg_name = vg.spec.vg_name
        try:
            with self.ctx.vg_lock:
                if lvm_helpers.vg_exists(self.ctx.executor, vg_name):
                    members = lvm_helpers.pvs_of_vg(self.ctx.executor, vg_name)
                    lvm_helpers.remove_vg(self.ctx.executor, vg_name)
                    for pv in members:
                        lvm_helpers.remove_pv(self.ctx.executor, pv)
                    logger.info("Removed volume group %s", vg_name)
        except lvm_helpers.LVMError as e:
            logger.error("Failed to remove volume group %s: %s", vg_name, e)
