#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Scanner module for Node Disk Agent.
This module reconciles the kernel's view of the node's disks with the device
records: new devices get a record, known ones get their observed status
refreshed and vanished ones are marked Inactive. Records are never deleted
here.
"""
import dataclasses
import logging
import threading
from typing import Dict, Optional, Set

from ndm_agent.backend.provisioner import ProvisionerContext, needs_mount
from ndm_agent.backend.provisioner.common import extra_disk_mount_point
from ndm_agent.block.identity import value_exists
from ndm_agent.block.info import BlockInfo
from ndm_agent.filter.loader import AutoProvisionRule, FilterConfigLoader, find_auto_provision_rule
from ndm_agent.models import (
    LABEL_HOSTNAME,
    BlockDevice,
    ConditionType,
    DeviceState,
    ProvisionerSpec,
    ProvisionPhase,
)
from ndm_agent.state.store import KIND_BLOCK_DEVICE, AlreadyExistsError, RecordClient, StoreError

from .records import disk_block_device, partition_block_device, refresh_observed

logger = logging.getLogger("ndm-agent")


class WakeSignal:
    """Coalescing wake-up flag: any number of wake() calls before wait() count as one."""

    def __init__(self):
        self._cond = threading.Condition()
        self._pending = False

    def wake(self) -> None:
        with self._cond:
            self._pending = True
            self._cond.notify_all()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until woken or `timeout` elapses. Returns True when woken."""
        with self._cond:
            if not self._pending:
                self._cond.wait(timeout)
            woken = self._pending
            self._pending = False
            return woken


@dataclasses.dataclass
class ScanResult:
    created: int = 0
    updated: int = 0
    deactivated: int = 0
    skipped: int = 0


class Scanner:
    """Periodic and on-demand reconciliation of discovered devices."""

    def __init__(
        self,
        ctx: ProvisionerContext,
        block_info: BlockInfo,
        loader: FilterConfigLoader,
        rescan_interval: float = 30.0,
    ):
        self.ctx = ctx
        self.block_info = block_info
        self.loader = loader
        self.rescan_interval = rescan_interval
        self.devices = RecordClient(ctx.store, KIND_BLOCK_DEVICE, ctx.namespace)
        self.signal = WakeSignal()
        self._scan_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def wake(self) -> None:
        self.signal.wake()

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, name="ndm-scanner", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self.signal.wake()
        if self._thread is not None:
            self._thread.join(timeout=10)
            self._thread = None

    def run(self) -> None:
        logger.info("Scanner started, rescan interval %.1fs", self.rescan_interval)
        while not self._stop.is_set():
            try:
                self.scan_once()
            except Exception:
                logger.exception("Device scan failed")
            self.signal.wait(self.rescan_interval)
        logger.info("Scanner stopped")

    def scan_once(self) -> ScanResult:
        with self._scan_lock:
            return self._scan()

    def _scan(self) -> ScanResult:
        result = ScanResult()
        node, namespace = self.ctx.node_name, self.ctx.namespace
        engine, rules = self.loader.build()
        existing: Dict[str, BlockDevice] = {bd.name: bd for bd in self.devices.list({LABEL_HOSTNAME: node})}
        seen: Set[str] = set()
        wwn_owner: Dict[str, str] = {}

        for disk in self.block_info.get_disks():
            if engine.apply_exclude_filter_for_disk(disk):
                result.skipped += 1
                continue
            if value_exists(disk.wwn):
                owner = wwn_owner.get(disk.wwn)
                if owner is not None:
                    logger.warning("Disk %s has the same WWN %s as %s, skipping it", disk.dev_path, disk.wwn, owner)
                    result.skipped += 1
                    continue
                wwn_owner[disk.wwn] = disk.dev_path
            bd = disk_block_device(disk, node, namespace)
            if not bd.name or bd.name in seen:
                result.skipped += 1
                continue
            seen.add(bd.name)
            rule = find_auto_provision_rule(rules, disk) if engine.apply_auto_provision_filters(disk) else None
            self._save(bd, existing.get(bd.name), rule, result)

            for part in disk.partitions:
                if engine.apply_exclude_filter_for_partition(part):
                    result.skipped += 1
                    continue
                pbd = partition_block_device(part, disk, bd.name, node, namespace)
                if not pbd.name or pbd.name in seen:
                    result.skipped += 1
                    continue
                seen.add(pbd.name)
                self._save(pbd, existing.get(pbd.name), None, result)

        for name, bd in existing.items():
            if name in seen or bd.status.state == DeviceState.INACTIVE:
                continue
            logger.info("Device %s (%s) is gone, marking it Inactive", name, bd.status.device_status.dev_path)
            try:
                self.devices.update_with_retry(name, lambda d: setattr(d.status, "state", DeviceState.INACTIVE))
                result.deactivated += 1
            except StoreError as e:
                logger.warning("Failed to deactivate device %s: %s", name, e)
        logger.debug("Scan finished: %s", result)
        return result

    def _save(self, bd: BlockDevice, old: Optional[BlockDevice], rule: Optional[AutoProvisionRule], result: ScanResult) -> None:
        if old is None:
            if rule is not None:
                self.apply_auto_provision(bd, rule)
            try:
                self.devices.create(bd)
                logger.info("Added device %s (%s)", bd.name, bd.status.device_status.dev_path)
                result.created += 1
                return
            except AlreadyExistsError:
                logger.debug("Device %s was created concurrently, updating instead", bd.name)

        def refresh(d: BlockDevice) -> None:
            refresh_observed(d, bd)
            if rule is not None and self.should_auto_provision(d):
                self.apply_auto_provision(d, rule)

        try:
            self.devices.update_with_retry(bd.name, refresh)
            result.updated += 1
        except StoreError as e:
            logger.warning("Failed to update device %s: %s", bd.name, e)

    @staticmethod
    def should_auto_provision(bd: BlockDevice) -> bool:
        return (
            bd.status.provision_phase == ProvisionPhase.UNPROVISIONED
            and bd.status.get_condition(ConditionType.AUTO_PROVISION_DETECTED) is None
        )

    def apply_auto_provision(self, bd: BlockDevice, rule: AutoProvisionRule) -> None:
        logger.info("Auto-provisioning device %s with %s", bd.name, rule.kind.value)
        bd.spec.filesystem.force_formatted = True
        bd.spec.filesystem.provisioned = True
        bd.spec.provision = True
        bd.spec.provisioner = ProvisionerSpec(
            kind=rule.kind,
            vg_name=rule.params.get("vgName", ""),
            disk_driver=rule.params.get("diskDriver", ""),
            parameters=dict(rule.params),
        )
        if needs_mount(rule.kind):
            bd.spec.filesystem.mount_point = extra_disk_mount_point(bd, self.ctx.extra_disk_dir)
        bd.status.set_condition(ConditionType.AUTO_PROVISION_DETECTED, True, "Device matched an auto-provision filter")
