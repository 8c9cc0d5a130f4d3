#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Provisioning transitions for Node Disk Agent.
This module maps a device record to its next provisioning phase and the side
effect that drives it there. Evaluation only reads state; effects are carried
out by the EffectsExecutor.
"""
import dataclasses
import enum
import logging
from typing import Dict, Optional, Tuple

from ndm_agent.backend.provisioner import ProvisionerContext, ProvisionerError, make_provisioner, needs_mount
from ndm_agent.block.identity import generate_partition_guid
from ndm_agent.block.info import BlockInfo
from ndm_agent.models import BlockDevice, ConditionType, DeviceState, ProvisionPhase
from ndm_agent.state.store import KIND_BLOCK_DEVICE, NotFoundError, RecordClient
from ndm_agent.utils.filesystem import get_disk_partition_path

logger = logging.getLogger("ndm-agent")


class EffectKind(str, enum.Enum):
    PARTITION = "partition"
    FORMAT = "format"
    MOUNT = "mount"
    UNMOUNT = "unmount"
    PROVISION = "provision"
    UNPROVISION = "unprovision"
    UPDATE = "update"
    PREPARE_CHILD = "prepare-child"
    ENQUEUE = "enqueue"


# Condition held true while the effect runs
EFFECT_IN_FLIGHT: Dict[EffectKind, ConditionType] = {
    EffectKind.PARTITION: ConditionType.PARTITIONING,
    EffectKind.FORMAT: ConditionType.FORMATTING,
    EffectKind.MOUNT: ConditionType.MOUNTING,
    EffectKind.UNMOUNT: ConditionType.UNMOUNTING,
    EffectKind.PROVISION: ConditionType.PROVISIONING,
    EffectKind.UNPROVISION: ConditionType.UNPROVISIONING,
}

# Phase a device returns to when its in-flight effect was lost (agent restart)
RECOVERY_PHASE: Dict[ProvisionPhase, ProvisionPhase] = {
    ProvisionPhase.PARTITIONING: ProvisionPhase.UNPROVISIONED,
    ProvisionPhase.FORMATTING: ProvisionPhase.UNPROVISIONED,
    ProvisionPhase.MOUNTING: ProvisionPhase.FORMATTED,
    ProvisionPhase.UNMOUNTING: ProvisionPhase.FORMATTED,
    ProvisionPhase.PROVISIONING: ProvisionPhase.MOUNTED,
    ProvisionPhase.UNPROVISIONING: ProvisionPhase.PROVISIONED,
}


@dataclasses.dataclass(frozen=True)
class Effect:
    """Side effect requested by a transition.

    `target` carries the mount point for mount/unmount and the child record
    name for prepare-child. `delay` applies to enqueue only.
    """

    kind: EffectKind
    target: str = ""
    delay: float = 0.0

    @property
    def in_flight(self) -> Optional[ConditionType]:
        return EFFECT_IN_FLIGHT.get(self.kind)


Transition = Tuple[ProvisionPhase, Optional[Effect]]


def wants_provision(bd: BlockDevice) -> bool:
    return bd.spec.provision or bd.spec.filesystem.provisioned


def has_intent(bd: BlockDevice) -> bool:
    return wants_provision(bd) or bool(bd.spec.filesystem.mount_point)


def has_filesystem(bd: BlockDevice) -> bool:
    ds = bd.status.device_status
    return bd.status.is_condition_true(ConditionType.FORMATTED) or bool(ds.details.uuid) or bool(ds.filesystem.type)


def recovery_phase(bd: BlockDevice) -> ProvisionPhase:
    """Phase to resume from when in-flight conditions are found after a restart."""
    phase = bd.status.provision_phase
    resumed = RECOVERY_PHASE.get(phase, phase)
    if resumed == ProvisionPhase.MOUNTED and not needs_mount(bd.provisioner_kind):
        return ProvisionPhase.FORMATTED
    return resumed


class TransitionTable:
    """Evaluates `(record) -> (next phase, effect)`."""

    def __init__(self, ctx: ProvisionerContext, block_info: BlockInfo, enqueue_delay: float = 10.0):
        self.ctx = ctx
        self.block_info = block_info
        self.enqueue_delay = enqueue_delay
        self.devices = RecordClient(ctx.store, KIND_BLOCK_DEVICE, ctx.namespace)
        self._handlers = {
            ProvisionPhase.UNPROVISIONED: self._unprovisioned,
            ProvisionPhase.PARTITIONED: self._partitioned,
            ProvisionPhase.FORMATTED: self._formatted,
            ProvisionPhase.MOUNTED: self._mounted,
            ProvisionPhase.PROVISIONED: self._provisioned,
            ProvisionPhase.UNPROVISIONING: self._unprovisioning,
        }

    def next(self, bd: BlockDevice) -> Transition:
        phase = bd.status.provision_phase
        if bd.in_flight():
            return phase, None
        handler = self._handlers.get(phase)
        if handler is None:
            # Failed is terminal; transient phases wait for their effect
            return phase, None
        return handler(bd)

    def backend_path(self, bd: BlockDevice) -> Optional[str]:
        try:
            return make_provisioner(bd, self.ctx).backend_path()
        except ProvisionerError as e:
            logger.debug("No backend path for %s: %s", bd.name, e)
            return None

    def _unprovisioned(self, bd: BlockDevice) -> Transition:
        phase = bd.status.provision_phase
        if bd.status.state == DeviceState.INACTIVE:
            return phase, None
        fs_spec = bd.spec.filesystem
        mounted_kind = needs_mount(bd.provisioner_kind)
        if fs_spec.force_formatted:
            if bd.is_disk and mounted_kind:
                if bd.status.is_condition_true(ConditionType.PARTITIONED):
                    return ProvisionPhase.PARTITIONED, None
                return ProvisionPhase.PARTITIONING, Effect(EffectKind.PARTITION)
            if not bd.status.is_condition_true(ConditionType.FORMATTED):
                return ProvisionPhase.FORMATTING, Effect(EffectKind.FORMAT)
            return ProvisionPhase.FORMATTED, None
        if mounted_kind and has_intent(bd) and has_filesystem(bd):
            return ProvisionPhase.FORMATTED, None
        observed = bd.status.device_status.filesystem.mount_point
        if not has_intent(bd) and observed and bd.status.is_condition_true(ConditionType.MOUNTED):
            return ProvisionPhase.UNMOUNTING, Effect(EffectKind.UNMOUNT, target=observed)
        return phase, None

    def _partitioned(self, bd: BlockDevice) -> Transition:
        phase = bd.status.provision_phase
        if not bd.spec.filesystem.force_formatted:
            return phase, None
        disk_path = bd.status.device_status.dev_path
        part = self.block_info.get_partition_by_dev_path(disk_path, get_disk_partition_path(disk_path, 1))
        child_name = generate_partition_guid(part, self.ctx.node_name) if part is not None else ""
        if not child_name:
            logger.debug("First partition of %s is not visible yet", bd.name)
            return phase, Effect(EffectKind.ENQUEUE, delay=self.enqueue_delay)
        try:
            child = self.devices.get(child_name)
        except NotFoundError:
            logger.debug("Record of partition %s is not created yet", child_name)
            return phase, Effect(EffectKind.ENQUEUE, delay=self.enqueue_delay)
        if child.status.provision_phase == ProvisionPhase.UNPROVISIONED and not has_intent(child):
            return phase, Effect(EffectKind.PREPARE_CHILD, target=child_name)
        return phase, None

    def _formatted(self, bd: BlockDevice) -> Transition:
        phase = bd.status.provision_phase
        if not needs_mount(bd.provisioner_kind):
            if wants_provision(bd):
                return ProvisionPhase.PROVISIONING, Effect(EffectKind.PROVISION)
            return phase, None
        desired = bd.spec.filesystem.mount_point
        observed = bd.status.device_status.filesystem.mount_point
        if desired == observed:
            if desired:
                return ProvisionPhase.MOUNTED, None
            return phase, None
        if observed:
            return ProvisionPhase.UNMOUNTING, Effect(EffectKind.UNMOUNT, target=observed)
        return ProvisionPhase.MOUNTING, Effect(EffectKind.MOUNT, target=desired)

    def _mounted(self, bd: BlockDevice) -> Transition:
        phase = bd.status.provision_phase
        desired = bd.spec.filesystem.mount_point
        observed = bd.status.device_status.filesystem.mount_point
        if not observed:
            return ProvisionPhase.FORMATTED, None
        if observed != desired:
            return ProvisionPhase.UNMOUNTING, Effect(EffectKind.UNMOUNT, target=observed)
        if not wants_provision(bd):
            return phase, None
        path = self.backend_path(bd)
        if path is not None and path != desired:
            return ProvisionPhase.UNPROVISIONING, Effect(EffectKind.UNPROVISION)
        return ProvisionPhase.PROVISIONING, Effect(EffectKind.PROVISION)

    def _provisioned(self, bd: BlockDevice) -> Transition:
        phase = bd.status.provision_phase
        if not wants_provision(bd):
            return ProvisionPhase.UNPROVISIONING, Effect(EffectKind.UNPROVISION)
        path = self.backend_path(bd)
        if needs_mount(bd.provisioner_kind):
            desired = bd.spec.filesystem.mount_point
            if not desired:
                return ProvisionPhase.UNPROVISIONING, Effect(EffectKind.UNPROVISION)
            if path is None:
                return ProvisionPhase.MOUNTED, None
            if path != desired:
                return ProvisionPhase.UNPROVISIONING, Effect(EffectKind.UNPROVISION)
        elif path is None:
            return ProvisionPhase.FORMATTED, None
        return phase, Effect(EffectKind.UPDATE)

    def _unprovisioning(self, bd: BlockDevice) -> Transition:
        phase = bd.status.provision_phase
        if self.backend_path(bd) is not None:
            return phase, Effect(EffectKind.UNPROVISION)
        return phase, None
