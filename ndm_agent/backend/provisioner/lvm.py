from __future__ import annotations

import logging
from typing import Optional, Tuple

from ndm_agent.models import (
    LABEL_VG_NODE,
    BlockDevice,
    ConditionType,
    LVMVolumeGroup,
    LVMVolumeGroupSpec,
    ObjectMeta,
    VGDesiredState,
    VGStatus,
    now_rfc3339,
)
from ndm_agent.state.store import KIND_VOLUME_GROUP, NotFoundError, RecordClient
from ndm_agent.utils.command import CommandError
from ndm_agent.utils.filesystem import wipe_device

from . import lvm_helpers
from .base import DeviceUpdates, ProvisionerError
from .common import release_host_mount, set_added_to_node
from .context import ProvisionerContext

logger = logging.getLogger("ndm-agent")


class VolumeGroupProvisioner:
    """LVM backend: the disk becomes a physical volume of a volume group record."""

    needs_mount = False

    def __init__(self, device: BlockDevice, ctx: ProvisionerContext):
        self.device = device
        self.ctx = ctx
        self.updates = DeviceUpdates(device)
        self.vgs = RecordClient(ctx.store, KIND_VOLUME_GROUP, ctx.namespace)
        spec = device.spec.provisioner
        self.vg_name = (spec.vg_name or spec.parameters.get("vgName", "")) if spec else ""
        if not self.vg_name:
            raise ProvisionerError(f"volume group name is required to provision {device.name} with LVM")

    @property
    def dev_path(self) -> str:
        return self.device.status.device_status.dev_path or self.device.spec.dev_path

    def find_vg(self) -> Optional[LVMVolumeGroup]:
        """The record of this node's group; at most one exists per group name."""
        for vg in self.vgs.list({LABEL_VG_NODE: self.ctx.node_name}):
            if vg.spec.vg_name == self.vg_name and vg.spec.node_name == self.ctx.node_name:
                return vg
        return None

    def format(self, dev_path: str) -> Tuple[bool, bool]:
        try:
            pv_map = lvm_helpers.get_pv_vg_map(self.ctx.executor)
        except lvm_helpers.LVMError as e:
            raise ProvisionerError(str(e)) from e
        current_vg = pv_map.get(dev_path, "")
        if current_vg == self.vg_name and self.find_vg() is not None:
            logger.debug("Device %s is already a physical volume of %s", dev_path, self.vg_name)
            return True, False
        try:
            if dev_path in pv_map:
                lvm_helpers.wipe_lvm_metadata(self.ctx.executor, dev_path, current_vg)
            wipe_device(self.ctx.executor, dev_path)
        except (lvm_helpers.LVMError, CommandError) as e:
            raise ProvisionerError(f"failed to wipe device {self.device.name}: {e}") from e
        self.updates.apply(lambda d: setattr(d.status.device_status.filesystem, "last_formatted_at", now_rfc3339()))
        return True, False

    def unformat(self) -> bool:
        # a mount left behind by an earlier filesystem provisioning
        release_host_mount(self.device, self.ctx, self.updates)
        return False

    def provision(self) -> bool:
        name, dev_path = self.device.name, self.dev_path
        logger.info("Provisioning device %s into volume group %s", name, self.vg_name)
        with self.ctx.vg_lock:
            vg = self.find_vg()
            if vg is None:
                vg = self.vgs.create(
                    LVMVolumeGroup(
                        metadata=ObjectMeta(
                            generate_name=f"{self.vg_name}-",
                            namespace=self.ctx.namespace,
                            labels={LABEL_VG_NODE: self.ctx.node_name},
                        ),
                        spec=LVMVolumeGroupSpec(
                            node_name=self.ctx.node_name,
                            vg_name=self.vg_name,
                            desired_state=VGDesiredState.ENABLED,
                            devices={name: dev_path},
                        ),
                    )
                )
                logger.info("Created volume group record %s for %s", vg.name, self.vg_name)
            elif vg.spec.devices.get(name) != dev_path:

                def add_device(obj: LVMVolumeGroup) -> None:
                    obj.spec.devices[name] = dev_path

                vg = self.vgs.update_with_retry(vg.name, add_device)

        if vg.status is None or vg.status.status != VGStatus.ACTIVE or name not in vg.status.devices:
            logger.debug("Volume group %s is not active with %s yet", vg.name, name)
            return True
        set_added_to_node(self.updates, True, f"Added device {name} to volume group {self.vg_name}")
        return False

    def unprovision(self) -> bool:
        name = self.device.name
        logger.info("Removing device %s from volume group %s", name, self.vg_name)
        with self.ctx.vg_lock:
            vg = self.find_vg()
            if vg is None:
                set_added_to_node(self.updates, False, f"Volume group {self.vg_name} does not exist")
                return False
            if name in vg.spec.devices:
                self.vgs.update_with_retry(vg.name, lambda obj: obj.spec.devices.pop(name, None))
                return True
            if vg.status is not None and name in vg.status.devices:
                logger.debug("Waiting for %s to leave volume group %s", name, self.vg_name)
                return True
            if not vg.spec.devices and (vg.status is None or not vg.status.devices):
                try:
                    self.vgs.delete(vg.name)
                    logger.info("Deleted empty volume group record %s", vg.name)
                except NotFoundError:
                    pass
        set_added_to_node(self.updates, False, f"Removed device {name} from volume group {self.vg_name}")
        return False

    def update(self) -> bool:
        vg = self.find_vg()
        if vg is None or vg.spec.desired_state != VGDesiredState.ENABLED:
            return False
        if not self.device.status.is_condition_true(ConditionType.ADDED_TO_NODE):
            return False
        try:
            lvm_helpers.activate_vg(self.ctx.executor, self.vg_name, True)
        except lvm_helpers.LVMError as e:
            raise ProvisionerError(str(e)) from e
        return False

    def backend_path(self) -> Optional[str]:
        vg = self.find_vg()
        if vg is None:
            return None
        return vg.spec.devices.get(self.device.name)
