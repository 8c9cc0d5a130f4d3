from __future__ import annotations

import logging
import os
from typing import Optional, Tuple

from ndm_agent.block.identity import value_exists
from ndm_agent.models import (
    BackendDiskSpec,
    BackendDiskType,
    BlockDevice,
    ConditionType,
    DeviceType,
    StorageController,
    now_rfc3339,
)
from ndm_agent.utils.command import CommandError
from ndm_agent.utils.filesystem import wipe_device

from .base import DeviceUpdates, ProvisionerError
from .common import NodeDiskHelper, release_host_mount
from .context import ProvisionerContext

logger = logging.getLogger("ndm-agent")

DEFAULT_DISK_DRIVER = "auto"


def resolve_block_dev_path(device: BlockDevice, dev_dir: str = "/dev") -> str:
    """Path the raw-block backend should open for a disk.

    virtio and NVMe disks are addressed by their PCI BDF, taken from a
    `pci-<bdf>-...` bus path. Anything else uses the WWN symlink.
    """
    details = device.status.device_status.details
    if details.device_type != DeviceType.DISK:
        raise ProvisionerError(
            f"device type must be disk to resolve a raw block path (type is {details.device_type.value})"
        )
    if details.storage_controller in (StorageController.VIRTIO.value, StorageController.NVME.value):
        if details.bus_path.startswith("pci-"):
            parts = details.bus_path.split("-")
            if len(parts) > 1 and parts[1]:
                return parts[1]
        logger.warning("Unable to extract BDF from bus path %r of %s, falling back to WWN", details.bus_path, device.name)
    if value_exists(details.wwn):
        path = os.path.join(dev_dir, "disk", "by-id", "wwn-" + details.wwn)
        if os.path.exists(path):
            return path
        logger.warning("%s does not exist for device %s", path, device.name)
    raise ProvisionerError(f"unable to resolve raw block device path; {device.name} has no WWN and no BDF")


class RawBlockProvisioner:
    """Longhorn v2 backend: the whole disk is handed to the backend as a block disk."""

    needs_mount = False

    def __init__(self, device: BlockDevice, ctx: ProvisionerContext):
        self.device = device
        self.ctx = ctx
        self.updates = DeviceUpdates(device)
        self.node_disks = NodeDiskHelper(ctx, device, self.updates)

    @property
    def disk_driver(self) -> str:
        spec = self.device.spec.provisioner
        return (spec.disk_driver if spec else "") or DEFAULT_DISK_DRIVER

    def format(self, dev_path: str) -> Tuple[bool, bool]:
        try:
            wipe_device(self.ctx.executor, dev_path)
        except CommandError as e:
            raise ProvisionerError(f"failed to wipe device {self.device.name}: {e}") from e
        self.updates.apply(lambda d: setattr(d.status.device_status.filesystem, "last_formatted_at", now_rfc3339()))
        return True, False

    def unformat(self) -> bool:
        # a mount left behind by an earlier filesystem provisioning
        release_host_mount(self.device, self.ctx, self.updates)
        return False

    def provision(self) -> bool:
        logger.info("Provisioning raw block device %s", self.device.name)
        path = resolve_block_dev_path(self.device, self.ctx.dev_dir)
        self.node_disks.add_disk(
            BackendDiskSpec(
                type=BackendDiskType.BLOCK,
                path=path,
                allow_scheduling=True,
                eviction_requested=False,
                storage_reserved=0,
                tags=list(self.device.spec.tags),
                disk_driver=self.disk_driver,
            )
        )
        return False

    def unprovision(self) -> bool:
        logger.info("Unprovisioning raw block device %s", self.device.name)
        return self.node_disks.unprovision()

    def update(self) -> bool:
        if not self.device.status.is_condition_true(ConditionType.ADDED_TO_NODE):
            return False
        requeue = self.node_disks.sync_tags()
        disk = self.node_disks.get_disk()
        if disk is not None and disk.disk_driver != self.disk_driver:
            name, driver = self.device.name, self.disk_driver

            def set_driver(node) -> None:
                entry = node.spec.disks.get(name)
                if entry is not None:
                    entry.disk_driver = driver

            self.node_disks.modify_disks(set_driver)
        return requeue

    def backend_path(self) -> Optional[str]:
        disk = self.node_disks.get_disk()
        return disk.path if disk is not None else None
