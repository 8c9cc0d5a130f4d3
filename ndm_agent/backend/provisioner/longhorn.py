from __future__ import annotations

import logging
from typing import Optional, Tuple

from ndm_agent.block.identity import value_exists
from ndm_agent.models import BackendDiskSpec, BackendDiskType, BlockDevice, ConditionType, now_rfc3339
from ndm_agent.utils.command import CommandError
from ndm_agent.utils.filesystem import make_ext4, umount_disk

from .base import DeviceUpdates, ProvisionerError
from .common import NodeDiskHelper, extra_disk_mount_point, release_host_mount, set_added_to_node
from .context import ProvisionerContext

logger = logging.getLogger("ndm-agent")


class FilesystemProvisioner:
    """Longhorn v1 backend: an ext4 filesystem mounted on the host and added as a filesystem disk."""

    needs_mount = True

    def __init__(self, device: BlockDevice, ctx: ProvisionerContext):
        self.device = device
        self.ctx = ctx
        self.updates = DeviceUpdates(device)
        self.node_disks = NodeDiskHelper(ctx, device, self.updates)

    @property
    def mount_point(self) -> str:
        return extra_disk_mount_point(self.device, self.ctx.extra_disk_dir)

    def need_format(self) -> bool:
        fs = self.device.status.device_status.filesystem
        return self.device.spec.filesystem.force_formatted and (fs.corrupted or fs.last_formatted_at is None)

    def format(self, dev_path: str) -> Tuple[bool, bool]:
        if not self.need_format():
            logger.debug("Device %s does not need formatting", self.device.name)
            return True, False
        if not self.ctx.format_tokens.acquire():
            logger.debug("Format concurrency limit reached, requeue %s", self.device.name)
            return False, True
        try:
            details = self.device.status.device_status.details
            observed_mount = self.device.status.device_status.filesystem.mount_point
            if observed_mount:
                umount_disk(self.ctx.executor, observed_mount)
            # Disks without a WWN are identified by their filesystem UUID, keep it
            fs_uuid = details.uuid if not value_exists(details.wwn) and value_exists(details.uuid) else ""
            make_ext4(self.ctx.executor, dev_path, fs_uuid)
        except CommandError as e:
            raise ProvisionerError(f"failed to force format device {self.device.name}: {e}") from e
        finally:
            self.ctx.format_tokens.release()

        def formatted(d: BlockDevice) -> None:
            d.status.device_status.filesystem.last_formatted_at = now_rfc3339()
            d.status.device_status.filesystem.corrupted = False
            d.status.device_status.partitioned = False

        self.updates.apply(formatted)
        logger.info("Formatted device %s (%s) as ext4", self.device.name, dev_path)
        return True, False

    def unformat(self) -> bool:
        """Release the host mount of the device."""
        release_host_mount(self.device, self.ctx, self.updates)
        return False

    def provision(self) -> bool:
        logger.info("Provisioning filesystem device %s at %s", self.device.name, self.mount_point)
        existing = self.node_disks.get_disk()
        if existing is not None and existing.path == self.mount_point:
            self.node_disks.sync_tags()
            set_added_to_node(self.updates, True, f"Disk {self.device.name} already on backend node `{self.ctx.node_name}`")
            return False
        self.node_disks.add_disk(
            BackendDiskSpec(
                type=BackendDiskType.FILESYSTEM,
                path=self.mount_point,
                allow_scheduling=True,
                eviction_requested=False,
                storage_reserved=0,
                tags=list(self.device.spec.tags),
            )
        )
        return False

    def unprovision(self) -> bool:
        logger.info("Unprovisioning filesystem device %s", self.device.name)
        return self.node_disks.unprovision(self.device.status.device_status.filesystem.mount_point)

    def update(self) -> bool:
        if not self.device.status.is_condition_true(ConditionType.ADDED_TO_NODE):
            return False
        return self.node_disks.sync_tags()

    def backend_path(self) -> Optional[str]:
        disk = self.node_disks.get_disk()
        return disk.path if disk is not None else None
