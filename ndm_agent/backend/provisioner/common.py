"""
Helpers shared by the provisioners: persistent path resolution, mount point
policy, tag reconciliation and the backend node disk map operations.
"""
import json
import logging
import os
from enum import Enum
from typing import Callable, List, Optional, Sequence

from ndm_agent.block.identity import value_exists
from ndm_agent.models import (
    BackendDiskSpec,
    BackendNode,
    BlockDevice,
    ConditionType,
    DeviceState,
    DeviceType,
    StorageController,
)
from ndm_agent.state.store import KIND_BACKEND_NODE, NotFoundError, RecordClient
from ndm_agent.utils.command import CommandError
from ndm_agent.utils.filesystem import force_umount, umount_disk

from .base import DeviceUpdates, ProvisionerError
from .context import ProvisionerContext

logger = logging.getLogger("ndm-agent")

DISK_REMOVE_TAG = "harvester-ndm-disk-remove"


class MountUpdate(Enum):
    NOOP = 0
    MOUNT = 1
    UNMOUNT = 2


def extra_disk_mount_point(device: BlockDevice, extra_disk_dir: str) -> str:
    """Desired mount point, or the default per-device directory when none is set."""
    if device.spec.filesystem.mount_point:
        return device.spec.filesystem.mount_point
    return os.path.join(extra_disk_dir, device.name)


def need_update_mount_point(device: BlockDevice, observed_mount: str) -> MountUpdate:
    desired = device.spec.filesystem.mount_point
    if desired == observed_mount:
        return MountUpdate.NOOP
    if observed_mount:
        return MountUpdate.UNMOUNT
    return MountUpdate.MOUNT


def reconcile_tags(backend_tags: Sequence[str], cached_tags: Sequence[str], desired_tags: Sequence[str]) -> List[str]:
    """(backend - cached) + desired, de-duplicated in order.

    Tags set on the backend by someone else are never in the cache and survive.
    """
    known = set(cached_tags)
    result: List[str] = []
    for tag in [t for t in backend_tags if t not in known] + list(desired_tags):
        if tag not in result:
            result.append(tag)
    return result


def _eval_symlink(path: str) -> Optional[str]:
    if not os.path.lexists(path):
        return None
    return os.path.realpath(path)


def get_dev_path_by_ptuuid(ctx: ProvisionerContext, pt_uuid: str) -> str:
    """Find the disk carrying partition table `pt_uuid` through lsblk."""
    try:
        out = ctx.executor.execute("lsblk", ["-dJo", "PATH,PTUUID"])
        data = json.loads(out or "{}")
    except (CommandError, ValueError) as e:
        raise ProvisionerError(f"Failed to look up PTUUID {pt_uuid}: {e}") from e
    for bd in data.get("blockdevices", []):
        if bd.get("ptuuid") == pt_uuid:
            return bd.get("path") or ""
    return ""


def resolve_persistent_dev_path(device: BlockDevice, ctx: ProvisionerContext) -> str:
    """Resolve the current kernel path of a device from its persistent identifiers."""
    details = device.status.device_status.details
    by_dir = os.path.join(ctx.dev_dir, "disk")
    if details.device_type == DeviceType.PART:
        if not details.part_uuid:
            raise ProvisionerError(f"PARTUUID was not found on device {device.name}")
        path = _eval_symlink(os.path.join(by_dir, "by-partuuid", details.part_uuid))
        if path is None:
            raise ProvisionerError(f"PARTUUID {details.part_uuid} of {device.name} does not resolve")
        return path

    path = None
    if value_exists(details.wwn):
        prefix = "nvme-" if details.storage_controller == StorageController.NVME.value else "wwn-"
        path = _eval_symlink(os.path.join(by_dir, "by-id", prefix + details.wwn))
    if path is None and value_exists(details.uuid):
        path = _eval_symlink(os.path.join(by_dir, "by-uuid", details.uuid))
    if path is None and value_exists(details.pt_uuid):
        path = get_dev_path_by_ptuuid(ctx, details.pt_uuid) or _eval_symlink(
            os.path.join(by_dir, "by-uuid", details.pt_uuid)
        )
    # device-mapper paths hide the underlying disk; the bus path points at it
    if path and not os.path.basename(path).startswith("dm-"):
        return path
    if value_exists(details.bus_path):
        bus = _eval_symlink(os.path.join(by_dir, "by-path", details.bus_path))
        if bus:
            return bus
    if path:
        return path
    raise ProvisionerError(f"WWN/UUID/PTUUID/BusPath was not found on device {device.name}")


def release_host_mount(device: BlockDevice, ctx: ProvisionerContext, updates: DeviceUpdates) -> None:
    """Unmount the device's observed host mount, forcing it when the filesystem is corrupted."""
    fs_status = device.status.device_status.filesystem
    observed = fs_status.mount_point
    if not observed:
        return
    try:
        if fs_status.corrupted:
            force_umount(ctx.executor, observed)
        else:
            umount_disk(ctx.executor, observed)
    except CommandError as e:
        raise ProvisionerError(f"failed to unmount {observed} of device {device.name}: {e}") from e
    updates.apply(lambda d: setattr(d.status.device_status.filesystem, "mount_point", ""))


def set_added_to_node(updates: DeviceUpdates, added: bool, message: str) -> None:
    updates.apply(lambda d: d.status.set_condition(ConditionType.ADDED_TO_NODE, added, message))


class NodeDiskHelper:
    """Operations on the backend's node-scoped disk map, keyed by device name."""

    def __init__(self, ctx: ProvisionerContext, device: BlockDevice, updates: DeviceUpdates):
        self.ctx = ctx
        self.device = device
        self.updates = updates
        self.nodes = RecordClient(ctx.store, KIND_BACKEND_NODE, ctx.namespace)

    def get_node(self) -> Optional[BackendNode]:
        try:
            return self.nodes.get(self.ctx.node_name)
        except NotFoundError:
            return None

    def require_node(self) -> BackendNode:
        node = self.get_node()
        if node is None:
            raise ProvisionerError(f"backend node {self.ctx.node_name} not found", requeue=True)
        return node

    def get_disk(self) -> Optional[BackendDiskSpec]:
        node = self.get_node()
        if node is None:
            return None
        return node.spec.disks.get(self.device.name)

    def modify_disks(self, mutate: Callable[[BackendNode], None]) -> BackendNode:
        self.require_node()
        return self.nodes.update_with_retry(self.ctx.node_name, mutate)

    def add_disk(self, disk: BackendDiskSpec) -> None:
        name = self.device.name

        def mutate(node: BackendNode) -> None:
            node.spec.disks[name] = disk.model_copy(deep=True)

        self.modify_disks(mutate)
        self.ctx.disk_tags.update(name, self.device.spec.tags)
        set_added_to_node(self.updates, True, f"Added disk {name} to backend node `{self.ctx.node_name}`")

    def remove_disk(self) -> None:
        name = self.device.name
        self.modify_disks(lambda node: node.spec.disks.pop(name, None))
        self.ctx.disk_tags.delete(name)

    def unprovision(self, umount_path: str = "") -> bool:
        """Drain and remove the device from the backend node.

        Returns True while the backend still has replicas scheduled on the disk.
        """
        name = self.device.name
        not_listed = f"Disk not in backend node `{self.ctx.node_name}`"
        node = self.get_node()
        disk = node.spec.disks.get(name) if node else None
        if disk is None:
            logger.info("Disk %s is not listed on backend node %s", name, self.ctx.node_name)
            set_added_to_node(self.updates, False, not_listed)
            return False

        broken = (
            self.device.status.state == DeviceState.INACTIVE
            or self.device.status.device_status.filesystem.corrupted
        )
        if broken:
            logger.info("Disk %s is inactive or corrupted, removing it from the backend directly", name)
            if umount_path:
                try:
                    force_umount(self.ctx.executor, umount_path)
                except CommandError as e:
                    logger.warning("Failed to unmount broken disk %s at %s: %s", name, umount_path, e)
            self.remove_disk()
            set_added_to_node(self.updates, False, not_listed)
            return False

        if DISK_REMOVE_TAG not in disk.tags:
            def exclude(n: BackendNode) -> None:
                entry = n.spec.disks.get(name)
                if entry is None:
                    return
                entry.allow_scheduling = False
                entry.eviction_requested = True
                if DISK_REMOVE_TAG not in entry.tags:
                    entry.tags.append(DISK_REMOVE_TAG)

            self.modify_disks(exclude)
            logger.info("Stopped scheduling on disk %s, waiting for replicas to be evicted", name)
            set_added_to_node(
                self.updates, False, f"Stop provisioning device {name} to backend node `{self.ctx.node_name}`"
            )
            return True

        status = node.status.disk_status.get(name)
        if status is not None and status.scheduled_replica:
            logger.debug("Disk %s still has %d scheduled replicas", name, len(status.scheduled_replica))
            return True
        self.remove_disk()
        logger.info("Disk %s removed from backend node %s", name, self.ctx.node_name)
        set_added_to_node(self.updates, False, not_listed)
        return False

    def sync_tags(self) -> bool:
        """Reconcile the backend disk tags with the desired tags. Returns True to requeue."""
        name = self.device.name
        disk = self.get_disk()
        if disk is None:
            return False
        desired = list(self.device.spec.tags)
        cached = self.ctx.disk_tags.get(name) or []
        final = reconcile_tags(disk.tags, cached, desired)
        if final != disk.tags:
            logger.info("Updating tags of disk %s: %s -> %s", name, disk.tags, final)

            def mutate(node: BackendNode) -> None:
                entry = node.spec.disks.get(name)
                if entry is not None:
                    entry.tags = reconcile_tags(entry.tags, cached, desired)

            self.modify_disks(mutate)
        self.ctx.disk_tags.update(name, desired)
        return False
