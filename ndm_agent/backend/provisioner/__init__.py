"""
Storage backend provisioners for Node Disk Agent.
This package provides one provisioner per backend kind:
- filesystem: ext4 filesystem disks of the Longhorn v1 data engine
- raw-block: whole block devices of the Longhorn v2 data engine
- volume-group: LVM physical volumes grouped by volume group records
"""
from typing import TYPE_CHECKING

from ndm_agent.models import BlockDevice, ProvisionerKind

from .base import DeviceUpdates, ProvisionerError
from .common import DISK_REMOVE_TAG, reconcile_tags, resolve_persistent_dev_path
from .context import DiskTags, ProvisionerContext, TokenPool
from .longhorn import FilesystemProvisioner
from .longhorn_block import RawBlockProvisioner
from .lvm import VolumeGroupProvisioner

if TYPE_CHECKING:
    from .base import Provisioner

_PROVISIONERS = {
    ProvisionerKind.FILESYSTEM: FilesystemProvisioner,
    ProvisionerKind.RAW_BLOCK: RawBlockProvisioner,
    ProvisionerKind.VOLUME_GROUP: VolumeGroupProvisioner,
}


def make_provisioner(device: BlockDevice, ctx: ProvisionerContext) -> "Provisioner":
    """
    Factory function to create the provisioner selected by the device's backend kind.
    Args:
        device: device record the provisioner acts on (a private copy is taken)
        ctx: shared provisioner context
    Returns:
        Provisioner instance for the device
    Raises:
        ProvisionerError: If the kind is unknown or its configuration is incomplete
    """
    kind = device.provisioner_kind
    cls = _PROVISIONERS.get(kind)
    if cls is None:
        raise ProvisionerError(f"Unknown provisioner kind: {kind}")
    return cls(device.model_copy(deep=True), ctx)


def needs_mount(kind: ProvisionerKind) -> bool:
    cls = _PROVISIONERS.get(kind)
    return bool(cls and cls.needs_mount)


__all__ = [
    "DISK_REMOVE_TAG",
    "DeviceUpdates",
    "DiskTags",
    "FilesystemProvisioner",
    "ProvisionerContext",
    "ProvisionerError",
    "RawBlockProvisioner",
    "TokenPool",
    "VolumeGroupProvisioner",
    "make_provisioner",
    "needs_mount",
    "reconcile_tags",
    "resolve_persistent_dev_path",
]
