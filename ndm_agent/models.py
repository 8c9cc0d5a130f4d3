#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Data models for Node Disk Agent.
This module contains the discovered hardware dataclasses and the persisted
record schemas (device, volume group and backend node records).
"""
import dataclasses
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

UNKNOWN = "unknown"

LABEL_HOSTNAME = "ndm.harvesterhci.io/hostname"
LABEL_DEVICE_TYPE = "ndm.harvesterhci.io/device-type"
LABEL_PARENT_DEVICE = "ndm.harvesterhci.io/parent-device"
LABEL_VG_NODE = "topology.lvm.csi/node"


def now_rfc3339() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class DriveType(str, Enum):
    UNKNOWN = "Unknown"
    HDD = "HDD"
    FDD = "FDD"
    ODD = "ODD"
    SSD = "SSD"


class StorageController(str, Enum):
    UNKNOWN = "Unknown"
    SCSI = "SCSI"
    IDE = "IDE"
    VIRTIO = "virtio"
    MMC = "MMC"
    NVME = "NVMe"


class DeviceType(str, Enum):
    DISK = "disk"
    PART = "part"


class DeviceState(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class ProvisionPhase(str, Enum):
    UNPROVISIONED = "Unprovisioned"
    PARTITIONING = "Partitioning"
    PARTITIONED = "Partitioned"
    FORMATTING = "Formatting"
    FORMATTED = "Formatted"
    MOUNTING = "Mounting"
    MOUNTED = "Mounted"
    UNMOUNTING = "Unmounting"
    PROVISIONING = "Provisioning"
    PROVISIONED = "Provisioned"
    UNPROVISIONING = "Unprovisioning"
    FAILED = "Failed"


class ConditionType(str, Enum):
    PARTITIONING = "Partitioning"
    PARTITIONED = "DevicePartitioned"
    FORMATTING = "Formatting"
    FORMATTED = "DeviceFormatted"
    MOUNTING = "Mounting"
    MOUNTED = "DeviceMounted"
    UNMOUNTING = "Unmounting"
    PROVISIONING = "Provisioning"
    ADDED_TO_NODE = "DiskAddedToNode"
    UNPROVISIONING = "Unprovisioning"
    AUTO_PROVISION_DETECTED = "AutoProvisionDetected"
    FAILED = "Failed"


IN_FLIGHT_CONDITIONS = (
    ConditionType.PARTITIONING,
    ConditionType.FORMATTING,
    ConditionType.MOUNTING,
    ConditionType.UNMOUNTING,
    ConditionType.PROVISIONING,
    ConditionType.UNPROVISIONING,
)


class ProvisionerKind(str, Enum):
    FILESYSTEM = "filesystem"
    RAW_BLOCK = "raw-block"
    VOLUME_GROUP = "volume-group"


# Names used by the auto-provision configuration document
PROVISIONER_ALIASES = {
    "longhornv1": ProvisionerKind.FILESYSTEM,
    "longhornv2": ProvisionerKind.RAW_BLOCK,
    "lvm": ProvisionerKind.VOLUME_GROUP,
}


# Discovered hardware


@dataclasses.dataclass
class FileSystemInfo:
    """Mount information of a block device as seen in the mount table."""

    mount_point: str = ""
    fs_type: str = ""
    is_read_only: bool = False


@dataclasses.dataclass
class Partition:
    """A partition of a disk."""

    name: str
    disk_name: str
    size_bytes: int = 0
    label: str = ""
    part_type: str = ""
    uuid: str = ""
    part_uuid: str = ""
    fs_type: str = ""
    drive_type: DriveType = DriveType.UNKNOWN
    storage_controller: StorageController = StorageController.UNKNOWN
    file_system_info: FileSystemInfo = dataclasses.field(default_factory=FileSystemInfo)

    @property
    def dev_path(self) -> str:
        return f"/dev/{self.name}"


@dataclasses.dataclass
class Disk:
    """A whole block device with its partitions."""

    name: str
    size_bytes: int = 0
    physical_block_size_bytes: int = 0
    drive_type: DriveType = DriveType.UNKNOWN
    is_removable: bool = False
    storage_controller: StorageController = StorageController.UNKNOWN
    bus_path: str = UNKNOWN
    vendor: str = UNKNOWN
    model: str = UNKNOWN
    serial_number: str = UNKNOWN
    wwn: str = UNKNOWN
    uuid: str = ""
    pt_uuid: str = ""
    label: str = ""
    fs_type: str = ""
    partitions: List[Partition] = dataclasses.field(default_factory=list)
    file_system_info: FileSystemInfo = dataclasses.field(default_factory=FileSystemInfo)

    @property
    def dev_path(self) -> str:
        return f"/dev/{self.name}"


# Records


class ObjectMeta(BaseModel):
    name: str = ""
    namespace: str = ""
    generate_name: str = ""
    labels: Dict[str, str] = Field(default_factory=dict)
    resource_version: int = 0


class Condition(BaseModel):
    type: str
    status: bool = False
    message: str = ""
    last_transition_time: str = ""


class ConditionedModel(BaseModel):
    """Mixin for models carrying a list of named conditions."""

    conditions: List[Condition] = Field(default_factory=list)

    def get_condition(self, ctype: str) -> Optional[Condition]:
        ctype = str(getattr(ctype, "value", ctype))
        for cond in self.conditions:
            if cond.type == ctype:
                return cond
        return None

    def is_condition_true(self, ctype: str) -> bool:
        cond = self.get_condition(ctype)
        return bool(cond and cond.status)

    def set_condition(self, ctype: str, status: bool, message: str = "") -> None:
        ctype = str(getattr(ctype, "value", ctype))
        cond = self.get_condition(ctype)
        if cond is None:
            self.conditions.append(
                Condition(type=ctype, status=status, message=message, last_transition_time=now_rfc3339())
            )
            return
        if cond.status != status:
            cond.last_transition_time = now_rfc3339()
        cond.status = status
        cond.message = message


class FilesystemSpec(BaseModel):
    mount_point: str = ""
    force_formatted: bool = False
    provisioned: bool = False


class ProvisionerSpec(BaseModel):
    kind: ProvisionerKind = ProvisionerKind.FILESYSTEM
    disk_driver: str = ""
    vg_name: str = ""
    parameters: Dict[str, str] = Field(default_factory=dict)


class BlockDeviceSpec(BaseModel):
    node_name: str = ""
    dev_path: str = ""
    filesystem: FilesystemSpec = Field(default_factory=FilesystemSpec)
    provision: bool = False
    provisioner: Optional[ProvisionerSpec] = None
    tags: List[str] = Field(default_factory=list)


class DeviceCapacity(BaseModel):
    size_bytes: int = 0
    physical_block_size_bytes: int = 0


class DeviceDetails(BaseModel):
    device_type: DeviceType = DeviceType.DISK
    drive_type: str = DriveType.UNKNOWN.value
    is_removable: bool = False
    storage_controller: str = StorageController.UNKNOWN.value
    uuid: str = ""
    pt_uuid: str = ""
    part_uuid: str = ""
    bus_path: str = ""
    model: str = ""
    vendor: str = ""
    serial_number: str = ""
    wwn: str = ""
    label: str = ""
    part_type: str = ""


class FilesystemStatus(BaseModel):
    mount_point: str = ""
    type: str = ""
    is_read_only: bool = False
    corrupted: bool = False
    last_formatted_at: Optional[str] = None


class DeviceStatus(BaseModel):
    dev_path: str = ""
    parent_device: str = ""
    partitioned: bool = False
    capacity: DeviceCapacity = Field(default_factory=DeviceCapacity)
    details: DeviceDetails = Field(default_factory=DeviceDetails)
    filesystem: FilesystemStatus = Field(default_factory=FilesystemStatus)


class BlockDeviceStatus(ConditionedModel):
    state: DeviceState = DeviceState.ACTIVE
    provision_phase: ProvisionPhase = ProvisionPhase.UNPROVISIONED
    device_status: DeviceStatus = Field(default_factory=DeviceStatus)
    tags: List[str] = Field(default_factory=list)


class BlockDevice(BaseModel):
    """Declarative record of one disk or partition on a node."""

    kind: str = "blockdevices"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: BlockDeviceSpec = Field(default_factory=BlockDeviceSpec)
    status: BlockDeviceStatus = Field(default_factory=BlockDeviceStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def is_disk(self) -> bool:
        return self.status.device_status.details.device_type == DeviceType.DISK

    @property
    def provisioner_kind(self) -> ProvisionerKind:
        if self.spec.provisioner is None:
            return ProvisionerKind.FILESYSTEM
        return self.spec.provisioner.kind

    def in_flight(self) -> bool:
        return any(self.status.is_condition_true(c) for c in IN_FLIGHT_CONDITIONS)


class VGStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    UNKNOWN = "Unknown"


class VGDesiredState(str, Enum):
    ENABLED = "Enabled"
    DISABLED = "Disabled"


class LVMVolumeGroupSpec(BaseModel):
    node_name: str = ""
    vg_name: str = ""
    desired_state: VGDesiredState = VGDesiredState.ENABLED
    devices: Dict[str, str] = Field(default_factory=dict)
    parameters: str = ""


class LVMVolumeGroupStatus(ConditionedModel):
    status: VGStatus = VGStatus.UNKNOWN
    devices: Dict[str, str] = Field(default_factory=dict)
    parameters: str = ""
    vg_target_type: str = ""


class LVMVolumeGroup(BaseModel):
    """Group-scoped volume group record for the LVM backend."""

    kind: str = "lvmvolumegroups"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: LVMVolumeGroupSpec = Field(default_factory=LVMVolumeGroupSpec)
    status: Optional[LVMVolumeGroupStatus] = None

    @property
    def name(self) -> str:
        return self.metadata.name


class BackendDiskType(str, Enum):
    FILESYSTEM = "filesystem"
    BLOCK = "block"


class BackendDiskSpec(BaseModel):
    type: BackendDiskType = BackendDiskType.FILESYSTEM
    path: str = ""
    allow_scheduling: bool = True
    eviction_requested: bool = False
    storage_reserved: int = 0
    tags: List[str] = Field(default_factory=list)
    disk_driver: str = ""


class BackendDiskStatus(BaseModel):
    disk_uuid: str = ""
    scheduled_replica: Dict[str, int] = Field(default_factory=dict)


class BackendNodeSpec(BaseModel):
    disks: Dict[str, BackendDiskSpec] = Field(default_factory=dict)


class BackendNodeStatus(BaseModel):
    disk_status: Dict[str, BackendDiskStatus] = Field(default_factory=dict)


class BackendNode(BaseModel):
    """Node-scoped disk map of the filesystem/raw-block storage backend."""

    kind: str = "nodes"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: BackendNodeSpec = Field(default_factory=BackendNodeSpec)
    status: BackendNodeStatus = Field(default_factory=BackendNodeStatus)

    @property
    def name(self) -> str:
        return self.metadata.name


@dataclasses.dataclass
class AgentOptions:
    """Runtime options of the agent, derived from the loaded configuration."""

    node_name: str
    namespace: str = "longhorn-system"
    run_dir: str = "/var/run/ndm-agent"
    dev_dir: str = "/dev"
    host_proc: str = "/host/proc"
    vendor_filter: str = ""
    path_filter: str = ""
    label_filter: str = ""
    auto_provision_filter: str = ""
    filter_config_file: str = ""
    max_concurrent_ops: int = 5
    rescan_interval: float = 30.0
    enqueue_delay: float = 10.0
    command_timeout: float = 300.0
    extra_disk_dir: str = "/var/lib/harvester/extra-disks"
    default_kind: ProvisionerKind = ProvisionerKind.FILESYSTEM
    inject_udev_monitor_error: bool = False
    controller_workers: int = 4
    create_backend_node: bool = True


# API request models


class DeviceIntentRequest(BaseModel):
    """FastAPI model for updating the declared intent of a device."""

    mount_point: Optional[str] = None
    force_formatted: Optional[bool] = None
    provisioned: Optional[bool] = None
    provision: Optional[bool] = None
    tags: Optional[List[str]] = None
    provisioner: Optional[ProvisionerSpec] = None


class BackendNodeStatusRequest(BaseModel):
    """FastAPI model for the backend reporting its per-disk replica status."""

    disk_status: Dict[str, BackendDiskStatus]
