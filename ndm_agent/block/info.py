#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Block device discovery module for Node Disk Agent.
This module enumerates the kernel's block devices through pyudev, enriches
them with the mount table, and returns Disk/Partition objects.
"""
import logging
import os
from typing import List, Optional

import pyudev

from ndm_agent.models import UNKNOWN, Disk, DriveType, FileSystemInfo, Partition, StorageController
from ndm_agent.utils.command import CommandError, Executor

from .mounts import MountTable

logger = logging.getLogger("ndm-agent")

SECTOR_SIZE = 512

# name prefix -> (drive type, storage controller)
_DEVICE_PREFIXES = [
    ("nvme", DriveType.SSD, StorageController.NVME),
    ("xvd", DriveType.HDD, StorageController.SCSI),
    ("mmc", DriveType.SSD, StorageController.MMC),
    ("sd", DriveType.HDD, StorageController.SCSI),
    ("hd", DriveType.HDD, StorageController.IDE),
    ("vd", DriveType.HDD, StorageController.VIRTIO),
    ("sr", DriveType.ODD, StorageController.SCSI),
    ("fd", DriveType.FDD, StorageController.UNKNOWN),
]


def drive_type_and_controller(name: str, rotational: bool = True):
    """Classify a disk by its kernel name; non-rotational spinning-class disks are SSDs."""
    for prefix, drive_type, controller in _DEVICE_PREFIXES:
        if name.startswith(prefix):
            if drive_type == DriveType.HDD and not rotational:
                drive_type = DriveType.SSD
            return drive_type, controller
    return DriveType.UNKNOWN, StorageController.UNKNOWN


def _attr_int(device, name: str, default: int = 0) -> int:
    try:
        return device.attributes.asint(name)
    except (KeyError, ValueError):
        return default


def _attr_bool(device, name: str, default: bool) -> bool:
    try:
        return device.attributes.asbool(name)
    except (KeyError, ValueError):
        return default


def _attr_str(device, name: str) -> str:
    try:
        return device.attributes.asstring(name).strip()
    except KeyError:
        return ""


class BlockInfo:
    """Read-only view over the kernel's block devices."""

    def __init__(
        self,
        context: Optional[pyudev.Context] = None,
        mounts_path: Optional[str] = None,
        executor: Optional[Executor] = None,
    ):
        self.context = context if context is not None else pyudev.Context()
        self.mount_table = MountTable(mounts_path)
        self.executor = executor

    def _blkid(self, dev_path: str, tag: str) -> str:
        """Ask blkid for a single tag of the device."""
        if self.executor is None:
            return ""
        try:
            return self.executor.execute("blkid", ["-s", tag, "-o", "value", dev_path]).strip()
        except CommandError:
            return ""

    def _lsblk(self, dev_path: str, column: str) -> str:
        if self.executor is None:
            return ""
        try:
            return self.executor.execute("lsblk", ["-dno", column, dev_path]).strip()
        except CommandError:
            return ""

    # discovery

    def _disk_devices(self, **match) -> list:
        devices = self.context.list_devices(subsystem="block", DEVTYPE="disk", **match)
        return sorted(
            (d for d in devices if not d.sys_name.startswith("loop")),
            key=lambda d: d.sys_name,
        )

    def get_disks(self) -> List[Disk]:
        """Return every non-loopback disk with its partitions."""
        mounts = self.mount_table.by_device()
        return [self._build_disk(device, mounts) for device in self._disk_devices()]

    def get_disk_by_dev_path(self, dev_path: str) -> Optional[Disk]:
        devices = self._disk_devices(sys_name=os.path.basename(dev_path))
        if not devices:
            return None
        return self._build_disk(devices[0], self.mount_table.by_device())

    def get_partition_by_dev_path(self, disk_path: str, part_path: str) -> Optional[Partition]:
        disk = self.get_disk_by_dev_path(disk_path)
        if disk is None:
            return None
        part_name = os.path.basename(part_path)
        for part in disk.partitions:
            if part.name == part_name:
                return part
        return None

    def get_file_system_info(self, dev_path: str) -> FileSystemInfo:
        return self.mount_table.file_system_info(dev_path)

    def _build_disk(self, device, mounts) -> Disk:
        name = device.sys_name
        props = device.properties
        rotational = _attr_bool(device, "queue/rotational", True)
        drive_type, controller = drive_type_and_controller(name, rotational)
        dev_path = device.device_node or f"/dev/{name}"
        disk = Disk(
            name=name,
            size_bytes=_attr_int(device, "size") * SECTOR_SIZE,
            physical_block_size_bytes=_attr_int(device, "queue/physical_block_size"),
            drive_type=drive_type,
            is_removable=_attr_bool(device, "removable", False),
            storage_controller=controller,
            bus_path=props.get("ID_PATH") or UNKNOWN,
            vendor=_attr_str(device, "device/vendor") or props.get("ID_VENDOR") or UNKNOWN,
            model=props.get("ID_MODEL") or UNKNOWN,
            serial_number=props.get("ID_SERIAL_SHORT") or props.get("ID_SERIAL") or UNKNOWN,
            wwn=props.get("ID_WWN_WITH_EXTENSION") or props.get("ID_WWN") or UNKNOWN,
            uuid=props.get("ID_FS_UUID") or self._blkid(dev_path, "UUID"),
            pt_uuid=props.get("ID_PART_TABLE_UUID") or self._blkid(dev_path, "PTUUID"),
            label=props.get("ID_FS_LABEL") or self._lsblk(dev_path, "label"),
            fs_type=props.get("ID_FS_TYPE") or self._blkid(dev_path, "TYPE"),
        )
        disk.partitions = self._build_partitions(disk, device, mounts)
        disk.file_system_info = self._fs_info(dev_path, disk.fs_type, mounts)
        return disk

    def _build_partitions(self, disk: Disk, device, mounts) -> List[Partition]:
        children = self.context.list_devices(subsystem="block", DEVTYPE="partition", parent=device)
        partitions = []
        for child in sorted(children, key=lambda d: d.sys_name):
            props = child.properties
            dev_path = child.device_node or f"/dev/{child.sys_name}"
            fs_type = props.get("ID_FS_TYPE") or self._blkid(dev_path, "TYPE")
            partitions.append(
                Partition(
                    name=child.sys_name,
                    disk_name=disk.name,
                    size_bytes=_attr_int(child, "size") * SECTOR_SIZE,
                    label=props.get("ID_FS_LABEL") or self._lsblk(dev_path, "label"),
                    part_type=props.get("ID_PART_ENTRY_TYPE") or self._lsblk(dev_path, "parttype"),
                    uuid=props.get("ID_FS_UUID") or self._blkid(dev_path, "UUID"),
                    part_uuid=props.get("ID_PART_ENTRY_UUID") or self._blkid(dev_path, "PARTUUID"),
                    fs_type=fs_type,
                    drive_type=disk.drive_type,
                    storage_controller=disk.storage_controller,
                    file_system_info=self._fs_info(dev_path, fs_type, mounts),
                )
            )
        return partitions

    @staticmethod
    def _fs_info(dev_path: str, fs_type: str, mounts) -> FileSystemInfo:
        entry = mounts.get(dev_path)
        if entry is None:
            return FileSystemInfo(fs_type=fs_type)
        return FileSystemInfo(
            mount_point=entry.mount_point,
            fs_type=entry.fs_type or fs_type,
            is_read_only=entry.is_read_only,
        )
