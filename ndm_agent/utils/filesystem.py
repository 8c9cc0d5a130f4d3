#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Filesystem utilities module for Node Disk Agent.
This module contains the partition, format, mount and wipe operations issued
against block devices.
"""
import logging
import re
from typing import Optional

from .command import CommandError, Executor

logger = logging.getLogger("ndm-agent")

SUPPORTED_FILESYSTEMS = ("ext4", "xfs")
EXT4_MOUNT_OPTIONS = "journal_checksum,journal_ioprio=0,barrier=1,errors=remount-ro"
FORCE_UMOUNT_TIMEOUT = 30.0


def is_supported_filesystem(fs_type: str) -> bool:
    return (fs_type or "").lower() in SUPPORTED_FILESYSTEMS


def is_fs_corrupted(err: Exception) -> bool:
    """A mount failing with "wrong fs type" means the filesystem is unreadable."""
    return "wrong fs type" in str(err)


def get_disk_partition_path(disk_path: str, number: int) -> str:
    """Return the device path of partition `number` of `disk_path`.

    Disks whose names end with a digit (nvme0n1, mmcblk0, loop0) use a "p" separator.
    """
    if re.search(r"\d$", disk_path):
        return f"{disk_path}p{number}"
    return f"{disk_path}{number}"


def make_gpt_partition(executor: Executor, dev_path: str) -> None:
    """Replace the partition table of `dev_path` with a GPT holding one full-size partition."""
    logger.info("Creating GPT partition table on %s", dev_path)
    executor.execute(
        "parted",
        ["-a", "optimal", "-s", dev_path, "mklabel", "gpt", "mkpart", "primary", "ext4", "0%", "100%"],
    )


def make_ext4(executor: Executor, dev_path: str, fs_uuid: str = "") -> None:
    """Create an ext4 filesystem, reusing `fs_uuid` when given."""
    args = ["-F", dev_path]
    if fs_uuid:
        args += ["-U", fs_uuid]
    logger.info("Creating ext4 filesystem on %s (uuid=%s)", dev_path, fs_uuid or "<new>")
    executor.execute("mkfs.ext4", args)


def wipe_device(executor: Executor, dev_path: str) -> None:
    """Remove every filesystem, RAID and partition-table signature from the device."""
    logger.info("Wiping signatures on %s", dev_path)
    executor.execute("wipefs", ["-a", dev_path])


def mount_disk(executor: Executor, dev_path: str, mount_point: str) -> None:
    """Mount an ext4 device at `mount_point`, creating the directory first."""
    logger.info("Mounting %s at %s", dev_path, mount_point)
    executor.execute("mkdir", ["-p", mount_point])
    executor.execute("mount", ["-t", "ext4", "-o", EXT4_MOUNT_OPTIONS, dev_path, mount_point])


def umount_disk(executor: Executor, path: str) -> None:
    """Unmount `path`. Not being mounted is not an error."""
    logger.info("Unmounting %s", path)
    try:
        executor.execute("umount", [path])
    except CommandError as e:
        if "not mounted" in e.stderr:
            logger.debug("%s is not mounted", path)
            return
        raise


def force_umount(executor: Executor, path: str, timeout: Optional[float] = FORCE_UMOUNT_TIMEOUT) -> None:
    """Unmount `path`, falling back to a lazy unmount when the device is gone or busy."""
    try:
        executor.execute("umount", [path], timeout=timeout)
    except CommandError as e:
        if "not mounted" in e.stderr:
            return
        logger.warning("Regular unmount of %s failed (%s), trying lazy unmount", path, e)
        executor.execute("umount", ["-l", path], timeout=timeout)
