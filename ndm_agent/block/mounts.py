"""Mount table parsing."""
import dataclasses
import logging
import os
from typing import Dict, List, Optional

from ndm_agent.models import FileSystemInfo
from ndm_agent.utils.command import HOST_PROC_PATH, host_mounts_path, is_host_proc_mounted

logger = logging.getLogger("ndm-agent")

PROC_MOUNTS = "/proc/mounts"

_ESCAPES = {"\\040": " ", "\\011": "\t", "\\012": "\n", "\\134": "\\"}


def decode_mount_field(value: str) -> str:
    """Undo the octal escaping the kernel applies to mount table fields."""
    if "\\" not in value:
        return value
    out = []
    i = 0
    while i < len(value):
        chunk = value[i : i + 4]
        if chunk in _ESCAPES:
            out.append(_ESCAPES[chunk])
            i += 4
        elif value[i : i + 2] == "\\\\":
            out.append("\\")
            i += 2
        else:
            out.append(value[i])
            i += 1
    return "".join(out)


@dataclasses.dataclass
class MountEntry:
    device: str
    mount_point: str
    fs_type: str
    options: List[str]

    @property
    def is_read_only(self) -> bool:
        return "rw" not in self.options


def parse_mounts(content: str) -> List[MountEntry]:
    entries = []
    for line in content.splitlines():
        # Only real block devices; skips proc, sysfs, tmpfs and friends
        if not line.startswith("/"):
            continue
        fields = line.split()
        if len(fields) < 4:
            continue
        entries.append(
            MountEntry(
                device=decode_mount_field(fields[0]),
                mount_point=decode_mount_field(fields[1]),
                fs_type=fields[2],
                options=fields[3].split(","),
            )
        )
    return entries


def default_mounts_path(host_proc: str = HOST_PROC_PATH) -> str:
    """Use the host's mount table when running with the host /proc mounted."""
    if is_host_proc_mounted(host_proc):
        return host_mounts_path(host_proc)
    return PROC_MOUNTS


class MountTable:
    """Snapshot reader over a /proc/mounts style file."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or PROC_MOUNTS

    def entries(self) -> List[MountEntry]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return parse_mounts(f.read())
        except OSError as e:
            logger.warning("Failed to read mount table %s: %s", self.path, e)
            return []

    def by_device(self) -> Dict[str, MountEntry]:
        """First mount entry per device path."""
        result: Dict[str, MountEntry] = {}
        for entry in self.entries():
            result.setdefault(entry.device, entry)
            real = os.path.realpath(entry.device)
            if real != entry.device:
                result.setdefault(real, entry)
        return result

    def file_system_info(self, dev_path: str) -> FileSystemInfo:
        entry = self.by_device().get(dev_path)
        if entry is None:
            return FileSystemInfo()
        return FileSystemInfo(mount_point=entry.mount_point, fs_type=entry.fs_type, is_read_only=entry.is_read_only)
