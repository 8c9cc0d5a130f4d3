"""
Filter module for Node Disk Agent.
Exclude filters decide which discovered devices are ignored; auto-provision
filters decide which disks are provisioned without an explicit request.
"""
import fnmatch
import logging
from typing import Callable, Iterable, List, Optional, Sequence, Union

from ndm_agent.models import Disk, DriveType, Partition

logger = logging.getLogger("ndm-agent")

BIOS_BOOT_PART_TYPE = "21686148-6449-6E6F-744E-656564454649"
DEFAULT_EXCLUDED_VENDORS = ["longhorn"]
DEFAULT_EXCLUDED_PATHS = ["/"]
DEFAULT_EXCLUDED_PART_TYPES = [BIOS_BOOT_PART_TYPE]

DiskMatcher = Callable[[Disk], bool]
PartitionMatcher = Callable[[Partition], bool]


def split_csv(value: Union[str, Sequence[str], None]) -> List[str]:
    """Split a comma separated option into trimmed, non-empty values."""
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [v.strip() for v in value if v and v.strip()]


def dedup(values: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for v in values:
        if v not in seen:
            seen.add(v)
            result.append(v)
    return result


def _glob_any(patterns: Sequence[str], value: str) -> bool:
    return bool(value) and any(fnmatch.fnmatchcase(value, p) for p in patterns)


class Filter:
    """A named predicate over disks and/or partitions."""

    def __init__(self, name: str, disk_filter: Optional[DiskMatcher] = None, part_filter: Optional[PartitionMatcher] = None):
        self.name = name
        self.disk_filter = disk_filter
        self.part_filter = part_filter

    def match_disk(self, disk: Disk) -> bool:
        return self.disk_filter is not None and self.disk_filter(disk)

    def match_partition(self, part: Partition) -> bool:
        return self.part_filter is not None and self.part_filter(part)

    def __repr__(self) -> str:
        return f"Filter({self.name!r})"


def vendor_filter(vendors: Sequence[str]) -> Filter:
    """Match disks whose vendor or bus path contains one of `vendors`, ignoring case."""
    needles = [v.lower() for v in vendors]

    def match(disk: Disk) -> bool:
        haystacks = [(disk.vendor or "").lower(), (disk.bus_path or "").lower()]
        return any(n in h for n in needles for h in haystacks)

    return Filter("vendor filter", disk_filter=match)


def path_filter(mount_paths: Sequence[str]) -> Filter:
    """Match devices mounted at one of `mount_paths`, ignoring case."""
    wanted = {p.lower() for p in mount_paths}

    def match_mount(mount_point: str) -> bool:
        return bool(mount_point) and mount_point.lower() in wanted

    return Filter(
        "path filter",
        disk_filter=lambda d: match_mount(d.file_system_info.mount_point),
        part_filter=lambda p: match_mount(p.file_system_info.mount_point),
    )


def label_filter(labels: Sequence[str]) -> Filter:
    """Match filesystem labels against globs.

    A disk matches when its own label matches, or when it has partitions and
    every one of them matches.
    """

    def match_part(part: Partition) -> bool:
        return _glob_any(labels, part.label)

    def match_disk(disk: Disk) -> bool:
        if _glob_any(labels, disk.label):
            return True
        return bool(disk.partitions) and all(match_part(p) for p in disk.partitions)

    return Filter("label filter", disk_filter=match_disk, part_filter=match_part)


def part_type_filter(part_types: Sequence[str]) -> Filter:
    wanted = {t.lower() for t in part_types}

    def match_part(part: Partition) -> bool:
        return bool(part.part_type) and part.part_type.lower() in wanted

    return Filter(
        "part type filter",
        disk_filter=lambda d: any(match_part(p) for p in d.partitions),
        part_filter=match_part,
    )


def device_path_filter(globs: Sequence[str]) -> Filter:
    """Match /dev paths against globs; a disk also matches through any of its partitions."""

    def match_part(part: Partition) -> bool:
        return _glob_any(globs, part.dev_path)

    def match_disk(disk: Disk) -> bool:
        return _glob_any(globs, disk.dev_path) or any(match_part(p) for p in disk.partitions)

    return Filter("device path filter", disk_filter=match_disk, part_filter=match_part)


def drive_type_filter() -> Filter:
    """Match anything that is neither an HDD nor an SSD."""
    allowed = (DriveType.HDD, DriveType.SSD)
    return Filter(
        "drive type filter",
        disk_filter=lambda d: d.drive_type not in allowed,
        part_filter=lambda p: p.drive_type not in allowed,
    )


def build_exclude_filters(
    vendors: Sequence[str] = (),
    paths: Sequence[str] = (),
    labels: Sequence[str] = (),
    devices: Sequence[str] = (),
) -> List[Filter]:
    """Exclude filters in evaluation order; built-in defaults are always included."""
    filters = [
        vendor_filter(dedup(DEFAULT_EXCLUDED_VENDORS + list(vendors))),
        path_filter(dedup(DEFAULT_EXCLUDED_PATHS + list(paths))),
        part_type_filter(DEFAULT_EXCLUDED_PART_TYPES),
        drive_type_filter(),
    ]
    if labels:
        filters.append(label_filter(dedup(labels)))
    if devices:
        filters.append(device_path_filter(dedup(devices)))
    return filters


def build_auto_provision_filters(devices: Sequence[str] = ()) -> List[Filter]:
    if not devices:
        return []
    return [device_path_filter(dedup(devices))]


class FilterEngine:
    """Evaluates the exclude and auto-provision filter lists."""

    def __init__(self, exclude_filters: Sequence[Filter] = (), auto_provision_filters: Sequence[Filter] = ()):
        self.exclude_filters = list(exclude_filters)
        self.auto_provision_filters = list(auto_provision_filters)

    def apply_exclude_filters(self, device: Union[Disk, Partition]) -> bool:
        if isinstance(device, Disk):
            return self.apply_exclude_filter_for_disk(device)
        return self.apply_exclude_filter_for_partition(device)

    def apply_exclude_filter_for_disk(self, disk: Disk) -> bool:
        for f in self.exclude_filters:
            if f.match_disk(disk):
                logger.debug("Disk %s excluded by %s", disk.dev_path, f.name)
                return True
        return False

    def apply_exclude_filter_for_partition(self, part: Partition) -> bool:
        for f in self.exclude_filters:
            if f.match_partition(part):
                logger.debug("Partition %s excluded by %s", part.dev_path, f.name)
                return True
        return False

    def apply_auto_provision_filters(self, disk: Disk) -> bool:
        for f in self.auto_provision_filters:
            if f.match_disk(disk):
                logger.debug("Disk %s matched auto-provision %s", disk.dev_path, f.name)
                return True
        return False
