# Block device discovery and identity
from .identity import generate_disk_guid, generate_partition_guid, make_hash_guid, value_exists
from .info import BlockInfo
from .mounts import MountTable, default_mounts_path

__all__ = [
    "BlockInfo",
    "MountTable",
    "default_mounts_path",
    "generate_disk_guid",
    "generate_partition_guid",
    "make_hash_guid",
    "value_exists",
]
