"""
Stable device identity.
GUIDs are blake2b-128 digests of the node name followed by the most stable
identifiers of the device. The concatenation order is part of the on-disk
contract: changing it renames every record.
"""
import hashlib
import logging

from ndm_agent.models import UNKNOWN, Disk, Partition

logger = logging.getLogger("ndm-agent")


def value_exists(value: str) -> bool:
    return bool(value) and value != UNKNOWN


def make_hash_guid(payload: str) -> str:
    return hashlib.blake2b(payload.encode("utf-8"), digest_size=16).hexdigest()


def generate_disk_guid(disk: Disk, node_name: str) -> str:
    """GUID of a disk, or "" when it has no stable identifier."""
    if value_exists(disk.wwn):
        return make_hash_guid(node_name + disk.wwn + disk.vendor + disk.model + disk.serial_number)
    if value_exists(disk.uuid):
        return make_hash_guid(node_name + disk.uuid)
    if value_exists(disk.pt_uuid):
        return make_hash_guid(node_name + disk.pt_uuid)
    logger.warning(
        "Failed to generate GUID for device %s: no WWN, filesystem UUID or partition table UUID", disk.name
    )
    return ""


def generate_partition_guid(part: Partition, node_name: str) -> str:
    """GUID of a partition, or "" when it carries no PARTUUID."""
    if value_exists(part.part_uuid):
        return make_hash_guid(node_name + part.part_uuid)
    logger.warning("Failed to generate GUID for partition %s: no PARTUUID", part.name)
    return ""
