"""Conversion of discovered disks and partitions into device records."""
from ndm_agent.block.identity import generate_disk_guid, generate_partition_guid
from ndm_agent.models import (
    LABEL_DEVICE_TYPE,
    LABEL_HOSTNAME,
    LABEL_PARENT_DEVICE,
    BlockDevice,
    BlockDeviceSpec,
    BlockDeviceStatus,
    DeviceCapacity,
    DeviceDetails,
    DeviceState,
    DeviceStatus,
    DeviceType,
    Disk,
    FilesystemStatus,
    ObjectMeta,
    Partition,
    ProvisionPhase,
)


def disk_block_device(disk: Disk, node_name: str, namespace: str) -> BlockDevice:
    name = generate_disk_guid(disk, node_name)
    return BlockDevice(
        metadata=ObjectMeta(
            name=name,
            namespace=namespace,
            labels={LABEL_HOSTNAME: node_name, LABEL_DEVICE_TYPE: DeviceType.DISK.value},
        ),
        spec=BlockDeviceSpec(node_name=node_name, dev_path=disk.dev_path),
        status=BlockDeviceStatus(
            state=DeviceState.ACTIVE,
            provision_phase=ProvisionPhase.UNPROVISIONED,
            device_status=DeviceStatus(
                dev_path=disk.dev_path,
                partitioned=bool(disk.partitions),
                capacity=DeviceCapacity(
                    size_bytes=disk.size_bytes,
                    physical_block_size_bytes=disk.physical_block_size_bytes,
                ),
                details=DeviceDetails(
                    device_type=DeviceType.DISK,
                    drive_type=disk.drive_type.value,
                    is_removable=disk.is_removable,
                    storage_controller=disk.storage_controller.value,
                    uuid=disk.uuid,
                    pt_uuid=disk.pt_uuid,
                    bus_path=disk.bus_path,
                    model=disk.model,
                    vendor=disk.vendor,
                    serial_number=disk.serial_number,
                    wwn=disk.wwn,
                    label=disk.label,
                ),
                filesystem=FilesystemStatus(
                    mount_point=disk.file_system_info.mount_point,
                    type=disk.file_system_info.fs_type,
                    is_read_only=disk.file_system_info.is_read_only,
                ),
            ),
        ),
    )


def partition_block_device(part: Partition, disk: Disk, parent_name: str, node_name: str, namespace: str) -> BlockDevice:
    name = generate_partition_guid(part, node_name)
    return BlockDevice(
        metadata=ObjectMeta(
            name=name,
            namespace=namespace,
            labels={
                LABEL_HOSTNAME: node_name,
                LABEL_DEVICE_TYPE: DeviceType.PART.value,
                LABEL_PARENT_DEVICE: parent_name,
            },
        ),
        spec=BlockDeviceSpec(node_name=node_name, dev_path=part.dev_path),
        status=BlockDeviceStatus(
            state=DeviceState.ACTIVE,
            provision_phase=ProvisionPhase.UNPROVISIONED,
            device_status=DeviceStatus(
                dev_path=part.dev_path,
                parent_device=disk.dev_path,
                capacity=DeviceCapacity(
                    size_bytes=part.size_bytes,
                    physical_block_size_bytes=disk.physical_block_size_bytes,
                ),
                details=DeviceDetails(
                    device_type=DeviceType.PART,
                    drive_type=part.drive_type.value,
                    is_removable=disk.is_removable,
                    storage_controller=part.storage_controller.value,
                    uuid=part.uuid,
                    pt_uuid=disk.pt_uuid,
                    part_uuid=part.part_uuid,
                    bus_path=disk.bus_path,
                    model=disk.model,
                    vendor=disk.vendor,
                    serial_number=disk.serial_number,
                    label=part.label,
                    part_type=part.part_type,
                ),
                filesystem=FilesystemStatus(
                    mount_point=part.file_system_info.mount_point,
                    type=part.file_system_info.fs_type,
                    is_read_only=part.file_system_info.is_read_only,
                ),
            ),
        ),
    )


def refresh_observed(record: BlockDevice, discovered: BlockDevice) -> None:
    """Copy the freshly discovered device status onto `record` and mark it Active.

    Fields only the agent itself knows about (last format time, corruption) are kept.
    """
    observed = discovered.status.device_status.model_copy(deep=True)
    previous_fs = record.status.device_status.filesystem
    observed.filesystem.last_formatted_at = previous_fs.last_formatted_at
    observed.filesystem.corrupted = previous_fs.corrupted
    record.status.device_status = observed
    record.status.state = DeviceState.ACTIVE
    record.spec.dev_path = discovered.spec.dev_path
    record.metadata.labels.update(discovered.metadata.labels)
