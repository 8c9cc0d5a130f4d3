"""Shared pytest fixtures for Node Disk Agent tests."""
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

from ndm_agent.backend.provisioner import ProvisionerContext
from ndm_agent.block.info import BlockInfo
from ndm_agent.models import (
    LABEL_DEVICE_TYPE,
    LABEL_HOSTNAME,
    BackendDiskSpec,
    BackendNode,
    BlockDevice,
    BlockDeviceSpec,
    BlockDeviceStatus,
    DeviceDetails,
    DeviceStatus,
    DeviceType,
    Disk,
    DriveType,
    FilesystemSpec,
    FilesystemStatus,
    ObjectMeta,
    Partition,
    ProvisionerSpec,
    ProvisionPhase,
    StorageController,
)
from ndm_agent.state.store import KIND_BACKEND_NODE, KIND_BLOCK_DEVICE, RecordStore
from ndm_agent.utils.command import CommandError, Executor

NODE = "node-1"
NAMESPACE = "longhorn-system"


@pytest.fixture
def store():
    return RecordStore()


@pytest.fixture
def executor():
    """Command executor that succeeds with empty output unless told otherwise."""
    mock = MagicMock(spec=Executor)
    mock.execute.return_value = ""
    return mock


@pytest.fixture
def dev_dir(tmp_path):
    path = tmp_path / "dev"
    (path / "disk" / "by-id").mkdir(parents=True)
    (path / "disk" / "by-uuid").mkdir(parents=True)
    (path / "disk" / "by-partuuid").mkdir(parents=True)
    (path / "disk" / "by-path").mkdir(parents=True)
    return path


@pytest.fixture
def ctx(store, executor, dev_dir, tmp_path):
    return ProvisionerContext(
        store=store,
        namespace=NAMESPACE,
        node_name=NODE,
        executor=executor,
        max_concurrent_ops=2,
        dev_dir=str(dev_dir),
        extra_disk_dir=str(tmp_path / "extra-disks"),
    )


@pytest.fixture
def backend_node(store):
    return store.create(KIND_BACKEND_NODE, BackendNode(metadata=ObjectMeta(name=NODE, namespace=NAMESPACE)))


def make_disk(name: str = "sdb", wwn: str = "0x5000c500a1b2c3d4", **kwargs) -> Disk:
    defaults = dict(
        size_bytes=100 * 1024 ** 3,
        physical_block_size_bytes=4096,
        drive_type=DriveType.HDD,
        storage_controller=StorageController.SCSI,
        bus_path="pci-0000:00:1f.2-ata-2",
        vendor="ATA",
        model="ST1000",
        serial_number="Z1D2",
        wwn=wwn,
    )
    defaults.update(kwargs)
    return Disk(name=name, **defaults)


def make_partition(name: str = "sdb1", disk_name: str = "sdb", part_uuid: str = "8a4d-0001", **kwargs) -> Partition:
    defaults = dict(
        size_bytes=100 * 1024 ** 3,
        drive_type=DriveType.HDD,
        storage_controller=StorageController.SCSI,
        part_uuid=part_uuid,
    )
    defaults.update(kwargs)
    return Partition(name=name, disk_name=disk_name, **defaults)


def make_device(
    name: str = "dev-1",
    phase: ProvisionPhase = ProvisionPhase.UNPROVISIONED,
    device_type: DeviceType = DeviceType.DISK,
    dev_path: str = "/dev/sdb",
    mount_point: str = "",
    observed_mount: str = "",
    force_formatted: bool = False,
    provisioned: bool = False,
    kind: Optional[str] = None,
    vg_name: str = "",
    tags: Optional[List[str]] = None,
    conditions: Optional[Dict[str, bool]] = None,
    **details,
) -> BlockDevice:
    detail_values = dict(wwn="0x5000c500a1b2c3d4", storage_controller=StorageController.SCSI.value)
    detail_values.update(details)
    bd = BlockDevice(
        metadata=ObjectMeta(
            name=name,
            namespace=NAMESPACE,
            labels={LABEL_HOSTNAME: NODE, LABEL_DEVICE_TYPE: device_type.value},
        ),
        spec=BlockDeviceSpec(
            node_name=NODE,
            dev_path=dev_path,
            filesystem=FilesystemSpec(
                mount_point=mount_point, force_formatted=force_formatted, provisioned=provisioned
            ),
            provisioner=ProvisionerSpec(kind=kind, vg_name=vg_name) if kind else None,
            tags=list(tags or []),
        ),
        status=BlockDeviceStatus(
            provision_phase=phase,
            device_status=DeviceStatus(
                dev_path=dev_path,
                details=DeviceDetails(device_type=device_type, **detail_values),
                filesystem=FilesystemStatus(mount_point=observed_mount),
            ),
        ),
    )
    for ctype, value in (conditions or {}).items():
        bd.status.set_condition(ctype, value)
    return bd


@pytest.fixture
def add_device(store):
    """Create a device record in the store and return the stored copy."""

    def _add(**kwargs) -> BlockDevice:
        return store.create(KIND_BLOCK_DEVICE, make_device(**kwargs))

    return _add


class FakeUdevAttributes:
    """Sysfs attribute view with the conversions of pyudev.Attributes."""

    def __init__(self, values: Dict[str, str]):
        self._values = values

    def asstring(self, name: str) -> str:
        return self._values[name]

    def asint(self, name: str) -> int:
        return int(self._values[name])

    def asbool(self, name: str) -> bool:
        value = self._values[name]
        if value == "1":
            return True
        if value == "0":
            return False
        raise ValueError(f"{value!r} is not a boolean")


class FakeUdevDevice:
    def __init__(self, sys_name: str, devtype: str, properties: Dict[str, str], attributes: Dict[str, str], parent=None):
        self.sys_name = sys_name
        self.device_node = f"/dev/{sys_name}"
        self.device_type = devtype
        self.parent = parent
        self.properties = dict(properties, DEVTYPE=devtype)
        self.attributes = FakeUdevAttributes(attributes)


class FakeUdevContext:
    """Stands in for pyudev.Context; list_devices matches like the real enumerator."""

    def __init__(self):
        self.devices: List[FakeUdevDevice] = []

    def list_devices(self, subsystem=None, sys_name=None, parent=None, **properties):
        for device in list(self.devices):
            if sys_name is not None and device.sys_name != sys_name:
                continue
            if parent is not None and device.parent is not parent:
                continue
            if any(device.properties.get(k) != v for k, v in properties.items()):
                continue
            yield device


class FakeUdev:
    """Block devices as pyudev reports them, plus a mount table file."""

    def __init__(self, root: Path):
        self.context = FakeUdevContext()
        self.mounts = root / "mounts"
        self.mounts.write_text("", encoding="utf-8")

    def add_disk(self, name: str, props: Dict[str, str], size_sectors: int = 2048, rotational: str = "1") -> FakeUdevDevice:
        attributes = {
            "size": str(size_sectors),
            "removable": "0",
            "queue/rotational": rotational,
            "queue/physical_block_size": "4096",
        }
        device = FakeUdevDevice(name, "disk", props, attributes)
        self.context.devices.append(device)
        return device

    def add_partition(self, disk: str, name: str, props: Dict[str, str], size_sectors: int = 1024) -> FakeUdevDevice:
        parent = self.get(disk)
        device = FakeUdevDevice(name, "partition", props, {"size": str(size_sectors)}, parent=parent)
        self.context.devices.append(device)
        return device

    def get(self, name: str) -> FakeUdevDevice:
        return next(d for d in self.context.devices if d.sys_name == name)

    def remove(self, device: FakeUdevDevice) -> None:
        self.context.devices.remove(device)

    def set_mounts(self, *lines: str) -> None:
        self.mounts.write_text("\n".join(lines) + "\n", encoding="utf-8")


@pytest.fixture
def udev(tmp_path):
    return FakeUdev(tmp_path)


@pytest.fixture
def block_info(udev):
    return BlockInfo(context=udev.context, mounts_path=str(udev.mounts))


def put_backend_disk(store: RecordStore, name: str, path: str, **kwargs) -> BackendNode:
    """Add or replace the entry `name` on the local backend node record."""
    node = store.get(KIND_BACKEND_NODE, NAMESPACE, NODE)
    node.spec.disks[name] = BackendDiskSpec(path=path, **kwargs)
    return store.update(KIND_BACKEND_NODE, node)


class FakeLVM:
    """Stateful stand-in for the LVM command line tools."""

    def __init__(self):
        self.pvs: Dict[str, str] = {}
        self.active: Dict[str, bool] = {}
        self.fail_on: Dict[str, str] = {}

    def execute(self, cmd: str, args=(), timeout=None) -> str:
        args = list(args)
        if cmd in self.fail_on:
            raise CommandError([cmd, *args], 5, self.fail_on[cmd])
        if cmd == "pvs":
            return "\n".join(f"  {pv} {vg}".rstrip() for pv, vg in self.pvs.items())
        if cmd == "vgs":
            vg = args[-1]
            if vg in self.pvs.values():
                return f"  {vg}\n"
            raise CommandError([cmd, *args], 5, f"Volume group \"{vg}\" not found")
        if cmd == "pvcreate":
            self.pvs[args[0]] = ""
        elif cmd == "vgcreate":
            for pv in args[1:]:
                self.pvs[pv] = args[0]
        elif cmd == "vgextend":
            self.pvs[args[1]] = args[0]
        elif cmd == "vgreduce":
            self.pvs[args[1]] = ""
        elif cmd == "vgremove":
            for pv, vg in list(self.pvs.items()):
                if vg == args[-1]:
                    self.pvs[pv] = ""
            self.active.pop(args[-1], None)
        elif cmd == "pvremove":
            self.pvs.pop(args[0], None)
        elif cmd == "vgchange":
            self.active[args[-1]] = args[1] == "y"
        return ""


@pytest.fixture
def lvm(executor):
    fake = FakeLVM()
    executor.execute.side_effect = fake.execute
    return fake
