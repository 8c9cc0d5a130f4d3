"""Tests for the storage backend provisioners and their shared helpers."""

import os

import pytest
from conftest import NAMESPACE, NODE, make_device, put_backend_disk

from ndm_agent.backend.provisioner import (
    DISK_REMOVE_TAG,
    DiskTags,
    FilesystemProvisioner,
    ProvisionerError,
    RawBlockProvisioner,
    TokenPool,
    VolumeGroupProvisioner,
    make_provisioner,
    needs_mount,
    reconcile_tags,
    resolve_persistent_dev_path,
)
from ndm_agent.backend.provisioner import lvm_helpers
from ndm_agent.backend.provisioner.longhorn_block import resolve_block_dev_path
from ndm_agent.models import (
    BackendDiskStatus,
    BackendDiskType,
    ConditionType,
    DeviceState,
    DeviceType,
    LVMVolumeGroupStatus,
    ProvisionerKind,
    StorageController,
    VGStatus,
)
from ndm_agent.state.store import KIND_BACKEND_NODE, KIND_VOLUME_GROUP
from ndm_agent.utils.command import CommandError

WWN = "0x5000c500a1b2c3d4"


def backend_disks(store):
    return store.get(KIND_BACKEND_NODE, NAMESPACE, NODE).spec.disks


def link(dev_dir, kind, name, target="sdb"):
    node = dev_dir / target
    node.touch()
    os.symlink(node, dev_dir / "disk" / kind / name)
    return os.path.realpath(node)


# ---------------------------------------------------------------------------
# Shared state and helpers
# ---------------------------------------------------------------------------

class TestReconcileTags:
    def test_keeps_foreign_tags(self):
        assert reconcile_tags(["foreign", "old"], ["old"], ["new"]) == ["foreign", "new"]

    def test_deduplicates(self):
        assert reconcile_tags(["a"], [], ["a", "b", "b"]) == ["a", "b"]

    def test_cached_tags_are_replaced_by_desired(self):
        assert reconcile_tags(["a", "b"], ["a", "c"], ["a"]) == ["b", "a"]
        assert reconcile_tags(["a", "b", "b"], ["a", "c"], ["a", "a"]) == ["b", "a"]

    def test_no_cache_keeps_everything(self):
        assert reconcile_tags(["x"], [], []) == ["x"]


class TestTokenPool:
    def test_acquire_never_blocks(self):
        pool = TokenPool(1)
        assert pool.acquire()
        assert not pool.acquire()
        assert pool.release()
        assert pool.acquire()

    def test_over_release_is_reported(self):
        assert not TokenPool(1).release()

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError, match="at least 1"):
            TokenPool(0)


class TestDiskTags:
    def test_initialize_only_once(self):
        tags = DiskTags()
        tags.initialize([make_device("a", provisioned=True, tags=["x"]), make_device("b", tags=["y"])])
        assert tags.initialized
        assert tags.get("a") == ["x"]
        assert not tags.dev_exist("b")
        tags.initialize([make_device("c", provisioned=True)])
        assert not tags.dev_exist("c")

    def test_update_and_delete(self):
        tags = DiskTags()
        tags.update("a", ["x"])
        tags.get("a").append("mutated")
        assert tags.get("a") == ["x"]
        tags.delete("a")
        assert tags.get("a") is None


class TestResolvePersistentDevPath:
    def test_by_wwn(self, ctx, dev_dir):
        path = link(dev_dir, "by-id", f"wwn-{WWN}")
        assert resolve_persistent_dev_path(make_device(wwn=WWN), ctx) == path

    def test_nvme_prefix(self, ctx, dev_dir):
        path = link(dev_dir, "by-id", "nvme-eui.01", "nvme0n1")
        bd = make_device(wwn="eui.01", storage_controller=StorageController.NVME.value)
        assert resolve_persistent_dev_path(bd, ctx) == path

    def test_falls_back_to_fs_uuid(self, ctx, dev_dir):
        path = link(dev_dir, "by-uuid", "fs-1")
        assert resolve_persistent_dev_path(make_device(wwn="", uuid="fs-1"), ctx) == path

    def test_partition_by_part_uuid(self, ctx, dev_dir):
        path = link(dev_dir, "by-partuuid", "part-1", "sdb1")
        bd = make_device(device_type=DeviceType.PART, part_uuid="part-1")
        assert resolve_persistent_dev_path(bd, ctx) == path

    def test_partition_without_part_uuid(self, ctx):
        with pytest.raises(ProvisionerError, match="PARTUUID was not found"):
            resolve_persistent_dev_path(make_device(device_type=DeviceType.PART), ctx)

    def test_device_mapper_prefers_bus_path(self, ctx, dev_dir):
        link(dev_dir, "by-id", f"wwn-{WWN}", "dm-0")
        bus = link(dev_dir, "by-path", "pci-0000:00:1f.2-ata-2", "sdc")
        bd = make_device(wwn=WWN, bus_path="pci-0000:00:1f.2-ata-2")
        assert resolve_persistent_dev_path(bd, ctx) == bus

    def test_lsblk_resolves_pt_uuid(self, ctx, executor):
        executor.execute.return_value = '{"blockdevices": [{"path": "/dev/sdd", "ptuuid": "pt-1"}]}'
        assert resolve_persistent_dev_path(make_device(wwn="", pt_uuid="pt-1"), ctx) == "/dev/sdd"

    def test_nothing_resolves(self, ctx):
        with pytest.raises(ProvisionerError, match="was not found on device"):
            resolve_persistent_dev_path(make_device(wwn=""), ctx)


class TestFactory:
    def test_kinds(self, ctx):
        assert isinstance(make_provisioner(make_device(), ctx), FilesystemProvisioner)
        assert isinstance(make_provisioner(make_device(kind="raw-block"), ctx), RawBlockProvisioner)
        assert isinstance(make_provisioner(make_device(kind="volume-group", vg_name="vg1"), ctx),
                          VolumeGroupProvisioner)

    def test_needs_mount(self):
        assert needs_mount(ProvisionerKind.FILESYSTEM)
        assert not needs_mount(ProvisionerKind.RAW_BLOCK)
        assert not needs_mount(ProvisionerKind.VOLUME_GROUP)

    def test_provisioner_works_on_a_copy(self, ctx):
        bd = make_device()
        make_provisioner(bd, ctx).updates.apply(lambda d: d.spec.tags.append("x"))
        assert bd.spec.tags == []


# ---------------------------------------------------------------------------
# Filesystem provisioner
# ---------------------------------------------------------------------------

class TestFilesystemProvisioner:
    def test_skips_format_when_not_forced(self, ctx, executor):
        formatted, requeue = FilesystemProvisioner(make_device(), ctx).format("/dev/sdb1")
        assert (formatted, requeue) == (True, False)
        executor.execute.assert_not_called()

    def test_reformats_corrupted_filesystem(self, ctx, executor):
        bd = make_device(force_formatted=True, observed_mount="/mnt/a")
        bd.status.device_status.filesystem.last_formatted_at = "2024-01-01T00:00:00Z"
        bd.status.device_status.filesystem.corrupted = True
        prov = FilesystemProvisioner(bd, ctx)
        assert prov.format("/dev/sdb1") == (True, False)
        executor.execute.assert_any_call("umount", ["/mnt/a"])
        executor.execute.assert_any_call("mkfs.ext4", ["-F", "/dev/sdb1"])
        assert not prov.device.status.device_status.filesystem.corrupted

    def test_keeps_fs_uuid_without_wwn(self, ctx, executor):
        bd = make_device(force_formatted=True, wwn="", uuid="fs-1")
        FilesystemProvisioner(bd, ctx).format("/dev/sdb1")
        executor.execute.assert_called_once_with("mkfs.ext4", ["-F", "/dev/sdb1", "-U", "fs-1"])

    def test_default_mount_point(self, ctx):
        prov = FilesystemProvisioner(make_device(), ctx)
        assert prov.mount_point == os.path.join(ctx.extra_disk_dir, "dev-1")

    def test_provision_is_idempotent(self, ctx, store, backend_node):
        bd = make_device(mount_point="/mnt/a", tags=["ssd"])
        FilesystemProvisioner(bd, ctx).provision()
        prov = FilesystemProvisioner(bd, ctx)
        assert prov.provision() is False
        disks = backend_disks(store)
        assert list(disks) == ["dev-1"]
        assert disks["dev-1"].type == BackendDiskType.FILESYSTEM
        assert prov.device.status.is_condition_true(ConditionType.ADDED_TO_NODE)

    def test_unprovision_not_listed(self, ctx, backend_node):
        prov = FilesystemProvisioner(make_device(), ctx)
        assert prov.unprovision() is False
        assert not prov.device.status.is_condition_true(ConditionType.ADDED_TO_NODE)

    def test_unprovision_broken_disk_directly(self, ctx, store, executor, backend_node):
        put_backend_disk(store, "dev-1", "/mnt/a", tags=["ssd"])
        bd = make_device(observed_mount="/mnt/a")
        bd.status.state = DeviceState.INACTIVE
        assert FilesystemProvisioner(bd, ctx).unprovision() is False
        executor.execute.assert_called_once_with("umount", ["/mnt/a"], timeout=30.0)
        assert "dev-1" not in backend_disks(store)

    def test_unprovision_waits_for_replicas(self, ctx, store, backend_node):
        put_backend_disk(store, "dev-1", "/mnt/a", tags=[DISK_REMOVE_TAG])
        node = store.get(KIND_BACKEND_NODE, NAMESPACE, NODE)
        node.status.disk_status["dev-1"] = BackendDiskStatus(scheduled_replica={"r-1": 10})
        store.update(KIND_BACKEND_NODE, node)
        assert FilesystemProvisioner(make_device(), ctx).unprovision() is True
        assert "dev-1" in backend_disks(store)

    def test_update_syncs_tags(self, ctx, store, backend_node):
        put_backend_disk(store, "dev-1", "/mnt/a", tags=["foreign", "old"])
        ctx.disk_tags.update("dev-1", ["old"])
        bd = make_device(tags=["new"], conditions={ConditionType.ADDED_TO_NODE: True})
        assert FilesystemProvisioner(bd, ctx).update() is False
        assert backend_disks(store)["dev-1"].tags == ["foreign", "new"]
        assert ctx.disk_tags.get("dev-1") == ["new"]

    def test_update_skipped_before_added(self, ctx, store, backend_node):
        put_backend_disk(store, "dev-1", "/mnt/a", tags=["old"])
        FilesystemProvisioner(make_device(tags=["new"]), ctx).update()
        assert backend_disks(store)["dev-1"].tags == ["old"]


# ---------------------------------------------------------------------------
# Raw block provisioner
# ---------------------------------------------------------------------------

class TestRawBlockProvisioner:
    def test_bdf_for_virtio(self):
        bd = make_device(storage_controller=StorageController.VIRTIO.value, bus_path="pci-0000:00:05.0")
        assert resolve_block_dev_path(bd) == "0000:00:05.0"

    def test_wwn_path(self, dev_dir):
        path = dev_dir / "disk" / "by-id" / f"wwn-{WWN}"
        path.touch()
        assert resolve_block_dev_path(make_device(wwn=WWN), str(dev_dir)) == str(path)

    def test_partition_rejected(self):
        with pytest.raises(ProvisionerError, match="must be disk"):
            resolve_block_dev_path(make_device(device_type=DeviceType.PART))

    def test_unresolvable(self, dev_dir):
        with pytest.raises(ProvisionerError, match="no WWN and no BDF"):
            resolve_block_dev_path(make_device(wwn=""), str(dev_dir))

    def test_format_wipes(self, ctx, executor):
        prov = RawBlockProvisioner(make_device(kind="raw-block"), ctx)
        assert prov.format("/dev/sdb") == (True, False)
        executor.execute.assert_called_once_with("wipefs", ["-a", "/dev/sdb"])

    def test_provision_adds_block_disk(self, ctx, store, backend_node):
        bd = make_device(kind="raw-block", storage_controller=StorageController.NVME.value,
                         bus_path="pci-0000:01:00.0-nvme-1")
        assert RawBlockProvisioner(bd, ctx).provision() is False
        disk = backend_disks(store)["dev-1"]
        assert disk.type == BackendDiskType.BLOCK
        assert disk.path == "0000:01:00.0"
        assert disk.disk_driver == "auto"

    def test_update_syncs_driver(self, ctx, store, backend_node):
        put_backend_disk(store, "dev-1", "0000:00:05.0", disk_driver="auto")
        bd = make_device(kind="raw-block", conditions={ConditionType.ADDED_TO_NODE: True})
        bd.spec.provisioner.disk_driver = "aio"
        RawBlockProvisioner(bd, ctx).update()
        assert backend_disks(store)["dev-1"].disk_driver == "aio"


# ---------------------------------------------------------------------------
# LVM
# ---------------------------------------------------------------------------

class TestLVMHelpers:
    def test_pv_vg_map(self, executor):
        executor.execute.return_value = "  /dev/sdb vg1\n  /dev/sdc\n\n"
        assert lvm_helpers.get_pv_vg_map(executor) == {"/dev/sdb": "vg1", "/dev/sdc": ""}

    def test_last_member_removes_group(self, executor, lvm):
        lvm.pvs = {"/dev/sdb": "vg1"}
        lvm_helpers.wipe_lvm_metadata(executor, "/dev/sdb", "vg1")
        assert lvm.pvs == {}
        assert not lvm_helpers.vg_exists(executor, "vg1")

    def test_other_members_reduce_group(self, executor, lvm):
        lvm.pvs = {"/dev/sdb": "vg1", "/dev/sdc": "vg1"}
        lvm_helpers.wipe_lvm_metadata(executor, "/dev/sdb", "vg1")
        assert lvm.pvs == {"/dev/sdc": "vg1"}

    def test_command_failure_is_lvm_error(self, executor, lvm):
        lvm.fail_on["pvcreate"] = "device in use"
        with pytest.raises(lvm_helpers.LVMError, match="device in use"):
            lvm_helpers.create_pv(executor, "/dev/sdb")


class TestVolumeGroupProvisioner:
    def lvm_device(self, **kwargs):
        return make_device(kind="volume-group", vg_name="vg1", **kwargs)

    def test_requires_group_name(self, ctx):
        with pytest.raises(ProvisionerError, match="volume group name is required"):
            VolumeGroupProvisioner(make_device(kind="volume-group"), ctx)

    def test_group_name_from_parameters(self, ctx):
        bd = make_device(kind="volume-group")
        bd.spec.provisioner.parameters = {"vgName": "vg-param"}
        assert VolumeGroupProvisioner(bd, ctx).vg_name == "vg-param"

    def test_format_wipes_foreign_pv(self, ctx, executor, lvm):
        lvm.pvs = {"/dev/sdb": "old-vg"}
        prov = VolumeGroupProvisioner(self.lvm_device(), ctx)
        assert prov.format("/dev/sdb") == (True, False)
        assert "/dev/sdb" not in lvm.pvs
        executor.execute.assert_any_call("wipefs", ["-a", "/dev/sdb"])

    def test_provision_waits_for_active_group(self, ctx, store):
        prov = VolumeGroupProvisioner(self.lvm_device(), ctx)
        assert prov.provision() is True
        [vg] = store.list(KIND_VOLUME_GROUP, NAMESPACE)
        assert vg.name.startswith("vg1-")
        assert vg.spec.devices == {"dev-1": "/dev/sdb"}

        vg.status = LVMVolumeGroupStatus(status=VGStatus.ACTIVE, devices={"dev-1": "/dev/sdb"})
        store.update(KIND_VOLUME_GROUP, vg)

        prov = VolumeGroupProvisioner(self.lvm_device(), ctx)
        assert prov.provision() is False
        assert prov.device.status.is_condition_true(ConditionType.ADDED_TO_NODE)
        assert len(store.list(KIND_VOLUME_GROUP, NAMESPACE)) == 1

    def test_second_device_joins_existing_record(self, ctx, store):
        VolumeGroupProvisioner(self.lvm_device(), ctx).provision()
        VolumeGroupProvisioner(make_device("dev-2", dev_path="/dev/sdc", kind="volume-group", vg_name="vg1"),
                               ctx).provision()
        [vg] = store.list(KIND_VOLUME_GROUP, NAMESPACE)
        assert vg.spec.devices == {"dev-1": "/dev/sdb", "dev-2": "/dev/sdc"}

    def test_unprovision_cycle(self, ctx, store):
        VolumeGroupProvisioner(self.lvm_device(), ctx).provision()
        prov = VolumeGroupProvisioner(self.lvm_device(), ctx)
        assert prov.backend_path() == "/dev/sdb"
        assert prov.unprovision() is True
        [vg] = store.list(KIND_VOLUME_GROUP, NAMESPACE)
        assert vg.spec.devices == {}

        prov = VolumeGroupProvisioner(self.lvm_device(), ctx)
        assert prov.unprovision() is False
        assert store.list(KIND_VOLUME_GROUP, NAMESPACE) == []
        assert prov.backend_path() is None

    def test_update_activates_group(self, ctx, executor, lvm):
        VolumeGroupProvisioner(self.lvm_device(), ctx).provision()
        bd = self.lvm_device(conditions={ConditionType.ADDED_TO_NODE: True})
        assert VolumeGroupProvisioner(bd, ctx).update() is False
        assert lvm.active == {"vg1": True}

    def test_update_failure_is_provisioner_error(self, ctx, lvm):
        VolumeGroupProvisioner(self.lvm_device(), ctx).provision()
        lvm.fail_on["vgchange"] = "boom"
        bd = self.lvm_device(conditions={ConditionType.ADDED_TO_NODE: True})
        with pytest.raises(ProvisionerError, match="boom"):
            VolumeGroupProvisioner(bd, ctx).update()


def test_command_error_message():
    err = CommandError(["mount", "/dev/sdb"], 32, "wrong fs type\n")
    assert str(err) == "command mount /dev/sdb failed: wrong fs type"
    assert CommandError(["true"], 1).stderr == ""
