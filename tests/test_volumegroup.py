"""Tests for the LVM volume group controller."""

from unittest.mock import MagicMock

import pytest
from conftest import NAMESPACE, NODE

from ndm_agent.models import (
    LABEL_VG_NODE,
    LVMVolumeGroup,
    LVMVolumeGroupSpec,
    ObjectMeta,
    VGDesiredState,
    VGStatus,
)
from ndm_agent.orchestration.volumegroup import CONDITION_READY, VolumeGroupController
from ndm_agent.state.store import EVENT_DELETED, KIND_VOLUME_GROUP


@pytest.fixture
def controller(ctx, lvm):
    ctl = VolumeGroupController(ctx, requeue_delay=2.0)
    ctl.queue = MagicMock()
    return ctl


def make_vg(store, devices, node=NODE, name="vg1-abcde", **spec):
    vg = LVMVolumeGroup(
        metadata=ObjectMeta(name=name, namespace=NAMESPACE, labels={LABEL_VG_NODE: node}),
        spec=LVMVolumeGroupSpec(node_name=node, vg_name="vg1", devices=dict(devices), **spec),
    )
    return store.create(KIND_VOLUME_GROUP, vg)


def set_spec(store, name="vg1-abcde", **fields):
    vg = store.get(KIND_VOLUME_GROUP, NAMESPACE, name)
    for key, value in fields.items():
        setattr(vg.spec, key, value)
    return store.update(KIND_VOLUME_GROUP, vg)


def status(store, name="vg1-abcde"):
    return store.get(KIND_VOLUME_GROUP, NAMESPACE, name).status


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

class TestReconcile:
    def test_creates_group_and_activates(self, controller, store, lvm):
        make_vg(store, {"dev-1": "/dev/sdb"}, parameters="--physicalextentsize 4M")
        controller.sync("vg1-abcde")

        assert lvm.pvs == {"/dev/sdb": "vg1"}
        assert lvm.active == {"vg1": True}
        st = status(store)
        assert st.status == VGStatus.ACTIVE
        assert st.devices == {"dev-1": "/dev/sdb"}
        assert st.parameters == "--physicalextentsize 4M"
        assert st.is_condition_true(CONDITION_READY)

    def test_extends_existing_group(self, controller, store, lvm):
        make_vg(store, {"dev-1": "/dev/sdb"})
        controller.sync("vg1-abcde")
        set_spec(store, devices={"dev-1": "/dev/sdb", "dev-2": "/dev/sdc"})
        controller.sync("vg1-abcde")

        assert lvm.pvs == {"/dev/sdb": "vg1", "/dev/sdc": "vg1"}
        assert status(store).devices == {"dev-1": "/dev/sdb", "dev-2": "/dev/sdc"}

    def test_removed_device_leaves_group(self, controller, store, lvm):
        make_vg(store, {"dev-1": "/dev/sdb", "dev-2": "/dev/sdc"})
        controller.sync("vg1-abcde")
        set_spec(store, devices={"dev-2": "/dev/sdc"})
        controller.sync("vg1-abcde")

        assert lvm.pvs == {"/dev/sdc": "vg1"}
        assert status(store).devices == {"dev-2": "/dev/sdc"}
        assert status(store).status == VGStatus.ACTIVE

    def test_last_device_removes_group(self, controller, store, lvm):
        make_vg(store, {"dev-1": "/dev/sdb"})
        controller.sync("vg1-abcde")
        set_spec(store, devices={})
        controller.sync("vg1-abcde")

        assert lvm.pvs == {}
        assert status(store).devices == {}
        assert status(store).status == VGStatus.INACTIVE

    def test_disabled_group_is_deactivated(self, controller, store, lvm):
        make_vg(store, {"dev-1": "/dev/sdb"})
        controller.sync("vg1-abcde")
        set_spec(store, desired_state=VGDesiredState.DISABLED)
        controller.sync("vg1-abcde")

        assert lvm.active == {"vg1": False}
        assert status(store).status == VGStatus.INACTIVE

    def test_lvm_failure_marks_not_ready_and_requeues(self, controller, store, lvm):
        lvm.fail_on["pvcreate"] = "Can't open /dev/sdb exclusively"
        make_vg(store, {"dev-1": "/dev/sdb"})
        controller.sync("vg1-abcde")

        cond = status(store).get_condition(CONDITION_READY)
        assert not cond.status
        assert "exclusively" in cond.message
        controller.queue.add_after.assert_called_once_with("vg1-abcde", 2.0)

    def test_missing_record(self, controller, executor):
        controller.sync("nope")
        executor.execute.assert_not_called()


# ---------------------------------------------------------------------------
# Events and removal
# ---------------------------------------------------------------------------

class TestEvents:
    def test_local_events_enqueue(self, controller, store):
        vg = make_vg(store, {})
        controller.on_event("ADDED", vg)
        controller.queue.add.assert_called_once_with("vg1-abcde")

    def test_other_nodes_are_ignored(self, controller, store, executor):
        vg = make_vg(store, {"dev-1": "/dev/sdb"}, node="node-2")
        controller.on_event("ADDED", vg)
        controller.sync(vg.name)
        controller.queue.add.assert_not_called()
        executor.execute.assert_not_called()

    def test_delete_removes_host_group(self, controller, store, lvm):
        make_vg(store, {"dev-1": "/dev/sdb", "dev-2": "/dev/sdc"})
        controller.sync("vg1-abcde")
        vg = store.get(KIND_VOLUME_GROUP, NAMESPACE, "vg1-abcde")
        controller.on_event(EVENT_DELETED, vg)
        assert lvm.pvs == {}

    def test_remove_failure_is_logged(self, controller, store, lvm):
        make_vg(store, {"dev-1": "/dev/sdb"})
        controller.sync("vg1-abcde")
        lvm.fail_on["vgremove"] = "busy"
        controller.remove_vg(store.get(KIND_VOLUME_GROUP, NAMESPACE, "vg1-abcde"))
        assert lvm.pvs == {"/dev/sdb": "vg1"}
