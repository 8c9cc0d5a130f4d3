"""Tests for the device controller, its work queue and the backend node controller."""

import threading
from unittest.mock import MagicMock

import pytest
from conftest import NAMESPACE, NODE, make_device, put_backend_disk

from ndm_agent.models import (
    LABEL_HOSTNAME,
    LABEL_PARENT_DEVICE,
    ConditionType,
    DeviceState,
    DeviceType,
    ProvisionPhase,
)
from ndm_agent.orchestration.controller import DeviceController
from ndm_agent.orchestration.node import NodeController
from ndm_agent.orchestration.transitions import Effect, EffectKind, TransitionTable
from ndm_agent.orchestration.workqueue import WorkQueue
from ndm_agent.state.store import EVENT_DELETED, KIND_BACKEND_NODE, KIND_BLOCK_DEVICE

P = ProvisionPhase


@pytest.fixture
def effects():
    return MagicMock()


@pytest.fixture
def controller(ctx, effects):
    table = TransitionTable(ctx, MagicMock(), enqueue_delay=3.0)
    ctl = DeviceController(ctx, table, effects, workers=1)
    ctl.queue = MagicMock()
    return ctl


def stored(store, name="dev-1"):
    return store.get(KIND_BLOCK_DEVICE, NAMESPACE, name)


# ---------------------------------------------------------------------------
# Work queue
# ---------------------------------------------------------------------------

class TestWorkQueue:
    def test_deduplicates_pending_names(self):
        q = WorkQueue()
        q.add("a")
        q.add("a")
        q.add("b")
        assert len(q) == 2
        assert q.get(timeout=0) == "a"

    def test_name_added_while_processing_is_redelivered_after_done(self):
        q = WorkQueue()
        q.add("a")
        assert q.get(timeout=0) == "a"
        q.add("a")
        assert q.get(timeout=0) is None
        q.done("a")
        assert q.get(timeout=0) == "a"

    def test_get_times_out(self):
        assert WorkQueue().get(timeout=0.01) is None

    def test_shutdown_wakes_waiters(self):
        q = WorkQueue()
        results = []
        t = threading.Thread(target=lambda: results.append(q.get(timeout=5)))
        t.start()
        q.shutdown()
        t.join(timeout=2)
        assert results == [None]
        q.add("a")
        assert len(q) == 0

    def test_add_after(self):
        q = WorkQueue()
        q.add_after("now", 0)
        assert q.get(timeout=0) == "now"
        q.add_after("later", 0.01)
        assert q.get(timeout=2) == "later"


# ---------------------------------------------------------------------------
# Device controller
# ---------------------------------------------------------------------------

class TestDeviceController:
    def test_records_phase_and_dispatches_effect(self, controller, effects, store, add_device):
        add_device(phase=P.FORMATTED, mount_point="/mnt/a")
        controller.sync("dev-1")

        bd = stored(store)
        assert bd.status.provision_phase == P.MOUNTING
        assert bd.status.is_condition_true(ConditionType.MOUNTING)
        effects.dispatch.assert_called_once_with(Effect(EffectKind.MOUNT, target="/mnt/a"), "dev-1")

    def test_phase_only_transition(self, controller, effects, store, add_device):
        add_device(phase=P.MOUNTED, mount_point="/mnt/a")
        controller.sync("dev-1")
        assert stored(store).status.provision_phase == P.FORMATTED
        effects.dispatch.assert_not_called()

    def test_no_change_is_not_written(self, controller, effects, store, add_device):
        add_device()
        controller.sync("dev-1")
        assert stored(store).metadata.resource_version == 1
        effects.dispatch.assert_not_called()

    def test_enqueue_effect_uses_queue(self, ctx, effects, add_device):
        table = MagicMock()
        table.next.return_value = (P.PARTITIONED, Effect(EffectKind.ENQUEUE, delay=3.0))
        ctl = DeviceController(ctx, table, effects)
        ctl.queue = MagicMock()
        add_device(phase=P.PARTITIONED)
        ctl.sync("dev-1")
        ctl.queue.add_after.assert_called_once_with("dev-1", 3.0)
        effects.dispatch.assert_not_called()

    def test_other_nodes_are_ignored(self, controller, effects, store, add_device):
        bd = make_device("remote", phase=P.FORMATTED, mount_point="/mnt/a")
        bd.spec.node_name = "node-2"
        store.create(KIND_BLOCK_DEVICE, bd)
        controller.sync("remote")
        controller.on_event("MODIFIED", stored(store, "remote"))
        effects.dispatch.assert_not_called()
        controller.queue.add.assert_not_called()

    def test_missing_record(self, controller, effects):
        controller.sync("gone")
        effects.dispatch.assert_not_called()

    def test_events_enqueue(self, controller, add_device):
        bd = add_device()
        controller.on_event("MODIFIED", bd)
        controller.queue.add.assert_called_once_with("dev-1")

    def test_delete_event_triggers_cleanup(self, controller, add_device):
        controller.on_delete = MagicMock()
        bd = add_device()
        controller.on_event(EVENT_DELETED, bd)
        controller.on_delete.assert_called_once_with(bd)


class TestRestartRecovery:
    def test_in_flight_devices_are_reset(self, controller, store, add_device):
        add_device(phase=P.MOUNTING, mount_point="/mnt/a", conditions={ConditionType.MOUNTING: True})
        add_device(name="dev-2", phase=P.PROVISIONED)
        assert controller.recover_in_flight() == 1

        bd = stored(store)
        assert bd.status.provision_phase == P.FORMATTED
        assert not bd.status.is_condition_true(ConditionType.MOUNTING)
        assert stored(store, "dev-2").metadata.resource_version == 1


class TestDeleteCleanup:
    def test_releases_backend_disk(self, controller, ctx, store, backend_node, add_device):
        put_backend_disk(store, "dev-1", "/mnt/a")
        ctx.disk_tags.update("dev-1", ["ssd"])
        bd = add_device(phase=P.PROVISIONED, mount_point="/mnt/a", observed_mount="/mnt/a", provisioned=True)

        controller._cleanup(bd)

        assert "dev-1" not in store.get(KIND_BACKEND_NODE, NAMESPACE, NODE).spec.disks
        assert ctx.disk_tags.get("dev-1") is None

    def test_unlisted_device_is_a_noop(self, controller, ctx, store, backend_node, add_device, executor):
        controller._cleanup(add_device())
        executor.execute.assert_not_called()

    def test_disk_removal_deletes_partition_records(self, controller, store, backend_node, add_device):
        disk = add_device()
        child = make_device("part-1", device_type=DeviceType.PART, dev_path="/dev/sdb1")
        child.metadata.labels[LABEL_PARENT_DEVICE] = disk.name
        store.create(KIND_BLOCK_DEVICE, child)
        add_device(name="other")

        controller._cleanup(disk)
        assert sorted(bd.name for bd in store.list(KIND_BLOCK_DEVICE, NAMESPACE)) == ["dev-1", "other"]


# ---------------------------------------------------------------------------
# Backend node controller
# ---------------------------------------------------------------------------

class TestNodeController:
    def test_ensure_node_is_idempotent(self, ctx, store):
        nodes = NodeController(ctx)
        first = nodes.ensure_node()
        second = nodes.ensure_node()
        assert first.name == second.name == NODE
        assert len(store.list(KIND_BACKEND_NODE, NAMESPACE)) == 1

    def test_mirrors_backend_tags(self, ctx, store, backend_node, add_device):
        add_device()
        node = put_backend_disk(store, "dev-1", "/mnt/a", tags=["ssd", "fast"])
        put_backend_disk(store, "unknown-disk", "/mnt/b")
        nodes = NodeController(ctx)
        assert nodes.sync_tags(store.get(KIND_BACKEND_NODE, NAMESPACE, NODE)) == 1
        assert stored(store).status.tags == ["ssd", "fast"]
        assert nodes.sync_tags(node) == 0

    def test_node_deletion_removes_device_records(self, ctx, store, backend_node, add_device):
        add_device()
        remote = make_device("remote")
        remote.metadata.labels[LABEL_HOSTNAME] = "node-2"
        store.create(KIND_BLOCK_DEVICE, remote)
        nodes = NodeController(ctx)
        nodes.start()
        store.delete(KIND_BACKEND_NODE, NAMESPACE, NODE)
        assert [bd.name for bd in store.list(KIND_BLOCK_DEVICE, NAMESPACE)] == ["remote"]

    def test_inactive_state_untouched_by_tag_sync(self, ctx, store, backend_node, add_device):
        bd = add_device()
        bd.status.state = DeviceState.INACTIVE
        store.update(KIND_BLOCK_DEVICE, bd)
        put_backend_disk(store, "dev-1", "/mnt/a", tags=["x"])
        NodeController(ctx).sync_tags(store.get(KIND_BACKEND_NODE, NAMESPACE, NODE))
        assert stored(store).status.state == DeviceState.INACTIVE
