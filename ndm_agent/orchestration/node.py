"""
Backend node controller.
Mirrors the backend's disk tags into the matching device records and drops
the node's device records when its backend node record is deleted.
"""
import logging

from ndm_agent.backend.provisioner import ProvisionerContext
from ndm_agent.models import LABEL_HOSTNAME, BackendNode, BlockDevice, ObjectMeta
from ndm_agent.state.store import (
    EVENT_DELETED,
    KIND_BACKEND_NODE,
    KIND_BLOCK_DEVICE,
    NotFoundError,
    RecordClient,
    StoreError,
)

logger = logging.getLogger("ndm-agent")


class NodeController:
    def __init__(self, ctx: ProvisionerContext):
        self.ctx = ctx
        self.devices = RecordClient(ctx.store, KIND_BLOCK_DEVICE, ctx.namespace)
        self.nodes = RecordClient(ctx.store, KIND_BACKEND_NODE, ctx.namespace)

    def start(self) -> None:
        self.ctx.store.watch(KIND_BACKEND_NODE, self.on_event)

    def ensure_node(self) -> BackendNode:
        """Create an empty backend node record for this node when none exists."""
        try:
            return self.nodes.get(self.ctx.node_name)
        except NotFoundError:
            logger.info("Creating backend node record %s", self.ctx.node_name)
            return self.nodes.create(BackendNode(metadata=ObjectMeta(name=self.ctx.node_name)))

    def on_event(self, event: str, node: BackendNode) -> None:
        if node.name != self.ctx.node_name:
            return
        if event == EVENT_DELETED:
            self.remove_devices()
            return
        self.sync_tags(node)

    def sync_tags(self, node: BackendNode) -> int:
        """Copy each backend disk's tags to status.tags of its device. Returns the number changed."""
        changed = 0
        for name, disk in node.spec.disks.items():
            tags = list(disk.tags)

            def apply(d: BlockDevice, tags=tags) -> None:
                d.status.tags = tags

            try:
                before = self.devices.get(name)
                if before.status.tags == tags:
                    continue
                self.devices.update_with_retry(name, apply)
                changed += 1
            except NotFoundError:
                continue
            except StoreError as e:
                logger.warning("Failed to mirror backend tags of %s: %s", name, e)
        return changed

    def remove_devices(self) -> int:
        logger.info("Backend node %s deleted, removing its device records", self.ctx.node_name)
        removed = 0
        for bd in self.devices.list({LABEL_HOSTNAME: self.ctx.node_name}):
            try:
                self.devices.delete(bd.name)
                removed += 1
            except NotFoundError:
                continue
        return removed
