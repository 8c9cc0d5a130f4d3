"""
Shared provisioner state.
One ProvisionerContext is built by the agent at start-up and handed to every
provisioner; it owns the backend tag cache, the format token pool and the
volume group creation lock.
"""
import logging
import threading
from typing import Dict, Iterable, List, Optional

from ndm_agent.models import BlockDevice
from ndm_agent.state.store import RecordStore
from ndm_agent.utils.command import Executor

logger = logging.getLogger("ndm-agent")


class DiskTags:
    """Last-known backend tags per device, guarded by a reader/writer style lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self._tags: Dict[str, List[str]] = {}
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self, devices: Iterable[BlockDevice]) -> None:
        """Seed the cache from existing records. Only the first call has any effect."""
        with self._lock:
            if self._initialized:
                return
            for bd in devices:
                if bd.spec.filesystem.provisioned or bd.spec.provision:
                    self._tags[bd.name] = list(bd.spec.tags)
            self._initialized = True
            logger.debug("Disk tag cache initialized with %d devices", len(self._tags))

    def update(self, name: str, tags: Iterable[str]) -> None:
        with self._lock:
            self._tags[name] = list(tags)

    def get(self, name: str) -> Optional[List[str]]:
        with self._lock:
            tags = self._tags.get(name)
            return list(tags) if tags is not None else None

    def delete(self, name: str) -> None:
        with self._lock:
            self._tags.pop(name, None)

    def dev_exist(self, name: str) -> bool:
        with self._lock:
            return name in self._tags


class TokenPool:
    """Bounded counting semaphore whose acquire never blocks."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("token pool capacity must be at least 1")
        self.capacity = capacity
        self._sem = threading.BoundedSemaphore(capacity)

    def acquire(self) -> bool:
        return self._sem.acquire(blocking=False)

    def release(self) -> bool:
        try:
            self._sem.release()
            return True
        except ValueError:
            logger.warning("Token pool released more times than acquired")
            return False


class ProvisionerContext:
    """Dependencies and shared state of the provisioners."""

    def __init__(
        self,
        store: RecordStore,
        namespace: str,
        node_name: str,
        executor: Executor,
        max_concurrent_ops: int = 5,
        dev_dir: str = "/dev",
        extra_disk_dir: str = "/var/lib/harvester/extra-disks",
    ):
        self.store = store
        self.namespace = namespace
        self.node_name = node_name
        self.executor = executor
        self.dev_dir = dev_dir
        self.extra_disk_dir = extra_disk_dir
        self.disk_tags = DiskTags()
        self.format_tokens = TokenPool(max_concurrent_ops)
        self.vg_lock = threading.Lock()
