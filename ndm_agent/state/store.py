"""
Record store for Node Disk Agent.
Versioned, namespaced object store holding device, volume group and backend
node records. Every update carries the resource version it was read at; a
stale version is rejected with ConflictError.
"""
import logging
import random
import string
import threading
from typing import Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel

from ndm_agent.models import BackendNode, BlockDevice, LVMVolumeGroup

logger = logging.getLogger("ndm-agent")

KIND_BLOCK_DEVICE = "blockdevices"
KIND_VOLUME_GROUP = "lvmvolumegroups"
KIND_BACKEND_NODE = "nodes"

RECORD_TYPES: Dict[str, Type[BaseModel]] = {
    KIND_BLOCK_DEVICE: BlockDevice,
    KIND_VOLUME_GROUP: LVMVolumeGroup,
    KIND_BACKEND_NODE: BackendNode,
}

EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"

WatchCallback = Callable[[str, BaseModel], None]


class StoreError(Exception):
    """Generic record store error."""

    pass


class NotFoundError(StoreError):
    pass


class AlreadyExistsError(StoreError):
    pass


class ConflictError(StoreError):
    """Raised when an update is based on a stale resource version."""

    pass


def _random_suffix(length: int = 5) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


def match_labels(labels: Dict[str, str], selector: Optional[Dict[str, str]]) -> bool:
    if not selector:
        return True
    return all(labels.get(k) == v for k, v in selector.items())


class RecordStore:
    """In-process record store with get/list/create/update/delete/watch per kind."""

    def __init__(self):
        self._lock = threading.RLock()
        self._records: Dict[str, Dict[Tuple[str, str], BaseModel]] = {kind: {} for kind in RECORD_TYPES}
        self._watchers: Dict[str, List[WatchCallback]] = {kind: [] for kind in RECORD_TYPES}
        self._global_watchers: List[WatchCallback] = []

    def _bucket(self, kind: str) -> Dict[Tuple[str, str], BaseModel]:
        if kind not in self._records:
            raise StoreError(f"Unknown record kind: {kind}")
        return self._records[kind]

    def get(self, kind: str, namespace: str, name: str) -> BaseModel:
        with self._lock:
            obj = self._bucket(kind).get((namespace, name))
            if obj is None:
                raise NotFoundError(f"{kind} {namespace}/{name} not found")
            return obj.model_copy(deep=True)

    def list(self, kind: str, namespace: str, selector: Optional[Dict[str, str]] = None) -> List[BaseModel]:
        with self._lock:
            items = [
                obj.model_copy(deep=True)
                for (ns, _), obj in self._bucket(kind).items()
                if ns == namespace and match_labels(obj.metadata.labels, selector)
            ]
        return sorted(items, key=lambda o: o.metadata.name)

    def create(self, kind: str, obj: BaseModel) -> BaseModel:
        meta = obj.metadata
        with self._lock:
            bucket = self._bucket(kind)
            if not meta.name:
                if not meta.generate_name:
                    raise StoreError(f"{kind}: name or generate_name is required")
                name = f"{meta.generate_name}{_random_suffix()}"
                while (meta.namespace, name) in bucket:
                    name = f"{meta.generate_name}{_random_suffix()}"
            else:
                name = meta.name
                if (meta.namespace, name) in bucket:
                    raise AlreadyExistsError(f"{kind} {meta.namespace}/{name} already exists")
            stored = obj.model_copy(deep=True)
            stored.metadata.name = name
            stored.metadata.resource_version = 1
            bucket[(meta.namespace, name)] = stored
            result = stored.model_copy(deep=True)
        self._notify(kind, EVENT_ADDED, result)
        return result

    def update(self, kind: str, obj: BaseModel) -> BaseModel:
        meta = obj.metadata
        with self._lock:
            bucket = self._bucket(kind)
            current = bucket.get((meta.namespace, meta.name))
            if current is None:
                raise NotFoundError(f"{kind} {meta.namespace}/{meta.name} not found")
            if current.metadata.resource_version != meta.resource_version:
                raise ConflictError(
                    f"{kind} {meta.namespace}/{meta.name}: resource version {meta.resource_version} "
                    f"is stale (current {current.metadata.resource_version})"
                )
            stored = obj.model_copy(deep=True)
            stored.metadata.resource_version = current.metadata.resource_version + 1
            bucket[(meta.namespace, meta.name)] = stored
            result = stored.model_copy(deep=True)
        self._notify(kind, EVENT_MODIFIED, result)
        return result

    def delete(self, kind: str, namespace: str, name: str) -> None:
        with self._lock:
            obj = self._bucket(kind).pop((namespace, name), None)
        if obj is None:
            raise NotFoundError(f"{kind} {namespace}/{name} not found")
        self._notify(kind, EVENT_DELETED, obj)

    def watch(self, kind: str, callback: WatchCallback) -> None:
        """Register a callback invoked with (event_type, record) after every change of `kind`."""
        with self._lock:
            self._bucket(kind)
            self._watchers[kind].append(callback)

    def watch_all(self, callback: WatchCallback) -> None:
        with self._lock:
            self._global_watchers.append(callback)

    def _notify(self, kind: str, event: str, obj: BaseModel) -> None:
        with self._lock:
            callbacks = list(self._watchers[kind]) + list(self._global_watchers)
        for cb in callbacks:
            try:
                cb(event, obj.model_copy(deep=True))
            except Exception as e:
                logger.exception("Watch callback for %s %s failed: %s", kind, obj.metadata.name, e)

    def snapshot(self) -> Dict[str, List[Dict]]:
        """Serialize all records to plain JSON-compatible data."""
        with self._lock:
            return {
                kind: [obj.model_dump(mode="json") for obj in bucket.values()]
                for kind, bucket in self._records.items()
            }

    def restore(self, data: Dict[str, List[Dict]]) -> int:
        """Load records from a snapshot without notifying watchers. Returns the number restored."""
        count = 0
        with self._lock:
            for kind, items in (data or {}).items():
                model = RECORD_TYPES.get(kind)
                if model is None:
                    logger.warning("Skipping unknown record kind in snapshot: %s", kind)
                    continue
                for item in items:
                    obj = model.model_validate(item)
                    self._records[kind][(obj.metadata.namespace, obj.metadata.name)] = obj
                    count += 1
        return count


def update_with_retry(
    get: Callable[[], BaseModel],
    mutate: Callable[[BaseModel], None],
    put: Callable[[BaseModel], BaseModel],
) -> BaseModel:
    """Read-modify-write with optimistic concurrency.

    `mutate` is applied to a fresh copy returned by `get`. When `put` reports a
    version conflict the record is read again and the same mutation is applied
    exactly once more; a second conflict is raised to the caller. Unchanged
    records are not written.
    """
    current = get()
    desired = current.model_copy(deep=True)
    mutate(desired)
    if desired == current:
        return current
    try:
        return put(desired)
    except ConflictError as e:
        logger.debug("Conflict updating %s, retrying once: %s", current.metadata.name, e)
    current = get()
    desired = current.model_copy(deep=True)
    mutate(desired)
    if desired == current:
        return current
    return put(desired)


class RecordClient:
    """Binds a store, a kind and a namespace for the common single-kind calls."""

    def __init__(self, store: RecordStore, kind: str, namespace: str):
        self.store = store
        self.kind = kind
        self.namespace = namespace

    def get(self, name: str):
        return self.store.get(self.kind, self.namespace, name)

    def list(self, selector: Optional[Dict[str, str]] = None):
        return self.store.list(self.kind, self.namespace, selector)

    def create(self, obj):
        obj.metadata.namespace = self.namespace
        return self.store.create(self.kind, obj)

    def update(self, obj):
        return self.store.update(self.kind, obj)

    def delete(self, name: str) -> None:
        self.store.delete(self.kind, self.namespace, name)

    def update_with_retry(self, name: str, mutate: Callable[[BaseModel], None]):
        return update_with_retry(lambda: self.get(name), mutate, self.update)
