# State module for record storage and persistence
from .manager import StateManager
from .store import (
    KIND_BACKEND_NODE,
    KIND_BLOCK_DEVICE,
    KIND_VOLUME_GROUP,
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    RecordClient,
    RecordStore,
    StoreError,
    update_with_retry,
)

__all__ = [
    "StateManager",
    "RecordStore",
    "RecordClient",
    "StoreError",
    "NotFoundError",
    "AlreadyExistsError",
    "ConflictError",
    "update_with_retry",
    "KIND_BLOCK_DEVICE",
    "KIND_VOLUME_GROUP",
    "KIND_BACKEND_NODE",
]
