from __future__ import annotations

from typing import Callable, List, Optional, Protocol, Tuple, runtime_checkable

from ndm_agent.models import BlockDevice

DeviceMutation = Callable[[BlockDevice], None]


class ProvisionerError(Exception):
    """Generic provisioner error.

    `requeue` marks backend-not-ready conditions that should be retried later
    instead of failing the device.
    """

    def __init__(self, message: str, requeue: bool = False):
        super().__init__(message)
        self.requeue = requeue


class DeviceUpdates:
    """Mutations a provisioner made to its device, replayable on a fresh record."""

    def __init__(self, device: BlockDevice):
        self.device = device
        self._mutations: List[DeviceMutation] = []

    def apply(self, mutation: DeviceMutation) -> None:
        mutation(self.device)
        self._mutations.append(mutation)

    def replay(self, record: BlockDevice) -> None:
        for mutation in self._mutations:
            mutation(record)

    def __len__(self) -> int:
        return len(self._mutations)


@runtime_checkable
class Provisioner(Protocol):
    """Contract for storage backend provisioners.
    Semantics:
      - format(dev_path): prepare the device for the backend; returns (formatted, requeue).
      - unformat(): undo host-side preparation that must not outlive provisioning; returns requeue.
      - provision(): add the device to the backend (idempotent); returns requeue.
      - unprovision(): remove the device from the backend (idempotent, no-op when absent); returns requeue.
      - update(): reconcile backend-side settings of a provisioned device; returns requeue.
      - backend_path(): path the backend records for the device, None when it is not listed.
    Notes:
      - Changes to the device record are applied through `updates` and written back by the caller.
      - Raise ProvisionerError for failures; requeue=True marks a backend that is not ready yet.
    """

    device: BlockDevice
    updates: DeviceUpdates
    needs_mount: bool

    def format(self, dev_path: str) -> Tuple[bool, bool]:
        ...

    def unformat(self) -> bool:
        ...

    def provision(self) -> bool:
        ...

    def unprovision(self) -> bool:
        ...

    def update(self) -> bool:
        ...

    def backend_path(self) -> Optional[str]:
        ...
