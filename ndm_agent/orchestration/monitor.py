"""
Hot-plug monitor for Node Disk Agent.
This module listens to kernel block device uevents through pyudev and wakes
the scanner. Added devices go through the exclude filters first; removals
always wake it.
"""
import logging
import threading
from typing import Callable, Optional

import pyudev

from ndm_agent.block.info import BlockInfo
from ndm_agent.filter.loader import FilterConfigLoader

logger = logging.getLogger("ndm-agent")

DEVTYPE_DISK = "disk"
DEVTYPE_PARTITION = "partition"
POLL_TIMEOUT = 1.0


class InjectedMonitorError(OSError):
    """Test hook: simulated failure of the uevent socket."""

    pass


class HotplugMonitor:
    """Background uevent listener, restarted after a backoff when the socket fails."""

    def __init__(
        self,
        block_info: BlockInfo,
        loader: FilterConfigLoader,
        wake: Callable[[], None],
        inject_error: bool = False,
        restart_delay: float = 5.0,
    ):
        self.block_info = block_info
        self.loader = loader
        self.wake = wake
        self.restart_delay = restart_delay
        self._inject_error = inject_error
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.restarts = 0

    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, name="ndm-udev-monitor", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=POLL_TIMEOUT * 5)
            self._thread = None

    def run(self) -> None:
        while not self._stop.is_set():
            try:
                self._watch()
            except Exception:
                self.restarts += 1
                logger.exception("udev monitor failed, restarting in %.1fs", self.restart_delay)
                self._stop.wait(self.restart_delay)

    def _watch(self) -> None:
        context = pyudev.Context()
        monitor = pyudev.Monitor.from_netlink(context)
        monitor.filter_by(subsystem="block")
        monitor.start()
        logger.info("udev monitor started")
        while not self._stop.is_set():
            self._maybe_inject_error()
            device = monitor.poll(timeout=POLL_TIMEOUT)
            if device is None:
                continue
            parent = device.find_parent("block", DEVTYPE_DISK)
            self.handle_event(
                device.action,
                device.properties.get("DEVTYPE", ""),
                device.device_node or "",
                parent.device_node if parent is not None else "",
            )

    def _maybe_inject_error(self) -> None:
        if self._inject_error:
            # fires once per process
            self._inject_error = False
            raise InjectedMonitorError("injected udev monitor error")

    def handle_event(self, action: str, devtype: str, dev_path: str, parent_path: str = "") -> bool:
        """Process one uevent. Returns True when the scanner was woken."""
        if not dev_path or devtype not in (DEVTYPE_DISK, DEVTYPE_PARTITION):
            return False
        if action == "remove":
            logger.info("Block device %s removed", dev_path)
            self.wake()
            return True
        if action != "add":
            return False
        if self._excluded(devtype, dev_path, parent_path):
            logger.debug("Ignoring added device %s, excluded by filters", dev_path)
            return False
        logger.info("Block device %s added", dev_path)
        self.wake()
        return True

    def _excluded(self, devtype: str, dev_path: str, parent_path: str) -> bool:
        engine, _ = self.loader.build()
        if devtype == DEVTYPE_DISK:
            disk = self.block_info.get_disk_by_dev_path(dev_path)
            return disk is not None and engine.apply_exclude_filter_for_disk(disk)
        if not parent_path:
            return False
        part = self.block_info.get_partition_by_dev_path(parent_path, dev_path)
        return part is not None and engine.apply_exclude_filter_for_partition(part)
