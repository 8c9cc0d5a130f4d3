# Orchestration module for device discovery and provisioning
from .controller import DeviceController
from .effects import EffectsExecutor
from .manager import DiskManager, filter_loader_from_options
from .monitor import HotplugMonitor
from .node import NodeController
from .scanner import Scanner, ScanResult, WakeSignal
from .transitions import Effect, EffectKind, TransitionTable
from .volumegroup import VolumeGroupController

__all__ = [
    "DeviceController",
    "DiskManager",
    "Effect",
    "EffectKind",
    "EffectsExecutor",
    "HotplugMonitor",
    "NodeController",
    "ScanResult",
    "Scanner",
    "TransitionTable",
    "VolumeGroupController",
    "WakeSignal",
    "filter_loader_from_options",
]
