#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Disk manager module for Node Disk Agent.
This module wires the record store, discovery, filters, scanner, hot-plug
monitor and controllers together and owns their start-up and shutdown order.
"""
import logging
from typing import Optional

from ndm_agent.backend.provisioner import ProvisionerContext
from ndm_agent.block.info import BlockInfo
from ndm_agent.block.mounts import default_mounts_path
from ndm_agent.filter.filters import split_csv
from ndm_agent.filter.loader import FilterConfigLoader, FilterSettings
from ndm_agent.models import LABEL_HOSTNAME, AgentOptions, BlockDevice
from ndm_agent.state.manager import StateManager
from ndm_agent.state.store import EVENT_DELETED, KIND_BLOCK_DEVICE, RecordStore
from ndm_agent.utils.command import Executor, new_executor

from .controller import DeviceController
from .effects import EffectsExecutor
from .monitor import HotplugMonitor
from .node import NodeController
from .scanner import Scanner
from .transitions import TransitionTable
from .volumegroup import VolumeGroupController

logger = logging.getLogger("ndm-agent")


def filter_loader_from_options(opts: AgentOptions) -> FilterConfigLoader:
    """Loader whose defaults come from the process-level filter options."""
    return FilterConfigLoader(
        node_name=opts.node_name,
        config_file=opts.filter_config_file,
        default_filters=FilterSettings(
            vendors=split_csv(opts.vendor_filter),
            paths=split_csv(opts.path_filter),
            labels=split_csv(opts.label_filter),
        ),
        default_auto_provision=split_csv(opts.auto_provision_filter),
        default_kind=opts.default_kind,
    )


class DiskManager:
    """Composition root of the agent's background machinery."""

    def __init__(
        self,
        options: AgentOptions,
        store: Optional[RecordStore] = None,
        executor: Optional[Executor] = None,
        block_info: Optional[BlockInfo] = None,
        enable_monitor: bool = True,
    ):
        self.options = options
        self.store = store or RecordStore()
        self.executor = executor or new_executor(options.host_proc, options.command_timeout)
        self.block_info = block_info or BlockInfo(
            mounts_path=default_mounts_path(options.host_proc),
            executor=self.executor,
        )
        self.state_manager = StateManager(options.run_dir)
        self.ctx = ProvisionerContext(
            store=self.store,
            namespace=options.namespace,
            node_name=options.node_name,
            executor=self.executor,
            max_concurrent_ops=options.max_concurrent_ops,
            dev_dir=options.dev_dir,
            extra_disk_dir=options.extra_disk_dir,
        )
        self.loader = filter_loader_from_options(options)
        self.scanner = Scanner(self.ctx, self.block_info, self.loader, options.rescan_interval)
        self.transitions = TransitionTable(self.ctx, self.block_info, options.enqueue_delay)
        self.effects = EffectsExecutor(
            self.ctx,
            enqueue_delay=options.enqueue_delay,
            max_workers=max(options.controller_workers, options.max_concurrent_ops),
            on_topology_change=self.scanner.wake,
        )
        self.devices = DeviceController(self.ctx, self.transitions, self.effects, options.controller_workers)
        self.volume_groups = VolumeGroupController(self.ctx, options.enqueue_delay)
        self.nodes = NodeController(self.ctx)
        self.monitor: Optional[HotplugMonitor] = None
        if enable_monitor:
            self.monitor = HotplugMonitor(
                self.block_info,
                self.loader,
                self.scanner.wake,
                inject_error=options.inject_udev_monitor_error,
            )
        self.started = False

    def _on_device_event(self, event: str, bd: BlockDevice) -> None:
        if event == EVENT_DELETED and bd.metadata.labels.get(LABEL_HOSTNAME) == self.options.node_name:
            self.scanner.wake()

    def start(self) -> None:
        logger.info("Starting disk manager for node %s", self.options.node_name)
        self.state_manager.recover(self.store)
        if self.options.create_backend_node:
            self.nodes.ensure_node()
        self.ctx.disk_tags.initialize(
            bd for bd in self.store.list(KIND_BLOCK_DEVICE, self.options.namespace)
            if bd.spec.node_name == self.options.node_name
        )
        reset = self.devices.recover_in_flight()
        if reset:
            logger.info("Reset %d interrupted devices", reset)
        self.store.watch(KIND_BLOCK_DEVICE, self._on_device_event)
        self.nodes.start()
        self.volume_groups.start()
        self.devices.start()
        self.scanner.start()
        if self.monitor is not None:
            self.monitor.start()
        self.started = True
        logger.info("Disk manager started")

    def stop(self) -> None:
        if not self.started:
            return
        logger.info("Stopping disk manager")
        if self.monitor is not None:
            self.monitor.stop()
        self.scanner.stop()
        self.devices.stop()
        self.volume_groups.stop()
        self.effects.shutdown(wait=True)
        self.state_manager.save_records(self.store)
        self.started = False
        logger.info("Disk manager stopped")
