#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
CLI commands module for Node Disk Agent.
This module contains the command-line commands for inspecting discovery,
identities and persisted records without starting the agent.
"""
import logging
from typing import Any, Dict, Optional

from ndm_agent.block.identity import generate_disk_guid, generate_partition_guid
from ndm_agent.block.info import BlockInfo
from ndm_agent.block.mounts import default_mounts_path
from ndm_agent.config import ConfigManager
from ndm_agent.filter.loader import find_auto_provision_rule
from ndm_agent.models import UNKNOWN, AgentOptions, Disk, Partition
from ndm_agent.orchestration.manager import filter_loader_from_options
from ndm_agent.state.manager import StateManager
from ndm_agent.utils.command import new_executor
from ndm_agent.utils.validation import fail, succeed

logger = logging.getLogger("ndm-agent")


class CLICommands:
    """CLI commands handler."""

    def __init__(self, agent_config: Optional[Dict[str, Any]] = None, options: Optional[AgentOptions] = None):
        config_manager = ConfigManager()
        self.agent_config = agent_config if agent_config is not None else config_manager.load_agent_config()
        self._options = options

    @property
    def options(self) -> AgentOptions:
        if self._options is None:
            self._options = ConfigManager.to_options(self.agent_config)
        return self._options

    def discover(self, block_info: Optional[BlockInfo] = None):
        """Print every discovered disk with its GUID and filter verdicts."""
        try:
            opts = self.options
            if block_info is None:
                block_info = BlockInfo(
                    mounts_path=default_mounts_path(opts.host_proc),
                    executor=new_executor(opts.host_proc, opts.command_timeout),
                )
            engine, rules = filter_loader_from_options(opts).build()
            disks = []
            for disk in block_info.get_disks():
                rule = find_auto_provision_rule(rules, disk) if engine.apply_auto_provision_filters(disk) else None
                disks.append(
                    {
                        "dev_path": disk.dev_path,
                        "guid": generate_disk_guid(disk, opts.node_name),
                        "wwn": disk.wwn,
                        "vendor": disk.vendor,
                        "model": disk.model,
                        "serial_number": disk.serial_number,
                        "size_bytes": disk.size_bytes,
                        "drive_type": disk.drive_type.value,
                        "excluded": engine.apply_exclude_filter_for_disk(disk),
                        "auto_provision": rule.kind.value if rule else None,
                        "partitions": [
                            {
                                "dev_path": part.dev_path,
                                "guid": generate_partition_guid(part, opts.node_name),
                                "excluded": engine.apply_exclude_filter_for_partition(part),
                                "mount_point": part.file_system_info.mount_point,
                            }
                            for part in disk.partitions
                        ],
                    }
                )
        except RuntimeError as e:
            fail(f"Discovery failed: {e}")
        succeed({"status": "success", "node": opts.node_name, "disks": disks, "count": len(disks)})

    def guid(
        self,
        node_name: str,
        wwn: str = "",
        vendor: str = "",
        model: str = "",
        serial: str = "",
        uuid: str = "",
        pt_uuid: str = "",
        part_uuid: str = "",
    ):
        """Derive the GUID a device with these identifiers would get."""
        if part_uuid:
            guid = generate_partition_guid(Partition(name="", disk_name="", part_uuid=part_uuid), node_name)
        else:
            disk = Disk(
                name="",
                wwn=wwn or UNKNOWN,
                vendor=vendor or UNKNOWN,
                model=model or UNKNOWN,
                serial_number=serial or UNKNOWN,
                uuid=uuid,
                pt_uuid=pt_uuid,
            )
            guid = generate_disk_guid(disk, node_name)
        if not guid:
            fail("No stable identifier given: pass a WWN, a filesystem UUID, a partition table UUID or a PARTUUID")
        succeed({"status": "success", "guid": guid})

    def records(self, kind: Optional[str] = None):
        """Print the record snapshot persisted in the run directory."""
        run_dir = self.agent_config.get("host", {}).get("run_dir", "")
        if not run_dir:
            fail("run_dir is not configured")
        data = StateManager(run_dir).load_records()
        if kind:
            data = {kind: data.get(kind, [])}
        succeed({"status": "success", "records": data})
