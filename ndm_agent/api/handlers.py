#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
API handlers module for Node Disk Agent.
This module contains the API endpoint handlers for device, volume group and
backend node records.
"""
import dataclasses
import logging
import os
from typing import Any, Dict, List, Optional

import psutil
from fastapi import HTTPException

from ndm_agent import __version__
from ndm_agent.backend.provisioner import needs_mount
from ndm_agent.backend.provisioner.common import extra_disk_mount_point
from ndm_agent.models import (
    BackendNode,
    BackendNodeStatusRequest,
    BlockDevice,
    ConditionType,
    DeviceIntentRequest,
    ProvisionerKind,
    ProvisionPhase,
)
from ndm_agent.orchestration import DiskManager
from ndm_agent.state.store import KIND_BACKEND_NODE, KIND_BLOCK_DEVICE, KIND_VOLUME_GROUP, RecordClient

logger = logging.getLogger("ndm-agent")


class APIHandlers:

    def __init__(self, manager: DiskManager, agent_config: Optional[Dict[str, Any]] = None):
        self.manager = manager
        self.agent_config = agent_config or {}
        namespace = manager.options.namespace
        self.devices = RecordClient(manager.store, KIND_BLOCK_DEVICE, namespace)
        self.volume_groups = RecordClient(manager.store, KIND_VOLUME_GROUP, namespace)
        self.nodes = RecordClient(manager.store, KIND_BACKEND_NODE, namespace)

    def healthz(self) -> Dict[str, Any]:
        """Health check endpoint."""
        return {"status": "healthy", "message": "Node Disk Agent is running", "node": self.manager.options.node_name}

    def v1_index(self) -> Dict[str, Any]:
        """API index endpoint."""
        return {
            "status": "success",
            "message": "Node Disk Agent API",
            "version": __version__,
            "endpoints": [
                "/v1/devices",
                "/v1/devices/{name}",
                "PATCH /v1/devices/{name}",
                "/v1/devices/{name}/retry",
                "/v1/rescan",
                "/v1/volumegroups",
                "/v1/backend/nodes/{name}",
                "PUT /v1/backend/nodes/{name}/status",
                "/v1/config/effective",
                "/healthz",
            ],
        }

    def v1_config_effective(self) -> Dict[str, Any]:
        """Get effective configuration."""
        return {
            "status": "success",
            "config": self.agent_config,
            "options": dataclasses.asdict(self.manager.options),
        }

    # Devices

    def v1_list_devices(self, state: Optional[str] = None, phase: Optional[str] = None) -> Dict[str, Any]:
        devices: List[Dict[str, Any]] = []
        for bd in self.devices.list():
            if state and bd.status.state.value != state:
                continue
            if phase and bd.status.provision_phase.value != phase:
                continue
            devices.append(bd.model_dump(mode="json"))
        return {"status": "success", "message": f"Found {len(devices)} devices", "devices": devices, "count": len(devices)}

    def v1_get_device(self, name: str) -> Dict[str, Any]:
        bd = self.devices.get(name)
        return {"status": "success", "device": bd.model_dump(mode="json"), "usage": self._mount_usage(bd)}

    @staticmethod
    def _mount_usage(bd: BlockDevice) -> Optional[Dict[str, Any]]:
        mount_point = bd.status.device_status.filesystem.mount_point
        if not mount_point or not os.path.isdir(mount_point):
            return None
        try:
            usage = psutil.disk_usage(mount_point)
        except OSError as e:
            logger.debug("Failed to read usage of %s: %s", mount_point, e)
            return None
        return {"total": usage.total, "used": usage.used, "free": usage.free, "percent": usage.percent}

    def v1_update_device(self, name: str, req: DeviceIntentRequest) -> Dict[str, Any]:
        """Apply the declared intent of a device, validated the way an admission check would."""
        current = self.devices.get(name)
        self._validate_intent(current, req)
        extra_disk_dir = self.manager.options.extra_disk_dir

        def apply(bd: BlockDevice) -> None:
            if req.provisioner is not None:
                bd.spec.provisioner = req.provisioner.model_copy(deep=True)
            if req.force_formatted is not None:
                bd.spec.filesystem.force_formatted = req.force_formatted
            if req.provisioned is not None:
                bd.spec.filesystem.provisioned = req.provisioned
            if req.provision is not None:
                bd.spec.provision = req.provision
            if req.mount_point is not None:
                bd.spec.filesystem.mount_point = req.mount_point
            if req.tags is not None:
                bd.spec.tags = list(dict.fromkeys(req.tags))
            wants = bd.spec.provision or bd.spec.filesystem.provisioned
            if wants and needs_mount(bd.provisioner_kind) and not bd.spec.filesystem.mount_point:
                bd.spec.filesystem.mount_point = extra_disk_mount_point(bd, extra_disk_dir)

        bd = self.devices.update_with_retry(name, apply)
        logger.info("Updated intent of device %s", name)
        return {"status": "success", "message": f"Device {name} updated", "device": bd.model_dump(mode="json")}

    @staticmethod
    def _validate_intent(current: BlockDevice, req: DeviceIntentRequest) -> None:
        settled = current.status.provision_phase in (ProvisionPhase.UNPROVISIONED, ProvisionPhase.FAILED)
        if req.provisioner is not None:
            if req.provisioner.kind != current.provisioner_kind and not settled:
                raise HTTPException(
                    status_code=400,
                    detail=f"cannot change the provisioner of device {current.name} in phase "
                    f"{current.status.provision_phase.value}",
                )
        provisioner = req.provisioner or current.spec.provisioner
        if provisioner is not None and provisioner.kind == ProvisionerKind.VOLUME_GROUP:
            if not (provisioner.vg_name or provisioner.parameters.get("vgName")):
                raise HTTPException(status_code=400, detail="volume-group provisioner requires a vg_name")
        if req.mount_point is not None and req.mount_point and not os.path.isabs(req.mount_point):
            raise HTTPException(status_code=400, detail=f"mount point must be absolute: {req.mount_point}")

    def v1_retry_device(self, name: str) -> Dict[str, Any]:
        """Move a Failed device back to Unprovisioned so its intent is re-evaluated."""
        current = self.devices.get(name)
        if current.status.provision_phase != ProvisionPhase.FAILED:
            raise HTTPException(
                status_code=409,
                detail=f"device {name} is {current.status.provision_phase.value}, only Failed devices can be retried",
            )

        def reset(bd: BlockDevice) -> None:
            bd.status.provision_phase = ProvisionPhase.UNPROVISIONED
            bd.status.set_condition(ConditionType.FAILED, False, "Retried by operator")

        self.devices.update_with_retry(name, reset)
        logger.info("Device %s reset for retry", name)
        return {"status": "success", "message": f"Device {name} will be retried"}

    def v1_rescan(self) -> Dict[str, Any]:
        result = self.manager.scanner.scan_once()
        return {"status": "success", "result": dataclasses.asdict(result)}

    # Volume groups and backend

    def v1_list_volume_groups(self) -> Dict[str, Any]:
        vgs = [vg.model_dump(mode="json") for vg in self.volume_groups.list()]
        return {"status": "success", "volumegroups": vgs, "count": len(vgs)}

    def v1_get_backend_node(self, name: str) -> Dict[str, Any]:
        return {"status": "success", "node": self.nodes.get(name).model_dump(mode="json")}

    def v1_put_backend_node_status(self, name: str, req: BackendNodeStatusRequest) -> Dict[str, Any]:
        """Record the backend's per-disk replica report."""

        def apply(node: BackendNode) -> None:
            node.status.disk_status = {k: v.model_copy(deep=True) for k, v in req.disk_status.items()}

        node = self.nodes.update_with_retry(name, apply)
        return {"status": "success", "node": node.model_dump(mode="json")}
