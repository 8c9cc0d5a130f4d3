#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""API routes module for Node Disk Agent."""
from typing import Any, Dict, Optional

from fastapi import FastAPI

from ndm_agent.models import BackendNodeStatusRequest, DeviceIntentRequest
from ndm_agent.orchestration import DiskManager

from .handlers import APIHandlers


def register_routes(app: FastAPI, manager: DiskManager, agent_config: Optional[Dict[str, Any]] = None) -> None:
    """Register all API routes with the FastAPI application."""
    handlers = APIHandlers(manager, agent_config)

    # Health and info endpoints
    @app.get("/healthz")
    def healthz():
        return handlers.healthz()

    @app.get("/v1")
    def v1_index():
        return handlers.v1_index()

    @app.get("/v1/config/effective")
    def v1_config_effective():
        return handlers.v1_config_effective()

    # Device endpoints
    @app.get("/v1/devices")
    def v1_list_devices(state: Optional[str] = None, phase: Optional[str] = None):
        return handlers.v1_list_devices(state, phase)

    @app.get("/v1/devices/{name}")
    def v1_get_device(name: str):
        return handlers.v1_get_device(name)

    @app.patch("/v1/devices/{name}")
    def v1_update_device(name: str, req: DeviceIntentRequest):
        return handlers.v1_update_device(name, req)

    @app.post("/v1/devices/{name}/retry")
    def v1_retry_device(name: str):
        return handlers.v1_retry_device(name)

    @app.post("/v1/rescan")
    def v1_rescan():
        return handlers.v1_rescan()

    # Volume group and backend endpoints
    @app.get("/v1/volumegroups")
    def v1_list_volume_groups():
        return handlers.v1_list_volume_groups()

    @app.get("/v1/backend/nodes/{name}")
    def v1_get_backend_node(name: str):
        return handlers.v1_get_backend_node(name)

    @app.put("/v1/backend/nodes/{name}/status")
    def v1_put_backend_node_status(name: str, req: BackendNodeStatusRequest):
        return handlers.v1_put_backend_node_status(name, req)
