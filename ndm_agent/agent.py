#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# Licensed to the Apache Software Foundation (ASF) under one
# or more contributor license agreements.  See the NOTICE file
# distributed with this work for additional information
# regarding copyright ownership.  The ASF licenses this file
# to you under the Apache License, Version 2.0 (the
# "License"); you may not use this file except in compliance
# with the License.  You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE/2.0
#
# Unless required by applicable law or agreed to in writing,
# software distributed under the License is distributed on an
# "AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY
# KIND, either express or implied.  See the License for the
# specific language governing permissions and limitations
# under the License.
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import typer
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

from ndm_agent import __version__
from ndm_agent.api import register_routes
from ndm_agent.cli import CLICommands
from ndm_agent.config import ConfigManager
from ndm_agent.orchestration import DiskManager
from ndm_agent.state.store import AlreadyExistsError, ConflictError, NotFoundError

logger = logging.getLogger("ndm-agent")
logger.setLevel(logging.INFO)
_DEF_HANDLER_SET = False


def _apply_logging_from_cfg(cfg: Dict[str, Any]) -> None:
    """Apply logging configuration from agent config."""
    global _DEF_HANDLER_SET
    level = str(cfg.get("logging", {}).get("level", "INFO")).upper()
    logger.setLevel(getattr(logging, level, logging.INFO))
    if _DEF_HANDLER_SET:
        return
    # Add console handler if not present
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    _DEF_HANDLER_SET = True


def create_app(manager: DiskManager, agent_cfg: Optional[Dict[str, Any]] = None, manage_lifecycle: bool = True) -> FastAPI:
    """Build the API application around a disk manager.

    With `manage_lifecycle` the manager is started and stopped with the app.
    """
    app = FastAPI(title="Node Disk Agent", version=__version__)
    register_routes(app, manager, agent_cfg or {})

    # FastAPI event handlers
    @app.on_event("startup")
    async def startup_event():
        """Start discovery and reconciliation."""
        if manage_lifecycle:
            logger.info("Starting Node Disk Agent on node %s...", manager.options.node_name)
            manager.start()
            logger.info("Node Disk Agent started successfully")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop background work and persist records."""
        if manage_lifecycle:
            logger.info("Shutting down Node Disk Agent (mounts and backend disks are left in place)")
            manager.stop()
            logger.info("Node Disk Agent shut down")

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        """Log incoming requests immediately upon receipt."""
        logger.debug("%s %s", request.method, request.url.path)
        return await call_next(request)

    @app.get("/", include_in_schema=False)
    def root():
        return {"status": "ok", "message": "Node Disk Agent is running", "version": __version__}

    # Exception handlers
    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        logger.info("Not found: %s", exc)
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError):
        logger.warning("Conflict: %s", exc)
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.exception_handler(AlreadyExistsError)
    async def already_exists_handler(request: Request, exc: AlreadyExistsError):
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors."""
        logger.error("Validation error: %s", exc)
        return JSONResponse(status_code=422, content={"error": "Validation error", "detail": exc.errors()})

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions."""
        logger.error("HTTP error: %s", exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions."""
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return app


# CLI interface
cli = typer.Typer(help="Node Disk Agent: block device discovery and provisioning")


@cli.command()
def serve():
    """Run the agent and its HTTP API."""
    config_manager = ConfigManager()
    cfg = config_manager.load_agent_config()
    _apply_logging_from_cfg(cfg)
    options = ConfigManager.to_options(cfg)
    app = create_app(DiskManager(options), cfg)
    uvicorn.run(app, host=cfg["bind_host"], port=int(cfg["bind_port"]), reload=False)


@cli.command()
def discover():
    """Print discovered devices with their GUIDs and filter verdicts."""
    CLICommands().discover()


@cli.command()
def guid(
    node: str = typer.Option(..., help="Node name the GUID is scoped to"),
    wwn: str = "",
    vendor: str = "",
    model: str = "",
    serial: str = "",
    uuid: str = "",
    pt_uuid: str = "",
    part_uuid: str = "",
):
    """Derive the GUID of a device from its identifiers."""
    CLICommands(agent_config={}).guid(node, wwn, vendor, model, serial, uuid, pt_uuid, part_uuid)


@cli.command()
def records(kind: Optional[str] = typer.Option(None, help="blockdevices, lvmvolumegroups or nodes")):
    """Print the persisted record snapshot."""
    CLICommands().records(kind)


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
