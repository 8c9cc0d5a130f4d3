#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration management module for Node Disk Agent.
This module handles agent configuration loading and its conversion into the
runtime options of the disk manager.
"""
import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from ndm_agent.models import PROVISIONER_ALIASES, AgentOptions, ProvisionerKind

logger = logging.getLogger("ndm-agent")

CONFIG_ENV = "NDM_AGENT_CONFIG"
DEFAULT_CONFIG_PATH = "/etc/ndm-agent/agent.json"

DEFAULTS: Dict[str, Any] = {
    "bind_host": "0.0.0.0",
    "bind_port": 8090,
    "node_name": "",
    "namespace": "longhorn-system",
    "host": {
        "run_dir": "/var/run/ndm-agent",
        "dev_dir": "/dev",
        "host_proc": "/host/proc",
    },
    "filters": {
        "vendor": "",
        "path": "",
        "label": "",
        "auto_provision": "",
        "config_file": "/etc/ndm-agent/filters.yaml",
    },
    "provisioning": {
        "max_concurrent_ops": 5,
        "rescan_interval": 30,
        "enqueue_delay": 10,
        "command_timeout": 300,
        "extra_disk_dir": "/var/lib/harvester/extra-disks",
        "default_kind": ProvisionerKind.FILESYSTEM.value,
        "controller_workers": 4,
    },
    "monitor": {"inject_error": False},
    "create_backend_node": True,
    "logging": {"level": "INFO"},
}

# env var -> (section or None for top level, key, converter)
ENV_OVERRIDES = {
    "NODE_NAME": (None, "node_name", str),
    "NDM_NAMESPACE": (None, "namespace", str),
    "NDM_BIND_HOST": (None, "bind_host", str),
    "NDM_BIND_PORT": (None, "bind_port", int),
    "NDM_VENDOR_FILTER": ("filters", "vendor", str),
    "NDM_PATH_FILTER": ("filters", "path", str),
    "NDM_LABEL_FILTER": ("filters", "label", str),
    "NDM_AUTO_PROVISION_FILTER": ("filters", "auto_provision", str),
    "NDM_FILTER_CONFIG": ("filters", "config_file", str),
    "NDM_MAX_CONCURRENT_OPS": ("provisioning", "max_concurrent_ops", int),
    "NDM_RESCAN_INTERVAL": ("provisioning", "rescan_interval", float),
    "NDM_INJECT_UDEV_MONITOR_ERROR": ("monitor", "inject_error", lambda v: v.strip().lower() in ("1", "true", "yes")),
    "NDM_LOG_LEVEL": ("logging", "level", str),
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


class ConfigManager:
    """Manager for configuration operations."""

    def __init__(self, environ: Optional[Dict[str, str]] = None):
        self.environ = os.environ if environ is None else environ

    @property
    def config_path(self) -> str:
        return self.environ.get(CONFIG_ENV, DEFAULT_CONFIG_PATH)

    def load_agent_config(self) -> Dict[str, Any]:
        """Load agent config.
        Precedence: env > JSON file (NDM_AGENT_CONFIG) > built-in defaults.
        A file with invalid JSON, or an env override that does not convert,
        is fatal: the agent does not start with a config it cannot read.
        """
        cfg = copy.deepcopy(DEFAULTS)
        cfg_path = self.config_path
        p = Path(cfg_path)
        if p.exists():
            with p.open("r", encoding="utf-8") as f:
                try:
                    file_cfg = json.load(f)
                except ValueError as e:
                    raise RuntimeError(f"Invalid JSON in {CONFIG_ENV}='{cfg_path}': {e}") from e
            if not isinstance(file_cfg, dict):
                raise RuntimeError(f"{CONFIG_ENV}='{cfg_path}' must contain a JSON object")
            _merge(cfg, file_cfg)
            logger.debug("Loaded agent config from %s", cfg_path)

        for env, (section, key, convert) in ENV_OVERRIDES.items():
            raw = self.environ.get(env)
            if raw is None or raw == "":
                continue
            try:
                value = convert(raw)
            except ValueError as e:
                raise RuntimeError(f"Invalid value for {env}: {raw!r}") from e
            target = cfg if section is None else cfg.setdefault(section, {})
            target[key] = value
        return cfg

    @staticmethod
    def to_options(cfg: Dict[str, Any]) -> AgentOptions:
        """Build the disk manager options; the node name is mandatory."""
        node_name = cfg.get("node_name") or ""
        if not node_name:
            raise RuntimeError("node name is required (set NODE_NAME or node_name in the config file)")
        host = cfg.get("host", {})
        filters = cfg.get("filters", {})
        prov = cfg.get("provisioning", {})
        kind_name = str(prov.get("default_kind", ProvisionerKind.FILESYSTEM.value))
        try:
            default_kind = PROVISIONER_ALIASES.get(kind_name) or ProvisionerKind(kind_name)
        except ValueError as e:
            raise RuntimeError(f"Unknown provisioner kind in config: {kind_name}") from e
        max_ops = int(prov.get("max_concurrent_ops", 5))
        if max_ops < 1:
            raise RuntimeError("provisioning.max_concurrent_ops must be at least 1")
        return AgentOptions(
            node_name=node_name,
            namespace=cfg.get("namespace") or "longhorn-system",
            run_dir=host.get("run_dir", ""),
            dev_dir=host.get("dev_dir", "/dev"),
            host_proc=host.get("host_proc", "/host/proc"),
            vendor_filter=filters.get("vendor", ""),
            path_filter=filters.get("path", ""),
            label_filter=filters.get("label", ""),
            auto_provision_filter=filters.get("auto_provision", ""),
            filter_config_file=filters.get("config_file", ""),
            max_concurrent_ops=max_ops,
            rescan_interval=float(prov.get("rescan_interval", 30)),
            enqueue_delay=float(prov.get("enqueue_delay", 10)),
            command_timeout=float(prov.get("command_timeout", 300)),
            extra_disk_dir=prov.get("extra_disk_dir", "/var/lib/harvester/extra-disks"),
            default_kind=default_kind,
            inject_udev_monitor_error=bool(cfg.get("monitor", {}).get("inject_error", False)),
            controller_workers=int(prov.get("controller_workers", 4)),
            create_backend_node=bool(cfg.get("create_backend_node", True)),
        )
