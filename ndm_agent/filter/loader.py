"""
Filter configuration loader.
Reads the node's exclude and auto-provision rules from a YAML document with
two keys, `filters` and `autoprovision`. Each key holds a list of entries
scoped by `hostname`: "*" (or empty) applies to every node, anything else is
matched against the node name as a glob. Global entries come first and host
entries are appended to them.

The loader never raises: a missing document, a missing key or a parse error
falls back to the process defaults.
"""
import dataclasses
import fnmatch
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ndm_agent.models import PROVISIONER_ALIASES, ProvisionerKind

from .filters import (
    FilterEngine,
    build_auto_provision_filters,
    build_exclude_filters,
    dedup,
    device_path_filter,
    split_csv,
)

logger = logging.getLogger("ndm-agent")

FILTERS_KEY = "filters"
AUTOPROVISION_KEY = "autoprovision"
GLOBAL_HOSTNAME = "*"


@dataclasses.dataclass
class FilterSettings:
    vendors: List[str] = dataclasses.field(default_factory=list)
    paths: List[str] = dataclasses.field(default_factory=list)
    labels: List[str] = dataclasses.field(default_factory=list)
    devices: List[str] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class AutoProvisionRule:
    devices: List[str]
    kind: ProvisionerKind = ProvisionerKind.FILESYSTEM
    params: Dict[str, str] = dataclasses.field(default_factory=dict)


def hostname_matches(pattern: str, node_name: str) -> bool:
    if pattern in ("", GLOBAL_HOSTNAME):
        return True
    return pattern == node_name or fnmatch.fnmatchcase(node_name, pattern)


def _entries_for_node(entries: Any, node_name: str) -> List[Dict[str, Any]]:
    """Entries applying to `node_name`, global ones first."""
    if not isinstance(entries, list):
        return []
    global_entries, host_entries = [], []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        hostname = str(entry.get("hostname") or "")
        if hostname in ("", GLOBAL_HOSTNAME):
            global_entries.append(entry)
        elif hostname_matches(hostname, node_name):
            host_entries.append(entry)
    return global_entries + host_entries


def _parse_kind(name: Any, default: ProvisionerKind) -> ProvisionerKind:
    if not name:
        return default
    name = str(name).lower()
    if name in PROVISIONER_ALIASES:
        return PROVISIONER_ALIASES[name]
    try:
        return ProvisionerKind(name)
    except ValueError:
        logger.warning("Unknown provisioner %r in auto-provision config, using %s", name, default.value)
        return default


class FilterConfigLoader:
    """Loads filter and auto-provision settings for one node."""

    def __init__(
        self,
        node_name: str,
        config_file: str = "",
        default_filters: Optional[FilterSettings] = None,
        default_auto_provision: Optional[List[str]] = None,
        default_kind: ProvisionerKind = ProvisionerKind.FILESYSTEM,
    ):
        self.node_name = node_name
        self.config_file = config_file
        self.default_filters = default_filters or FilterSettings()
        self.default_auto_provision = default_auto_provision or []
        self.default_kind = default_kind

    def load_document(self) -> Optional[Dict[str, Any]]:
        if not self.config_file:
            return None
        path = Path(self.config_file)
        try:
            if not path.exists():
                logger.debug("Filter config %s not found, using defaults", path)
                return None
            with path.open("r", encoding="utf-8") as f:
                doc = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Failed to load filter config %s, using defaults: %s", path, e)
            return None
        if not isinstance(doc, dict):
            logger.warning("Filter config %s is not a mapping, using defaults", path)
            return None
        return doc

    @staticmethod
    def _section(doc: Optional[Dict[str, Any]], key: str) -> Optional[List[Any]]:
        """Return the list under `key`; values may also be embedded YAML strings."""
        if doc is None or key not in doc:
            return None
        value = doc[key]
        if isinstance(value, str):
            try:
                value = yaml.safe_load(value)
            except yaml.YAMLError as e:
                logger.warning("Failed to parse %s section, using defaults: %s", key, e)
                return None
        if value is None:
            return []
        if not isinstance(value, list):
            logger.warning("%s section is not a list, using defaults", key)
            return None
        return value

    def load_filters(self) -> FilterSettings:
        return self.filters_from(self.load_document())

    def load_auto_provision(self) -> List[AutoProvisionRule]:
        return self.auto_provision_from(self.load_document())

    def filters_from(self, doc: Optional[Dict[str, Any]]) -> FilterSettings:
        section = self._section(doc, FILTERS_KEY)
        if section is None:
            return self.default_filters
        settings = FilterSettings()
        for entry in _entries_for_node(section, self.node_name):
            settings.vendors += split_csv(entry.get("excludeVendors"))
            settings.paths += split_csv(entry.get("excludePaths"))
            settings.labels += split_csv(entry.get("excludeLabels"))
            settings.devices += split_csv(entry.get("excludeDevices"))
        return FilterSettings(
            vendors=dedup(settings.vendors),
            paths=dedup(settings.paths),
            labels=dedup(settings.labels),
            devices=dedup(settings.devices),
        )

    def auto_provision_from(self, doc: Optional[Dict[str, Any]]) -> List[AutoProvisionRule]:
        section = self._section(doc, AUTOPROVISION_KEY)
        if section is None:
            if not self.default_auto_provision:
                return []
            return [AutoProvisionRule(devices=list(self.default_auto_provision), kind=self.default_kind)]
        rules = []
        for entry in _entries_for_node(section, self.node_name):
            devices = split_csv(entry.get("devices"))
            if not devices:
                continue
            params = entry.get("params") or {}
            rules.append(
                AutoProvisionRule(
                    devices=devices,
                    kind=_parse_kind(entry.get("provisioner"), self.default_kind),
                    params={str(k): str(v) for k, v in params.items()} if isinstance(params, dict) else {},
                )
            )
        return rules

    def build(self):
        """Return (FilterEngine, auto-provision rules) from a single read of the document."""
        doc = self.load_document()
        settings = self.filters_from(doc)
        rules = self.auto_provision_from(doc)
        devices = [d for rule in rules for d in rule.devices]
        engine = FilterEngine(
            build_exclude_filters(settings.vendors, settings.paths, settings.labels, settings.devices),
            build_auto_provision_filters(devices),
        )
        return engine, rules


def find_auto_provision_rule(rules: List[AutoProvisionRule], disk) -> Optional[AutoProvisionRule]:
    """First rule whose device globs select `disk`."""
    for rule in rules:
        if device_path_filter(rule.devices).match_disk(disk):
            return rule
    return None
