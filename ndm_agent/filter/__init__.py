# Filter engine for device exclusion and auto-provisioning
from .filters import (
    BIOS_BOOT_PART_TYPE,
    Filter,
    FilterEngine,
    build_auto_provision_filters,
    build_exclude_filters,
    device_path_filter,
    drive_type_filter,
    label_filter,
    part_type_filter,
    path_filter,
    split_csv,
    vendor_filter,
)
from .loader import AutoProvisionRule, FilterConfigLoader, FilterSettings, find_auto_provision_rule

__all__ = [
    "BIOS_BOOT_PART_TYPE",
    "Filter",
    "FilterEngine",
    "FilterConfigLoader",
    "FilterSettings",
    "AutoProvisionRule",
    "find_auto_provision_rule",
    "build_exclude_filters",
    "build_auto_provision_filters",
    "device_path_filter",
    "drive_type_filter",
    "label_filter",
    "part_type_filter",
    "path_filter",
    "vendor_filter",
    "split_csv",
]
