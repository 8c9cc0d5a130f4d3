"""
Helper functions for LVM operations.
"""

import logging
from typing import Dict, List

from ndm_agent.utils.command import CommandError, Executor

logger = logging.getLogger("ndm-agent")


class LVMError(Exception):
    """LVM command failure."""

    pass


def get_pv_vg_map(executor: Executor) -> Dict[str, str]:
    """Map every physical volume to its volume group ("" when the PV is unassigned)."""
    try:
        out = executor.execute("pvs", ["--noheadings", "-o", "pv_name,vg_name"])
    except CommandError as e:
        raise LVMError(f"Failed to list physical volumes: {e}") from e
    result: Dict[str, str] = {}
    for line in out.splitlines():
        fields = line.split()
        if not fields:
            continue
        result[fields[0]] = fields[1] if len(fields) > 1 else ""
    return result


def vg_exists(executor: Executor, vg: str) -> bool:
    """Check if a volume group exists."""
    try:
        out = executor.execute("vgs", ["--noheadings", "-o", "vg_name", vg])
        return vg in out.split()
    except CommandError as e:
        logger.debug("Volume group %s not found: %s", vg, e)
        return False


def pvs_of_vg(executor: Executor, vg: str) -> List[str]:
    return [pv for pv, owner in get_pv_vg_map(executor).items() if owner == vg]


def _run(executor: Executor, cmd: str, args: List[str], action: str) -> None:
    try:
        logger.info("%s: %s %s", action, cmd, " ".join(args))
        executor.execute(cmd, args)
    except CommandError as e:
        raise LVMError(f"Failed to {action}: {e}") from e


def create_pv(executor: Executor, dev_path: str) -> None:
    _run(executor, "pvcreate", [dev_path], f"create physical volume {dev_path}")


def remove_pv(executor: Executor, dev_path: str) -> None:
    _run(executor, "pvremove", [dev_path], f"remove physical volume {dev_path}")


def create_vg(executor: Executor, vg: str, dev_paths: List[str]) -> None:
    _run(executor, "vgcreate", [vg, *dev_paths], f"create volume group {vg}")


def extend_vg(executor: Executor, vg: str, dev_path: str) -> None:
    _run(executor, "vgextend", [vg, dev_path], f"extend volume group {vg} with {dev_path}")


def reduce_vg(executor: Executor, vg: str, dev_path: str) -> None:
    _run(executor, "vgreduce", [vg, dev_path], f"remove {dev_path} from volume group {vg}")


def remove_vg(executor: Executor, vg: str) -> None:
    _run(executor, "vgremove", ["--force", vg], f"remove volume group {vg}")


def activate_vg(executor: Executor, vg: str, active: bool = True) -> None:
    flag = "y" if active else "n"
    _run(executor, "vgchange", ["--activate", flag, vg], f"set activation of volume group {vg} to {flag}")


def wipe_lvm_metadata(executor: Executor, dev_path: str, vg: str) -> None:
    """Detach `dev_path` from `vg` (removing the group when it is the last member) and drop its PV label."""
    if vg:
        if len(pvs_of_vg(executor, vg)) > 1:
            reduce_vg(executor, vg, dev_path)
        else:
            remove_vg(executor, vg)
    remove_pv(executor, dev_path)
