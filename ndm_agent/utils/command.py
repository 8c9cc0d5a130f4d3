"""
Helper functions for running host commands.
When the agent runs in a container with the host's /proc mounted, commands are
executed inside the host mount namespace through nsenter.
"""

import logging
import os
import subprocess
from typing import List, Optional, Sequence

logger = logging.getLogger("ndm-agent")

HOST_PROC_PATH = "/host/proc"
DEFAULT_COMMAND_TIMEOUT = 300.0


class CommandError(Exception):
    """External command failure."""

    def __init__(self, cmd: Sequence[str], returncode: Optional[int], stderr: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        detail = self.stderr or f"exit code {returncode}"
        super().__init__(f"command {' '.join(self.cmd)} failed: {detail}")


def host_namespace_path(proc_path: str) -> str:
    """Namespace directory of the host init process under `proc_path`."""
    return os.path.join(proc_path, "1", "ns") + "/"


def host_mounts_path(proc_path: str) -> str:
    return os.path.join(proc_path, "1", "mounts")


def is_host_proc_mounted(proc_path: str = HOST_PROC_PATH) -> bool:
    return os.path.isdir(os.path.join(proc_path, "1", "ns"))


class Executor:
    """Run commands, optionally entering the namespaces under `namespace_path`."""

    def __init__(self, namespace_path: str = "", timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.namespace_path = namespace_path
        self.timeout = timeout

    def _build(self, cmd: str, args: Sequence[str]) -> List[str]:
        if not self.namespace_path:
            return [cmd, *args]
        ns = self.namespace_path
        return [
            "nsenter",
            f"--mount={ns}mnt",
            f"--net={ns}net",
            f"--ipc={ns}ipc",
            cmd,
            *args,
        ]

    def execute(self, cmd: str, args: Sequence[str] = (), timeout: Optional[float] = None) -> str:
        """Run `cmd args...` and return stdout. Raise CommandError on non-zero exit or timeout."""
        argv = self._build(cmd, [str(a) for a in args])
        logger.debug("Executing %s", " ".join(argv))
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandError(argv, None, f"timed out after {e.timeout}s") from e
        except OSError as e:
            raise CommandError(argv, None, str(e)) from e
        if result.returncode != 0:
            raise CommandError(argv, result.returncode, result.stderr or result.stdout)
        return result.stdout


def new_executor(host_proc: str = HOST_PROC_PATH, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> Executor:
    """Executor entering the host namespaces when the host's /proc is available."""
    if is_host_proc_mounted(host_proc):
        return Executor(host_namespace_path(host_proc), timeout)
    return Executor("", timeout)
