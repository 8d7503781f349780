"""Platform-specific port-to-PID introspection and forced termination."""

from __future__ import annotations

import logging
import re
import subprocess
import sys

from workbench.errors import PlatformCommandFailedError

logger = logging.getLogger(__name__)

# Timeout for each introspection/kill command
COMMAND_TIMEOUT = 5  # seconds

# netstat -ano row: proto, local address, foreign address, [state], pid
_NETSTAT_ROW = re.compile(r"^\s*(TCP|UDP)\s+(\S+)\s+(\S+)\s+(?:\S+\s+)?(\d+)\s*$", re.IGNORECASE)


class PortFreer:
    """Finds the processes bound to a port and terminates them."""

    def find_pids(self, port: int) -> list[int]:
        raise NotImplementedError

    def kill_pid(self, pid: int) -> None:
        raise NotImplementedError

    def free(self, port: int) -> list[int]:
        """Terminate every process bound to the port.

        Freeing an already-free port is a no-op.

        Args:
            port: Local TCP port

        Returns:
            PIDs that a kill was issued for
        """
        pids = self.find_pids(port)
        if not pids:
            logger.debug(f"Port {port} already free")
            return []

        killed = []
        for pid in pids:
            try:
                self.kill_pid(pid)
                killed.append(pid)
            except PlatformCommandFailedError as e:
                logger.warning(f"Could not kill PID {pid} on port {port}: {e}")
        logger.info(f"Freed port {port} (PIDs: {killed})")
        return killed


def _run(args: list[str]) -> subprocess.CompletedProcess:
    """Run an OS command, mapping launch failures to PlatformCommandFailedError."""
    try:
        return subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=COMMAND_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise PlatformCommandFailedError(f"Failed to run {args[0]}: {e}") from e


class PosixPortFreer(PortFreer):
    """lsof + kill -9."""

    def find_pids(self, port: int) -> list[int]:
        result = _run(["lsof", "-t", "-i", f":{port}"])
        # lsof exits 1 with empty output when nothing matches
        return parse_lsof_output(result.stdout)

    def kill_pid(self, pid: int) -> None:
        result = _run(["kill", "-9", str(pid)])
        if result.returncode != 0:
            raise PlatformCommandFailedError(
                f"kill -9 {pid} failed: {result.stderr.strip() or result.returncode}"
            )


class WindowsPortFreer(PortFreer):
    """netstat -ano + taskkill /F."""

    def find_pids(self, port: int) -> list[int]:
        result = _run(["netstat", "-ano"])
        return parse_netstat_output(result.stdout, port)

    def kill_pid(self, pid: int) -> None:
        result = _run(["taskkill", "/F", "/PID", str(pid)])
        if result.returncode != 0:
            raise PlatformCommandFailedError(
                f"taskkill {pid} failed: {result.stderr.strip() or result.returncode}"
            )


def parse_lsof_output(output: str) -> list[int]:
    """Parse `lsof -t` output into unique PIDs, in order."""
    pids: list[int] = []
    for line in output.splitlines():
        line = line.strip()
        if line.isdigit():
            pid = int(line)
            if pid not in pids:
                pids.append(pid)
    return pids


def parse_netstat_output(output: str, port: int) -> list[int]:
    """Parse `netstat -ano` output for PIDs whose local address uses the port."""
    pids: list[int] = []
    suffix = f":{port}"
    for line in output.splitlines():
        match = _NETSTAT_ROW.match(line)
        if not match:
            continue
        local_address, pid = match.group(2), int(match.group(4))
        # PID 0 is the System Idle pseudo-process
        if local_address.endswith(suffix) and pid != 0 and pid not in pids:
            pids.append(pid)
    return pids


def get_port_freer(platform: str | None = None) -> PortFreer:
    """Select the PortFreer implementation for the running platform."""
    platform = platform or sys.platform
    if platform.startswith("win"):
        return WindowsPortFreer()
    return PosixPortFreer()
