"""Process launcher: owns the one-handle-per-service process table."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass, field

from workbench.errors import (
    AlreadyRunningError,
    NotRunningError,
    PlatformCommandFailedError,
    SpawnFailedError,
    UnreachableError,
)
from workbench.events import EventSink
from workbench.log_relay import WARNING_PREFIX, LogRelay
from workbench.ports import ReadinessProber

logger = logging.getLogger(__name__)

# Wait after force-freeing a port before spawning
PORT_FREE_GRACE = 1.0  # seconds

# Wait for a terminated process before killing it
STOP_TIMEOUT = 5.0  # seconds

# Connect timeout used by health checks
HEALTH_TIMEOUT = 2.0  # seconds


@dataclass
class ManagedProcess:
    """A live child process tracked under a service name."""

    service_name: str
    process: subprocess.Popen
    component: str
    port: int | None = None
    started_at: float = field(default_factory=time.time)
    threads: list[threading.Thread] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_alive(self) -> bool:
        return self.process.poll() is None


class ProcessRegistry:
    """Service name -> ManagedProcess table guarded by a lock.

    The lock is only held to swap entries in and out.
    """

    def __init__(self):
        self._entries: dict[str, ManagedProcess] = {}
        self._starting: set[str] = set()
        self._lock = threading.Lock()

    def reserve(self, service_name: str, replace: bool = False) -> ManagedProcess | None:
        """Claim a name for launching.

        Returns the live handle being replaced (already removed from the
        table), or None.

        Raises:
            AlreadyRunningError: If the name is live or already starting
                and replace is False
        """
        with self._lock:
            if service_name in self._starting:
                raise AlreadyRunningError(f"{service_name} is already starting")

            current = self._entries.get(service_name)
            if current is not None and not current.is_alive():
                del self._entries[service_name]
                current = None

            if current is not None and not replace:
                raise AlreadyRunningError(
                    f"{service_name} is already running (PID {current.pid})"
                )

            if current is not None:
                del self._entries[service_name]
            self._starting.add(service_name)
            return current

    def commit(self, managed: ManagedProcess) -> None:
        """Register a started process and release its reservation."""
        with self._lock:
            self._starting.discard(managed.service_name)
            self._entries[managed.service_name] = managed

    def release(self, service_name: str) -> None:
        """Drop a reservation whose launch failed."""
        with self._lock:
            self._starting.discard(service_name)

    def pop(self, service_name: str) -> ManagedProcess | None:
        with self._lock:
            return self._entries.pop(service_name, None)

    def discard(self, managed: ManagedProcess) -> bool:
        """Remove the entry only if it is still this exact handle."""
        with self._lock:
            if self._entries.get(managed.service_name) is managed:
                del self._entries[managed.service_name]
                return True
            return False

    def get(self, service_name: str) -> ManagedProcess | None:
        with self._lock:
            return self._entries.get(service_name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def pop_all(self) -> list[ManagedProcess]:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            return entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def terminate_process(process: subprocess.Popen, timeout: float = STOP_TIMEOUT) -> int | None:
    """Terminate a process, escalating to kill if it does not exit in time."""
    if process.poll() is not None:
        return process.returncode
    process.terminate()
    try:
        return process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(f"PID {process.pid} did not terminate gracefully, killing")
        process.kill()
        try:
            return process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"PID {process.pid} survived kill")
            return None


class ProcessLauncher:
    """Starts, tracks and stops the managed service processes."""

    def __init__(
        self,
        sink: EventSink,
        prober: ReadinessProber | None = None,
        registry: ProcessRegistry | None = None,
        port_free_grace: float = PORT_FREE_GRACE,
        stop_timeout: float = STOP_TIMEOUT,
        verbose: bool = False,
    ):
        self.sink = sink
        self.prober = prober or ReadinessProber()
        self.registry = registry if registry is not None else ProcessRegistry()
        self.port_free_grace = port_free_grace
        self.stop_timeout = stop_timeout
        self.verbose = verbose

    def launch(
        self,
        service_name: str,
        executable: str,
        args: list[str],
        env: dict[str, str] | None = None,
        port: int | None = None,
        component: str | None = None,
        replace: bool = False,
        cwd: str | None = None,
    ) -> ManagedProcess:
        """Start a service process and register it under service_name.

        Args:
            service_name: Logical name, at most one live handle per name
            executable: Program to run
            args: Arguments after the executable
            env: Extra environment merged over os.environ
            port: Port the service will bind; freed first if occupied
            component: Component name for log events (defaults to service_name)
            replace: Stop a live handle for the name instead of rejecting

        Returns:
            The registered ManagedProcess

        Raises:
            AlreadyRunningError: If the name is live and replace is False
            SpawnFailedError: If the OS cannot create the process
        """
        component = component or service_name
        previous = self.registry.reserve(service_name, replace=replace)

        try:
            if previous is not None:
                logger.info(f"Replacing {service_name} (PID {previous.pid})")
                self.sink.log(component, f"🔁 Stopping previous {service_name} (PID {previous.pid})...")
                terminate_process(previous.process, timeout=self.stop_timeout)

            if port is not None:
                self._ensure_port_free(port, component)

            process = self._spawn(executable, args, env, cwd)
        except BaseException:
            self.registry.release(service_name)
            raise

        managed = ManagedProcess(
            service_name=service_name,
            process=process,
            component=component,
            port=port,
        )
        self.registry.commit(managed)

        relay = LogRelay(self.sink, component, verbose=self.verbose)
        managed.threads.append(relay.relay(process.stdout, name="stdout"))
        managed.threads.append(relay.relay(process.stderr, fallback_prefix=WARNING_PREFIX, name="stderr"))
        managed.threads.append(self._watch_exit(managed))

        logger.info(f"Started {service_name} (PID {process.pid}): {executable} {' '.join(args)}")
        return managed

    def stop(self, service_name: str) -> int | None:
        """Terminate the registered process and clear its registration.

        Returns:
            The process exit code, if it exited

        Raises:
            NotRunningError: If no handle is registered under the name
        """
        managed = self.registry.pop(service_name)
        if managed is None:
            raise NotRunningError(f"{service_name} was not running")

        code = terminate_process(managed.process, timeout=self.stop_timeout)
        logger.info(f"Stopped {service_name} (PID {managed.pid}, exit {code})")
        return code

    def kill(self, service_name: str) -> None:
        """Kill the registered process immediately."""
        managed = self.registry.pop(service_name)
        if managed is None:
            raise NotRunningError(f"{service_name} was not running")
        if managed.is_alive():
            managed.process.kill()
            managed.process.wait()
        logger.info(f"Killed {service_name} (PID {managed.pid})")

    def is_running(self, service_name: str) -> bool:
        managed = self.registry.get(service_name)
        return managed is not None and managed.is_alive()

    def running_services(self) -> list[str]:
        return [name for name in self.registry.names() if self.is_running(name)]

    def health_check(self, service_name: str, port: int, timeout: float = HEALTH_TIMEOUT) -> str:
        """Probe the service port.

        Returns:
            A human-readable reachable message

        Raises:
            UnreachableError: Carrying the attempted address
        """
        address = self.prober.address(port)
        if self.prober.is_reachable(port, timeout=timeout):
            return f"✅ {service_name} is reachable at http://{address}"
        raise UnreachableError(address, f"❌ {service_name} not responding at http://{address}")

    def shutdown(self) -> None:
        """Stop every registered process (application exit)."""
        for managed in self.registry.pop_all():
            logger.info(f"Shutting down {managed.service_name} (PID {managed.pid})")
            terminate_process(managed.process, timeout=self.stop_timeout)

    # --- Internal ---

    def _ensure_port_free(self, port: int, component: str) -> None:
        """Free an occupied port once, then wait the grace period."""
        if not self.prober.is_reachable(port):
            return

        self.sink.log(component, f"⚠ Port {port} is in use, freeing it...")
        try:
            self.prober.force_free(port)
        except PlatformCommandFailedError as e:
            # Proceed anyway; the spawn fails loudly if the port stays blocked
            logger.warning(f"Could not free port {port}: {e}")
            self.sink.log(component, f"⚠ Could not free port {port}: {e}")
        time.sleep(self.port_free_grace)

    def _spawn(
        self,
        executable: str,
        args: list[str],
        env: dict[str, str] | None,
        cwd: str | None,
    ) -> subprocess.Popen:
        full_env = {**os.environ, **(env or {})}
        try:
            return subprocess.Popen(
                [executable, *args],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=full_env,
                cwd=cwd,
            )
        except OSError as e:
            raise SpawnFailedError(f"Failed to launch {executable}: {e}") from e

    def _watch_exit(self, managed: ManagedProcess) -> threading.Thread:
        """Clear the registration when the process exits on its own."""

        def watch() -> None:
            code = managed.process.wait()
            if self.registry.discard(managed):
                logger.info(f"{managed.service_name} exited with code {code}")
                self.sink.log(managed.component, f"ℹ {managed.service_name} exited with code {code}.")

        thread = threading.Thread(
            target=watch,
            name=f"watch-{managed.service_name}",
            daemon=True,
        )
        thread.start()
        return thread
