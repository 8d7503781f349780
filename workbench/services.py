"""Service definitions for n8n and Ollama, driven through the launcher."""

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable

from workbench.config import AppConfig
from workbench.discovery import (
    N8N_CANDIDATES,
    NODE_DOWNLOAD_URL,
    detect_n8n_command,
    find_binary,
    find_npm,
    find_ollama,
    ollama_install_hint,
)
from workbench.errors import (
    BinaryNotFoundError,
    InstallFailedError,
    SpawnFailedError,
    WorkbenchError,
)
from workbench.events import EventSink
from workbench.launcher import ManagedProcess, ProcessLauncher
from workbench.ports import LOOPBACK, N8N_PORT_RANGE, OLLAMA_PORT_RANGE
from workbench.schemas import ServiceName

logger = logging.getLogger(__name__)

N8N_COMPONENT = "Agentic Platform (n8n)"
OLLAMA_COMPONENT = "Ollama Server"
INSTALL_COMPONENT = "Agentic Platform"

COMPONENTS = {
    ServiceName.N8N: N8N_COMPONENT,
    ServiceName.OLLAMA: OLLAMA_COMPONENT,
}

# Wait after spawning before reporting the service as launched
LAUNCH_GRACE = 3.0  # seconds

LIST_TIMEOUT = 30  # seconds

INSTALL_SERVICE_NAME = "n8n-install"
N8N_INSTALL_ARGS = ["install", "-g", "n8n@latest", "--legacy-peer-deps"]

# Resolves a service to (executable, base args)
CommandResolver = Callable[[], tuple[str, list[str]]]


@dataclass
class ServiceSpec:
    """Everything needed to launch one service."""

    name: ServiceName
    component: str
    executable: str
    args: list[str]
    port: int
    env: dict[str, str] = field(default_factory=dict)

    @property
    def url(self) -> str:
        return f"http://{LOOPBACK}:{self.port}"


def parse_model_list(output: str) -> list[str]:
    """Parse `ollama list` output into model identifiers, in listing order."""
    models = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        name = line.split()[0]
        if name.upper() == "NAME":
            continue
        models.append(name)
    return models


class ServiceManager:
    """Builds launch specs for the two services and drives the launcher."""

    def __init__(
        self,
        config: AppConfig,
        launcher: ProcessLauncher,
        sink: EventSink,
        launch_grace: float = LAUNCH_GRACE,
        resolvers: dict[ServiceName, CommandResolver] | None = None,
    ):
        self.config = config
        self.launcher = launcher
        self.sink = sink
        self.launch_grace = launch_grace
        self.resolvers = resolvers or {}

    # --- Ports and commands ---

    def port_for(self, name: ServiceName) -> int:
        """Configured port for a service, or the first port of its range."""
        if name == ServiceName.N8N:
            return self.config.n8n_port or N8N_PORT_RANGE[0]
        return self.config.ollama_port or OLLAMA_PORT_RANGE[0]

    def _resolve_n8n(self) -> tuple[str, list[str]]:
        command = detect_n8n_command()
        if command is None:
            raise BinaryNotFoundError(
                "n8n",
                f"Install it with `npm install -g n8n` or install Node.js from {NODE_DOWNLOAD_URL}",
            )
        return command

    def _resolve_ollama(self) -> tuple[str, list[str]]:
        binary = self.config.ollama_path or find_ollama()
        if not binary:
            raise BinaryNotFoundError("Ollama", ollama_install_hint())
        return binary, ["serve"]

    def _ollama_binary(self) -> str:
        resolver = self.resolvers.get(ServiceName.OLLAMA)
        executable, _ = resolver() if resolver else self._resolve_ollama()
        return executable

    def build_spec(self, name: ServiceName) -> ServiceSpec:
        """Derive executable, arguments and environment for a service.

        Each service gets its own bound port plus the other's URL.
        """
        n8n_port = self.port_for(ServiceName.N8N)
        ollama_port = self.port_for(ServiceName.OLLAMA)
        ollama_url = f"http://{LOOPBACK}:{ollama_port}"

        resolver = self.resolvers.get(name)
        if resolver is None:
            resolver = self._resolve_n8n if name == ServiceName.N8N else self._resolve_ollama
        executable, args = resolver()

        if name == ServiceName.N8N:
            env = {
                "N8N_PORT": str(n8n_port),
                "N8N_LISTEN_ADDRESS": LOOPBACK,
                "OLLAMA_API_URL": ollama_url,
                "DB_SQLITE_POOL_SIZE": "2",
                "N8N_RUNNERS_ENABLED": "true",
                "N8N_BLOCK_ENV_ACCESS_IN_NODE": "false",
                "N8N_GIT_NODE_DISABLE_BARE_REPOS": "true",
            }
            port = n8n_port
        else:
            env = {
                "OLLAMA_HOST": f"{LOOPBACK}:{ollama_port}",
                "OLLAMA_ORIGINS": f"http://{LOOPBACK}:{n8n_port},http://localhost:{n8n_port}",
            }
            port = ollama_port

        return ServiceSpec(
            name=name,
            component=COMPONENTS[name],
            executable=executable,
            args=list(args),
            port=port,
            env=env,
        )

    # --- Lifecycle ---

    def launch(self, name: ServiceName, replace: bool = False) -> ManagedProcess:
        """Launch a service on its configured port.

        Raises:
            BinaryNotFoundError: If the service binary cannot be found
            AlreadyRunningError: If it is already tracked and replace is False
            SpawnFailedError: If the process cannot be created
        """
        spec = self.build_spec(name)
        self.sink.log(spec.component, f"🚀 Launching {name.value} on port {spec.port}...")

        managed = self.launcher.launch(
            service_name=name.value,
            executable=spec.executable,
            args=spec.args,
            env=spec.env,
            port=spec.port,
            component=spec.component,
            replace=replace,
        )

        if self.launch_grace > 0:
            time.sleep(self.launch_grace)

        code = managed.process.poll()
        if code is not None:
            raise SpawnFailedError(f"{name.value} exited during startup with code {code}")

        self.sink.log(spec.component, f"✅ {name.value} launched at {spec.url}.")
        return managed

    def stop(self, name: ServiceName) -> str:
        """Stop a tracked service.

        Raises:
            NotRunningError: If the service is not tracked
        """
        self.launcher.stop(name.value)
        return f"🛑 {name.value} stopped."

    def health(self, name: ServiceName) -> str:
        """Probe the service's configured port.

        Raises:
            UnreachableError: If nothing answers within the health timeout
        """
        return self.launcher.health_check(name.value, self.port_for(name))

    # --- Model listing ---

    def list_models(self) -> list[str]:
        """List installed models via the Ollama binary.

        Raises:
            BinaryNotFoundError: If Ollama is missing
            SpawnFailedError: If the listing cannot run
            WorkbenchError: If the listing exits non-zero
        """
        binary = self._ollama_binary()
        env = {**os.environ, "OLLAMA_HOST": f"{LOOPBACK}:{self.port_for(ServiceName.OLLAMA)}"}
        try:
            result = subprocess.run(
                [binary, "list"],
                capture_output=True,
                text=True,
                timeout=LIST_TIMEOUT,
                env=env,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SpawnFailedError(f"Failed to list models: {e}") from e

        if result.returncode != 0:
            raise WorkbenchError(f"❌ Failed to list models: {result.stderr.strip()}")
        return parse_model_list(result.stdout)

    # --- Install ---

    def install_n8n(self, npm: str | None = None) -> str:
        """Install n8n globally with npm, joining on the install's exit.

        Raises:
            BinaryNotFoundError: If npm is missing
            SpawnFailedError: If npm cannot start
            InstallFailedError: If npm exits non-zero
        """
        npm = npm or find_npm()
        if not npm:
            self.sink.log(INSTALL_COMPONENT, "⚠ npm not found. Ensure Node.js is installed and added to PATH.")
            raise BinaryNotFoundError("npm", f"Install Node.js from {NODE_DOWNLOAD_URL}")

        self.sink.log(INSTALL_COMPONENT, "⬇ Installing Agentic Platform via npm...")
        self.sink.log(INSTALL_COMPONENT, f"🧠 Using npm from '{npm}'")

        managed = self.launcher.launch(
            service_name=INSTALL_SERVICE_NAME,
            executable=npm,
            args=N8N_INSTALL_ARGS,
            component=INSTALL_COMPONENT,
        )
        code = managed.process.wait()
        # Let the relays flush every line before reporting the result
        for thread in managed.threads[:2]:
            thread.join(timeout=5)

        if code != 0:
            raise InstallFailedError(f"❌ n8n installation failed with exit code {code}")

        self.config.update(n8n_installed=True, n8n_path=find_binary("n8n", N8N_CANDIDATES))
        return "✅ n8n successfully installed globally!"
