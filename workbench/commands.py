"""Workbench: the command surface offered to the front end."""

from __future__ import annotations

import logging

from workbench.config import AppConfig
from workbench.discovery import find_ollama, node_install_hint, ollama_install_hint, probe_environment
from workbench.downloads import COMPONENT as PULL_COMPONENT
from workbench.downloads import DownloadManager
from workbench.errors import (
    AlreadyRunningError,
    BinaryNotFoundError,
    NotRunningError,
    WorkbenchError,
)
from workbench.events import EventSink
from workbench.launcher import ProcessLauncher
from workbench.ports import LOOPBACK, ReadinessProber, allocate_ports
from workbench.requirements import MIN_DISK_GB, MIN_RAM_GB, validate_requirements
from workbench.schemas import (
    CommandResult,
    EnvironmentStatus,
    ModelList,
    PortConfig,
    RequirementsReport,
    ServiceName,
)
from workbench.services import COMPONENTS, INSTALL_COMPONENT, N8N_COMPONENT, OLLAMA_COMPONENT, ServiceManager

logger = logging.getLogger(__name__)

PORTS_COMPONENT = "Ports"
WORKBENCH_COMPONENT = "Workbench"
ENVIRONMENT_COMPONENT = "Environment"
REQUIREMENTS_COMPONENT = "System Requirements"
SETUP_COMPONENT = "Setup"


class Workbench:
    """Owns the process registry, download slot and event sink for one session.

    Construct once at startup and pass it to every caller. Every command
    returns a result instead of raising: failures become a descriptive
    message and a matching component-log event.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        sink: EventSink | None = None,
        prober: ReadinessProber | None = None,
        launcher: ProcessLauncher | None = None,
        services: ServiceManager | None = None,
        downloads: DownloadManager | None = None,
        verbose: bool = False,
    ):
        self.config = config or AppConfig.load()
        self.sink = sink or EventSink()
        self.sink.start()
        self.prober = prober or ReadinessProber()
        self.launcher = launcher or ProcessLauncher(self.sink, prober=self.prober, verbose=verbose)
        self.services = services or ServiceManager(self.config, self.launcher, self.sink)
        self.downloads = downloads or DownloadManager(self.sink, self.config, prober=self.prober)

    def __enter__(self) -> Workbench:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Cancel any download, stop tracked processes, drain the sink."""
        if self.downloads.is_active:
            try:
                self.downloads.cancel()
            except WorkbenchError:
                pass
            self.downloads.wait(timeout=5)
        self.launcher.shutdown()
        self.sink.close()

    def _fail(self, component: str, error: WorkbenchError) -> CommandResult:
        message = str(error)
        logger.error(f"{component}: {error.kind}: {message}")
        self.sink.log(component, message if message[:1] in ("❌", "⚠") else f"❌ {message}")
        return CommandResult(ok=False, message=message, error_kind=error.kind)

    def _ok(self, component: str, message: str, kind: str | None = None) -> CommandResult:
        self.sink.log(component, message)
        return CommandResult(ok=True, message=message, error_kind=kind)

    @staticmethod
    def _service(name: str | ServiceName) -> ServiceName:
        try:
            return ServiceName(name)
        except ValueError:
            raise WorkbenchError(f"Unknown service '{name}'") from None

    # --- Commands ---

    def allocate_ports(self) -> PortConfig:
        """Allocate and persist the session port pair."""
        ports = allocate_ports(self.config)
        self.sink.log(
            PORTS_COMPONENT,
            f"🔌 Ports allocated: n8n={ports.n8n_port}, ollama={ports.ollama_port}",
        )
        return ports

    def launch_service(self, name: str | ServiceName, replace: bool = False) -> CommandResult:
        try:
            service = self._service(name)
        except WorkbenchError as e:
            return self._fail(WORKBENCH_COMPONENT, e)

        component = COMPONENTS[service]
        try:
            managed = self.services.launch(service, replace=replace)
        except AlreadyRunningError as e:
            return self._ok(component, f"ℹ {e}", kind=e.kind)
        except WorkbenchError as e:
            return self._fail(component, e)
        return CommandResult(ok=True, message=f"{service.value} launched (PID {managed.pid})")

    def stop_service(self, name: str | ServiceName) -> CommandResult:
        try:
            service = self._service(name)
        except WorkbenchError as e:
            return self._fail(WORKBENCH_COMPONENT, e)

        component = COMPONENTS[service]
        try:
            message = self.services.stop(service)
        except NotRunningError as e:
            # The table is not reconciled with OS state, so this is informational
            return self._ok(component, f"ℹ {e}.", kind=e.kind)
        except WorkbenchError as e:
            return self._fail(component, e)
        return self._ok(component, message)

    def check_service_health(self, name: str | ServiceName) -> CommandResult:
        try:
            service = self._service(name)
        except WorkbenchError as e:
            return self._fail(WORKBENCH_COMPONENT, e)

        component = COMPONENTS[service]
        try:
            message = self.services.health(service)
        except WorkbenchError as e:
            return self._fail(component, e)
        return self._ok(component, message)

    def pull_model(self, target: str) -> CommandResult:
        try:
            job = self.downloads.pull(target)
        except WorkbenchError as e:
            return self._fail(PULL_COMPONENT, e)
        return CommandResult(ok=True, message=f"Pulling '{target}' via {job.transport.value}")

    def cancel_download(self) -> CommandResult:
        try:
            job = self.downloads.cancel()
        except WorkbenchError as e:
            return self._fail(PULL_COMPONENT, e)
        return CommandResult(ok=True, message=f"Cancelled download of '{job.target}'")

    def list_models(self) -> ModelList:
        """List installed models; a failure is logged and carried in the result."""
        try:
            return ModelList(models=self.services.list_models())
        except WorkbenchError as e:
            failed = self._fail(OLLAMA_COMPONENT, e)
            return ModelList(ok=False, message=failed.message, error_kind=failed.error_kind)

    def install_n8n(self) -> CommandResult:
        try:
            message = self.services.install_n8n()
        except WorkbenchError as e:
            return self._fail(INSTALL_COMPONENT, e)
        return self._ok(INSTALL_COMPONENT, message)

    def validate_environment(self) -> EnvironmentStatus:
        """Probe the toolchain and merge what was found into the config."""
        status = probe_environment()
        self.config.update(
            node_version=status.node_version,
            npm_version=status.npm_version,
            n8n_installed=status.n8n_installed,
            ollama_installed=status.ollama_installed,
            ollama_version=status.ollama_version,
            ollama_path=find_ollama() if status.ollama_installed else None,
        )
        for tool in ("node", "npm", "n8n", "ollama"):
            version = getattr(status, f"{tool}_version")
            if version:
                self.sink.log(ENVIRONMENT_COMPONENT, f"✅ {tool} {version}")
            else:
                self.sink.log(ENVIRONMENT_COMPONENT, f"⚠ {tool} not found")
        return status

    def check_requirements(
        self,
        min_ram_gb: float = MIN_RAM_GB,
        min_disk_gb: float = MIN_DISK_GB,
    ) -> RequirementsReport:
        """Compare RAM and free disk against minimums and log the findings."""
        report = validate_requirements(min_ram_gb, min_disk_gb)
        for issue in report.issues:
            self.sink.log(REQUIREMENTS_COMPONENT, f"❌ {issue}")
        for warning in report.warnings:
            self.sink.log(REQUIREMENTS_COMPONENT, f"⚠ {warning}")
        if report.passed:
            disk = f"{report.disk_gb} GB" if report.disk_gb is not None else "unknown"
            self.sink.log(
                REQUIREMENTS_COMPONENT,
                f"✅ {report.os}: {report.ram_gb} GB RAM, {disk} free disk",
            )
        return report

    def ensure_platform(self) -> CommandResult:
        """Launch n8n unless something already answers on its port.

        An instance left over from an earlier session counts as running, so
        this never force-frees the port the way launch_service does.
        """
        port = self.services.port_for(ServiceName.N8N)
        if self.prober.is_reachable(port):
            return self._ok(
                N8N_COMPONENT,
                f"ℹ Agentic Platform already running at http://{LOOPBACK}:{port}",
                kind=AlreadyRunningError.kind,
            )
        return self.launch_service(ServiceName.N8N)

    def setup(self, launch: bool = False) -> CommandResult:
        """Bring the toolchain to a runnable state.

        Checks Node.js, installs n8n when it is missing, checks Ollama and,
        with launch, finishes with ensure_platform. Stops at the first
        failing step and returns its result.
        """
        self.sink.log(SETUP_COMPONENT, "🚀 Starting setup...")
        status = self.validate_environment()

        if not status.node_installed:
            return self._fail(SETUP_COMPONENT, BinaryNotFoundError("Node.js", node_install_hint()))
        self.sink.log(SETUP_COMPONENT, "✅ Node.js detected.")

        if status.n8n_installed:
            self.sink.log(SETUP_COMPONENT, "✅ Agentic Platform already installed.")
        else:
            installed = self.install_n8n()
            if not installed.ok:
                return installed

        if not status.ollama_installed:
            return self._fail(SETUP_COMPONENT, BinaryNotFoundError("Ollama", ollama_install_hint()))
        self.sink.log(SETUP_COMPONENT, "✅ AI Brain (Ollama) detected.")

        if launch:
            launched = self.ensure_platform()
            if not launched.ok:
                return launched

        return self._ok(SETUP_COMPONENT, "🎉 All systems ready.")
