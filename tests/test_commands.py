"""Tests for the Workbench command surface."""

import sys
from unittest.mock import MagicMock, patch

import pytest

from conftest import SERVER_SCRIPT, log_messages, python_command, wait_until
from workbench.commands import PORTS_COMPONENT, REQUIREMENTS_COMPONENT, SETUP_COMPONENT, Workbench
from workbench.downloads import DownloadManager
from workbench.errors import InstallFailedError, WorkbenchError
from workbench.events import EventSink
from workbench.launcher import ProcessLauncher
from workbench.schemas import EnvironmentStatus, RequirementsReport, ServiceName
from workbench.services import N8N_COMPONENT, OLLAMA_COMPONENT, ServiceManager

SLOW_PULL = """
import time
print('{"status": "pulling manifest"}', flush=True)
time.sleep(60)
"""


@pytest.fixture
def workbench(config, prober):
    sink = EventSink()
    launcher = ProcessLauncher(sink, prober=prober, port_free_grace=0)
    services = ServiceManager(config, launcher, sink, launch_grace=0, resolvers={
        ServiceName.N8N: lambda: python_command(SERVER_SCRIPT, "N8N_PORT"),
        ServiceName.OLLAMA: lambda: python_command(SERVER_SCRIPT, "OLLAMA_HOST"),
    })
    offline = MagicMock()
    offline.is_reachable.return_value = False
    downloads = DownloadManager(
        sink, config, prober=offline, interval=0,
        pull_command=lambda target: [sys.executable, "-c", SLOW_PULL],
    )
    wb = Workbench(
        config=config,
        sink=sink,
        prober=prober,
        launcher=launcher,
        services=services,
        downloads=downloads,
    )
    yield wb
    wb.close()


@pytest.fixture
def wb_events(workbench):
    delivered = []
    workbench.sink.subscribe(delivered.append)
    return delivered


class TestPorts:
    """Test the allocate-ports command."""

    def test_allocate(self, workbench, wb_events):
        ports = workbench.allocate_ports()
        workbench.sink.flush()

        assert ports.n8n_port != ports.ollama_port
        assert workbench.config.n8n_port == ports.n8n_port
        assert any(m.startswith("🔌 Ports allocated") for m in log_messages(wb_events, PORTS_COMPONENT))


class TestServiceCommands:
    """Test launch/stop/health as the front end sees them."""

    def test_full_lifecycle(self, workbench, wb_events):
        """Allocate, launch, check health, stop, check health again."""
        ports = workbench.allocate_ports()

        result = workbench.launch_service("n8n")
        assert result.ok, result.message
        assert wait_until(lambda: workbench.prober.is_reachable(ports.n8n_port))

        health = workbench.check_service_health("n8n")
        assert health.ok
        assert health.message == f"✅ n8n is reachable at http://127.0.0.1:{ports.n8n_port}"

        stopped = workbench.stop_service("n8n")
        assert stopped.ok
        assert stopped.message == "🛑 n8n stopped."

        unhealthy = workbench.check_service_health("n8n")
        assert not unhealthy.ok
        assert unhealthy.error_kind == "Unreachable"
        workbench.sink.flush()
        assert unhealthy.message in log_messages(wb_events, N8N_COMPONENT)

    def test_both_services(self, workbench):
        """n8n and Ollama run side by side on their own ports."""
        ports = workbench.allocate_ports()

        assert workbench.launch_service(ServiceName.N8N).ok
        assert workbench.launch_service(ServiceName.OLLAMA).ok
        assert wait_until(lambda: workbench.prober.is_reachable(ports.ollama_port))

        assert workbench.launcher.running_services() == ["n8n", "ollama"]
        assert workbench.check_service_health("ollama").ok

    def test_second_launch_is_informational(self, workbench):
        workbench.allocate_ports()
        workbench.launch_service("n8n")

        result = workbench.launch_service("n8n")

        assert result.ok
        assert result.error_kind == "AlreadyRunning"
        assert result.message.startswith("ℹ")

    def test_replace(self, workbench):
        workbench.allocate_ports()
        workbench.launch_service("n8n")
        first = workbench.launcher.registry.get("n8n")

        assert workbench.launch_service("n8n", replace=True).ok
        assert first.process.poll() is not None
        assert workbench.launcher.registry.get("n8n") is not first

    def test_stop_untracked(self, workbench, wb_events):
        """Stopping a service that is not tracked succeeds with a notice."""
        result = workbench.stop_service("ollama")
        workbench.sink.flush()

        assert result.ok
        assert result.error_kind == "NotRunning"
        assert result.message == "ℹ ollama was not running."
        assert result.message in log_messages(wb_events, OLLAMA_COMPONENT)

    def test_unknown_service(self, workbench):
        result = workbench.launch_service("postgres")

        assert not result.ok
        assert "Unknown service" in result.message

    @patch("workbench.services.detect_n8n_command", return_value=None)
    def test_missing_binary(self, mock_detect, workbench, wb_events):
        """A missing binary fails the command and is surfaced as an error log."""
        workbench.services.resolvers = {}

        result = workbench.launch_service("n8n")
        workbench.sink.flush()

        assert not result.ok
        assert result.error_kind == "BinaryNotFound"
        assert f"❌ {result.message}" in log_messages(wb_events, N8N_COMPONENT)

    def test_close_stops_services(self, workbench):
        workbench.allocate_ports()
        workbench.launch_service("n8n")
        managed = workbench.launcher.registry.get("n8n")

        workbench.close()

        assert managed.process.poll() is not None


class TestDownloadCommands:
    """Test pull/cancel as commands."""

    def test_pull_twice(self, workbench):
        assert workbench.pull_model("llama3.2:1b").ok

        second = workbench.pull_model("qwen2.5:0.5b")

        assert not second.ok
        assert second.error_kind == "AlreadyDownloading"

    def test_cancel(self, workbench):
        workbench.pull_model("llama3.2:1b")

        result = workbench.cancel_download()

        assert result.ok
        assert "llama3.2:1b" in result.message
        assert not workbench.downloads.is_active

    def test_cancel_idle(self, workbench):
        result = workbench.cancel_download()

        assert not result.ok
        assert result.error_kind == "NoActiveDownload"


class TestModelsAndEnvironment:
    """Test model listing and toolchain probing."""

    def test_list_models_failure_is_reported(self, workbench, wb_events):
        with patch.object(workbench.services, "list_models", side_effect=WorkbenchError("boom")):
            listing = workbench.list_models()
        workbench.sink.flush()

        assert not listing.ok
        assert listing.models == []
        assert listing.message == "boom"
        assert listing.error_kind == "WorkbenchError"
        assert "❌ boom" in log_messages(wb_events, OLLAMA_COMPONENT)

    @patch("workbench.commands.find_ollama", return_value="/usr/bin/ollama")
    @patch("workbench.commands.probe_environment")
    def test_validate_environment(self, mock_probe, mock_find, workbench, wb_events):
        mock_probe.return_value = EnvironmentStatus(
            node_installed=True,
            node_version="v20.11.0",
            npm_installed=True,
            npm_version="10.2.4",
            ollama_installed=True,
            ollama_version="ollama version is 0.5.1",
        )

        status = workbench.validate_environment()
        workbench.sink.flush()

        assert status.node_version == "v20.11.0"
        assert workbench.config.ollama_installed is True
        assert workbench.config.ollama_path == "/usr/bin/ollama"
        assert workbench.config.n8n_installed is False
        messages = log_messages(wb_events)
        assert "✅ node v20.11.0" in messages
        assert "⚠ n8n not found" in messages


class TestPlatformCommands:
    """Test requirement checks, ensure-running and the setup pipeline."""

    @patch("workbench.commands.validate_requirements")
    def test_requirements_issues_are_logged(self, mock_validate, workbench, wb_events):
        mock_validate.return_value = RequirementsReport(
            passed=False,
            issues=["Insufficient RAM: 4.0 GB (found) < 8 GB (required)"],
            warnings=["Unrecognized OS detected: sunos5"],
            os="sunos5",
            ram_gb=4.0,
            disk_gb=50.0,
        )

        report = workbench.check_requirements(8, 10)
        workbench.sink.flush()

        mock_validate.assert_called_once_with(8, 10)
        assert not report.passed
        messages = log_messages(wb_events, REQUIREMENTS_COMPONENT)
        assert "❌ Insufficient RAM: 4.0 GB (found) < 8 GB (required)" in messages
        assert "⚠ Unrecognized OS detected: sunos5" in messages

    @patch("workbench.commands.validate_requirements")
    def test_requirements_pass_summary(self, mock_validate, workbench, wb_events):
        mock_validate.return_value = RequirementsReport(passed=True, os="linux", ram_gb=16.0, disk_gb=120.5)

        assert workbench.check_requirements().passed
        workbench.sink.flush()

        assert "✅ linux: 16.0 GB RAM, 120.5 GB free disk" in log_messages(wb_events, REQUIREMENTS_COMPONENT)

    def test_ensure_platform_keeps_listening_instance(self, workbench, listener):
        """Something already answering on the n8n port is left alone."""
        workbench.config.update(n8n_port=listener)

        result = workbench.ensure_platform()

        assert result.ok
        assert result.error_kind == "AlreadyRunning"
        assert str(listener) in result.message
        assert not workbench.launcher.is_running("n8n")
        assert workbench.prober.freer.freed_ports == []

    def test_ensure_platform_launches_when_down(self, workbench):
        ports = workbench.allocate_ports()

        result = workbench.ensure_platform()

        assert result.ok, result.message
        assert workbench.launcher.is_running("n8n")
        assert wait_until(lambda: workbench.prober.is_reachable(ports.n8n_port))

    @patch("workbench.commands.find_ollama", return_value=None)
    @patch("workbench.commands.probe_environment")
    def test_setup_requires_node(self, mock_environment, mock_find, workbench, wb_events):
        mock_environment.return_value = EnvironmentStatus()

        result = workbench.setup()
        workbench.sink.flush()

        assert not result.ok
        assert result.error_kind == "BinaryNotFound"
        assert "Node.js binary not found" in result.message
        assert any("Node.js binary not found" in m for m in log_messages(wb_events, SETUP_COMPONENT))

    @patch("workbench.commands.find_ollama", return_value="/usr/bin/ollama")
    @patch("workbench.commands.probe_environment")
    def test_setup_installs_missing_n8n(self, mock_environment, mock_find, workbench, wb_events):
        mock_environment.return_value = EnvironmentStatus(
            node_installed=True, node_version="v20.11.0", ollama_installed=True, ollama_version="0.5.1",
        )

        with patch.object(
            workbench.services, "install_n8n", return_value="✅ n8n successfully installed globally!",
        ) as mock_install:
            result = workbench.setup()
        workbench.sink.flush()

        mock_install.assert_called_once_with()
        assert result.ok
        assert result.message == "🎉 All systems ready."
        assert not workbench.launcher.is_running("n8n")

    @patch("workbench.commands.find_ollama", return_value="/usr/bin/ollama")
    @patch("workbench.commands.probe_environment")
    def test_setup_stops_on_install_failure(self, mock_environment, mock_find, workbench):
        mock_environment.return_value = EnvironmentStatus(node_installed=True, node_version="v20.11.0")

        with patch.object(
            workbench.services, "install_n8n", side_effect=InstallFailedError("❌ n8n installation failed with exit code 1"),
        ):
            result = workbench.setup()

        assert not result.ok
        assert result.error_kind == "InstallFailed"

    @patch("workbench.commands.find_ollama", return_value=None)
    @patch("workbench.commands.probe_environment")
    def test_setup_requires_ollama(self, mock_environment, mock_find, workbench):
        mock_environment.return_value = EnvironmentStatus(
            node_installed=True, node_version="v20.11.0", n8n_installed=True, n8n_version="1.70.0",
        )

        result = workbench.setup()

        assert not result.ok
        assert "Ollama binary not found" in result.message

    @patch("workbench.commands.find_ollama", return_value="/usr/bin/ollama")
    @patch("workbench.commands.probe_environment")
    def test_setup_with_launch(self, mock_environment, mock_find, workbench, wb_events):
        """With launch the pipeline ends with n8n running."""
        mock_environment.return_value = EnvironmentStatus(
            node_installed=True,
            node_version="v20.11.0",
            n8n_installed=True,
            n8n_version="1.70.0",
            ollama_installed=True,
            ollama_version="0.5.1",
        )
        workbench.allocate_ports()

        result = workbench.setup(launch=True)
        workbench.sink.flush()

        assert result.ok, result.message
        assert workbench.launcher.is_running("n8n")
        assert "✅ Agentic Platform already installed." in log_messages(wb_events, SETUP_COMPONENT)
