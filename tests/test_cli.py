"""Tests for the CLI module."""

import json
import os
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from workbench.cli import main
from workbench.errors import DownloadInterruptedError
from workbench.schemas import CommandResult, ModelList, PortConfig, RequirementsReport


@pytest.fixture
def runner():
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def mock_workbench():
    """Patch the Workbench the CLI opens."""
    with patch("workbench.commands.Workbench") as mock_cls:
        wb = MagicMock()
        wb.__enter__.return_value = wb
        mock_cls.return_value = wb
        yield wb


class TestCLI:
    """Test top-level options."""

    def test_main_help(self, runner):
        """Main command shows help."""
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Workbench" in result.output
        for command in (
            "serve", "ports", "launch", "stop", "health", "pull",
            "models", "doctor", "ensure", "setup", "install-n8n",
        ):
            assert command in result.output

    def test_version(self, runner):
        """Version flag works."""
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_config_option_sets_env(self, runner, mock_workbench, tmp_path, monkeypatch):
        """--config is exported for the Workbench's config lookup."""
        monkeypatch.setenv("WORKBENCH_CONFIG", "unset")
        target = tmp_path / "cfg.json"
        mock_workbench.allocate_ports.return_value = PortConfig(n8n_port=5678, ollama_port=11434)

        result = runner.invoke(main, ["--config", str(target), "ports"])

        assert result.exit_code == 0
        assert os.environ["WORKBENCH_CONFIG"] == str(target)


class TestCommands:
    """Test individual commands against a mocked Workbench."""

    def test_ports(self, runner, mock_workbench):
        mock_workbench.allocate_ports.return_value = PortConfig(n8n_port=5679, ollama_port=11435)

        result = runner.invoke(main, ["ports"])

        assert result.exit_code == 0
        assert "5679" in result.output
        assert "11435" in result.output

    def test_health_ok(self, runner, mock_workbench):
        mock_workbench.check_service_health.return_value = CommandResult(
            ok=True, message="✅ n8n is reachable at http://127.0.0.1:5678",
        )

        result = runner.invoke(main, ["health", "n8n"])

        assert result.exit_code == 0
        assert "reachable" in result.output

    def test_health_failure_exit_code(self, runner, mock_workbench):
        mock_workbench.check_service_health.return_value = CommandResult(
            ok=False, message="❌ ollama not responding at http://127.0.0.1:11434", error_kind="Unreachable",
        )

        result = runner.invoke(main, ["health", "ollama"])

        assert result.exit_code == 1
        assert "not responding" in result.output

    def test_stop_untracked_is_informational(self, runner, mock_workbench):
        """Stopping a service this session never launched still exits 0."""
        mock_workbench.stop_service.return_value = CommandResult(
            ok=True, message="ℹ n8n is not running.", error_kind="NotRunning",
        )

        result = runner.invoke(main, ["stop", "n8n"])

        assert result.exit_code == 0
        assert "not running" in result.output
        mock_workbench.stop_service.assert_called_once_with("n8n")

    def test_stop_failure_exit_code(self, runner, mock_workbench):
        mock_workbench.stop_service.return_value = CommandResult(
            ok=False, message="❌ Failed to stop ollama", error_kind="SpawnFailed",
        )

        result = runner.invoke(main, ["stop", "ollama"])

        assert result.exit_code == 1

    def test_health_rejects_unknown_service(self, runner):
        result = runner.invoke(main, ["health", "postgres"])

        assert result.exit_code == 2

    def test_launch_failure(self, runner, mock_workbench):
        mock_workbench.launch_service.return_value = CommandResult(
            ok=False, message="n8n binary not found on this system.", error_kind="BinaryNotFound",
        )

        result = runner.invoke(main, ["launch", "n8n"])

        assert result.exit_code == 1
        assert "binary not found" in result.output

    def test_launch_runs_until_exit(self, runner, mock_workbench):
        """launch stays in the foreground while the service runs."""
        mock_workbench.launch_service.return_value = CommandResult(ok=True, message="n8n launched (PID 42)")
        mock_workbench.launcher.is_running.side_effect = [True, False]

        with patch("workbench.cli.time.sleep"):
            result = runner.invoke(main, ["launch", "n8n", "--replace"])

        assert result.exit_code == 0
        mock_workbench.launch_service.assert_called_once_with("n8n", replace=True)

    def test_pull_waits_for_completion(self, runner, mock_workbench):
        mock_workbench.pull_model.return_value = CommandResult(ok=True, message="Pulling 'llama3.2:1b' via cli")
        mock_workbench.downloads.wait.side_effect = [False, True]
        mock_workbench.downloads.last_job.failure = None

        result = runner.invoke(main, ["pull", "llama3.2:1b"])

        assert result.exit_code == 0
        mock_workbench.pull_model.assert_called_once_with("llama3.2:1b")
        assert mock_workbench.downloads.wait.call_count == 2

    def test_pull_failure_exit_code(self, runner, mock_workbench):
        """An interrupted pull exits non-zero with the reason."""
        mock_workbench.pull_model.return_value = CommandResult(ok=True, message="Pulling 'x' via cli")
        mock_workbench.downloads.wait.return_value = True
        mock_workbench.downloads.last_job.failure = DownloadInterruptedError(
            "Download of 'x' interrupted: exit code 1"
        )

        result = runner.invoke(main, ["pull", "x"])

        assert result.exit_code == 1
        assert "exit code 1" in result.output

    def test_pull_rejected(self, runner, mock_workbench):
        mock_workbench.pull_model.return_value = CommandResult(
            ok=False, message="Already downloading 'x'", error_kind="AlreadyDownloading",
        )

        result = runner.invoke(main, ["pull", "llama3.2:1b"])

        assert result.exit_code == 1
        assert "Already downloading" in result.output

    def test_models(self, runner, mock_workbench):
        mock_workbench.list_models.return_value = ModelList(models=["llama3.2:1b", "qwen2.5:0.5b"])

        result = runner.invoke(main, ["models"])

        assert result.output.splitlines() == ["llama3.2:1b", "qwen2.5:0.5b"]

    def test_models_raw(self, runner, mock_workbench):
        mock_workbench.list_models.return_value = ModelList(models=["llama3.2:1b"])

        result = runner.invoke(main, ["models", "--raw"])

        assert json.loads(result.output) == ["llama3.2:1b"]

    def test_models_empty(self, runner, mock_workbench):
        mock_workbench.list_models.return_value = ModelList()

        result = runner.invoke(main, ["models"])

        assert "No models found" in result.output

    def test_models_failure_exit_code(self, runner, mock_workbench):
        mock_workbench.list_models.return_value = ModelList(
            ok=False, message="Ollama binary not found on this system.", error_kind="BinaryNotFound",
        )

        result = runner.invoke(main, ["models"])

        assert result.exit_code == 1
        assert "binary not found" in result.output

    def test_doctor_requirement_failure(self, runner, mock_workbench):
        mock_workbench.check_requirements.return_value = RequirementsReport(
            passed=False, issues=["Insufficient RAM"], os="linux", ram_gb=4.0,
        )

        result = runner.invoke(main, ["doctor", "--min-ram", "16", "--min-disk", "5"])

        assert result.exit_code == 1
        mock_workbench.validate_environment.assert_called_once_with()
        mock_workbench.check_requirements.assert_called_once_with(16.0, 5.0)

    def test_doctor_passes(self, runner, mock_workbench):
        mock_workbench.check_requirements.return_value = RequirementsReport(passed=True, os="linux", ram_gb=32.0)

        assert runner.invoke(main, ["doctor"]).exit_code == 0

    def test_ensure_already_running_returns(self, runner, mock_workbench):
        """An n8n this process did not start is not waited on."""
        mock_workbench.ensure_platform.return_value = CommandResult(
            ok=True, message="ℹ Agentic Platform already running", error_kind="AlreadyRunning",
        )
        mock_workbench.launcher.is_running.return_value = False

        result = runner.invoke(main, ["ensure"])

        assert result.exit_code == 0
        assert "Press Ctrl+C" not in result.output

    def test_ensure_launched_runs_in_foreground(self, runner, mock_workbench):
        mock_workbench.ensure_platform.return_value = CommandResult(ok=True, message="n8n launched (PID 42)")
        mock_workbench.launcher.is_running.side_effect = [True, True, False]

        with patch("workbench.cli.time.sleep"):
            result = runner.invoke(main, ["ensure"])

        assert result.exit_code == 0
        assert "Press Ctrl+C" in result.output

    def test_setup_failure_exit_code(self, runner, mock_workbench):
        mock_workbench.setup.return_value = CommandResult(
            ok=False, message="Node.js binary not found on this system.", error_kind="BinaryNotFound",
        )

        result = runner.invoke(main, ["setup"])

        assert result.exit_code == 1
        assert "Node.js" in result.output
        mock_workbench.setup.assert_called_once_with(launch=False)

    def test_setup_without_launch_returns(self, runner, mock_workbench):
        mock_workbench.setup.return_value = CommandResult(ok=True, message="🎉 All systems ready.")

        result = runner.invoke(main, ["setup"])

        assert result.exit_code == 0
        mock_workbench.launcher.is_running.assert_not_called()

    def test_setup_with_launch(self, runner, mock_workbench):
        mock_workbench.setup.return_value = CommandResult(ok=True, message="🎉 All systems ready.")
        mock_workbench.launcher.is_running.side_effect = [True, False]

        with patch("workbench.cli.time.sleep"):
            result = runner.invoke(main, ["setup", "--launch"])

        assert result.exit_code == 0
        mock_workbench.setup.assert_called_once_with(launch=True)

    def test_install_failure(self, runner, mock_workbench):
        mock_workbench.install_n8n.return_value = CommandResult(
            ok=False, message="❌ n8n installation failed with exit code 1", error_kind="InstallFailed",
        )

        result = runner.invoke(main, ["install-n8n"])

        assert result.exit_code == 1

    @patch("uvicorn.run")
    def test_serve(self, mock_run, runner):
        result = runner.invoke(main, ["serve", "--port", "9000"])

        assert result.exit_code == 0
        args, kwargs = mock_run.call_args
        assert args[0] == "workbench.broker:create_app"
        assert kwargs["factory"] is True
        assert kwargs["port"] == 9000
