"""Unit tests for the epok and epok-clean CLIs."""

from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from epok import __version__
from epok.cli import app, clean_app, parse_bool
from epok.core.context import create_context
from epok.core.exceptions import CommandError, StartupError, TransportError
from epok.core.output import Verbosity


runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep host EPOK_* variables out of the tests."""
    for name in ("EPOK_INTERFACES", "EPOK_EXTERNAL_INTERFACE", "EPOK_BATCH_COMMANDS",
                 "EPOK_BATCH_SIZE", "EPOK_CONFIG", "EPOK_NO_SUDO", "EPOK_SSH_HOST",
                 "EPOK_SSH_KEY", "EPOK_SSH_PORT", "EPOK_LOG_LEVEL", "EPOK_KUBECONFIG",
                 "EPOK_DEBOUNCE_SECONDS", "EPOK_RESYNC_SECONDS"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def key_file(tmp_path):
    key = tmp_path / "id_ed25519"
    key.write_text("key")
    return key


class TestParseBool:
    """Tests for parse_bool."""

    def test_values(self):
        """Common spellings should be accepted."""
        assert parse_bool("true") and parse_bool("1") and parse_bool("YES")
        assert not parse_bool("false") and not parse_bool("0") and not parse_bool("off")

    def test_invalid(self):
        """Anything else should be a usage error."""
        import typer
        with pytest.raises(typer.BadParameter):
            parse_bool("maybe")


class TestEpokCommand:
    """Tests for the epok CLI."""

    def test_version(self):
        """--version should print the version."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    @patch("epok.cli.run_operator")
    def test_local(self, mock_run):
        """local should run the operator without an SSH target."""
        result = runner.invoke(app, ["-i", "eth0,eth1", "-e", "eth2", "local"])
        assert result.exit_code == 0, result.output
        ctx, config, ssh = mock_run.call_args[0]
        assert config.interfaces == ["eth0", "eth1"]
        assert config.external_interface == "eth2"
        assert config.batch.enabled
        assert config.use_sudo
        assert ssh is None
        assert not ctx.dry_run

    @patch("epok.cli.run_operator")
    def test_env_interfaces(self, mock_run):
        """Interfaces should be read from EPOK_INTERFACES."""
        result = runner.invoke(app, ["local"], env={"EPOK_INTERFACES": "wg0"})
        assert result.exit_code == 0, result.output
        assert mock_run.call_args[0][1].interfaces == ["wg0"]

    @patch("epok.cli.run_operator")
    def test_interfaces_required(self, mock_run):
        """Missing interfaces should exit with the configuration error code."""
        result = runner.invoke(app, ["local"])
        assert result.exit_code == 2
        mock_run.assert_not_called()

    @patch("epok.cli.run_operator")
    def test_batch_options(self, mock_run):
        """Batch flags should reach the operator config."""
        result = runner.invoke(app, ["-i", "eth0", "--batch-commands", "false",
                                     "--batch-size", "4096", "--no-sudo", "local"])
        assert result.exit_code == 0, result.output
        config = mock_run.call_args[0][1]
        assert not config.batch.enabled
        assert config.batch.size == 4096
        assert not config.use_sudo

    @patch("epok.cli.run_operator")
    def test_batch_commands_env(self, mock_run):
        """EPOK_BATCH_COMMANDS should be honored."""
        result = runner.invoke(app, ["-i", "eth0", "local"], env={"EPOK_BATCH_COMMANDS": "0"})
        assert result.exit_code == 0, result.output
        assert not mock_run.call_args[0][1].batch.enabled

    def test_invalid_batch_commands(self):
        """A non-boolean batch flag should be a usage error."""
        result = runner.invoke(app, ["-i", "eth0", "--batch-commands", "maybe", "local"])
        assert result.exit_code == 2

    @patch("epok.cli.run_operator")
    def test_tuning_file(self, mock_run, tmp_path):
        """The tuning file should be loaded into the config."""
        path = tmp_path / "tuning.yaml"
        path.write_text("resync_seconds: 60\nordering: add-first\n")
        result = runner.invoke(app, ["-i", "eth0", "-c", str(path), "local"])
        assert result.exit_code == 0, result.output
        tuning = mock_run.call_args[0][1].tuning
        assert tuning.resync_seconds == 60
        assert tuning.ordering.value == "add-first"

    @patch("epok.cli.run_operator")
    def test_missing_tuning_file(self, mock_run, tmp_path):
        """A missing tuning file should be a configuration error."""
        result = runner.invoke(app, ["-i", "eth0", "-c", str(tmp_path / "nope.yaml"), "local"])
        assert result.exit_code == 2
        mock_run.assert_not_called()

    @patch("epok.cli.run_operator")
    def test_ssh(self, mock_run, key_file):
        """ssh should pass the target to the operator."""
        result = runner.invoke(app, ["-i", "eth0", "ssh", "-H", "root@gw",
                                     "-k", str(key_file), "-p", "2222"])
        assert result.exit_code == 0, result.output
        ssh = mock_run.call_args[0][2]
        assert ssh.host == "root@gw"
        assert ssh.port == 2222
        assert ssh.key_path == key_file

    @patch("epok.cli.run_operator")
    def test_ssh_env(self, mock_run, key_file):
        """SSH options should fall back to EPOK_SSH_* variables."""
        result = runner.invoke(app, ["-i", "eth0", "ssh"], env={
            "EPOK_SSH_HOST": "admin@gw",
            "EPOK_SSH_KEY": str(key_file),
        })
        assert result.exit_code == 0, result.output
        ssh = mock_run.call_args[0][2]
        assert ssh.host == "admin@gw"
        assert ssh.port == 22

    @patch("epok.cli.run_operator")
    def test_ssh_invalid_host(self, mock_run, key_file):
        """A host that looks like an option should be rejected."""
        result = runner.invoke(app, ["-i", "eth0", "ssh", "--host=-oProxyCommand=x",
                                     "-k", str(key_file)])
        assert result.exit_code == 2
        mock_run.assert_not_called()

    @patch("epok.cli.run_operator")
    def test_startup_error(self, mock_run):
        """An unreachable cluster should exit with the startup code."""
        mock_run.side_effect = StartupError("Kubernetes API is unreachable")
        result = runner.invoke(app, ["-i", "eth0", "local"])
        assert result.exit_code == 20

    @patch("epok.cli.run_operator")
    def test_dry_run(self, mock_run):
        """--dry-run should reach the execution context."""
        result = runner.invoke(app, ["-i", "eth0", "--dry-run", "local"])
        assert result.exit_code == 0, result.output
        assert mock_run.call_args[0][0].dry_run

    @patch("epok.cli.create_context", wraps=create_context)
    @patch("epok.cli.run_operator")
    def test_log_level_setting(self, mock_run, mock_create, monkeypatch):
        """EPOK_LOG_LEVEL should be passed on as the context's log level."""
        monkeypatch.setenv("EPOK_LOG_LEVEL", "debug")
        result = runner.invoke(app, ["-i", "eth0", "local"])
        assert result.exit_code == 0, result.output
        assert mock_create.call_args[1]["log_level"] == "debug"
        assert mock_run.call_args[0][0].verbosity == Verbosity.DEBUG

    @patch("epok.cli.run_operator")
    def test_quiet_beats_log_level(self, mock_run, monkeypatch):
        """An explicit --quiet should win over EPOK_LOG_LEVEL."""
        monkeypatch.setenv("EPOK_LOG_LEVEL", "debug")
        result = runner.invoke(app, ["-i", "eth0", "-q", "local"])
        assert result.exit_code == 0, result.output
        assert mock_run.call_args[0][0].verbosity == Verbosity.QUIET


class TestCleanCommand:
    """Tests for the epok-clean CLI."""

    @patch("epok.cli.run_cleanup")
    def test_local(self, mock_clean):
        """local should remove rules on this host."""
        result = runner.invoke(clean_app, ["--dry-run", "local"])
        assert result.exit_code == 0, result.output
        ctx, batch, ssh = mock_clean.call_args[0]
        assert ctx.dry_run
        assert batch.enabled
        assert ssh is None
        assert mock_clean.call_args[1]["use_sudo"]

    @patch("epok.cli.run_cleanup")
    def test_ssh(self, mock_clean, key_file):
        """ssh should remove rules on the remote host."""
        result = runner.invoke(clean_app, ["--batch-commands", "false", "ssh",
                                           "-H", "root@gw", "-k", str(key_file)])
        assert result.exit_code == 0, result.output
        _ctx, batch, ssh = mock_clean.call_args[0]
        assert not batch.enabled
        assert ssh.host == "root@gw"

    @patch("epok.cli.run_cleanup")
    def test_transport_error(self, mock_clean):
        """An unreachable host should exit with the transport code."""
        mock_clean.side_effect = TransportError("SSH connection to gw failed")
        result = runner.invoke(clean_app, ["local"])
        assert result.exit_code == 21

    @patch("epok.cli.run_cleanup")
    def test_command_error(self, mock_clean):
        """A failing removal should exit with the command code."""
        mock_clean.side_effect = CommandError("Command failed")
        result = runner.invoke(clean_app, ["local"])
        assert result.exit_code == 22
