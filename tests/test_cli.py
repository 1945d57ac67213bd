"""Tests for tcprelay CLI."""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

from click.testing import CliRunner

from tcprelay.cli import _format_bytes, main


def mock_httpx_client(payload):
    mock_response = MagicMock()
    mock_response.json.return_value = payload

    mock_client = MagicMock()
    mock_client.get.return_value = mock_response
    mock_client.__enter__ = MagicMock(return_value=mock_client)
    mock_client.__exit__ = MagicMock(return_value=False)
    return mock_client


HEALTHY = {
    "status": "healthy",
    "activeConnections": 2,
    "totalConnections": 40,
    "uptime": 120.5,
    "memoryUsage": {"rss": 50 * 1024 * 1024, "vms": 0},
    "pid": 4321,
    "restartCount": 0,
    "consecutiveErrors": 0,
    "timeSinceActivity": 1500,
}


class TestCLIBasics:
    """Basic CLI tests."""

    def test_main_without_arguments_shows_banner(self):
        """Test that running without arguments shows banner and usage."""
        runner = CliRunner()
        result = runner.invoke(main)

        assert result.exit_code == 0
        assert "Self-supervising TCP relay" in result.output
        assert "Usage:" in result.output
        assert "tcprelay run" in result.output

    def test_main_with_help(self):
        """Test --help shows help message."""
        runner = CliRunner()
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "tcprelay - Self-supervising TCP relay" in result.output
        assert "run" in result.output
        assert "status" in result.output

    def test_run_help_lists_options(self):
        """Test that run --help lists the relay options."""
        runner = CliRunner()
        result = runner.invoke(main, ["run", "--help"])

        assert result.exit_code == 0
        assert "--target-host" in result.output
        assert "--listen-port" in result.output
        assert "--health-port" in result.output

    def test_version_command(self):
        """Test version command."""
        runner = CliRunner()
        result = runner.invoke(main, ["version"])

        assert result.exit_code == 0
        assert "Version:" in result.output
        assert "1.0.0" in result.output
        assert "Python:" in result.output


class TestRunCommand:
    """Tests for run command."""

    def test_missing_target_host_exits_with_config_error(self):
        """Test that a missing TARGET_HOST exits with the configuration error code."""
        runner = CliRunner()
        with patch("tcprelay.cli._run_supervisor") as run_supervisor:
            result = runner.invoke(main, ["run"])

        assert result.exit_code == 2
        assert "TARGET_HOST" in result.output
        run_supervisor.assert_not_called()

    def test_missing_target_host_with_retry_spawns_replacement(self):
        """Test that a missing TARGET_HOST with retry enabled spawns a replacement."""
        runner = CliRunner()
        env = {"RELAY_RETRY_ON_MISCONFIG": "true", "RELAY_MISCONFIG_RETRY_DELAY": "0"}
        with (
            patch("tcprelay.supervisor.restart.subprocess.Popen") as popen,
            patch("tcprelay.supervisor.restart.time.sleep"),
        ):
            result = runner.invoke(main, ["run"], env=env)

        assert result.exit_code == 0
        popen.assert_called_once()
        assert popen.call_args.kwargs["env"]["RELAY_RESTART_COUNT"] == "1"
        assert popen.call_args.kwargs["start_new_session"] is True

    def test_options_override_environment(self):
        """Test that command-line options take precedence over the environment."""
        runner = CliRunner()
        with patch("tcprelay.cli._run_supervisor", return_value=0) as run_supervisor:
            result = runner.invoke(
                main,
                ["run", "--target-host", "db.internal", "--listen-port", "15432"],
                env={"TARGET_HOST": "ignored", "TARGET_PORT": "6543"},
            )

        assert result.exit_code == 0
        config = run_supervisor.call_args.args[0]
        assert config.target_host == "db.internal"
        assert config.target_port == 6543
        assert config.listen_port == 15432
        assert "db.internal:6543" in result.output


class TestStatusCommand:
    """Tests for status command."""

    def test_status_with_json_output(self):
        """Test status command with --json flag."""
        runner = CliRunner()

        import httpx
        with patch.object(httpx, "Client") as mock_client_class:
            mock_client_class.return_value = mock_httpx_client(HEALTHY)

            result = runner.invoke(main, ["status", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output)["totalConnections"] == 40

    def test_status_table(self):
        """Test status rendered as a table."""
        runner = CliRunner()

        import httpx
        with patch.object(httpx, "Client") as mock_client_class:
            mock_client = mock_httpx_client(HEALTHY)
            mock_client_class.return_value = mock_client

            result = runner.invoke(main, ["status", "--url", "http://relay:5454/"])

        assert result.exit_code == 0
        assert "healthy" in result.output
        assert "50.0 MB" in result.output
        mock_client.get.assert_called_once_with("http://relay:5454/health")

    def test_status_unhealthy_exits_nonzero(self):
        """Test that an unhealthy status exits non-zero."""
        runner = CliRunner()

        import httpx
        with patch.object(httpx, "Client") as mock_client_class:
            mock_client_class.return_value = mock_httpx_client({**HEALTHY, "status": "unhealthy"})

            result = runner.invoke(main, ["status"])

        assert result.exit_code == 1
        assert "unhealthy" in result.output

    def test_status_handles_connection_error(self):
        """Test status command handles connection errors gracefully."""
        runner = CliRunner()

        import httpx
        with patch.object(httpx, "Client") as mock_client_class:
            mock_client_class.side_effect = Exception("Connection refused")

            result = runner.invoke(main, ["status"])

        assert result.exit_code == 1
        assert "Error" in result.output


class TestConfigCommand:
    """Tests for config show."""

    def test_config_show_table(self):
        """Test config show renders every section."""
        runner = CliRunner()
        result = runner.invoke(main, ["config", "show"], env={"TARGET_HOST": "db.internal"})

        assert result.exit_code == 0
        assert "Current Configuration" in result.output
        assert "target_host" in result.output
        assert "db.internal" in result.output

    def test_config_show_json_section(self):
        """Test config show limited to one section as JSON."""
        runner = CliRunner()
        result = runner.invoke(
            main,
            ["config", "show", "--json", "--section", "restart"],
            env={"RELAY_MAX_RESTARTS": "5"},
        )

        assert result.exit_code == 0
        display = json.loads(result.output)
        assert list(display) == ["restart"]
        assert display["restart"]["max_restarts"] == 5

    def test_config_show_unknown_section(self):
        """Test config show with an unknown section."""
        runner = CliRunner()
        result = runner.invoke(main, ["config", "show", "--section", "bogus"])

        assert result.exit_code == 1
        assert "Unknown section" in result.output


class TestFormatBytes:
    """Tests for _format_bytes helper."""

    def test_bytes(self):
        """Test formatting of plain bytes."""
        assert _format_bytes(512) == "512.0 B"

    def test_megabytes(self):
        """Test formatting of megabytes."""
        assert _format_bytes(5 * 1024 * 1024) == "5.0 MB"

    def test_terabytes(self):
        """Test formatting of terabytes."""
        assert _format_bytes(3 * 1024**4) == "3.0 TB"
