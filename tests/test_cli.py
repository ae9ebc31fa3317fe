"""Tests for Socket2Me CLI."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from click.testing import CliRunner

from socket2me.cli import main, run_session
from socket2me.core.config import ClientConfig
from socket2me.core.exceptions import AuthenticationError, ServerRejectedError

CONFIG = """\
username: alice
key: s3cret
server: socket2me.io
local:
  protocol: http
  host: localhost
  port: 3000
  allowed_paths:
    - ^/webhooks/
"""


def write_config(directory: str, content: str = CONFIG) -> str:
    path = Path(directory) / "config" / "client.yml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return str(path)


def make_config() -> ClientConfig:
    return ClientConfig(
        username="alice",
        key="s3cret",
        server="socket2me.io",
        local={"protocol": "http", "host": "localhost", "port": 3000},
    )


class TestCLIBasics:
    """Basic CLI tests."""

    def test_main_with_help(self):
        """Test --help shows help message."""
        runner = CliRunner()
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "Socket2Me - expose a local server" in result.output
        assert "--config" in result.output
        assert "--verbose" in result.output

    def test_version_command(self):
        """Test version command."""
        runner = CliRunner()
        result = runner.invoke(main, ["version"])

        assert result.exit_code == 0
        assert "Socket2Me:" in result.output
        assert "Python:" in result.output


class TestConfigLoading:
    """Tests for config errors reported before the session starts."""

    def test_missing_default_config(self):
        """Test a missing config/client.yml exits with status 1."""
        runner = CliRunner()
        with runner.isolated_filesystem():
            result = runner.invoke(main)

        assert result.exit_code == 1
        assert "CONFIG_ERROR" in result.output

    def test_invalid_config(self):
        runner = CliRunner()
        with runner.isolated_filesystem() as tmp:
            path = write_config(tmp, CONFIG.replace("  port: 3000\n", ""))
            result = runner.invoke(main, ["--config", path])

        assert result.exit_code == 1
        assert "local.port" in result.output


class TestRun:
    """Tests for running a session from the CLI."""

    def test_banner_and_clean_exit(self):
        """Test the banner is printed and a stopped session exits 0."""
        runner = CliRunner()
        with runner.isolated_filesystem() as tmp:
            write_config(tmp)
            with patch("socket2me.cli.run_session", return_value=0) as mock_run:
                result = runner.invoke(main)

        assert result.exit_code == 0
        assert "Socket2Me Client Initializing..." in result.output
        assert "https://alice.socket2me.io/" in result.output
        assert "http://localhost:3000/" in result.output
        assert "^/webhooks/" in result.output
        mock_run.assert_called_once()
        assert mock_run.call_args.kwargs["verbose"] is False

    def test_verbose_flag_is_passed_through(self):
        runner = CliRunner()
        with runner.isolated_filesystem() as tmp:
            path = write_config(tmp)
            with patch("socket2me.cli.run_session", return_value=0) as mock_run:
                result = runner.invoke(main, ["-c", path, "--verbose"])

        assert result.exit_code == 0
        assert mock_run.call_args.kwargs["verbose"] is True
        assert mock_run.call_args.kwargs["config_path"] == path

    def test_failed_session_exits_1(self):
        runner = CliRunner()
        with runner.isolated_filesystem() as tmp:
            write_config(tmp)
            with patch("socket2me.cli.run_session", return_value=1):
                result = runner.invoke(main)

        assert result.exit_code == 1


class TestRunSession:
    """Tests for run_session exit codes."""

    def _mock_session(self, run_side_effect=None) -> MagicMock:
        session = MagicMock()
        session.run = AsyncMock(side_effect=run_side_effect)
        return session

    def test_stopped_session_says_goodbye(self, capsys):
        session = self._mock_session()
        with patch("socket2me.cli.TunnelSession", return_value=session):
            code = run_session(make_config())

        assert code == 0
        session.add_state_hook.assert_called_once()
        session.run.assert_awaited_once()
        assert "Later, tater!" in capsys.readouterr().out

    def test_unauthorized_exits_1(self, capsys):
        session = self._mock_session(AuthenticationError())
        with patch("socket2me.cli.TunnelSession", return_value=session):
            code = run_session(make_config(), config_path="config/client.yml")

        assert code == 1
        output = capsys.readouterr().out
        assert "Authorization failed" in output
        assert "config/client.yml" in output

    def test_server_error_exits_1(self, capsys):
        session = self._mock_session(ServerRejectedError("tunnel replaced"))
        with patch("socket2me.cli.TunnelSession", return_value=session):
            code = run_session(make_config())

        assert code == 1
        assert "tunnel replaced" in capsys.readouterr().out
