"""Tests for the main entry point and the top-level CLI group."""

from unittest.mock import patch

from click.testing import CliRunner

from remedy import main
from remedy.ui.cli import cli


def test_main_calls_cli() -> None:
    """main() hands control to the click group in remedy.ui.cli."""
    with patch("remedy.ui.cli.cli") as mock_cli:
        main()
        mock_cli.assert_called_once()


def test_cli_version():
    runner = CliRunner()
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "version 0.1.0" in result.output


def test_cli_lists_commands():
    runner = CliRunner()
    result = runner.invoke(cli, ["--help"])

    assert result.exit_code == 0
    for command in ("create", "run", "approve", "execute", "rollback", "sweep"):
        assert command in result.output
