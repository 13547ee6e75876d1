"""Tests for CLI module."""

import pytest
import yaml
from click.testing import CliRunner

from qrlink import __version__
from qrlink.cli import main


@pytest.fixture
def runner():
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    """Config using the fast simulated provider and a temp session dir."""
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.dump(
            {
                "session_dir": str(tmp_path / "sessions"),
                "provider": "tests.fakes:fast_simulated_provider",
                "logging": {"level": "WARNING"},
                "capture": {"recheck_delay": 0},
                "pairing": {"retain_terminal": 0},
            }
        )
    )
    return path


class TestCLIHelp:
    """Test CLI help output."""

    def test_cli_help(self, runner):
        """qrlink --help lists the commands."""
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "serve" in result.output
        assert "pair" in result.output
        assert "version" in result.output

    def test_pair_help(self, runner):
        """qrlink pair --help documents the number option."""
        result = runner.invoke(main, ["pair", "--help"])

        assert result.exit_code == 0
        assert "--number" in result.output


class TestVersionCommand:
    """Test version command."""

    def test_version(self, runner, tmp_path):
        """qrlink version prints the package version."""
        result = runner.invoke(main, ["--config", str(tmp_path / "none.yaml"), "version"])

        assert result.exit_code == 0
        assert f"qrlink version {__version__}" in result.output


class TestConfigErrors:
    """Test config failures surface as CLI errors."""

    def test_invalid_config_exits_nonzero(self, runner, tmp_path):
        """A bad config value aborts with a message."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"reconnect": {"base_delay": -1}}))

        result = runner.invoke(main, ["--config", str(path), "version"])

        assert result.exit_code != 0
        assert "must not be negative" in result.output

    def test_unknown_provider_exits_nonzero(self, runner, tmp_path):
        """An unresolvable provider path is reported."""
        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.dump(
                {
                    "provider": "qrlink.nothing_here:factory",
                    "session_dir": str(tmp_path / "sessions"),
                }
            )
        )

        result = runner.invoke(main, ["--config", str(path), "pair"])

        assert result.exit_code != 0
        assert "Cannot import provider module" in result.output


class TestPairCommand:
    """Test terminal pairing."""

    def test_qr_pairing_succeeds(self, runner, config_file, tmp_path):
        """QR is shown and the capture is reported."""
        result = runner.invoke(main, ["--config", str(config_file), "pair", "--timeout", "10"])

        assert result.exit_code == 0, result.output
        assert "Waiting for QR code" in result.output
        assert "Status: open" in result.output
        assert "Session credentials delivered" in result.output
        assert list((tmp_path / "sessions").glob("*.creds")) == []

    def test_code_pairing_prints_code(self, runner, config_file):
        """A number selects code pairing."""
        result = runner.invoke(
            main,
            ["--config", str(config_file), "pair", "--number", "+1 555 123 4567", "--timeout", "10"],
        )

        assert result.exit_code == 0, result.output
        assert "Pairing code: " in result.output

    def test_invalid_number_fails(self, runner, config_file):
        """A number without digits is rejected."""
        result = runner.invoke(main, ["--config", str(config_file), "pair", "--number", "abc"])

        assert result.exit_code == 1
        assert "Error:" in result.output
