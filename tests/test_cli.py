"""Tests for the p-load command line."""

import pytest
from typer.testing import CliRunner

from pload import cli
from pload.intel_hex import parse_hex
from pload.protocol import TransportErrorKind
from pload.protocol import bootloader as bl

from conftest import FakeDiscovery


runner = CliRunner()

FLASH_HEX = ":022000001122AB\n:00000001FF\n"


@pytest.fixture
def bus(monkeypatch):
    discovery = FakeDiscovery()
    monkeypatch.setattr(cli, "_make_discovery", lambda: discovery)
    return discovery


@pytest.fixture
def terminal(monkeypatch):
    """Pretend stdout is a terminal so info messages are printed."""
    monkeypatch.setattr(cli, "_stdout_is_terminal", lambda: True)


@pytest.fixture
def hex_file(tmp_path):
    path = tmp_path / "app.hex"
    path.write_text(FLASH_HEX)
    return str(path)


class TestArguments:
    """Test argument handling that never reaches a device."""

    def test_no_arguments_shows_help(self, bus):
        """Running with no arguments prints help and succeeds."""
        result = runner.invoke(cli.app, [])
        assert result.exit_code == 0
        assert "--write-flash" in result.output
        assert bus.list_calls == 0

    def test_version(self):
        """--version prints the version."""
        result = runner.invoke(cli.app, ["--version"])
        assert result.exit_code == 0
        assert "p-load 1.0.0" in result.output

    def test_nothing_to_do(self, bus):
        """Selecting a device without an action is a usage error."""
        result = runner.invoke(cli.app, ["-d", "12345678"])
        assert result.exit_code == 1
        assert "Error: Arguments do not specify anything to do." in result.output

    def test_invalid_type(self, bus):
        """Unknown -t values are rejected."""
        result = runner.invoke(cli.app, ["-t", "nonsense", "--list"])
        assert result.exit_code == 1
        assert "Error: Invalid device type 'nonsense'." in result.output

    def test_empty_serial(self, bus):
        """An empty -d value is rejected."""
        result = runner.invoke(cli.app, ["-d", "", "--list"])
        assert result.exit_code == 1
        assert "Error: An empty serial number was specified." in result.output

    def test_list_supported(self):
        """--list-supported shows type names and USB ids."""
        result = runner.invoke(cli.app, ["--list-supported"])
        assert result.exit_code == 0
        assert "p-star" in result.output
        assert "1ffb:0102" in result.output


class TestDevices:
    """Test commands against fake connected devices."""

    def test_list(self, bus):
        """--list shows each bootloader with its status."""
        bus.add_bootloader("12345678")
        result = runner.invoke(cli.app, ["--list"])
        assert result.exit_code == 0
        assert "12345678" in result.output
        assert "App present" in result.output

    def test_list_empty(self, bus, terminal):
        """--list with nothing connected says so."""
        result = runner.invoke(cli.app, ["--list", "-d", "42"])
        assert result.exit_code == 0
        assert "No device found with serial number '42'." in result.output

    def test_write_flash(self, bus, hex_file, terminal):
        """--write-flash programs the device and reports it."""
        device = bus.add_bootloader("12345678")
        result = runner.invoke(cli.app, ["-d", "12345678", "--write-flash", hex_file])
        assert result.exit_code == 0, result.output
        assert device.flash[:2] == b"\x11\x22"
        assert "Serial number: 12345678" in result.output
        assert bl.REQUEST_RESTART not in device.requests()

    def test_w_restarts(self, bus, hex_file, terminal):
        """-w writes and then restarts."""
        device = bus.add_bootloader("1")
        result = runner.invoke(cli.app, ["-w", hex_file])
        assert result.exit_code == 0, result.output
        assert device.requests()[-1] == bl.REQUEST_RESTART
        assert "Sent command to restart device." in result.output

    def test_actions_follow_command_line_order(self, bus, hex_file):
        """Options run in the order they appear."""
        device = bus.add_bootloader("1")
        result = runner.invoke(cli.app, ["--erase-eeprom", "--write-flash", hex_file])
        assert result.exit_code == 0, result.output
        requests = device.requests()
        assert requests.index(bl.REQUEST_WRITE_EEPROM) < requests.index(bl.REQUEST_ERASE_FLASH)

        device = bus.add_bootloader("2")
        result = runner.invoke(cli.app, ["-d", "2", "--write-flash", hex_file, "--erase-eeprom"])
        assert result.exit_code == 0, result.output
        requests = device.requests()
        assert requests.index(bl.REQUEST_ERASE_FLASH) < requests.index(bl.REQUEST_WRITE_EEPROM)

    def test_not_found(self, bus):
        """No matching device exits with code 3."""
        result = runner.invoke(cli.app, ["--erase"])
        assert result.exit_code == 3
        assert "Error: No device found." in result.output

    def test_multiple_found(self, bus):
        """Several matching devices exit with code 4."""
        bus.add_bootloader("1")
        bus.add_bootloader("2")
        result = runner.invoke(cli.app, ["--erase"])
        assert result.exit_code == 4
        assert "multiple qualifying devices" in result.output

    def test_operation_failed(self, bus, tmp_path):
        """A bad firmware file exits with code 2."""
        bus.add_bootloader("1")
        result = runner.invoke(cli.app, ["--write", str(tmp_path / "missing.hex")])
        assert result.exit_code == 2
        assert "Error: " in result.output

    def test_repeated_options_keep_their_positions(self, bus, tmp_path):
        """Each occurrence of an option runs where it was given."""
        device = bus.add_bootloader("1")
        device.flash[0:2] = b"\x11\x22"
        first, second = tmp_path / "a.hex", tmp_path / "b.hex"
        result = runner.invoke(
            cli.app, ["--read-flash", str(first), "--erase-flash", "--read-flash", str(second)]
        )
        assert result.exit_code == 0, result.output

        requests = device.requests()
        erase = requests.index(bl.REQUEST_ERASE_FLASH)
        assert bl.REQUEST_READ_FLASH in requests[:erase]
        assert bl.REQUEST_READ_FLASH in requests[erase:]
        assert parse_hex(first.read_text()).get_image(0x2000, 2) == b"\x11\x22"
        assert parse_hex(second.read_text()).get_image(0x2000, 2) == b"\xFF\xFF"

    def test_inline_option_values(self, bus, hex_file, tmp_path):
        """--opt=value and -wFILE forms are ordered like the spaced forms."""
        device = bus.add_bootloader("1")
        out = tmp_path / "out.hex"
        result = runner.invoke(
            cli.app, ["-d", "1", f"--read-eeprom={out}", f"-w{hex_file}"]
        )
        assert result.exit_code == 0, result.output
        requests = device.requests()
        assert requests.index(bl.REQUEST_READ_EEPROM) < requests.index(bl.REQUEST_WRITE_FLASH_BLOCK)
        assert requests[-1] == bl.REQUEST_RESTART
        assert out.exists()


class TestOutput:
    """Test what reaches stdout and stderr."""

    def test_read_flash_to_stdout_is_plain_hex(self, bus):
        """With stdout redirected, '-' output holds nothing but HEX records."""
        device = bus.add_bootloader("12345678")
        device.flash[0:2] = b"\x11\x22"
        result = runner.invoke(cli.app, ["--read-flash", "-"])
        assert result.exit_code == 0, result.output
        hex_data = parse_hex(result.stdout)
        assert hex_data.get_image(0x2000, 2) == b"\x11\x22"
        assert "Serial number" not in result.output
        assert "Reading flash" not in result.output

    def test_terminal_shows_info(self, bus, terminal):
        """On a terminal the device and serial number are printed."""
        bus.add_bootloader("12345678")
        result = runner.invoke(cli.app, ["--erase-eeprom"])
        assert result.exit_code == 0, result.output
        assert "Device:" in result.output
        assert "Serial number: 12345678" in result.output

    def test_verbose_prints_summary(self, bus, hex_file):
        """-v ends with a summary of the run."""
        bus.add_bootloader("1")
        result = runner.invoke(cli.app, ["-v", "--write-flash", hex_file])
        assert result.exit_code == 0, result.output
        assert "[SUCCESS] run" in result.output
        assert "WriteMemoryAction(flash" in result.output

    def test_failure_shows_captured_logs(self, bus, hex_file):
        """A failed run with stdout redirected shows how far it got."""
        device = bus.add_bootloader("1")
        device.fail_requests[bl.REQUEST_WRITE_FLASH_BLOCK] = TransportErrorKind.TIMEOUT
        result = runner.invoke(cli.app, ["--write-flash", hex_file])
        assert result.exit_code == 2
        assert "Serial number: 1" in result.output
        assert "Error: " in result.output
