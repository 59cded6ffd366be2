"""Tests for firmware file loading and compatibility checks."""

import dataclasses
import io

import pytest

from pload.errors import CompatibilityError, FirmwareFileError
from pload.intel_hex import HexData, IntelHexError
from pload.models import MemorySet
from pload.core.firmware import (
    ArchiveFirmware,
    ArchiveImage,
    ArchiveReader,
    FirmwareArchive,
    HexFirmware,
    read_firmware_file,
)
from pload.protocol import bootloader as bl

from conftest import PSTAR


HEX_TEXT = ":0100000001FE\n:00000001FF\n"


class StubArchiveReader(ArchiveReader):
    """Returns a fixed archive and remembers what it was given."""

    def __init__(self, archive):
        self.archive = archive
        self.calls = []

    def read(self, data, source_name):
        self.calls.append((data, source_name))
        return self.archive


def make_archive(usb_product_id=0x0102):
    memory = HexData()
    memory.set_image(0x2000, b"\x01\x02\x03\x04")
    return FirmwareArchive([ArchiveImage(0x1FFB, usb_product_id, 2, memory)])


class TestReadFirmwareFile:
    """Test sniffing and loading firmware files."""

    def test_hex_file(self, tmp_path):
        """A file starting with ':' is parsed as Intel HEX."""
        path = tmp_path / "app.hex"
        path.write_text(HEX_TEXT)
        firmware = read_firmware_file(str(path))
        assert isinstance(firmware, HexFirmware)
        assert firmware.bootloader_types() is None

    def test_hex_from_stdin(self):
        """'-' reads from the given stdin stream."""
        firmware = read_firmware_file("-", stdin=io.BytesIO(HEX_TEXT.encode()))
        assert firmware.source_name == "-"
        assert firmware.hex_data.get_image(0, 1) == b"\x01"

    def test_empty_file(self, tmp_path):
        """Empty input cannot be sniffed."""
        path = tmp_path / "empty.hex"
        path.write_bytes(b"")
        with pytest.raises(FirmwareFileError) as exc_info:
            read_firmware_file(str(path))
        assert str(exc_info.value) == f"{path}: Failed to read first character."

    def test_missing_file(self, tmp_path):
        """Unreadable files become FirmwareFileError."""
        with pytest.raises(FirmwareFileError):
            read_firmware_file(str(tmp_path / "missing.hex"))

    def test_archive_without_reader(self, tmp_path):
        """Non-HEX files need an archive reader."""
        path = tmp_path / "fw.bin"
        path.write_bytes(b"\x00\x01")
        with pytest.raises(FirmwareFileError, match="firmware archive files are not supported"):
            read_firmware_file(str(path))

    def test_archive_with_reader(self, tmp_path):
        """The archive reader receives the raw bytes and file name."""
        path = tmp_path / "fw.bin"
        path.write_bytes(b"PK\x03\x04")
        reader = StubArchiveReader(make_archive())
        firmware = read_firmware_file(str(path), archive_reader=reader)
        assert isinstance(firmware, ArchiveFirmware)
        assert reader.calls == [(b"PK\x03\x04", str(path))]
        assert firmware.bootloader_types() == [PSTAR]

    def test_hex_without_data(self, tmp_path):
        """A HEX file with only an End of File record is rejected."""
        path = tmp_path / "blank.hex"
        path.write_text(":00000001FF\n")
        with pytest.raises(FirmwareFileError, match="file contains no firmware data"):
            read_firmware_file(str(path))

    def test_empty_archive(self, tmp_path):
        """An archive with no images is rejected."""
        path = tmp_path / "fw.bin"
        path.write_bytes(b"\x00")
        with pytest.raises(FirmwareFileError, match="no firmware data"):
            read_firmware_file(str(path), archive_reader=StubArchiveReader(FirmwareArchive()))

    def test_malformed_hex_names_file_and_line(self, tmp_path):
        """HEX errors carry the file name and line."""
        path = tmp_path / "bad.hex"
        path.write_bytes(b":0100000001FE\n:01\xe90000001FE\n:00000001FF\n")
        with pytest.raises(IntelHexError) as exc_info:
            read_firmware_file(str(path))
        assert exc_info.value.line_number == 2
        assert str(exc_info.value).startswith(f"{path}:2: ")


class TestCompatibility:
    """Test checks made before anything is written."""

    def test_hex_eeprom_on_device_without_eeprom(self):
        """Writing EEPROM from HEX needs EEPROM."""
        firmware = HexFirmware(HexData())
        no_eeprom = dataclasses.replace(PSTAR, eeprom_size=0)
        firmware.ensure_compatibility(no_eeprom, MemorySet.ALL)
        with pytest.raises(CompatibilityError, match="does not have EEPROM"):
            firmware.ensure_compatibility(no_eeprom, MemorySet.EEPROM)

    def test_archive_wrong_device(self):
        """Archives without an image for this bootloader are rejected."""
        firmware = ArchiveFirmware(make_archive(usb_product_id=0x0999))
        with pytest.raises(CompatibilityError) as exc_info:
            firmware.ensure_compatibility(PSTAR, MemorySet.ALL)
        assert str(exc_info.value) == "The firmware file does not match the selected bootloader."

    def test_archive_specific_memory(self):
        """Archives always write all memories."""
        firmware = ArchiveFirmware(make_archive())
        firmware.ensure_compatibility(PSTAR, MemorySet.ALL)
        with pytest.raises(CompatibilityError, match="do not support writing to a specific memory"):
            firmware.ensure_compatibility(PSTAR, MemorySet.FLASH)


class TestWrite:
    """Test programming order."""

    def test_hex_write_order(self, device, handle):
        """Flash is erased, then EEPROM written, then flash erased again and written."""
        hex_data = HexData()
        hex_data.set_image(0x2000, b"\x11\x22")
        hex_data.set_image(0xF00000, b"\x33")
        HexFirmware(hex_data).write_to(handle, MemorySet.ALL)

        requests = device.requests()
        first_eeprom = requests.index(bl.REQUEST_WRITE_EEPROM)
        last_eeprom = len(requests) - 1 - requests[::-1].index(bl.REQUEST_WRITE_EEPROM)
        first_flash = requests.index(bl.REQUEST_WRITE_FLASH_BLOCK)
        assert requests[0] == bl.REQUEST_INITIALIZE
        assert bl.REQUEST_ERASE_FLASH in requests[:first_eeprom]
        assert bl.REQUEST_ERASE_FLASH in requests[last_eeprom:first_flash]
        assert device.flash[:2] == b"\x11\x22"
        assert device.eeprom[0] == 0x33

    def test_hex_write_flash_only(self, device, handle):
        """FLASH leaves EEPROM alone."""
        hex_data = HexData()
        hex_data.set_image(0x2000, b"\x11")
        hex_data.set_image(0xF00000, b"\x33")
        HexFirmware(hex_data).write_to(handle, MemorySet.FLASH)
        assert bl.REQUEST_WRITE_EEPROM not in device.requests()
        assert device.eeprom[0] == 0xFF

    def test_archive_write(self, device, handle):
        """Archive images are applied through the bootloader handle."""
        ArchiveFirmware(make_archive()).write_to(handle, MemorySet.ALL)
        assert device.flash[:4] == b"\x01\x02\x03\x04"
