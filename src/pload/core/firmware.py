"""
Firmware files: HEX or firmware archive.

read_firmware_file() sniffs the first byte of the file. A ':' means Intel
HEX; anything else is treated as a firmware archive. Both variants offer
the same interface:

    bootloader_types()                       types the file was built for, or None
    ensure_compatibility(btype, memory_set)  raise before touching the device
    write_to(handle, memory_set)             program the device

Archive contents are decoded by a pluggable ArchiveReader. Without one,
archive files are rejected with a clear error.
"""

import logging
import sys
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional, Union

from pload.errors import CompatibilityError, FirmwareFileError
from pload.intel_hex import HexData, parse_hex
from pload.models import BootloaderType, MemorySet, lookup_bootloader_type
from pload.protocol.bootloader import BootloaderHandle

logger = logging.getLogger(__name__)

STDIO_NAME = "-"


@dataclass
class ArchiveImage:
    """One device's firmware inside an archive."""
    usb_vendor_id: int
    usb_product_id: int
    upload_type: int
    memory: HexData = field(default_factory=HexData)

    def matches(self, usb_vendor_id: int, usb_product_id: int) -> bool:
        return self.usb_vendor_id == usb_vendor_id and self.usb_product_id == usb_product_id


@dataclass
class FirmwareArchive:
    """A multi-device firmware file: one image per bootloader type."""
    images: List[ArchiveImage] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.images)

    def matches_bootloader(self, usb_vendor_id: int, usb_product_id: int) -> bool:
        return any(image.matches(usb_vendor_id, usb_product_id) for image in self.images)

    def find_image(self, usb_vendor_id: int, usb_product_id: int) -> ArchiveImage:
        for image in self.images:
            if image.matches(usb_vendor_id, usb_product_id):
                return image
        raise CompatibilityError("The firmware file does not match the selected bootloader.")


class ArchiveReader:
    """Decodes firmware archive files. Subclass and pass to read_firmware_file()."""

    def read(self, data: bytes, source_name: str) -> FirmwareArchive:
        raise NotImplementedError


class HexFirmware:
    """Firmware loaded from an Intel HEX file."""

    def __init__(self, hex_data: HexData, source_name: str = STDIO_NAME):
        self.hex_data = hex_data
        self.source_name = source_name

    def __bool__(self) -> bool:
        return bool(self.hex_data)

    def bootloader_types(self) -> Optional[List[BootloaderType]]:
        # HEX files carry no device information.
        return None

    def ensure_compatibility(self, btype: BootloaderType, memory_set: MemorySet) -> None:
        if btype.memory_set_includes_flash(memory_set):
            btype.ensure_flash_plain_writing()
        if btype.memory_set_includes_eeprom(memory_set):
            btype.ensure_eeprom_access()

    def write_to(self, handle: BootloaderHandle, memory_set: MemorySet) -> None:
        """
        Program the device from this HEX file.

        Flash is erased before EEPROM is written, and EEPROM is written
        before flash, so that no application ever runs against EEPROM
        contents meant for a different application.
        """
        btype = handle.type
        includes_flash = btype.memory_set_includes_flash(memory_set)

        if includes_flash:
            handle.initialize()
            handle.erase_flash()

        if btype.memory_set_includes_eeprom(memory_set):
            handle.write_eeprom(self.hex_data.get_image(btype.eeprom_address_hex_file, btype.eeprom_size))

        if includes_flash:
            handle.write_flash(self.hex_data.get_image(btype.app_address, btype.app_size))


class ArchiveFirmware:
    """Firmware loaded from a firmware archive."""

    def __init__(self, archive: FirmwareArchive, source_name: str = STDIO_NAME):
        self.archive = archive
        self.source_name = source_name

    def __bool__(self) -> bool:
        return bool(self.archive)

    def bootloader_types(self) -> List[BootloaderType]:
        types = []
        for image in self.archive.images:
            btype = lookup_bootloader_type(image.usb_vendor_id, image.usb_product_id)
            if btype is not None and btype not in types:
                types.append(btype)
        return types

    def ensure_compatibility(self, btype: BootloaderType, memory_set: MemorySet) -> None:
        if not self.archive.matches_bootloader(btype.usb_vendor_id, btype.usb_product_id):
            raise CompatibilityError("The firmware file does not match the selected bootloader.")
        if memory_set != MemorySet.ALL:
            raise CompatibilityError("Firmware archives do not support writing to a specific memory.")

    def write_to(self, handle: BootloaderHandle, memory_set: MemorySet) -> None:
        btype = handle.type
        handle.apply_image(self.archive.find_image(btype.usb_vendor_id, btype.usb_product_id))


FirmwareData = Union[HexFirmware, ArchiveFirmware]


def _read_input_bytes(path: str, stdin: Optional[BinaryIO]) -> bytes:
    if path == STDIO_NAME:
        stream = stdin if stdin is not None else sys.stdin.buffer
        return stream.read()
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise FirmwareFileError(f"{path}: {e.strerror or e}") from e


def read_firmware_file(
    path: str,
    archive_reader: Optional[ArchiveReader] = None,
    stdin: Optional[BinaryIO] = None,
) -> FirmwareData:
    """
    Read a firmware file, deciding its kind from the first byte.

    Args:
        path: File name, or "-" for standard input
        archive_reader: Decoder for non-HEX files
        stdin: Binary stream used for "-" (defaults to sys.stdin)

    Returns:
        HexFirmware or ArchiveFirmware containing at least some data

    Raises:
        FirmwareFileError: If the file is unreadable, empty, unsupported,
            or contains no firmware data
        IntelHexError: If a HEX file is malformed
    """
    data = _read_input_bytes(path, stdin)
    if not data:
        raise FirmwareFileError(f"{path}: Failed to read first character.")

    firmware: FirmwareData
    if data[:1] == b":":
        # latin-1 maps every byte, so stray non-ASCII bytes reach the parser
        # and fail as invalid hex digits with a line number.
        firmware = HexFirmware(parse_hex(data.decode("latin-1"), path), path)
    else:
        if archive_reader is None:
            raise FirmwareFileError(
                f"{path}: not an Intel HEX file, and firmware archive files are not supported."
            )
        firmware = ArchiveFirmware(archive_reader.read(data, path), path)

    if not firmware:
        raise FirmwareFileError(f"{path}: file contains no firmware data.")

    logger.debug(f"Read {type(firmware).__name__} from {path}")
    return firmware
