"""
Intel HEX reader and writer.

A HEX file is held as an ordered list of entries, each one a contiguous run
of bytes at a 32-bit address. Entries are kept exactly as they appear in the
file; flattening into a memory image happens only in HexData.get_image(),
where later entries overwrite earlier ones the same way repeated writes
overwrite physical memory.

Supported record types:
    0x00  Data
    0x01  End of File
    0x03  Start Segment Address (ignored)
    0x04  Extended Linear Address (high 16 bits of the address)
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, TextIO

from .errors import FirmwareFileError

logger = logging.getLogger(__name__)


RECORD_DATA = 0x00
RECORD_END_OF_FILE = 0x01
RECORD_EXTENDED_SEGMENT_ADDRESS = 0x02
RECORD_START_SEGMENT_ADDRESS = 0x03
RECORD_EXTENDED_LINEAR_ADDRESS = 0x04
RECORD_START_LINEAR_ADDRESS = 0x05

DEFAULT_BLOCK_SIZE = 16
MAX_RECORD_DATA = 0xFF
ERASED_BYTE = 0xFF

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")


class IntelHexError(FirmwareFileError):
    """
    Raised when a HEX file cannot be parsed.

    Attributes:
        message: Description of the problem
        source_name: Name of the file (or "-" for stdin)
        line_number: 1-based number of the offending line
    """

    def __init__(self, message: str, source_name: str, line_number: int):
        self.message = message
        self.source_name = source_name
        self.line_number = line_number
        super().__init__(f"{source_name}:{line_number}: {message}")


class _LineError(Exception):
    """Internal: problem with one line, before file/line context is known."""


@dataclass
class Entry:
    """A contiguous run of bytes at a specific address."""
    address: int
    data: bytes

    @property
    def end_address(self) -> int:
        """Return end address (exclusive)."""
        return self.address + len(self.data)


def checksum(values: Iterable[int]) -> int:
    """Two's complement of the 8-bit sum of the given byte values."""
    return -sum(values) & 0xFF


def format_record(record_type: int, address_low: int, data: bytes = b"") -> str:
    """
    Format a single HEX record line (without line terminator).

    Args:
        record_type: Record type byte
        address_low: Low 16 bits of the address
        data: Record payload (at most 255 bytes)

    Returns:
        Upper-case record text starting with ':'
    """
    if len(data) > MAX_RECORD_DATA:
        raise ValueError(f"HEX record too long: {len(data)} bytes (max {MAX_RECORD_DATA})")
    address_low &= 0xFFFF
    header = bytes([len(data), address_low >> 8, address_low & 0xFF, record_type])
    body = header + bytes(data)
    return ":" + body.hex().upper() + f"{checksum(body):02X}"


def split_lines(text: str) -> List[str]:
    """Split text on \\n, \\r\\n or \\r without producing a trailing empty line."""
    lines = _LINE_BREAK_RE.split(text)
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _read_byte(line: str, pos: int) -> int:
    pair = line[pos:pos + 2]
    if len(pair) < 2:
        raise _LineError("Unexpected end of line.")
    if pair[0] not in _HEX_DIGITS or pair[1] not in _HEX_DIGITS:
        raise _LineError("Invalid hex digit.")
    return int(pair, 16)


class HexData:
    """
    Ordered collection of HEX entries in a flat 32-bit address space.

    An instance with no entries is falsy ("no data").

    Example:
        data = HexData()
        data.set_image(0x2000, flash_bytes)
        data.write_to_file(sys.stdout)
    """

    def __init__(self, entries: Iterable[Entry] = ()):
        self.entries: List[Entry] = list(entries)

    def __bool__(self) -> bool:
        return bool(self.entries)

    def __repr__(self) -> str:
        return f"HexData(entries={len(self.entries)})"

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_text(self, text: str, source_name: str = "-") -> None:
        """
        Parse HEX text and append its data records to this object.

        Args:
            text: Complete HEX file contents
            source_name: File name used in error messages

        Raises:
            IntelHexError: On any malformed record, checksum failure,
                unsupported record type, or missing End of File record.
        """
        self.read_lines(split_lines(text), source_name)

    def read_lines(self, lines: List[str], source_name: str = "-") -> None:
        """Parse already-split HEX lines; see read_text()."""
        address_high = 0
        entries: List[Entry] = []

        line_number = 0
        while True:
            line_number += 1
            if line_number > len(lines):
                raise IntelHexError("Unexpected end of file.", source_name, line_number)

            try:
                record_type, address_low, data = self._parse_record(lines[line_number - 1])

                if record_type == RECORD_DATA:
                    address = (address_high << 16) + address_low
                    entries.append(Entry(address, data))
                elif record_type == RECORD_END_OF_FILE:
                    break
                elif record_type == RECORD_EXTENDED_LINEAR_ADDRESS:
                    if len(data) != 2:
                        raise _LineError(
                            "Extended Linear Address record has wrong number "
                            "of bytes (expected 2)."
                        )
                    address_high = (data[0] << 8) + data[1]
                elif record_type in (RECORD_EXTENDED_SEGMENT_ADDRESS, RECORD_START_LINEAR_ADDRESS):
                    raise _LineError("Unimplemented record type.")
                elif record_type == RECORD_START_SEGMENT_ADDRESS:
                    pass
                else:
                    raise _LineError("Unrecognized record type.")
            except _LineError as e:
                raise IntelHexError(str(e), source_name, line_number) from None

        logger.debug(f"Read {len(entries)} data records from {source_name}")
        self.entries.extend(entries)

    def read_from_file(self, stream: TextIO, source_name: str = "-") -> None:
        """Parse an open text stream; see read_text()."""
        self.read_text(stream.read(), source_name)

    @staticmethod
    def _parse_record(raw_line: str):
        line = raw_line.rstrip()
        if not line.startswith(":"):
            raise _LineError("Hex line does not start with colon (:).")

        byte_count = _read_byte(line, 1)
        address_low = (_read_byte(line, 3) << 8) + _read_byte(line, 5)
        record_type = _read_byte(line, 7)

        data = bytes(_read_byte(line, 9 + 2 * i) for i in range(byte_count))
        pos = 9 + 2 * byte_count
        actual = _read_byte(line, pos)

        expected = checksum(
            [byte_count, address_low >> 8, address_low & 0xFF, record_type, *data]
        )
        if actual != expected:
            raise _LineError(f'Incorrect checksum, expected "{expected:02X}".')

        if len(line) > pos + 2:
            raise _LineError("Extra data after checksum.")

        return record_type, address_low, data

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def to_hex_lines(self) -> List[str]:
        """
        Serialize entries to HEX record lines.

        An Extended Linear Address record is emitted before any entry whose
        high 16 address bits differ from those of the previous entry. The
        output always ends with an End of File record.
        """
        lines = []
        last_address = 0
        for entry in self.entries:
            address = entry.address
            if (address >> 16) != (last_address >> 16):
                high = bytes([(address >> 24) & 0xFF, (address >> 16) & 0xFF])
                lines.append(format_record(RECORD_EXTENDED_LINEAR_ADDRESS, 0, high))
            lines.append(format_record(RECORD_DATA, address & 0xFFFF, entry.data))
            last_address = address
        lines.append(format_record(RECORD_END_OF_FILE, 0))
        return lines

    def to_hex_text(self) -> str:
        """Serialize to a complete HEX file as a string."""
        return "".join(line + "\n" for line in self.to_hex_lines())

    def write_to_file(self, stream: TextIO) -> None:
        """Write a complete HEX file to an open text stream."""
        stream.write(self.to_hex_text())

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def get_image(self, start_address: int, size: int) -> bytes:
        """
        Flatten entries into a memory image.

        Bytes not covered by any entry stay 0xFF (erased). When entries
        overlap, the later entry wins.

        Args:
            start_address: File-space address of image[0]
            size: Number of bytes in the image

        Returns:
            Image bytes of length `size`
        """
        image = bytearray([ERASED_BYTE]) * size
        end_address = start_address + size
        for entry in self.entries:
            start = max(start_address, entry.address)
            end = min(end_address, entry.end_address)
            if start >= end:
                continue
            image[start - start_address:end - start_address] = (
                entry.data[start - entry.address:end - entry.address]
            )
        return bytes(image)

    def set_image(self, start_address: int, image: bytes, block_size: int = DEFAULT_BLOCK_SIZE) -> None:
        """
        Append a flat memory image as fixed-size entries in address order.

        Args:
            start_address: File-space address of image[0]
            image: Image bytes
            block_size: Maximum number of bytes per entry (default 16)
        """
        if not 0 < block_size <= MAX_RECORD_DATA:
            raise ValueError(f"Invalid block size: {block_size}")
        for offset in range(0, len(image), block_size):
            chunk = bytes(image[offset:offset + block_size])
            self.entries.append(Entry(start_address + offset, chunk))


def parse_hex(text: str, source_name: str = "-") -> HexData:
    """Parse HEX text into a new HexData object."""
    data = HexData()
    data.read_text(text, source_name)
    return data


def parse_hex_lines(lines: Iterable[str], source_name: str = "-") -> HexData:
    """Parse an iterable of HEX lines (line terminators allowed) into a new HexData."""
    data = HexData()
    data.read_lines([line.rstrip("\r\n") for line in lines], source_name)
    return data
