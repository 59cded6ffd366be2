"""
Bootloader protocol engine.

Implements the vendor-request command set spoken by Pololu USB bootloaders:

    0x80  INITIALIZE          OUT  wValue = upload type
    0x81  ERASE_FLASH         IN   2 bytes {error code, pages remaining}
    0x82  WRITE_FLASH_BLOCK   OUT  one write block
    0x83  GET_LAST_ERROR      IN   1 byte
    0x84  CHECK_APPLICATION   IN   1 byte (nonzero = valid app)
    0x86  READ_FLASH          IN   up to 1024 bytes
    0x87  SET_DEVICE_CODE     OUT  16 bytes
    0x88  READ_EEPROM         IN   up to 32 bytes
    0x89  WRITE_EEPROM        OUT  up to 32 bytes
    0xFE  RESTART             OUT  wValue = delay before reset (ms)

Block addresses travel as wValue = address & 0xFFFF, wIndex = address >> 16.

When a command is rejected with a STALL, the device is asked once for its
last error code and a BootloaderDeviceError is raised with the matching
description. Nothing is retried.
"""

import logging
from typing import Callable, Optional, Union

from pload.errors import PloadError
from pload.models import BootloaderType, UploadType
from .transport import (
    REQUEST_TYPE_IN,
    REQUEST_TYPE_OUT,
    BootloaderTransport,
    DeviceDiscovery,
    TransportError,
    TransportErrorKind,
)

logger = logging.getLogger(__name__)


REQUEST_INITIALIZE = 0x80
REQUEST_ERASE_FLASH = 0x81
REQUEST_WRITE_FLASH_BLOCK = 0x82
REQUEST_GET_LAST_ERROR = 0x83
REQUEST_CHECK_APPLICATION = 0x84
REQUEST_READ_FLASH = 0x86
REQUEST_SET_DEVICE_CODE = 0x87
REQUEST_READ_EEPROM = 0x88
REQUEST_WRITE_EEPROM = 0x89
REQUEST_RESTART = 0xFE

FLASH_READ_BLOCK_SIZE = 1024
EEPROM_BLOCK_SIZE = 32
DEVICE_CODE_SIZE = 16
RESTART_DELAY_MS = 500

ERASED_BYTE = 0xFF

ERROR_DESCRIPTIONS = {
    1: "Device is not in the correct state.",
    2: "Invalid data length.",
    3: "Programming error.",
    4: "Write protection error.",
    5: "Verification error.",
    6: "Address is not in the correct range.",
    7: "Address was not accessed in the correct order.",
    8: "Address does not have the correct alignment.",
    9: "Write error.",
    10: "EEPROM verification error.",
}

StatusCallback = Callable[[str, int, int], None]


def describe_error_code(code: int) -> str:
    """Return the description of a bootloader error code."""
    return ERROR_DESCRIPTIONS.get(code, f"Unknown error code {code}.")


class BootloaderError(PloadError):
    """Base exception for protocol-level failures."""


class BootloaderDeviceError(BootloaderError):
    """
    The bootloader reported an error code.

    Attributes:
        code: Error code returned by the device
        context: What the engine was doing (e.g. "Failed to write flash")
    """

    def __init__(self, code: int, context: str = ""):
        self.code = code
        self.context = context
        description = describe_error_code(code)
        super().__init__(f"{context}: {description}" if context else description)


class NotSupportedError(BootloaderError):
    """The bootloader type lacks a capability the operation needs."""


class ProtocolError(BootloaderError):
    """The device answered with an unexpected length or content."""


def _is_erased(data: bytes) -> bool:
    return all(b == ERASED_BYTE for b in data)


class BootloaderHandle:
    """
    An open connection to one bootloader.

    Memory images passed in and returned are in device order: flash images
    cover [app_address, app_address + app_size) and EEPROM images cover the
    whole EEPROM.

    Example:
        with BootloaderHandle.open(discovery, instance) as handle:
            handle.initialize()
            handle.erase_flash()
            handle.write_eeprom(eeprom_image)
            handle.write_flash(flash_image)
            handle.restart_device()
    """

    def __init__(
        self,
        transport: BootloaderTransport,
        btype: BootloaderType,
        status_callback: Optional[StatusCallback] = None,
    ):
        self.transport = transport
        self.type = btype
        self.status_callback = status_callback

    @classmethod
    def open(
        cls,
        discovery: DeviceDiscovery,
        instance,
        status_callback: Optional[StatusCallback] = None,
    ) -> "BootloaderHandle":
        """Open a handle to a BootloaderInstance found by the selector."""
        transport = discovery.open(instance.candidate)
        return cls(transport, instance.type, status_callback)

    def close(self) -> None:
        self.transport.close()

    def __enter__(self) -> "BootloaderHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Low-level transfers
    # ------------------------------------------------------------------

    def _report(self, label: str, progress: int, maximum: int) -> None:
        if self.status_callback:
            self.status_callback(label, progress, maximum)

    def _transfer(
        self,
        request_type: int,
        request: int,
        value: int,
        index: int,
        data_or_length: Union[bytes, int],
        context: str,
    ) -> Union[int, bytes]:
        if isinstance(data_or_length, int):
            logger.debug(f">>> {request:02X} {value:04X} {index:04X} read {data_or_length}")
        else:
            logger.debug(f">>> {request:02X} {value:04X} {index:04X} {bytes(data_or_length).hex().upper()}")

        try:
            result = self.transport.control_transfer(
                request_type, request, value, index, data_or_length
            )
        except TransportError as e:
            if e.kind != TransportErrorKind.STALL:
                raise
            code = self._query_last_error()
            if code is None:
                raise
            raise BootloaderDeviceError(code, context) from e

        if not isinstance(result, int):
            logger.debug(f"<<< {bytes(result).hex().upper()}")
        return result

    def _query_last_error(self) -> Optional[int]:
        """Ask the device why it stalled; None if it cannot tell us."""
        try:
            response = self.transport.control_transfer(
                REQUEST_TYPE_IN, REQUEST_GET_LAST_ERROR, 0, 0, 1
            )
        except TransportError as e:
            logger.debug(f"GET_LAST_ERROR failed: {e}")
            return None
        if len(response) != 1 or response[0] == 0:
            logger.debug(f"GET_LAST_ERROR returned unexpected response {bytes(response).hex()}")
            return None
        return response[0]

    def _out(self, request: int, value: int, index: int, data: bytes, context: str) -> int:
        return self._transfer(REQUEST_TYPE_OUT, request, value, index, data, context)

    def _in(self, request: int, value: int, index: int, length: int, context: str) -> bytes:
        return bytes(self._transfer(REQUEST_TYPE_IN, request, value, index, length, context))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def initialize(self, upload_type: int = UploadType.PLAIN) -> None:
        """
        Prepare the bootloader for an upload.

        Sends the device code first when the bootloader type has one.

        Args:
            upload_type: Upload mode (PLAIN for HEX files)
        """
        device_code = self.type.device_code
        if device_code is not None:
            sent = self._out(REQUEST_SET_DEVICE_CODE, 0, 0, device_code, "Failed to set device code")
            if sent != len(device_code):
                raise ProtocolError(
                    f"Failed to set device code: sent {sent} of {len(device_code)} bytes."
                )
        self._out(REQUEST_INITIALIZE, int(upload_type), 0, b"", "Failed to initialize bootloader")

    def erase_flash(self) -> None:
        """
        Erase application flash, reporting progress under "Erasing flash...".

        Raises:
            BootloaderDeviceError: If the device reports an erase error
            ProtocolError: If a response is not 2 bytes long
        """
        max_progress = 0
        last_reported = None
        while True:
            response = self._in(REQUEST_ERASE_FLASH, 0, 0, 2, "Failed to erase flash")
            if len(response) != 2:
                raise ProtocolError(
                    f"Expected 2-byte response to Erase Flash request, got {len(response)}."
                )
            error_code, remaining = response[0], response[1]
            if error_code:
                raise BootloaderDeviceError(error_code, "Error erasing page")

            if max_progress < remaining:
                max_progress = remaining + 1
            progress = (max_progress - remaining, max_progress)
            if progress != last_reported:
                self._report("Erasing flash...", *progress)
                last_reported = progress

            if remaining == 0:
                return

    def write_flash(self, image: bytes, upload_type: int = UploadType.PLAIN) -> None:
        """
        Write application flash from the top down, skipping blank blocks.

        Flash is always erased first (INITIALIZE + ERASE_FLASH), even if it
        was erased just before.

        Args:
            image: Exactly app_size bytes
            upload_type: Upload mode sent with the INITIALIZE before the erase
        """
        btype = self.type
        if len(image) != btype.app_size:
            raise ValueError(
                f"Flash image is {len(image)} bytes; expected {btype.app_size}."
            )

        self.initialize(upload_type)
        self.erase_flash()

        label = "Writing flash..."
        progress = 0
        block_size = btype.write_block_size
        address = btype.app_end_address
        while address > btype.app_address:
            address -= block_size
            offset = address - btype.app_address
            block = image[offset:offset + block_size]

            if _is_erased(block):
                continue

            sent = self._out(
                REQUEST_WRITE_FLASH_BLOCK,
                address & 0xFFFF,
                address >> 16 & 0xFFFF,
                block,
                "Failed to write flash",
            )
            if sent != block_size:
                raise ProtocolError(
                    f"Failed to write flash at 0x{address:X}: sent {sent} of {block_size} bytes."
                )

            # Counts blank blocks above this one as done.
            progress = btype.app_size - offset
            self._report(label, progress, btype.app_size)

        if progress != btype.app_size:
            self._report(label, btype.app_size, btype.app_size)

    def read_flash(self) -> bytes:
        """
        Read application flash in 1024-byte blocks.

        Raises:
            NotSupportedError: If this bootloader cannot read flash
        """
        btype = self.type
        if not btype.supports_reading_flash:
            raise NotSupportedError("This bootloader does not support reading flash memory.")

        image = bytearray()
        while len(image) < btype.app_size:
            address = btype.app_address + len(image)
            length = min(FLASH_READ_BLOCK_SIZE, btype.app_size - len(image))
            block = self._in(
                REQUEST_READ_FLASH, address & 0xFFFF, address >> 16 & 0xFFFF, length,
                "Failed to read flash",
            )
            if len(block) != length:
                raise ProtocolError(
                    f"Failed to read flash at 0x{address:X}: got {len(block)} of {length} bytes."
                )
            image += block
            self._report("Reading flash...", len(image), btype.app_size)
        return bytes(image)

    def _ensure_eeprom(self) -> None:
        if self.type.eeprom_size == 0:
            raise NotSupportedError("This device does not have EEPROM.")
        if not self.type.supports_eeprom_access:
            raise NotSupportedError("This bootloader does not support accessing EEPROM.")

    def write_eeprom(self, image: bytes) -> None:
        """
        Write the whole EEPROM in 32-byte blocks.

        Args:
            image: Exactly eeprom_size bytes
        """
        self._ensure_eeprom()
        btype = self.type
        size = btype.eeprom_size
        if len(image) != size:
            raise ValueError(f"EEPROM image is {len(image)} bytes; expected {size}.")

        label = "Erasing EEPROM..." if _is_erased(image) else "Writing EEPROM..."

        offset = 0
        while offset < size:
            length = min(EEPROM_BLOCK_SIZE, size - offset)
            address = btype.eeprom_address + offset
            sent = self._out(
                REQUEST_WRITE_EEPROM,
                address & 0xFFFF,
                address >> 16 & 0xFFFF,
                image[offset:offset + length],
                "Failed to write EEPROM",
            )
            if sent != length:
                raise ProtocolError(
                    f"Failed to write EEPROM at 0x{address:X}: sent {sent} of {length} bytes."
                )
            offset += length
            self._report(label, offset, size)

    def read_eeprom(self) -> bytes:
        """Read the whole EEPROM in 32-byte blocks."""
        self._ensure_eeprom()
        btype = self.type
        size = btype.eeprom_size

        image = bytearray()
        while len(image) < size:
            length = min(EEPROM_BLOCK_SIZE, size - len(image))
            address = btype.eeprom_address + len(image)
            block = self._in(
                REQUEST_READ_EEPROM, address & 0xFFFF, address >> 16 & 0xFFFF, length,
                "Failed to read EEPROM",
            )
            if len(block) != length:
                raise ProtocolError(
                    f"Failed to read EEPROM at 0x{address:X}: got {len(block)} of {length} bytes."
                )
            image += block
            self._report("Reading EEPROM...", len(image), size)
        return bytes(image)

    def erase_eeprom(self) -> None:
        self._ensure_eeprom()
        self.write_eeprom(bytes([ERASED_BYTE]) * self.type.eeprom_size)

    def restart_device(self) -> None:
        """Ask the bootloader to reset the device after a short delay."""
        self._out(REQUEST_RESTART, RESTART_DELAY_MS, 0, b"", "Failed to restart device")

    def check_application(self) -> bool:
        """
        Ask whether a valid application is present.

        Raises:
            TransportError: If the request fails
            ProtocolError: If the response is not exactly 1 byte
        """
        response = self._in(
            REQUEST_CHECK_APPLICATION, 0, 0, 1,
            "Error checking to see if the application is valid",
        )
        if len(response) != 1:
            raise ProtocolError(
                "Error checking to see if the application is valid. "
                f"Expected a 1-byte response but got {len(response)} bytes."
            )
        return bool(response[0])

    def apply_image(self, image) -> None:
        """
        Write one image from a firmware archive.

        Args:
            image: ArchiveImage with `upload_type` and `memory` (HexData in
                file address space)
        """
        btype = self.type
        self.initialize(image.upload_type)
        self.erase_flash()
        if btype.has_eeprom:
            self.write_eeprom(image.memory.get_image(btype.eeprom_address_hex_file, btype.eeprom_size))
        self.write_flash(image.memory.get_image(btype.app_address, btype.app_size), image.upload_type)
