"""
Core module for p-load.

This module provides the single source of truth for:
- Command-line value parsing (parsing.py)
- Result objects (results.py)
- Firmware files, HEX or archive (firmware.py)
- Device selection and bootloader launching (selector.py)
- The action pipeline and device listing (actions.py)

The CLI should call into this module rather than implementing its own logic.
"""

from .parsing import parse_serial_number, parse_user_type, get_valid_type_names
from .results import OperationResult
from .firmware import (
    ArchiveFirmware,
    ArchiveImage,
    ArchiveReader,
    FirmwareArchive,
    FirmwareData,
    HexFirmware,
    read_firmware_file,
)
from .selector import (
    AppInstance,
    BootloaderInstance,
    DeviceSelector,
    wait_for_bootloader,
)
from .actions import (
    EraseMemoryAction,
    PloadSession,
    ReadMemoryAction,
    WriteMemoryAction,
    list_devices,
    list_supported,
    run_session,
)

__all__ = [
    # Parsing
    "parse_serial_number",
    "parse_user_type",
    "get_valid_type_names",
    # Results
    "OperationResult",
    # Firmware
    "ArchiveFirmware",
    "ArchiveImage",
    "ArchiveReader",
    "FirmwareArchive",
    "FirmwareData",
    "HexFirmware",
    "read_firmware_file",
    # Selection
    "AppInstance",
    "BootloaderInstance",
    "DeviceSelector",
    "wait_for_bootloader",
    # Actions
    "EraseMemoryAction",
    "PloadSession",
    "ReadMemoryAction",
    "WriteMemoryAction",
    "list_devices",
    "list_supported",
    "run_session",
]
