"""
Exception taxonomy and process exit codes.

Every error raised by the library derives from PloadError and carries the
exit code the CLI should report for it. Modules define their own specific
exceptions (IntelHexError, TransportError, BootloaderError) on top of these.
"""

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes reported by the p-load command."""
    SUCCESS = 0
    BAD_ARGS = 1
    OPERATION_FAILED = 2
    DEVICE_NOT_FOUND = 3
    DEVICE_MULTIPLE_FOUND = 4


class PloadError(Exception):
    """Base exception for all p-load failures."""

    exit_code: ExitCode = ExitCode.OPERATION_FAILED


class BadArgumentsError(PloadError, ValueError):
    """Malformed or missing command-line input."""

    exit_code = ExitCode.BAD_ARGS


class DeviceNotFoundError(PloadError):
    """No connected device matched the selection criteria."""

    exit_code = ExitCode.DEVICE_NOT_FOUND


class MultipleDevicesError(PloadError):
    """More than one connected device matched the selection criteria."""

    exit_code = ExitCode.DEVICE_MULTIPLE_FOUND


class CompatibilityError(PloadError):
    """The selected device cannot satisfy a requested operation."""


class FirmwareFileError(PloadError):
    """A firmware file could not be read or contains no usable data."""
