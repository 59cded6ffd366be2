"""Bootloader protocol layer - transport interface, pyusb adapter and command engine."""

from .transport import (
    REQUEST_TYPE_IN,
    REQUEST_TYPE_OUT,
    BootloaderTransport,
    DeviceCandidate,
    DeviceDiscovery,
    TransportError,
    TransportErrorKind,
)
from .bootloader import (
    BootloaderHandle,
    BootloaderError,
    BootloaderDeviceError,
    NotSupportedError,
    ProtocolError,
    StatusCallback,
    describe_error_code,
)

__all__ = [
    # Transport
    "REQUEST_TYPE_IN",
    "REQUEST_TYPE_OUT",
    "BootloaderTransport",
    "DeviceCandidate",
    "DeviceDiscovery",
    "TransportError",
    "TransportErrorKind",
    # Bootloader engine
    "BootloaderHandle",
    "BootloaderError",
    "BootloaderDeviceError",
    "NotSupportedError",
    "ProtocolError",
    "StatusCallback",
    "describe_error_code",
]
