"""
Bootloader transport interface.

The protocol engine never touches the bus directly. It issues control
transfers through a BootloaderTransport, and finds devices through a
DeviceDiscovery. The pyusb implementation lives in usb_transport.py; tests
provide in-memory fakes.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Union

from pload.errors import PloadError

logger = logging.getLogger(__name__)

# bmRequestType values for vendor requests to the device
REQUEST_TYPE_OUT = 0x40
REQUEST_TYPE_IN = 0xC0


class TransportErrorKind(Enum):
    """Why a control transfer failed."""
    STALL = "stall"
    TIMEOUT = "timeout"
    NO_DEVICE = "no_device"
    OTHER = "other"


class TransportError(PloadError):
    """
    A control transfer failed at the bus level.

    Attributes:
        kind: Failure category; only STALL prompts the bootloader
            error-code query
        message: Human-readable description
    """

    def __init__(self, kind: TransportErrorKind, message: str = ""):
        self.kind = kind
        self.message = message or f"USB transfer failed ({kind.value})."
        super().__init__(self.message)


@dataclass(frozen=True)
class DeviceCandidate:
    """A connected USB device as seen by discovery, before classification."""
    serial_number: str
    usb_vendor_id: int
    usb_product_id: int
    handle: object = field(default=None, compare=False, repr=False)

    @property
    def usb_id(self) -> str:
        return f"{self.usb_vendor_id:04X}:{self.usb_product_id:04X}"


class BootloaderTransport:
    """
    One open connection to a device.

    Subclasses implement control_transfer() and close(). Instances are
    context managers so that callers can scope the connection with `with`.
    """

    def control_transfer(
        self,
        request_type: int,
        request: int,
        value: int = 0,
        index: int = 0,
        data_or_length: Union[bytes, int] = 0,
    ) -> Union[int, bytes]:
        """
        Perform a single control transfer.

        Args:
            request_type: bmRequestType (0x40 OUT, 0xC0 IN)
            request: bRequest code
            value: wValue
            index: wIndex
            data_or_length: Payload for OUT transfers, or number of bytes
                to read for IN transfers

        Returns:
            Number of bytes sent (OUT) or the bytes received (IN)

        Raises:
            TransportError: If the transfer fails
        """
        raise NotImplementedError

    def close(self) -> None:
        """Release the connection."""

    def __enter__(self) -> "BootloaderTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class DeviceDiscovery:
    """Enumerates connected devices and opens connections to them."""

    def list_candidate_devices(self) -> List[DeviceCandidate]:
        """Return every connected device with a known vendor/product id."""
        raise NotImplementedError

    def open(self, candidate: DeviceCandidate) -> BootloaderTransport:
        """
        Open a connection to a device.

        Raises:
            TransportError: If the device cannot be opened
        """
        raise NotImplementedError
