"""
pyusb (libusb) implementation of the bootloader transport.

Maps usb.core.USBError onto TransportError kinds:
    EPIPE                          -> STALL
    USBTimeoutError / ETIMEDOUT    -> TIMEOUT
    ENODEV                         -> NO_DEVICE
    anything else                  -> OTHER
"""

import errno
import logging
from typing import List, Optional, Union

import usb.core
import usb.util

from pload.models import is_known_usb_id
from .transport import (
    BootloaderTransport,
    DeviceCandidate,
    DeviceDiscovery,
    TransportError,
    TransportErrorKind,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000


def translate_usb_error(error: usb.core.USBError) -> TransportError:
    """Convert a pyusb error into a TransportError with the matching kind."""
    if isinstance(error, usb.core.USBTimeoutError) or error.errno == errno.ETIMEDOUT:
        kind = TransportErrorKind.TIMEOUT
    elif error.errno == errno.EPIPE:
        kind = TransportErrorKind.STALL
    elif error.errno == errno.ENODEV:
        kind = TransportErrorKind.NO_DEVICE
    else:
        kind = TransportErrorKind.OTHER
    return TransportError(kind, f"USB transfer failed: {error}")


class UsbTransport(BootloaderTransport):
    """
    Control-transfer connection to one usb.core.Device.

    Example:
        dev = usb.core.find(idVendor=0x1FFB, idProduct=0x0102)
        with UsbTransport(dev) as transport:
            transport.control_transfer(0x40, 0xFE, 500)
    """

    def __init__(self, device: usb.core.Device, timeout_ms: int = DEFAULT_TIMEOUT_MS):
        self.device = device
        self.timeout_ms = timeout_ms

    def control_transfer(
        self,
        request_type: int,
        request: int,
        value: int = 0,
        index: int = 0,
        data_or_length: Union[bytes, int] = 0,
    ) -> Union[int, bytes]:
        try:
            result = self.device.ctrl_transfer(
                request_type,
                request,
                value,
                index,
                data_or_length,
                timeout=self.timeout_ms,
            )
        except usb.core.USBError as e:
            raise translate_usb_error(e) from e

        if isinstance(result, int):
            return result
        return bytes(result)

    def close(self) -> None:
        """Release any interfaces and handles pyusb claimed for this device."""
        usb.util.dispose_resources(self.device)


class UsbDiscovery(DeviceDiscovery):
    """Lists connected devices whose USB ids appear in the device registry."""

    def __init__(self, timeout_ms: int = DEFAULT_TIMEOUT_MS):
        self.timeout_ms = timeout_ms

    def list_candidate_devices(self) -> List[DeviceCandidate]:
        candidates = []
        for device in usb.core.find(find_all=True):
            if not is_known_usb_id(device.idVendor, device.idProduct):
                continue
            serial_number = self._read_serial_number(device)
            if serial_number is None:
                continue
            candidates.append(DeviceCandidate(
                serial_number=serial_number,
                usb_vendor_id=device.idVendor,
                usb_product_id=device.idProduct,
                handle=device,
            ))
        logger.debug(f"Found {len(candidates)} candidate device(s)")
        return candidates

    @staticmethod
    def _read_serial_number(device: usb.core.Device) -> Optional[str]:
        usb_id = f"{device.idVendor:04X}:{device.idProduct:04X}"
        try:
            serial_number = usb.util.get_string(device, device.iSerialNumber)
        except (usb.core.USBError, ValueError, NotImplementedError) as e:
            logger.debug(f"Skipping {usb_id}: cannot read serial number ({e})")
            return None
        if not serial_number:
            logger.debug(f"Skipping {usb_id}: no serial number")
            return None
        return serial_number

    def open(self, candidate: DeviceCandidate) -> UsbTransport:
        device = candidate.handle
        if device is None:
            device = usb.core.find(
                idVendor=candidate.usb_vendor_id,
                idProduct=candidate.usb_product_id,
                custom_match=lambda d: self._read_serial_number(d) == candidate.serial_number,
            )
        if device is None:
            raise TransportError(
                TransportErrorKind.NO_DEVICE,
                f"Device {candidate.usb_id} #{candidate.serial_number} is no longer connected.",
            )
        logger.debug(f"Opened {candidate.usb_id} #{candidate.serial_number}")
        return UsbTransport(device, timeout_ms=self.timeout_ms)
