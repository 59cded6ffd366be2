"""Shared fakes: an in-memory bootloader device, transport and discovery."""

from typing import Dict, List, Optional

import pytest

from pload.models import lookup_bootloader_type
from pload.models import registry
from pload.models.registry import AppType, BootloaderType, UserType
from pload.protocol.transport import (
    BootloaderTransport,
    DeviceCandidate,
    DeviceDiscovery,
    TransportError,
    TransportErrorKind,
)
from pload.protocol import bootloader as bl


PSTAR = lookup_bootloader_type(0x1FFB, 0x0102)

# A made-up application that launches the P-Star bootloader.
TEST_APP = AppType(
    usb_vendor_id=0x1FFB,
    usb_product_id=0x0101,
    name="Test P-Star App",
    launch_bootloader_request=0xFF,
)


class FakeBootloaderDevice:
    """
    Simulates a bootloader's memory and command handling.

    Every control transfer is recorded in `calls` as
    (request_type, request, value, index, data_or_length).
    """

    def __init__(self, btype: BootloaderType = PSTAR, erase_responses=None):
        self.type = btype
        self.flash = bytearray([0xFF]) * btype.app_size
        self.eeprom = bytearray([0xFF]) * btype.eeprom_size
        self.erase_responses = list(erase_responses or [(0, 2), (0, 1), (0, 0)])
        self.app_valid = True
        self.last_error = 0
        self.stall_requests: Dict[int, int] = {}
        self.fail_requests: Dict[int, TransportErrorKind] = {}
        self.short_reads = False
        self.calls: List[tuple] = []

    def requests(self) -> List[int]:
        return [call[1] for call in self.calls]

    def handle(self, request_type, request, value, index, data_or_length):
        self.calls.append((request_type, request, value, index, data_or_length))

        if request in self.fail_requests:
            raise TransportError(self.fail_requests[request])
        if request in self.stall_requests:
            self.last_error = self.stall_requests[request]
            raise TransportError(TransportErrorKind.STALL)

        address = (index << 16) | value
        if request == bl.REQUEST_ERASE_FLASH:
            # Once the scripted responses run out, every erase finishes at once.
            response = self.erase_responses.pop(0) if self.erase_responses else (0, 0)
            if isinstance(response, bytes):
                return response
            code, remaining = response
            if remaining == 0 and code == 0:
                self.flash[:] = bytearray([0xFF]) * len(self.flash)
            return bytes([code, remaining])
        if request == bl.REQUEST_WRITE_FLASH_BLOCK:
            offset = address - self.type.app_address
            self.flash[offset:offset + len(data_or_length)] = data_or_length
            return len(data_or_length)
        if request == bl.REQUEST_READ_FLASH:
            offset = address - self.type.app_address
            length = data_or_length - 1 if self.short_reads else data_or_length
            return bytes(self.flash[offset:offset + length])
        if request == bl.REQUEST_WRITE_EEPROM:
            offset = address - self.type.eeprom_address
            self.eeprom[offset:offset + len(data_or_length)] = data_or_length
            return len(data_or_length)
        if request == bl.REQUEST_READ_EEPROM:
            offset = address - self.type.eeprom_address
            return bytes(self.eeprom[offset:offset + data_or_length])
        if request == bl.REQUEST_CHECK_APPLICATION:
            return bytes([1 if self.app_valid else 0])
        if request == bl.REQUEST_GET_LAST_ERROR:
            return bytes([self.last_error])
        if isinstance(data_or_length, int):
            return b""
        return len(data_or_length)


class FakeTransport(BootloaderTransport):
    """Routes control transfers to a FakeBootloaderDevice."""

    def __init__(self, device):
        self.device = device
        self.closed = False

    def control_transfer(self, request_type, request, value=0, index=0, data_or_length=0):
        assert not self.closed, "transfer on closed transport"
        return self.device.handle(request_type, request, value, index, data_or_length)

    def close(self):
        self.closed = True


class FakeAppDevice:
    """An application that resets into its bootloader when asked."""

    def __init__(self, discovery: "FakeDiscovery", serial_number: str, bootloader: Optional[FakeBootloaderDevice] = None):
        self.discovery = discovery
        self.serial_number = serial_number
        self.bootloader = bootloader or FakeBootloaderDevice()
        self.calls: List[tuple] = []

    def handle(self, request_type, request, value, index, data_or_length):
        self.calls.append((request_type, request, value, index, data_or_length))
        # Reset: the app disappears and the bootloader enumerates in its place.
        self.discovery.remove(self.serial_number)
        self.discovery.add_bootloader(self.serial_number, self.bootloader)
        raise TransportError(TransportErrorKind.NO_DEVICE)


class FakeDiscovery(DeviceDiscovery):
    """A set of fake devices keyed by serial number."""

    def __init__(self):
        self.entries: List[tuple] = []
        self.opened: List[FakeTransport] = []
        self.list_calls = 0

    def add_bootloader(self, serial_number: str, device: Optional[FakeBootloaderDevice] = None):
        device = device or FakeBootloaderDevice()
        candidate = DeviceCandidate(serial_number, device.type.usb_vendor_id, device.type.usb_product_id)
        self.entries.append((candidate, device))
        return device

    def add_app(self, serial_number: str, app_type: AppType = TEST_APP, bootloader=None):
        device = FakeAppDevice(self, serial_number, bootloader)
        candidate = DeviceCandidate(serial_number, app_type.usb_vendor_id, app_type.usb_product_id)
        self.entries.append((candidate, device))
        return device

    def remove(self, serial_number: str):
        self.entries = [e for e in self.entries if e[0].serial_number != serial_number]

    def list_candidate_devices(self):
        self.list_calls += 1
        return [candidate for candidate, _ in self.entries]

    def open(self, candidate):
        for known, device in self.entries:
            if known == candidate:
                transport = FakeTransport(device)
                self.opened.append(transport)
                return transport
        raise TransportError(TransportErrorKind.NO_DEVICE, "not connected")


@pytest.fixture
def test_app_type(monkeypatch):
    """Register TEST_APP as an application of the p-star user type."""
    key = (TEST_APP.usb_vendor_id, TEST_APP.usb_product_id)
    monkeypatch.setitem(registry._APP_TYPES, key, TEST_APP)
    pstar = registry._USER_TYPES["p-star"]
    monkeypatch.setitem(
        registry._USER_TYPES,
        "p-star",
        UserType(pstar.code_name, pstar.name, pstar.bootloader_types, (TEST_APP,)),
    )
    return TEST_APP


@pytest.fixture
def discovery():
    return FakeDiscovery()


@pytest.fixture
def device():
    return FakeBootloaderDevice()


@pytest.fixture
def handle(device):
    from pload.protocol.bootloader import BootloaderHandle
    return BootloaderHandle(FakeTransport(device), device.type)
