"""
Device discovery, classification and single-device selection.

The selector narrows the connected devices down to exactly one before any
destructive operation. Devices are split into two lists:

- bootloaders: devices currently running a bootloader we can talk to
- apps: devices running their application that can be told to start
  their bootloader

Both lists are computed lazily and cached until clear_device_lists().
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from pload.errors import DeviceNotFoundError, MultipleDevicesError
from pload.models import (
    AppType,
    BootloaderType,
    UserType,
    get_matching_app_types,
    lookup_app_type,
    lookup_bootloader_type,
)
from pload.protocol.transport import (
    REQUEST_TYPE_OUT,
    DeviceCandidate,
    DeviceDiscovery,
    TransportError,
    TransportErrorKind,
)

logger = logging.getLogger(__name__)

WAIT_TIMEOUT_S = 10.0
WAIT_INTERVAL_S = 0.1

MULTIPLE_DEVICES_MESSAGE = (
    "There are multiple qualifying devices connected to this computer. "
    "Use the -t or -d options to specify which device you want to use, "
    "or disconnect the others."
)


@dataclass(frozen=True)
class BootloaderInstance:
    """A connected device running a known bootloader."""
    serial_number: str
    type: BootloaderType
    candidate: DeviceCandidate

    @property
    def name(self) -> str:
        return self.type.name


@dataclass(frozen=True)
class AppInstance:
    """A connected device running an application."""
    serial_number: str
    type: AppType
    candidate: DeviceCandidate

    @property
    def name(self) -> str:
        return self.type.name

    def launch_bootloader(self, discovery: DeviceDiscovery) -> None:
        """
        Tell the application to jump into its bootloader.

        The device usually resets before acknowledging, so NO_DEVICE and
        OTHER transport errors on this request are expected and ignored.
        """
        transport = discovery.open(self.candidate)
        try:
            transport.control_transfer(
                REQUEST_TYPE_OUT, self.type.launch_bootloader_request, 0, 0, b""
            )
        except TransportError as e:
            if e.kind not in (TransportErrorKind.NO_DEVICE, TransportErrorKind.OTHER):
                raise
            logger.debug(f"Device reset during bootloader launch: {e}")
        finally:
            transport.close()


def list_bootloaders(discovery: DeviceDiscovery) -> List[BootloaderInstance]:
    """Return every connected device running a known bootloader."""
    instances = []
    for candidate in discovery.list_candidate_devices():
        btype = lookup_bootloader_type(candidate.usb_vendor_id, candidate.usb_product_id)
        if btype is not None:
            instances.append(BootloaderInstance(candidate.serial_number, btype, candidate))
    return instances


def list_apps(discovery: DeviceDiscovery) -> List[AppInstance]:
    """Return every connected device running a known application."""
    instances = []
    for candidate in discovery.list_candidate_devices():
        app_type = lookup_app_type(candidate.usb_vendor_id, candidate.usb_product_id)
        if app_type is not None:
            instances.append(AppInstance(candidate.serial_number, app_type, candidate))
    return instances


class DeviceSelector:
    """
    Narrows connected devices to the one the user means.

    Filters, in order: serial number (-d), same physical unit as an already
    selected device, and type (-t or types named by a firmware archive).

    Example:
        selector = DeviceSelector(discovery)
        selector.specify_serial_number("12345678")
        app = selector.select_app_to_launch_bootloader()
        bootloader = selector.select_bootloader()
    """

    def __init__(self, discovery: DeviceDiscovery):
        self.discovery = discovery
        self.serial_number: Optional[str] = None
        self.bootloader_types: List[BootloaderType] = []
        self.app_types: List[AppType] = []
        self.types_specified = False
        self.user_type_specified = False

        self._app_list: Optional[List[AppInstance]] = None
        self._bootloader_list: Optional[List[BootloaderInstance]] = None
        self._app_selected = False
        self._app: Optional[AppInstance] = None
        self._bootloader: Optional[BootloaderInstance] = None

    # ------------------------------------------------------------------
    # Criteria
    # ------------------------------------------------------------------

    @property
    def serial_number_specified(self) -> bool:
        return self.serial_number is not None

    def specify_serial_number(self, serial_number: str) -> None:
        self.serial_number = serial_number

    def specify_user_type(self, user_type: UserType) -> None:
        """
        Add the types of a -t option to the accepted type set.

        Repeated -t options add up rather than intersect, so an app and a
        bootloader with different user types can both be accepted.
        """
        self._add_types(user_type.bootloader_types, user_type.app_types)
        self.user_type_specified = True

    def specify_bootloader_types(self, bootloader_types: List[BootloaderType]) -> None:
        """
        Accept the bootloader types a firmware file was built for.

        Ignored once the user has named a type explicitly.
        """
        if self.user_type_specified:
            logger.debug("Type given with -t; ignoring types from firmware file")
            return
        app_types: List[AppType] = []
        for btype in bootloader_types:
            app_types.extend(get_matching_app_types(btype))
        self._add_types(bootloader_types, app_types)

    def _add_types(self, bootloader_types, app_types) -> None:
        for btype in bootloader_types:
            if btype not in self.bootloader_types:
                self.bootloader_types.append(btype)
        for app_type in app_types:
            if app_type not in self.app_types:
                self.app_types.append(app_type)
        self.types_specified = True

    def clear_device_lists(self) -> None:
        """Forget cached device lists; the next query re-enumerates."""
        self._app_list = None
        self._bootloader_list = None

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    def list_apps(self) -> List[AppInstance]:
        if self._app_list is None:
            apps = list_apps(self.discovery)
            if self.serial_number_specified:
                apps = [a for a in apps if a.serial_number == self.serial_number]
            if self._bootloader is not None:
                apps = [a for a in apps if a.serial_number == self._bootloader.serial_number]
            if self.types_specified:
                apps = [a for a in apps if a.type in self.app_types]
            self._app_list = apps
        return list(self._app_list)

    def list_bootloaders(self) -> List[BootloaderInstance]:
        if self._bootloader_list is None:
            bootloaders = list_bootloaders(self.discovery)
            if self.serial_number_specified:
                bootloaders = [b for b in bootloaders if b.serial_number == self.serial_number]
            if self._app is not None:
                bootloaders = [b for b in bootloaders if b.serial_number == self._app.serial_number]
            if self.types_specified:
                bootloaders = [b for b in bootloaders if b.type in self.bootloader_types]
            self._bootloader_list = bootloaders
        return list(self._bootloader_list)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_app_to_launch_bootloader(self) -> Optional[AppInstance]:
        """
        Pick the app that must be restarted into its bootloader.

        Returns:
            The single matching app, or None if the matching device is
            already running its bootloader (or nothing matched yet)

        Raises:
            MultipleDevicesError: If more than one device matches
        """
        if self._app_selected:
            return self._app

        apps = self.list_apps()
        bootloaders = self.list_bootloaders()
        if len(apps) + len(bootloaders) > 1:
            raise self.multiple_devices_error()

        self._app_selected = True
        if apps:
            self._app = apps[0]
            # Bootloader list must now be restricted to this unit.
            self._bootloader_list = None
        return self._app

    def select_bootloader(self) -> BootloaderInstance:
        """
        Pick the single bootloader to operate on.

        Raises:
            DeviceNotFoundError: If no bootloader matches
            MultipleDevicesError: If more than one device matches
        """
        if self._bootloader is not None:
            return self._bootloader

        apps = self.list_apps()
        bootloaders = self.list_bootloaders()
        if not bootloaders:
            raise self.device_not_found_error()
        if len(apps) + len(bootloaders) > 1:
            raise self.multiple_devices_error()

        self._bootloader = bootloaders[0]
        self._app_list = None
        return self._bootloader

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def device_not_found_message(self) -> str:
        message = "No device found"
        if self.types_specified:
            message += " of the specified type"
        if self.serial_number_specified:
            message += f" with serial number '{self.serial_number}'"
        return message + "."

    def device_not_found_error(self) -> DeviceNotFoundError:
        return DeviceNotFoundError(self.device_not_found_message())

    def multiple_devices_error(self) -> MultipleDevicesError:
        return MultipleDevicesError(MULTIPLE_DEVICES_MESSAGE)


def wait_for_bootloader(
    selector: DeviceSelector,
    timeout: float = WAIT_TIMEOUT_S,
    interval: float = WAIT_INTERVAL_S,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    notify: Optional[Callable[[str], None]] = None,
) -> None:
    """
    Poll until a matching bootloader shows up.

    Args:
        selector: Selector whose bootloader list is polled
        timeout: Seconds to wait before giving up
        interval: Seconds between polls
        clock: Monotonic time source (injectable for tests)
        sleep: Sleep function (injectable for tests)
        notify: Called with "Waiting for bootloader..." before polling

    Raises:
        DeviceNotFoundError: If no bootloader appears before the deadline
    """
    if selector.list_bootloaders():
        return

    logger.info("Waiting for bootloader...")
    if notify:
        notify("Waiting for bootloader...")
    deadline = clock() + timeout
    while True:
        sleep(interval)
        selector.clear_device_lists()
        if selector.list_bootloaders():
            return
        if clock() > deadline:
            raise selector.device_not_found_error()
