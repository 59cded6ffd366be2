"""
Core workflow actions for p-load.

A PloadSession holds everything one invocation needs: the device selector,
the requested memory actions and the flags. Running it walks every action
through the same phases, phase by phase:

    1. read_files            parse input files, register type hints
    2. (launch bootloader, wait for it)
    3. ensure_compatibility  all checks before anything destructive
    4. execute               talk to the bootloader
    5. write_files           save what read actions captured
    6. (restart device)

A failure in any phase stops the run; completed phases are not undone.
"""

import logging
import sys
import time
from contextlib import contextmanager
from typing import Callable, List, Optional, TextIO, Tuple

from pload.errors import ExitCode, FirmwareFileError, PloadError
from pload.intel_hex import HexData
from pload.models import (
    MemorySet,
    list_app_types,
    list_bootloader_types,
    list_user_types,
)
from pload.protocol.bootloader import BootloaderError, BootloaderHandle, StatusCallback
from pload.protocol.transport import DeviceDiscovery, TransportError
from .firmware import STDIO_NAME, ArchiveReader, FirmwareData, read_firmware_file
from .results import OperationResult
from .selector import BootloaderInstance, DeviceSelector, wait_for_bootloader

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str], None]


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "pload"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


# ============================================================================
# ACTIONS
# ============================================================================

class WriteMemoryAction:
    """Write a HEX or archive file to flash and/or EEPROM."""

    rank = 0

    def __init__(self, memory_set: MemorySet, path: str):
        self.memory_set = memory_set
        self.path = path
        self.firmware: Optional[FirmwareData] = None

    def __repr__(self) -> str:
        return f"WriteMemoryAction({self.memory_set.value}, {self.path!r})"

    def read_files(self, session: "PloadSession") -> None:
        self.firmware = read_firmware_file(self.path, session.archive_reader, session.stdin)
        bootloader_types = self.firmware.bootloader_types()
        if bootloader_types is not None:
            session.selector.specify_bootloader_types(bootloader_types)

    def ensure_compatibility(self, handle: BootloaderHandle) -> None:
        self.firmware.ensure_compatibility(handle.type, self.memory_set)

    def execute(self, handle: BootloaderHandle) -> None:
        logger.info(f"Writing {self.memory_set.value} from {self.path}")
        self.firmware.write_to(handle, self.memory_set)

    def write_files(self, session: "PloadSession") -> None:
        pass


class EraseMemoryAction:
    """Erase flash and/or EEPROM."""

    rank = 0

    def __init__(self, memory_set: MemorySet):
        self.memory_set = memory_set

    def __repr__(self) -> str:
        return f"EraseMemoryAction({self.memory_set.value})"

    def read_files(self, session: "PloadSession") -> None:
        pass

    def ensure_compatibility(self, handle: BootloaderHandle) -> None:
        handle.type.ensure_erasing(self.memory_set)

    def execute(self, handle: BootloaderHandle) -> None:
        btype = handle.type
        if btype.memory_set_includes_flash(self.memory_set):
            handle.initialize()
            handle.erase_flash()
        if btype.memory_set_includes_eeprom(self.memory_set):
            handle.erase_eeprom()

    def write_files(self, session: "PloadSession") -> None:
        pass


class ReadMemoryAction:
    """Read flash and/or EEPROM into a HEX file."""

    rank = 0

    def __init__(self, memory_set: MemorySet, path: str):
        self.memory_set = memory_set
        self.path = path
        self.hex_data = HexData()

    def __repr__(self) -> str:
        return f"ReadMemoryAction({self.memory_set.value}, {self.path!r})"

    def read_files(self, session: "PloadSession") -> None:
        pass

    def ensure_compatibility(self, handle: BootloaderHandle) -> None:
        handle.type.ensure_reading(self.memory_set)

    def execute(self, handle: BootloaderHandle) -> None:
        btype = handle.type
        if btype.memory_set_includes_flash(self.memory_set):
            self.hex_data.set_image(btype.app_address, handle.read_flash())
        if btype.memory_set_includes_eeprom(self.memory_set):
            self.hex_data.set_image(btype.eeprom_address_hex_file, handle.read_eeprom())

    def write_files(self, session: "PloadSession") -> None:
        if self.path == STDIO_NAME:
            self.hex_data.write_to_file(session.stdout)
            session.stdout.flush()
            return
        try:
            with open(self.path, "w") as f:
                self.hex_data.write_to_file(f)
        except OSError as e:
            raise FirmwareFileError(f"{self.path}: {e.strerror or e}") from e
        logger.info(f"Wrote {self.path}")


# ============================================================================
# SESSION
# ============================================================================

class PloadSession:
    """
    One p-load invocation: selector, actions and flags.

    Example:
        session = PloadSession(UsbDiscovery(), restart=True)
        session.add_action(WriteMemoryAction(MemorySet.ALL, "app.hex"))
        result = run_session(session)
    """

    def __init__(
        self,
        discovery: DeviceDiscovery,
        restart: bool = False,
        wait: bool = False,
        start_bootloader: bool = False,
        status_callback: Optional[StatusCallback] = None,
        message_callback: Optional[MessageCallback] = None,
        archive_reader: Optional[ArchiveReader] = None,
        stdin=None,
        stdout: Optional[TextIO] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.discovery = discovery
        self.selector = DeviceSelector(discovery)
        self.actions: List = []
        self.restart = restart
        self.wait = wait
        self.start_bootloader = start_bootloader
        self.status_callback = status_callback
        self.message_callback = message_callback
        self.archive_reader = archive_reader
        self.stdin = stdin
        self.stdout = stdout if stdout is not None else sys.stdout
        self.clock = clock
        self.sleep = sleep

        self.device_name = ""
        self.serial_number = ""

    def add_action(self, action) -> None:
        self.actions.append(action)

    @property
    def bootloader_handle_needed(self) -> bool:
        """True if the run must end up with an open bootloader handle."""
        return self.start_bootloader or self.restart or bool(self.actions)

    def sorted_actions(self) -> List:
        """Actions in command-line order, stable-sorted by rank."""
        return sorted(self.actions, key=lambda a: a.rank)

    def _message(self, text: str) -> None:
        logger.info(text)
        if self.message_callback:
            self.message_callback(text)

    def _note_device(self, name: str, serial_number: str) -> None:
        if self.device_name:
            return
        self.device_name = name
        self.serial_number = serial_number
        self._message(f"Device:        {name}")
        self._message(f"Serial number: {serial_number}")

    def launch_bootloader_if_needed(self) -> bool:
        """Restart a matching app into its bootloader; True if one was launched."""
        if not self.bootloader_handle_needed:
            return False
        app = self.selector.select_app_to_launch_bootloader()
        if app is None:
            return False
        self._note_device(app.name, app.serial_number)
        app.launch_bootloader(self.discovery)
        # The app resets, so both cached lists are stale.
        self.selector.clear_device_lists()
        self._message("Sent command to start bootloader.")
        return True

    def wait_for_bootloader(self) -> None:
        wait_for_bootloader(
            self.selector, clock=self.clock, sleep=self.sleep, notify=self.message_callback
        )

    def open_bootloader(self) -> BootloaderHandle:
        instance: BootloaderInstance = self.selector.select_bootloader()
        self._note_device(instance.name, instance.serial_number)
        return BootloaderHandle.open(self.discovery, instance, self.status_callback)

    def run(self) -> None:
        """
        Run all phases.

        Raises:
            PloadError: On the first failure in any phase
        """
        actions = self.sorted_actions()

        for action in actions:
            action.read_files(self)

        launched = self.launch_bootloader_if_needed()
        if launched or self.wait:
            self.wait_for_bootloader()

        if not self.bootloader_handle_needed:
            return

        with self.open_bootloader() as handle:
            for action in actions:
                action.ensure_compatibility(handle)

            for action in actions:
                action.execute(handle)

            for action in actions:
                action.write_files(self)

            if self.restart:
                handle.restart_device()
                self._message("Sent command to restart device.")


def run_session(session: PloadSession) -> OperationResult:
    """
    Run a session and report the outcome.

    Returns:
        OperationResult with:
            - ok: True if every phase completed
            - device / serial_number: the device operated on, if any
            - exit_code: ExitCode for the CLI
            - errors: the message of the failure, if any
    """
    with _capture_logs() as logs:
        try:
            session.run()
        except PloadError as e:
            logger.debug(f"Run failed: {e!r}")
            result = OperationResult.failure(
                operation="run",
                error=str(e),
                exit_code=e.exit_code,
                device=session.device_name,
                serial_number=session.serial_number,
            )
        except Exception as e:
            logger.exception("Run failed")
            result = OperationResult.failure(
                operation="run",
                error=str(e),
                exit_code=ExitCode.OPERATION_FAILED,
                device=session.device_name,
                serial_number=session.serial_number,
            )
        else:
            result = OperationResult.success(
                operation="run",
                device=session.device_name,
                serial_number=session.serial_number,
            )
        result.metadata["actions"] = [repr(a) for a in session.actions]
        result.logs = logs
        return result


# ============================================================================
# LISTING
# ============================================================================

def bootloader_status(discovery: DeviceDiscovery, instance: BootloaderInstance) -> str:
    """Status column for --list: whether the bootloader reports a valid app."""
    try:
        with BootloaderHandle.open(discovery, instance) as handle:
            return "App present" if handle.check_application() else "No app present"
    except (TransportError, BootloaderError) as e:
        logger.debug(f"Status of {instance.serial_number} unknown: {e}")
        return "?"


def list_devices(selector: DeviceSelector) -> List[Tuple[str, str, str]]:
    """
    List connected devices that pass the selector's filters.

    Returns:
        Rows of (serial number, device name, status); bootloaders first
    """
    rows = []
    for instance in selector.list_bootloaders():
        rows.append((instance.serial_number, instance.name, bootloader_status(selector.discovery, instance)))
    for app in selector.list_apps():
        rows.append((app.serial_number, app.name, "App running"))
    return rows


def list_supported() -> Tuple[List[Tuple[str, str]], List[Tuple[str, str]]]:
    """
    List supported device types.

    Returns:
        (user types as (code name, name),
         USB ids as ("vvvv:pppp", name), apps first then bootloaders)
    """
    user_types = [(t.code_name, t.name) for t in list_user_types()]
    usb_ids = [
        (f"{t.usb_vendor_id:04x}:{t.usb_product_id:04x}", t.name)
        for t in [*list_app_types(), *list_bootloader_types()]
    ]
    return user_types, usb_ids
