"""
p-load CLI

Command-line interface for reading, writing and erasing the flash and EEPROM
of devices running a Pololu USB bootloader.
"""

import sys
import logging
from typing import List, Optional, Set, Tuple

import click
import typer
from click.core import ParameterSource
from typer.core import TyperCommand
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn
from rich.table import Table

from pload import __version__
from pload.errors import BadArgumentsError, ExitCode, PloadError
from pload.models import MemorySet
from pload.protocol.transport import DeviceDiscovery
from pload.protocol.usb_transport import UsbDiscovery
from pload.core.parsing import parse_serial_number, parse_user_type, get_valid_type_names
from pload.core.actions import (
    EraseMemoryAction,
    PloadSession,
    ReadMemoryAction,
    WriteMemoryAction,
    list_devices as core_list_devices,
    list_supported as core_list_supported,
    run_session,
)
from pload.core.results import OperationResult

# Setup Rich consoles; logs go to stderr
console = Console()
err_console = Console(stderr=True)

# Setup logging
_log_handler = RichHandler(console=err_console, rich_tracebacks=True, show_path=False)
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    handlers=[_log_handler],
)
logger = logging.getLogger("pload")

app = typer.Typer(add_completion=False)

_ARGS_KEY = "pload_args"

EPILOG = (
    "FILE can be '-' for standard input or output. "
    "Example: p-load -d 12345678 --wait --write-flash app.hex --restart"
)


def print_message(text: str) -> None:
    """Print an informational message without markup."""
    console.print(text, markup=False, highlight=False)


def print_error(text: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"Error: {text}", err=True)


class _ProgressListener:
    """Turns bootloader status callbacks into rich progress bars, one per label."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self._label: Optional[str] = None
        self._task = None

    def __call__(self, label: str, value: int, maximum: int) -> None:
        if label != self._label:
            self._label = label
            self._task = self.progress.add_task(label, total=maximum)
        self.progress.update(self._task, completed=value, total=maximum)


# ============================================================================
# ACTION ORDER
# ============================================================================
#
# Click groups the values of each option together, so actions are built from
# the raw argument list instead, one per occurrence, in the order given.

# Option name -> (kind, memory set, restarts afterwards)
_ACTION_OPTIONS = {
    "-w": ("write", MemorySet.ALL, True),
    "--write": ("write", MemorySet.ALL, False),
    "--write-flash": ("write", MemorySet.FLASH, False),
    "--write-eeprom": ("write", MemorySet.EEPROM, False),
    "--erase": ("erase", MemorySet.ALL, False),
    "--erase-flash": ("erase", MemorySet.FLASH, False),
    "--erase-eeprom": ("erase", MemorySet.EEPROM, False),
    "--read": ("read", MemorySet.ALL, False),
    "--read-flash": ("read", MemorySet.FLASH, False),
    "--read-eeprom": ("read", MemorySet.EEPROM, False),
}


class _OrderedCommand(TyperCommand):
    """Command that keeps its raw arguments in ctx.meta."""

    def parse_args(self, ctx: click.Context, args: List[str]) -> List[str]:
        ctx.meta[_ARGS_KEY] = list(args)
        return super().parse_args(ctx, args)


def _split_option(token: str, value_options: Set[str]) -> Tuple[str, Optional[str]]:
    """Split "--opt=value" and "-wvalue" forms into name and inline value."""
    if token.startswith("--"):
        name, sep, value = token.partition("=")
        return name, (value if sep else None)
    if token.startswith("-") and len(token) > 2 and token[:2] in value_options:
        return token[:2], token[2:]
    return token, None


def _collect_actions(ctx: typer.Context) -> Tuple[list, bool]:
    """
    Build the action list by walking the raw arguments in order.

    Returns:
        Tuple of (actions, restart) where restart is True if -w was given
    """
    value_options: Set[str] = set()
    for param in ctx.command.params:
        if isinstance(param, click.Option) and not param.is_flag:
            value_options.update(param.opts)

    actions = []
    restart = False
    tokens = iter(ctx.meta.get(_ARGS_KEY, []))
    for token in tokens:
        if token == "--":
            break
        name, value = _split_option(token, value_options)
        if name in value_options and value is None:
            value = next(tokens, None)
        if name not in _ACTION_OPTIONS:
            continue

        kind, memory_set, restarts = _ACTION_OPTIONS[name]
        if kind == "erase":
            actions.append(EraseMemoryAction(memory_set))
        elif kind == "write":
            actions.append(WriteMemoryAction(memory_set, value))
        else:
            actions.append(ReadMemoryAction(memory_set, value))
        restart = restart or restarts
    return actions, restart


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"p-load {__version__}")
        raise typer.Exit()


def _no_arguments_given(ctx: typer.Context) -> bool:
    return all(
        ctx.get_parameter_source(name) in (ParameterSource.DEFAULT, None)
        for name in ctx.params
    )


# ============================================================================
# OUTPUT
# ============================================================================

def _print_device_list(session: PloadSession, show_info: bool) -> None:
    rows = core_list_devices(session.selector)
    if not rows:
        if show_info:
            print_message(session.selector.device_not_found_message())
        return

    table = Table()
    table.add_column("Serial number", style="cyan")
    table.add_column("Device", style="green")
    table.add_column("Status")
    for serial_number, name, status in rows:
        table.add_row(serial_number, name, status)
    console.print(table)


def _report_result(result: OperationResult, verbose: bool, show_info: bool) -> None:
    """
    Print what the run did to stderr.

    With -v this is the run summary. Otherwise, when a run fails while info
    messages are hidden, the captured log lines show how far it got.
    """
    if verbose:
        err_console.print(result.to_summary(), markup=False, highlight=False, soft_wrap=True)
    elif not result.ok and not show_info:
        for line in result.logs:
            err_console.print(line, markup=False, highlight=False, soft_wrap=True)


def _print_supported() -> None:
    user_types, usb_ids = core_list_supported()

    table = Table(title="Supported device types")
    table.add_column("Type (-t)", style="cyan")
    table.add_column("Name", style="green")
    for code_name, name in user_types:
        table.add_row(code_name, name)
    console.print(table)

    table = Table(title="Supported devices by USB vendor ID and product ID")
    table.add_column("USB ID", style="cyan")
    table.add_column("Name", style="green")
    for usb_id, name in usb_ids:
        table.add_row(usb_id, name)
    console.print(table)


def _stdout_is_terminal() -> bool:
    """Info messages and progress bars are only shown on a terminal."""
    return sys.stdout.isatty()


def _make_discovery() -> DeviceDiscovery:
    return UsbDiscovery()


def _pause(pause: bool, pause_on_error: bool, exit_code: int) -> None:
    if pause or (pause_on_error and exit_code):
        typer.echo("Press enter to continue.")
        sys.stdin.readline()


# ============================================================================
# COMMAND
# ============================================================================

@app.command(cls=_OrderedCommand, epilog=EPILOG)
def run(
    ctx: typer.Context,
    device_type: List[str] = typer.Option(
        [], "-t", "--type", metavar="TYPE",
        help=f"Selects the device type ({', '.join(get_valid_type_names())}). Repeatable.",
    ),
    serial: Optional[str] = typer.Option(
        None, "-d", "--serial", metavar="SERIALNUMBER", help="Selects the device by serial number.",
    ),
    list_flag: bool = typer.Option(False, "--list", help="Lists devices connected to computer."),
    list_supported_flag: bool = typer.Option(
        False, "--list-supported", help="Lists all supported device types.",
    ),
    start_bootloader: bool = typer.Option(
        False, "--start-bootloader", help="Starts the bootloader if an app is running.",
    ),
    wait: bool = typer.Option(False, "--wait", help="Waits up to 10 s for the bootloader to appear."),
    w: List[str] = typer.Option(
        [], "-w", metavar="FILE", help="Writes to device, then restarts it.",
    ),
    write: List[str] = typer.Option(
        [], "--write", metavar="FILE", help="Writes to device.",
    ),
    write_flash: List[str] = typer.Option(
        [], "--write-flash", metavar="FILE", help="Writes to flash only.",
    ),
    write_eeprom: List[str] = typer.Option(
        [], "--write-eeprom", metavar="FILE", help="Writes to EEPROM only.",
    ),
    erase: bool = typer.Option(
        False, "--erase", help="Erases device.",
    ),
    erase_flash: bool = typer.Option(
        False, "--erase-flash", help="Erases flash only.",
    ),
    erase_eeprom: bool = typer.Option(
        False, "--erase-eeprom", help="Erases EEPROM only.",
    ),
    read: List[str] = typer.Option(
        [], "--read", metavar="FILE", help="Reads device memory to a HEX file.",
    ),
    read_flash: List[str] = typer.Option(
        [], "--read-flash", metavar="FILE", help="Reads flash to a HEX file.",
    ),
    read_eeprom: List[str] = typer.Option(
        [], "--read-eeprom", metavar="FILE", help="Reads EEPROM to a HEX file.",
    ),
    restart: bool = typer.Option(
        False, "--restart", help="Restarts the device so it can run the new code.",
    ),
    pause: bool = typer.Option(False, "--pause", help="Pauses at the end."),
    pause_on_error: bool = typer.Option(
        False, "--pause-on-error", help="Pauses at the end if an error happens.",
    ),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Shows protocol traffic."),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Shows the version.",
    ),
) -> None:
    """Pololu USB Bootloader Utility: writes HEX files to flash and EEPROM."""
    if _no_arguments_given(ctx):
        typer.echo(ctx.get_help())
        raise typer.Exit(code=ExitCode.SUCCESS)

    _log_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.setLevel(logging.DEBUG if verbose else logging.NOTSET)

    actions, restarts = _collect_actions(ctx)
    restart = restart or restarts
    show_info = _stdout_is_terminal()

    exit_code = ExitCode.SUCCESS
    try:
        something_to_do = (
            list_flag or list_supported_flag or start_bootloader or wait
            or restart or pause or pause_on_error or actions
        )
        if not something_to_do:
            raise BadArgumentsError("Arguments do not specify anything to do.")

        user_types = [parse_user_type(value) for value in device_type]
        serial_number = parse_serial_number(serial) if serial is not None else None

        if list_supported_flag and not list_flag:
            _print_supported()
        else:
            with Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                TextColumn("[{task.percentage:>3.0f}%]"),
                console=console,
                disable=not show_info,
            ) as progress:
                session = PloadSession(
                    _make_discovery(),
                    restart=restart,
                    wait=wait,
                    start_bootloader=start_bootloader,
                    status_callback=_ProgressListener(progress) if show_info else None,
                    message_callback=print_message if show_info else None,
                )
                for user_type in user_types:
                    session.selector.specify_user_type(user_type)
                if serial_number is not None:
                    session.selector.specify_serial_number(serial_number)

                if list_flag:
                    if wait:
                        session.wait_for_bootloader()
                    _print_device_list(session, show_info)
                else:
                    for action in actions:
                        session.add_action(action)
                    result = run_session(session)
                    _report_result(result, verbose, show_info)
                    if not result.ok:
                        exit_code = result.exit_code
                        for error in result.errors:
                            print_error(error)

    except PloadError as e:
        print_error(str(e))
        exit_code = e.exit_code

    _pause(pause, pause_on_error, exit_code)
    raise typer.Exit(code=int(exit_code))


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        err_console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(ExitCode.OPERATION_FAILED)


if __name__ == "__main__":
    main()
