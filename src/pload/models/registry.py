"""
Device type registry for p-load.

Provides a single source of truth for:
- Bootloader types (USB ids, flash/EEPROM geometry, capabilities)
- Application types (devices running their app that can be told to
  start their bootloader)
- User types (the high-level names accepted by `-t`)
- Memory-set capability checks used before any destructive operation

Usage:
    from pload.models import lookup_bootloader_type, lookup_user_type

    btype = lookup_bootloader_type(0x1FFB, 0x0102)
    user_type = lookup_user_type("p-star")
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, List, Optional, Tuple

from pload.errors import CompatibilityError


class MemorySet(Enum):
    """Which memories an operation applies to."""
    ALL = "all"
    FLASH = "flash"
    EEPROM = "eeprom"


class UploadType(IntEnum):
    """Mode sent with the INITIALIZE request before erasing flash."""
    PLAIN = 2


@dataclass(frozen=True)
class BootloaderType:
    """
    Geometry and capabilities of one supported bootloader.

    Addresses used on the wire (app_address, eeprom_address) live in the
    device's address space. eeprom_address_hex_file is where EEPROM appears
    in HEX-file address space, which can differ.
    """
    usb_vendor_id: int
    usb_product_id: int
    name: str
    app_address: int
    app_size: int
    write_block_size: int
    supports_reading_flash: bool = False
    eeprom_address: int = 0
    eeprom_address_hex_file: int = 0
    eeprom_size: int = 0
    supports_eeprom_access: bool = False
    device_code: Optional[bytes] = None

    @property
    def app_end_address(self) -> int:
        """Return end of application flash (exclusive)."""
        return self.app_address + self.app_size

    @property
    def has_eeprom(self) -> bool:
        return self.eeprom_size > 0 and self.supports_eeprom_access

    def memory_set_includes_flash(self, memory_set: MemorySet) -> bool:
        return memory_set in (MemorySet.ALL, MemorySet.FLASH)

    def memory_set_includes_eeprom(self, memory_set: MemorySet) -> bool:
        # ALL quietly skips EEPROM on devices without it; an explicit
        # EEPROM request is then rejected by ensure_eeprom_access().
        if memory_set == MemorySet.EEPROM:
            return True
        return memory_set == MemorySet.ALL and self.has_eeprom

    def ensure_flash_plain_writing(self) -> None:
        """Raise CompatibilityError if flash cannot be written from a HEX image."""
        if self.app_size <= 0 or self.write_block_size <= 0:
            raise CompatibilityError(
                f"{self.name} does not support writing flash from a HEX file."
            )
        if self.app_size % self.write_block_size:
            raise CompatibilityError(
                f"{self.name}: flash size 0x{self.app_size:X} is not a multiple "
                f"of the write block size {self.write_block_size}."
            )

    def ensure_eeprom_access(self) -> None:
        """Raise CompatibilityError if EEPROM cannot be read or written."""
        if self.eeprom_size == 0:
            raise CompatibilityError("This device does not have EEPROM.")
        if not self.supports_eeprom_access:
            raise CompatibilityError("This bootloader does not support accessing EEPROM.")

    def ensure_flash_reading(self) -> None:
        if not self.supports_reading_flash:
            raise CompatibilityError("This bootloader does not support reading flash memory.")

    def ensure_erasing(self, memory_set: MemorySet) -> None:
        if self.memory_set_includes_eeprom(memory_set):
            self.ensure_eeprom_access()

    def ensure_reading(self, memory_set: MemorySet) -> None:
        if self.memory_set_includes_flash(memory_set):
            self.ensure_flash_reading()
        if self.memory_set_includes_eeprom(memory_set):
            self.ensure_eeprom_access()


@dataclass(frozen=True)
class AppType:
    """A device running its application that can jump into its bootloader."""
    usb_vendor_id: int
    usb_product_id: int
    name: str
    launch_bootloader_request: int = 0xFF


@dataclass(frozen=True)
class UserType:
    """High-level device type named on the command line with -t."""
    code_name: str
    name: str
    bootloader_types: Tuple[BootloaderType, ...] = ()
    app_types: Tuple[AppType, ...] = field(default_factory=tuple)


# ============================================================================
# REGISTRY - All known device types
# ============================================================================

_BOOTLOADER_TYPES: Dict[Tuple[int, int], BootloaderType] = {}
_APP_TYPES: Dict[Tuple[int, int], AppType] = {}
_USER_TYPES: Dict[str, UserType] = {}


def _register_bootloader_type(btype: BootloaderType) -> BootloaderType:
    _BOOTLOADER_TYPES[(btype.usb_vendor_id, btype.usb_product_id)] = btype
    return btype


def _register_app_type(app_type: AppType) -> AppType:
    _APP_TYPES[(app_type.usb_vendor_id, app_type.usb_product_id)] = app_type
    return app_type


def _register_user_type(user_type: UserType) -> UserType:
    _USER_TYPES[user_type.code_name] = user_type
    return user_type


def _init_registry() -> None:
    """Initialize the registry with known devices."""

    # Pololu P-Star 25K50 (PIC18F25K50)
    # App flash: 0x2000-0x7FFF, written in 64-byte blocks.
    # EEPROM: 256 bytes, at 0xF00000 in HEX files (Microchip convention).
    pstar_bootloader = _register_bootloader_type(BootloaderType(
        usb_vendor_id=0x1FFB,
        usb_product_id=0x0102,
        name="Pololu P-Star 25K50 Bootloader",
        app_address=0x2000,
        app_size=0x6000,
        write_block_size=0x40,
        supports_reading_flash=True,
        eeprom_address=0,
        eeprom_address_hex_file=0xF00000,
        eeprom_size=0x100,
        supports_eeprom_access=True,
        device_code=None,
    ))

    _register_user_type(UserType(
        code_name="p-star",
        name="Pololu P-Star",
        bootloader_types=(pstar_bootloader,),
        app_types=(),
    ))


_init_registry()


# ============================================================================
# LOOKUPS
# ============================================================================

def lookup_bootloader_type(usb_vendor_id: int, usb_product_id: int) -> Optional[BootloaderType]:
    """Return the bootloader type with these USB ids, or None."""
    return _BOOTLOADER_TYPES.get((usb_vendor_id, usb_product_id))


def lookup_app_type(usb_vendor_id: int, usb_product_id: int) -> Optional[AppType]:
    """Return the application type with these USB ids, or None."""
    return _APP_TYPES.get((usb_vendor_id, usb_product_id))


def lookup_user_type(code_name: str) -> Optional[UserType]:
    """Return the user type for a -t code name (case-insensitive), or None."""
    return _USER_TYPES.get(code_name.strip().lower())


def list_bootloader_types() -> List[BootloaderType]:
    return list(_BOOTLOADER_TYPES.values())


def list_app_types() -> List[AppType]:
    return list(_APP_TYPES.values())


def list_user_types() -> List[UserType]:
    return sorted(_USER_TYPES.values(), key=lambda t: t.code_name)


def get_matching_app_types(btype: BootloaderType) -> List[AppType]:
    """
    Application types that belong to the same device family as a bootloader.

    Two types are related when some user type lists both of them.
    """
    matches: List[AppType] = []
    for user_type in _USER_TYPES.values():
        if btype in user_type.bootloader_types:
            for app_type in user_type.app_types:
                if app_type not in matches:
                    matches.append(app_type)
    return matches


def is_known_usb_id(usb_vendor_id: int, usb_product_id: int) -> bool:
    key = (usb_vendor_id, usb_product_id)
    return key in _BOOTLOADER_TYPES or key in _APP_TYPES
