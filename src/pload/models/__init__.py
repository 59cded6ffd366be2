"""
Device type registry for p-load.

Provides a unified layer for device type lookup, geometry, and capabilities.
"""

from .registry import (
    MemorySet,
    UploadType,
    BootloaderType,
    AppType,
    UserType,
    lookup_bootloader_type,
    lookup_app_type,
    lookup_user_type,
    list_bootloader_types,
    list_app_types,
    list_user_types,
    get_matching_app_types,
    is_known_usb_id,
)

__all__ = [
    "MemorySet",
    "UploadType",
    "BootloaderType",
    "AppType",
    "UserType",
    "lookup_bootloader_type",
    "lookup_app_type",
    "lookup_user_type",
    "list_bootloader_types",
    "list_app_types",
    "list_user_types",
    "get_matching_app_types",
    "is_known_usb_id",
]
