"""
p-load - USB bootloader utility for Pololu P-Star style devices

Reads Intel HEX files and writes them to flash and EEPROM over USB, reads
memory back into HEX files, and restarts the device into its application.
"""

__version__ = "1.0.0"

from pload.errors import ExitCode, PloadError
from pload.intel_hex import HexData, IntelHexError

__all__ = [
    "ExitCode",
    "PloadError",
    "HexData",
    "IntelHexError",
    "__version__",
]
