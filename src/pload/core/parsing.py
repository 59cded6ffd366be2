"""
Centralized parsing helpers for command-line values.

The CLI must import these helpers rather than re-implement them.
"""

from typing import List

from pload.errors import BadArgumentsError
from pload.models import UserType, list_user_types, lookup_user_type


def parse_serial_number(value: str) -> str:
    """
    Validate a -d serial number.

    Serial numbers are matched exactly, so no case folding or trimming is
    applied.

    Raises:
        BadArgumentsError: If the value is empty.
    """
    if value == "":
        raise BadArgumentsError("An empty serial number was specified.")
    return value


def parse_user_type(value: str) -> UserType:
    """
    Parse a -t device type code name, e.g. "p-star".

    Returns:
        The matching UserType.

    Raises:
        BadArgumentsError: If the code name is not known.
    """
    user_type = lookup_user_type(value)
    if user_type is None:
        raise BadArgumentsError(f"Invalid device type '{value}'.")
    return user_type


def get_valid_type_names() -> List[str]:
    """Get list of valid -t code names."""
    return [t.code_name for t in list_user_types()]
