"""
Container for the attributes of a single directory account.
"""

import uuid
from typing import Any, Dict, List, Optional

OBJECT_GUID_ATTRIBUTE = 'objectguid'


def normalize_guid(value: Any) -> str:
    """
    Convert an objectGUID value to its lower-case hyphenated string form.

    Accepts the 16 byte little-endian binary form returned by Active Directory
    as well as the '{xxxxxxxx-...}' string ldap3 produces when schema
    information is available.
    """
    if value is None:
        return ''

    if isinstance(value, (bytes, bytearray)):
        if len(value) == 16:
            return str(uuid.UUID(bytes_le=bytes(value)))
        value = value.decode('utf-8', errors='ignore')

    return str(value).strip().strip('{}').lower()


class AttributeBag:
    """
    Attributes of one directory account.

    ``raw`` maps lower-cased attribute names to the list of values returned by
    the directory. An empty bag means the directory no longer knows the account.
    """

    def __init__(self, raw: Optional[Dict[str, List[Any]]] = None):
        self.raw = {}
        for name, values in (raw or {}).items():
            if not isinstance(values, list):
                values = [values]
            self.raw[name.lower()] = values

    def get_filtered_value(self, name: str) -> str:
        """Return the first value of an attribute as a string, '' if absent."""
        values = self.raw.get(name.lower())
        if not values:
            return ''

        if name.lower() == OBJECT_GUID_ATTRIBUTE:
            return normalize_guid(values[0])

        value = values[0]
        if isinstance(value, (bytes, bytearray)):
            return value.decode('utf-8', errors='replace')
        return str(value)

    def is_empty(self) -> bool:
        return len(self.raw) == 0

    def __repr__(self) -> str:
        return f"AttributeBag({sorted(self.raw)})"
