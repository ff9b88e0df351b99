"""
Interpretation of the Active Directory userAccountControl attribute.

All functions in this module are pure predicates over the integer flag value so
they can be used (and tested) without a directory connection.
"""

import logging
from typing import Any, List, Mapping, Optional

logger = logging.getLogger(__name__)


UF_ACCOUNT_DISABLE = 2
UF_NORMAL_ACCOUNT = 512
UF_INTERDOMAIN_TRUST_ACCOUNT = 2048
UF_WORKSTATION_TRUST_ACCOUNT = 4096
UF_SERVER_TRUST_ACCOUNT = 8192
UF_MNS_LOGON_ACCOUNT = 131072
UF_SMARTCARD_REQUIRED = 262144
UF_PARTIAL_SECRETS_ACCOUNT = 67108864

# Account classes that exclude an account from being a normal user account
NOT_NORMAL_ACCOUNT_MASK = (
    UF_INTERDOMAIN_TRUST_ACCOUNT
    | UF_WORKSTATION_TRUST_ACCOUNT
    | UF_SERVER_TRUST_ACCOUNT
    | UF_MNS_LOGON_ACCOUNT
    | UF_PARTIAL_SECRETS_ACCOUNT
)

ACCOUNT_CONTROL_ATTRIBUTE = 'useraccountcontrol'

_FLAG_NAMES = [
    (UF_ACCOUNT_DISABLE, 'ACCOUNTDISABLE'),
    (UF_NORMAL_ACCOUNT, 'NORMAL_ACCOUNT'),
    (UF_INTERDOMAIN_TRUST_ACCOUNT, 'INTERDOMAIN_TRUST_ACCOUNT'),
    (UF_WORKSTATION_TRUST_ACCOUNT, 'WORKSTATION_TRUST_ACCOUNT'),
    (UF_SERVER_TRUST_ACCOUNT, 'SERVER_TRUST_ACCOUNT'),
    (UF_MNS_LOGON_ACCOUNT, 'MNS_LOGON_ACCOUNT'),
    (UF_SMARTCARD_REQUIRED, 'SMARTCARD_REQUIRED'),
    (UF_PARTIAL_SECRETS_ACCOUNT, 'PARTIAL_SECRETS_ACCOUNT'),
]


def account_control_value(attributes: Optional[Mapping[str, Any]]) -> int:
    """
    Return the userAccountControl value from a raw attribute mapping.

    Args:
        attributes: Raw directory attributes (lower-cased name -> list of values)

    Returns:
        The flag value, or 0 if the attribute is missing, not a single-valued
        list, or not an integer
    """
    if not attributes:
        return 0

    value = attributes.get(ACCOUNT_CONTROL_ATTRIBUTE)
    if not isinstance(value, list) or len(value) != 1:
        return 0

    try:
        return int(value[0])
    except (TypeError, ValueError):
        logger.debug(f"Ignoring malformed {ACCOUNT_CONTROL_ATTRIBUTE} value: {value[0]!r}")
        return 0


def is_normal_account(flags: int) -> bool:
    """Normal-account bit set and none of the trust/service account bits."""
    return (flags & (UF_NORMAL_ACCOUNT | NOT_NORMAL_ACCOUNT_MASK)) == UF_NORMAL_ACCOUNT


def is_smart_card_required(flags: int) -> bool:
    return (flags & UF_SMARTCARD_REQUIRED) != 0


def is_account_disabled(flags: int) -> bool:
    return (flags & UF_ACCOUNT_DISABLE) == UF_ACCOUNT_DISABLE


def describe(flags: int) -> List[str]:
    """Names of the known bits set in flags, for log output."""
    return [name for bit, name in _FLAG_NAMES if flags & bit]
