"""
Structural validation of caller-supplied wallet and mint addresses.
"""

from typing import Optional

import base58

from .errors import ValidationError

PUBKEY_LENGTH = 32


def is_valid_address(address: Optional[str]) -> bool:
    """True when `address` is base58 and decodes to a 32-byte public key."""
    if not address or not isinstance(address, str):
        return False
    if not (32 <= len(address) <= 44):
        return False
    try:
        return len(base58.b58decode(address)) == PUBKEY_LENGTH
    except ValueError:
        return False


def validate_address(address: Optional[str], label: str = "address") -> str:
    """Return the address unchanged, or raise ValidationError before any fetch."""
    if not is_valid_address(address):
        raise ValidationError(f"invalid {label}: {address!r}")
    return address
