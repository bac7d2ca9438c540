"""Input validation for ledger identities and corporate-action parameters."""

from __future__ import annotations

import os
import re
from typing import Any

from captable_mirror.errors import ValidationError

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

# 32-byte keys encode to 32..44 base58 characters.
_IDENTITY_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
_SYMBOL_RE = re.compile(r"^[A-Z]{3,10}$")

MAX_SPLIT_RATIO = 1000


def is_valid_identity(value: Any) -> bool:
    """True if value looks like a base58-encoded 32-byte public key."""
    if not value or not isinstance(value, str):
        return False
    return bool(_IDENTITY_RE.match(value))


def require_identity(value: Any, field: str = "identity") -> str:
    if not is_valid_identity(value):
        raise ValidationError(f"Invalid {field}: {value!r}", details={"field": field})
    return value


def is_valid_symbol(symbol: Any) -> bool:
    if not symbol or not isinstance(symbol, str):
        return False
    return bool(_SYMBOL_RE.match(symbol))


def is_valid_token_name(name: Any) -> bool:
    if not name or not isinstance(name, str):
        return False
    return 2 <= len(name) <= 50


def is_valid_split_ratio(ratio: Any) -> bool:
    if isinstance(ratio, bool) or not isinstance(ratio, int):
        return False
    return 0 < ratio <= MAX_SPLIT_RATIO


def is_valid_decimals(decimals: Any) -> bool:
    if isinstance(decimals, bool) or not isinstance(decimals, int):
        return False
    return 0 <= decimals <= 9


def encode_base58(raw: bytes) -> str:
    """Bitcoin-alphabet base58, as used for ledger public keys."""
    n = int.from_bytes(raw, "big")
    chars = []
    while n > 0:
        n, rem = divmod(n, 58)
        chars.append(BASE58_ALPHABET[rem])
    # leading zero bytes map to leading "1"s
    pad = len(raw) - len(raw.lstrip(b"\x00"))
    return "1" * pad + "".join(reversed(chars))


def generate_identity() -> str:
    """Fresh random 32-byte identity, base58 encoded."""
    while True:
        candidate = encode_base58(os.urandom(32))
        if is_valid_identity(candidate):
            return candidate
