from __future__ import annotations

import hashlib
import json
from typing import Any, Dict


def _normalize(obj: Any) -> Any:
    """
    Normalize JSON-like objects for stable hashing:
    - dict keys sorted
    - lists preserved in order
    """
    if isinstance(obj, dict):
        return {k: _normalize(obj[k]) for k in sorted(obj.keys())}
    if isinstance(obj, list):
        return [_normalize(x) for x in obj]
    return obj


def stable_json_dumps(payload: Dict[str, Any]) -> str:
    """Deterministic JSON serialization for hashing."""
    normalized = _normalize(payload)
    return json.dumps(normalized, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def content_hash(payload_json: Dict[str, Any]) -> str:
    """Hash for a decoded event payload."""
    return sha256_hex(stable_json_dumps(payload_json))


def event_key(signature: str, event_index: int) -> str:
    """Stable id of the n-th decoded event inside one ledger transaction."""
    return f"{signature}:{int(event_index)}"


def effect_key(signature: str, event_index: int, effect: str) -> str:
    """Stable id of one side-effect (supply, sender, recipient) of an event."""
    return f"{event_key(signature, event_index)}:{effect}"


def anchor_event_discriminator(event_name: str) -> str:
    """First 8 bytes of sha256("event:<Name>"), hex encoded."""
    return hashlib.sha256(f"event:{event_name}".encode("utf-8")).digest()[:8].hex()
