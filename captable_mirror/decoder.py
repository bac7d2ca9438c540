"""Log-line decoders producing typed domain events.

The binary event schema belongs to the on-chain program; this module only
locates event records in log output and hands their payloads to a parser.
Lines that cannot be decoded are skipped.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

import structlog
from pydantic import ValidationError as PydanticValidationError

from captable_mirror.contracts import EventKind, parse_domain_event
from captable_mirror.errors import DecodeError
from captable_mirror.hashing import anchor_event_discriminator

log = structlog.get_logger(__name__)

PROGRAM_DATA_PREFIX = "Program data: "
PROGRAM_LOG_EVENT_PREFIX = "Program log: event: "

# Anchor event struct names, keyed by kind
EVENT_NAMES: Dict[str, str] = {
    EventKind.token_initialized: "TokenInitialized",
    EventKind.wallet_approved: "WalletApproved",
    EventKind.wallet_revoked: "WalletRevoked",
    EventKind.tokens_minted: "TokensMinted",
    EventKind.tokens_transferred: "TokensTransferred",
}

PayloadParser = Callable[[bytes], Mapping[str, Any]]


class EventDecoder(Protocol):
    def decode(self, lines: Sequence[str]) -> List[Any]:
        ...


def _to_event(kind: str, payload: Mapping[str, Any]) -> Any:
    try:
        return parse_domain_event({**payload, "kind": kind})
    except PydanticValidationError as exc:
        raise DecodeError(f"invalid {kind} payload", details={"errors": exc.errors()}) from exc


class JsonLogDecoder:
    """
    Decodes ``Program log: event: {"kind": ..., ...}`` lines.

    Programs that emit events through ``msg!`` with a JSON body (and local
    validators / fixtures) use this form.
    """

    def __init__(self, prefix: str = PROGRAM_LOG_EVENT_PREFIX) -> None:
        self.prefix = prefix

    def decode_line(self, line: str) -> Optional[Any]:
        if not line.startswith(self.prefix):
            return None
        body = line[len(self.prefix):].strip()
        try:
            obj = json.loads(body)
        except json.JSONDecodeError as exc:
            raise DecodeError("event body is not JSON") from exc
        if not isinstance(obj, dict) or not obj.get("kind"):
            raise DecodeError("event body has no kind")
        return _to_event(str(obj["kind"]), obj)

    def decode(self, lines: Sequence[str]) -> List[Any]:
        return _decode_all(self.decode_line, lines)


class ProgramDataDecoder:
    """
    Decodes Anchor ``Program data: <base64>`` event records.

    The first 8 bytes are the event discriminator; the remainder is handed to
    the payload parser registered for that event kind (typically a Borsh
    decoder generated from the program IDL).
    """

    def __init__(self, parsers: Mapping[str, PayloadParser]) -> None:
        self._by_discriminator: Dict[str, tuple[str, PayloadParser]] = {}
        for kind, parser in parsers.items():
            name = EVENT_NAMES.get(kind)
            if name is None:
                raise ValueError(f"unknown event kind: {kind}")
            self._by_discriminator[anchor_event_discriminator(name)] = (str(kind), parser)

    def decode_line(self, line: str) -> Optional[Any]:
        if not line.startswith(PROGRAM_DATA_PREFIX):
            return None
        try:
            raw = base64.b64decode(line[len(PROGRAM_DATA_PREFIX):].strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError("program data is not base64") from exc
        if len(raw) < 8:
            raise DecodeError("program data shorter than discriminator")
        entry = self._by_discriminator.get(raw[:8].hex())
        if entry is None:
            log.debug("unknown_event_discriminator", discriminator=raw[:8].hex())
            return None
        kind, parser = entry
        try:
            payload = parser(raw[8:])
        except DecodeError:
            raise
        except Exception as exc:
            raise DecodeError(f"payload parser failed for {kind}: {exc}") from exc
        return _to_event(kind, payload)

    def decode(self, lines: Sequence[str]) -> List[Any]:
        return _decode_all(self.decode_line, lines)


class CompositeDecoder:
    """Runs several decoders over the same lines, preserving line order."""

    def __init__(self, decoders: Sequence[Any]) -> None:
        self.decoders = list(decoders)

    def decode_line(self, line: str) -> Optional[Any]:
        for decoder in self.decoders:
            event = decoder.decode_line(line)
            if event is not None:
                return event
        return None

    def decode(self, lines: Sequence[str]) -> List[Any]:
        return _decode_all(self.decode_line, lines)


def _decode_all(decode_line: Callable[[str], Optional[Any]], lines: Sequence[str]) -> List[Any]:
    events: List[Any] = []
    for line in lines:
        try:
            event = decode_line(line)
        except DecodeError as exc:
            log.debug("event_decode_skipped", error=exc.message, line=line[:120])
            continue
        if event is not None:
            events.append(event)
    return events


def json_payload_parser(raw: bytes) -> Mapping[str, Any]:
    """Parser for programs whose event body after the discriminator is UTF-8 JSON."""
    try:
        obj = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError("payload is not JSON") from exc
    if not isinstance(obj, dict):
        raise DecodeError("payload is not an object")
    return obj


def default_decoder() -> CompositeDecoder:
    return CompositeDecoder(
        [
            JsonLogDecoder(),
            ProgramDataDecoder({kind: json_payload_parser for kind in EVENT_NAMES}),
        ]
    )
