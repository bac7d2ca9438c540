from __future__ import annotations

import base64
import json

import pytest

from captable_mirror.contracts import TokenInitialized, TokensMinted, TokensTransferred, WalletRevoked
from captable_mirror.decoder import (
    PROGRAM_DATA_PREFIX,
    PROGRAM_LOG_EVENT_PREFIX,
    JsonLogDecoder,
    ProgramDataDecoder,
    default_decoder,
    json_payload_parser,
)
from captable_mirror.errors import DecodeError
from captable_mirror.hashing import anchor_event_discriminator
from captable_mirror.validators import generate_identity


def _json_line(**payload) -> str:
    return PROGRAM_LOG_EVENT_PREFIX + json.dumps(payload)


def _data_line(event_name: str, payload: dict) -> str:
    raw = bytes.fromhex(anchor_event_discriminator(event_name)) + json.dumps(payload).encode("utf-8")
    return PROGRAM_DATA_PREFIX + base64.b64encode(raw).decode("ascii")


def test_discriminator_is_eight_bytes():
    disc = anchor_event_discriminator("TokensMinted")
    assert len(bytes.fromhex(disc)) == 8
    assert disc != anchor_event_discriminator("TokensTransferred")


def test_json_log_lines_decode_in_order_and_noise_is_ignored():
    mint, alice, bob = generate_identity(), generate_identity(), generate_identity()
    lines = [
        "Program CapTab1e invoke [1]",
        _json_line(kind="token_initialized", mint=mint, symbol="ACME", name="Acme Corp", decimals=0),
        "Program log: Instruction: MintTokens",
        _json_line(kind="tokens_minted", token_mint=mint, recipient=alice, amount=500, new_supply=500),
        _json_line(kind="tokens_transferred", token_mint=mint, **{"from": alice, "to": bob}, amount=20),
        "Program CapTab1e success",
    ]

    events = JsonLogDecoder().decode(lines)

    assert [type(e) for e in events] == [TokenInitialized, TokensMinted, TokensTransferred]
    assert events[1].amount == 500
    assert events[2].from_wallet == alice
    assert events[2].to_wallet == bob


def test_malformed_lines_are_skipped():
    mint, alice = generate_identity(), generate_identity()
    lines = [
        PROGRAM_LOG_EVENT_PREFIX + "{not json",
        _json_line(token_mint=mint),
        _json_line(kind="tokens_minted", token_mint=mint, recipient=alice, amount=-1),
        _json_line(kind="no_such_event", token_mint=mint),
        _json_line(kind="wallet_revoked", token_mint=mint, wallet=alice),
    ]

    events = JsonLogDecoder().decode(lines)

    assert len(events) == 1
    assert isinstance(events[0], WalletRevoked)


def test_decode_line_raises_for_bad_body():
    with pytest.raises(DecodeError):
        JsonLogDecoder().decode_line(PROGRAM_LOG_EVENT_PREFIX + "[1, 2]")
    assert JsonLogDecoder().decode_line("Program log: something else") is None


def test_program_data_records_decode_by_discriminator():
    mint, alice = generate_identity(), generate_identity()
    decoder = ProgramDataDecoder({"tokens_minted": json_payload_parser})
    lines = [
        _data_line("TokensMinted", {"token_mint": mint, "recipient": alice, "amount": 42}),
        # registered elsewhere but not in this decoder
        _data_line("WalletApproved", {"token_mint": mint, "wallet": alice}),
        PROGRAM_DATA_PREFIX + "%%%not-base64%%%",
        PROGRAM_DATA_PREFIX + base64.b64encode(b"short").decode("ascii"),
    ]

    events = decoder.decode(lines)

    assert len(events) == 1
    assert events[0].amount == 42
    assert events[0].security_mint == mint


def test_program_data_parser_errors_become_decode_errors():
    def broken(raw):
        raise KeyError("field")

    decoder = ProgramDataDecoder({"tokens_minted": broken})
    with pytest.raises(DecodeError):
        decoder.decode_line(_data_line("TokensMinted", {}))


def test_unknown_kind_rejected_at_construction():
    with pytest.raises(ValueError):
        ProgramDataDecoder({"dividend_paid": json_payload_parser})


def test_default_decoder_handles_both_forms():
    mint, alice = generate_identity(), generate_identity()
    lines = [
        _data_line("TokenInitialized", {"mint": mint, "symbol": "ACME", "name": "Acme Corp"}),
        _json_line(kind="tokens_minted", token_mint=mint, recipient=alice, amount=7),
    ]

    events = default_decoder().decode(lines)

    assert [e.kind for e in events] == ["token_initialized", "tokens_minted"]
    assert events[0].decimals == 9
