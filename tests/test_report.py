from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timezone

from captable_mirror.contracts import ChangeType
from captable_mirror.notifications import NotificationChannel, RecordingSink, to_message
from captable_mirror.ownership import OwnershipEngine
from captable_mirror.report import CSV_COLUMNS, export_cap_table_csv, export_cap_table_json, render_text

NOW = datetime(2026, 4, 1, 9, 30, tzinfo=timezone.utc)


def test_csv_has_preamble_then_holder_rows(ledger, wallets):
    a, b = wallets(2)
    mint = ledger.init()
    ledger.mint(mint, a, 750, slot=100)
    ledger.mint(mint, b, 250, slot=101)
    table = OwnershipEngine().compute_cap_table(mint)

    text = export_cap_table_csv(table, now=NOW)
    preamble, body = text.split("\n\n", 1)

    assert preamble.splitlines() == [
        "Token: ACME (Acme Corp)",
        f"Mint Address: {mint}",
        "Total Supply: 1000",
        "Total Holders: 2",
        f"Generated: {NOW.isoformat()}",
    ]
    rows = list(csv.reader(io.StringIO(body)))
    assert rows[0] == CSV_COLUMNS
    assert rows[1][:4] == [a, "750", "75.0", "unknown"]
    assert rows[1][4] == "N/A"
    assert rows[2][0] == b


def test_historical_csv_includes_block_height(ledger, wallets):
    (a,) = wallets(1)
    mint = ledger.init()
    ledger.mint(mint, a, 10, slot=100)
    table = OwnershipEngine().compute_cap_table(mint, block_height=120)
    assert "Block Height: 120\n" in export_cap_table_csv(table, now=NOW)


def test_json_export_round_trips_structure(ledger, wallets):
    (a,) = wallets(1)
    mint = ledger.init()
    ledger.mint(mint, a, 10, slot=100)
    data = json.loads(export_cap_table_json(OwnershipEngine().compute_cap_table(mint)))
    assert data["token"]["mint_address"] == mint
    assert data["holders"][0]["shares"] == 10
    assert data["summary"]["total_holders"] == 1


def test_render_text_truncates_long_tables(ledger, wallets):
    holders = wallets(4)
    mint = ledger.init()
    for i, w in enumerate(holders):
        ledger.mint(mint, w, 10 * (i + 1), slot=100 + i)
    engine = OwnershipEngine()

    out = render_text(engine.compute_cap_table(mint), engine.concentration_metrics(mint), max_rows=2)

    assert out.startswith("ACME - Acme Corp\n")
    assert "Holders:       4 (100.0% distributed)" in out
    assert "gini" in out
    assert "... 2 more holder(s)" in out
    assert holders[3] in out
    assert holders[0] not in out


def test_render_text_without_holders(ledger):
    mint = ledger.init()
    assert "(no holders)" in render_text(OwnershipEngine().compute_cap_table(mint))


def test_channel_order_unsubscribe_and_failing_subscriber():
    seen = RecordingSink()

    def broken(event):
        raise RuntimeError("subscriber bug")

    channel = NotificationChannel([broken, seen])
    channel.publish(ChangeType.tokens_minted, "MintA", {"amount": 1})
    unsubscribe = channel.subscribe(seen)
    channel.publish(ChangeType.cap_table_updated, "MintA")
    unsubscribe()
    channel.publish(ChangeType.corporate_action, "MintA")

    assert [e.type for e in seen.events] == [
        ChangeType.tokens_minted,
        ChangeType.cap_table_updated,
        ChangeType.cap_table_updated,
        ChangeType.corporate_action,
    ]


def test_to_message_wire_shape():
    event = NotificationChannel().publish(ChangeType.wallet_approved, "MintA", {"wallet": "W1"})
    msg = to_message(event)
    assert msg["type"] == "wallet_approved"
    assert msg["data"] == {"security": "MintA", "wallet": "W1"}
    assert msg["timestamp"].endswith("Z")
