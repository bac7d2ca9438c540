from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timezone
from typing import List, Optional

from captable_mirror.contracts import CapTable, ConcentrationMetrics

CSV_COLUMNS = ["Wallet Address", "Shares", "Percentage", "Allowlist Status", "Approved At", "Last Updated"]


def _generated_at(now: Optional[datetime] = None) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def export_cap_table_csv(cap_table: CapTable, now: Optional[datetime] = None) -> str:
    """Metadata preamble, a blank line, then one row per holder."""
    token = cap_table.token
    buf = io.StringIO()
    buf.write(f"Token: {token.symbol} ({token.name})\n")
    buf.write(f"Mint Address: {token.mint_address}\n")
    buf.write(f"Total Supply: {token.total_supply}\n")
    buf.write(f"Total Holders: {len(cap_table.holders)}\n")
    if cap_table.snapshot.block_height is not None:
        buf.write(f"Block Height: {cap_table.snapshot.block_height}\n")
    buf.write(f"Generated: {_generated_at(now)}\n")
    buf.write("\n")

    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for h in cap_table.holders:
        writer.writerow(
            [
                h.wallet_address,
                h.shares,
                h.percentage,
                h.allowlist_status,
                h.approved_at or "N/A",
                h.last_updated or "N/A",
            ]
        )
    return buf.getvalue()


def export_cap_table_json(cap_table: CapTable) -> str:
    return json.dumps(cap_table.model_dump(mode="json"), indent=2)


def render_text(cap_table: CapTable, metrics: Optional[ConcentrationMetrics] = None, max_rows: int = 50) -> str:
    token = cap_table.token
    lines: List[str] = []
    title = f"{token.symbol} - {token.name}"
    lines.append(title)
    lines.append("=" * len(title))
    lines.append(f"Mint:          {token.mint_address}")
    lines.append(f"Total supply:  {token.total_supply}")
    if cap_table.snapshot.is_historical:
        lines.append(f"Block height:  {cap_table.snapshot.block_height}")
    lines.append(f"As of:         {cap_table.snapshot.timestamp}")
    lines.append(
        f"Holders:       {cap_table.summary.total_holders} "
        f"({cap_table.summary.percentage_distributed}% distributed)"
    )
    if metrics is not None:
        lines.append(
            f"Concentration: top1 {metrics.top_1_holders}% / top5 {metrics.top_5_holders}% / "
            f"top10 {metrics.top_10_holders}%, gini {metrics.gini_coefficient} ({metrics.interpretation})"
        )
    lines.append("")

    if not cap_table.holders:
        lines.append("(no holders)")
        return "\n".join(lines) + "\n"

    lines.append(f"{'#':>4}  {'Wallet':<44}  {'Shares':>20}  {'Pct':>9}  Status")
    for i, h in enumerate(cap_table.holders[:max_rows], start=1):
        lines.append(f"{i:>4}  {h.wallet_address:<44}  {h.shares:>20}  {h.percentage:>8.4f}%  {h.allowlist_status}")
    hidden = len(cap_table.holders) - max_rows
    if hidden > 0:
        lines.append(f"... {hidden} more holder(s)")
    return "\n".join(lines) + "\n"
