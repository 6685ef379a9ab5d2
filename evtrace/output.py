"""Output format routing for evtrace.

Converts result dicts to the requested format: json, jsonl, table, csv.

Design rules:
- JSON: 2-space indent, utf-8
- JSONL: one JSON object per line, no trailing whitespace
- Table: Rich-formatted; unknown events dim, delegated transfers yellow
- CSV: RFC 4180, header row always present

All format_* functions return strings. The caller writes to stdout.
emit_event() is the one exception: it writes a single flushed JSONL line
for streaming consumers.
"""

from __future__ import annotations

import csv
import io
import json
import sys
from decimal import Decimal
from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

VALID_FORMATS = {"json", "jsonl", "table", "csv"}

# Keys under which a result dict carries its row list
_ROW_KEYS = ("events", "transfers", "tokens", "local", "chain")


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal values."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, bytes):
            return "0x" + obj.hex()
        return super().default(obj)


def emit_event(event: dict[str, Any]) -> None:
    """
    Write a single JSONL event to stdout and flush.

    Never use print() — buffered output breaks pipe consumers.
    """
    sys.stdout.write(json.dumps(event, cls=DecimalEncoder) + "\n")
    sys.stdout.flush()


def format_output(data: Any, fmt: str) -> str:
    """
    Format data for stdout output.

    Args:
        data: Result dict, list, or any JSON-serialisable value.
        fmt: "json" | "jsonl" | "table" | "csv"

    Raises:
        ValueError: If fmt is not a recognised format.
    """
    fmt = fmt.lower()
    if fmt not in VALID_FORMATS:
        raise ValueError(f"Unknown format {fmt!r}. Valid: {sorted(VALID_FORMATS)}")

    if fmt == "jsonl":
        return format_jsonl(data)
    elif fmt == "table":
        return format_table(data)
    elif fmt == "csv":
        return format_csv(data)
    return format_json(data)


# ── JSON ─────────────────────────────────────────────────────────────────────


def format_json(data: Any) -> str:
    """Pretty-print data as JSON (2-space indent)."""
    return json.dumps(data, indent=2, cls=DecimalEncoder, ensure_ascii=False)


# ── JSONL ────────────────────────────────────────────────────────────────────


def format_jsonl(data: Any) -> str:
    """
    One object per line.

    A result dict carrying a row list (events, transfers, tokens) emits one
    line per row; anything else is a single line.
    """
    rows = _find_rows(data)
    if rows is None:
        items = data if isinstance(data, list) else [data]
    else:
        items = rows
    return "\n".join(json.dumps(item, cls=DecimalEncoder) for item in items)


# ── Table ────────────────────────────────────────────────────────────────────


def format_table(data: Any) -> str:
    """
    Format as a Rich terminal table.

    Handles:
    - Event fetch results (dict with 'events')
    - Transfer history (dict with 'transfers', or a timeline with 'local'/'chain')
    - Ownership scans (dict with 'tokens')
    - Generic dict fallback
    """
    buf = io.StringIO()
    console = Console(file=buf, highlight=False, markup=True, width=140)

    if isinstance(data, dict) and "events" in data:
        _render_events_table(console, data)
    elif isinstance(data, dict) and "transfers" in data:
        _render_transfers_table(console, data["transfers"], data.get("source", ""))
        if data.get("skipped"):
            console.print(f"[yellow]Skipped: {data['skipped']} (lookup failed)[/yellow]")
    elif isinstance(data, dict) and "local" in data and "chain" in data:
        _render_transfers_table(console, data["local"], "local")
        _render_transfers_table(console, data["chain"], "chain")
    elif isinstance(data, dict) and "tokens" in data:
        _render_tokens_table(console, data)
    else:
        console.print_json(json.dumps(data, cls=DecimalEncoder))

    return buf.getvalue()


def shorten(addr: str | None) -> str:
    if not addr:
        return "—"
    return f"{addr[:6]}…{addr[-4:]}" if len(addr) > 12 else addr


def _render_events_table(console: Console, data: dict[str, Any]) -> None:
    title = f"Events for {data.get('target', '')}"
    if "from_block" in data:
        title += f" | blocks {data['from_block']}..{data['to_block']}"
    table = Table(title=title, show_header=True, header_style="bold blue")
    table.add_column("Block", justify="right")
    table.add_column("Log", justify="right")
    table.add_column("Event")
    table.add_column("Contract", style="cyan", no_wrap=True)
    table.add_column("Args")
    table.add_column("Tx", no_wrap=True)

    # Most recent first
    for ev in reversed(data.get("events", [])):
        args = ev.get("args")
        if args is None:
            name = Text(ev.get("name", "unknown"), style="dim")
            args_str = f"{len(ev.get('raw', {}).get('topics', []))} topics"
        else:
            name = Text(ev.get("name", ""), style="bold")
            args_str = ", ".join(
                f"{k}={shorten(v) if isinstance(v, str) and v.startswith('0x') else v}"
                for k, v in args.items()
            )
        table.add_row(
            str(ev.get("blockNumber", "")),
            str(ev.get("logIndex", "")),
            name,
            shorten(ev.get("contract")),
            args_str,
            shorten(ev.get("txHash")),
        )

    console.print(table)
    console.print(
        f"Events: [bold]{data.get('count', len(data.get('events', [])))}[/bold]  "
        f"New: [bold green]{data.get('added', 0)}[/bold green]"
    )


def _render_transfers_table(console: Console, transfers: list[dict[str, Any]], source: str) -> None:
    table = Table(
        title=f"Transfers ({source})" if source else "Transfers",
        header_style="bold blue",
    )
    table.add_column("Time")
    table.add_column("Block", justify="right")
    table.add_column("From", style="cyan")
    table.add_column("To", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_column("Token")
    table.add_column("Spender")
    table.add_column("Gas", justify="right")

    for t in transfers:
        delegated = t.get("isDelegated")
        table.add_row(
            str(t.get("timestamp", ""))[:19],
            str(t.get("blockNumber", "")),
            shorten(t.get("from")),
            shorten(t.get("to")),
            str(t.get("amount", "")),
            t.get("tokenSymbol", ""),
            Text(shorten(t.get("spender")), style="yellow" if delegated else "dim"),
            f"{int(t.get('gasUsed') or 0):,}",
        )

    console.print(table)


def _render_tokens_table(console: Console, data: dict[str, Any]) -> None:
    table = Table(
        title=f"Tokens owned by {shorten(data.get('owner'))} on {shorten(data.get('contract'))}",
        header_style="bold blue",
    )
    table.add_column("Token ID", justify="right")
    table.add_column("Name")
    table.add_column("Token URI")
    table.add_column("Image")
    for t in data.get("tokens", []):
        metadata = t.get("metadata") or {}
        table.add_row(
            str(t.get("token_id")),
            metadata.get("name") or "—",
            t.get("token_uri") or "—",
            metadata.get("image") or "—",
        )
    console.print(table)
    console.print(
        f"Scanned: [bold]{data.get('scanned', 0)}[/bold]  End: {data.get('end_reason', '')}"
    )


# ── CSV ──────────────────────────────────────────────────────────────────────


def format_csv(data: Any) -> str:
    """
    Format as CSV with a header row.

    Flattens nested structures to the extent possible.
    """
    buf = io.StringIO()
    writer = csv.writer(buf)

    rows = _find_rows(data)
    if rows is None and isinstance(data, list):
        rows = data

    if not rows:
        writer.writerow(["value"])
        writer.writerow([json.dumps(data, cls=DecimalEncoder)])
        return buf.getvalue()

    flat_rows = [_flatten_dict(r) for r in rows]
    headers: list[str] = []
    for row in flat_rows:
        for key in row:
            if key not in headers:
                headers.append(key)
    writer.writerow(headers)
    for row in flat_rows:
        writer.writerow([row.get(h, "") for h in headers])

    return buf.getvalue()


def _find_rows(data: Any) -> list[Any] | None:
    if isinstance(data, dict):
        for key in _ROW_KEYS:
            if isinstance(data.get(key), list):
                if key == "local" and isinstance(data.get("chain"), list):
                    return data["local"] + data["chain"]
                return data[key]
    return None


def _flatten_dict(d: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten a nested dict for CSV output."""
    result: dict[str, Any] = {}
    for k, v in d.items():
        full_key = f"{prefix}{k}" if not prefix else f"{prefix}.{k}"
        if isinstance(v, dict):
            result.update(_flatten_dict(v, full_key))
        elif isinstance(v, (list, tuple)):
            result[full_key] = json.dumps(v, cls=DecimalEncoder)
        elif isinstance(v, Decimal):
            result[full_key] = str(v)
        else:
            result[full_key] = v
    return result
