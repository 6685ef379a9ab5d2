"""Click CLI entry point for evtrace.

All commands are thin orchestration wrappers — business logic lives in
engine, reconciler, token, ownership, tail, config and output modules.

Exit codes:
  0   — success (an empty result is still success, with count 0)
  1   — generic CLI error
  2   — RPC error, rate limit, reverted call
  3   — network error (timeout, connection refused)
  4   — data error (invalid address, invalid range, token not found)
  5   — config error
  6   — database error
  7   — token metadata unavailable
  130 — tail stopped by Ctrl-C
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import click
import httpx

from evtrace import __version__
from evtrace.config import (
    EvtraceConfig,
    configure_logging,
    get_default_config_path,
    load_config,
    save_config,
)
from evtrace.db import Database
from evtrace.engine import TraceSession
from evtrace.exceptions import ConfigInvalidError, EvtraceError
from evtrace.fetcher import normalize_address
from evtrace.history import HistoryStore
from evtrace.models import SOURCE_CHAIN, SOURCE_LOCAL, LocalTransferDetails, TokenMetadata
from evtrace.output import format_output
from evtrace.reconciler import format_units
from evtrace.rpc import get_provider
from evtrace.signatures import registry_for

logger = logging.getLogger(__name__)

FORMAT_CHOICES = ["json", "jsonl", "table", "csv"]


# ── Error handler ─────────────────────────────────────────────────────────────


def _output_error(err: EvtraceError | Exception) -> None:
    """Write error JSON to stderr."""
    if isinstance(err, EvtraceError):
        payload = err.to_dict()
        exit_code = err.exit_code
    else:
        payload = {"error": "unknown_error", "message": str(err), "details": {}}
        exit_code = 1
    sys.stderr.write(json.dumps(payload) + "\n")
    sys.stderr.flush()
    sys.exit(exit_code)


def _cli_error(message: str) -> None:
    sys.stderr.write(json.dumps({"error": "cli_error", "message": message}) + "\n")
    sys.exit(1)


def _db_from_config(config: EvtraceConfig) -> Database:
    """Create a Database instance from config."""
    db_path = config.database.path
    if db_path and db_path != ":memory:":
        db_path = str(Path(db_path).expanduser())
    return Database(db_path)


@asynccontextmanager
async def _open_session(ctx: click.Context, with_history: bool = False) -> AsyncIterator[TraceSession]:
    """Provider (+ history store when asked) wrapped in a TraceSession."""
    config: EvtraceConfig = ctx.obj["config"]
    registry = registry_for(config.events.signatures)
    async with get_provider(config, ctx.obj.get("rpc_url")) as rpc:
        if not with_history:
            session = TraceSession(rpc, registry=registry)
            try:
                yield session
            finally:
                await session.close()
            return

        async with _db_from_config(config) as db:
            session = TraceSession(rpc, registry=registry, store=HistoryStore(db))
            await session.load()
            try:
                yield session
            finally:
                await session.close()


# ── Root group ────────────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    envvar="EVTRACE_CONFIG",
    default=None,
    help="Config file path (default: ~/.evtrace/config.toml)",
)
@click.option("--rpc-url", default=None, help="JSON-RPC endpoint (overrides config)")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(FORMAT_CHOICES),
    default=None,
    help="Output format (overrides config default)",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging on stderr")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: str | None,
    rpc_url: str | None,
    output_format: str | None,
    verbose: bool,
) -> None:
    """evtrace — ERC-20/ERC-721 event tracer and transfer history reconciler."""
    ctx.ensure_object(dict)
    config_error: EvtraceError | None = None
    try:
        config = load_config(config_path)
    except EvtraceError as e:
        # On config errors, use defaults (so config init still works)
        config = EvtraceConfig()
        config_error = e

    configure_logging("DEBUG" if verbose else config.logging.level)
    if config_error is not None:
        logger.warning("Using default config: %s", config_error)

    ctx.obj["config"] = config
    ctx.obj["format"] = output_format or config.output.default_format
    ctx.obj["config_path"] = config_path
    ctx.obj["rpc_url"] = rpc_url


# ── Event commands ────────────────────────────────────────────────────────────


@cli.group()
def events() -> None:
    """Fetch and live-tail log events for an address."""


@events.command("fetch")
@click.argument("address")
@click.option("--lookback", type=click.IntRange(0), default=None, help="Blocks back from head")
@click.pass_context
def events_fetch(ctx: click.Context, address: str, lookback: int | None) -> None:
    """Fetch past Transfer/Approval events involving ADDRESS."""
    config: EvtraceConfig = ctx.obj["config"]
    fmt = ctx.obj.get("format", "json")
    lookback = config.events.lookback_blocks if lookback is None else lookback

    async def _run() -> dict[str, Any]:
        async with _open_session(ctx) as session:
            result = await session.fetch_past_events(address, lookback)
            return result.to_dict()

    try:
        result = asyncio.run(_run())
        click.echo(format_output(result, fmt))
    except EvtraceError as e:
        _output_error(e)


@events.command("tail")
@click.argument("address")
@click.option("--lookback", type=click.IntRange(0), default=0, show_default=True,
              help="Backfill this many blocks before tailing")
@click.option("--interval", type=click.FloatRange(min=0.1), default=None,
              help="Block poll interval in seconds")
@click.pass_context
def events_tail(ctx: click.Context, address: str, lookback: int, interval: float | None) -> None:
    """Stream events involving ADDRESS as JSONL until Ctrl-C."""
    from evtrace.tail import run_tail

    config: EvtraceConfig = ctx.obj["config"]
    if interval is not None:
        config.rpc.poll_interval_seconds = interval

    async def _run() -> None:
        async with _open_session(ctx) as session:
            await run_tail(session, address, lookback=lookback)

    try:
        asyncio.run(_run())
        sys.exit(130)  # tail ended (normal exit via SIGINT/cancel)
    except KeyboardInterrupt:
        sys.exit(130)
    except EvtraceError as e:
        _output_error(e)


# ── History commands ──────────────────────────────────────────────────────────


@cli.group()
def history() -> None:
    """Local and chain-derived transfer history."""


@history.command("fetch")
@click.argument("token")
@click.option("--lookback", type=click.IntRange(0), default=None)
@click.option("--limit", type=click.IntRange(1), default=None)
@click.pass_context
def history_fetch(ctx: click.Context, token: str, lookback: int | None, limit: int | None) -> None:
    """Rebuild TOKEN's recent transfers from chain logs."""
    config: EvtraceConfig = ctx.obj["config"]
    fmt = ctx.obj.get("format", "json")
    lookback = config.history.lookback_blocks if lookback is None else lookback
    limit = limit or config.history.limit

    async def _run() -> dict[str, Any]:
        async with _open_session(ctx) as session:
            history = await session.fetch_chain_history(token, lookback=lookback, limit=limit)
            payload = session.timeline().to_dict(SOURCE_CHAIN)
            payload["token"] = normalize_address(token)
            payload["from_block"] = history.from_block
            payload["to_block"] = history.to_block
            # Transfers dropped after a failed tx, receipt or block lookup
            payload["skipped"] = history.skipped
            return payload

    try:
        result = asyncio.run(_run())
        click.echo(format_output(result, fmt))
    except EvtraceError as e:
        _output_error(e)


@history.command("record")
@click.option("--tx-hash", required=True)
@click.option("--from", "from_addr", required=True, help="Token owner the amount left")
@click.option("--to", "to_addr", required=True)
@click.option("--amount", required=True, help="Human-readable amount, e.g. 1.5")
@click.option("--token", required=True, help="Token contract address")
@click.option("--spender", default=None, help="Caller of transferFrom, for delegated transfers")
@click.option("--block", "block_number", type=click.IntRange(0), default=0)
@click.option("--gas-used", default="0")
@click.option("--gas-price", default=None)
@click.option("--symbol", default=None, help="Skip the on-chain metadata read")
@click.option("--name", "token_name", default=None)
@click.option("--decimals", type=click.IntRange(0, 255), default=18, show_default=True)
@click.pass_context
def history_record(
    ctx: click.Context,
    tx_hash: str,
    from_addr: str,
    to_addr: str,
    amount: str,
    token: str,
    spender: str | None,
    block_number: int,
    gas_used: str,
    gas_price: str | None,
    symbol: str | None,
    token_name: str | None,
    decimals: int,
) -> None:
    """Record a confirmed transfer in the local history."""
    fmt = ctx.obj.get("format", "json")

    async def _run() -> dict[str, Any]:
        async with _open_session(ctx, with_history=True) as session:
            if symbol is not None:
                checksummed = normalize_address(token)
                metadata = TokenMetadata(
                    address=checksummed,
                    name=token_name or symbol,
                    symbol=symbol,
                    decimals=decimals,
                )
            else:
                metadata = await session.tokens.metadata(token)

            record = await session.record_local_transfer(
                LocalTransferDetails(
                    tx_hash=tx_hash,
                    from_addr=from_addr,
                    to_addr=to_addr,
                    amount=amount,
                    token=metadata,
                    block_number=block_number,
                    gas_used=gas_used,
                    gas_price=gas_price,
                    spender=spender,
                )
            )
            return {"status": "recorded", "transfer": record.to_dict()}

    try:
        result = asyncio.run(_run())
        click.echo(format_output(result, fmt))
    except EvtraceError as e:
        _output_error(e)


@history.command("list")
@click.pass_context
def history_list(ctx: click.Context) -> None:
    """List locally recorded transfers, newest first."""
    fmt = ctx.obj.get("format", "json")

    async def _run() -> dict[str, Any]:
        async with _db_from_config(ctx.obj["config"]) as db:
            store = HistoryStore(db)
            await store.load()
            return store.timeline().to_dict(SOURCE_LOCAL)

    try:
        result = asyncio.run(_run())
        click.echo(format_output(result, fmt))
    except EvtraceError as e:
        _output_error(e)


@history.command("clear")
@click.option("--yes", is_flag=True, help="Do not prompt")
@click.pass_context
def history_clear(ctx: click.Context, yes: bool) -> None:
    """Delete every locally recorded transfer."""
    if not yes:
        click.confirm("Delete all local transfer history?", abort=True, err=True)

    async def _run() -> int:
        async with _db_from_config(ctx.obj["config"]) as db:
            store = HistoryStore(db)
            await store.load()
            return await store.clear(SOURCE_LOCAL)

    try:
        removed = asyncio.run(_run())
        click.echo(json.dumps({"status": "cleared", "source": SOURCE_LOCAL, "removed": removed}))
    except EvtraceError as e:
        _output_error(e)


# ── Token commands ────────────────────────────────────────────────────────────


@cli.group()
def token() -> None:
    """Read-only ERC-20 queries."""


@token.command("info")
@click.argument("token_address")
@click.pass_context
def token_info(ctx: click.Context, token_address: str) -> None:
    """Show name, symbol and decimals."""
    fmt = ctx.obj.get("format", "json")

    async def _run() -> dict[str, Any]:
        async with _open_session(ctx) as session:
            metadata = await session.tokens.metadata(token_address)
            return metadata.to_dict()

    try:
        result = asyncio.run(_run())
        click.echo(format_output(result, fmt))
    except EvtraceError as e:
        _output_error(e)


@token.command("allowance")
@click.argument("token_address")
@click.argument("owner")
@click.argument("spender")
@click.pass_context
def token_allowance(ctx: click.Context, token_address: str, owner: str, spender: str) -> None:
    """Show how much SPENDER may still move from OWNER."""
    fmt = ctx.obj.get("format", "json")

    async def _run() -> dict[str, Any]:
        async with _open_session(ctx) as session:
            metadata = await session.tokens.metadata(token_address)
            raw = await session.tokens.allowance(metadata.address, owner, spender)
            return {
                "token": metadata.address,
                "symbol": metadata.symbol,
                "owner": normalize_address(owner),
                "spender": normalize_address(spender),
                "raw": str(raw),
                "allowance": format_units(raw, metadata.decimals),
            }

    try:
        result = asyncio.run(_run())
        click.echo(format_output(result, fmt))
    except EvtraceError as e:
        _output_error(e)


# ── NFT commands ──────────────────────────────────────────────────────────────


@cli.group()
def nft() -> None:
    """Read-only ERC-721 queries."""


@nft.command("owned")
@click.argument("contract")
@click.argument("owner")
@click.option("--max-tokens", type=click.IntRange(0), default=50, show_default=True)
@click.option("--start", type=click.IntRange(0), default=0, show_default=True)
@click.option("--attempts", type=click.IntRange(1), default=3, show_default=True,
              help="Tries per read before a transient RPC error aborts the scan")
@click.option("--metadata/--no-metadata", default=True, show_default=True,
              help="Fetch each owned token's tokenURI JSON through the IPFS gateway")
@click.pass_context
def nft_owned(
    ctx: click.Context,
    contract: str,
    owner: str,
    max_tokens: int,
    start: int,
    attempts: int,
    metadata: bool,
) -> None:
    """List token ids OWNER holds on CONTRACT (bounded ownerOf scan)."""
    from evtrace.ownership import scan_owned_tokens

    config: EvtraceConfig = ctx.obj["config"]
    fmt = ctx.obj.get("format", "json")

    async def _scan(session: TraceSession, client: httpx.AsyncClient | None) -> dict[str, Any]:
        scan = await scan_owned_tokens(
            session.tokens, contract, owner,
            max_tokens=max_tokens, start=start, attempts=attempts,
            metadata_client=client,
        )
        return scan.to_dict()

    async def _run() -> dict[str, Any]:
        async with _open_session(ctx) as session:
            if not metadata:
                return await _scan(session, None)
            async with httpx.AsyncClient(
                timeout=config.rpc.timeout_seconds, follow_redirects=True
            ) as client:
                return await _scan(session, client)

    try:
        result = asyncio.run(_run())
        click.echo(format_output(result, fmt))
    except EvtraceError as e:
        _output_error(e)


# ── Config commands ───────────────────────────────────────────────────────────


@cli.group("config")
def config_group() -> None:
    """Manage evtrace configuration."""


@config_group.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing config")
@click.pass_context
def config_init(ctx: click.Context, force: bool) -> None:
    """Initialize default config at ~/.evtrace/config.toml."""
    provided = ctx.obj.get("config_path")
    config_path = Path(provided) if provided else get_default_config_path()

    if config_path.exists() and not force:
        click.echo(
            json.dumps(
                {
                    "status": "already_exists",
                    "config_path": str(config_path),
                    "hint": "Use --force to reinitialize",
                }
            )
        )
        return

    status = "initialized"
    backup = None

    if config_path.exists() and force:
        backup = str(config_path) + ".bak"
        shutil.copy2(config_path, backup)
        status = "reinitialized"

    save_config(EvtraceConfig(), str(config_path))

    result: dict[str, Any] = {
        "status": status,
        "config_path": str(config_path),
    }
    if backup:
        result["backup"] = backup
    click.echo(json.dumps(result))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx: click.Context, key: str, value: str) -> None:
    """Set a config value by dotted key path (e.g. rpc.url)."""
    config_path = ctx.obj.get("config_path")
    config: EvtraceConfig = ctx.obj["config"]

    parts = key.split(".", 1)
    if len(parts) != 2:
        _cli_error(f"Key must be in form section.key, got: {key!r}")

    section_name, field_name = parts
    section = getattr(config, section_name, None)
    if section is None or not hasattr(section, field_name):
        _output_error(ConfigInvalidError(f"Unknown config key: {key!r}", details={"key": key}))

    current = getattr(section, field_name)
    try:
        if isinstance(current, bool):
            typed_value: Any = value.lower() in ("1", "true", "yes")
        elif isinstance(current, int):
            typed_value = int(value)
        elif isinstance(current, float):
            typed_value = float(value)
        else:
            typed_value = value
        setattr(section, field_name, typed_value)
    except (ValueError, TypeError) as e:
        _output_error(ConfigInvalidError(str(e), details={"key": key}))

    save_config(config, config_path)
    click.echo(json.dumps({"status": "updated", "key": key, "value": typed_value}))


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show the effective configuration."""
    config: EvtraceConfig = ctx.obj["config"]
    provided = ctx.obj.get("config_path")
    config_path = Path(provided) if provided else get_default_config_path()

    result = {"config_path": str(config_path), **config.to_dict()}
    click.echo(format_output(result, "json"))


if __name__ == "__main__":
    cli()
