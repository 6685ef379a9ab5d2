"""
RPC layer for evtrace.

Provides a factory `get_provider()` that builds the JSON-RPC provider from
config. Everything else in evtrace depends only on the Provider protocol, so
tests can substitute an in-memory provider.

Usage:
    from evtrace.rpc import get_provider
    provider = get_provider(config)
    latest = await provider.get_block_number()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from evtrace.rpc.base import (
    BlockCallback,
    BlockInfo,
    LogFilter,
    Provider,
    ReceiptInfo,
    TransactionInfo,
)

if TYPE_CHECKING:
    from evtrace.config import EvtraceConfig
    from evtrace.rpc.http import JsonRpcClient

__all__ = [
    "BlockCallback",
    "BlockInfo",
    "LogFilter",
    "Provider",
    "ReceiptInfo",
    "TransactionInfo",
    "get_provider",
]


def get_provider(config: EvtraceConfig, url: str | None = None) -> JsonRpcClient:
    """
    Factory: return a JSON-RPC provider for the configured endpoint.

    Args:
        config: EvtraceConfig with the [rpc] section
        url: Override endpoint (e.g. from --rpc-url)
    """
    from evtrace.rpc.http import JsonRpcClient

    return JsonRpcClient(
        url=url or config.rpc.url,
        timeout=config.rpc.timeout_seconds,
        poll_interval=config.rpc.poll_interval_seconds,
        rate_limit_per_second=config.rpc.rate_limit_per_second,
    )
