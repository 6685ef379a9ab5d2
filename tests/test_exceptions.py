"""Tests for evtrace/exceptions.py — exception hierarchy."""

from __future__ import annotations

from evtrace.exceptions import (
    CallRevertedError,
    ConfigError,
    ConfigInvalidError,
    ConfigMissingError,
    DatabaseError,
    DataError,
    DecodeAnomaly,
    EvtraceError,
    FetchFailedError,
    InvalidAddressError,
    InvalidRangeError,
    MetadataUnavailableError,
    NetworkError,
    RateLimitError,
    RpcConnectionError,
    RpcError,
    RpcTimeoutError,
    TokenNotFoundError,
)

# ── Hierarchy / exit codes ────────────────────────────────────────────────────


def test_evtrace_error_base() -> None:
    """EvtraceError is the base of the hierarchy."""
    e = EvtraceError("base error")
    assert e.exit_code == 1
    assert e.error_code == "unknown_error"
    assert str(e) == "base error"


def test_fetch_failed_exit_code() -> None:
    e = FetchFailedError("getLogs failed")
    assert e.exit_code == 2
    assert isinstance(e, EvtraceError)


def test_rpc_error_carries_code() -> None:
    """RpcError keeps the JSON-RPC code and mirrors it into details."""
    e = RpcError("boom", code=-32000, details={"method": "eth_getLogs"})
    assert e.code == -32000
    assert e.details == {"method": "eth_getLogs", "rpc_code": -32000}
    assert isinstance(e, FetchFailedError)


def test_call_reverted_is_rpc_error() -> None:
    e = CallRevertedError("execution reverted", code=3)
    assert isinstance(e, RpcError)
    assert e.error_code == "call_reverted"


def test_rate_limit_error() -> None:
    """RateLimitError includes retry_after."""
    e = RateLimitError("too many requests", retry_after=30)
    assert e.retry_after == 30
    assert e.details["retry_after_seconds"] == 30
    assert e.exit_code == 2


def test_timeout_is_a_fetch_failure() -> None:
    """A transport timeout is treated like any other FetchFailedError."""
    e = RpcTimeoutError("timed out")
    assert isinstance(e, NetworkError)
    assert isinstance(e, FetchFailedError)
    assert e.exit_code == 3


def test_connection_failed_inherits() -> None:
    e = RpcConnectionError("can't connect")
    assert isinstance(e, NetworkError)
    assert e.error_code == "connection_failed"


def test_data_errors() -> None:
    for cls, code in (
        (InvalidAddressError, "invalid_address"),
        (InvalidRangeError, "invalid_range"),
        (TokenNotFoundError, "token_not_found"),
    ):
        e = cls("bad")
        assert isinstance(e, DataError)
        assert e.exit_code == 4
        assert e.error_code == code


def test_token_not_found_is_not_fetch_failure() -> None:
    """End-of-range must never be confused with a transient RPC failure."""
    assert not isinstance(TokenNotFoundError("gone"), FetchFailedError)


def test_config_errors() -> None:
    assert isinstance(ConfigMissingError("x"), ConfigError)
    assert isinstance(ConfigInvalidError("x"), ConfigError)
    assert ConfigInvalidError("x").exit_code == 5


def test_database_and_metadata_exit_codes() -> None:
    assert DatabaseError("x").exit_code == 6
    assert MetadataUnavailableError("x").exit_code == 7


def test_decode_anomaly_code() -> None:
    assert DecodeAnomaly("x").error_code == "decode_anomaly"


# ── to_dict ───────────────────────────────────────────────────────────────────


def test_to_dict_structure() -> None:
    """to_dict() returns the JSON error shape printed by the CLI."""
    e = InvalidAddressError("Invalid address: '0x123'", details={"address": "0x123"})
    assert e.to_dict() == {
        "error": "invalid_address",
        "message": "Invalid address: '0x123'",
        "details": {"address": "0x123"},
    }


def test_default_details_empty() -> None:
    assert FetchFailedError("x").to_dict()["details"] == {}
