"""
Custom exception hierarchy for evtrace.

Each exception maps to a specific CLI exit code and JSON error_code field.
cli.py catches all EvtraceError subclasses and formats them as JSON output.

Exit code mapping:
  1 — EvtraceError (generic CLI error)
  2 — FetchFailedError (RPC error, rate limit, reverted call)
  3 — NetworkError (timeout, connection refused); still a FetchFailedError
  4 — DataError (invalid address, invalid block range, token not found)
  5 — ConfigError (missing/malformed config)
  6 — DatabaseError (SQLite failure)
  7 — MetadataUnavailableError (token decimals/symbol/name read failed)
"""


class EvtraceError(Exception):
    """Base exception for all evtrace errors."""

    exit_code: int = 1
    error_code: str = "unknown_error"

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class FetchFailedError(EvtraceError):
    """An underlying JSON-RPC read failed."""

    exit_code = 2
    error_code = "fetch_failed"


class RpcError(FetchFailedError):
    """Node returned a JSON-RPC error object or a non-2xx HTTP status."""

    error_code = "rpc_error"

    def __init__(self, message: str, code: int | None = None, details: dict | None = None) -> None:
        merged = dict(details or {})
        if code is not None:
            merged.setdefault("rpc_code", code)
        super().__init__(message, details=merged)
        self.code = code


class CallRevertedError(RpcError):
    """eth_call reverted (e.g. ownerOf on a token id that does not exist)."""

    error_code = "call_reverted"


class RateLimitError(FetchFailedError):
    """Endpoint rate limit exceeded."""

    error_code = "rate_limited"

    def __init__(self, message: str, retry_after: int = 60, **kwargs) -> None:
        super().__init__(message, details={"retry_after_seconds": retry_after})
        self.retry_after = retry_after


class NetworkError(FetchFailedError):
    """Network connectivity issue — timeout or connection failure."""

    exit_code = 3
    error_code = "network_error"


class RpcTimeoutError(NetworkError):
    """Request timed out at the transport."""

    error_code = "rpc_timeout"


class RpcConnectionError(NetworkError):
    """Could not connect to the RPC endpoint."""

    error_code = "connection_failed"


class DataError(EvtraceError):
    """Input validation or not-found error."""

    exit_code = 4
    error_code = "data_error"


class InvalidAddressError(DataError):
    """Address is malformed or fails its checksum."""

    error_code = "invalid_address"


class InvalidRangeError(DataError):
    """Block range is negative or inverted."""

    error_code = "invalid_range"


class TokenNotFoundError(DataError):
    """Token id does not exist on the contract (end of an ownership scan)."""

    error_code = "token_not_found"


class ConfigError(EvtraceError):
    """Config file is missing or malformed."""

    exit_code = 5
    error_code = "config_error"


class ConfigMissingError(ConfigError):
    """Config file does not exist; user should run `evtrace config init`."""

    error_code = "config_missing"


class ConfigInvalidError(ConfigError):
    """Config file exists but contains invalid TOML or invalid values."""

    error_code = "config_invalid"


class DatabaseError(EvtraceError):
    """SQLite operation failed."""

    exit_code = 6
    error_code = "db_error"


class MetadataUnavailableError(EvtraceError):
    """Token metadata read failed; the reconciliation run is aborted."""

    exit_code = 7
    error_code = "metadata_unavailable"


class DecodeAnomaly(EvtraceError):
    """
    A log could not be decoded against its registered signature.

    Raised and absorbed inside the decoder only; callers see an "unknown" event.
    """

    error_code = "decode_anomaly"
