"""
Config loading for evtrace.

Sources (in precedence order, highest first):
  1. Environment variables (EVTRACE_*)
  2. ~/.evtrace/config.toml
  3. Built-in defaults

Usage:
    from evtrace.config import load_config
    config = load_config()
    print(config.rpc.url)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import toml

from evtrace.exceptions import ConfigInvalidError
from evtrace.signatures import SIGNATURE_SETS

# Default config directory and file
DEFAULT_CONFIG_DIR = Path.home() / ".evtrace"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.toml"

# Environment variable → config key mapping
# Format: (env_var_name, dotted_config_path, type_converter)
_ENV_OVERRIDES: list[tuple[str, str, type]] = [
    ("EVTRACE_RPC_URL", "rpc.url", str),
    ("EVTRACE_RPC_TIMEOUT", "rpc.timeout_seconds", float),
    ("EVTRACE_POLL_INTERVAL", "rpc.poll_interval_seconds", float),
    ("EVTRACE_RATE_LIMIT", "rpc.rate_limit_per_second", int),
    ("EVTRACE_LOOKBACK_BLOCKS", "events.lookback_blocks", int),
    ("EVTRACE_SIGNATURES", "events.signatures", str),
    ("EVTRACE_HISTORY_LIMIT", "history.limit", int),
    ("EVTRACE_DB_PATH", "database.path", str),
    ("EVTRACE_OUTPUT_FORMAT", "output.default_format", str),
    ("EVTRACE_LOG_LEVEL", "logging.level", str),
]

VALID_FORMATS = {"json", "jsonl", "table", "csv"}
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class RPCConfig:
    """JSON-RPC endpoint configuration."""

    url: str = "http://127.0.0.1:8545"
    timeout_seconds: float = 30.0
    poll_interval_seconds: float = 4.0     # eth_blockNumber polling for live tail
    rate_limit_per_second: int = 10


@dataclass
class EventsConfig:
    lookback_blocks: int = 10000
    signatures: str = "erc20"              # erc20 | erc721 | all


@dataclass
class HistoryConfig:
    lookback_blocks: int = 10000
    limit: int = 50


@dataclass
class DatabaseConfig:
    """SQLite key-value store for local transfer history."""

    path: str = str(DEFAULT_CONFIG_DIR / "evtrace.db")


@dataclass
class OutputConfig:
    """Output formatting defaults."""

    default_format: str = "json"        # json | jsonl | table | csv
    color: bool = True


@dataclass
class LoggingConfig:
    level: str = "WARNING"


@dataclass
class EvtraceConfig:
    """Full configuration object. Passed via Click context to all commands."""

    rpc: RPCConfig = field(default_factory=RPCConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> dict:
        return {
            "rpc": {
                "url": self.rpc.url,
                "timeout_seconds": self.rpc.timeout_seconds,
                "poll_interval_seconds": self.rpc.poll_interval_seconds,
                "rate_limit_per_second": self.rpc.rate_limit_per_second,
            },
            "events": {
                "lookback_blocks": self.events.lookback_blocks,
                "signatures": self.events.signatures,
            },
            "history": {
                "lookback_blocks": self.history.lookback_blocks,
                "limit": self.history.limit,
            },
            "database": {"path": self.database.path},
            "output": {
                "default_format": self.output.default_format,
                "color": self.output.color,
            },
            "logging": {"level": self.logging.level},
        }


def load_config(path: str | None = None) -> EvtraceConfig:
    """
    Load configuration from TOML file + environment variable overrides.

    A missing file is not an error; defaults apply.

    Args:
        path: Override config file path. If None, uses EVTRACE_CONFIG_PATH
              env var or default (~/.evtrace/config.toml).

    Raises:
        ConfigInvalidError: Config file exists but is invalid TOML or values.
    """
    config_path = _resolve_config_path(path)

    raw: dict = {}
    if config_path.exists():
        try:
            raw = toml.load(str(config_path))
        except toml.TomlDecodeError as e:
            raise ConfigInvalidError(f"Invalid TOML in {config_path}: {e}") from e

    config = _dict_to_config(raw)
    _apply_env_overrides(config)
    _validate_config(config)

    return config


def save_config(config: EvtraceConfig, path: str | None = None) -> Path:
    """
    Serialize EvtraceConfig to TOML and write to disk.

    Returns the path where config was written.
    """
    config_path = _resolve_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w") as f:
        toml.dump(config.to_dict(), f)

    return config_path


def get_default_config_path() -> Path:
    """Return the config file path in effect (EVTRACE_CONFIG_PATH or default)."""
    return _resolve_config_path(None)


def configure_logging(level: str) -> None:
    """Route evtrace logs to stderr; stdout carries command payloads only."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        force=True,
    )


# ──────────────────────────────────────────────────────────────
# Private helpers
# ──────────────────────────────────────────────────────────────


def _resolve_config_path(path: str | None) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get("EVTRACE_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH


def _dict_to_config(raw: dict) -> EvtraceConfig:
    """Build EvtraceConfig from raw TOML dict, applying defaults for missing keys."""
    config = EvtraceConfig()

    try:
        rpc = raw.get("rpc", {})
        config.rpc.url = rpc.get("url", config.rpc.url)
        config.rpc.timeout_seconds = float(rpc.get("timeout_seconds", 30.0))
        config.rpc.poll_interval_seconds = float(rpc.get("poll_interval_seconds", 4.0))
        config.rpc.rate_limit_per_second = int(rpc.get("rate_limit_per_second", 10))

        events = raw.get("events", {})
        config.events.lookback_blocks = int(events.get("lookback_blocks", 10000))
        config.events.signatures = str(events.get("signatures", "erc20"))

        history = raw.get("history", {})
        config.history.lookback_blocks = int(history.get("lookback_blocks", 10000))
        config.history.limit = int(history.get("limit", 50))

        db = raw.get("database", {})
        config.database.path = db.get("path", config.database.path)

        output = raw.get("output", {})
        config.output.default_format = output.get("default_format", "json")
        config.output.color = bool(output.get("color", True))

        log = raw.get("logging", {})
        config.logging.level = str(log.get("level", "WARNING"))
    except (ValueError, TypeError, AttributeError) as e:
        raise ConfigInvalidError(f"Invalid config value: {e}") from e

    return config


def _apply_env_overrides(config: EvtraceConfig) -> None:
    """Apply environment variable overrides to a loaded config."""
    if os.environ.get("EVTRACE_NO_COLOR"):
        config.output.color = False

    for env_var, dotted_key, converter in _ENV_OVERRIDES:
        val = os.environ.get(env_var)
        if val is None:
            continue
        section, key = dotted_key.split(".", 1)
        section_obj = getattr(config, section)
        try:
            setattr(section_obj, key, converter(val))
        except (ValueError, TypeError) as e:
            raise ConfigInvalidError(
                f"Invalid value for {env_var}={val!r}: {e}"
            ) from e


def _validate_config(config: EvtraceConfig) -> None:
    """Validate config values. Raises ConfigInvalidError on invalid values."""
    if not config.rpc.url.startswith(("http://", "https://")):
        raise ConfigInvalidError(f"rpc.url must be an http(s) URL, got {config.rpc.url!r}")
    if config.rpc.timeout_seconds <= 0:
        raise ConfigInvalidError(
            f"rpc.timeout_seconds must be positive, got {config.rpc.timeout_seconds}"
        )
    if config.rpc.poll_interval_seconds <= 0:
        raise ConfigInvalidError(
            f"rpc.poll_interval_seconds must be positive, got {config.rpc.poll_interval_seconds}"
        )
    if config.rpc.rate_limit_per_second < 1:
        raise ConfigInvalidError(
            f"rpc.rate_limit_per_second must be >= 1, got {config.rpc.rate_limit_per_second}"
        )
    if config.events.lookback_blocks < 0 or config.history.lookback_blocks < 0:
        raise ConfigInvalidError("lookback_blocks must be non-negative")
    if config.events.signatures.lower() not in SIGNATURE_SETS:
        raise ConfigInvalidError(
            f"events.signatures must be one of {sorted(SIGNATURE_SETS)}, "
            f"got {config.events.signatures!r}"
        )
    if config.history.limit < 1:
        raise ConfigInvalidError(f"history.limit must be >= 1, got {config.history.limit}")
    if config.output.default_format not in VALID_FORMATS:
        raise ConfigInvalidError(
            f"output.default_format must be one of {VALID_FORMATS}, "
            f"got {config.output.default_format!r}"
        )
    if config.logging.level.upper() not in VALID_LOG_LEVELS:
        raise ConfigInvalidError(
            f"logging.level must be one of {sorted(VALID_LOG_LEVELS)}, "
            f"got {config.logging.level!r}"
        )
