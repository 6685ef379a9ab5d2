"""
Event decoder — raw LogRecord → DecodedEvent.

Indexed parameters are read from topics[1:], one 32-byte word each, in
declaration order. Non-indexed parameters are ABI-decoded from the data
payload. Anything that does not fit (unregistered topic0, unexpected topic
count, truncated data) degrades to the "unknown" variant; decode() never
raises.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from eth_abi import decode as abi_decode
from eth_utils import to_checksum_address

from evtrace.exceptions import DecodeAnomaly
from evtrace.models import UNKNOWN_EVENT, DecodedEvent, EventParam, LogRecord
from evtrace.signatures import SignatureRegistry

logger = logging.getLogger(__name__)


class EventDecoder:
    """Decodes logs against an injected, read-only signature registry."""

    def __init__(self, registry: SignatureRegistry) -> None:
        self._registry = registry

    @property
    def registry(self) -> SignatureRegistry:
        return self._registry

    def decode(self, log: LogRecord) -> DecodedEvent:
        try:
            name, args = self._decode_known(log)
        except Exception as e:
            # Every failure mode maps to "unknown"; the batch always continues.
            logger.debug(
                "Undecodable log %s:%d (%s): %s",
                log.transaction_hash, log.log_index, type(e).__name__, e,
            )
            return unknown_event(log)

        return DecodedEvent(
            contract_address=log.address,
            name=name,
            args=args,
            raw_log=log,
            block_number=log.block_number,
            log_index=log.log_index,
            transaction_hash=log.transaction_hash,
        )

    def decode_many(self, logs: Iterable[LogRecord]) -> list[DecodedEvent]:
        return [self.decode(log) for log in logs]

    def _decode_known(self, log: LogRecord) -> tuple[str, dict[str, Any]]:
        if not log.topics:
            raise DecodeAnomaly("log has no topics (anonymous event)")

        topic0 = log.topics[0]
        if topic0 not in self._registry:
            raise DecodeAnomaly(f"topic0 {topic0} not registered")

        sig = self._registry.match(topic0, len(log.topics))
        if sig is None:
            raise DecodeAnomaly(
                f"{len(log.topics)} topics fit no registered layout for {topic0}"
            )

        values: dict[str, Any] = {}
        for param, topic in zip(sig.indexed_params, log.topics[1:]):
            word = _hex_to_bytes(topic)
            if len(word) != 32:
                raise DecodeAnomaly(f"topic for {param.name!r} is {len(word)} bytes, expected 32")
            values[param.name] = _decode_indexed(param, word)

        data_params = sig.data_params
        if data_params:
            decoded = abi_decode([p.type for p in data_params], _hex_to_bytes(log.data))
            for param, value in zip(data_params, decoded):
                values[param.name] = _normalize(param.type, value)

        # Declaration order, indexed and non-indexed interleaved as declared
        return sig.name, {p.name: values[p.name] for p in sig.params}


def unknown_event(log: LogRecord) -> DecodedEvent:
    return DecodedEvent(
        contract_address=log.address,
        name=UNKNOWN_EVENT,
        args=None,
        raw_log=log,
        block_number=log.block_number,
        log_index=log.log_index,
        transaction_hash=log.transaction_hash,
    )


def _is_dynamic(abi_type: str) -> bool:
    return abi_type in ("string", "bytes") or abi_type.endswith("]")


def _decode_indexed(param: EventParam, word: bytes) -> Any:
    if _is_dynamic(param.type):
        # Indexed dynamic values are stored as their keccak hash only
        return "0x" + word.hex()
    (value,) = abi_decode([param.type], word)
    return _normalize(param.type, value)


def _normalize(abi_type: str, value: Any) -> Any:
    """Checksum addresses, hex-encode byte strings, recurse into arrays."""
    if abi_type.endswith("]"):
        inner = abi_type[: abi_type.rindex("[")]
        return [_normalize(inner, v) for v in value]
    if abi_type == "address":
        return to_checksum_address(value)
    if isinstance(value, bytes):
        return "0x" + value.hex()
    return value


def _hex_to_bytes(value: str) -> bytes:
    if value.startswith(("0x", "0X")):
        value = value[2:]
    return bytes.fromhex(value)
