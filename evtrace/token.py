"""
Read-only token contract calls.

Every call is a plain eth_call: 4-byte selector + ABI-encoded arguments,
result ABI-decoded. Covers the ERC-20 metadata/allowance/balance reads and
the ERC-721 ownerOf/tokenURI reads used by owned-token enumeration.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

from evtrace.exceptions import (
    CallRevertedError,
    FetchFailedError,
    MetadataUnavailableError,
    TokenNotFoundError,
)
from evtrace.fetcher import normalize_address
from evtrace.models import TokenMetadata
from evtrace.rpc.base import Provider

logger = logging.getLogger(__name__)


def encode_call(signature: str, arg_types: list[str] | None = None, args: list[Any] | None = None) -> bytes:
    """Selector for `signature` followed by the ABI-encoded args."""
    selector = function_signature_to_4byte_selector(signature)
    if not arg_types:
        return selector
    return selector + abi_encode(arg_types, args or [])


class TokenReader:
    """ERC-20 / ERC-721 view calls over a Provider."""

    def __init__(self, provider: Provider) -> None:
        self._provider = provider

    async def decimals(self, token: str) -> int:
        return await self._call_single(token, "decimals()", "uint8")

    async def symbol(self, token: str) -> str:
        return await self._call_text(token, "symbol()")

    async def name(self, token: str) -> str:
        return await self._call_text(token, "name()")

    async def metadata(self, token: str) -> TokenMetadata:
        """
        Read decimals, symbol and name concurrently.

        Raises:
            MetadataUnavailableError: Any of the three reads failed.
        """
        token = normalize_address(token)
        results = await asyncio.gather(
            self.decimals(token), self.symbol(token), self.name(token), return_exceptions=True
        )
        for field_name, result in zip(("decimals", "symbol", "name"), results):
            if isinstance(result, BaseException):
                raise MetadataUnavailableError(
                    f"Could not read {field_name} of {token}: {result}",
                    details={"token": token, "field": field_name},
                ) from result

        decimals, symbol, name = results
        return TokenMetadata(address=token, name=name, symbol=symbol, decimals=decimals)

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        return await self._call_single(
            token,
            "allowance(address,address)",
            "uint256",
            ["address", "address"],
            [normalize_address(owner), normalize_address(spender)],
        )

    async def balance_of(self, token: str, owner: str) -> int:
        return await self._call_single(
            token, "balanceOf(address)", "uint256", ["address"], [normalize_address(owner)]
        )

    async def owner_of(self, token: str, token_id: int) -> str:
        """
        Raises:
            TokenNotFoundError: ownerOf reverted (token id does not exist).
            FetchFailedError: Any other RPC failure.
        """
        try:
            owner = await self._call_single(
                token, "ownerOf(uint256)", "address", ["uint256"], [token_id]
            )
        except CallRevertedError as e:
            raise TokenNotFoundError(
                f"Token {token_id} does not exist on {token}",
                details={"token": token, "token_id": token_id},
            ) from e
        return to_checksum_address(owner)

    async def token_uri(self, token: str, token_id: int) -> str:
        return await self._call_single(
            token, "tokenURI(uint256)", "string", ["uint256"], [token_id]
        )

    # ──────────────────────────────────────────────────────────────
    # Private helpers
    # ──────────────────────────────────────────────────────────────

    async def _call(self, token: str, data: bytes) -> bytes:
        return await self._provider.call(normalize_address(token), data)

    async def _call_single(
        self,
        token: str,
        signature: str,
        result_type: str,
        arg_types: list[str] | None = None,
        args: list[Any] | None = None,
    ) -> Any:
        raw = await self._call(token, encode_call(signature, arg_types, args))
        try:
            (value,) = abi_decode([result_type], raw)
        except DecodingError as e:
            raise FetchFailedError(
                f"{signature} on {token} returned undecodable data",
                details={"token": token, "call": signature},
            ) from e
        return value

    async def _call_text(self, token: str, signature: str) -> str:
        """string-returning call; older tokens (e.g. MKR) return bytes32 instead."""
        raw = await self._call(token, encode_call(signature))
        try:
            (value,) = abi_decode(["string"], raw)
            return value
        except DecodingError:
            pass
        if len(raw) == 32:
            return raw.rstrip(b"\x00").decode("utf-8", errors="replace")
        raise FetchFailedError(
            f"{signature} on {token} returned undecodable data",
            details={"token": token, "call": signature},
        )
