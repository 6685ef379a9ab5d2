"""
Owned-token enumeration for ERC-721 contracts without the enumerable
extension.

Probes ownerOf(id) for consecutive ids starting at `start`, at most
`max_tokens` of them. A reverted ownerOf (TokenNotFoundError) ends the
scan. Transient RPC failures are retried with exponential backoff and,
once retries are exhausted, propagate; they never count as end of range.

With a metadata client, each owned token's tokenURI JSON is fetched through
the IPFS gateway. Metadata is best effort: a failed fetch leaves it None and
the scan carries on.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from evtrace.exceptions import CallRevertedError, FetchFailedError, TokenNotFoundError
from evtrace.fetcher import normalize_address
from evtrace.models import NftMetadata, OwnedToken, OwnershipScan
from evtrace.token import TokenReader

logger = logging.getLogger(__name__)

IPFS_SCHEME = "ipfs://"
IPFS_GATEWAY = "https://ipfs.io/ipfs/"

END_NOT_FOUND = "not_found"
END_UPPER_BOUND = "upper_bound"

T = TypeVar("T")


def gateway_uri(uri: str | None) -> str | None:
    """ipfs://<cid>/<path> → https://ipfs.io/ipfs/<cid>/<path>; other URIs unchanged."""
    if uri and uri.startswith(IPFS_SCHEME):
        return IPFS_GATEWAY + uri[len(IPFS_SCHEME):]
    return uri


async def fetch_token_metadata(client: httpx.AsyncClient, uri: str | None) -> NftMetadata | None:
    """
    GET the metadata JSON behind a tokenURI and rewrite its image to the gateway.

    Returns None when there is no URI, the request fails, or the body is not
    a JSON object.
    """
    url = gateway_uri(uri)
    if not url:
        return None

    try:
        response = await client.get(url)
        response.raise_for_status()
        body: Any = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Metadata fetch failed for %s: %s", url, e)
        return None

    if not isinstance(body, dict):
        logger.warning("Metadata at %s is not a JSON object", url)
        return None

    attributes = body.get("attributes")
    return NftMetadata(
        name=_text(body.get("name")),
        description=_text(body.get("description")),
        image=gateway_uri(_text(body.get("image"))),
        attributes=tuple(attributes) if isinstance(attributes, list) else (),
    )


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) else None


async def scan_owned_tokens(
    reader: TokenReader,
    contract: str,
    owner: str,
    max_tokens: int = 50,
    start: int = 0,
    attempts: int = 3,
    retry_wait: float = 0.5,
    metadata_client: httpx.AsyncClient | None = None,
) -> OwnershipScan:
    """
    Enumerate token ids owned by `owner`.

    Returns:
        OwnershipScan with end_reason "not_found" when a missing id ended the
        scan, or "upper_bound" when max_tokens ids were probed.

    Raises:
        InvalidAddressError: contract or owner malformed.
        FetchFailedError: A read still failed after `attempts` tries.
    """
    contract = normalize_address(contract)
    owner = normalize_address(owner)
    if max_tokens < 0 or start < 0 or attempts < 1:
        raise ValueError("max_tokens and start must be >= 0, attempts >= 1")

    async def retried(fn: Callable[[], Awaitable[T]]) -> T:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(FetchFailedError),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=retry_wait, max=10),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await fn()
        raise AssertionError("unreachable")

    tokens: list[OwnedToken] = []
    end_reason = END_UPPER_BOUND
    scanned = 0

    for token_id in range(start, start + max_tokens):
        try:
            # TokenNotFoundError is a DataError, so it is never retried
            token_owner = await retried(lambda: reader.owner_of(contract, token_id))
        except TokenNotFoundError:
            end_reason = END_NOT_FOUND
            break
        scanned += 1

        if token_owner.lower() != owner.lower():
            continue

        uri = await _read_token_uri(reader, contract, token_id, retried)
        metadata = None
        if metadata_client is not None:
            metadata = await fetch_token_metadata(metadata_client, uri)
        tokens.append(
            OwnedToken(
                token_id=token_id,
                owner=token_owner,
                token_uri=uri,
                gateway_uri=gateway_uri(uri),
                metadata=metadata,
            )
        )

    logger.info(
        "Scanned %d ids on %s: %d owned by %s (%s)",
        scanned, contract, len(tokens), owner, end_reason,
    )
    return OwnershipScan(
        contract=contract, owner=owner, scanned=scanned, end_reason=end_reason, tokens=tokens
    )


async def _read_token_uri(reader, contract, token_id, retried) -> str | None:
    async def read() -> str | None:
        try:
            return await reader.token_uri(contract, token_id)
        except CallRevertedError:
            # Contracts without URI storage revert here; ownership still counts
            logger.debug("tokenURI(%d) reverted on %s", token_id, contract)
            return None

    return await retried(read)
