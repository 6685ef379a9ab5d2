"""
Event signature registry.

The registry maps topic0 (keccak-256 of the canonical signature) to the
known EventSignatures with that hash. It is built once from human-readable
ABI fragments and injected into the fetcher and decoder; it is never
mutated afterwards.

ERC-20 and ERC-721 Transfer/Approval share a topic0 and differ only in how
many parameters are indexed, so a topic0 may map to several variants. The
decoder picks the variant whose topic count matches the log.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from types import MappingProxyType

from evtrace.models import EventParam, EventSignature

DEFAULT_EVENT_FRAGMENTS: tuple[str, ...] = (
    "event Transfer(address indexed from, address indexed to, uint256 value)",
    "event Approval(address indexed owner, address indexed spender, uint256 value)",
)

ERC721_EVENT_FRAGMENTS: tuple[str, ...] = (
    "event Transfer(address indexed from, address indexed to, uint256 indexed tokenId)",
    "event Approval(address indexed owner, address indexed approved, uint256 indexed tokenId)",
    "event ApprovalForAll(address indexed owner, address indexed operator, bool approved)",
)

SIGNATURE_SETS: dict[str, tuple[str, ...]] = {
    "erc20": DEFAULT_EVENT_FRAGMENTS,
    "erc721": ERC721_EVENT_FRAGMENTS,
    "all": DEFAULT_EVENT_FRAGMENTS + ERC721_EVENT_FRAGMENTS,
}

_FRAGMENT_RE = re.compile(r"^\s*(?:event\s+)?([A-Za-z_]\w*)\s*\((.*)\)\s*(?:anonymous\s*)?;?\s*$")
_TYPE_RE = re.compile(r"^(address|bool|string|bytes\d*|u?int\d*)(\[\d*\])*$")


def parse_event_signature(fragment: str) -> EventSignature:
    """
    Parse a human-readable event fragment.

    'event Transfer(address indexed from, address indexed to, uint256 value)'
    → EventSignature(name="Transfer", params=(from, to, value))

    Unnamed parameters get positional names (arg0, arg1, ...). Tuple types
    are not supported.

    Raises:
        ValueError: Fragment is not a well-formed event declaration.
    """
    m = _FRAGMENT_RE.match(fragment)
    if not m:
        raise ValueError(f"Not an event fragment: {fragment!r}")
    name, body = m.group(1), m.group(2).strip()

    params: list[EventParam] = []
    if body:
        for i, part in enumerate(body.split(",")):
            tokens = part.split()
            if not tokens:
                raise ValueError(f"Empty parameter in {fragment!r}")
            param_type = _normalize_type(tokens[0])
            rest = tokens[1:]
            indexed = False
            if rest and rest[0] == "indexed":
                indexed = True
                rest = rest[1:]
            if len(rest) > 1:
                raise ValueError(f"Cannot parse parameter {part.strip()!r} in {fragment!r}")
            param_name = rest[0] if rest else f"arg{i}"
            params.append(EventParam(name=param_name, type=param_type, indexed=indexed))

    names = [p.name for p in params]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate parameter names in {fragment!r}")
    if sum(p.indexed for p in params) > 3:
        raise ValueError(f"At most 3 indexed parameters allowed: {fragment!r}")

    return EventSignature(name=name, params=tuple(params))


def _normalize_type(raw: str) -> str:
    if not _TYPE_RE.match(raw):
        raise ValueError(f"Unsupported ABI type: {raw!r}")
    # Bare uint/int are aliases of the 256-bit forms and hash that way
    return re.sub(r"^(u?int)(?=\[|$)", r"\g<1>256", raw)


class SignatureRegistry:
    """Read-only topic0 → signature variants lookup."""

    def __init__(self, signatures: Iterable[EventSignature]) -> None:
        by_topic: dict[str, list[EventSignature]] = {}
        for sig in signatures:
            variants = by_topic.setdefault(sig.topic0, [])
            if sig not in variants:
                variants.append(sig)
        self._by_topic = MappingProxyType({t: tuple(v) for t, v in by_topic.items()})

    def __len__(self) -> int:
        return sum(len(v) for v in self._by_topic.values())

    def __iter__(self) -> Iterator[EventSignature]:
        for variants in self._by_topic.values():
            yield from variants

    def __contains__(self, topic0: object) -> bool:
        return isinstance(topic0, str) and topic0.lower() in self._by_topic

    def lookup(self, topic0: str) -> tuple[EventSignature, ...]:
        return self._by_topic.get(topic0.lower(), ())

    def match(self, topic0: str, topic_count: int) -> EventSignature | None:
        """Return the variant for topic0 whose indexed layout fits topic_count."""
        for sig in self.lookup(topic0):
            if sig.topic_count == topic_count:
                return sig
        return None

    def by_name(self, name: str) -> list[EventSignature]:
        return [sig for sig in self if sig.name == name]

    def address_positions(self) -> list[tuple[str, int]]:
        """
        (topic0, topic position) pairs where an address can appear.

        One pair per indexed address parameter; positions are 1-based topic
        slots. Variants sharing a topic0 and position collapse into one pair.
        """
        seen: list[tuple[str, int]] = []
        for sig in self:
            for pos, param in enumerate(sig.indexed_params, start=1):
                pair = (sig.topic0, pos)
                if param.type == "address" and pair not in seen:
                    seen.append(pair)
        return seen


def build_registry(fragments: Iterable[str] = DEFAULT_EVENT_FRAGMENTS) -> SignatureRegistry:
    """Parse fragments once and freeze them into a registry."""
    return SignatureRegistry(parse_event_signature(f) for f in fragments)


def registry_for(signature_set: str) -> SignatureRegistry:
    """
    Build the registry for a named signature set ("erc20", "erc721", "all").

    Raises:
        ValueError: Unknown set name.
    """
    try:
        fragments = SIGNATURE_SETS[signature_set.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown signature set {signature_set!r}. Valid: {sorted(SIGNATURE_SETS)}"
        ) from None
    return build_registry(fragments)
