"""Tests for evtrace/models.py — data shapes and wire names."""

from __future__ import annotations

from dataclasses import replace

from evtrace.decoder import EventDecoder
from evtrace.models import (
    SOURCE_CHAIN,
    ChainHistory,
    EventParam,
    EventSignature,
    NftMetadata,
    OwnedToken,
    OwnershipScan,
    TransferRecord,
)
from evtrace.signatures import build_registry

from helpers import ALICE, BOB, TRANSFER_TOPIC, make_transfer_log


def _transfer_sig() -> EventSignature:
    return EventSignature(
        name="Transfer",
        params=(
            EventParam("from", "address", indexed=True),
            EventParam("to", "address", indexed=True),
            EventParam("value", "uint256"),
        ),
    )


def test_signature_canonical_and_topic0() -> None:
    sig = _transfer_sig()
    assert sig.canonical == "Transfer(address,address,uint256)"
    assert sig.topic0 == TRANSFER_TOPIC
    assert sig.topic_count == 3
    assert [p.name for p in sig.indexed_params] == ["from", "to"]
    assert [p.name for p in sig.data_params] == ["value"]


def test_log_record_key_and_dict() -> None:
    log = make_transfer_log(ALICE, BOB, 5, block=10, log_index=2)
    assert log.key == (log.transaction_hash, 2)
    d = log.to_dict()
    assert d["blockNumber"] == 10
    assert d["logIndex"] == 2
    assert d["topics"][0] == TRANSFER_TOPIC


def test_decoded_event_to_dict_known_and_unknown() -> None:
    decoder = EventDecoder(build_registry())
    known = decoder.decode(make_transfer_log(ALICE, BOB, 5, block=10))
    d = known.to_dict()
    assert d["name"] == "Transfer"
    assert d["args"] == {"from": ALICE, "to": BOB, "value": 5}
    assert "raw" not in d

    log = make_transfer_log(ALICE, BOB, 5, block=11)
    unknown = decoder.decode(replace(log, topics=("0x" + "ee" * 32,)))
    u = unknown.to_dict()
    assert u["name"] == "unknown"
    assert "args" not in u
    assert u["raw"]["topics"] == ["0x" + "ee" * 32]


def test_transfer_record_round_trip() -> None:
    record = TransferRecord(
        id="0xabc-1",
        tx_hash="0xabc",
        from_addr=ALICE,
        to_addr=BOB,
        amount="1.5",
        token_address="0x" + "70" * 20,
        token_name="Test Token",
        token_symbol="TST",
        timestamp="2024-01-01T00:00:00+00:00",
        block_number=42,
        gas_used="51000",
        source=SOURCE_CHAIN,
        gas_price="1000000000",
        spender=BOB,
        is_delegated=True,
    )
    d = record.to_dict()
    assert d["txHash"] == "0xabc"
    assert d["from"] == ALICE
    assert d["isDelegated"] is True
    assert TransferRecord.from_dict(d) == record


def test_transfer_record_accepts_legacy_names() -> None:
    """Older persisted entries use isTransferFrom, source "blockchain" and numeric ids."""
    legacy = {
        "id": 1706906640000,
        "txHash": "0xdef",
        "from": ALICE,
        "to": BOB,
        "amount": "2.0",
        "tokenAddress": "0x" + "70" * 20,
        "tokenName": "Test Token",
        "tokenSymbol": "TST",
        "timestamp": "2024-02-02T20:44:00.000Z",
        "blockNumber": 7,
        "gasUsed": "60000",
        "spender": BOB,
        "isTransferFrom": True,
        "source": "blockchain",
    }
    record = TransferRecord.from_dict(legacy)
    assert record.id == "1706906640000"
    assert record.is_delegated is True
    assert record.source == SOURCE_CHAIN
    assert record.gas_price is None


def test_ownership_scan_to_dict() -> None:
    scan = OwnershipScan(
        contract="0xC",
        owner="0xO",
        scanned=3,
        end_reason="not_found",
        tokens=[OwnedToken(token_id=1, owner="0xO", token_uri="ipfs://cid", gateway_uri="https://ipfs.io/ipfs/cid")],
    )
    d = scan.to_dict()
    assert d["count"] == 1
    assert d["tokens"][0]["token_id"] == 1
    assert d["end_reason"] == "not_found"
    assert d["tokens"][0]["metadata"] is None


def test_owned_token_metadata_to_dict() -> None:
    token = OwnedToken(
        token_id=2,
        owner="0xO",
        metadata=NftMetadata(name="Two", image="https://ipfs.io/ipfs/cid/2.png", attributes=({"k": "v"},)),
    )
    assert token.to_dict()["metadata"] == {
        "name": "Two",
        "description": None,
        "image": "https://ipfs.io/ipfs/cid/2.png",
        "attributes": [{"k": "v"}],
    }


def test_chain_history_is_a_sequence() -> None:
    record = TransferRecord(
        id="0xabc-0",
        tx_hash="0xabc",
        from_addr=ALICE,
        to_addr=BOB,
        amount="1.0",
        token_address="0x" + "70" * 20,
        token_name="Test Token",
        token_symbol="TST",
        timestamp="2024-01-01T00:00:00+00:00",
        block_number=5,
        gas_used="0",
        source=SOURCE_CHAIN,
    )
    history = ChainHistory(records=(record,), skipped=2)
    assert len(history) == 1
    assert history[0] is record
    assert list(history) == [record]
    assert history.skipped == 2
    assert len(ChainHistory()) == 0
