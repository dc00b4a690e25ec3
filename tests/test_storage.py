"""Tests for the DuckDB storage layer."""

import pytest

from evmdecoder.models.schema import (
    Contract,
    DecodedTransaction,
    DecodeResult,
    LogEntry,
    PendingTransaction,
    Token,
    TokenStandard,
    TxStatus,
)
from evmdecoder.storage import database
from evmdecoder.storage.database import (
    count_pending,
    get_contracts,
    get_logs,
    get_pending,
    get_tokens,
    get_transaction,
    insert_raw_transactions,
    is_pending,
    persist_results,
    table_counts,
    upsert_contract,
    upsert_token,
)

TOKEN = "0x" + "cd" * 20


def _raw(tx_id: str, height: int | None = 1) -> PendingTransaction:
    return PendingTransaction(tx_id=tx_id, height=height, raw_bytes="0x00")


def _decoded(tx_id: str, **fields) -> DecodeResult:
    tx = DecodedTransaction(tx_id=tx_id, hash=fields.pop("hash", f"0xhash-{tx_id}"), sender="0x" + "aa" * 20, **fields)
    return DecodeResult(transaction=tx, height=1)


class TestPendingSet:
    def test_pending_until_written(self, conn):
        insert_raw_transactions(conn, [_raw("a"), _raw("b")])
        assert count_pending(conn) == 2

        persist_results(conn, [DecodeResult.sentinel("a")])

        assert count_pending(conn) == 1
        assert not is_pending(conn, "a")
        assert is_pending(conn, "b")

    def test_newest_first(self, conn):
        insert_raw_transactions(conn, [_raw("low", 5), _raw("high", 9), _raw("none", None)])
        assert [p.tx_id for p in get_pending(conn, 10)] == ["high", "low", "none"]
        assert [p.tx_id for p in get_pending(conn, 1)] == ["high"]

    def test_duplicate_raw_rows_ignored(self, conn):
        insert_raw_transactions(conn, [_raw("a")])
        insert_raw_transactions(conn, [_raw("a")])
        assert count_pending(conn) == 1

    def test_empty_insert(self, conn):
        assert insert_raw_transactions(conn, []) == 0


class TestPersistResults:
    def test_round_trip_keeps_uint256(self, conn):
        big = 2**256 - 1
        result = _decoded("a", value=big, gas_price=big, nonce=3, decoded_args={"arg0": "1"})
        persist_results(conn, [result])

        stored = get_transaction(conn, "a")
        assert stored.value == big
        assert stored.gas_price == big
        assert stored.nonce == 3
        assert stored.decoded_args == {"arg0": "1"}

    def test_second_write_is_a_noop(self, conn):
        persist_results(conn, [_decoded("a", value=1)])
        stats = persist_results(conn, [_decoded("a", value=999)])

        assert stats.skipped == 1
        assert stats.written == 0
        assert get_transaction(conn, "a").value == 1

    def test_sentinel_row(self, conn):
        stats = persist_results(conn, [DecodeResult.sentinel("bad")])
        stored = get_transaction(conn, "bad")

        assert stats.sentinels == 1
        assert stored.status == TxStatus.DECODE_FAILED
        assert stored.hash == "decode_failed_bad"
        assert stored.is_sentinel

    def test_duplicate_hash_becomes_sentinel(self, conn):
        persist_results(conn, [_decoded("first", hash="0xsame")])
        stats = persist_results(conn, [_decoded("second", hash="0xsame")])

        assert stats.sentinels == 1
        assert get_transaction(conn, "first").status == TxStatus.SUCCESS
        assert get_transaction(conn, "second").status == TxStatus.DECODE_FAILED

    def test_logs_are_written(self, conn):
        result = _decoded("a")
        result.logs = [LogEntry(tx_id="a", log_index=0, address=TOKEN, topics=["0x01", "0x02"], data="0xff")]
        persist_results(conn, [result])

        logs = get_logs(conn, "a")
        assert len(logs) == 1
        assert list(logs.iloc[0]["topics"]) == ["0x01", "0x02"]

    def test_failure_rolls_back_everything(self, conn, monkeypatch):
        insert_raw_transactions(conn, [_raw("a"), _raw("b")])
        calls = {"n": 0}
        real = database._insert_transaction

        def _fail_on_second(c, tx):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("disk full")
            real(c, tx)

        monkeypatch.setattr(database, "_insert_transaction", _fail_on_second)

        with pytest.raises(RuntimeError):
            persist_results(conn, [_decoded("a"), _decoded("b")])

        assert get_transaction(conn, "a") is None
        assert count_pending(conn) == 2


class TestTokenRegistry:
    def test_upgrade_never_downgrade(self, conn):
        assert upsert_token(conn, Token(address=TOKEN, type=TokenStandard.ERC20, first_seen_tx="t1")) == "inserted"
        assert upsert_token(conn, Token(address=TOKEN, type=TokenStandard.ERC721)) == "upgraded"
        assert upsert_token(conn, Token(address=TOKEN, type=TokenStandard.ERC20)) == "unchanged"
        assert upsert_token(conn, Token(address=TOKEN, type=TokenStandard.ERC1155)) == "upgraded"
        assert upsert_token(conn, Token(address=TOKEN, type=TokenStandard.ERC721)) == "unchanged"

        tokens = get_tokens(conn)
        assert len(tokens) == 1
        assert tokens.iloc[0]["type"] == "ERC1155"
        assert tokens.iloc[0]["first_seen_tx"] == "t1"


class TestContractRegistry:
    def test_first_writer_wins(self, conn):
        address = "0x" + "ee" * 20
        first = Contract(address=address, creator="0x" + "01" * 20, creation_tx="t1")
        second = Contract(
            address=address, creator="0x" + "02" * 20, creation_tx="t2",
            creation_height=9, bytecode_hash="0xabc",
        )

        assert upsert_contract(conn, first) is True
        assert upsert_contract(conn, second) is False

        row = get_contracts(conn).iloc[0]
        assert row["creator"] == "0x" + "01" * 20
        assert row["creation_tx"] == "t1"
        assert row["creation_height"] == 9
        assert row["bytecode_hash"] == "0xabc"


class TestTableCounts:
    def test_counts(self, conn):
        insert_raw_transactions(conn, [_raw("a"), _raw("b"), _raw("c")])
        persist_results(conn, [_decoded("a"), DecodeResult.sentinel("b")])

        counts = table_counts(conn)
        assert counts["evm_transactions"] == 2
        assert counts["pending"] == 1
        assert counts["decode_failed"] == 1
        assert counts["evm_logs"] == 0
