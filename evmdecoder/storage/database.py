"""DuckDB storage layer for decoded EVM data.

`raw_evm_transactions` is written by the ingestion engine; everything else is
owned by the decode pipeline. A transaction is pending while it has no row in
`evm_transactions`, so the terminal write is also what removes it from the
pending set.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

import duckdb
import pandas as pd

from evmdecoder.config import get_settings
from evmdecoder.models.schema import (
    Contract,
    DecodedTransaction,
    DecodeResult,
    PendingTransaction,
    Token,
    TokenStandard,
    TxStatus,
)

logger = logging.getLogger(__name__)

OUTPUT_TABLES = (
    "evm_transactions",
    "evm_logs",
    "evm_token_transfers",
    "evm_tokens",
    "evm_contracts",
)


def get_connection(path: Path | str | None = None) -> duckdb.DuckDBPyConnection:
    """Get a DuckDB connection, creating tables if needed."""
    if path is None:
        path = get_settings().duckdb_path
    if str(path) != ":memory:":
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = duckdb.connect(str(path))
    _create_tables(conn)
    return conn


def _create_tables(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS raw_evm_transactions (
            tx_id VARCHAR PRIMARY KEY,
            height BIGINT,
            raw_bytes VARCHAR,
            response_data VARCHAR,
            gas_used BIGINT,
            ingested_at TIMESTAMP DEFAULT current_timestamp
        )
    """)
    # gas/value/nonce columns are decimal strings: uint256 does not fit BIGINT
    conn.execute("""
        CREATE TABLE IF NOT EXISTS evm_transactions (
            tx_id VARCHAR PRIMARY KEY,
            hash VARCHAR NOT NULL UNIQUE,
            sender VARCHAR NOT NULL,
            recipient VARCHAR,
            nonce VARCHAR NOT NULL,
            gas_limit VARCHAR NOT NULL,
            gas_price VARCHAR NOT NULL,
            max_fee_per_gas VARCHAR,
            max_priority_fee_per_gas VARCHAR,
            value VARCHAR NOT NULL,
            data VARCHAR,
            tx_type SMALLINT NOT NULL DEFAULT 0,
            chain_id BIGINT,
            gas_used VARCHAR,
            status SMALLINT NOT NULL DEFAULT 1,
            function_name VARCHAR,
            function_signature VARCHAR,
            decoded_args VARCHAR,
            contract_address VARCHAR,
            decoded_at TIMESTAMP DEFAULT current_timestamp
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS evm_logs (
            tx_id VARCHAR NOT NULL,
            log_index INTEGER NOT NULL,
            address VARCHAR NOT NULL,
            topics VARCHAR[] NOT NULL,
            data VARCHAR,
            PRIMARY KEY (tx_id, log_index)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS evm_tokens (
            address VARCHAR PRIMARY KEY,
            type VARCHAR NOT NULL,
            is_verified BOOLEAN DEFAULT FALSE,
            first_seen_tx VARCHAR,
            first_seen_height BIGINT
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS evm_token_transfers (
            tx_id VARCHAR NOT NULL,
            log_index INTEGER NOT NULL,
            token_address VARCHAR NOT NULL,
            from_address VARCHAR NOT NULL,
            to_address VARCHAR NOT NULL,
            value VARCHAR NOT NULL,
            PRIMARY KEY (tx_id, log_index)
        )
    """)
    conn.execute("""
        CREATE TABLE IF NOT EXISTS evm_contracts (
            address VARCHAR PRIMARY KEY,
            creator VARCHAR,
            creation_tx VARCHAR,
            creation_height BIGINT,
            bytecode_hash VARCHAR
        )
    """)
    conn.execute("""
        CREATE OR REPLACE VIEW evm_pending_decode AS
        SELECT r.tx_id, r.height, r.raw_bytes, r.response_data, r.gas_used
        FROM raw_evm_transactions r
        WHERE NOT EXISTS (SELECT 1 FROM evm_transactions ev WHERE ev.tx_id = r.tx_id)
    """)


# --- input side ---

def insert_raw_transactions(
    conn: duckdb.DuckDBPyConnection,
    rows: list[PendingTransaction],
) -> int:
    """Stand-in for the ingestion engine: enqueue raw transactions. Returns rows given."""
    if not rows:
        return 0
    conn.executemany(
        """
        INSERT OR IGNORE INTO raw_evm_transactions (tx_id, height, raw_bytes, response_data, gas_used)
        VALUES (?, ?, ?, ?, ?)
        """,
        [(r.tx_id, r.height, r.raw_bytes, r.response_data, r.gas_used) for r in rows],
    )
    return len(rows)


def _pending_from_row(row: tuple) -> PendingTransaction:
    tx_id, height, raw_bytes, response_data, gas_used = row
    return PendingTransaction(
        tx_id=tx_id,
        height=height,
        raw_bytes=raw_bytes,
        response_data=response_data,
        gas_used=gas_used,
    )


def get_pending(conn: duckdb.DuckDBPyConnection, limit: int) -> list[PendingTransaction]:
    """Up to `limit` not-yet-decoded transactions, newest first."""
    rows = conn.execute("""
        SELECT tx_id, height, raw_bytes, response_data, gas_used
        FROM evm_pending_decode
        ORDER BY height DESC NULLS LAST, tx_id
        LIMIT ?
    """, [limit]).fetchall()
    return [_pending_from_row(r) for r in rows]


def get_pending_one(conn: duckdb.DuckDBPyConnection, tx_id: str) -> PendingTransaction | None:
    row = conn.execute("""
        SELECT tx_id, height, raw_bytes, response_data, gas_used
        FROM evm_pending_decode WHERE tx_id = ?
    """, [tx_id]).fetchone()
    return _pending_from_row(row) if row else None


def is_pending(conn: duckdb.DuckDBPyConnection, tx_id: str) -> bool:
    return conn.execute(
        "SELECT 1 FROM evm_pending_decode WHERE tx_id = ?", [tx_id]
    ).fetchone() is not None


def count_pending(conn: duckdb.DuckDBPyConnection) -> int:
    result = conn.execute("SELECT COUNT(*) FROM evm_pending_decode").fetchone()
    return result[0] if result else 0


# --- output side ---

@dataclass
class PersistStats:
    written: int = 0
    sentinels: int = 0
    skipped: int = 0
    logs: int = 0
    transfers: int = 0
    contracts: int = 0


def _u256(value: int | None) -> str | None:
    return None if value is None else str(value)


def is_decoded(conn: duckdb.DuckDBPyConnection, tx_id: str) -> bool:
    return conn.execute(
        "SELECT 1 FROM evm_transactions WHERE tx_id = ?", [tx_id]
    ).fetchone() is not None


def _hash_owner(conn: duckdb.DuckDBPyConnection, tx_hash: str) -> str | None:
    row = conn.execute("SELECT tx_id FROM evm_transactions WHERE hash = ?", [tx_hash]).fetchone()
    return row[0] if row else None


def _insert_transaction(conn: duckdb.DuckDBPyConnection, tx: DecodedTransaction) -> None:
    conn.execute("""
        INSERT OR IGNORE INTO evm_transactions (
            tx_id, hash, sender, recipient, nonce, gas_limit, gas_price,
            max_fee_per_gas, max_priority_fee_per_gas, value, data, tx_type,
            chain_id, gas_used, status, function_name, function_signature,
            decoded_args, contract_address
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, [
        tx.tx_id,
        tx.hash,
        tx.sender,
        tx.recipient,
        _u256(tx.nonce),
        _u256(tx.gas_limit),
        _u256(tx.gas_price),
        _u256(tx.max_fee_per_gas),
        _u256(tx.max_priority_fee_per_gas),
        _u256(tx.value),
        tx.data,
        tx.tx_type,
        tx.chain_id,
        _u256(tx.gas_used),
        int(tx.status),
        tx.function_name,
        tx.function_signature,
        json.dumps(tx.decoded_args) if tx.decoded_args is not None else None,
        tx.contract_address,
    ])


def upsert_token(conn: duckdb.DuckDBPyConnection, token: Token) -> str:
    """Insert if absent, upgrade the type if the new evidence is stronger.

    Returns 'inserted', 'upgraded' or 'unchanged'. Never downgrades.
    """
    row = conn.execute("SELECT type FROM evm_tokens WHERE address = ?", [token.address]).fetchone()
    if row is None:
        conn.execute("""
            INSERT INTO evm_tokens (address, type, is_verified, first_seen_tx, first_seen_height)
            VALUES (?, ?, ?, ?, ?)
        """, [token.address, token.type.value, token.is_verified, token.first_seen_tx, token.first_seen_height])
        return "inserted"

    current = TokenStandard(row[0])
    if token.type.strength > current.strength:
        conn.execute("UPDATE evm_tokens SET type = ? WHERE address = ?", [token.type.value, token.address])
        logger.debug(f"Token {token.address} upgraded {current.value} -> {token.type.value}")
        return "upgraded"
    return "unchanged"


def upsert_contract(conn: duckdb.DuckDBPyConnection, contract: Contract) -> bool:
    """First writer owns creator/creation_tx; later writes only fill null fields.

    Returns True when a new row was inserted.
    """
    exists = conn.execute(
        "SELECT 1 FROM evm_contracts WHERE address = ?", [contract.address]
    ).fetchone()
    if exists is None:
        conn.execute("""
            INSERT INTO evm_contracts (address, creator, creation_tx, creation_height, bytecode_hash)
            VALUES (?, ?, ?, ?, ?)
        """, [
            contract.address,
            contract.creator,
            contract.creation_tx,
            contract.creation_height,
            contract.bytecode_hash,
        ])
        return True

    conn.execute("""
        UPDATE evm_contracts
        SET creation_height = COALESCE(creation_height, ?),
            bytecode_hash = COALESCE(bytecode_hash, ?)
        WHERE address = ?
    """, [contract.creation_height, contract.bytecode_hash, contract.address])
    return False


def set_contract_address(conn: duckdb.DuckDBPyConnection, tx_id: str, address: str) -> None:
    conn.execute("""
        UPDATE evm_transactions SET contract_address = ?
        WHERE tx_id = ? AND contract_address IS NULL
    """, [address, tx_id])


def _write_result(conn: duckdb.DuckDBPyConnection, result: DecodeResult, stats: PersistStats) -> None:
    tx = result.transaction
    if is_decoded(conn, tx.tx_id):
        stats.skipped += 1
        return

    if not tx.is_sentinel:
        owner = _hash_owner(conn, tx.hash)
        if owner is not None:
            logger.warning(f"Hash {tx.hash} of {tx.tx_id} already decoded as {owner}; writing sentinel")
            result = DecodeResult.sentinel(tx.tx_id, result.height)
            tx = result.transaction

    _insert_transaction(conn, tx)
    if tx.is_sentinel:
        stats.sentinels += 1
        return
    stats.written += 1

    if result.logs:
        conn.executemany(
            "INSERT OR IGNORE INTO evm_logs (tx_id, log_index, address, topics, data) VALUES (?, ?, ?, ?, ?)",
            [(tx.tx_id, log.log_index, log.address, log.topics, log.data) for log in result.logs],
        )
        stats.logs += len(result.logs)

    for token in result.tokens:
        upsert_token(conn, token)

    if result.transfers:
        conn.executemany(
            """
            INSERT OR IGNORE INTO evm_token_transfers
                (tx_id, log_index, token_address, from_address, to_address, value)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            [
                (tx.tx_id, t.log_index, t.token_address, t.from_address, t.to_address, t.value)
                for t in result.transfers
            ],
        )
        stats.transfers += len(result.transfers)

    if result.contract is not None:
        upsert_contract(conn, result.contract)
        stats.contracts += 1


def persist_results(conn: duckdb.DuckDBPyConnection, results: list[DecodeResult]) -> PersistStats:
    """Write a set of decode results as one transaction; all or nothing.

    Transactions already present are skipped (insert-if-absent), so a retry or
    a concurrent writer that got there first turns the write into a no-op.
    """
    stats = PersistStats()
    conn.begin()
    try:
        for result in results:
            _write_result(conn, result, stats)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return stats


# --- read helpers ---

def _int_or_none(value: str | None) -> int | None:
    return None if value is None else int(value)


def get_transaction(conn: duckdb.DuckDBPyConnection, tx_id: str) -> DecodedTransaction | None:
    """Load a decoded transaction back into its model."""
    cur = conn.execute("SELECT * FROM evm_transactions WHERE tx_id = ?", [tx_id])
    row = cur.fetchone()
    if row is None:
        return None
    rec = dict(zip([d[0] for d in cur.description], row))
    return DecodedTransaction(
        tx_id=rec["tx_id"],
        hash=rec["hash"],
        sender=rec["sender"],
        recipient=rec["recipient"],
        nonce=int(rec["nonce"]),
        gas_limit=int(rec["gas_limit"]),
        gas_price=int(rec["gas_price"]),
        max_fee_per_gas=_int_or_none(rec["max_fee_per_gas"]),
        max_priority_fee_per_gas=_int_or_none(rec["max_priority_fee_per_gas"]),
        value=int(rec["value"]),
        data=rec["data"] or "0x",
        tx_type=rec["tx_type"],
        chain_id=rec["chain_id"],
        gas_used=_int_or_none(rec["gas_used"]),
        status=TxStatus(rec["status"]),
        function_name=rec["function_name"],
        function_signature=rec["function_signature"],
        decoded_args=json.loads(rec["decoded_args"]) if rec["decoded_args"] else None,
        contract_address=rec["contract_address"],
    )


def get_logs(conn: duckdb.DuckDBPyConnection, tx_id: str) -> pd.DataFrame:
    return conn.execute(
        "SELECT * FROM evm_logs WHERE tx_id = ? ORDER BY log_index", [tx_id]
    ).fetchdf()


def get_token_transfers(conn: duckdb.DuckDBPyConnection, tx_id: str | None = None) -> pd.DataFrame:
    query = "SELECT * FROM evm_token_transfers"
    params: list = []
    if tx_id is not None:
        query += " WHERE tx_id = ?"
        params.append(tx_id)
    return conn.execute(query + " ORDER BY tx_id, log_index", params).fetchdf()


def get_tokens(conn: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    return conn.execute("SELECT * FROM evm_tokens ORDER BY address").fetchdf()


def get_contracts(conn: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    return conn.execute("SELECT * FROM evm_contracts ORDER BY address").fetchdf()


def get_undeployed_creations(conn: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    """Successful creation transactions without a contract row yet."""
    return conn.execute("""
        SELECT et.tx_id, et.hash, et.sender, et.nonce, et.data, r.height
        FROM evm_transactions et
        LEFT JOIN raw_evm_transactions r ON r.tx_id = et.tx_id
        WHERE et.recipient IS NULL
          AND et.status = 1
          AND et.sender <> ''
          AND (et.contract_address IS NULL
               OR NOT EXISTS (SELECT 1 FROM evm_contracts c WHERE c.address = et.contract_address))
        ORDER BY r.height ASC NULLS LAST
    """).fetchdf()


def table_counts(conn: duckdb.DuckDBPyConnection) -> dict[str, int]:
    counts = {t: conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0] for t in OUTPUT_TABLES}
    counts["pending"] = count_pending(conn)
    counts["decode_failed"] = conn.execute(
        "SELECT COUNT(*) FROM evm_transactions WHERE status = ?", [int(TxStatus.DECODE_FAILED)]
    ).fetchone()[0]
    return counts
