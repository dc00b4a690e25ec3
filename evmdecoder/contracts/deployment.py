"""Contract-creation provenance: CREATE address derivation and backfill."""

from __future__ import annotations

import logging

import duckdb
import pandas as pd
import rlp
from tqdm import tqdm
from web3 import Web3

from evmdecoder.models.schema import Contract, DecodedTransaction, TxStatus

logger = logging.getLogger(__name__)


def derive_contract_address(sender: str, nonce: int) -> str:
    """CREATE address: last 20 bytes of keccak(rlp([sender, nonce])). Lowercase hex."""
    sender_bytes = bytes.fromhex(sender[2:] if sender.startswith("0x") else sender)
    if len(sender_bytes) != 20:
        raise ValueError(f"sender must be 20 bytes, got {len(sender_bytes)}")
    digest = bytes(Web3.keccak(rlp.encode([sender_bytes, nonce])))
    return "0x" + digest[12:].hex()


def bytecode_hash(init_code: str | None) -> str | None:
    if not init_code or init_code == "0x":
        return None
    return "0x" + bytes(Web3.keccak(hexstr=init_code)).hex()


def track_deployment(tx: DecodedTransaction, height: int | None = None) -> Contract | None:
    """Contract row for a successful creation transaction; stamps tx.contract_address."""
    if tx.recipient is not None or tx.status != TxStatus.SUCCESS or not tx.sender:
        return None

    address = derive_contract_address(tx.sender, tx.nonce)
    tx.contract_address = address
    logger.info(f"Contract deployed: {address} by {tx.sender.lower()}")
    return Contract(
        address=address,
        creator=tx.sender.lower(),
        creation_tx=tx.tx_id,
        creation_height=height,
        bytecode_hash=bytecode_hash(tx.data),
    )


def backfill_contracts(conn: duckdb.DuckDBPyConnection, progress: bool = True) -> dict[str, int]:
    """Derive contracts for decoded creation transactions that have none yet."""
    from evmdecoder.storage.database import get_undeployed_creations, upsert_contract, set_contract_address

    df = get_undeployed_creations(conn)
    counts = {"inserted": 0, "skipped": 0, "errors": 0}

    for _, row in tqdm(df.iterrows(), total=len(df), desc="Backfilling contracts", disable=not progress):
        tx = DecodedTransaction(
            tx_id=row["tx_id"],
            hash=row["hash"],
            sender=row["sender"],
            nonce=int(row["nonce"]),
            data=row["data"] or "0x",
            status=TxStatus.SUCCESS,
        )
        height = None if pd.isna(row["height"]) else int(row["height"])
        try:
            contract = track_deployment(tx, height)
        except ValueError as e:
            logger.warning(f"Cannot derive contract for {tx.tx_id}: {e}")
            counts["errors"] += 1
            continue
        if contract is None:
            continue

        conn.begin()
        try:
            inserted = upsert_contract(conn, contract)
            set_contract_address(conn, tx.tx_id, contract.address)
            conn.commit()
        except duckdb.Error:
            conn.rollback()
            raise
        counts["inserted" if inserted else "skipped"] += 1

    logger.info(f"Contract backfill: {counts['inserted']} inserted, {counts['skipped']} already known")
    return counts
