"""
Shared fixtures: temporary DuckDB databases and transactions signed with a
throwaway key, so decoded senders and hashes can be checked against eth_account.
"""

from __future__ import annotations

import base64
import logging

import pytest
from eth_abi import encode as abi_encode
from eth_account import Account
from web3 import Web3

from evmdecoder.config import get_settings
from evmdecoder.labels.signatures import SignatureResolver, function_selector
from evmdecoder.models.schema import LogEntry, PendingTransaction
from evmdecoder.storage.database import get_connection
from evmdecoder.tokens.constants import TRANSFER_TOPIC

TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
RECIPIENT = Web3.to_checksum_address("0x" + "ab" * 20)
TOKEN = "0x" + "cd" * 20


@pytest.fixture(autouse=True)
def configure_logging():
    logging.basicConfig(
        level=logging.DEBUG,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    yield


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Keep tests off the real database and the network."""
    monkeypatch.setenv("DUCKDB_PATH", str(tmp_path / "settings.duckdb"))
    monkeypatch.setenv("SIGNATURE_LOOKUP_ENABLED", "false")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def conn(tmp_path):
    c = get_connection(tmp_path / "evm.duckdb")
    yield c
    c.close()


@pytest.fixture
def account():
    return Account.from_key(TEST_KEY)


@pytest.fixture
def sender(account) -> str:
    return account.address.lower()


@pytest.fixture
def sign_tx(account):
    """Sign a transaction and return its raw envelope bytes.

    Defaults describe a legacy EIP-155 transfer; pass a key with value None to
    drop it (e.g. to=None for a contract creation).
    """

    def _sign(**overrides) -> bytes:
        tx = {
            "nonce": 0,
            "gas": 21000,
            "gasPrice": 10**9,
            "to": RECIPIENT,
            "value": 1,
            "data": "0x",
            "chainId": 1,
        }
        tx.update(overrides)
        tx = {k: v for k, v in tx.items() if v is not None}
        return bytes(account.sign_transaction(tx).raw_transaction)

    return _sign


@pytest.fixture
def make_pending():
    def _make(
        tx_id: str,
        raw: bytes | None,
        height: int | None = 100,
        response_data: str | None = None,
        gas_used: int | None = None,
    ) -> PendingTransaction:
        return PendingTransaction(
            tx_id=tx_id,
            height=height,
            raw_bytes=base64.b64encode(raw).decode() if raw is not None else None,
            response_data=response_data,
            gas_used=gas_used,
        )

    return _make


@pytest.fixture
def resolver():
    return SignatureResolver(enabled=False)


def address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address.lower()[2:]


@pytest.fixture
def erc20_transfer_log():
    def _log(from_addr: str, to_addr: str, amount: int, log_index: int = 0, token: str = TOKEN) -> LogEntry:
        return LogEntry(
            log_index=log_index,
            address=token,
            topics=[TRANSFER_TOPIC, address_topic(from_addr), address_topic(to_addr)],
            data="0x" + abi_encode(["uint256"], [amount]).hex(),
        )

    return _log


@pytest.fixture
def transfer_calldata():
    def _calldata(to_addr: str, amount: int) -> str:
        selector = function_selector("transfer(address,uint256)")
        return selector + abi_encode(["address", "uint256"], [to_addr, amount]).hex()

    return _calldata
