"""Pydantic v2 data models for decoded EVM records.

Integers are plain Python ints (arbitrary precision). The storage layer turns
gas/value/nonce fields into decimal strings so uint256 values survive intact.
"""

from enum import Enum, IntEnum

from pydantic import BaseModel, Field


class TxStatus(IntEnum):
    DECODE_FAILED = -1
    FAILED = 0
    SUCCESS = 1


class TokenStandard(str, Enum):
    ERC20 = "ERC20"
    ERC721 = "ERC721"
    ERC1155 = "ERC1155"

    @property
    def strength(self) -> int:
        """Classification confidence; a registry type only moves upward."""
        return _STRENGTH[self]


_STRENGTH = {TokenStandard.ERC20: 0, TokenStandard.ERC721: 1, TokenStandard.ERC1155: 2}


class PendingTransaction(BaseModel):
    """One row of the pending-decode set written by the ingestion engine."""

    tx_id: str
    height: int | None = None
    raw_bytes: str | None = Field(default=None, description="base64 or 0x-hex envelope")
    response_data: str | None = Field(default=None, description="hex TxMsgData bytes")
    gas_used: int | None = None


class DecodedTransaction(BaseModel):
    tx_id: str
    hash: str
    sender: str
    recipient: str | None = Field(default=None, description="None for contract creation")
    nonce: int = 0
    gas_limit: int = 0
    gas_price: int = 0
    # EIP-1559 fields
    max_fee_per_gas: int | None = None
    max_priority_fee_per_gas: int | None = None
    value: int = 0
    data: str = "0x"
    tx_type: int = Field(default=0, description="0=legacy, 1=EIP-2930, 2=EIP-1559")
    chain_id: int | None = None
    gas_used: int | None = None
    status: TxStatus = TxStatus.SUCCESS
    function_name: str | None = None
    function_signature: str | None = None
    decoded_args: dict[str, str] | None = None
    contract_address: str | None = None

    @classmethod
    def sentinel(cls, tx_id: str) -> "DecodedTransaction":
        """Marker row for a transaction that can never be decoded."""
        return cls(
            tx_id=tx_id,
            hash=f"decode_failed_{tx_id}",
            sender="",
            status=TxStatus.DECODE_FAILED,
        )

    @property
    def is_sentinel(self) -> bool:
        return self.status == TxStatus.DECODE_FAILED

    @property
    def is_contract_creation(self) -> bool:
        return self.recipient is None and not self.is_sentinel


class LogEntry(BaseModel):
    tx_id: str = ""
    log_index: int
    address: str
    topics: list[str] = Field(default_factory=list)
    data: str = "0x"


class TokenTransfer(BaseModel):
    tx_id: str
    log_index: int
    token_address: str
    from_address: str
    to_address: str
    value: str = Field(description="uint256 as string; ERC-1155 uses 'id:value'")


class Token(BaseModel):
    address: str
    type: TokenStandard
    is_verified: bool = False
    first_seen_tx: str | None = None
    first_seen_height: int | None = None


class Contract(BaseModel):
    address: str
    creator: str
    creation_tx: str
    creation_height: int | None = None
    bytecode_hash: str | None = None


class ExecutionResult(BaseModel):
    """Decoded MsgEthereumTxResponse."""

    logs: list[LogEntry] = Field(default_factory=list)
    gas_used: int = 0
    vm_error: str | None = None

    @property
    def failed(self) -> bool:
        return bool(self.vm_error)


class DecodeResult(BaseModel):
    """Everything one transaction contributes to the output tables."""

    transaction: DecodedTransaction
    height: int | None = None
    logs: list[LogEntry] = Field(default_factory=list)
    transfers: list[TokenTransfer] = Field(default_factory=list)
    tokens: list[Token] = Field(default_factory=list)
    contract: Contract | None = None

    @classmethod
    def sentinel(cls, tx_id: str, height: int | None = None) -> "DecodeResult":
        return cls(transaction=DecodedTransaction.sentinel(tx_id), height=height)
