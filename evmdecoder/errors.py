"""Decode error hierarchy."""


class DecodeError(Exception):
    """Base class for anything the decode pipeline refuses to parse."""


class MalformedTransaction(DecodeError):
    """The transaction envelope cannot be parsed. Terminal for the transaction."""


class UnsupportedTransactionType(MalformedTransaction):
    """The envelope carries a transaction version this codec does not handle."""

    def __init__(self, tx_type: int):
        super().__init__(f"Unsupported transaction type 0x{tx_type:02x}")
        self.tx_type = tx_type


class MalformedResponse(DecodeError):
    """The execution response bytes cannot be parsed. Non-terminal."""


class MalformedLogPayload(DecodeError):
    """A log's data payload does not match its event shape. Non-terminal."""
