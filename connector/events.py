"""Event types and wire codec for ledger transfers."""

from dataclasses import dataclass
from typing import Any
import json

UINT16_MAX = 2**16 - 1
UINT32_MAX = 2**32 - 1
UINT64_MAX = 2**64 - 1
UINT128_MAX = 2**128 - 1
UINT128_DIGITS = len(str(UINT128_MAX))


class CodecError(Exception):
    """Base class for records the codec refuses to convert."""


class AmountOverflowError(CodecError):
    """Raised when a transfer amount does not fit in 64 bits."""

    def __init__(self, transfer_id: str, amount: int):
        super().__init__(f"Transfer {transfer_id} amount {amount} exceeds uint64")
        self.transfer_id = transfer_id
        self.amount = amount


class MalformedRecordError(CodecError):
    """Raised when a native record or wire message is missing or has bad fields."""


def _check_uint(name: str, value: Any, maximum: int) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedRecordError(f"{name} must be an integer, got {value!r}")
    if value < 0 or value > maximum:
        raise MalformedRecordError(f"{name} out of range: {value}")
    return value


def _parse_id(name: str, value: Any) -> str:
    """Validate a decimal-string 128-bit identifier and return it canonicalized."""
    if not isinstance(value, str) or not value.isdigit() or not value.isascii():
        raise MalformedRecordError(f"{name} must be a decimal string, got {value!r:.64}")
    if len(value) > UINT128_DIGITS:
        raise MalformedRecordError(f"{name} has {len(value)} digits, more than a 128-bit id")
    return str(_check_uint(name, int(value), UINT128_MAX))


@dataclass(frozen=True)
class TransferEvent:
    """
    Canonical representation of a ledger transfer.

    Account and transfer identifiers are 128-bit in the ledger, so they are
    carried as decimal strings. `source_timestamp` is the ledger's own
    monotonic timestamp; it drives the extractor's high-water mark and is not
    part of the wire message.
    """

    id: str
    debit_account_id: str
    credit_account_id: str
    amount: int
    ledger: int
    code: int
    source_timestamp: int = 0

    @property
    def key(self) -> bytes:
        """Partition key: every record for one transfer lands on one partition."""
        return self.id.encode("utf-8")

    @classmethod
    def from_ledger(cls, record: Any) -> "TransferEvent":
        """
        Convert a native ledger transfer (TigerBeetle `Transfer`).

        Args:
            record: Object exposing id, debit_account_id, credit_account_id,
                amount, ledger, code and timestamp attributes

        Raises:
            AmountOverflowError: amount does not fit in 64 bits
            MalformedRecordError: any other field is missing or out of range
        """
        try:
            raw_id = record.id
            debit = record.debit_account_id
            credit = record.credit_account_id
            amount = record.amount
            ledger = record.ledger
            code = record.code
            timestamp = record.timestamp
        except AttributeError as e:
            raise MalformedRecordError(f"Ledger record missing field: {e}") from e

        transfer_id = str(_check_uint("id", raw_id, UINT128_MAX))
        _check_uint("amount", amount, UINT128_MAX)
        if amount > UINT64_MAX:
            raise AmountOverflowError(transfer_id, amount)

        return cls(
            id=transfer_id,
            debit_account_id=str(_check_uint("debit_account_id", debit, UINT128_MAX)),
            credit_account_id=str(_check_uint("credit_account_id", credit, UINT128_MAX)),
            amount=amount,
            ledger=_check_uint("ledger", ledger, UINT32_MAX),
            code=_check_uint("code", code, UINT16_MAX),
            source_timestamp=_check_uint("timestamp", timestamp, UINT64_MAX),
        )

    def to_dict(self) -> dict:
        """Wire field names, in wire order."""
        return {
            "ID": self.id,
            "DebitAccountID": self.debit_account_id,
            "CreditAccountID": self.credit_account_id,
            "Amount": self.amount,
            "Ledger": self.ledger,
            "Code": self.code,
        }

    def to_json(self) -> str:
        """Serialize to the compact wire JSON."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, data: Any) -> "TransferEvent":
        """
        Deserialize a wire message.

        Args:
            data: JSON text as str or UTF-8 bytes

        Raises:
            AmountOverflowError: Amount does not fit in 64 bits
            MalformedRecordError: the message is not a valid transfer
        """
        try:
            if isinstance(data, (bytes, bytearray)):
                data = data.decode("utf-8")
            parsed = json.loads(data)
        except (UnicodeDecodeError, ValueError, TypeError) as e:
            raise MalformedRecordError(f"Invalid transfer message: {e}") from e

        if not isinstance(parsed, dict):
            raise MalformedRecordError(f"Transfer message must be an object, got {type(parsed).__name__}")

        missing = [k for k in ("ID", "DebitAccountID", "CreditAccountID", "Amount", "Ledger", "Code")
                   if k not in parsed]
        if missing:
            raise MalformedRecordError(f"Transfer message missing fields: {', '.join(missing)}")

        transfer_id = _parse_id("ID", parsed["ID"])
        amount = parsed["Amount"]
        if isinstance(amount, int) and not isinstance(amount, bool) and amount > UINT64_MAX:
            raise AmountOverflowError(transfer_id, amount)

        return cls(
            id=transfer_id,
            debit_account_id=_parse_id("DebitAccountID", parsed["DebitAccountID"]),
            credit_account_id=_parse_id("CreditAccountID", parsed["CreditAccountID"]),
            amount=_check_uint("Amount", amount, UINT64_MAX),
            ledger=_check_uint("Ledger", parsed["Ledger"], UINT32_MAX),
            code=_check_uint("Code", parsed["Code"], UINT16_MAX),
        )
