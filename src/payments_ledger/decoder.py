import csv
import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, Iterator, Optional

from payments_ledger.errors import DecodeError
from payments_ledger.models import QUANTUM, Transaction, TransactionType

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("type", "client", "tx")
AMOUNT_COLUMN = "amount"
AMOUNT_TYPES = (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL)


def decode_records(lines: Iterable[str], skip_malformed: bool = False) -> Iterator[Transaction]:
    """
    Lazily decode CSV lines (header first) into Transactions.

    A malformed row raises DecodeError, which ends the stream. With
    skip_malformed the row is logged and dropped instead. A bad header is
    always fatal.
    """
    reader = csv.DictReader(lines, restval="")
    try:
        fieldnames = reader.fieldnames
    except csv.Error as e:
        raise DecodeError(f"unreadable header: {e}", line_number=1) from e
    if fieldnames is None:
        return

    header = [name.strip().lower() for name in fieldnames]
    missing = [column for column in REQUIRED_COLUMNS if column not in header]
    if missing:
        raise DecodeError(f"header is missing columns {missing}", line_number=1)

    while True:
        try:
            row = next(reader)
        except StopIteration:
            return
        except csv.Error as e:
            raise DecodeError(str(e), reader.line_num) from e

        normalized = _normalize_row(row)
        if not any(normalized.values()):
            continue

        try:
            yield parse_row(normalized, line_number=reader.line_num)
        except DecodeError as e:
            if not skip_malformed:
                raise
            logger.warning(f"Skipping malformed row {row}: {e}")


def parse_row(row: Dict[str, str], line_number: Optional[int] = None) -> Transaction:
    """Parse a normalized row (lowercase keys, stripped values) into a Transaction."""
    transaction_type_str = row.get("type", "").lower()
    try:
        transaction_type = TransactionType(transaction_type_str)
    except ValueError:
        raise DecodeError(f"unknown transaction type {transaction_type_str!r}", line_number) from None

    client_id = _parse_id(row.get("client", ""), "client", line_number)
    transaction_id = _parse_id(row.get("tx", ""), "tx", line_number)

    amount = None
    if transaction_type in AMOUNT_TYPES:
        amount = _parse_amount(row.get(AMOUNT_COLUMN, ""), line_number)

    return Transaction(
        transaction_type=transaction_type,
        client_id=client_id,
        transaction_id=transaction_id,
        amount=amount,
    )


def _normalize_row(row: Dict[Optional[str], object]) -> Dict[str, str]:
    # Extra trailing fields land under the None key and are ignored
    return {
        k.strip().lower(): (v or "").strip()
        for k, v in row.items()
        if k is not None
    }


def _parse_id(value: str, column: str, line_number: Optional[int]) -> int:
    # isdigit alone also accepts non-ASCII digits such as "\u0661"
    if not (value.isascii() and value.isdigit()):
        raise DecodeError(f"{column} must be a non-negative integer, got {value!r}", line_number)
    return int(value)


def _parse_amount(value: str, line_number: Optional[int]) -> Decimal:
    if not value:
        raise DecodeError("amount is required for deposits and withdrawals", line_number)
    try:
        amount = Decimal(value)
        if not amount.is_finite():
            raise DecodeError(f"amount must be finite, got {value!r}", line_number)
        return amount.quantize(QUANTUM)
    except InvalidOperation:
        raise DecodeError(f"invalid amount {value!r}", line_number) from None
