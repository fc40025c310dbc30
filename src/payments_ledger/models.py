import threading
from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional

from payments_ledger.errors import InvalidChargeback, InvalidDispute, InvalidResolve, LedgerError

PRECISION = 4
QUANTUM = Decimal(1).scaleb(-PRECISION)

# Largest amount or balance magnitude the ledger accepts: a signed 64-bit
# count of ten-thousandths.
MAX_AMOUNT = Decimal(2**63 - 1).scaleb(-PRECISION)


class TransactionType(Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    DISPUTE = "dispute"
    RESOLVE = "resolve"
    CHARGEBACK = "chargeback"


class DisputeState(Enum):
    CLEAN = "clean"
    DISPUTED = "disputed"
    CHARGED_BACK = "charged_back"


@dataclass(frozen=True)
class Transaction:
    transaction_type: TransactionType
    client_id: int
    transaction_id: int
    amount: Optional[Decimal] = None

    def __repr__(self) -> str:
        return f"Transaction({self.transaction_type.value}, client={self.client_id}, tx={self.transaction_id}, amount={self.amount})"


@dataclass
class ClientAccount:
    client_id: int
    available: Decimal = Decimal("0")
    held: Decimal = Decimal("0")
    locked: bool = False

    @property
    def total(self) -> Decimal:
        return self.available + self.held

    def credit(self, amount: Decimal) -> None:
        self.available += amount

    def debit(self, amount: Decimal) -> None:
        self.available -= amount

    def hold(self, amount: Decimal) -> None:
        self.available -= amount
        self.held += amount

    def release_hold(self, amount: Decimal) -> None:
        self.held -= amount
        self.available += amount

    def remove_held(self, amount: Decimal) -> None:
        self.held -= amount

    def lock(self) -> None:
        self.locked = True


@dataclass
class DisputableEntry:
    """
    Dispute bookkeeping for one accepted deposit.
    State only moves CLEAN -> DISPUTED -> (CLEAN | CHARGED_BACK).
    """

    transaction_id: int
    client_id: int
    amount: Decimal
    state: DisputeState = DisputeState.CLEAN

    def dispute(self) -> None:
        self._transition(DisputeState.CLEAN, DisputeState.DISPUTED, InvalidDispute)

    def resolve(self) -> None:
        self._transition(DisputeState.DISPUTED, DisputeState.CLEAN, InvalidResolve)

    def chargeback(self) -> None:
        self._transition(DisputeState.DISPUTED, DisputeState.CHARGED_BACK, InvalidChargeback)

    def _transition(self, expected: DisputeState, target: DisputeState, error: type) -> None:
        if self.state != expected:
            raise error(
                self.client_id,
                self.transaction_id,
                f"cannot move from {self.state.value} to {target.value}",
            )
        self.state = target


class ProcessingStats:
    """Thread-safe counters for tracking processing statistics."""

    def __init__(self):
        self._lock = threading.Lock()
        self.decoded = 0
        self.applied = 0
        self.rejected: Counter = Counter()

    def record_decoded(self):
        with self._lock:
            self.decoded += 1

    def record_success(self):
        with self._lock:
            self.applied += 1

    def record_failure(self, error: LedgerError):
        with self._lock:
            self.rejected[type(error).__name__] += 1

    @property
    def failed(self) -> int:
        with self._lock:
            return sum(self.rejected.values())

    def rejections(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.rejected)
