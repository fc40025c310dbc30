import threading
from collections import deque
from contextlib import contextmanager
from decimal import Decimal
from typing import Callable, Deque, Dict, Iterator, Optional, Set

from payments_ledger.errors import DuplicateTransactionId, InvalidChargeback, InvalidDispute, InvalidResolve
from payments_ledger.models import DisputableEntry, Transaction


class DisputeTracker:
    """
    Registry of every accepted deposit/withdrawal id, plus the dispute state of each deposit.
    Entries are never removed. All synchronization is internal - callers never need to lock.

    Ids are global, so two clients handled by different workers may race for the
    same id. A producer that sees the input in order can announce() each deposit
    and withdrawal; turn() then holds an announced record back until every
    earlier record claiming its id has been applied or rejected.
    """

    def __init__(self):
        self._entries: Dict[int, DisputableEntry] = {}
        self._withdrawal_ids: Set[int] = set()
        self._claims: Dict[int, Deque[Transaction]] = {}
        self._lock = threading.Lock()
        self._claim_released = threading.Condition(self._lock)

    def get_entry(self, transaction_id: int) -> Optional[DisputableEntry]:
        with self._lock:
            return self._entries.get(transaction_id)

    def announce(self, transaction: Transaction) -> None:
        """Queue a claim on the record's id, in input order."""
        with self._lock:
            self._claims.setdefault(transaction.transaction_id, deque()).append(transaction)

    def abandon(self, transaction: Transaction) -> None:
        """Drop the claim of an announced record that will never be applied."""
        with self._lock:
            claims = self._claims.get(transaction.transaction_id)
            if claims is None:
                return
            remaining = deque(claim for claim in claims if claim is not transaction)
            if remaining:
                self._claims[transaction.transaction_id] = remaining
            else:
                del self._claims[transaction.transaction_id]
            self._claim_released.notify_all()

    @contextmanager
    def turn(self, transaction: Transaction) -> Iterator[None]:
        """
        Wait until the record's claim is the oldest one on its id, and release
        it on exit whatever the outcome. Records that were never announced pass
        straight through.
        """
        transaction_id = transaction.transaction_id
        with self._lock:
            claims = self._claims.get(transaction_id)
            announced = claims is not None and any(claim is transaction for claim in claims)
            if announced:
                self._claim_released.wait_for(lambda: self._claims[transaction_id][0] is transaction)

        try:
            yield
        finally:
            if announced:
                with self._lock:
                    claims = self._claims[transaction_id]
                    claims.popleft()
                    if not claims:
                        del self._claims[transaction_id]
                    self._claim_released.notify_all()

    def record_deposit(self, transaction: Transaction) -> DisputableEntry:
        """Register a deposit id and open a CLEAN entry for it, unless the id is taken."""
        with self._lock:
            self._ensure_unused(transaction)
            entry = DisputableEntry(
                transaction_id=transaction.transaction_id,
                client_id=transaction.client_id,
                amount=transaction.amount,
            )
            self._entries[transaction.transaction_id] = entry
            return entry

    def reserve_withdrawal(self, transaction: Transaction) -> None:
        """Register a withdrawal id. Withdrawals are not disputable, only the id is kept."""
        with self._lock:
            self._ensure_unused(transaction)
            self._withdrawal_ids.add(transaction.transaction_id)

    def dispute(
        self,
        transaction_id: int,
        client_id: int,
        guard: Optional[Callable[[Decimal], None]] = None,
    ) -> Decimal:
        return self._transition(transaction_id, client_id, InvalidDispute, DisputableEntry.dispute, guard)

    def resolve(self, transaction_id: int, client_id: int) -> Decimal:
        return self._transition(transaction_id, client_id, InvalidResolve, DisputableEntry.resolve)

    def chargeback(self, transaction_id: int, client_id: int) -> Decimal:
        return self._transition(transaction_id, client_id, InvalidChargeback, DisputableEntry.chargeback)

    def _transition(
        self,
        transaction_id: int,
        client_id: int,
        error: type,
        step: Callable[[DisputableEntry], None],
        guard: Optional[Callable[[Decimal], None]] = None,
    ) -> Decimal:
        """
        Validate and move one entry to its next state, returning the amount the account must shift.
        guard sees the amount once the move is known to be legal and may raise to refuse it,
        leaving the entry as it was.
        """
        with self._lock:
            entry = self._entries.get(transaction_id)

            if entry is None:
                if transaction_id in self._withdrawal_ids:
                    raise error(client_id, transaction_id, "only deposits can be disputed")
                raise error(client_id, transaction_id, "transaction not found")

            # Ids are global, so a record may point at another client's deposit
            if entry.client_id != client_id:
                raise error(client_id, transaction_id, f"transaction belongs to client {entry.client_id}")

            previous = entry.state
            step(entry)
            if guard is not None:
                try:
                    guard(entry.amount)
                except Exception:
                    entry.state = previous
                    raise
            return entry.amount

    def _ensure_unused(self, transaction: Transaction) -> None:
        transaction_id = transaction.transaction_id
        if transaction_id in self._entries or transaction_id in self._withdrawal_ids:
            raise DuplicateTransactionId(transaction.client_id, transaction_id, "id already used")
