import logging
import threading
from dataclasses import replace
from decimal import Decimal
from typing import Dict, Optional

from payments_ledger.dispute_tracker import DisputeTracker
from payments_ledger.errors import AccountLocked, BalanceOverflow, InsufficientFunds, InvalidAmount
from payments_ledger.models import MAX_AMOUNT, ClientAccount, DisputableEntry, Transaction, TransactionType

logger = logging.getLogger(__name__)


class Ledger:
    """
    Owns the client account table and the dispute tracker.

    apply() either commits a transaction completely or raises a LedgerError
    with balances, lock flags and dispute entries untouched. Each call runs
    under the client's lock, so unrelated clients never serialize on each other.
    """

    def __init__(self, tracker: Optional[DisputeTracker] = None):
        self._accounts: Dict[int, ClientAccount] = {}
        self._tracker = tracker or DisputeTracker()

        # Global lock protects creation of new entries in _accounts and _client_locks dicts.
        # Balances themselves are only touched under the owning client's lock.
        self._global_lock = threading.Lock()
        self._client_locks: Dict[int, threading.Lock] = {}

    def get_client_lock(self, client_id: int) -> threading.Lock:
        """Get or create the lock guarding a single client's account."""
        with self._global_lock:
            if client_id not in self._client_locks:
                self._client_locks[client_id] = threading.Lock()
            return self._client_locks[client_id]

    def get_or_create_account(self, client_id: int) -> ClientAccount:
        """Get existing account or create a zeroed one."""
        with self._global_lock:
            if client_id not in self._accounts:
                self._accounts[client_id] = ClientAccount(client_id=client_id)
            return self._accounts[client_id]

    def get_account(self, client_id: int) -> Optional[ClientAccount]:
        with self._global_lock:
            return self._accounts.get(client_id)

    def get_entry(self, transaction_id: int) -> Optional[DisputableEntry]:
        return self._tracker.get_entry(transaction_id)

    def get_all_accounts(self) -> Dict[int, ClientAccount]:
        """Return a snapshot of all accounts (for final output)."""
        with self._global_lock:
            accounts = list(self._accounts.values())
        snapshot = {}
        for account in accounts:
            with self.get_client_lock(account.client_id):
                snapshot[account.client_id] = replace(account)
        return snapshot

    def announce(self, transaction: Transaction) -> None:
        """
        Claim a deposit or withdrawal id in input order, ahead of apply().
        Workers that apply records out of input order call this from the single
        reader so that, among records sharing an id, the earliest one still wins.
        """
        if transaction.transaction_type in (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL):
            self._tracker.announce(transaction)

    def abandon(self, transaction: Transaction) -> None:
        """Release the claim of an announced record that will not be applied."""
        self._tracker.abandon(transaction)

    def apply(self, transaction: Transaction) -> None:
        """
        Apply a single transaction.

        Raises:
            AccountLocked: deposit or withdrawal on a charged-back account
            InvalidAmount: deposit or withdrawal without a non-negative amount,
                or with one above MAX_AMOUNT
            BalanceOverflow: deposit or dispute that would push a balance past MAX_AMOUNT
            InsufficientFunds: withdrawal larger than available funds
            DuplicateTransactionId: deposit or withdrawal id already accepted
            InvalidDispute / InvalidResolve / InvalidChargeback: referenced
                deposit missing, owned by another client, or in the wrong state
        """
        with self._tracker.turn(transaction), self.get_client_lock(transaction.client_id):
            account = self.get_or_create_account(transaction.client_id)

            match transaction.transaction_type:
                case TransactionType.DEPOSIT:
                    self._handle_deposit(account, transaction)
                case TransactionType.WITHDRAWAL:
                    self._handle_withdrawal(account, transaction)
                case TransactionType.DISPUTE:
                    self._handle_dispute(account, transaction)
                case TransactionType.RESOLVE:
                    self._handle_resolve(account, transaction)
                case TransactionType.CHARGEBACK:
                    self._handle_chargeback(account, transaction)
                case _:
                    raise TypeError(f"Unhandled transaction type {transaction.transaction_type!r}")

    def _handle_deposit(self, account: ClientAccount, transaction: Transaction) -> None:
        self._check_movable(account, transaction)
        self._check_bounds(account, transaction, transaction.amount, Decimal(0))

        self._tracker.record_deposit(transaction)
        account.credit(transaction.amount)

    def _handle_withdrawal(self, account: ClientAccount, transaction: Transaction) -> None:
        self._check_movable(account, transaction)

        if account.available < transaction.amount:
            raise InsufficientFunds(
                transaction.client_id,
                transaction.transaction_id,
                f"available {account.available}, requested {transaction.amount}",
            )

        self._tracker.reserve_withdrawal(transaction)
        account.debit(transaction.amount)

    def _handle_dispute(self, account: ClientAccount, transaction: Transaction) -> None:
        amount = self._tracker.dispute(
            transaction.transaction_id,
            transaction.client_id,
            guard=lambda amount: self._check_bounds(account, transaction, -amount, amount),
        )
        account.hold(amount)

    def _handle_resolve(self, account: ClientAccount, transaction: Transaction) -> None:
        amount = self._tracker.resolve(transaction.transaction_id, transaction.client_id)
        account.release_hold(amount)

    def _handle_chargeback(self, account: ClientAccount, transaction: Transaction) -> None:
        amount = self._tracker.chargeback(transaction.transaction_id, transaction.client_id)
        account.remove_held(amount)
        account.lock()
        logger.info(f"Client {account.client_id}: account locked after chargeback of tx {transaction.transaction_id}")

    @staticmethod
    def _check_movable(account: ClientAccount, transaction: Transaction) -> None:
        """Checks shared by deposits and withdrawals."""
        if account.locked:
            raise AccountLocked(transaction.client_id, transaction.transaction_id, "account is locked")

        if transaction.amount is None or transaction.amount < 0:
            raise InvalidAmount(
                transaction.client_id,
                transaction.transaction_id,
                f"invalid amount {transaction.amount}",
            )

        if transaction.amount > MAX_AMOUNT:
            raise InvalidAmount(
                transaction.client_id,
                transaction.transaction_id,
                f"amount {transaction.amount} exceeds {MAX_AMOUNT}",
            )

    @staticmethod
    def _check_bounds(account: ClientAccount, transaction: Transaction, available_delta: Decimal, held_delta: Decimal) -> None:
        """
        Refuse a move that would take available, held or total past MAX_AMOUNT.
        Only deposits and disputes are checked: withdrawals, resolves and chargebacks
        cannot leave the range while the total stays within it.
        """
        available = account.available + available_delta
        held = account.held + held_delta
        if max(abs(available), abs(held), abs(available + held)) > MAX_AMOUNT:
            raise BalanceOverflow(
                transaction.client_id,
                transaction.transaction_id,
                f"balance would exceed {MAX_AMOUNT}",
            )
