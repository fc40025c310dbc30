import sys
import os
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from payments_ledger.errors import (
    AccountLocked,
    BalanceOverflow,
    DuplicateTransactionId,
    InsufficientFunds,
    InvalidAmount,
    InvalidChargeback,
    InvalidDispute,
    InvalidResolve,
)
from payments_ledger.ledger import Ledger
from payments_ledger.models import MAX_AMOUNT, DisputeState, Transaction, TransactionType


def deposit(client_id, tx_id, amount):
    return Transaction(TransactionType.DEPOSIT, client_id=client_id, transaction_id=tx_id, amount=Decimal(amount))


def withdrawal(client_id, tx_id, amount):
    return Transaction(TransactionType.WITHDRAWAL, client_id=client_id, transaction_id=tx_id, amount=Decimal(amount))


def dispute(client_id, tx_id):
    return Transaction(TransactionType.DISPUTE, client_id=client_id, transaction_id=tx_id)


def resolve(client_id, tx_id):
    return Transaction(TransactionType.RESOLVE, client_id=client_id, transaction_id=tx_id)


def chargeback(client_id, tx_id):
    return Transaction(TransactionType.CHARGEBACK, client_id=client_id, transaction_id=tx_id)


class TestLedger:
    def setup_method(self):
        self.ledger = Ledger()

    def account(self, client_id):
        return self.ledger.get_account(client_id)

    def test_deposit(self):
        self.ledger.apply(deposit(1, 1, "100"))

        account = self.account(1)
        assert account.available == Decimal("100")
        assert account.total == Decimal("100")
        assert self.ledger.get_entry(1).state == DisputeState.CLEAN

    def test_deposits_then_withdrawal(self):
        self.ledger.apply(deposit(1, 1, "5.0"))
        self.ledger.apply(deposit(1, 2, "3.0"))
        self.ledger.apply(withdrawal(1, 3, "4.0"))

        account = self.account(1)
        assert account.available == Decimal("4.0")
        assert account.held == Decimal("0")
        assert account.total == Decimal("4.0")
        assert account.locked is False

    def test_withdrawal_insufficient_funds(self):
        self.ledger.apply(deposit(1, 1, "50"))

        with pytest.raises(InsufficientFunds):
            self.ledger.apply(withdrawal(1, 2, "100"))

        assert self.account(1).available == Decimal("50")

    def test_withdrawal_on_fresh_account_rejected(self):
        with pytest.raises(InsufficientFunds):
            self.ledger.apply(withdrawal(2, 5, "100.0"))

        account = self.account(2)
        assert account.available == Decimal("0")
        assert account.held == Decimal("0")
        assert account.locked is False

    def test_rejected_withdrawal_does_not_reserve_id(self):
        with pytest.raises(InsufficientFunds):
            self.ledger.apply(withdrawal(1, 2, "10"))

        self.ledger.apply(deposit(1, 2, "10"))
        assert self.account(1).available == Decimal("10")

    def test_withdraw_everything(self):
        self.ledger.apply(deposit(1, 1, "1.2345"))
        self.ledger.apply(withdrawal(1, 2, "1.2345"))
        assert self.account(1).available == Decimal("0")

    def test_duplicate_deposit_rejected(self):
        self.ledger.apply(deposit(1, 1, "100"))

        with pytest.raises(DuplicateTransactionId):
            self.ledger.apply(deposit(1, 1, "100"))

        assert self.account(1).available == Decimal("100")

    def test_duplicate_withdrawal_rejected(self):
        self.ledger.apply(deposit(1, 1, "200"))
        self.ledger.apply(withdrawal(1, 2, "50"))

        with pytest.raises(DuplicateTransactionId):
            self.ledger.apply(withdrawal(1, 2, "50"))

        assert self.account(1).available == Decimal("150")

    def test_withdrawal_reusing_deposit_id_rejected(self):
        self.ledger.apply(deposit(1, 1, "200"))

        with pytest.raises(DuplicateTransactionId):
            self.ledger.apply(withdrawal(1, 1, "50"))

        assert self.account(1).available == Decimal("200")

    def test_duplicate_id_across_clients_rejected(self):
        self.ledger.apply(deposit(1, 1, "100"))

        with pytest.raises(DuplicateTransactionId):
            self.ledger.apply(deposit(2, 1, "100"))

        assert self.account(2).available == Decimal("0")
        assert self.ledger.get_entry(1).client_id == 1

    def test_negative_amounts_rejected(self):
        with pytest.raises(InvalidAmount):
            self.ledger.apply(deposit(1, 1, "-100"))
        self.ledger.apply(deposit(1, 2, "50"))
        with pytest.raises(InvalidAmount):
            self.ledger.apply(withdrawal(1, 3, "-10"))

        assert self.account(1).available == Decimal("50")
        assert self.ledger.get_entry(1) is None

    def test_missing_amount_rejected(self):
        with pytest.raises(InvalidAmount):
            self.ledger.apply(Transaction(TransactionType.DEPOSIT, client_id=1, transaction_id=1))
        assert self.account(1).available == Decimal("0")

    def test_zero_deposit_accepted(self):
        self.ledger.apply(deposit(1, 1, "0"))
        assert self.account(1).available == Decimal("0")
        assert self.ledger.get_entry(1) is not None

    def test_dispute(self):
        self.ledger.apply(deposit(1, 1, "5.0"))
        self.ledger.apply(dispute(1, 1))

        account = self.account(1)
        assert account.available == Decimal("0")
        assert account.held == Decimal("5.0")
        assert account.total == Decimal("5.0")
        assert self.ledger.get_entry(1).state == DisputeState.DISPUTED

    def test_dispute_tx_not_found(self):
        with pytest.raises(InvalidDispute):
            self.ledger.apply(dispute(1, 99))
        assert self.account(1).total == Decimal("0")

    def test_dispute_wrong_client(self):
        self.ledger.apply(deposit(1, 1, "100"))

        with pytest.raises(InvalidDispute):
            self.ledger.apply(dispute(2, 1))

        assert self.account(1).available == Decimal("100")
        assert self.account(1).held == Decimal("0")
        assert self.account(2).total == Decimal("0")

    def test_dispute_withdrawal_rejected(self):
        self.ledger.apply(deposit(1, 1, "100"))
        self.ledger.apply(withdrawal(1, 2, "50"))

        with pytest.raises(InvalidDispute):
            self.ledger.apply(dispute(1, 2))

        assert self.account(1).available == Decimal("50")
        assert self.account(1).held == Decimal("0")

    def test_double_dispute_rejected(self):
        self.ledger.apply(deposit(1, 1, "100"))
        self.ledger.apply(dispute(1, 1))

        with pytest.raises(InvalidDispute):
            self.ledger.apply(dispute(1, 1))

        assert self.account(1).held == Decimal("100")

    def test_dispute_after_partial_withdrawal_goes_negative(self):
        self.ledger.apply(deposit(1, 1, "100"))
        self.ledger.apply(withdrawal(1, 2, "30"))
        self.ledger.apply(dispute(1, 1))

        account = self.account(1)
        assert account.available == Decimal("-30")
        assert account.held == Decimal("100")
        assert account.total == Decimal("70")

    def test_resolve(self):
        self.ledger.apply(deposit(1, 1, "5.0"))
        self.ledger.apply(dispute(1, 1))
        self.ledger.apply(resolve(1, 1))

        account = self.account(1)
        assert account.available == Decimal("5.0")
        assert account.held == Decimal("0")
        assert self.ledger.get_entry(1).state == DisputeState.CLEAN

    def test_resolve_not_disputed(self):
        self.ledger.apply(deposit(1, 1, "100"))

        with pytest.raises(InvalidResolve):
            self.ledger.apply(resolve(1, 1))

        assert self.account(1).available == Decimal("100")

    def test_resolve_wrong_client(self):
        self.ledger.apply(deposit(1, 1, "100"))
        self.ledger.apply(dispute(1, 1))

        with pytest.raises(InvalidResolve):
            self.ledger.apply(resolve(2, 1))

        assert self.account(1).held == Decimal("100")

    def test_chargeback(self):
        self.ledger.apply(deposit(1, 1, "5.0"))
        self.ledger.apply(dispute(1, 1))
        self.ledger.apply(chargeback(1, 1))

        account = self.account(1)
        assert account.available == Decimal("0")
        assert account.held == Decimal("0")
        assert account.total == Decimal("0")
        assert account.locked is True
        assert self.ledger.get_entry(1).state == DisputeState.CHARGED_BACK

    def test_chargeback_not_disputed(self):
        self.ledger.apply(deposit(1, 1, "100"))

        with pytest.raises(InvalidChargeback):
            self.ledger.apply(chargeback(1, 1))

        assert self.account(1).available == Decimal("100")
        assert self.account(1).locked is False

    def test_second_chargeback_rejected(self):
        self.ledger.apply(deposit(1, 1, "100"))
        self.ledger.apply(dispute(1, 1))
        self.ledger.apply(chargeback(1, 1))

        with pytest.raises(InvalidChargeback):
            self.ledger.apply(chargeback(1, 1))
        with pytest.raises(InvalidDispute):
            self.ledger.apply(dispute(1, 1))

        assert self.account(1).total == Decimal("0")

    def test_locked_account_rejects_deposits_and_withdrawals(self):
        self.ledger.apply(deposit(1, 1, "5.0"))
        self.ledger.apply(dispute(1, 1))
        self.ledger.apply(chargeback(1, 1))

        with pytest.raises(AccountLocked):
            self.ledger.apply(deposit(1, 4, "10.0"))
        with pytest.raises(AccountLocked):
            self.ledger.apply(withdrawal(1, 5, "0"))

        account = self.account(1)
        assert account.available == Decimal("0")
        assert account.total == Decimal("0")
        assert account.locked is True
        assert self.ledger.get_entry(4) is None

    def test_locked_account_still_settles_open_disputes(self):
        self.ledger.apply(deposit(1, 1, "100"))
        self.ledger.apply(deposit(1, 2, "50"))
        self.ledger.apply(dispute(1, 1))
        self.ledger.apply(dispute(1, 2))
        self.ledger.apply(chargeback(1, 2))
        self.ledger.apply(resolve(1, 1))

        account = self.account(1)
        assert account.available == Decimal("100")
        assert account.held == Decimal("0")
        assert account.total == Decimal("100")
        assert account.locked is True

    def test_locked_account_can_still_be_disputed(self):
        self.ledger.apply(deposit(1, 1, "100"))
        self.ledger.apply(deposit(1, 2, "50"))
        self.ledger.apply(dispute(1, 2))
        self.ledger.apply(chargeback(1, 2))
        self.ledger.apply(dispute(1, 1))

        account = self.account(1)
        assert account.available == Decimal("0")
        assert account.held == Decimal("100")
        assert account.locked is True

    def test_redispute_after_resolve(self):
        self.ledger.apply(deposit(1, 1, "100"))
        self.ledger.apply(dispute(1, 1))
        self.ledger.apply(resolve(1, 1))
        self.ledger.apply(dispute(1, 1))
        self.ledger.apply(chargeback(1, 1))

        account = self.account(1)
        assert account.total == Decimal("0")
        assert account.locked is True

    def test_rejected_transaction_creates_zeroed_account(self):
        with pytest.raises(InvalidResolve):
            self.ledger.apply(resolve(7, 1))

        assert set(self.ledger.get_all_accounts()) == {7}
        assert self.account(7).total == Decimal("0")

    def test_get_all_accounts_returns_snapshot(self):
        self.ledger.apply(deposit(1, 1, "10"))
        snapshot = self.ledger.get_all_accounts()

        self.ledger.apply(deposit(1, 2, "10"))

        assert snapshot[1].available == Decimal("10")
        assert self.account(1).available == Decimal("20")

    def test_clients_are_independent(self):
        self.ledger.apply(deposit(1, 1, "10"))
        self.ledger.apply(deposit(2, 2, "20"))
        self.ledger.apply(dispute(1, 1))
        self.ledger.apply(chargeback(1, 1))
        self.ledger.apply(withdrawal(2, 3, "5"))

        assert self.account(1).locked is True
        assert self.account(2).locked is False
        assert self.account(2).available == Decimal("15")

    def test_amount_above_bound_rejected(self):
        self.ledger.apply(deposit(1, 1, str(MAX_AMOUNT)))
        with pytest.raises(InvalidAmount, match="exceeds"):
            self.ledger.apply(deposit(2, 2, "999999999999999999999999.9999"))
        with pytest.raises(InvalidAmount, match="exceeds"):
            self.ledger.apply(withdrawal(1, 3, "922337203685477.5808"))

        assert self.account(1).available == MAX_AMOUNT
        assert self.account(2).available == Decimal("0")
        assert self.ledger.get_entry(2) is None

    def test_deposit_past_bound_rejected(self):
        self.ledger.apply(deposit(1, 1, str(MAX_AMOUNT)))

        with pytest.raises(BalanceOverflow):
            self.ledger.apply(deposit(1, 2, "0.0001"))

        assert self.account(1).available == MAX_AMOUNT
        assert self.ledger.get_entry(2) is None
        self.ledger.apply(deposit(2, 2, "1"))
        assert self.account(2).available == Decimal("1")

    def test_dispute_past_bound_rejected(self):
        self.ledger.apply(deposit(1, 1, str(MAX_AMOUNT)))
        self.ledger.apply(withdrawal(1, 2, str(MAX_AMOUNT)))
        self.ledger.apply(deposit(1, 3, str(MAX_AMOUNT)))
        self.ledger.apply(dispute(1, 1))

        with pytest.raises(BalanceOverflow):
            self.ledger.apply(dispute(1, 3))

        account = self.account(1)
        assert account.available == Decimal("0")
        assert account.held == MAX_AMOUNT
        assert self.ledger.get_entry(3).state == DisputeState.CLEAN

        self.ledger.apply(resolve(1, 1))
        self.ledger.apply(dispute(1, 3))
        assert self.account(1).held == MAX_AMOUNT
