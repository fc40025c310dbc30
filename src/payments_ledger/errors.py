from typing import Optional


class LedgerError(Exception):
    """
    A transaction the ledger refused to apply.
    Raised before any state is touched, so the caller may drop the record and continue.
    """

    def __init__(self, client_id: int, transaction_id: int, reason: str = ""):
        self.client_id = client_id
        self.transaction_id = transaction_id
        self.reason = reason
        super().__init__(self._message())

    def _message(self) -> str:
        message = f"[Client {self.client_id}] {type(self).__name__} for tx {self.transaction_id}"
        if self.reason:
            message += f": {self.reason}"
        return message


class DuplicateTransactionId(LedgerError):
    pass


class InsufficientFunds(LedgerError):
    pass


class AccountLocked(LedgerError):
    pass


class InvalidAmount(LedgerError):
    pass


class BalanceOverflow(LedgerError):
    pass


class InvalidDispute(LedgerError):
    pass


class InvalidResolve(LedgerError):
    pass


class InvalidChargeback(LedgerError):
    pass


class DecodeError(ValueError):
    """Malformed input record. Ends the stream."""

    def __init__(self, message: str, line_number: Optional[int] = None):
        self.line_number = line_number
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)
