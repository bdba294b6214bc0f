from decimal import Decimal


class LedgerError(Exception):
    """Base class for account ledger errors."""


class AccountNotFoundError(LedgerError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} does not exist")


class AccountAlreadyExistsError(LedgerError):
    def __init__(self, customer_id: str, account_number: str):
        self.customer_id = customer_id
        self.account_number = account_number
        super().__init__(
            f"Account number {account_number} is already in use for customer {customer_id}"
        )


class InsufficientFundsError(LedgerError):
    def __init__(self, account_id: str, balance: Decimal, delta: Decimal):
        self.account_id = account_id
        self.balance = balance
        self.delta = delta
        super().__init__(
            f"Adjusting account {account_id} by {delta} would leave a negative balance"
        )


class StorageError(LedgerError):
    """The backing store failed or is unreachable."""


class LedgerUnavailableError(LedgerError):
    """
    Raised when a transfer cannot complete because storage is unavailable.

    No partial effect is left behind unless ``reconciliation_pending`` is set,
    in which case an applied debit could not be reversed and was queued for
    reconciliation.
    """

    def __init__(self, transfer_id: str, reason: str, reconciliation_pending: bool = False):
        self.transfer_id = transfer_id
        self.reason = reason
        self.reconciliation_pending = reconciliation_pending
        super().__init__(f"Transfer {transfer_id} failed: {reason}")
