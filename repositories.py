from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo
from decimal import Decimal
import asyncio
import itertools
import uuid
from collections import defaultdict

from config import get_settings
from errors import AccountAlreadyExistsError, AccountNotFoundError, InsufficientFundsError
from models import Account, Customer, NewLedgerEntry, TransactionHistory, TransferResult


def ledger_clock() -> datetime:
    """Current time in the configured ledger timezone."""
    return datetime.now(ZoneInfo(get_settings().timezone))


class AccountRepository(ABC):
    @abstractmethod
    async def get(self, account_id: str) -> Account:
        """Get account by id. Raises AccountNotFoundError if it doesn't exist."""
        pass

    @abstractmethod
    async def create(self, customer_id: str, account_number: str, balance: Decimal) -> Account:
        """Create account. Raises AccountAlreadyExistsError for a duplicate (customer, number) pair."""
        pass

    @abstractmethod
    async def number_in_use(self, customer_id: str, account_number: str) -> bool:
        """Check if the customer already owns an account with this number."""
        pass

    @abstractmethod
    async def atomic_adjust(self, account_id: str, delta: Decimal) -> Decimal:
        """
        Add delta to the balance as one indivisible read-modify-write and
        return the new balance.

        Raises InsufficientFundsError if the result would be negative and
        AccountNotFoundError if the account doesn't exist. Must be
        linearizable with every other adjustment of the same account.
        """
        pass

    @abstractmethod
    async def get_accounts_count(self) -> int:
        """Get total number of accounts."""
        pass

    @abstractmethod
    async def get_total_balance(self) -> Decimal:
        """Sum of all account balances."""
        pass

    @abstractmethod
    def get_lock(self, account_id: str) -> asyncio.Lock:
        """Get lock serializing transfers that touch this account."""
        pass


class LedgerEntryRepository(ABC):
    @abstractmethod
    async def append(self, entry: NewLedgerEntry) -> TransactionHistory:
        """
        Store a ledger entry, assigning its id and timestamp.

        Appending a transfer_id that is already stored returns the stored
        entry unchanged. Raises StorageError only on a storage fault.
        """
        pass

    @abstractmethod
    def list_for_account(self, account_id: str) -> "LedgerEntrySequence":
        """Entries where the account is source or target, oldest first."""
        pass

    @abstractmethod
    async def get_by_transfer(self, transfer_id: str) -> Optional[TransactionHistory]:
        """Get the entry recorded for a transfer, if any."""
        pass

    @abstractmethod
    async def get_entries_count(self) -> int:
        """Get total number of ledger entries."""
        pass


class CustomerDirectory(ABC):
    @abstractmethod
    async def customer_exists(self, customer_id: str) -> bool:
        """Check if the customer is known to the directory."""
        pass


class IdempotencyRepository(ABC):
    @abstractmethod
    async def get_result(self, idempotency_key: str) -> Optional[TransferResult]:
        """Get stored transfer result by idempotency key."""
        pass

    @abstractmethod
    async def store_result(self, idempotency_key: str, result: TransferResult) -> None:
        """Store transfer result for idempotency."""
        pass

    @abstractmethod
    async def get_results_count(self) -> int:
        """Get total number of stored results."""
        pass

    @abstractmethod
    def get_lock(self, idempotency_key: str) -> asyncio.Lock:
        """Get lock serializing requests that share a key."""
        pass


class LedgerEntrySequence:
    """
    Lazy, restartable view over the entries of one account.

    Every ``async for`` starts again from the oldest entry and reads the
    underlying append-only list as it goes.
    """

    def __init__(self, entries: List[TransactionHistory], account_id: str):
        self._entries = entries
        self._account_id = account_id

    def __aiter__(self) -> AsyncIterator[TransactionHistory]:
        return self._scan()

    async def _scan(self) -> AsyncIterator[TransactionHistory]:
        index = 0
        while index < len(self._entries):
            entry = self._entries[index]
            index += 1
            if entry.involves(self._account_id):
                yield entry


class InMemoryAccountRepository(AccountRepository):
    def __init__(self):
        self.accounts: Dict[str, Account] = {}
        self.numbers: Dict[Tuple[str, str], str] = {}
        self.locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._ids = itertools.count(1)

    async def get(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def create(self, customer_id: str, account_number: str, balance: Decimal) -> Account:
        key = (customer_id, account_number)
        if key in self.numbers:
            raise AccountAlreadyExistsError(customer_id, account_number)
        account = Account(
            id=f"acc_{next(self._ids):03d}",
            customer_id=customer_id,
            account_number=account_number,
            balance=balance,
        )
        self.accounts[account.id] = account
        self.numbers[key] = account.id
        return account

    async def number_in_use(self, customer_id: str, account_number: str) -> bool:
        return (customer_id, account_number) in self.numbers

    async def atomic_adjust(self, account_id: str, delta: Decimal) -> Decimal:
        # No await between read and write, so the event loop cannot interleave another adjustment.
        account = self.accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        new_balance = account.balance + delta
        if new_balance < 0:
            raise InsufficientFundsError(account_id, account.balance, delta)
        self.accounts[account_id] = account.model_copy(update={"balance": new_balance})
        return new_balance

    async def get_accounts_count(self) -> int:
        return len(self.accounts)

    async def get_total_balance(self) -> Decimal:
        return sum((account.balance for account in self.accounts.values()), Decimal("0"))

    def get_lock(self, account_id: str) -> asyncio.Lock:
        return self.locks[account_id]


class InMemoryLedgerEntryRepository(LedgerEntryRepository):
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.entries: List[TransactionHistory] = []
        self.by_transfer: Dict[str, TransactionHistory] = {}
        self.clock = clock or ledger_clock
        self._last_timestamp: Optional[datetime] = None

    async def append(self, entry: NewLedgerEntry) -> TransactionHistory:
        existing = self.by_transfer.get(entry.transfer_id)
        if existing is not None:
            return existing

        timestamp = self.clock()
        if self._last_timestamp is not None and timestamp <= self._last_timestamp:
            timestamp = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = timestamp

        stored = TransactionHistory(
            id=str(uuid.uuid4()),
            timestamp=timestamp,
            **entry.model_dump(),
        )
        self.entries.append(stored)
        self.by_transfer[stored.transfer_id] = stored
        return stored

    def list_for_account(self, account_id: str) -> LedgerEntrySequence:
        return LedgerEntrySequence(self.entries, account_id)

    async def get_by_transfer(self, transfer_id: str) -> Optional[TransactionHistory]:
        return self.by_transfer.get(transfer_id)

    async def get_entries_count(self) -> int:
        return len(self.entries)


class InMemoryCustomerDirectory(CustomerDirectory):
    def __init__(self, customers: Optional[Iterable[Customer]] = None):
        if customers is None:
            customers = [
                Customer(id="cust_001", name="Ana Souza", email="ana@example.com"),
                Customer(id="cust_002", name="Bruno Lima", email="bruno@example.com"),
            ]
        self.customers: Dict[str, Customer] = {c.id: c for c in customers}

    async def customer_exists(self, customer_id: str) -> bool:
        return customer_id in self.customers

    def add_customer(self, customer: Customer) -> None:
        """Register a customer (onboarding happens outside the ledger)."""
        self.customers[customer.id] = customer


class InMemoryIdempotencyRepository(IdempotencyRepository):
    def __init__(self):
        self.store: Dict[str, TransferResult] = {}
        self.locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_result(self, idempotency_key: str) -> Optional[TransferResult]:
        return self.store.get(idempotency_key)

    async def store_result(self, idempotency_key: str, result: TransferResult) -> None:
        self.store[idempotency_key] = result

    async def get_results_count(self) -> int:
        return len(self.store)

    def get_lock(self, idempotency_key: str) -> asyncio.Lock:
        return self.locks[idempotency_key]

    def clear(self) -> None:
        """Clear all stored results (for testing)."""
        self.store.clear()


# Singleton instances (swap for real stores through dependency injection)
_account_repo = InMemoryAccountRepository()
_ledger_repo = InMemoryLedgerEntryRepository()
_customer_directory = InMemoryCustomerDirectory()
_idempotency_repo = InMemoryIdempotencyRepository()


def get_account_repository() -> AccountRepository:
    return _account_repo


def get_ledger_repository() -> LedgerEntryRepository:
    return _ledger_repo


def get_customer_directory() -> CustomerDirectory:
    return _customer_directory


def get_idempotency_repository() -> IdempotencyRepository:
    return _idempotency_repo


# For tests
def reset_repositories():
    """Reset all repositories to initial state (for testing only)."""
    global _account_repo, _ledger_repo, _customer_directory, _idempotency_repo
    _account_repo = InMemoryAccountRepository()
    _ledger_repo = InMemoryLedgerEntryRepository()
    _customer_directory = InMemoryCustomerDirectory()
    _idempotency_repo = InMemoryIdempotencyRepository()
