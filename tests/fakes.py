"""In-memory stores with switchable faults."""

import asyncio
from decimal import Decimal
from typing import Set

from errors import AccountNotFoundError, StorageError
from models import NewLedgerEntry, TransactionHistory
from repositories import InMemoryAccountRepository, InMemoryLedgerEntryRepository


class FlakyAccountRepository(InMemoryAccountRepository):
    """Fails credits (positive adjustments) to selected accounts."""

    def __init__(self):
        super().__init__()
        self.failing_credits: Set[str] = set()
        self.vanished: Set[str] = set()

    async def atomic_adjust(self, account_id: str, delta: Decimal) -> Decimal:
        if delta > 0 and account_id in self.vanished:
            raise AccountNotFoundError(account_id)
        if delta > 0 and account_id in self.failing_credits:
            raise StorageError(f"write to {account_id} failed")
        return await super().atomic_adjust(account_id, delta)


class SlowCreditRepository(InMemoryAccountRepository):
    """Delays credits to selected accounts so a transfer can be caught mid-commit."""

    def __init__(self, delay: float = 0.2):
        super().__init__()
        self.delay = delay
        self.slow_credits: Set[str] = set()

    async def atomic_adjust(self, account_id: str, delta: Decimal) -> Decimal:
        if delta > 0 and account_id in self.slow_credits:
            await asyncio.sleep(self.delay)
        return await super().atomic_adjust(account_id, delta)


class FailingLedgerRepository(InMemoryLedgerEntryRepository):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing = True

    async def append(self, entry: NewLedgerEntry) -> TransactionHistory:
        if self.failing:
            raise StorageError("ledger storage unavailable")
        return await super().append(entry)
