from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel, Field

from errors import AccountNotFoundError, StorageError
from models import NewLedgerEntry
from repositories import AccountRepository, LedgerEntryRepository, ledger_clock

logger = structlog.get_logger()


class PendingKind(str, Enum):
    ledger_entry = "ledger_entry"  # money moved, audit record missing
    reversal = "reversal"  # debit applied, credit failed, reversal failed


class PendingItem(BaseModel):
    kind: PendingKind
    entry: NewLedgerEntry
    detected_at: datetime
    attempts: int = 0
    last_error: Optional[str] = None


class ReplayReport(BaseModel):
    resolved: int = Field(0, description="Items settled during this replay")
    remaining: int = Field(0, description="Items still pending")


class ReconciliationQueue:
    """
    Work that a transfer could not finish and that must never be dropped.

    Items are keyed by (kind, transfer_id), so queueing the same failure
    twice keeps a single item.
    """

    def __init__(self):
        self.items: Dict[Tuple[PendingKind, str], PendingItem] = {}

    def __len__(self) -> int:
        return len(self.items)

    def pending(self) -> List[PendingItem]:
        return sorted(self.items.values(), key=lambda item: item.detected_at)

    def enqueue_missing_entry(self, entry: NewLedgerEntry, error: str) -> PendingItem:
        return self._enqueue(PendingKind.ledger_entry, entry, error)

    def enqueue_reversal(self, entry: NewLedgerEntry, error: str) -> PendingItem:
        return self._enqueue(PendingKind.reversal, entry, error)

    def _enqueue(self, kind: PendingKind, entry: NewLedgerEntry, error: str) -> PendingItem:
        key = (kind, entry.transfer_id)
        item = self.items.get(key)
        if item is None:
            item = PendingItem(kind=kind, entry=entry, detected_at=ledger_clock(), last_error=error)
            self.items[key] = item
        else:
            item.last_error = error

        logger.error(
            "Queued for reconciliation",
            kind=kind.value,
            transfer_id=entry.transfer_id,
            source_account_id=entry.source_account_id,
            target_account_id=entry.target_account_id,
            amount=str(entry.amount),
            timestamp=item.detected_at.isoformat(),
            error=error
        )
        return item

    async def replay(
        self,
        account_repo: AccountRepository,
        ledger_repo: LedgerEntryRepository
    ) -> ReplayReport:
        """Retry every pending item once, oldest first."""
        resolved = 0
        for item in self.pending():
            item.attempts += 1
            try:
                if item.kind == PendingKind.reversal:
                    await self._reverse(account_repo, item.entry)
                else:
                    await ledger_repo.append(item.entry)
            except (StorageError, AccountNotFoundError) as e:
                item.last_error = str(e)
                logger.warning(
                    "Reconciliation attempt failed",
                    kind=item.kind.value,
                    transfer_id=item.entry.transfer_id,
                    attempts=item.attempts,
                    error=str(e)
                )
                continue

            del self.items[(item.kind, item.entry.transfer_id)]
            resolved += 1
            logger.info(
                "Reconciled pending transfer",
                kind=item.kind.value,
                transfer_id=item.entry.transfer_id,
                attempts=item.attempts
            )

        return ReplayReport(resolved=resolved, remaining=len(self.items))

    async def _reverse(self, account_repo: AccountRepository, entry: NewLedgerEntry) -> Decimal:
        async with account_repo.get_lock(entry.source_account_id):
            return await account_repo.atomic_adjust(entry.source_account_id, entry.amount)


_reconciliation_queue = ReconciliationQueue()


def get_reconciliation_queue() -> ReconciliationQueue:
    return _reconciliation_queue


def reset_reconciliation_queue():
    """Drop all pending items (for testing only)."""
    global _reconciliation_queue
    _reconciliation_queue = ReconciliationQueue()
