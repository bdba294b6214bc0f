import asyncio
import uuid
from decimal import Decimal
from typing import Callable, List, Optional

import structlog

from config import Settings, get_settings
from errors import (
    AccountAlreadyExistsError,
    AccountNotFoundError,
    InsufficientFundsError,
    LedgerUnavailableError,
    StorageError,
)
from models import (
    AccountResult,
    HistoryResult,
    NewLedgerEntry,
    Outcome,
    TransferResult,
    parse_amount,
)
from reconciliation import ReconciliationQueue
from repositories import (
    AccountRepository,
    CustomerDirectory,
    IdempotencyRepository,
    LedgerEntryRepository,
    ledger_clock,
)

# Configure structured logging
logger = structlog.get_logger()


class TransferEngine:
    """
    Moves money between two accounts and records the ledger entry.

    A transfer is validated first (amount, distinct accounts, both accounts
    exist, enough funds), then committed while holding the locks of both
    accounts, taken in account id order. The commit debits the source,
    credits the target and appends the ledger entry. A failed credit is
    compensated by reversing the debit; a failed append leaves the money
    moved and reports ``degraded`` with the entry queued for reconciliation.
    A transfer cancelled mid-commit still runs its commit to the end.
    """

    def __init__(
        self,
        account_repo: AccountRepository,
        ledger_repo: LedgerEntryRepository,
        reconciliation: ReconciliationQueue,
        idempotency_repo: Optional[IdempotencyRepository] = None,
        settings: Optional[Settings] = None,
        clock: Callable = ledger_clock
    ):
        self.account_repo = account_repo
        self.ledger_repo = ledger_repo
        self.reconciliation = reconciliation
        self.idempotency_repo = idempotency_repo
        self.settings = settings or get_settings()
        self.clock = clock

    async def transfer(
        self,
        source_account_id: str,
        target_account_id: str,
        amount,
        idempotency_key: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> TransferResult:
        """
        Transfer ``amount`` from source to target.

        Business rejections come back as a TransferResult. Raises
        LedgerUnavailableError when storage fails or the deadline passes.
        """
        transfer_id = str(uuid.uuid4())
        log = logger.bind(
            transfer_id=transfer_id,
            source_account_id=source_account_id,
            target_account_id=target_account_id,
            amount=str(amount)
        )
        log.info("Processing transfer", idempotency_key=idempotency_key)

        deadline = self._deadline(timeout)

        if idempotency_key is None or self.idempotency_repo is None:
            return await self._transfer(
                transfer_id, source_account_id, target_account_id, amount, deadline, log
            )

        lock = self.idempotency_repo.get_lock(idempotency_key)
        await self._acquire(lock, transfer_id, deadline, log)
        try:
            existing = await self.idempotency_repo.get_result(idempotency_key)
            if existing is not None:
                log.info(
                    "Returning existing transfer due to idempotency",
                    idempotency_key=idempotency_key,
                    original_transfer_id=existing.transfer_id
                )
                return existing

            result = await self._transfer(
                transfer_id, source_account_id, target_account_id, amount, deadline, log
            )
            if result.committed:
                await self.idempotency_repo.store_result(idempotency_key, result)
            return result
        finally:
            lock.release()

    async def _transfer(
        self,
        transfer_id: str,
        source_account_id: str,
        target_account_id: str,
        raw_amount,
        deadline: Optional[float],
        log
    ) -> TransferResult:
        def reject(outcome: Outcome, detail: str, amount: Optional[Decimal] = None) -> TransferResult:
            log.warning("Transfer rejected", outcome=outcome.value, detail=detail)
            return TransferResult(
                transfer_id=transfer_id,
                outcome=outcome,
                source_account_id=source_account_id,
                target_account_id=target_account_id,
                amount=amount,
                detail=detail
            )

        amount = parse_amount(raw_amount)
        if amount is None or amount <= 0:
            return reject(Outcome.invalid_amount, "Amount must be a positive value with at most two decimal places")

        if source_account_id == target_account_id:
            return reject(Outcome.same_account, "Source and target account must differ", amount)

        try:
            source = await self._bounded(self.account_repo.get(source_account_id), deadline)
            await self._bounded(self.account_repo.get(target_account_id), deadline)
        except AccountNotFoundError:
            return reject(Outcome.invalid_accounts, "Invalid source or target account", amount)
        except (StorageError, asyncio.TimeoutError) as e:
            raise self._fatal(transfer_id, "account lookup failed", e, log)

        # Pre-check only; atomic_adjust re-verifies at commit time.
        if source.balance < amount:
            return reject(Outcome.insufficient_funds, "Insufficient balance in the source account", amount)

        draft = NewLedgerEntry(
            transfer_id=transfer_id,
            source_account_id=source_account_id,
            target_account_id=target_account_id,
            amount=amount
        )

        acquired: List[asyncio.Lock] = []
        try:
            for account_id in sorted((source_account_id, target_account_id)):
                lock = self.account_repo.get_lock(account_id)
                await self._acquire(lock, transfer_id, deadline, log)
                acquired.append(lock)
            return await self._commit_to_completion(draft, deadline, log, reject)
        finally:
            for lock in reversed(acquired):
                lock.release()

    async def _commit_to_completion(self, draft: NewLedgerEntry, deadline: Optional[float], log, reject) -> TransferResult:
        """
        Run the commit as its own task and wait for it even if the caller is
        cancelled, so a cancellation never separates a debit from its credit
        or its reversal. The account locks stay held until the commit ends;
        the caller's cancellation is re-raised afterwards.
        """
        commit = asyncio.ensure_future(self._commit(draft, deadline, log, reject))
        cancelled = False
        while not commit.done():
            try:
                await asyncio.wait([commit])
            except asyncio.CancelledError:
                if not cancelled:
                    log.warning("Transfer cancelled during commit, finishing commit first")
                cancelled = True

        if cancelled:
            error = commit.exception()
            if error is None:
                log.warning("Cancelled transfer finished its commit", outcome=commit.result().outcome.value)
            else:
                log.error("Cancelled transfer failed during commit", error=_describe(error))
            raise asyncio.CancelledError()
        return commit.result()

    async def _commit(self, draft: NewLedgerEntry, deadline: Optional[float], log, reject) -> TransferResult:
        try:
            await self._bounded(
                self.account_repo.atomic_adjust(draft.source_account_id, -draft.amount), deadline
            )
        except InsufficientFundsError:
            return reject(Outcome.insufficient_funds, "Insufficient balance in the source account", draft.amount)
        except AccountNotFoundError:
            return reject(Outcome.invalid_accounts, "Invalid source or target account", draft.amount)
        except (StorageError, asyncio.TimeoutError) as e:
            raise self._fatal(draft.transfer_id, "debit failed", e, log)

        try:
            await self._bounded(
                self.account_repo.atomic_adjust(draft.target_account_id, draft.amount), deadline
            )
        except AccountNotFoundError as e:
            if not await self._reverse_debit(draft, e, log):
                raise LedgerUnavailableError(
                    draft.transfer_id, "credit failed and debit reversal is pending", reconciliation_pending=True
                )
            return reject(Outcome.invalid_accounts, "Invalid source or target account", draft.amount)
        except (StorageError, asyncio.TimeoutError) as e:
            reversed_ok = await self._reverse_debit(draft, e, log)
            raise self._fatal(draft.transfer_id, "credit failed", e, log, reconciliation_pending=not reversed_ok)

        try:
            entry = await self._bounded(self.ledger_repo.append(draft), deadline)
        except (StorageError, asyncio.TimeoutError) as e:
            log.error(
                "Transfer committed without ledger entry",
                timestamp=self.clock().isoformat(),
                error=_describe(e)
            )
            self.reconciliation.enqueue_missing_entry(draft, _describe(e))
            return TransferResult(
                transfer_id=draft.transfer_id,
                outcome=Outcome.degraded,
                source_account_id=draft.source_account_id,
                target_account_id=draft.target_account_id,
                amount=draft.amount,
                detail="Funds moved; ledger entry queued for reconciliation"
            )

        log.info("Transfer committed", entry_id=entry.id, timestamp=entry.timestamp.isoformat())
        return TransferResult(
            transfer_id=draft.transfer_id,
            outcome=Outcome.ok,
            source_account_id=draft.source_account_id,
            target_account_id=draft.target_account_id,
            amount=draft.amount,
            entry=entry
        )

    async def _reverse_debit(self, draft: NewLedgerEntry, cause: Exception, log) -> bool:
        """Give the debited amount back to the source. Not bounded by the deadline."""
        log.warning("Credit failed, reversing debit", error=_describe(cause))
        try:
            await self.account_repo.atomic_adjust(draft.source_account_id, draft.amount)
        except (StorageError, AccountNotFoundError) as e:
            log.error("Debit reversal failed", error=_describe(e))
            self.reconciliation.enqueue_reversal(draft, _describe(e))
            return False
        return True

    def _deadline(self, timeout: Optional[float]) -> Optional[float]:
        if timeout is None:
            timeout = self.settings.storage_timeout_seconds
        if timeout is None:
            return None
        return asyncio.get_running_loop().time() + timeout

    async def _bounded(self, coro, deadline: Optional[float]):
        if deadline is None:
            return await coro
        remaining = max(deadline - asyncio.get_running_loop().time(), 0)
        return await asyncio.wait_for(coro, remaining)

    async def _acquire(self, lock: asyncio.Lock, transfer_id: str, deadline: Optional[float], log) -> None:
        try:
            await self._bounded(lock.acquire(), deadline)
        except asyncio.TimeoutError as e:
            raise self._fatal(transfer_id, "timed out waiting for account lock", e, log)

    def _fatal(
        self,
        transfer_id: str,
        reason: str,
        cause: Exception,
        log,
        reconciliation_pending: bool = False
    ) -> LedgerUnavailableError:
        log.error(
            "Transfer aborted",
            reason=reason,
            error=_describe(cause),
            reconciliation_pending=reconciliation_pending
        )
        return LedgerUnavailableError(transfer_id, f"{reason}: {_describe(cause)}", reconciliation_pending)


def _describe(error: Exception) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "deadline exceeded"
    return str(error)


class AccountService:
    """Account creation and lookups; balance mutation belongs to TransferEngine."""

    def __init__(
        self,
        account_repo: AccountRepository,
        ledger_repo: LedgerEntryRepository,
        customer_directory: CustomerDirectory
    ):
        self.account_repo = account_repo
        self.ledger_repo = ledger_repo
        self.customer_directory = customer_directory

    async def create_account(self, customer_id: str, account_number: str, initial_deposit) -> AccountResult:
        logger.info(
            "Creating account",
            customer_id=customer_id,
            account_number=account_number,
            initial_deposit=str(initial_deposit)
        )

        balance = parse_amount(initial_deposit)
        if balance is None or balance < 0:
            logger.warning("Invalid initial deposit", customer_id=customer_id, initial_deposit=str(initial_deposit))
            return AccountResult(outcome=Outcome.invalid_amount, detail="Initial deposit must be zero or positive")

        if not await self.customer_directory.customer_exists(customer_id):
            logger.warning("Customer not found", customer_id=customer_id)
            return AccountResult(outcome=Outcome.not_found, detail=f"Customer not found with ID: {customer_id}")

        # Checked up front so the common case is explicit; create() still rejects a racing duplicate.
        if await self.account_repo.number_in_use(customer_id, account_number):
            return self._number_in_use(customer_id, account_number)

        try:
            account = await self.account_repo.create(customer_id, account_number, balance)
        except AccountAlreadyExistsError:
            return self._number_in_use(customer_id, account_number)

        logger.info("Account created", account_id=account.id, customer_id=customer_id)
        return AccountResult(outcome=Outcome.ok, account=account)

    def _number_in_use(self, customer_id: str, account_number: str) -> AccountResult:
        logger.warning(
            "Account number is already in use for this customer",
            customer_id=customer_id,
            account_number=account_number
        )
        return AccountResult(
            outcome=Outcome.account_number_in_use,
            detail="Account number is already in use for this customer"
        )

    async def get_account(self, account_id: str) -> AccountResult:
        try:
            account = await self.account_repo.get(account_id)
        except AccountNotFoundError:
            return AccountResult(outcome=Outcome.not_found, detail=f"Account not found with ID: {account_id}")
        return AccountResult(outcome=Outcome.ok, account=account)

    async def get_history(self, account_id: str) -> HistoryResult:
        try:
            await self.account_repo.get(account_id)
        except AccountNotFoundError:
            return HistoryResult(outcome=Outcome.not_found, detail=f"Account not found with ID: {account_id}")

        entries = [entry async for entry in self.ledger_repo.list_for_account(account_id)]
        return HistoryResult(outcome=Outcome.ok, entries=entries)


# Factory functions for dependency injection
def get_transfer_engine(
    account_repo: AccountRepository,
    ledger_repo: LedgerEntryRepository,
    reconciliation: ReconciliationQueue,
    idempotency_repo: Optional[IdempotencyRepository] = None
) -> TransferEngine:
    return TransferEngine(account_repo, ledger_repo, reconciliation, idempotency_repo)


def get_account_service(
    account_repo: AccountRepository,
    ledger_repo: LedgerEntryRepository,
    customer_directory: CustomerDirectory
) -> AccountService:
    return AccountService(account_repo, ledger_repo, customer_directory)
