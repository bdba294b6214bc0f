import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from errors import AccountAlreadyExistsError, AccountNotFoundError, InsufficientFundsError
from models import (
    Account,
    AccountResponse,
    Customer,
    NewLedgerEntry,
    Outcome,
    TransferResponse,
    parse_amount,
)
from repositories import (
    InMemoryAccountRepository,
    InMemoryCustomerDirectory,
    InMemoryLedgerEntryRepository,
)
from services import AccountService


def make_service():
    return AccountService(
        InMemoryAccountRepository(),
        InMemoryLedgerEntryRepository(),
        InMemoryCustomerDirectory()
    )


def draft(transfer_id, source, target, amount="10"):
    return NewLedgerEntry(
        transfer_id=transfer_id,
        source_account_id=source,
        target_account_id=target,
        amount=Decimal(amount)
    )


class TestCreateAccount:
    """Test account creation rules."""

    @pytest.mark.asyncio
    async def test_create_account(self):
        service = make_service()

        result = await service.create_account("cust_001", "ACC-1", Decimal("100"))

        assert result.outcome == Outcome.ok
        assert result.account.customer_id == "cust_001"
        assert result.account.account_number == "ACC-1"
        assert result.account.balance == Decimal("100")

    @pytest.mark.asyncio
    async def test_duplicate_account_number(self):
        """Second account with the same number for a customer is refused."""
        service = make_service()

        first = await service.create_account("cust_001", "ACC-1", 100)
        second = await service.create_account("cust_001", "ACC-1", 50)

        assert first.outcome == Outcome.ok
        assert second.outcome == Outcome.account_number_in_use
        assert second.account is None
        assert await service.account_repo.get_accounts_count() == 1

    @pytest.mark.asyncio
    async def test_same_number_for_different_customers(self):
        service = make_service()

        first = await service.create_account("cust_001", "ACC-1", 100)
        second = await service.create_account("cust_002", "ACC-1", 100)

        assert first.outcome == second.outcome == Outcome.ok
        assert first.account.id != second.account.id

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_creation(self):
        service = make_service()

        results = await asyncio.gather(*[
            service.create_account("cust_001", "ACC-RACE", 10) for _ in range(5)
        ])

        outcomes = [r.outcome for r in results]
        assert outcomes.count(Outcome.ok) == 1
        assert outcomes.count(Outcome.account_number_in_use) == 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize("deposit", ["-0.01", -100, "ten", "1.234", "9" * 29])
    async def test_invalid_initial_deposit(self, deposit):
        service = make_service()

        result = await service.create_account("cust_001", "ACC-1", deposit)

        assert result.outcome == Outcome.invalid_amount
        assert await service.account_repo.get_accounts_count() == 0

    @pytest.mark.asyncio
    async def test_zero_initial_deposit(self):
        service = make_service()

        result = await service.create_account("cust_001", "ACC-1", 0)

        assert result.outcome == Outcome.ok
        assert result.account.balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_unknown_customer(self):
        service = make_service()

        result = await service.create_account("cust_404", "ACC-1", 10)

        assert result.outcome == Outcome.not_found
        assert await service.account_repo.get_accounts_count() == 0

    @pytest.mark.asyncio
    async def test_onboarded_customer(self):
        service = make_service()
        service.customer_directory.add_customer(Customer(id="cust_new", name="Carla Dias"))

        result = await service.create_account("cust_new", "ACC-1", 10)

        assert result.outcome == Outcome.ok


class TestLookups:
    """Test account and history reads."""

    @pytest.mark.asyncio
    async def test_get_account(self):
        service = make_service()
        created = (await service.create_account("cust_001", "ACC-1", 100)).account

        result = await service.get_account(created.id)

        assert result.outcome == Outcome.ok
        assert result.account == created

    @pytest.mark.asyncio
    async def test_get_unknown_account(self):
        service = make_service()

        result = await service.get_account("acc_999")

        assert result.outcome == Outcome.not_found
        assert result.account is None

    @pytest.mark.asyncio
    async def test_history_of_unknown_account(self):
        service = make_service()

        result = await service.get_history("acc_999")

        assert result.outcome == Outcome.not_found
        assert result.entries == []

    @pytest.mark.asyncio
    async def test_history_is_ordered_and_filtered(self):
        service = make_service()
        a = (await service.create_account("cust_001", "ACC-1", 100)).account.id
        b = (await service.create_account("cust_001", "ACC-2", 100)).account.id
        c = (await service.create_account("cust_001", "ACC-3", 100)).account.id
        await service.ledger_repo.append(draft("t1", a, b))
        await service.ledger_repo.append(draft("t2", b, c))
        await service.ledger_repo.append(draft("t3", c, a))

        result = await service.get_history(a)

        assert result.outcome == Outcome.ok
        assert [e.transfer_id for e in result.entries] == ["t1", "t3"]
        assert result.entries[0].timestamp < result.entries[1].timestamp

    @pytest.mark.asyncio
    async def test_reads_are_repeatable(self):
        service = make_service()
        a = (await service.create_account("cust_001", "ACC-1", 100)).account.id
        b = (await service.create_account("cust_001", "ACC-2", 100)).account.id
        await service.ledger_repo.append(draft("t1", a, b))

        assert await service.get_account(a) == await service.get_account(a)
        assert await service.get_history(a) == await service.get_history(a)


class TestAccountRepository:
    """Test the in-memory account store."""

    @pytest.mark.asyncio
    async def test_atomic_adjust(self):
        repo = InMemoryAccountRepository()
        account = await repo.create("cust_001", "ACC-1", Decimal("10"))

        assert await repo.atomic_adjust(account.id, Decimal("5")) == Decimal("15")
        assert await repo.atomic_adjust(account.id, Decimal("-15")) == Decimal("0")
        assert (await repo.get(account.id)).balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_atomic_adjust_rejects_negative_result(self):
        repo = InMemoryAccountRepository()
        account = await repo.create("cust_001", "ACC-1", Decimal("10"))

        with pytest.raises(InsufficientFundsError):
            await repo.atomic_adjust(account.id, Decimal("-10.01"))
        assert (await repo.get(account.id)).balance == Decimal("10")

    @pytest.mark.asyncio
    async def test_missing_account(self):
        repo = InMemoryAccountRepository()

        with pytest.raises(AccountNotFoundError):
            await repo.get("acc_001")
        with pytest.raises(AccountNotFoundError):
            await repo.atomic_adjust("acc_001", Decimal("1"))

    @pytest.mark.asyncio
    async def test_duplicate_create(self):
        repo = InMemoryAccountRepository()
        await repo.create("cust_001", "ACC-1", Decimal("10"))

        with pytest.raises(AccountAlreadyExistsError):
            await repo.create("cust_001", "ACC-1", Decimal("10"))

    def test_negative_balance_is_not_a_valid_account(self):
        with pytest.raises(ValidationError):
            Account(id="acc_001", customer_id="cust_001", account_number="ACC-1", balance=Decimal("-1"))


class TestLedgerEntryRepository:
    """Test the in-memory ledger store."""

    @pytest.mark.asyncio
    async def test_append_assigns_id_and_timestamp(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        repo = InMemoryLedgerEntryRepository(clock=lambda: now)

        entry = await repo.append(draft("t1", "acc_001", "acc_002"))

        assert entry.id
        assert entry.timestamp == now
        assert entry.amount == Decimal("10")

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase(self):
        frozen = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        repo = InMemoryLedgerEntryRepository(clock=lambda: frozen)

        entries = [await repo.append(draft(f"t{i}", "acc_001", "acc_002")) for i in range(3)]

        assert [e.timestamp for e in entries] == [
            frozen,
            frozen + timedelta(microseconds=1),
            frozen + timedelta(microseconds=2),
        ]

    @pytest.mark.asyncio
    async def test_append_is_idempotent_per_transfer(self):
        repo = InMemoryLedgerEntryRepository()

        first = await repo.append(draft("t1", "acc_001", "acc_002"))
        again = await repo.append(draft("t1", "acc_001", "acc_002"))

        assert again == first
        assert await repo.get_entries_count() == 1

    @pytest.mark.asyncio
    async def test_sequence_is_lazy_and_restartable(self):
        repo = InMemoryLedgerEntryRepository()
        await repo.append(draft("t1", "acc_001", "acc_002"))
        sequence = repo.list_for_account("acc_002")

        first_pass = [e.transfer_id async for e in sequence]
        await repo.append(draft("t2", "acc_003", "acc_002"))
        await repo.append(draft("t3", "acc_003", "acc_004"))
        second_pass = [e.transfer_id async for e in sequence]

        assert first_pass == ["t1"]
        assert second_pass == ["t1", "t2"]

    @pytest.mark.parametrize("amount", ["0", "-1"])
    def test_entry_amount_must_be_positive(self, amount):
        with pytest.raises(ValidationError):
            draft("t1", "acc_001", "acc_002", amount)

    def test_entry_accounts_must_differ(self):
        with pytest.raises(ValidationError):
            draft("t1", "acc_001", "acc_001")


class TestParseAmount:
    """Test amount parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("10", Decimal("10.00")),
        (10, Decimal("10.00")),
        (10.5, Decimal("10.50")),
        (" 0.01 ", Decimal("0.01")),
        (Decimal("-3.2"), Decimal("-3.20")),
        ("9999999999.99", Decimal("9999999999.99")),
    ])
    def test_valid_amounts(self, value, expected):
        assert parse_amount(value) == expected

    @pytest.mark.parametrize("value", [
        None, True, "", "abc", "NaN", "-Infinity", "0.001", object(),
        "1e30", "9" * 29, "10000000000.00", Decimal("-1e11"),
    ])
    def test_malformed_amounts(self, value):
        assert parse_amount(value) is None


class TestResponseSchemas:
    """Test JSON rendering of money fields."""

    def test_balance_serializes_as_number(self):
        response = AccountResponse(id="acc_001", customerId="cust_001", accountNumber="ACC-1", balance=Decimal("12.50"))

        assert response.model_dump(mode="json")["balance"] == 12.5
        assert response.model_dump()["balance"] == Decimal("12.50")

    def test_transfer_amount_serializes_as_number(self):
        response = TransferResponse(
            transferId="t1",
            status=Outcome.degraded,
            sourceAccountId="acc_001",
            targetAccountId="acc_002",
            amount=Decimal("30.00")
        )

        data = response.model_dump(mode="json")
        assert data["amount"] == 30.0
        assert data["status"] == "degraded"
        assert data["entryId"] is None
