from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator
from enum import Enum
from typing import List, Optional
from datetime import datetime
from decimal import Decimal, InvalidOperation
import re


CENT = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999.99")


def parse_amount(value) -> Optional[Decimal]:
    """
    Convert a caller-supplied amount to a two-place Decimal.

    Returns None for anything that is not a finite number with at most two
    fractional digits and at most MAX_AMOUNT in magnitude. Sign is not
    checked here.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        if not amount.is_finite() or abs(amount) > MAX_AMOUNT:
            return None
        quantized = amount.quantize(CENT)
    except (InvalidOperation, ValueError, TypeError):
        return None
    if amount != quantized:
        return None
    return quantized


# Domain entities

class Customer(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None


class Account(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    customer_id: str
    account_number: str
    balance: Decimal = Field(..., ge=0)


class NewLedgerEntry(BaseModel):
    """A ledger entry before the store assigns its id and timestamp."""

    model_config = ConfigDict(frozen=True)

    transfer_id: str
    source_account_id: str
    target_account_id: str
    amount: Decimal = Field(..., gt=0)

    @model_validator(mode="after")
    def check_distinct_accounts(self):
        if self.source_account_id == self.target_account_id:
            raise ValueError("Ledger entry must reference two different accounts")
        return self


class TransactionHistory(NewLedgerEntry):
    id: str
    timestamp: datetime

    def involves(self, account_id: str) -> bool:
        return account_id in (self.source_account_id, self.target_account_id)


# Typed outcomes

class Outcome(str, Enum):
    ok = "ok"
    invalid_amount = "invalid_amount"
    same_account = "same_account"
    invalid_accounts = "invalid_accounts"
    insufficient_funds = "insufficient_funds"
    account_number_in_use = "account_number_in_use"
    not_found = "not_found"
    degraded = "degraded"


class TransferResult(BaseModel):
    transfer_id: str
    outcome: Outcome
    source_account_id: str
    target_account_id: str
    amount: Optional[Decimal] = None
    entry: Optional[TransactionHistory] = None
    detail: str = ""

    @property
    def committed(self) -> bool:
        """True when money moved, whether or not the ledger entry is confirmed."""
        return self.outcome in (Outcome.ok, Outcome.degraded)


class AccountResult(BaseModel):
    outcome: Outcome
    account: Optional[Account] = None
    detail: str = ""


class HistoryResult(BaseModel):
    outcome: Outcome
    entries: List[TransactionHistory] = []
    detail: str = ""


# HTTP schemas

class TransferRequest(BaseModel):
    sourceAccountId: str = Field(..., min_length=1, max_length=50, description="Account to debit")
    targetAccountId: str = Field(..., min_length=1, max_length=50, description="Account to credit")
    amount: Decimal = Field(
        ...,
        max_digits=12,
        decimal_places=2,
        description="Amount to move, must be positive"
    )
    idempotencyKey: Optional[str] = Field(
        None,
        min_length=1,
        max_length=100,
        description="Optional key making retries of the same transfer safe"
    )

    @field_validator('idempotencyKey')
    @classmethod
    def validate_idempotency_key(cls, v):
        if v is not None and not re.match(r'^[a-zA-Z0-9_-]+$', v):
            raise ValueError('Idempotency key must contain only alphanumeric characters, underscores, and hyphens')
        return v


class TransferResponse(BaseModel):
    transferId: str = Field(..., description="Unique transfer identifier")
    status: Outcome = Field(..., description="Transfer outcome")
    sourceAccountId: str
    targetAccountId: str
    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    entryId: Optional[str] = Field(None, description="Ledger entry id, missing while degraded")
    timestamp: Optional[datetime] = Field(None, description="Ledger entry timestamp")

    @field_serializer("amount", when_used="json")
    def serialize_amount(self, v: Decimal) -> float:
        return float(v)


class CreateAccountRequest(BaseModel):
    customerId: str = Field(..., min_length=1, max_length=50, description="Owning customer")
    accountNumber: str = Field(..., min_length=1, max_length=34, description="Account number, unique per customer")
    initialDeposit: Decimal = Field(..., max_digits=12, decimal_places=2, description="Opening balance")


class AccountResponse(BaseModel):
    id: str
    customerId: str
    accountNumber: str
    balance: Decimal

    @field_serializer("balance", when_used="json")
    def serialize_balance(self, v: Decimal) -> float:
        return float(v)

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            customerId=account.customer_id,
            accountNumber=account.account_number,
            balance=account.balance,
        )


class TransactionHistoryResponse(BaseModel):
    id: str
    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    timestamp: datetime
    sourceAccountNumber: Optional[str] = None
    targetAccountNumber: Optional[str] = None

    @field_serializer("amount", when_used="json")
    def serialize_amount(self, v: Decimal) -> float:
        return float(v)


class ReplayResponse(BaseModel):
    resolved: int = Field(..., description="Pending items settled by this replay")
    remaining: int = Field(..., description="Pending items still awaiting reconciliation")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of accounts in system")
    transactions_recorded: int = Field(..., description="Total ledger entries recorded")
    pending_reconciliation: int = Field(..., description="Transfers awaiting reconciliation")
