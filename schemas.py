from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, model_validator

from models import AccountType, Budget, BudgetPeriod, Transaction, TransactionType

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _lower_kind(value: object) -> object:
    if isinstance(value, str):
        return value.strip().lower()
    return value


# "Income" and " EXPENSE " are accepted; unknown kinds are rejected
Kind = Annotated[TransactionType, BeforeValidator(_lower_kind)]


class UserRegisterIn(BaseModel):
    first_name: str = Field(..., min_length=2, max_length=50)
    last_name: str = Field(..., min_length=2, max_length=50)
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=8, max_length=128)


class LoginIn(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class TokenOut(BaseModel):
    token: str
    user_id: int
    email: str
    first_name: str
    last_name: str


class AccountIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    type: AccountType
    balance: Decimal = Field(default=Decimal("0"), max_digits=15, decimal_places=2)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    description: Optional[str] = Field(default=None, max_length=500)
    bank_name: Optional[str] = Field(default=None, max_length=100)
    color: Optional[str] = Field(default=None, max_length=9)
    is_active: Optional[bool] = None


class AccountUpdateIn(BaseModel):
    """Metadata only; the balance is owned by the ledger."""

    name: str = Field(..., min_length=2, max_length=100)
    type: AccountType
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    description: Optional[str] = Field(default=None, max_length=500)
    bank_name: Optional[str] = Field(default=None, max_length=100)
    color: Optional[str] = Field(default=None, max_length=9)
    is_active: Optional[bool] = None


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance: Decimal
    opening_balance: Decimal
    currency: str
    description: Optional[str]
    bank_name: Optional[str]
    color: Optional[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ReconcileOut(BaseModel):
    account_id: int
    balance: Decimal
    computed_balance: Decimal
    drift: Decimal


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    type: Kind
    icon: Optional[str] = Field(default=None, max_length=16)
    color: Optional[str] = Field(default=None, max_length=9)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: Optional[bool] = None


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: TransactionType
    icon: Optional[str]
    color: Optional[str]
    description: Optional[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class TransactionIn(BaseModel):
    description: str = Field(..., min_length=2, max_length=200)
    amount: Decimal = Field(..., gt=0, max_digits=15, decimal_places=2)
    type: Kind
    category_id: int
    account_id: Optional[int] = None
    date: date
    notes: Optional[str] = Field(default=None, max_length=500)


class TransactionOut(BaseModel):
    id: int
    description: str
    amount: Decimal
    type: TransactionType
    date: date
    notes: Optional[str]
    category_id: int
    category_name: Optional[str]
    account_id: Optional[int]
    account_name: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, txn: Transaction) -> "TransactionOut":
        return cls(
            id=txn.id,
            description=txn.description,
            amount=txn.amount,
            type=txn.type,
            date=txn.date,
            notes=txn.notes,
            category_id=txn.category_id,
            category_name=txn.category.name if txn.category else None,
            account_id=txn.account_id,
            account_name=txn.account.name if txn.account else None,
            created_at=txn.created_at,
            updated_at=txn.updated_at,
        )


class TransactionPageOut(BaseModel):
    items: list[TransactionOut]
    page: int
    limit: int
    has_more: bool


class BudgetIn(BaseModel):
    category_id: int
    amount: Decimal = Field(..., ge=0, max_digits=15, decimal_places=2)
    period: BudgetPeriod = BudgetPeriod.monthly
    start_date: date
    end_date: Optional[date] = None
    alert_threshold: int = Field(default=80, ge=0, le=100)
    is_active: Optional[bool] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _check_window(self) -> "BudgetIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class BudgetOut(BaseModel):
    id: int
    category_id: int
    category_name: Optional[str]
    amount: Decimal
    period: BudgetPeriod
    start_date: date
    end_date: Optional[date]
    alert_threshold: int
    is_active: bool
    notes: Optional[str]
    spent: Decimal
    remaining: Decimal
    percent_spent: Decimal
    is_over_budget: bool
    should_alert: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, budget: Budget, progress) -> "BudgetOut":
        return cls(
            id=budget.id,
            category_id=budget.category_id,
            category_name=budget.category.name if budget.category else None,
            amount=budget.amount,
            period=budget.period,
            start_date=budget.start_date,
            end_date=budget.end_date,
            alert_threshold=budget.alert_threshold,
            is_active=budget.is_active,
            notes=budget.notes,
            spent=progress.spent,
            remaining=progress.remaining,
            percent_spent=progress.percent_spent,
            is_over_budget=progress.is_over_budget,
            should_alert=progress.should_alert,
            created_at=budget.created_at,
            updated_at=budget.updated_at,
        )


class DashboardSummaryOut(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    net_balance: Decimal
    total_transactions: int


class YearlySummaryOut(BaseModel):
    year: int
    income: Decimal
    expenses: Decimal


class CSVRow(BaseModel):
    row: int
    date: date
    description: str
    amount_cents: int
    type: TransactionType
    category: str
    account: Optional[str]


class ImportResultOut(BaseModel):
    imported: int
