import datetime as dt
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AccountType, CategoryType, Frequency, TransactionType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    initial_balance: Decimal = Field(
        default=Decimal("0"), max_digits=19, decimal_places=4
    )
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    team_id: Optional[int] = None
    icon: Optional[str] = Field(default=None, max_length=50)
    color: Optional[str] = Field(default=None, max_length=9)
    is_default: bool = False


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    type: Optional[AccountType] = None
    icon: Optional[str] = Field(default=None, max_length=50)
    color: Optional[str] = Field(default=None, max_length=9)
    is_default: Optional[bool] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    icon: Optional[str] = Field(default=None, max_length=50)
    color: Optional[str] = Field(default=None, max_length=9)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    icon: Optional[str] = Field(default=None, max_length=50)
    color: Optional[str] = Field(default=None, max_length=9)


class TransactionIn(BaseModel):
    account_id: int
    category_id: int
    type: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=19, decimal_places=4)
    description: Optional[str] = Field(default=None, max_length=255)
    note: Optional[str] = None
    transaction_date: Optional[dt.date] = None
    reference_number: Optional[str] = Field(default=None, max_length=100)
    transfer_to_account_id: Optional[int] = None

    @model_validator(mode="after")
    def _check_transfer_target(self) -> "TransactionIn":
        if self.type == TransactionType.transfer:
            if self.transfer_to_account_id is None:
                raise ValueError("Transfer destination account is required")
            if self.transfer_to_account_id == self.account_id:
                raise ValueError("Cannot transfer to the same account")
        elif self.transfer_to_account_id is not None:
            raise ValueError("Only transfers can have a destination account")
        return self


class TransactionUpdate(BaseModel):
    amount: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=19, decimal_places=4
    )
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=255)
    note: Optional[str] = None
    transaction_date: Optional[dt.date] = None
    reference_number: Optional[str] = Field(default=None, max_length=100)


class RecurringTransactionIn(BaseModel):
    account_id: int
    category_id: int
    type: TransactionType
    amount: Decimal = Field(..., gt=0, max_digits=19, decimal_places=4)
    description: Optional[str] = Field(default=None, max_length=255)
    frequency: Frequency
    start_date: date
    end_date: Optional[dt.date] = None


class RecurringTransactionUpdate(BaseModel):
    category_id: Optional[int] = None
    amount: Optional[Decimal] = Field(
        default=None, gt=0, max_digits=19, decimal_places=4
    )
    description: Optional[str] = Field(default=None, max_length=255)
    frequency: Optional[Frequency] = None
    end_date: Optional[dt.date] = None
    is_paused: Optional[bool] = None


class BudgetIn(BaseModel):
    category_id: int
    amount: Decimal = Field(..., ge=0, max_digits=19, decimal_places=4)
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1970, le=3000)
    alert_threshold: Optional[Decimal] = Field(
        default=None, ge=0, le=Decimal("999.99"), decimal_places=2
    )


class BudgetUpdate(BaseModel):
    amount: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=19, decimal_places=4
    )
    alert_threshold: Optional[Decimal] = Field(
        default=None, ge=0, le=Decimal("999.99"), decimal_places=2
    )


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance: Decimal
    currency: str
    icon: Optional[str]
    color: Optional[str]
    is_default: bool
    team_id: Optional[int]


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    category_id: int
    type: TransactionType
    amount: Decimal
    description: str
    note: Optional[str]
    reference_number: Optional[str]
    transaction_date: date
    transfer_to_account_id: Optional[int]
    recurring_source_id: Optional[int]
    occurrence_date: Optional[date]


class RecurringTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    category_id: int
    type: TransactionType
    amount: Decimal
    description: str
    frequency: Frequency
    start_date: date
    end_date: Optional[date]
    anchor_day: Optional[int]
    next_execution_date: date
    last_executed_at: Optional[datetime]
    is_paused: bool


class BudgetStatus(BaseModel):
    id: int
    category_id: int
    category_name: str
    month: int
    year: int
    amount: Decimal
    alert_threshold: Decimal
    spent: Decimal
    remaining: Decimal
    percentage_used: Decimal
    is_over_budget: bool
    is_alert_triggered: bool


class CategorySummary(BaseModel):
    category_id: int
    name: str
    icon: Optional[str] = None
    color: Optional[str] = None
    amount: Decimal
    percentage: Decimal
    transaction_count: int


class AccountSummary(BaseModel):
    id: int
    name: str
    type: AccountType
    balance: Decimal
    currency: str
    icon: Optional[str] = None
    color: Optional[str] = None


class DashboardSummary(BaseModel):
    start: date
    end: date
    total_balance: Decimal
    total_income: Decimal
    total_expense: Decimal
    net_flow: Decimal
    total_transactions: int
    accounts: list[AccountSummary]
    top_expense_categories: list[CategorySummary]
    top_income_categories: list[CategorySummary]


class DailyFlow(BaseModel):
    day: int
    date: dt.date
    income: Decimal
    expense: Decimal
    net: Decimal


class MonthlyReport(BaseModel):
    month: int
    year: int
    total_income: Decimal
    total_expense: Decimal
    net_flow: Decimal
    daily_flows: list[DailyFlow]
    expense_breakdown: list[CategorySummary]
    income_breakdown: list[CategorySummary]
