from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from config import get_settings
from database import atomic
from errors import BadRequestError, NotFoundError, require_caller
from ledger import Ledger, find_owned_account, find_visible_category
from models import (
    Account,
    Budget,
    Category,
    CategoryType,
    RecurringTransaction,
    Transaction,
    TransactionType,
)
from money import ZERO, percentage_of, to_money, to_percent
from periods import Period, iter_days, month_period, resolve_period
from recurrence import (
    RecurringEngine,
    RecurringState,
    local_today,
    recurring_state,
)
from schemas import (
    AccountIn,
    AccountSummary,
    AccountUpdate,
    BudgetIn,
    BudgetStatus,
    BudgetUpdate,
    CategoryIn,
    CategorySummary,
    CategoryUpdate,
    DailyFlow,
    DashboardSummary,
    MonthlyReport,
    RecurringTransactionIn,
    RecurringTransactionUpdate,
    TransactionIn,
    TransactionUpdate,
)

logger = logging.getLogger(__name__)

TOP_CATEGORY_LIMIT = 5


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    type: Optional[TransactionType] = None
    start: Optional[date] = None
    end: Optional[date] = None


@dataclass(frozen=True)
class BalanceCheck:
    account_id: int
    balance: Decimal
    derived: Decimal

    @property
    def drift(self) -> Decimal:
        return self.balance - self.derived


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = require_caller(user_id)

    def _visible(self):
        return or_(Category.user_id == self.user_id, Category.is_default.is_(True))

    def list_all(self, type: Optional[CategoryType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.is_active, self._visible())
            .order_by(Category.type, Category.is_default.desc(), Category.name)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        return find_visible_category(self.session, category_id, self.user_id)

    def create(self, data: CategoryIn) -> Category:
        with atomic(self.session):
            if self._name_taken(data.name):
                raise BadRequestError("Category with this name already exists")
            category = Category(
                user_id=self.user_id,
                name=data.name.strip(),
                type=data.type,
                icon=data.icon,
                color=data.color,
                is_default=False,
            )
            self.session.add(category)
        self.session.refresh(category)
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        with atomic(self.session):
            category = self._editable(category_id)
            if data.name is not None and data.name.strip() != category.name:
                if self._name_taken(data.name):
                    raise BadRequestError("Category with this name already exists")
                category.name = data.name.strip()
            if data.icon is not None:
                category.icon = data.icon
            if data.color is not None:
                category.color = data.color
        return category

    def delete(self, category_id: int) -> None:
        with atomic(self.session):
            category = self._editable(category_id)
            category.mark_deleted()

    def _editable(self, category_id: int) -> Category:
        category = self.get(category_id)
        if category.is_default or category.user_id != self.user_id:
            raise BadRequestError("Cannot modify this category")
        return category

    def _name_taken(self, name: str) -> bool:
        existing = self.session.scalar(
            select(Category.id).where(
                Category.is_active,
                self._visible(),
                func.lower(Category.name) == name.strip().lower(),
            )
        )
        return existing is not None


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = require_caller(user_id)

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id, Account.is_active)
            .order_by(Account.is_default.desc(), Account.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        return find_owned_account(self.session, account_id, self.user_id)

    def create(self, data: AccountIn) -> Account:
        settings = get_settings()
        with atomic(self.session):
            if self._name_taken(data.name):
                raise BadRequestError("Account with this name already exists")
            if data.is_default:
                self._clear_default()
            opening = to_money(data.initial_balance)
            account = Account(
                user_id=self.user_id,
                team_id=data.team_id,
                name=data.name.strip(),
                type=data.type,
                opening_balance=opening,
                balance=opening,
                currency=(data.currency or settings.default_currency).upper(),
                icon=data.icon,
                color=data.color,
                is_default=data.is_default,
            )
            self.session.add(account)
        self.session.refresh(account)
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        with atomic(self.session):
            account = self.get(account_id)
            if data.name is not None and data.name.strip() != account.name:
                if self._name_taken(data.name):
                    raise BadRequestError("Account with this name already exists")
                account.name = data.name.strip()
            if data.type is not None:
                account.type = data.type
            if data.icon is not None:
                account.icon = data.icon
            if data.color is not None:
                account.color = data.color
            if data.is_default is not None:
                if data.is_default:
                    self._clear_default()
                account.is_default = data.is_default
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        with atomic(self.session):
            account = self.get(account_id)
            account.is_default = False
            account.mark_deleted()

    def total_balance(self) -> Decimal:
        total = self.session.execute(
            select(func.coalesce(func.sum(Account.balance), 0)).where(
                Account.user_id == self.user_id, Account.is_active
            )
        ).scalar_one()
        return to_money(total or 0)

    def reconcile(self, account_id: int, *, repair: bool = False) -> BalanceCheck:
        """Compare the stored balance with the one derived from history."""
        with atomic(self.session):
            account = find_owned_account(
                self.session, account_id, self.user_id, include_inactive=True
            )
            check = BalanceCheck(
                account_id=account.id,
                balance=to_money(account.balance),
                derived=Ledger(self.session, self.user_id).derived_balance(account.id),
            )
            if check.drift and repair:
                logger.warning(
                    f"balance_repaired: account={account.id} "
                    f"stored={check.balance} derived={check.derived}"
                )
                account.balance = check.derived
        return check

    def _clear_default(self) -> None:
        self.session.execute(
            update(Account)
            .where(Account.user_id == self.user_id, Account.is_default.is_(True))
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )

    def _name_taken(self, name: str) -> bool:
        existing = self.session.scalar(
            select(Account.id).where(
                Account.user_id == self.user_id,
                Account.is_active,
                func.lower(Account.name) == name.strip().lower(),
            )
        )
        return existing is not None


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = require_caller(user_id)
        self.ledger = Ledger(session, self.user_id)

    def create(self, data: TransactionIn) -> Transaction:
        with atomic(self.session):
            category = find_visible_category(
                self.session, data.category_id, self.user_id
            )
            txn = Transaction(
                account_id=data.account_id,
                category_id=category.id,
                type=data.type,
                amount=data.amount,
                description=data.description or category.name,
                note=data.note,
                reference_number=data.reference_number,
                transaction_date=data.transaction_date or local_today(),
                transfer_to_account_id=data.transfer_to_account_id,
            )
            self.ledger.apply_create(txn)
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id, Transaction.id == transaction_id
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.is_active)
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction", transaction_id)
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        with atomic(self.session):
            txn = self.get(transaction_id)
            if data.category_id is not None:
                category = find_visible_category(
                    self.session, data.category_id, self.user_id
                )
                txn.category_id = category.id
            if data.amount is not None:
                self.ledger.apply_update(txn, data.amount)
            if data.description is not None:
                txn.description = data.description
            if data.note is not None:
                txn.note = data.note
            if data.transaction_date is not None:
                txn.transaction_date = data.transaction_date
            if data.reference_number is not None:
                txn.reference_number = data.reference_number
        self.session.refresh(txn)
        return txn

    def delete(self, transaction_id: int) -> None:
        with atomic(self.session):
            txn = self.get(transaction_id)
            self.ledger.apply_delete(txn)

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == self.user_id, Transaction.is_active)
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if filters.account_id:
            stmt = stmt.where(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.transfer_to_account_id == filters.account_id,
                )
            )
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.start:
            stmt = stmt.where(Transaction.transaction_date >= filters.start)
        if filters.end:
            stmt = stmt.where(Transaction.transaction_date <= filters.end)
        return self.session.scalars(stmt).all()

    def total_income(self, start: date, end: date) -> Decimal:
        return self._total(TransactionType.income, start, end)

    def total_expense(self, start: date, end: date) -> Decimal:
        return self._total(TransactionType.expense, start, end)

    def _total(self, txn_type: TransactionType, start: date, end: date) -> Decimal:
        total = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.is_active,
                Transaction.type == txn_type,
                Transaction.transaction_date.between(start, end),
            )
        ).scalar_one()
        return to_money(total or 0)


class RecurringTransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = require_caller(user_id)

    def get(self, recurring_id: int) -> RecurringTransaction:
        recurring = self.session.get(RecurringTransaction, recurring_id)
        if (
            not recurring
            or recurring.user_id != self.user_id
            or not recurring.is_active
        ):
            raise NotFoundError("Recurring transaction", recurring_id)
        return recurring

    def list(self) -> list[RecurringTransaction]:
        stmt = (
            select(RecurringTransaction)
            .where(
                RecurringTransaction.user_id == self.user_id,
                RecurringTransaction.is_active,
            )
            .order_by(RecurringTransaction.next_execution_date, RecurringTransaction.id)
        )
        return self.session.scalars(stmt).all()

    def list_running(self) -> list[RecurringTransaction]:
        return [r for r in self.list() if not r.is_paused]

    def create(self, data: RecurringTransactionIn) -> RecurringTransaction:
        if data.type == TransactionType.transfer:
            raise BadRequestError(
                "Transfer type is not supported for recurring transactions"
            )
        if data.end_date is not None and data.end_date < data.start_date:
            raise BadRequestError("End date must not be before start date")
        with atomic(self.session):
            find_owned_account(self.session, data.account_id, self.user_id)
            category = find_visible_category(
                self.session, data.category_id, self.user_id
            )
            recurring = RecurringTransaction(
                user_id=self.user_id,
                account_id=data.account_id,
                category_id=category.id,
                type=data.type,
                amount=to_money(data.amount),
                description=data.description or category.name,
                frequency=data.frequency,
                start_date=data.start_date,
                end_date=data.end_date,
                anchor_day=data.start_date.day,
                next_execution_date=data.start_date,
                is_paused=False,
            )
            self.session.add(recurring)
        self.session.refresh(recurring)
        return recurring

    def update(
        self, recurring_id: int, data: RecurringTransactionUpdate
    ) -> RecurringTransaction:
        with atomic(self.session):
            recurring = self.get(recurring_id)
            if data.category_id is not None:
                category = find_visible_category(
                    self.session, data.category_id, self.user_id
                )
                recurring.category_id = category.id
            if data.amount is not None:
                recurring.amount = to_money(data.amount)
            if data.description is not None:
                recurring.description = data.description
            if data.frequency is not None and data.frequency != recurring.frequency:
                recurring.frequency = data.frequency
                # The new cadence counts from the pending occurrence.
                recurring.anchor_day = recurring.next_execution_date.day
            if "end_date" in data.model_fields_set:
                # An explicit null clears the end date and revives an ended template.
                if data.end_date is not None and data.end_date < recurring.start_date:
                    raise BadRequestError("End date must not be before start date")
                recurring.end_date = data.end_date
            if data.is_paused is not None:
                recurring.is_paused = data.is_paused
        self.session.refresh(recurring)
        return recurring

    def pause(self, recurring_id: int) -> RecurringTransaction:
        return self._set_paused(recurring_id, True)

    def resume(self, recurring_id: int) -> RecurringTransaction:
        return self._set_paused(recurring_id, False)

    def delete(self, recurring_id: int) -> None:
        with atomic(self.session):
            recurring = self.get(recurring_id)
            recurring.mark_deleted()

    def execute(self, recurring_id: int) -> Transaction:
        return RecurringEngine(self.session).execute(recurring_id, self.user_id)

    def state(
        self, recurring_id: int, today: Optional[date] = None
    ) -> RecurringState:
        recurring = self.session.get(RecurringTransaction, recurring_id)
        if not recurring or recurring.user_id != self.user_id:
            raise NotFoundError("Recurring transaction", recurring_id)
        return recurring_state(recurring, today or local_today())

    def generated_count(self, recurring_id: int) -> int:
        self.get(recurring_id)
        count = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.recurring_source_id == recurring_id,
                Transaction.is_active,
            )
        ).scalar_one()
        return int(count or 0)

    def _set_paused(self, recurring_id: int, paused: bool) -> RecurringTransaction:
        with atomic(self.session):
            recurring = self.get(recurring_id)
            recurring.is_paused = paused
        self.session.refresh(recurring)
        return recurring


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = require_caller(user_id)

    @staticmethod
    def evaluate(
        amount: Decimal, spent: Decimal, alert_threshold: Decimal
    ) -> dict[str, object]:
        amount = to_money(amount)
        spent = to_money(spent)
        percentage_used = percentage_of(spent, amount)
        return {
            "spent": spent,
            "remaining": to_money(amount - spent),
            "percentage_used": percentage_used,
            "is_over_budget": spent > amount,
            "is_alert_triggered": percentage_used >= to_percent(alert_threshold),
        }

    def get_model(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id or not budget.is_active:
            raise NotFoundError("Budget", budget_id)
        return budget

    def get(self, budget_id: int) -> BudgetStatus:
        return self.status(self.get_model(budget_id))

    def create(self, data: BudgetIn) -> BudgetStatus:
        settings = get_settings()
        with atomic(self.session):
            category = find_visible_category(
                self.session, data.category_id, self.user_id
            )
            if self._exists(category.id, data.month, data.year):
                raise BadRequestError(
                    "Budget already exists for this category and period"
                )
            threshold = (
                data.alert_threshold
                if data.alert_threshold is not None
                else settings.default_alert_threshold
            )
            budget = Budget(
                user_id=self.user_id,
                category_id=category.id,
                month=data.month,
                year=data.year,
                amount=to_money(data.amount),
                alert_threshold=to_percent(threshold),
            )
            self.session.add(budget)
        self.session.refresh(budget)
        return self.status(budget)

    def update(self, budget_id: int, data: BudgetUpdate) -> BudgetStatus:
        with atomic(self.session):
            budget = self.get_model(budget_id)
            if data.amount is not None:
                budget.amount = to_money(data.amount)
            if data.alert_threshold is not None:
                budget.alert_threshold = to_percent(data.alert_threshold)
        self.session.refresh(budget)
        return self.status(budget)

    def delete(self, budget_id: int) -> None:
        with atomic(self.session):
            self.get_model(budget_id).mark_deleted()

    def list_for_month(self, month: int, year: int) -> list[BudgetStatus]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.is_active,
                Budget.month == month,
                Budget.year == year,
            )
            .order_by(Budget.category_id)
        )
        return [self.status(b) for b in self.session.scalars(stmt)]

    def list_for_year(self, year: int) -> list[BudgetStatus]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.is_active,
                Budget.year == year,
            )
            .order_by(Budget.month, Budget.category_id)
        )
        return [self.status(b) for b in self.session.scalars(stmt)]

    def spent_for(self, category_id: int, month: int, year: int) -> Decimal:
        period = month_period(year, month)
        spent = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.is_active,
                Transaction.type == TransactionType.expense,
                Transaction.category_id == category_id,
                Transaction.transaction_date.between(period.start, period.end),
            )
        ).scalar_one()
        return to_money(spent or 0)

    def status(self, budget: Budget) -> BudgetStatus:
        category = self.session.get(Category, budget.category_id)
        spent = self.spent_for(budget.category_id, budget.month, budget.year)
        return BudgetStatus(
            id=budget.id,
            category_id=budget.category_id,
            category_name=category.name if category else "",
            month=budget.month,
            year=budget.year,
            amount=to_money(budget.amount),
            alert_threshold=to_percent(budget.alert_threshold),
            **self.evaluate(budget.amount, spent, budget.alert_threshold),
        )

    def _exists(self, category_id: int, month: int, year: int) -> bool:
        existing = self.session.scalar(
            select(Budget.id).where(
                Budget.user_id == self.user_id,
                Budget.is_active,
                Budget.category_id == category_id,
                Budget.month == month,
                Budget.year == year,
            )
        )
        return existing is not None


class DashboardService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = require_caller(user_id)

    def summary(self, start: date, end: date) -> DashboardSummary:
        period = Period("custom", start, end)
        accounts = AccountService(self.session, self.user_id).list_all()
        total_balance = to_money(sum((a.balance for a in accounts), ZERO))
        income = self._total(TransactionType.income, period)
        expense = self._total(TransactionType.expense, period)
        count = self.session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.is_active,
                Transaction.transaction_date.between(period.start, period.end),
            )
        ).scalar_one()
        return DashboardSummary(
            start=period.start,
            end=period.end,
            total_balance=total_balance,
            total_income=income,
            total_expense=expense,
            net_flow=to_money(income - expense),
            total_transactions=int(count or 0),
            accounts=[
                AccountSummary(
                    id=a.id,
                    name=a.name,
                    type=a.type,
                    balance=to_money(a.balance),
                    currency=a.currency,
                    icon=a.icon,
                    color=a.color,
                )
                for a in accounts
            ],
            top_expense_categories=self.category_breakdown(
                period, TransactionType.expense, limit=TOP_CATEGORY_LIMIT
            ),
            top_income_categories=self.category_breakdown(
                period, TransactionType.income, limit=TOP_CATEGORY_LIMIT
            ),
        )

    def summary_for_period(
        self,
        period: Optional[str],
        start: Optional[str] = None,
        end: Optional[str] = None,
        *,
        today: Optional[date] = None,
    ) -> DashboardSummary:
        resolved = resolve_period(period, start, end, today=today or local_today())
        return self.summary(resolved.start, resolved.end)

    def monthly_report(self, month: int, year: int) -> MonthlyReport:
        period = month_period(year, month)
        income = self._total(TransactionType.income, period)
        expense = self._total(TransactionType.expense, period)
        return MonthlyReport(
            month=month,
            year=year,
            total_income=income,
            total_expense=expense,
            net_flow=to_money(income - expense),
            daily_flows=self.daily_flows(period),
            expense_breakdown=self.category_breakdown(period, TransactionType.expense),
            income_breakdown=self.category_breakdown(period, TransactionType.income),
        )

    def category_breakdown(
        self,
        period: Period,
        transaction_type: TransactionType,
        *,
        limit: Optional[int] = None,
    ) -> list[CategorySummary]:
        total = self._total(transaction_type, period)
        amount = func.coalesce(func.sum(Transaction.amount), 0).label("amount")
        stmt = (
            select(
                Category.id.label("category_id"),
                Category.name,
                Category.icon,
                Category.color,
                amount,
                func.count(Transaction.id).label("count"),
            )
            .join(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.is_active,
                Transaction.type == transaction_type,
                Transaction.transaction_date.between(period.start, period.end),
            )
            .group_by(Category.id, Category.name, Category.icon, Category.color)
            .order_by(func.sum(Transaction.amount).desc(), Category.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        breakdown = []
        for row in self.session.execute(stmt):
            row_amount = to_money(row.amount or 0)
            breakdown.append(
                CategorySummary(
                    category_id=row.category_id,
                    name=row.name,
                    icon=row.icon,
                    color=row.color,
                    amount=row_amount,
                    percentage=percentage_of(row_amount, total),
                    transaction_count=int(row.count or 0),
                )
            )
        return breakdown

    def daily_flows(self, period: Period) -> list[DailyFlow]:
        stmt = (
            select(
                Transaction.transaction_date,
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount), 0).label("amount"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.is_active,
                Transaction.type.in_([TransactionType.income, TransactionType.expense]),
                Transaction.transaction_date.between(period.start, period.end),
            )
            .group_by(Transaction.transaction_date, Transaction.type)
        )
        totals: dict[tuple[date, TransactionType], Decimal] = {}
        for row in self.session.execute(stmt):
            totals[(row.transaction_date, row.type)] = to_money(row.amount or 0)

        flows = []
        for day in iter_days(period):
            income = totals.get((day, TransactionType.income), ZERO)
            expense = totals.get((day, TransactionType.expense), ZERO)
            flows.append(
                DailyFlow(
                    day=day.day,
                    date=day,
                    income=income,
                    expense=expense,
                    net=to_money(income - expense),
                )
            )
        return flows

    def _total(self, txn_type: TransactionType, period: Period) -> Decimal:
        total = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.is_active,
                Transaction.type == txn_type,
                Transaction.transaction_date.between(period.start, period.end),
            )
        ).scalar_one()
        return to_money(total or 0)
