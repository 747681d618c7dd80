from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import BadRequestError, NotFoundError
from models import AccountType, CategoryType, TransactionType
from schemas import AccountIn, BudgetIn, BudgetUpdate, CategoryIn, TransactionIn
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    TransactionService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _setup(session):
    account = AccountService(session, 1).create(
        AccountIn(name="Card", type=AccountType.credit_card)
    )
    groceries = CategoryService(session, 1).create(
        CategoryIn(name="Groceries", type=CategoryType.expense)
    )
    return account, groceries


def _spend(session, account, category, amount: str, on: date, kind=None):
    return TransactionService(session, 1).create(
        TransactionIn(
            account_id=account.id,
            category_id=category.id,
            type=kind or TransactionType.expense,
            amount=Decimal(amount),
            transaction_date=on,
        )
    )


def test_evaluate_rounds_half_up_and_flags_thresholds() -> None:
    result = BudgetService.evaluate(Decimal("300"), Decimal("200"), Decimal("80"))
    assert result["percentage_used"] == Decimal("66.67")
    assert result["remaining"] == Decimal("100")
    assert not result["is_over_budget"]
    assert not result["is_alert_triggered"]

    at_threshold = BudgetService.evaluate(
        Decimal("100"), Decimal("80"), Decimal("80.00")
    )
    assert at_threshold["percentage_used"] == Decimal("80.00")
    assert at_threshold["is_alert_triggered"]

    over = BudgetService.evaluate(Decimal("100"), Decimal("120.5"), Decimal("80"))
    assert over["is_over_budget"]
    assert over["remaining"] == Decimal("-20.5")
    assert over["percentage_used"] == Decimal("120.50")


def test_zero_budget_reports_zero_percent() -> None:
    result = BudgetService.evaluate(Decimal("0"), Decimal("15"), Decimal("80"))
    assert result["percentage_used"] == Decimal("0.00")
    assert result["is_over_budget"]
    assert not result["is_alert_triggered"]

    untouched = BudgetService.evaluate(Decimal("0"), Decimal("0"), Decimal("80"))
    assert not untouched["is_over_budget"]


def test_status_counts_only_active_expenses_in_month() -> None:
    session = make_session()
    account, groceries = _setup(session)
    budgets = BudgetService(session, 1)
    budget = budgets.create(
        BudgetIn(category_id=groceries.id, amount=Decimal("400"), month=3, year=2024)
    )
    assert budget.alert_threshold == Decimal("80.00")
    assert budget.spent == Decimal("0")

    _spend(session, account, groceries, "100", date(2024, 3, 1))
    _spend(session, account, groceries, "250", date(2024, 3, 31))
    refunded = _spend(session, account, groceries, "60", date(2024, 3, 15))
    TransactionService(session, 1).delete(refunded.id)
    # Outside the month and income in the same category are ignored.
    _spend(session, account, groceries, "999", date(2024, 4, 1))
    _spend(
        session,
        account,
        groceries,
        "40",
        date(2024, 3, 10),
        kind=TransactionType.income,
    )

    status = budgets.get(budget.id)
    assert status.spent == Decimal("350")
    assert status.remaining == Decimal("50")
    assert status.percentage_used == Decimal("87.50")
    assert status.is_alert_triggered
    assert not status.is_over_budget
    assert status.category_name == "Groceries"


def test_duplicate_budget_for_period_is_rejected() -> None:
    session = make_session()
    _account, groceries = _setup(session)
    budgets = BudgetService(session, 1)
    budgets.create(
        BudgetIn(category_id=groceries.id, amount=Decimal("100"), month=5, year=2024)
    )
    with pytest.raises(BadRequestError):
        budgets.create(
            BudgetIn(
                category_id=groceries.id, amount=Decimal("200"), month=5, year=2024
            )
        )
    budgets.create(
        BudgetIn(category_id=groceries.id, amount=Decimal("200"), month=6, year=2024)
    )
    assert len(budgets.list_for_year(2024)) == 2
    assert len(budgets.list_for_month(5, 2024)) == 1


def test_update_and_delete_budget() -> None:
    session = make_session()
    account, groceries = _setup(session)
    budgets = BudgetService(session, 1)
    created = budgets.create(
        BudgetIn(
            category_id=groceries.id,
            amount=Decimal("100"),
            month=1,
            year=2025,
            alert_threshold=Decimal("50.00"),
        )
    )
    _spend(session, account, groceries, "60", date(2025, 1, 2))
    assert budgets.get(created.id).is_alert_triggered

    updated = budgets.update(
        created.id, BudgetUpdate(amount=Decimal("200"), alert_threshold=Decimal("90"))
    )
    assert updated.percentage_used == Decimal("30.00")
    assert not updated.is_alert_triggered

    budgets.delete(created.id)
    with pytest.raises(NotFoundError):
        budgets.get(created.id)
    assert budgets.list_for_month(1, 2025) == []
    with pytest.raises(NotFoundError):
        BudgetService(session, 2).get(created.id)
