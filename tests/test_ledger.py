from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import ledger as ledger_module
from database import Base
from errors import BadRequestError, NotFoundError, UnauthorizedError
from ledger import Ledger, signed_effects
from models import Account, AccountType, CategoryType, Transaction, TransactionType
from schemas import AccountIn, CategoryIn, TransactionIn, TransactionUpdate
from services import AccountService, CategoryService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _setup(session, user_id: int = 1):
    accounts = AccountService(session, user_id)
    wallet = accounts.create(
        AccountIn(name="Wallet", type=AccountType.cash, initial_balance=Decimal("100"))
    )
    bank = accounts.create(
        AccountIn(name="Bank", type=AccountType.bank, initial_balance=Decimal("500"))
    )
    categories = CategoryService(session, user_id)
    food = categories.create(CategoryIn(name="Food", type=CategoryType.expense))
    salary = categories.create(CategoryIn(name="Salary", type=CategoryType.income))
    return wallet, bank, food, salary


def _balance(session, account_id: int) -> Decimal:
    session.expire_all()
    return session.get(Account, account_id).balance


def test_signed_effects_per_type() -> None:
    assert signed_effects(TransactionType.income, Decimal("10"), 1) == {
        1: Decimal("10")
    }
    assert signed_effects(TransactionType.expense, Decimal("10"), 1) == {
        1: Decimal("-10")
    }
    assert signed_effects(TransactionType.transfer, Decimal("10"), 1, 2) == {
        1: Decimal("-10"),
        2: Decimal("10"),
    }
    with pytest.raises(BadRequestError):
        signed_effects(TransactionType.transfer, Decimal("10"), 1, 1)
    with pytest.raises(BadRequestError):
        signed_effects(TransactionType.transfer, Decimal("10"), 1)
    with pytest.raises(BadRequestError):
        signed_effects(TransactionType.expense, Decimal("10"), 1, 2)


def test_expense_create_edit_delete_restores_balance() -> None:
    session = make_session()
    wallet, _bank, food, _salary = _setup(session)
    txns = TransactionService(session, 1)

    txn = txns.create(
        TransactionIn(
            account_id=wallet.id,
            category_id=food.id,
            type=TransactionType.expense,
            amount=Decimal("30"),
            transaction_date=date(2024, 3, 1),
        )
    )
    assert txn.description == "Food"
    assert _balance(session, wallet.id) == Decimal("70")

    txns.update(txn.id, TransactionUpdate(amount=Decimal("50")))
    assert _balance(session, wallet.id) == Decimal("50")

    txns.delete(txn.id)
    assert _balance(session, wallet.id) == Decimal("100")
    deleted = txns.get(txn.id, include_deleted=True)
    assert not deleted.is_active
    assert deleted.deleted_at is not None


def test_income_edit_applies_only_the_delta() -> None:
    session = make_session()
    wallet, _bank, _food, salary = _setup(session)
    txns = TransactionService(session, 1)

    txn = txns.create(
        TransactionIn(
            account_id=wallet.id,
            category_id=salary.id,
            type=TransactionType.income,
            amount=Decimal("200.1234"),
        )
    )
    assert _balance(session, wallet.id) == Decimal("300.1234")

    txns.update(txn.id, TransactionUpdate(amount=Decimal("150")))
    assert _balance(session, wallet.id) == Decimal("250")


def test_transfer_moves_money_between_accounts() -> None:
    session = make_session()
    wallet, bank, food, _salary = _setup(session)
    txns = TransactionService(session, 1)

    txn = txns.create(
        TransactionIn(
            account_id=bank.id,
            category_id=food.id,
            type=TransactionType.transfer,
            amount=Decimal("120"),
            transfer_to_account_id=wallet.id,
        )
    )
    assert _balance(session, bank.id) == Decimal("380")
    assert _balance(session, wallet.id) == Decimal("220")

    txns.update(txn.id, TransactionUpdate(amount=Decimal("100")))
    assert _balance(session, bank.id) == Decimal("400")
    assert _balance(session, wallet.id) == Decimal("200")

    txns.delete(txn.id)
    assert _balance(session, bank.id) == Decimal("500")
    assert _balance(session, wallet.id) == Decimal("100")


def test_transfer_to_unknown_account_leaves_source_untouched() -> None:
    session = make_session()
    wallet, _bank, food, _salary = _setup(session)
    txns = TransactionService(session, 1)

    with pytest.raises(NotFoundError):
        txns.create(
            TransactionIn(
                account_id=wallet.id,
                category_id=food.id,
                type=TransactionType.transfer,
                amount=Decimal("40"),
                transfer_to_account_id=9999,
            )
        )
    assert _balance(session, wallet.id) == Decimal("100")
    assert session.query(Transaction).count() == 0


def test_failure_after_balance_shift_rolls_back_everything(monkeypatch) -> None:
    session = make_session()
    wallet, bank, food, _salary = _setup(session)
    txns = TransactionService(session, 1)

    def boom(*_args, **_kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(ledger_module.logger, "debug", boom)
    with pytest.raises(RuntimeError):
        txns.create(
            TransactionIn(
                account_id=bank.id,
                category_id=food.id,
                type=TransactionType.transfer,
                amount=Decimal("75"),
                transfer_to_account_id=wallet.id,
            )
        )
    assert _balance(session, bank.id) == Decimal("500")
    assert _balance(session, wallet.id) == Decimal("100")
    assert session.query(Transaction).count() == 0


def test_same_account_transfer_is_rejected() -> None:
    session = make_session()
    wallet, _bank, food, _salary = _setup(session)

    with pytest.raises(ValidationError):
        TransactionIn(
            account_id=wallet.id,
            category_id=food.id,
            type=TransactionType.transfer,
            amount=Decimal("10"),
            transfer_to_account_id=wallet.id,
        )

    txn = Transaction(
        account_id=wallet.id,
        category_id=food.id,
        type=TransactionType.transfer,
        amount=Decimal("10"),
        description="Loop",
        transaction_date=date(2024, 1, 1),
        transfer_to_account_id=wallet.id,
    )
    with pytest.raises(BadRequestError):
        Ledger(session, 1).apply_create(txn)
    session.rollback()
    assert _balance(session, wallet.id) == Decimal("100")


def test_deleted_transaction_cannot_be_changed() -> None:
    session = make_session()
    wallet, _bank, food, _salary = _setup(session)
    txns = TransactionService(session, 1)
    txn = txns.create(
        TransactionIn(
            account_id=wallet.id,
            category_id=food.id,
            type=TransactionType.expense,
            amount=Decimal("10"),
        )
    )
    txns.delete(txn.id)

    with pytest.raises(NotFoundError):
        txns.update(txn.id, TransactionUpdate(amount=Decimal("5")))
    with pytest.raises(NotFoundError):
        txns.delete(txn.id)
    assert _balance(session, wallet.id) == Decimal("100")


def test_other_users_cannot_touch_transactions() -> None:
    session = make_session()
    wallet, _bank, food, _salary = _setup(session)
    txn = TransactionService(session, 1).create(
        TransactionIn(
            account_id=wallet.id,
            category_id=food.id,
            type=TransactionType.expense,
            amount=Decimal("10"),
        )
    )
    intruder = TransactionService(session, 2)
    with pytest.raises(NotFoundError):
        intruder.delete(txn.id)
    with pytest.raises(NotFoundError):
        intruder.create(
            TransactionIn(
                account_id=wallet.id,
                category_id=food.id,
                type=TransactionType.expense,
                amount=Decimal("10"),
            )
        )
    assert _balance(session, wallet.id) == Decimal("90")


def test_missing_caller_is_unauthorized() -> None:
    session = make_session()
    with pytest.raises(UnauthorizedError):
        TransactionService(session, None)
    with pytest.raises(UnauthorizedError):
        Ledger(session, 0)


def test_derived_balance_matches_stored_balance() -> None:
    session = make_session()
    wallet, bank, food, salary = _setup(session)
    txns = TransactionService(session, 1)
    txns.create(
        TransactionIn(
            account_id=wallet.id,
            category_id=salary.id,
            type=TransactionType.income,
            amount=Decimal("1000"),
        )
    )
    spent = txns.create(
        TransactionIn(
            account_id=wallet.id,
            category_id=food.id,
            type=TransactionType.expense,
            amount=Decimal("12.3456"),
        )
    )
    txns.create(
        TransactionIn(
            account_id=wallet.id,
            category_id=food.id,
            type=TransactionType.transfer,
            amount=Decimal("300"),
            transfer_to_account_id=bank.id,
        )
    )
    txns.delete(spent.id)

    accounts = AccountService(session, 1)
    for account in (wallet, bank):
        check = accounts.reconcile(account.id)
        assert check.drift == 0
    assert _balance(session, wallet.id) == Decimal("800")
    assert _balance(session, bank.id) == Decimal("800")


def test_reconcile_repairs_drift() -> None:
    session = make_session()
    wallet, _bank, _food, _salary = _setup(session)
    session.get(Account, wallet.id).balance = Decimal("42")
    session.commit()

    accounts = AccountService(session, 1)
    check = accounts.reconcile(wallet.id, repair=True)
    assert check.drift == Decimal("-58")
    assert _balance(session, wallet.id) == Decimal("100")
