import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from errors import BadRequestError, NotFoundError, require_caller
from models import Account, Category, Transaction, TransactionType
from money import Number, to_money

logger = logging.getLogger(__name__)


def signed_effects(
    txn_type: TransactionType,
    amount: Number,
    account_id: int,
    transfer_to_account_id: Optional[int] = None,
) -> dict[int, Decimal]:
    """Balance delta per account for a transaction of ``amount``.

    Income credits the source account, expense debits it, and a transfer
    debits the source while crediting the destination. A negative ``amount``
    yields the mirrored effects, which is how amount edits and reversals are
    expressed.
    """
    amount = to_money(amount)
    if txn_type == TransactionType.transfer:
        if transfer_to_account_id is None:
            raise BadRequestError("Transfer destination account is required")
        if transfer_to_account_id == account_id:
            raise BadRequestError("Cannot transfer to the same account")
        return {account_id: -amount, transfer_to_account_id: amount}
    if transfer_to_account_id is not None:
        raise BadRequestError("Only transfers can have a destination account")
    if txn_type == TransactionType.income:
        return {account_id: amount}
    return {account_id: -amount}


def find_owned_account(
    session: Session,
    account_id: int,
    user_id: int,
    *,
    include_inactive: bool = False,
) -> Account:
    account = session.get(Account, account_id)
    if not account or account.user_id != user_id:
        raise NotFoundError("Account", account_id)
    if not include_inactive and not account.is_active:
        raise NotFoundError("Account", account_id)
    return account


def find_visible_category(session: Session, category_id: int, user_id: int) -> Category:
    category = session.get(Category, category_id)
    if not category or not category.is_active:
        raise NotFoundError("Category", category_id)
    if category.user_id != user_id and not category.is_default:
        raise NotFoundError("Category", category_id)
    return category


class Ledger:
    """Keeps ``Account.balance`` in step with the caller's active transactions.

    The ledger never commits. Every method leaves its writes pending in the
    session so the caller can commit them, together with anything else in the
    same unit, through ``database.atomic``.
    """

    def __init__(self, session: Session, user_id: Optional[int]) -> None:
        self.session = session
        self.user_id = require_caller(user_id)

    def apply_create(self, txn: Transaction) -> Transaction:
        if txn.amount is None or to_money(txn.amount) <= 0:
            raise BadRequestError("Amount must be greater than zero")
        effects = signed_effects(
            txn.type, txn.amount, txn.account_id, txn.transfer_to_account_id
        )
        # Resolve every account before touching any balance.
        for account_id in effects:
            find_owned_account(self.session, account_id, self.user_id)
        find_visible_category(self.session, txn.category_id, self.user_id)

        txn.user_id = self.user_id
        txn.amount = to_money(txn.amount)
        self.session.add(txn)
        self._shift_balances(effects)
        self.session.flush()
        logger.debug(
            f"ledger_create: txn={txn.id} type={txn.type.value} amount={txn.amount}"
        )
        return txn

    def apply_update(self, txn: Transaction, new_amount: Number) -> Transaction:
        self._ensure_mutable(txn)
        new_amount = to_money(new_amount)
        if new_amount <= 0:
            raise BadRequestError("Amount must be greater than zero")
        delta = new_amount - txn.amount
        if delta == 0:
            return txn
        effects = signed_effects(
            txn.type, delta, txn.account_id, txn.transfer_to_account_id
        )
        for account_id in effects:
            find_owned_account(
                self.session, account_id, self.user_id, include_inactive=True
            )
        self._shift_balances(effects)
        txn.amount = new_amount
        self.session.flush()
        logger.debug(f"ledger_update: txn={txn.id} delta={delta}")
        return txn

    def apply_delete(self, txn: Transaction) -> Transaction:
        self._ensure_mutable(txn)
        effects = signed_effects(
            txn.type, -txn.amount, txn.account_id, txn.transfer_to_account_id
        )
        for account_id in effects:
            find_owned_account(
                self.session, account_id, self.user_id, include_inactive=True
            )
        self._shift_balances(effects)
        txn.mark_deleted()
        self.session.flush()
        logger.debug(f"ledger_delete: txn={txn.id} amount={txn.amount}")
        return txn

    def derived_balance(self, account_id: int) -> Decimal:
        account = find_owned_account(
            self.session, account_id, self.user_id, include_inactive=True
        )

        def total(*criteria) -> Decimal:
            stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.is_active,
                *criteria,
            )
            return to_money(self.session.execute(stmt).scalar_one() or 0)

        income = total(
            Transaction.account_id == account_id,
            Transaction.type == TransactionType.income,
        )
        outflow = total(
            Transaction.account_id == account_id,
            Transaction.type.in_([TransactionType.expense, TransactionType.transfer]),
        )
        transfers_in = total(
            Transaction.transfer_to_account_id == account_id,
            Transaction.type == TransactionType.transfer,
        )
        return to_money(account.opening_balance + income - outflow + transfers_in)

    def _ensure_mutable(self, txn: Transaction) -> None:
        if txn.user_id != self.user_id or not txn.is_active:
            raise NotFoundError("Transaction", txn.id)

    def _shift_balances(self, effects: dict[int, Decimal]) -> None:
        # Fixed ordering keeps concurrent transfers from locking rows in opposite order.
        for account_id in sorted(effects):
            delta = effects[account_id]
            result = self.session.execute(
                update(Account)
                .where(Account.id == account_id, Account.user_id == self.user_id)
                .values(balance=Account.balance + delta)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFoundError("Account", account_id)
            account = self.session.get(Account, account_id)
            if account is not None:
                self.session.expire(account, ["balance"])
