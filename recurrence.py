import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from database import atomic
from errors import BadRequestError, ConflictError, NotFoundError, require_caller
from ledger import Ledger
from models import (
    Frequency,
    RecordStatus,
    RecurringTransaction,
    Transaction,
)

logger = logging.getLogger(__name__)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def calculate_next_execution_date(
    current: Optional[date],
    frequency: Frequency,
    *,
    start_date: date,
    anchor_day: Optional[int] = None,
) -> date:
    """Date of the cycle following ``current``.

    Monthly and yearly steps aim for ``anchor_day`` (the start date's day of
    month unless given) and clamp to the last day of shorter months, so a
    schedule anchored on the 31st runs Jan 31, Feb 29, Mar 31 instead of
    drifting to the 29th.
    """
    if current is None:
        return start_date
    if frequency == Frequency.daily:
        return current + timedelta(days=1)
    if frequency == Frequency.weekly:
        return current + timedelta(weeks=1)
    desired_day = anchor_day or start_date.day
    if frequency == Frequency.monthly:
        return _add_months(current, 1, desired_day=desired_day)
    return _add_months(current, 12, desired_day=desired_day)


class RecurringState(str, Enum):
    active_pending = "active_pending"
    active_paused = "active_paused"
    ended = "ended"
    soft_deleted = "soft_deleted"


def recurring_state(recurring: RecurringTransaction, today: date) -> RecurringState:
    if not recurring.is_active:
        return RecurringState.soft_deleted
    if recurring.end_date is not None and (
        recurring.end_date < today or recurring.next_execution_date > recurring.end_date
    ):
        return RecurringState.ended
    if recurring.is_paused:
        return RecurringState.active_paused
    return RecurringState.active_pending


def is_due(recurring: RecurringTransaction, today: date) -> bool:
    return (
        recurring.next_execution_date <= today
        and not recurring.is_paused
        and recurring.is_active
        and (recurring.end_date is None or recurring.end_date >= today)
    )


@dataclass
class ProcessResult:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    failed_ids: list[int] = field(default_factory=list)


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def due_ids(self, today: date) -> list[int]:
        stmt = (
            select(RecurringTransaction.id)
            .where(
                RecurringTransaction.next_execution_date <= today,
                RecurringTransaction.is_paused.is_(False),
                RecurringTransaction.is_active,
                or_(
                    RecurringTransaction.end_date.is_(None),
                    RecurringTransaction.end_date >= today,
                ),
            )
            .order_by(RecurringTransaction.next_execution_date, RecurringTransaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def materialize(
        self, recurring: RecurringTransaction, *, now: Optional[datetime] = None
    ) -> Transaction:
        """Post the pending occurrence of ``recurring`` and advance its schedule.

        The schedule is claimed first with a conditional UPDATE keyed on the
        expected ``next_execution_date``; a runner that loses the race gets a
        ``ConflictError`` instead of posting a duplicate. Claim and ledger write
        stay uncommitted so the caller commits or rolls back both together.
        """
        if not recurring.is_active:
            raise NotFoundError("Recurring transaction", recurring.id)
        occurrence = recurring.next_execution_date
        if recurring.end_date is not None and occurrence > recurring.end_date:
            raise BadRequestError("Recurring transaction has ended")

        now = now or datetime.utcnow()
        next_date = calculate_next_execution_date(
            occurrence,
            recurring.frequency,
            start_date=recurring.start_date,
            anchor_day=recurring.anchor_day,
        )
        claim = self.session.execute(
            update(RecurringTransaction)
            .where(
                RecurringTransaction.id == recurring.id,
                RecurringTransaction.next_execution_date == occurrence,
                RecurringTransaction.status == RecordStatus.active,
            )
            .values(next_execution_date=next_date, last_executed_at=now)
            .execution_options(synchronize_session=False)
        )
        if claim.rowcount != 1:
            raise ConflictError(
                f"Recurring transaction {recurring.id} already posted for {occurrence}"
            )
        self.session.expire(
            recurring, ["next_execution_date", "last_executed_at", "updated_at"]
        )

        txn = Transaction(
            account_id=recurring.account_id,
            category_id=recurring.category_id,
            type=recurring.type,
            amount=recurring.amount,
            description=recurring.description,
            transaction_date=occurrence,
            occurrence_date=occurrence,
            recurring_source_id=recurring.id,
        )
        try:
            Ledger(self.session, recurring.user_id).apply_create(txn)
        except IntegrityError as exc:
            raise ConflictError(
                f"Recurring transaction {recurring.id} already posted for {occurrence}"
            ) from exc
        logger.info(
            f"recurring_materialized: id={recurring.id} txn={txn.id} "
            f"occurrence={occurrence} next={next_date}"
        )
        return txn

    def execute(self, recurring_id: int, user_id: Optional[int]) -> Transaction:
        user_id = require_caller(user_id)
        with atomic(self.session):
            recurring = self.session.get(
                RecurringTransaction, recurring_id, populate_existing=True
            )
            if (
                not recurring
                or recurring.user_id != user_id
                or not recurring.is_active
            ):
                raise NotFoundError("Recurring transaction", recurring_id)
            if recurring_state(recurring, local_today()) == RecurringState.ended:
                raise BadRequestError("Recurring transaction has ended")
            txn = self.materialize(recurring)
        return txn

    def process_due(self, today: Optional[date] = None) -> ProcessResult:
        today = today or local_today()
        result = ProcessResult()
        for recurring_id in self.due_ids(today):
            try:
                with atomic(self.session):
                    posted = self._process_one(recurring_id, today)
            except ConflictError as exc:
                result.skipped += 1
                logger.info(f"recurring_skipped: id={recurring_id} reason={exc}")
            except Exception as exc:
                result.failed += 1
                result.failed_ids.append(recurring_id)
                logger.exception(
                    f"recurring_failed: id={recurring_id} error={exc!r}"
                )
            else:
                if posted:
                    result.processed += 1
                else:
                    result.skipped += 1
        logger.info(
            f"recurring_run: today={today} processed={result.processed} "
            f"failed={result.failed} skipped={result.skipped}"
        )
        return result

    def _process_one(self, recurring_id: int, today: date) -> bool:
        recurring = self.session.get(
            RecurringTransaction, recurring_id, populate_existing=True
        )
        # Another runner may have advanced or paused it since the due query.
        if recurring is None or not is_due(recurring, today):
            return False
        self.materialize(recurring)
        return True
