import logging
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from config import get_settings
from errors import AlreadyPaidThisPeriod, BillInactive, LedgerError, NotFoundError
from models import (
    BillFrequency,
    RecurringBill,
    Transaction,
    TransactionSource,
    TransactionType,
)
from periods import billing_period_start, same_billing_period
from unit_of_work import atomic

logger = logging.getLogger(__name__)


def local_now() -> datetime:
    """Naive wall-clock time in the configured timezone."""
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: datetime, months: int) -> datetime:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    # Short months clamp to their last day.
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def calculate_next_run(frequency: BillFrequency, from_dt: datetime) -> datetime:
    if frequency == BillFrequency.weekly:
        return from_dt + timedelta(weeks=1)
    if frequency == BillFrequency.biweekly:
        return from_dt + timedelta(weeks=2)
    if frequency == BillFrequency.monthly:
        return add_months(from_dt, 1)
    if frequency == BillFrequency.yearly:
        return add_months(from_dt, 12)
    # daily, and custom rules until they get a scheduler of their own
    return from_dt + timedelta(days=1)


class RecurringBillPayer:
    """Pays recurring bills, at most once per billing period."""

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def pay(self, bill_id: int, now: Optional[datetime] = None) -> Transaction:
        from schemas import TransactionIn
        from services import TransactionService

        now = now or local_now()
        bill = self.session.scalar(
            select(RecurringBill)
            .where(RecurringBill.id == bill_id, RecurringBill.user_id == self.user_id)
            .execution_options(populate_existing=True)
        )
        if not bill:
            raise NotFoundError("Recurring bill not found", code="BILL_NOT_FOUND")
        if not bill.active:
            raise BillInactive("Recurring bill is not active")
        if bill.ends_at and now > bill.ends_at:
            raise BillInactive("Recurring bill has ended", code="BILL_ENDED")
        if same_billing_period(bill.frequency, bill.last_paid_at, now):
            raise AlreadyPaidThisPeriod("Bill already paid for this period")

        period_start = billing_period_start(bill.frequency, now)
        next_run = calculate_next_run(bill.frequency, bill.next_run)
        still_active = bill.ends_at is None or next_run <= bill.ends_at

        with atomic(self.session) as unit:
            undo = unit.snapshot(bill)
            # Claim the period with a guarded UPDATE; a concurrent payer sees rowcount 0.
            claimed = self.session.execute(
                update(RecurringBill)
                .where(
                    RecurringBill.id == bill.id,
                    RecurringBill.active.is_(True),
                    RecurringBill.deleted_at.is_(None),
                    or_(
                        RecurringBill.last_paid_at.is_(None),
                        RecurringBill.last_paid_at < period_start,
                    ),
                )
                .values(last_paid_at=now, next_run=next_run, active=still_active)
                .execution_options(synchronize_session=False)
            ).rowcount
            if claimed != 1:
                raise AlreadyPaidThisPeriod("Bill already paid for this period")
            unit.step(undo, label=f"claim recurring_bills:{bill.id}")

            txn = TransactionService(self.session, self.user_id).create(
                TransactionIn(
                    wallet_id=bill.wallet_id,
                    type=TransactionType(bill.type.value),
                    amount=bill.amount,
                    category_id=bill.category_id,
                    occurred_at=now,
                    note=bill.name,
                ),
                source=TransactionSource.recurring_bill,
                recurring_bill_id=bill.id,
            )
        logger.info(
            f"bill_paid: id={bill_id} transaction_id={txn.id} next_run={next_run.isoformat()} "
            f"active={still_active}"
        )
        return txn

    @classmethod
    def pay_due(cls, session: Session, now: Optional[datetime] = None) -> int:
        """Pay every auto-pay bill whose ``next_run`` has arrived.

        Each bill runs in its own unit; one failing bill does not stop the sweep.
        """
        now = now or local_now()
        bills = session.scalars(
            select(RecurringBill)
            .where(
                RecurringBill.active.is_(True),
                RecurringBill.auto_create_transaction.is_(True),
                RecurringBill.next_run <= now,
            )
            .order_by(RecurringBill.next_run, RecurringBill.id)
        ).all()
        due = [
            (bill.id, bill.user_id)
            for bill in bills
            if not same_billing_period(bill.frequency, bill.last_paid_at, now)
        ]
        paid = 0
        for bill_id, user_id in due:
            try:
                cls(session, user_id).pay(bill_id, now=now)
            except LedgerError as exc:
                logger.warning(f"bill_skipped: id={bill_id} code={exc.code} reason={exc}")
                continue
            paid += 1
        return paid
