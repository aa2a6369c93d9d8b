# notifications.py
"""
Due-date reminders for unpaid bills and pending scheduled transactions.

An item is a candidate while it is unsettled and its date is no later than
``now + due_soon_days``. A candidate whose date has passed is overdue (HIGH),
otherwise it is due soon (MEDIUM). At most one reminder per item is created
inside the dedup window, measured back from ``now``.
"""
import math
import threading
import weakref
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from database import (
    Bill,
    Notification,
    NotificationPriority,
    NotificationType,
    RelatedKind,
    ScheduledTransaction,
    User,
    utcnow,
)
from exceptions import NotFoundError
from log import get_logger
from schemas import GenerationResult, NotificationCreate

logger = get_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class OwnerLocks:
    """One lock per owner so generation runs for the same user never overlap.

    An owner's entry lives only while a run still references its lock.
    """

    _guard = threading.Lock()
    _locks = weakref.WeakValueDictionary()

    @classmethod
    def for_owner(cls, owner_id: str) -> threading.Lock:
        with cls._guard:
            lock = cls._locks.get(owner_id)
            if lock is None:
                lock = cls._locks[owner_id] = threading.Lock()
            return lock


def day_bucket(moment: datetime) -> int:
    return (moment - datetime(1970, 1, 1)).days


def _plural(count: int) -> str:
    return "" if count == 1 else "s"


def describe(kind: str, name: str, currency: str, amount, due: datetime, now: datetime):
    """Build (title, message, priority) for an item, or None when it is not due yet."""
    settings = get_settings()
    horizon = now + timedelta(days=settings.due_soon_days)
    noun = "bill" if kind == "Bill" else "scheduled transaction"
    label = "Bill" if kind == "Bill" else "Transaction"
    amount_text = f"{currency} {float(amount):.2f}"

    if due < now:
        days = math.floor((now - due).total_seconds() / SECONDS_PER_DAY)
        title = f"Overdue {label}: {name}"
        message = (
            f'Your {noun} "{name}" was due {days} day{_plural(days)} ago. '
            f"Amount: {amount_text}"
        )
        return title, message, NotificationPriority.HIGH
    if due <= horizon:
        days = math.ceil((due - now).total_seconds() / SECONDS_PER_DAY)
        title = f"{label} Due Soon: {name}"
        message = (
            f'Your {noun} "{name}" is due in {days} day{_plural(days)}. '
            f"Amount: {amount_text}"
        )
        return title, message, NotificationPriority.MEDIUM
    return None


def _recently_notified(db, owner_id, ntype, kind, item_id, since) -> bool:
    found = db.scalar(
        select(Notification.id)
        .where(
            Notification.user_id == owner_id,
            Notification.type == ntype,
            Notification.related_kind == kind,
            Notification.related_id == item_id,
            Notification.created_at >= since,
        )
        .limit(1)
    )
    return found is not None


def _create_reminder(db, owner_id, ntype, kind, item_id, text, action_url, now) -> bool:
    title, message, priority = text
    notification = Notification(
        user_id=owner_id,
        title=title,
        message=message,
        type=ntype,
        priority=priority,
        related_kind=kind,
        related_id=item_id,
        dedup_bucket=day_bucket(now),
        action_url=action_url,
        created_at=now,
    )
    db.add(notification)
    try:
        db.commit()
    except IntegrityError:
        # another run created today's reminder first
        db.rollback()
        logger.info("notification_dedup_conflict", owner_id=owner_id, related_id=item_id)
        return False
    return True


def _generate(
    db,
    owner_id,
    now,
    model,
    date_column,
    settled_column,
    ntype,
    kind,
    describe_item,
    on_created=None,
):
    settings = get_settings()
    horizon = now + timedelta(days=settings.due_soon_days)
    since = now - timedelta(hours=settings.dedup_window_hours)

    items = db.scalars(
        select(model).where(
            model.user_id == owner_id,
            settled_column.is_(False),
            date_column <= horizon,
        )
        .order_by(date_column)
    ).all()

    created = 0
    with OwnerLocks.for_owner(owner_id):
        for item in items:
            if _recently_notified(db, owner_id, ntype, kind, item.id, since):
                continue
            text, action_url = describe_item(item)
            if text is None:
                continue
            if _create_reminder(db, owner_id, ntype, kind, item.id, text, action_url, now):
                created += 1
                if on_created:
                    on_created()
    return created


def generate_bill_notifications(
    db: Session, owner_id: str, now: Optional[datetime] = None, on_created=None
) -> int:
    now = now or utcnow()

    def describe_bill(bill):
        text = describe("Bill", bill.name, bill.currency, bill.amount, bill.due_date, now)
        return text, f"/bills?highlight={bill.id}"

    return _generate(
        db,
        owner_id,
        now,
        Bill,
        Bill.due_date,
        Bill.is_paid,
        NotificationType.BILL_DUE,
        RelatedKind.BILL,
        describe_bill,
        on_created,
    )


def generate_scheduled_transaction_notifications(
    db: Session, owner_id: str, now: Optional[datetime] = None, on_created=None
) -> int:
    now = now or utcnow()

    def describe_scheduled(scheduled):
        text = describe(
            "Transaction",
            scheduled.description,
            scheduled.currency,
            scheduled.amount,
            scheduled.scheduled_date,
            now,
        )
        return text, f"/transactions?highlight={scheduled.id}"

    return _generate(
        db,
        owner_id,
        now,
        ScheduledTransaction,
        ScheduledTransaction.scheduled_date,
        ScheduledTransaction.is_executed,
        NotificationType.SCHEDULED_TRANSACTION,
        RelatedKind.SCHEDULED_TRANSACTION,
        describe_scheduled,
        on_created,
    )


def generate_due_date_notifications(
    db: Session, owner_id: str, now: Optional[datetime] = None
) -> GenerationResult:
    """Run both scans.

    Reminders are committed one at a time, so a scan that fails part way is
    still credited with the reminders it created before failing, and is
    listed in failed_scans.
    """
    now = now or utcnow()
    result = GenerationResult()
    scans = (
        ("bills", "bill_notifications", generate_bill_notifications),
        (
            "scheduled_transactions",
            "scheduled_transaction_notifications",
            generate_scheduled_transaction_notifications,
        ),
    )
    for name, field, scan in scans:

        def count_one(field=field):
            setattr(result, field, getattr(result, field) + 1)

        try:
            scan(db, owner_id, now, on_created=count_one)
        except Exception:
            db.rollback()
            logger.exception("notification_scan_failed", owner_id=owner_id, scan=name)
            result.failed_scans.append(name)

    result.total_generated = (
        result.bill_notifications + result.scheduled_transaction_notifications
    )
    logger.info(
        "notifications_generated",
        owner_id=owner_id,
        bills=result.bill_notifications,
        scheduled_transactions=result.scheduled_transaction_notifications,
    )
    return result


def cleanup_old_notifications(db: Session, owner_id: str, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(days=get_settings().notification_retention_days)
    result = db.execute(
        delete(Notification)
        .where(
            Notification.user_id == owner_id,
            Notification.is_read.is_(True),
            Notification.created_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


def generate_and_cleanup(db: Session, owner_id: str, now: Optional[datetime] = None) -> GenerationResult:
    result = generate_due_date_notifications(db, owner_id, now)
    try:
        result.cleaned_up_count = cleanup_old_notifications(db, owner_id, now)
    except Exception:
        db.rollback()
        logger.exception("notification_cleanup_failed", owner_id=owner_id)
    return result


def sweep_all_users(session_factory) -> None:
    """Generate reminders for every user; used by the optional background sweep."""
    with session_factory() as db:
        owner_ids = db.scalars(select(User.id)).all()
        for owner_id in owner_ids:
            generate_and_cleanup(db, owner_id)
        logger.info("notification_sweep_finished", users=len(owner_ids))


# user-authored notifications
def get_notification(db: Session, owner_id: str, notification_id: str) -> Notification:
    notification = db.scalar(
        select(Notification).where(
            Notification.id == notification_id, Notification.user_id == owner_id
        )
    )
    if notification is None:
        raise NotFoundError("Notification not found")
    return notification


def list_notifications(db, owner_id, is_read=None, ntype=None, limit=50):
    query = select(Notification).where(Notification.user_id == owner_id)
    if is_read is not None:
        query = query.where(Notification.is_read.is_(is_read))
    if ntype is not None:
        query = query.where(Notification.type == ntype)
    query = query.order_by(Notification.created_at.desc()).limit(limit)
    return db.scalars(query).all()


def create_notification(db: Session, owner_id: str, fields: NotificationCreate) -> Notification:
    notification = Notification(user_id=owner_id, **fields.model_dump())
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


def unread_count(db: Session, owner_id: str) -> int:
    return db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == owner_id, Notification.is_read.is_(False)
        )
    )
