# ledger.py
"""
Balance-mutating ledger operations.

A transaction-like record moves ``amount`` out of ``from_account_id`` (when
set) and into ``to_account_id`` (when set). Every operation here writes the
record and its balance deltas in one unit of work, and every balance delta
is a single ``UPDATE ... SET balance = balance + :delta`` so concurrent
writers against the same account never lose an update.
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from database import (
    Account,
    ScheduledTransaction,
    Transaction,
    TransactionType,
    run_in_transaction,
    utcnow,
)
from exceptions import ConflictError, NotFoundError, ValidationError
from log import get_logger
from schemas import (
    ScheduledTransactionCreate,
    ScheduledTransactionUpdate,
    TransactionCreate,
)

logger = get_logger(__name__)

MONETARY_FIELDS = ("amount", "type", "from_account_id", "to_account_id")
NULLABLE_LEGS = ("from_account_id", "to_account_id")


def validate_legs(
    tx_type: TransactionType,
    amount: Decimal,
    from_account_id: Optional[str],
    to_account_id: Optional[str],
) -> None:
    """Enforce the account legs each transaction type requires."""
    if amount is None or amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    if tx_type == TransactionType.EXPENSE:
        if not from_account_id or to_account_id:
            raise ValidationError("An expense needs a from account and no to account")
    elif tx_type == TransactionType.INCOME:
        if not to_account_id or from_account_id:
            raise ValidationError("An income needs a to account and no from account")
    elif tx_type == TransactionType.TRANSFER:
        if not from_account_id or not to_account_id:
            raise ValidationError("A transfer needs both a from and a to account")
        if from_account_id == to_account_id:
            raise ValidationError("A transfer needs two different accounts")
    else:
        raise ValidationError(f"Unknown transaction type: {tx_type}")


def adjust_balance(db: Session, owner_id: str, account_id: str, delta: Decimal) -> None:
    result = db.execute(
        update(Account)
        .where(Account.id == account_id, Account.user_id == owner_id)
        .values(balance=Account.balance + delta)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFoundError(f"Account not found: {account_id}")


def apply_effect(db, owner_id, amount, from_account_id, to_account_id):
    if from_account_id:
        adjust_balance(db, owner_id, from_account_id, -amount)
    if to_account_id:
        adjust_balance(db, owner_id, to_account_id, amount)


def reverse_effect(db, owner_id, amount, from_account_id, to_account_id):
    if from_account_id:
        adjust_balance(db, owner_id, from_account_id, amount)
    if to_account_id:
        adjust_balance(db, owner_id, to_account_id, -amount)


def _default_currency(db: Session, owner_id: str, account_id: Optional[str]) -> str:
    if account_id:
        currency = db.scalar(
            select(Account.currency).where(
                Account.id == account_id, Account.user_id == owner_id
            )
        )
        if currency:
            return currency
    return get_settings().default_currency


def _owned(db: Session, model, owner_id: str, record_id: str, for_update: bool = False):
    query = select(model).where(model.id == record_id, model.user_id == owner_id)
    if for_update:
        # row lock where supported, and never a stale identity-map copy
        query = query.with_for_update().execution_options(populate_existing=True)
    return db.scalar(query)


# transactions
def get_transaction(
    db: Session, owner_id: str, transaction_id: str, for_update: bool = False
) -> Transaction:
    transaction = _owned(db, Transaction, owner_id, transaction_id, for_update)
    if transaction is None:
        raise NotFoundError("Transaction not found")
    return transaction


def create_transaction(db: Session, owner_id: str, fields: TransactionCreate) -> Transaction:
    validate_legs(fields.type, fields.amount, fields.from_account_id, fields.to_account_id)

    def work(db):
        transaction = Transaction(
            user_id=owner_id,
            description=fields.description,
            amount=fields.amount,
            currency=fields.currency
            or _default_currency(
                db, owner_id, fields.from_account_id or fields.to_account_id
            ),
            type=fields.type,
            category=fields.category,
            from_account_id=fields.from_account_id,
            to_account_id=fields.to_account_id,
            date=fields.date,
            recurring=fields.recurring,
            frequency=fields.frequency if fields.recurring else None,
        )
        db.add(transaction)
        apply_effect(
            db, owner_id, fields.amount, fields.from_account_id, fields.to_account_id
        )
        db.flush()
        return transaction

    transaction = run_in_transaction(db, work)
    db.refresh(transaction)
    logger.info(
        "transaction_created",
        owner_id=owner_id,
        transaction_id=transaction.id,
        type=transaction.type.value,
        amount=str(transaction.amount),
    )
    return transaction


def update_transaction(
    db: Session, owner_id: str, transaction_id: str, fields: TransactionCreate
) -> Transaction:
    validate_legs(fields.type, fields.amount, fields.from_account_id, fields.to_account_id)

    def work(db):
        transaction = get_transaction(db, owner_id, transaction_id, for_update=True)
        # snapshot before any field is overwritten; the flush below is
        # version-checked, so a snapshot gone stale raises StaleDataError
        old = (transaction.amount, transaction.from_account_id, transaction.to_account_id)
        reverse_effect(db, owner_id, *old)

        transaction.description = fields.description
        transaction.amount = fields.amount
        transaction.type = fields.type
        transaction.category = fields.category
        transaction.from_account_id = fields.from_account_id
        transaction.to_account_id = fields.to_account_id
        transaction.date = fields.date
        transaction.recurring = fields.recurring
        transaction.frequency = fields.frequency if fields.recurring else None
        transaction.currency = fields.currency or _default_currency(
            db, owner_id, fields.from_account_id or fields.to_account_id
        )

        apply_effect(
            db, owner_id, fields.amount, fields.from_account_id, fields.to_account_id
        )
        db.flush()
        return transaction

    transaction = run_in_transaction(db, work)
    db.refresh(transaction)
    logger.info("transaction_updated", owner_id=owner_id, transaction_id=transaction_id)
    return transaction


def delete_transaction(db: Session, owner_id: str, transaction_id: str) -> None:
    def work(db):
        transaction = get_transaction(db, owner_id, transaction_id, for_update=True)
        reverse_effect(
            db,
            owner_id,
            transaction.amount,
            transaction.from_account_id,
            transaction.to_account_id,
        )
        result = db.execute(
            delete(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.user_id == owner_id,
                Transaction.version == transaction.version,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # changed or deleted since the snapshot; the rerun re-reads it
            raise StaleDataError("Transaction changed during delete")
        db.expunge(transaction)

    run_in_transaction(db, work)
    logger.info("transaction_deleted", owner_id=owner_id, transaction_id=transaction_id)


# scheduled transactions
def get_scheduled_transaction(
    db: Session, owner_id: str, scheduled_id: str, for_update: bool = False
) -> ScheduledTransaction:
    scheduled = _owned(db, ScheduledTransaction, owner_id, scheduled_id, for_update)
    if scheduled is None:
        raise NotFoundError("Scheduled transaction not found")
    return scheduled


def create_scheduled_transaction(
    db: Session, owner_id: str, fields: ScheduledTransactionCreate
) -> ScheduledTransaction:
    """Record a future transaction. No balance moves until it is executed."""
    validate_legs(fields.type, fields.amount, fields.from_account_id, fields.to_account_id)

    def work(db):
        for account_id in (fields.from_account_id, fields.to_account_id):
            if account_id and _owned(db, Account, owner_id, account_id) is None:
                raise NotFoundError(f"Account not found: {account_id}")
        scheduled = ScheduledTransaction(
            user_id=owner_id,
            description=fields.description,
            amount=fields.amount,
            currency=fields.currency
            or _default_currency(
                db, owner_id, fields.from_account_id or fields.to_account_id
            ),
            type=fields.type,
            from_account_id=fields.from_account_id,
            to_account_id=fields.to_account_id,
            scheduled_date=fields.scheduled_date,
            frequency=fields.frequency or "once",
        )
        db.add(scheduled)
        db.flush()
        return scheduled

    scheduled = run_in_transaction(db, work)
    db.refresh(scheduled)
    logger.info("scheduled_transaction_created", owner_id=owner_id, scheduled_id=scheduled.id)
    return scheduled


def update_scheduled_transaction(
    db: Session, owner_id: str, scheduled_id: str, fields: ScheduledTransactionUpdate
) -> ScheduledTransaction:
    changes = fields.model_dump(exclude_unset=True, exclude={"action"})
    changes = {
        k: v for k, v in changes.items() if v is not None or k in NULLABLE_LEGS
    }

    def work(db):
        scheduled = get_scheduled_transaction(db, owner_id, scheduled_id, for_update=True)
        if scheduled.is_executed and any(name in changes for name in MONETARY_FIELDS):
            raise ConflictError(
                "Scheduled transaction is already executed; undo it before changing "
                "its amount, type or accounts"
            )
        merged = {name: getattr(scheduled, name) for name in MONETARY_FIELDS}
        merged.update({k: v for k, v in changes.items() if k in MONETARY_FIELDS})
        validate_legs(
            merged["type"],
            merged["amount"],
            merged["from_account_id"],
            merged["to_account_id"],
        )
        for account_id in (changes.get("from_account_id"), changes.get("to_account_id")):
            if account_id and _owned(db, Account, owner_id, account_id) is None:
                raise NotFoundError(f"Account not found: {account_id}")
        for name, value in changes.items():
            setattr(scheduled, name, value)
        db.flush()
        return scheduled

    scheduled = run_in_transaction(db, work)
    db.refresh(scheduled)
    return scheduled


def _missing_or_conflict(db, owner_id, scheduled_id, message):
    get_scheduled_transaction(db, owner_id, scheduled_id)
    raise ConflictError(message)


def execute_scheduled_transaction(
    db: Session, owner_id: str, scheduled_id: str
) -> ScheduledTransaction:
    """Apply a scheduled transaction's effect exactly once."""

    def work(db):
        # compare-and-set on is_executed guards against a double apply
        result = db.execute(
            update(ScheduledTransaction)
            .where(
                ScheduledTransaction.id == scheduled_id,
                ScheduledTransaction.user_id == owner_id,
                ScheduledTransaction.is_executed.is_(False),
            )
            .values(
                is_executed=True,
                executed_date=utcnow(),
                version=ScheduledTransaction.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            _missing_or_conflict(
                db, owner_id, scheduled_id, "Scheduled transaction is already executed"
            )
        scheduled = get_scheduled_transaction(db, owner_id, scheduled_id, for_update=True)
        apply_effect(
            db,
            owner_id,
            scheduled.amount,
            scheduled.from_account_id,
            scheduled.to_account_id,
        )
        return scheduled

    scheduled = run_in_transaction(db, work)
    db.refresh(scheduled)
    logger.info(
        "scheduled_transaction_executed",
        owner_id=owner_id,
        scheduled_id=scheduled_id,
        amount=str(scheduled.amount),
    )
    return scheduled


def undo_scheduled_transaction(
    db: Session, owner_id: str, scheduled_id: str
) -> ScheduledTransaction:
    def work(db):
        result = db.execute(
            update(ScheduledTransaction)
            .where(
                ScheduledTransaction.id == scheduled_id,
                ScheduledTransaction.user_id == owner_id,
                ScheduledTransaction.is_executed.is_(True),
            )
            .values(
                is_executed=False,
                executed_date=None,
                version=ScheduledTransaction.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            _missing_or_conflict(
                db, owner_id, scheduled_id, "Scheduled transaction is not executed"
            )
        scheduled = get_scheduled_transaction(db, owner_id, scheduled_id, for_update=True)
        reverse_effect(
            db,
            owner_id,
            scheduled.amount,
            scheduled.from_account_id,
            scheduled.to_account_id,
        )
        return scheduled

    scheduled = run_in_transaction(db, work)
    db.refresh(scheduled)
    logger.info("scheduled_transaction_undone", owner_id=owner_id, scheduled_id=scheduled_id)
    return scheduled


def delete_scheduled_transaction(db: Session, owner_id: str, scheduled_id: str) -> None:
    """Delete a scheduled transaction, reversing its effect if it was executed."""

    def work(db):
        scheduled = get_scheduled_transaction(db, owner_id, scheduled_id, for_update=True)
        if scheduled.is_executed:
            reverse_effect(
                db,
                owner_id,
                scheduled.amount,
                scheduled.from_account_id,
                scheduled.to_account_id,
            )
        result = db.execute(
            delete(ScheduledTransaction)
            .where(
                ScheduledTransaction.id == scheduled_id,
                ScheduledTransaction.user_id == owner_id,
                ScheduledTransaction.version == scheduled.version,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # executed, undone or edited since the snapshot
            raise StaleDataError("Scheduled transaction changed during delete")
        db.expunge(scheduled)

    run_in_transaction(db, work)
    logger.info("scheduled_transaction_deleted", owner_id=owner_id, scheduled_id=scheduled_id)
