# router.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import ledger
import notifications
from auth import get_current_user_id
from config import Settings, get_settings
from database import (
    get_db,
    Account,
    Bill,
    Category,
    Goal,
    NotificationType,
    ScheduledTransaction,
    Transaction,
    TransactionType,
    UserSettings,
)
from exceptions import ConflictError, NotFoundError, ValidationError
from log import get_logger
from schemas import (
    AccountCreate,
    AccountResponse,
    AccountUpdate,
    BillCreate,
    BillResponse,
    BillUpdate,
    CategoryCreate,
    CategoryResponse,
    GoalCreate,
    GoalResponse,
    GoalsAccountUpdate,
    GoalUpdate,
    NotificationCreate,
    NotificationResponse,
    NotificationUpdate,
    ScheduledTransactionCreate,
    ScheduledTransactionResponse,
    ScheduledTransactionUpdate,
    TransactionCreate,
    TransactionResponse,
)

router = APIRouter()
logger = get_logger(__name__)


def _owned_or_404(db: Session, model, owner_id: str, record_id: str, label: str):
    record = db.scalar(
        select(model).where(model.id == record_id, model.user_id == owner_id)
    )
    if record is None:
        raise NotFoundError(f"{label} not found")
    return record


# accounts
@router.get("/accounts")
def list_accounts(
    db: Session = Depends(get_db), owner_id: str = Depends(get_current_user_id)
):
    accounts = db.scalars(
        select(Account).where(Account.user_id == owner_id).order_by(Account.created_at)
    ).all()
    return {"accounts": [AccountResponse.model_validate(a) for a in accounts]}


@router.post("/accounts")
def create_account(
    account: AccountCreate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(get_settings),
):
    existing = db.scalar(
        select(Account).where(Account.user_id == owner_id, Account.name == account.name)
    )
    if existing:
        raise ConflictError("Account with this name already exists")

    db_account = Account(
        user_id=owner_id,
        name=account.name,
        type=account.type,
        balance=account.balance,
        currency=account.currency or settings.default_currency,
        description=account.description,
    )
    db.add(db_account)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Account with this name already exists")
    db.refresh(db_account)
    return {
        "message": "Account created successfully",
        "account": AccountResponse.model_validate(db_account),
    }


@router.get("/accounts/{account_id}")
def get_account(
    account_id: str,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    account = _owned_or_404(db, Account, owner_id, account_id, "Account")
    return {"account": AccountResponse.model_validate(account)}


@router.put("/accounts/{account_id}")
def update_account(
    account_id: str,
    changes: AccountUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    account = _owned_or_404(db, Account, owner_id, account_id, "Account")
    for name, value in changes.model_dump(exclude_unset=True).items():
        if value is None and name != "description":
            continue
        setattr(account, name, value)
    if "balance" in changes.model_fields_set and changes.balance is not None:
        logger.warning(
            "account_balance_corrected",
            owner_id=owner_id,
            account_id=account_id,
            balance=str(changes.balance),
        )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Account with this name already exists")
    db.refresh(account)
    return {
        "message": "Account updated successfully",
        "account": AccountResponse.model_validate(account),
    }


@router.delete("/accounts/{account_id}")
def delete_account(
    account_id: str,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    account = _owned_or_404(db, Account, owner_id, account_id, "Account")
    references = (
        select(func.count(Transaction.id)).where(
            or_(
                Transaction.from_account_id == account_id,
                Transaction.to_account_id == account_id,
            )
        ),
        select(func.count(ScheduledTransaction.id)).where(
            or_(
                ScheduledTransaction.from_account_id == account_id,
                ScheduledTransaction.to_account_id == account_id,
            )
        ),
        select(func.count(Bill.id)).where(Bill.account_id == account_id),
        select(func.count(UserSettings.user_id)).where(
            UserSettings.goals_account_id == account_id
        ),
    )
    if any(db.scalar(query) for query in references):
        raise ConflictError(
            "Account is still referenced by transactions, bills or the goals setting"
        )
    db.delete(account)
    db.commit()
    return {"message": "Account deleted successfully"}


# transactions
@router.get("/transactions")
def list_transactions(
    type: Optional[TransactionType] = None,
    category: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    query = select(Transaction).where(Transaction.user_id == owner_id)
    if type:
        query = query.where(Transaction.type == type)
    if category:
        query = query.where(Transaction.category == category)
    transactions = db.scalars(
        query.order_by(Transaction.date.desc()).limit(limit).offset(offset)
    ).all()
    return {"transactions": [TransactionResponse.model_validate(t) for t in transactions]}


@router.post("/transactions")
def create_transaction(
    transaction: TransactionCreate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    created = ledger.create_transaction(db, owner_id, transaction)
    return {
        "message": "Transaction created successfully",
        "transaction": TransactionResponse.model_validate(created),
    }


@router.get("/transactions/{transaction_id}")
def get_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    transaction = ledger.get_transaction(db, owner_id, transaction_id)
    return {"transaction": TransactionResponse.model_validate(transaction)}


@router.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str,
    transaction: TransactionCreate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    updated = ledger.update_transaction(db, owner_id, transaction_id, transaction)
    return {
        "message": "Transaction updated successfully",
        "transaction": TransactionResponse.model_validate(updated),
    }


@router.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    ledger.delete_transaction(db, owner_id, transaction_id)
    return {"message": "Transaction deleted successfully"}


# scheduled transactions
@router.get("/scheduled-transactions")
def list_scheduled_transactions(
    db: Session = Depends(get_db), owner_id: str = Depends(get_current_user_id)
):
    scheduled = db.scalars(
        select(ScheduledTransaction)
        .where(ScheduledTransaction.user_id == owner_id)
        .order_by(ScheduledTransaction.scheduled_date.desc())
    ).all()
    return {
        "scheduled_transactions": [
            ScheduledTransactionResponse.model_validate(s) for s in scheduled
        ]
    }


@router.get("/scheduled-transactions/count")
def count_scheduled_transactions(
    db: Session = Depends(get_db), owner_id: str = Depends(get_current_user_id)
):
    count = db.scalar(
        select(func.count(ScheduledTransaction.id)).where(
            ScheduledTransaction.user_id == owner_id,
            ScheduledTransaction.is_executed.is_(False),
        )
    )
    return {"count": count}


@router.post("/scheduled-transactions")
def create_scheduled_transaction(
    scheduled: ScheduledTransactionCreate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    created = ledger.create_scheduled_transaction(db, owner_id, scheduled)
    return {
        "message": "Scheduled transaction created successfully",
        "scheduled_transaction": ScheduledTransactionResponse.model_validate(created),
    }


@router.get("/scheduled-transactions/{scheduled_id}")
def get_scheduled_transaction(
    scheduled_id: str,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    scheduled = ledger.get_scheduled_transaction(db, owner_id, scheduled_id)
    return {"scheduled_transaction": ScheduledTransactionResponse.model_validate(scheduled)}


@router.put("/scheduled-transactions/{scheduled_id}")
def update_scheduled_transaction(
    scheduled_id: str,
    request: ScheduledTransactionUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    if request.action is not None:
        if request.action == "execute":
            scheduled = ledger.execute_scheduled_transaction(db, owner_id, scheduled_id)
            message = "Transaction executed successfully"
        elif request.action == "undo":
            scheduled = ledger.undo_scheduled_transaction(db, owner_id, scheduled_id)
            message = "Transaction execution undone successfully"
        else:
            raise ValidationError("Invalid action. Use 'execute' or 'undo'")
    else:
        scheduled = ledger.update_scheduled_transaction(db, owner_id, scheduled_id, request)
        message = "Scheduled transaction updated successfully"

    return {
        "message": message,
        "scheduled_transaction": ScheduledTransactionResponse.model_validate(scheduled),
    }


@router.delete("/scheduled-transactions/{scheduled_id}")
def delete_scheduled_transaction(
    scheduled_id: str,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    ledger.delete_scheduled_transaction(db, owner_id, scheduled_id)
    return {"message": "Scheduled transaction deleted successfully"}


# bills
def _check_bill_account(db: Session, owner_id: str, account_id: Optional[str]) -> None:
    if account_id and db.scalar(
        select(Account.id).where(Account.id == account_id, Account.user_id == owner_id)
    ) is None:
        raise ValidationError(f"Invalid account selected: {account_id}")


@router.get("/bills")
def list_bills(db: Session = Depends(get_db), owner_id: str = Depends(get_current_user_id)):
    bills = db.scalars(
        select(Bill).where(Bill.user_id == owner_id).order_by(Bill.due_date)
    ).all()
    return {"bills": [BillResponse.model_validate(b) for b in bills]}


@router.get("/bills/count")
def count_bills(db: Session = Depends(get_db), owner_id: str = Depends(get_current_user_id)):
    count = db.scalar(
        select(func.count(Bill.id)).where(Bill.user_id == owner_id, Bill.is_paid.is_(False))
    )
    return {"count": count}


@router.post("/bills")
def create_bill(
    bill: BillCreate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(get_settings),
):
    _check_bill_account(db, owner_id, bill.account_id)
    db_bill = Bill(
        user_id=owner_id,
        **bill.model_dump(exclude={"currency"}),
        currency=bill.currency or settings.default_currency,
    )
    db.add(db_bill)
    db.commit()
    db.refresh(db_bill)
    return {"message": "Bill created successfully", "bill": BillResponse.model_validate(db_bill)}


@router.get("/bills/{bill_id}")
def get_bill(
    bill_id: str,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    bill = _owned_or_404(db, Bill, owner_id, bill_id, "Bill")
    return {"bill": BillResponse.model_validate(bill)}


@router.put("/bills/{bill_id}")
def update_bill(
    bill_id: str,
    changes: BillUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    bill = _owned_or_404(db, Bill, owner_id, bill_id, "Bill")
    updates = changes.model_dump(exclude_unset=True)
    _check_bill_account(db, owner_id, updates.get("account_id"))
    for name, value in updates.items():
        if value is None and name not in ("account_id", "category", "description"):
            continue
        setattr(bill, name, value)
    db.commit()
    db.refresh(bill)
    return {"message": "Bill updated successfully", "bill": BillResponse.model_validate(bill)}


@router.delete("/bills/{bill_id}")
def delete_bill(
    bill_id: str,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    bill = _owned_or_404(db, Bill, owner_id, bill_id, "Bill")
    db.delete(bill)
    db.commit()
    return {"message": "Bill deleted successfully"}


# categories
@router.get("/categories")
def list_categories(
    db: Session = Depends(get_db), owner_id: str = Depends(get_current_user_id)
):
    categories = db.scalars(
        select(Category).where(Category.user_id == owner_id).order_by(Category.name)
    ).all()
    return {"categories": [CategoryResponse.model_validate(c) for c in categories]}


@router.post("/categories")
def create_category(
    category: CategoryCreate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    existing = db.scalar(
        select(Category).where(Category.user_id == owner_id, Category.name == category.name)
    )
    if existing:
        raise ConflictError("Category with this name already exists")

    db_category = Category(user_id=owner_id, **category.model_dump(exclude_none=True))
    db.add(db_category)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Category with this name already exists")
    db.refresh(db_category)
    return {
        "message": "Category created successfully",
        "category": CategoryResponse.model_validate(db_category),
    }


# goals
@router.get("/goals")
def list_goals(db: Session = Depends(get_db), owner_id: str = Depends(get_current_user_id)):
    goals = db.scalars(
        select(Goal).where(Goal.user_id == owner_id).order_by(Goal.created_at.desc())
    ).all()
    return {"goals": [GoalResponse.model_validate(g) for g in goals]}


@router.post("/goals")
def create_goal(
    goal: GoalCreate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
    settings: Settings = Depends(get_settings),
):
    db_goal = Goal(
        user_id=owner_id,
        **goal.model_dump(exclude={"currency"}),
        currency=goal.currency or settings.default_currency,
    )
    db.add(db_goal)
    db.commit()
    db.refresh(db_goal)
    return {"message": "Goal created successfully", "goal": GoalResponse.model_validate(db_goal)}


@router.get("/goals/account")
def get_goals_account(
    db: Session = Depends(get_db), owner_id: str = Depends(get_current_user_id)
):
    user_settings = db.get(UserSettings, owner_id)
    account = None
    if user_settings is not None and user_settings.goals_account_id:
        account = db.get(Account, user_settings.goals_account_id)
    if account is None:
        return {
            "has_goals_account": False,
            "goals_account": None,
            "message": "No goals account configured",
        }
    return {"has_goals_account": True, "goals_account": AccountResponse.model_validate(account)}


@router.put("/goals/account")
def set_goals_account(
    request: GoalsAccountUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    if request.account_id:
        _owned_or_404(db, Account, owner_id, request.account_id, "Account")
    user_settings = db.get(UserSettings, owner_id)
    if user_settings is None:
        user_settings = UserSettings(user_id=owner_id)
        db.add(user_settings)
    user_settings.goals_account_id = request.account_id
    db.commit()
    return get_goals_account(db, owner_id)


@router.get("/goals/{goal_id}")
def get_goal(
    goal_id: str,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    goal = _owned_or_404(db, Goal, owner_id, goal_id, "Goal")
    return {"goal": GoalResponse.model_validate(goal)}


@router.put("/goals/{goal_id}")
def update_goal(
    goal_id: str,
    changes: GoalUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    goal = _owned_or_404(db, Goal, owner_id, goal_id, "Goal")
    for name, value in changes.model_dump(exclude_unset=True).items():
        if value is None and name != "deadline":
            continue
        setattr(goal, name, value)
    db.commit()
    db.refresh(goal)
    return {"message": "Goal updated successfully", "goal": GoalResponse.model_validate(goal)}


@router.delete("/goals/{goal_id}")
def delete_goal(
    goal_id: str,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    goal = _owned_or_404(db, Goal, owner_id, goal_id, "Goal")
    db.delete(goal)
    db.commit()
    return {"message": "Goal deleted successfully"}


# notifications
@router.get("/notifications")
def list_notifications(
    is_read: Optional[bool] = None,
    type: Optional[NotificationType] = None,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    found = notifications.list_notifications(db, owner_id, is_read, type, limit)
    return {"notifications": [NotificationResponse.model_validate(n) for n in found]}


@router.get("/notifications/count")
def count_notifications(
    db: Session = Depends(get_db), owner_id: str = Depends(get_current_user_id)
):
    return {"count": notifications.unread_count(db, owner_id)}


@router.post("/notifications")
def create_notification(
    notification: NotificationCreate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    created = notifications.create_notification(db, owner_id, notification)
    return {
        "message": "Notification created successfully",
        "notification": NotificationResponse.model_validate(created),
    }


@router.post("/notifications/generate")
def generate_notifications(
    db: Session = Depends(get_db), owner_id: str = Depends(get_current_user_id)
):
    result = notifications.generate_and_cleanup(db, owner_id)
    return {"message": "Notifications generated successfully", "result": result}


@router.put("/notifications/{notification_id}")
def update_notification(
    notification_id: str,
    changes: NotificationUpdate,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    notification = notifications.get_notification(db, owner_id, notification_id)
    if changes.is_read is not None:
        notification.is_read = changes.is_read
    db.commit()
    db.refresh(notification)
    return {
        "message": "Notification updated successfully",
        "notification": NotificationResponse.model_validate(notification),
    }


@router.delete("/notifications/{notification_id}")
def delete_notification(
    notification_id: str,
    db: Session = Depends(get_db),
    owner_id: str = Depends(get_current_user_id),
):
    notification = notifications.get_notification(db, owner_id, notification_id)
    db.delete(notification)
    db.commit()
    return {"message": "Notification deleted successfully"}
