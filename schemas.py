# schemas.py
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    constr,
)

from database import (
    AccountType,
    CategoryType,
    NotificationPriority,
    NotificationType,
    RelatedKind,
    TransactionType,
)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


UTCDateTime = Annotated[datetime, AfterValidator(_to_naive_utc)]
Money = Annotated[
    Decimal, PlainSerializer(float, return_type=float, when_used="json")
]
PositiveMoney = Annotated[
    Decimal,
    Field(gt=0, max_digits=14, decimal_places=2),
    PlainSerializer(float, return_type=float, when_used="json"),
]
Currency = constr(min_length=3, max_length=3, to_upper=True)


class UserBase(BaseModel):
    username: constr(min_length=3, max_length=50)


class UserCreate(UserBase):
    # bcrypt only reads the first 72 bytes
    password: constr(min_length=6, max_length=72)
    name: Optional[str] = None


class UserLogin(UserBase):
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


# accounts
class AccountCreate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1)
    type: AccountType
    balance: Money = Decimal("0")
    currency: Optional[Currency] = None
    description: Optional[str] = None


class AccountUpdate(BaseModel):
    name: Optional[constr(strip_whitespace=True, min_length=1)] = None
    type: Optional[AccountType] = None
    currency: Optional[Currency] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    # explicit correction, bypasses the ledger
    balance: Optional[Money] = None


class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: AccountType
    balance: Money
    currency: str
    description: Optional[str] = None
    is_active: bool
    created_at: datetime


# transactions
class TransactionCreate(BaseModel):
    description: constr(strip_whitespace=True, min_length=1)
    amount: PositiveMoney
    type: TransactionType
    date: UTCDateTime
    category: Optional[str] = None
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    recurring: bool = False
    frequency: Optional[str] = None
    currency: Optional[Currency] = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    description: str
    amount: Money
    currency: str
    type: TransactionType
    category: Optional[str] = None
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    date: datetime
    recurring: bool
    frequency: Optional[str] = None
    created_at: datetime


# scheduled transactions
class ScheduledTransactionCreate(BaseModel):
    description: constr(strip_whitespace=True, min_length=1)
    amount: PositiveMoney
    type: TransactionType = TransactionType.TRANSFER
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    scheduled_date: UTCDateTime
    frequency: str = "once"
    currency: Optional[Currency] = None


class ScheduledTransactionUpdate(BaseModel):
    """Either an action ("execute" / "undo") or a partial field update."""

    action: Optional[str] = None
    description: Optional[constr(strip_whitespace=True, min_length=1)] = None
    amount: Optional[PositiveMoney] = None
    type: Optional[TransactionType] = None
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    scheduled_date: Optional[UTCDateTime] = None
    frequency: Optional[str] = None
    currency: Optional[Currency] = None


class ScheduledTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    description: str
    amount: Money
    currency: str
    type: TransactionType
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    scheduled_date: datetime
    frequency: str
    is_executed: bool
    executed_date: Optional[datetime] = None
    created_at: datetime


# bills
class BillCreate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1)
    amount: PositiveMoney
    due_date: UTCDateTime
    currency: Optional[Currency] = None
    frequency: str = "MONTHLY"
    is_recurring: bool = False
    category: Optional[str] = None
    account_id: Optional[str] = None
    description: Optional[str] = None


class BillUpdate(BaseModel):
    name: Optional[constr(strip_whitespace=True, min_length=1)] = None
    amount: Optional[PositiveMoney] = None
    due_date: Optional[UTCDateTime] = None
    currency: Optional[Currency] = None
    frequency: Optional[str] = None
    is_recurring: Optional[bool] = None
    is_paid: Optional[bool] = None
    category: Optional[str] = None
    account_id: Optional[str] = None
    description: Optional[str] = None


class BillResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    amount: Money
    currency: str
    due_date: datetime
    is_paid: bool
    is_recurring: bool
    frequency: str
    category: Optional[str] = None
    account_id: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime


# categories
class CategoryCreate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1)
    type: CategoryType
    icon: Optional[str] = None
    color: Optional[constr(pattern=r"^#[0-9a-fA-F]{6}$")] = None


class CategoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    type: CategoryType
    icon: str
    color: str
    created_at: datetime


# goals
class GoalCreate(BaseModel):
    name: constr(strip_whitespace=True, min_length=1)
    target_amount: PositiveMoney
    current_amount: Annotated[Money, Field(ge=0)] = Decimal("0")
    deadline: Optional[UTCDateTime] = None
    currency: Optional[Currency] = None


class GoalUpdate(BaseModel):
    name: Optional[constr(strip_whitespace=True, min_length=1)] = None
    target_amount: Optional[PositiveMoney] = None
    current_amount: Optional[Annotated[Money, Field(ge=0)]] = None
    # explicit null clears the deadline
    deadline: Optional[UTCDateTime] = None
    currency: Optional[Currency] = None


class GoalResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    target_amount: Money
    current_amount: Money
    currency: str
    deadline: Optional[datetime] = None
    created_at: datetime


class GoalsAccountUpdate(BaseModel):
    account_id: Optional[str] = None


# notifications
class NotificationCreate(BaseModel):
    title: constr(strip_whitespace=True, min_length=1)
    message: constr(strip_whitespace=True, min_length=1)
    type: NotificationType
    priority: NotificationPriority = NotificationPriority.MEDIUM
    action_url: Optional[str] = None


class NotificationUpdate(BaseModel):
    is_read: Optional[bool] = None


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    message: str
    type: NotificationType
    priority: NotificationPriority
    is_read: bool
    related_kind: Optional[RelatedKind] = None
    related_id: Optional[str] = None
    action_url: Optional[str] = None
    created_at: datetime


class GenerationResult(BaseModel):
    bill_notifications: int = 0
    scheduled_transaction_notifications: int = 0
    total_generated: int = 0
    cleaned_up_count: int = 0
    failed_scans: list[str] = []
