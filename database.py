# database.py
import enum
import time
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    create_engine,
    Column,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    Integer,
    Text,
    Enum,
    UniqueConstraint,
)
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.orm.exc import StaleDataError

from config import get_settings
from exceptions import TransientError
from log import get_logger

logger = get_logger(__name__)

Base = declarative_base()

# PostgreSQL serialization_failure and deadlock_detected
TRANSIENT_PGCODES = {"40001", "40P01"}


def utcnow() -> datetime:
    """Naive UTC timestamp; every datetime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


def build_engine(url: str, timeout: float):
    if url.startswith("sqlite"):
        return create_engine(
            url, connect_args={"check_same_thread": False, "timeout": timeout}
        )
    if url.startswith("postgresql"):
        millis = int(timeout * 1000)
        return create_engine(
            url,
            pool_pre_ping=True,
            pool_timeout=timeout,
            connect_args={
                "options": f"-c statement_timeout={millis} -c lock_timeout={millis}"
            },
        )
    return create_engine(url, pool_pre_ping=True, pool_timeout=timeout)


settings = get_settings()
engine = build_engine(settings.database_url, settings.db_timeout_seconds)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class AccountType(str, enum.Enum):
    BANK = "BANK"
    SAVINGS = "SAVINGS"
    CASH = "CASH"
    CREDIT_CARD = "CREDIT_CARD"
    INVESTMENT = "INVESTMENT"
    OTHER = "OTHER"


class TransactionType(str, enum.Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"


class NotificationType(str, enum.Enum):
    BILL_DUE = "BILL_DUE"
    SCHEDULED_TRANSACTION = "SCHEDULED_TRANSACTION"
    GOAL_DEADLINE = "GOAL_DEADLINE"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    LOW_BALANCE = "LOW_BALANCE"
    GENERAL = "GENERAL"


class NotificationPriority(str, enum.Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class CategoryType(str, enum.Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class RelatedKind(str, enum.Enum):
    BILL = "BILL"
    SCHEDULED_TRANSACTION = "SCHEDULED_TRANSACTION"


def _enum(cls):
    return Enum(cls, native_enum=False, length=32)


class User(Base):
    __tablename__ = "users"
    id = Column(String, primary_key=True, default=new_id)
    username = Column(String, unique=True, index=True, nullable=True)
    password_hash = Column(String, nullable=True)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Account(Base):
    __tablename__ = "accounts"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_account_owner_name"),)
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(_enum(AccountType), nullable=False)
    balance = Column(Numeric(14, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    description = Column(String, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    type = Column(_enum(TransactionType), nullable=False)
    category = Column(String, index=True, nullable=True)
    from_account_id = Column(String, ForeignKey("accounts.id"), nullable=True)
    to_account_id = Column(String, ForeignKey("accounts.id"), nullable=True)
    date = Column(DateTime, nullable=False)
    recurring = Column(Boolean, nullable=False, default=False)
    frequency = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class ScheduledTransaction(Base):
    __tablename__ = "scheduled_transactions"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    description = Column(String, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    type = Column(_enum(TransactionType), nullable=False)
    from_account_id = Column(String, ForeignKey("accounts.id"), nullable=True)
    to_account_id = Column(String, ForeignKey("accounts.id"), nullable=True)
    scheduled_date = Column(DateTime, nullable=False, index=True)
    frequency = Column(String, nullable=False, default="once")
    is_executed = Column(Boolean, nullable=False, default=False)
    executed_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class Bill(Base):
    __tablename__ = "bills"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    due_date = Column(DateTime, nullable=False, index=True)
    is_paid = Column(Boolean, nullable=False, default=False)
    is_recurring = Column(Boolean, nullable=False, default=False)
    frequency = Column(String, nullable=False, default="MONTHLY")
    category = Column(String, nullable=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class UserSettings(Base):
    __tablename__ = "user_settings"
    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    # account that holds money set aside for goals
    goals_account_id = Column(String, ForeignKey("accounts.id"), nullable=True)


class Category(Base):
    __tablename__ = "categories"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_category_owner_name"),)
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(_enum(CategoryType), nullable=False)
    icon = Column(String, nullable=False, default="\N{MEMO}")
    color = Column(String(7), nullable=False, default="#6b7280")
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Goal(Base):
    __tablename__ = "goals"
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    target_amount = Column(Numeric(14, 2), nullable=False)
    current_amount = Column(Numeric(14, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False)
    deadline = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        # NULL related_id / dedup_bucket rows (user-authored) never collide
        UniqueConstraint(
            "user_id",
            "type",
            "related_kind",
            "related_id",
            "dedup_bucket",
            name="uq_notification_reminder",
        ),
    )
    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    type = Column(_enum(NotificationType), nullable=False)
    priority = Column(
        _enum(NotificationPriority), nullable=False, default=NotificationPriority.MEDIUM
    )
    is_read = Column(Boolean, nullable=False, default=False)
    related_kind = Column(_enum(RelatedKind), nullable=True)
    related_id = Column(String, nullable=True, index=True)
    dedup_bucket = Column(Integer, nullable=True)
    action_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_transient(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) in TRANSIENT_PGCODES:
        return True
    text = str(orig or exc).lower()
    return "locked" in text or "deadlock" in text or "could not serialize" in text


def run_in_transaction(db, work):
    """Run work(db) as one unit of work: commit on success, roll back on any error.

    Transient storage conflicts are retried with exponential backoff and
    surface as TransientError once the retry budget is spent. A versioned
    row changed by another writer since work(db) read it is retried the same
    way, so the rerun sees the committed row.
    """
    attempts = settings.transaction_retries
    for attempt in range(1, attempts + 1):
        try:
            result = work(db)
            db.commit()
            return result
        except (OperationalError, StaleDataError) as exc:
            db.rollback()
            if isinstance(exc, OperationalError) and not is_transient(exc):
                raise
            if attempt == attempts:
                logger.warning("transient_error_exhausted", attempts=attempts)
                raise TransientError(
                    "The ledger is busy, please retry the request"
                ) from exc
            delay = settings.retry_backoff_seconds * (2 ** (attempt - 1))
            logger.info(
                "transient_error_retry",
                attempt=attempt,
                delay=delay,
                error=type(exc).__name__,
            )
            time.sleep(delay)
        except Exception:
            db.rollback()
            raise
