"""
Shared fixtures.

Every test gets its own in-memory SQLite database. Unit tests use the
``db`` session directly; API tests go through ``client`` with ``get_db``
overridden to the same engine.
"""

import os

os.environ.setdefault("FINANCE_DATABASE_URL", "sqlite://")
os.environ.setdefault("FINANCE_RETRY_BACKOFF_SECONDS", "0")
os.environ.setdefault("FINANCE_ALLOW_HEADER_IDENTITY", "true")

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Account, AccountType, Base, User, build_engine, get_db
from main import app

OWNER = "user-1"
OTHER = "user-2"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    """Sessions on separate connections to one SQLite file.

    Used where two writers must really interleave; the in-memory engine
    shares a single connection between sessions.
    """
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}", 5.0)
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    with factory() as session:
        session.add_all([User(id=OWNER), User(id=OTHER)])
        session.commit()
    yield factory
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    session.add_all([User(id=OWNER), User(id=OTHER)])
    session.commit()
    yield session
    session.close()


@pytest.fixture
def client(session_factory, db):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_account(db):
    def _make(name, balance="0", owner=OWNER, currency="LKR"):
        account = Account(
            user_id=owner,
            name=name,
            type=AccountType.BANK,
            balance=Decimal(balance),
            currency=currency,
        )
        db.add(account)
        db.commit()
        return account.id

    return _make


@pytest.fixture
def balance_of(db):
    def _balance(account_id):
        db.expire_all()
        return db.get(Account, account_id).balance

    return _balance
