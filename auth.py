# auth.py
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jwt import ExpiredSignatureError, InvalidTokenError
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import get_db, User
from log import get_logger
from schemas import UserCreate, UserLogin, Token

auth_router = APIRouter()
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
logger = get_logger(__name__)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, stored: Optional[str]) -> bool:
    if not stored:
        return False
    return pwd_context.verify(password, stored)


def create_access_token(data: dict, settings: Settings):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(
        minutes=settings.access_token_expire_minutes
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def ensure_user(db: Session, user_id: str) -> None:
    """Provision a row for a header-identified user on first use."""
    if db.get(User, user_id) is not None:
        return
    db.add(User(id=user_id))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()


def get_current_user_id(
    token: Optional[str] = Depends(oauth2_scheme),
    x_user_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> str:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if token:
        try:
            payload = jwt.decode(
                token, settings.secret_key, algorithms=[settings.algorithm]
            )
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token has expired")
        except InvalidTokenError:
            raise credentials_exception
        user_id = payload.get("sub")
        if user_id is None or db.get(User, user_id) is None:
            raise credentials_exception
        return user_id

    if not settings.allow_header_identity:
        raise credentials_exception
    user_id = x_user_id or settings.demo_user_id
    user = db.get(User, user_id)
    if user is not None and user.password_hash:
        # registered users authenticate with their token only
        raise credentials_exception
    ensure_user(db, user_id)
    return user_id


@auth_router.post("/register", response_model=Token)
def register(
    user: UserCreate,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    existing = db.scalar(select(User).where(User.username == user.username))
    if existing:
        raise HTTPException(status_code=400, detail="Username already registered")

    new_user = User(
        username=user.username,
        password_hash=get_password_hash(user.password),
        name=user.name,
    )
    db.add(new_user)
    db.commit()
    logger.info("user_registered", user_id=new_user.id)

    return Token(access_token=create_access_token({"sub": new_user.id}, settings))


@auth_router.post("/login", response_model=Token)
def login(
    user: UserLogin,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    db_user = db.scalar(select(User).where(User.username == user.username))
    if not db_user or not verify_password(user.password, db_user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    return Token(access_token=create_access_token({"sub": db_user.id}, settings))
