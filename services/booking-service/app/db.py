from __future__ import annotations

import os
from datetime import datetime, timezone
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import PersistenceFailure
from .models import Base

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+pysqlite:///./aerolux.db")


def build_engine(url: str) -> Engine:
    eng = create_engine(url, pool_pre_ping=True)
    Base.metadata.create_all(eng)
    return eng


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return build_engine(DATABASE_URL)


def session(engine: Engine) -> Session:
    # Services return ORM objects after committing inside a short-lived
    # session context. Prevent attributes from being expired on commit to
    # avoid DetachedInstanceError.
    return Session(engine, expire_on_commit=False)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc).replace(tzinfo=None)


def as_utc(value: datetime) -> datetime:
    """Normalize to naive UTC, the form every timestamp column stores."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def execute(s: Session, stmt):
    """Run a write statement, surfacing driver errors as PersistenceFailure."""
    try:
        return s.execute(stmt)
    except SQLAlchemyError as e:
        s.rollback()
        raise PersistenceFailure(f"Database statement failed: {e}") from e
