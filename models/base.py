"""
SQLAlchemy engine and session factory for the job record store.

Everything that touches job records (the dispatcher inside request handlers,
the promoter thread, worker threads) uses short-lived sync sessions from
SessionLocal. expire_on_commit=False lets services hand detached records
back to callers after the session closes.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from config.settings import settings


class Base(DeclarativeBase):
    """Base class for all ORM models. SQLAlchemy uses this to track table metadata."""
    pass


engine = create_engine(settings.database_url, echo=False, pool_pre_ping=True)
SessionLocal = sessionmaker(engine, expire_on_commit=False)
