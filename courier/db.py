"""Database engine, session factory and transaction helper."""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .core.settings import settings


def make_engine(url: str):
    """Create an engine; SQLite connections are shared with the sweeper thread."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=False, future=True, connect_args=connect_args)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

Base = declarative_base()


def get_db() -> Iterator[Session]:
    """FastAPI dependency yielding a request-scoped session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """FastAPI dependency for work that opens its own sessions (the offer sweep)."""
    return SessionLocal


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """Commit on success, roll back on any exception.

    Use this around a dispatch transition so the order row and its offers
    change together or not at all.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
