"""Database engine setup.

SQLite URLs (dev and test) get ``check_same_thread=False`` so the FastAPI
threadpool and Celery eager tasks can share connections; PostgreSQL gets a
bounded pool since webhook bursts and reconciliation runs share it.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from givingcore.core.config import settings

raw_url = settings.DATABASE_URL or "sqlite:///./storage/dev.db"

if raw_url.startswith("sqlite"):
    sqlite_kwargs = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in raw_url:
        sqlite_kwargs["poolclass"] = StaticPool
    engine = create_engine(raw_url, future=True, **sqlite_kwargs)
else:
    engine = create_engine(
        raw_url,
        future=True,
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,  # Recycle connections after 1 hour
        pool_pre_ping=True,
    )
SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
