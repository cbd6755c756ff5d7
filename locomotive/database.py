"""SQLite persistence for the local transfer queue.

The database lives in the Locomotive home directory by default and is shared
by every instance, so connections use a generous busy timeout and rely on
SQLite's own locking.
"""
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from sqlalchemy import (
    Boolean, DateTime, Index, Integer, String, create_engine, event, text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

SQLITE_BUSY_TIMEOUT = 30


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class QueueItem(Base):
    """One piece of work: a remote file or directory selected for transfer."""
    __tablename__ = "queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    fingerprint: Mapped[str] = mapped_column(String(32), nullable=False)
    run_id: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    host: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    source_dir: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    target_dir: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    size_bytes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    file_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    last_modified: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_finished: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_failed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_moved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    source_cleaned: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    retries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, onupdate=datetime.now, nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        # One live row per fingerprint; soft-deleted rows don't count.
        Index(
            "uq_queue_fingerprint_live", "fingerprint", unique=True,
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index("ix_queue_run_id", "run_id"),
    )

    def __repr__(self) -> str:
        return f"<QueueItem(id={self.id}, name='{self.name}', retries={self.retries})>"


class Metrics(Base):
    """Singleton row recording when Locomotive last ran."""
    __tablename__ = "metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_run: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT * 1000}")
    cursor.close()


def create_db_engine(database: Union[str, Path]) -> Engine:
    """Creates an engine for a SQLite file path, or ':memory:'."""
    if str(database) == ":memory:":
        engine = create_engine(
            "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
    else:
        db_path = Path(database).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(f"sqlite:///{db_path}", connect_args={"timeout": SQLITE_BUSY_TIMEOUT})
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def init_db(engine: Engine) -> None:
    """Creates any missing tables."""
    Base.metadata.create_all(engine)


def get_session_factory(database: Union[str, Path]) -> sessionmaker:
    """Bootstraps the schema and returns a session factory bound to it."""
    engine = create_db_engine(database)
    init_db(engine)
    logging.debug(f"Database ready at {database}")
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
