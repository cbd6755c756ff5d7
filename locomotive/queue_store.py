"""The persisted local queue.

`QueueStore` wraps one SQLAlchemy session for the duration of a run. Reads go
through `QueueQuery`, a small chainable builder whose methods are the named
filters the rest of the application relies on::

    store.query().not_for_run(run_id).not_finished().not_failed().all()

Soft-deleted rows are invisible to every query.
"""
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from .database import Metrics, QueueItem

METRICS_ROW_ID = 1


class QueueQuery:
    """Immutable, chainable filter over live `QueueItem` rows."""

    def __init__(self, session: Session, stmt: Optional[Select] = None):
        self._session = session
        if stmt is None:
            stmt = select(QueueItem).where(QueueItem.deleted_at.is_(None))
        self._stmt = stmt

    def _where(self, *clauses) -> "QueueQuery":
        return QueueQuery(self._session, self._stmt.where(*clauses))

    def finished(self) -> "QueueQuery":
        return self._where(QueueItem.is_finished.is_(True), QueueItem.is_active.is_(False))

    def not_finished(self) -> "QueueQuery":
        return self._where(QueueItem.is_finished.is_(False))

    def moved(self) -> "QueueQuery":
        return self._where(QueueItem.is_moved.is_(True))

    def not_moved(self) -> "QueueQuery":
        return self._where(QueueItem.is_moved.is_(False))

    def failed(self) -> "QueueQuery":
        return self._where(QueueItem.is_failed.is_(True))

    def not_failed(self) -> "QueueQuery":
        return self._where(QueueItem.is_failed.is_(False))

    def not_cleaned(self) -> "QueueQuery":
        return self._where(QueueItem.source_cleaned.is_(False))

    def for_run(self, run_id: str) -> "QueueQuery":
        return self._where(QueueItem.run_id == run_id)

    def not_for_run(self, run_id: str) -> "QueueQuery":
        return self._where(QueueItem.run_id != run_id)

    def excluding_ids(self, item_ids: Iterable[int]) -> "QueueQuery":
        """Drops rows that are currently active in the lftp queue."""
        item_ids = list(item_ids)
        if not item_ids:
            return self
        return self._where(QueueItem.id.not_in(item_ids))

    def retry_eligible(self, max_retries: int) -> "QueueQuery":
        """Failed rows that still have retry attempts left."""
        return self._where(QueueItem.is_failed.is_(True), QueueItem.retries < max_retries)

    def all(self) -> List[QueueItem]:
        return list(self._session.scalars(self._stmt.order_by(QueueItem.id)))

    def count(self) -> int:
        count_stmt = select(func.count()).select_from(self._stmt.subquery())
        return self._session.scalar(count_stmt) or 0


class QueueStore:
    """Durable record of every item Locomotive has started transferring.

    Attributes:
        session: The SQLAlchemy session used for every read and write.
    """

    def __init__(self, session: Session):
        self.session = session

    def query(self) -> QueueQuery:
        return QueueQuery(self.session)

    def get(self, item_id: int) -> Optional[QueueItem]:
        item = self.session.get(QueueItem, item_id)
        if item is None or item.deleted_at is not None:
            return None
        return item

    def first_or_new(self, fingerprint: str) -> QueueItem:
        """Returns the live row for a fingerprint, or a new unsaved row.

        New rows carry explicit defaults so callers can inspect flags before
        the first flush.
        """
        existing = self.session.scalars(
            select(QueueItem).where(
                QueueItem.fingerprint == fingerprint,
                QueueItem.deleted_at.is_(None),
            )
        ).first()
        if existing is not None:
            return existing
        return QueueItem(
            fingerprint=fingerprint,
            is_active=False,
            is_finished=False,
            is_failed=False,
            is_moved=False,
            source_cleaned=False,
            retries=0,
        )

    def save(self, item: QueueItem) -> QueueItem:
        self.session.add(item)
        self.session.commit()
        return item

    def soft_delete(self, fingerprint: str) -> bool:
        """Marks the live row for a fingerprint as deleted.

        Returns:
            True if a row was deleted, False if no live row matched.
        """
        item = self.session.scalars(
            select(QueueItem).where(
                QueueItem.fingerprint == fingerprint,
                QueueItem.deleted_at.is_(None),
            )
        ).first()
        if item is None:
            return False
        item.deleted_at = datetime.now()
        self.save(item)
        logging.info(f"Removed '{item.name}' ({fingerprint}) from the local queue.")
        return True

    def touch_last_run(self, now: datetime) -> datetime:
        """Records `now` as the last run time and returns the previous one.

        On the very first run there is no previous value and `now` is returned.
        """
        metrics = self.session.get(Metrics, METRICS_ROW_ID)
        if metrics is None:
            metrics = Metrics(id=METRICS_ROW_ID)
        previous = metrics.last_run or now
        metrics.last_run = now
        self.session.add(metrics)
        self.session.commit()
        return previous

    def close(self) -> None:
        self.session.close()
