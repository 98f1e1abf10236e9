"""Upload of collected readings from the local to the remote database.

Rows are deleted locally only after the remote transaction that copied
them has committed. A crash between the two steps re-uploads the same rows
on the next cycle, so delivery is at-least-once.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from sqlalchemy import delete, func, insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from ..database import connect_with_retry
from ..errors import MeterSyncError
from ..models.meter_reading import MeterReading
from ..models.sync_log import SyncLog
from ..utils.retry import CONNECTION_RETRY, QUERY_RETRY, RetryPolicy, retry_call
from ..utils.timeutil import utcnow

logger = logging.getLogger(__name__)

UPLOAD_BATCH_SIZE = 100


@dataclass
class UploadResult:
    started_at: datetime
    queried: int = 0
    uploaded: int = 0
    deleted: int = 0
    failed: int = 0
    batches: int = 0
    success: bool = True
    error: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "queried": self.queried,
            "uploaded": self.uploaded,
            "deleted": self.deleted,
            "failed": self.failed,
            "batches": self.batches,
            "success": self.success,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 1),
        }


class UploadSyncManager:
    """Moves unsynchronized readings from the local to the remote database."""

    def __init__(
        self,
        local_engine: Engine,
        remote_engine: Engine,
        batch_size: int = UPLOAD_BATCH_SIZE,
        max_batches_per_cycle: int = 50,
        connection_policy: RetryPolicy = CONNECTION_RETRY,
        query_policy: RetryPolicy = QUERY_RETRY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.local_engine = local_engine
        self.remote_engine = remote_engine
        self.batch_size = min(batch_size, UPLOAD_BATCH_SIZE)
        self.max_batches_per_cycle = max_batches_per_cycle
        self.connection_policy = connection_policy
        self.query_policy = query_policy
        self.sleep = sleep

        # State
        self._lock = threading.Lock()
        self.is_syncing = False
        self.total_synced = 0
        self.last_sync_at: Optional[datetime] = None
        self.last_sync_success: Optional[bool] = None
        self.last_success_at: Optional[datetime] = None
        self.last_failure_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_result: Optional[UploadResult] = None

    # -- steps -------------------------------------------------------------

    def query_pending(self, limit: Optional[int] = None) -> List[MeterReading]:
        """Oldest unsynchronized local readings, at most one batch."""
        limit = min(limit or self.batch_size, self.batch_size)

        def _query():
            with Session(self.local_engine) as session:
                statement = (
                    select(MeterReading)
                    .where(MeterReading.is_synchronized == False)  # noqa: E712
                    .order_by(MeterReading.timestamp, MeterReading.id)
                    .limit(limit)
                )
                return list(session.exec(statement).all())

        return retry_call(_query, self.query_policy, "query pending readings",
                          retry_on=(SQLAlchemyError,), sleep=self.sleep)

    def upload_batch(self, rows: Sequence[MeterReading]) -> int:
        """Insert ``rows`` into the remote database in one transaction."""
        if not rows:
            return 0

        connect_with_retry(self.remote_engine, "remote", self.connection_policy, sleep=self.sleep)

        payload = [row.to_upload_row() for row in rows]

        def _insert():
            # engine.begin() commits on success and rolls back on any error
            with self.remote_engine.begin() as conn:
                conn.execute(insert(MeterReading).values(payload))

        retry_call(_insert, self.query_policy, f"upload {len(payload)} readings to remote",
                   retry_on=(SQLAlchemyError,), sleep=self.sleep)
        logger.info(f"Uploaded {len(payload)} readings to remote database")
        return len(payload)

    def delete_uploaded(self, ids: Sequence[int]) -> int:
        """Delete exactly ``ids`` from the local reading store."""
        if not ids:
            return 0

        def _delete():
            with self.local_engine.begin() as conn:
                result = conn.execute(delete(MeterReading).where(MeterReading.id.in_(list(ids))))
                return result.rowcount

        deleted = retry_call(_delete, self.query_policy, f"delete {len(ids)} uploaded readings",
                             retry_on=(SQLAlchemyError,), sleep=self.sleep)
        if deleted != len(ids):
            logger.warning(f"Deleted {deleted} local readings, expected {len(ids)}")
        return deleted

    # -- cycle -------------------------------------------------------------

    def sync_readings(self) -> Optional[UploadResult]:
        """Upload batches until the queue is drained or a step fails.

        Returns None if another upload is already running.
        """
        if not self._lock.acquire(blocking=False):
            logger.warning("Upload already in progress, skipping")
            return None

        self.is_syncing = True
        result = UploadResult(started_at=utcnow())
        started = time.monotonic()
        try:
            while result.batches < self.max_batches_per_cycle:
                rows = self.query_pending()
                if not rows:
                    break
                result.batches += 1
                result.queried += len(rows)
                try:
                    result.uploaded += self.upload_batch(rows)
                except (MeterSyncError, SQLAlchemyError):
                    result.failed += len(rows)
                    raise
                result.deleted += self.delete_uploaded([row.id for row in rows])
                self.total_synced += len(rows)
        except (MeterSyncError, SQLAlchemyError) as e:
            result.success = False
            result.error = str(e)
            logger.critical(f"Upload cycle aborted, readings stay local until next cycle: {e}")
        except BaseException as e:
            result.success = False
            result.error = f"interrupted: {e!r}"
            raise
        finally:
            result.duration_ms = (time.monotonic() - started) * 1000
            self._record(result)
            self.is_syncing = False
            self._lock.release()

        if result.success:
            if result.queried:
                logger.info(
                    f"Upload cycle complete: {result.uploaded} uploaded, {result.deleted} deleted "
                    f"in {result.batches} batches ({result.duration_ms:.0f}ms)"
                )
            else:
                logger.info("Upload cycle complete: no pending readings")
        return result

    def _record(self, result: UploadResult):
        now = utcnow()
        self.last_result = result
        self.last_sync_at = now
        self.last_sync_success = result.success
        if result.success:
            self.last_success_at = now
        else:
            self.last_failure_at = now
            self.last_error = result.error

        try:
            with Session(self.local_engine) as session:
                session.add(SyncLog(
                    operation="upload",
                    started_at=result.started_at,
                    finished_at=now,
                    inserted=result.uploaded,
                    deleted=result.deleted,
                    failed=result.failed,
                    success=result.success,
                    message=result.error,
                ))
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to write upload sync log: {e}")

    def get_queue_size(self) -> Optional[int]:
        """Unsynchronized local readings, or None if the count fails."""
        try:
            with Session(self.local_engine) as session:
                statement = (
                    select(func.count())
                    .select_from(MeterReading)
                    .where(MeterReading.is_synchronized == False)  # noqa: E712
                )
                return session.exec(statement).one()
        except SQLAlchemyError as e:
            logger.warning(f"Failed to count pending readings: {e}")
            return None

    def status(self) -> dict:
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "is_syncing": self.is_syncing,
            "last_sync_at": _iso(self.last_sync_at),
            "last_sync_success": self.last_sync_success,
            "last_success_at": _iso(self.last_success_at),
            "last_failure_at": _iso(self.last_failure_at),
            "last_error": self.last_error,
            "queue_size": self.get_queue_size(),
            "total_synced": self.total_synced,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }
