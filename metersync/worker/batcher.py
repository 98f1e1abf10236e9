"""In-memory reading batcher with validated, chunked, transactional inserts."""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, List, Optional

from sqlalchemy import insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..database import CONNECTION_ERRORS
from ..errors import DatabaseConnectionError, RetryExhaustedError
from ..models.meter_reading import MeterReading
from ..utils.retry import BATCH_RETRY, RetryPolicy, retry_call
from ..utils.timeutil import ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Upper bound on rows in a single INSERT statement
MAX_BATCH_SIZE = 100

# Cached readings above this count are logged at every deferred flush
PENDING_WARNING_THRESHOLD = 10000


@dataclass
class PendingReading:
    """A collected value waiting to be persisted."""

    meter_id: Optional[int]
    timestamp: Any
    value: Any
    data_point: Optional[str]
    unit: Optional[str] = None
    meter_element_id: Optional[int] = None
    is_synchronized: bool = False
    retry_count: int = 0

    def dedup_key(self):
        return (self.meter_id, self.meter_element_id, self.timestamp, self.data_point)

    def to_row(self, created_at: datetime) -> dict:
        return {
            "meter_id": self.meter_id,
            "meter_element_id": self.meter_element_id,
            "timestamp": self.timestamp,
            "value": float(self.value),
            "unit": self.unit,
            "data_point": self.data_point,
            "is_synchronized": False,
            "retry_count": 0,
            "created_at": created_at,
        }


@dataclass
class ValidationIssue:
    index: int
    reason: str


@dataclass
class ValidationResult:
    valid: List[PendingReading] = field(default_factory=list)
    invalid_count: int = 0
    skipped_count: int = 0
    errors: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid_count(self) -> int:
        return len(self.valid)

    @property
    def total(self) -> int:
        return self.valid_count + self.invalid_count + self.skipped_count


@dataclass
class InsertionMetrics:
    """Outcome of the most recent flush."""

    total_processed: int = 0
    inserted: int = 0
    failed: int = 0
    skipped: int = 0
    retry_attempts: int = 0
    batches: int = 0
    batch_sizes: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict:
        return {
            "total_processed": self.total_processed,
            "inserted": self.inserted,
            "failed": self.failed,
            "skipped": self.skipped,
            "retry_attempts": self.retry_attempts,
            "batches": self.batches,
            "batch_sizes": list(self.batch_sizes),
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "duration_ms": round(self.duration_ms, 1),
        }


def _validation_reason(reading: PendingReading, now: datetime) -> Optional[str]:
    if reading.meter_id is None:
        return "meter_id is missing"

    timestamp = reading.timestamp
    if timestamp is None:
        return "timestamp is missing"
    if isinstance(timestamp, str):
        try:
            timestamp = datetime.fromisoformat(timestamp)
        except ValueError:
            return f"timestamp is not a valid date: {reading.timestamp!r}"
    if not isinstance(timestamp, datetime):
        return f"timestamp is not a valid date: {reading.timestamp!r}"
    timestamp = ensure_utc(timestamp)
    if timestamp > now:
        return f"timestamp {timestamp.isoformat()} is in the future"
    reading.timestamp = timestamp

    value = reading.value
    if value is None:
        return "value is missing"
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return f"value is not numeric: {value!r}"
    if not math.isfinite(value):
        return f"value is not a finite number: {value!r}"

    if not isinstance(reading.data_point, str) or not reading.data_point.strip():
        return "data_point is empty"

    return None


class ReadingBatcher:
    """Accumulates pending readings and flushes them in bounded transactions."""

    def __init__(
        self,
        engine: Engine,
        batch_size: int = MAX_BATCH_SIZE,
        retry_policy: RetryPolicy = BATCH_RETRY,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        self.engine = engine
        self.batch_size = batch_size
        self.retry_policy = retry_policy
        self.sleep = sleep
        self.clock = clock

        self._pending: List[PendingReading] = []
        self._lock = threading.Lock()
        self._metrics = InsertionMetrics()

    # -- cache -----------------------------------------------------------

    def add_reading(self, reading: PendingReading):
        with self._lock:
            self._pending.append(reading)

    def add_readings(self, readings: Iterable[PendingReading]):
        with self._lock:
            self._pending.extend(readings)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def pending(self) -> List[PendingReading]:
        with self._lock:
            return list(self._pending)

    def clear(self):
        with self._lock:
            self._pending = []

    # -- validation --------------------------------------------------------

    def validate_readings(self, readings: Optional[List[PendingReading]] = None) -> ValidationResult:
        """Split readings into valid, invalid and skipped (duplicates).

        Timestamps of valid readings are normalised to aware UTC datetimes.
        """
        if readings is None:
            readings = self.pending()

        now = self.clock()
        result = ValidationResult()
        seen = set()

        for index, reading in enumerate(readings):
            reason = _validation_reason(reading, now)
            if reason:
                result.invalid_count += 1
                result.errors.append(ValidationIssue(index, reason))
                logger.warning(f"Invalid reading #{index} (meter {reading.meter_id}, {reading.data_point}): {reason}")
                continue

            key = reading.dedup_key()
            if key in seen:
                result.skipped_count += 1
                logger.debug(f"Skipping duplicate reading #{index}: {key}")
                continue
            seen.add(key)
            result.valid.append(reading)

        return result

    # -- flush -------------------------------------------------------------

    def flush_batch(self) -> InsertionMetrics:
        """Persist every cached reading, one transaction per chunk.

        Readings from chunks that fail every attempt stay cached for the next
        flush; invalid and duplicate readings are dropped.
        """
        with self._lock:
            to_flush = self._pending
            self._pending = []

        metrics = InsertionMetrics(total_processed=len(to_flush), started_at=self.clock())
        self._metrics = metrics
        started = time.monotonic()

        if not to_flush:
            return metrics

        validation = self.validate_readings(to_flush)
        metrics.skipped = validation.invalid_count + validation.skipped_count
        metrics.errors.extend(f"reading #{issue.index}: {issue.reason}" for issue in validation.errors)

        retained: List[PendingReading] = []
        valid = validation.valid
        chunks = [valid[i:i + self.batch_size] for i in range(0, len(valid), self.batch_size)]

        for number, chunk in enumerate(chunks, start=1):
            metrics.batches += 1
            metrics.batch_sizes.append(len(chunk))
            created_at = self.clock()
            rows = [reading.to_row(created_at) for reading in chunk]

            def _on_retry(attempt, error):
                metrics.retry_attempts += 1

            try:
                retry_call(
                    lambda: self._insert_chunk(rows),
                    self.retry_policy,
                    f"insert batch {number}/{len(chunks)} ({len(chunk)} readings)",
                    retry_on=(SQLAlchemyError, DatabaseConnectionError),
                    sleep=self.sleep,
                    on_retry=_on_retry,
                )
            except RetryExhaustedError as e:
                metrics.failed += len(chunk)
                metrics.errors.append(str(e))
                retained.extend(chunk)
                if isinstance(e.last_error, CONNECTION_ERRORS):
                    remaining = [reading for later in chunks[number:] for reading in later]
                    metrics.failed += len(remaining)
                    retained.extend(remaining)
                    logger.error(
                        f"Local database unavailable, deferring flush of {len(retained)} readings "
                        f"({len(chunks) - number} batches not attempted)"
                    )
                    break
                continue

            metrics.inserted += len(chunk)

        if retained:
            with self._lock:
                self._pending = retained + self._pending
                backlog = len(self._pending)
            logger.error(f"{len(retained)} readings kept in cache after failed inserts")
            if backlog > PENDING_WARNING_THRESHOLD:
                logger.warning(f"Reading cache holds {backlog} unpersisted readings")

        metrics.duration_ms = (time.monotonic() - started) * 1000
        logger.info(
            f"Flushed {metrics.total_processed} readings: {metrics.inserted} inserted, "
            f"{metrics.failed} failed, {metrics.skipped} skipped in {metrics.batches} batches "
            f"({metrics.duration_ms:.0f}ms)"
        )
        return metrics

    def _insert_chunk(self, rows: List[dict]):
        # engine.begin() commits on success and rolls back on any error
        with self.engine.begin() as conn:
            conn.execute(insert(MeterReading).values(rows))

    def get_insertion_metrics(self) -> InsertionMetrics:
        return self._metrics
