"""Download of tenant and meter configuration from the remote database.

The remote database is the master. Each cycle pulls every configuration
row that belongs to the local tenant and reconciles it into the local
copy: missing rows are inserted, differing rows updated, and local rows
that disappeared remotely are deactivated (never deleted).
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Type

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from ..database import connect_with_retry
from ..errors import MeterSyncError
from ..models.meter import Meter, MeterElement
from ..models.register import DeviceRegister, Register
from ..models.sync_log import SyncLog
from ..models.tenant import Tenant
from ..utils.retry import CONNECTION_RETRY, QUERY_RETRY, RetryPolicy, retry_call
from ..utils.timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncTable:
    """A reconciled table and its primary key attribute."""

    name: str
    model: Type[SQLModel]
    primary_key: str

    @property
    def fields(self) -> List[str]:
        return [column.name for column in self.model.__table__.columns]


# Parents before children
SYNC_TABLES = (
    SyncTable("tenant", Tenant, "tenant_id"),
    SyncTable("meter", Meter, "meter_id"),
    SyncTable("meter_element", MeterElement, "meter_element_id"),
    SyncTable("register", Register, "register_id"),
    SyncTable("device_register", DeviceRegister, "device_register_id"),
)


@dataclass
class TableChanges:
    inserted: int = 0
    updated: int = 0
    deactivated: int = 0
    changed_fields: Dict[int, List[str]] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return bool(self.inserted or self.updated or self.deactivated)

    def to_dict(self) -> dict:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "deactivated": self.deactivated,
            "changed_fields": {str(k): v for k, v in self.changed_fields.items()},
        }


@dataclass
class DownloadResult:
    started_at: datetime
    tables: Dict[str, TableChanges] = field(default_factory=dict)
    success: bool = True
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def inserted(self) -> int:
        return sum(t.inserted for t in self.tables.values())

    @property
    def updated(self) -> int:
        return sum(t.updated for t in self.tables.values())

    @property
    def deactivated(self) -> int:
        return sum(t.deactivated for t in self.tables.values())

    @property
    def modified_tables(self) -> Set[str]:
        return {name for name, changes in self.tables.items() if changes.has_changes}

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "inserted": self.inserted,
            "updated": self.updated,
            "deactivated": self.deactivated,
            "tables": {name: changes.to_dict() for name, changes in self.tables.items()},
            "success": self.success,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 1),
        }


class DownloadSyncManager:
    """Reconciles the local configuration tables against the remote master."""

    def __init__(
        self,
        local_engine: Engine,
        remote_engine: Engine,
        tenant_id: int,
        on_config_changed: Optional[Callable[[Set[str]], None]] = None,
        connection_policy: RetryPolicy = CONNECTION_RETRY,
        query_policy: RetryPolicy = QUERY_RETRY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.local_engine = local_engine
        self.remote_engine = remote_engine
        self.tenant_id = tenant_id
        self.on_config_changed = on_config_changed
        self.connection_policy = connection_policy
        self.query_policy = query_policy
        self.sleep = sleep

        # State
        self._lock = threading.Lock()
        self.is_syncing = False
        self.last_sync_at: Optional[datetime] = None
        self.last_sync_success: Optional[bool] = None
        self.last_success_at: Optional[datetime] = None
        self.last_failure_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_result: Optional[DownloadResult] = None

    # -- remote --------------------------------------------------------------

    def fetch_remote(self) -> Dict[str, List[dict]]:
        """Every remote configuration row scoped to the local tenant."""
        connect_with_retry(self.remote_engine, "remote", self.connection_policy, sleep=self.sleep)

        def _fetch():
            with Session(self.remote_engine) as session:
                tenants = session.exec(select(Tenant).where(Tenant.tenant_id == self.tenant_id)).all()
                meters = session.exec(select(Meter).where(Meter.tenant_id == self.tenant_id)).all()

                meter_ids = [m.meter_id for m in meters]
                device_ids = sorted({m.device_id for m in meters})

                elements = []
                associations = []
                registers = []
                if meter_ids:
                    elements = session.exec(
                        select(MeterElement).where(MeterElement.meter_id.in_(meter_ids))
                    ).all()
                if device_ids:
                    associations = session.exec(
                        select(DeviceRegister).where(DeviceRegister.device_id.in_(device_ids))
                    ).all()
                register_ids = sorted({a.register_id for a in associations})
                if register_ids:
                    registers = session.exec(
                        select(Register).where(Register.register_id.in_(register_ids))
                    ).all()

                return {
                    "tenant": [t.model_dump() for t in tenants],
                    "meter": [m.model_dump() for m in meters],
                    "meter_element": [e.model_dump() for e in elements],
                    "register": [r.model_dump() for r in registers],
                    "device_register": [a.model_dump() for a in associations],
                }

        return retry_call(_fetch, self.query_policy, "fetch remote configuration",
                          retry_on=(SQLAlchemyError,), sleep=self.sleep)

    # -- local ---------------------------------------------------------------

    def _local_scope(self, session: Session, table: SyncTable):
        statement = select(table.model)
        if table.model is Tenant:
            statement = statement.where(Tenant.tenant_id == self.tenant_id)
        elif table.model is Meter:
            statement = statement.where(Meter.tenant_id == self.tenant_id)
        return session.exec(statement).all()

    def reconcile_table(self, session: Session, table: SyncTable, remote_rows: List[dict]) -> TableChanges:
        """Apply one table's remote rows to the local session (no commit)."""
        changes = TableChanges()
        local_rows = {getattr(row, table.primary_key): row for row in self._local_scope(session, table)}
        remote_keys = {data[table.primary_key] for data in remote_rows}

        # Retire and update before inserting; a row recreated under a new
        # key reuses the natural key of the row it replaces.
        for key, local in local_rows.items():
            if key not in remote_keys and local.active:
                local.active = False
                session.add(local)
                changes.deactivated += 1
                logger.info(f"{table.name} {key}: deactivated (no longer in remote)")

        new_rows = []
        updates = []
        for data in remote_rows:
            key = data[table.primary_key]
            local = local_rows.get(key)
            if local is None:
                local = session.get(table.model, key)
            if local is None:
                new_rows.append(data)
                continue

            changed = [name for name in table.fields if getattr(local, name) != data.get(name)]
            if changed:
                updates.append((key, local, data, changed))

        session.flush()

        # Rows retired remotely are written before rows that become active
        for key, local, data, changed in sorted(updates, key=lambda u: bool(u[2].get("active", True))):
            for name in changed:
                setattr(local, name, data.get(name))
            session.add(local)
            if not data.get("active", True):
                session.flush()
            changes.updated += 1
            changes.changed_fields[key] = changed
            logger.info(f"{table.name} {key}: updated {', '.join(changed)}")

        session.flush()

        for data in new_rows:
            key = data[table.primary_key]
            session.add(table.model(**data))
            changes.inserted += 1
            logger.info(f"{table.name} {key}: inserted")

        return changes

    def apply(self, remote: Dict[str, List[dict]]) -> Dict[str, TableChanges]:
        """Reconcile every table in one local transaction."""

        def _apply():
            tables: Dict[str, TableChanges] = {}
            with Session(self.local_engine) as session:
                for table in SYNC_TABLES:
                    tables[table.name] = self.reconcile_table(session, table, remote.get(table.name, []))
                    session.flush()
                session.commit()
            return tables

        return retry_call(_apply, self.query_policy, "apply configuration to local database",
                          retry_on=(SQLAlchemyError,), sleep=self.sleep)

    # -- cycle ---------------------------------------------------------------

    def sync_configuration(self) -> Optional[DownloadResult]:
        """Run one download cycle. Returns None if one is already running."""
        if not self._lock.acquire(blocking=False):
            logger.warning("Download already in progress, skipping")
            return None

        self.is_syncing = True
        result = DownloadResult(started_at=utcnow())
        started = time.monotonic()
        try:
            remote = self.fetch_remote()
            result.tables = self.apply(remote)
        except (MeterSyncError, SQLAlchemyError) as e:
            result.success = False
            result.error = str(e)
            logger.critical(f"Download cycle aborted, local configuration unchanged: {e}")
        finally:
            result.duration_ms = (time.monotonic() - started) * 1000
            self._record(result)
            self.is_syncing = False
            self._lock.release()

        if not result.success:
            return result

        modified = result.modified_tables
        if modified:
            logger.info(
                f"Configuration sync complete: {result.inserted} inserted, {result.updated} updated, "
                f"{result.deactivated} deactivated ({', '.join(sorted(modified))})"
            )
            self._notify(modified)
        else:
            logger.info("Configuration sync complete: local configuration up to date")
        return result

    def _notify(self, modified: Set[str]):
        if not self.on_config_changed:
            return
        try:
            self.on_config_changed(modified)
        except Exception as e:
            logger.error(f"Configuration change callback failed: {e}", exc_info=True)

    def _record(self, result: DownloadResult):
        now = utcnow()
        self.last_result = result
        self.last_sync_at = now
        self.last_sync_success = result.success
        if result.success:
            self.last_success_at = now
        else:
            self.last_failure_at = now
            self.last_error = result.error

        message = result.error
        if result.success and not result.modified_tables:
            message = "up to date"
        try:
            with Session(self.local_engine) as session:
                session.add(SyncLog(
                    operation="download",
                    started_at=result.started_at,
                    finished_at=now,
                    inserted=result.inserted,
                    updated=result.updated,
                    deleted=result.deactivated,
                    success=result.success,
                    message=message,
                ))
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to write download sync log: {e}")

    def status(self) -> dict:
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "is_syncing": self.is_syncing,
            "tenant_id": self.tenant_id,
            "last_sync_at": _iso(self.last_sync_at),
            "last_sync_success": self.last_sync_success,
            "last_success_at": _iso(self.last_success_at),
            "last_failure_at": _iso(self.last_failure_at),
            "last_error": self.last_error,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }
