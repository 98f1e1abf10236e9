"""Environment configuration for the MeterSync agent.

Values come from the process environment, optionally seeded from a
``.env`` file. Database credentials and the tenant id are required;
everything else has a documented default.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

import pytz
from dotenv import find_dotenv, load_dotenv
from sqlalchemy.engine import URL, make_url

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION_INTERVAL = 60
DEFAULT_UPLOAD_INTERVAL = 300
DEFAULT_DOWNLOAD_INTERVAL = 3600
DEFAULT_OFFLINE_BACKOFF = 300

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection parameters for one PostgreSQL database."""

    name: str
    url: str
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    pool_size: int = 5

    def describe(self) -> str:
        if self.host:
            return f"{self.host}:{self.port}/{self.database}"
        return make_url(self.url).render_as_string(hide_password=True)


@dataclass(frozen=True)
class BACnetSettings:
    """Local BACnet interface and read behaviour."""

    local_ip: str = "0.0.0.0"
    port: int = 47808
    device_id: int = 3001234
    connectivity_timeout_ms: int = 2000
    batch_read_timeout_ms: int = 5000
    sequential_read_timeout_ms: int = 3000
    batch_size: int = 0  # 0 = all points in one request
    min_batch_size: int = 1
    enable_connectivity_check: bool = True
    enable_batch_read: bool = True
    enable_adaptive_batching: bool = True
    enable_sequential_fallback: bool = True


@dataclass(frozen=True)
class Settings:
    """Complete agent configuration."""

    local_db: DatabaseSettings
    remote_db: DatabaseSettings
    tenant_id: int
    collection_interval: int = DEFAULT_COLLECTION_INTERVAL
    upload_interval: int = DEFAULT_UPLOAD_INTERVAL
    download_interval: int = DEFAULT_DOWNLOAD_INTERVAL
    offline_backoff: int = DEFAULT_OFFLINE_BACKOFF
    bacnet: BACnetSettings = field(default_factory=BACnetSettings)
    status_api_host: str = "0.0.0.0"
    status_api_port: int = 8080
    log_level: str = "INFO"
    timezone: str = "UTC"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> "Settings":
        """Build settings from the environment.

        Raises ConfigurationError listing every missing or invalid value.
        """
        if environ is None:
            if dotenv:
                load_dotenv(find_dotenv(usecwd=True))
            environ = os.environ

        reader = _EnvReader(environ)

        local_db = reader.database("LOCAL")
        remote_db = reader.database("REMOTE")
        tenant_id = reader.integer("TENANT_ID", required=True, minimum=1)

        bacnet = BACnetSettings(
            local_ip=reader.string("BACNET_IP", "0.0.0.0"),
            port=reader.integer("BACNET_PORT", 47808, minimum=1),
            device_id=reader.integer("BACNET_DEVICE_ID", 3001234, minimum=0),
            connectivity_timeout_ms=reader.integer("BACNET_CONNECTIVITY_TIMEOUT_MS", 2000, minimum=1),
            batch_read_timeout_ms=reader.integer("BACNET_BATCH_READ_TIMEOUT_MS", 5000, minimum=1),
            sequential_read_timeout_ms=reader.integer("BACNET_SEQUENTIAL_READ_TIMEOUT_MS", 3000, minimum=1),
            batch_size=reader.integer("BACNET_BATCH_SIZE", 0, minimum=0),
            min_batch_size=reader.integer("BACNET_MIN_BATCH_SIZE", 1, minimum=1),
            enable_connectivity_check=reader.boolean("ENABLE_CONNECTIVITY_CHECK", True),
            enable_batch_read=reader.boolean("ENABLE_BATCH_READ", True),
            enable_adaptive_batching=reader.boolean("ENABLE_ADAPTIVE_BATCHING", True),
            enable_sequential_fallback=reader.boolean("ENABLE_SEQUENTIAL_FALLBACK", True),
        )

        settings = cls(
            local_db=local_db,
            remote_db=remote_db,
            tenant_id=tenant_id,
            collection_interval=reader.integer("COLLECTION_INTERVAL_SECONDS", DEFAULT_COLLECTION_INTERVAL, minimum=1),
            upload_interval=reader.integer("UPLOAD_INTERVAL_SECONDS", DEFAULT_UPLOAD_INTERVAL, minimum=1),
            download_interval=reader.integer("DOWNLOAD_INTERVAL_SECONDS", DEFAULT_DOWNLOAD_INTERVAL, minimum=1),
            offline_backoff=reader.integer("OFFLINE_BACKOFF_SECONDS", DEFAULT_OFFLINE_BACKOFF, minimum=1),
            bacnet=bacnet,
            status_api_host=reader.string("STATUS_API_HOST", "0.0.0.0"),
            status_api_port=reader.integer("STATUS_API_PORT", 8080, minimum=1),
            log_level=reader.string("LOG_LEVEL", "INFO").upper(),
            timezone=reader.timezone("TZ", "UTC"),
        )

        reader.raise_errors()
        return settings

    def log_summary(self):
        logger.info("=== MeterSync Configuration ===")
        logger.info(f"Local DB: {self.local_db.describe()}")
        logger.info(f"Remote DB: {self.remote_db.describe()}")
        logger.info(f"Tenant: {self.tenant_id}")
        logger.info(f"BACnet Interface: {self.bacnet.local_ip}:{self.bacnet.port} (device {self.bacnet.device_id})")
        logger.info(f"Collection Interval: {self.collection_interval}s")
        logger.info(f"Upload Interval: {self.upload_interval}s")
        logger.info(f"Download Interval: {self.download_interval}s")
        logger.info(f"Offline Backoff: {self.offline_backoff}s")
        logger.info(f"Display Timezone: {self.timezone}")
        logger.info(
            f"Read Behaviour: connectivity_check={self.bacnet.enable_connectivity_check}, "
            f"batch={self.bacnet.enable_batch_read}, adaptive={self.bacnet.enable_adaptive_batching}, "
            f"sequential_fallback={self.bacnet.enable_sequential_fallback}"
        )


class _EnvReader:
    """Collects conversion errors so all of them are reported at once."""

    def __init__(self, environ: Mapping[str, str]):
        self.environ = environ
        self.errors: List[str] = []

    def _raw(self, name: str) -> Optional[str]:
        value = self.environ.get(name)
        if value is None:
            return None
        value = value.strip()
        return value or None

    def string(self, name: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
        value = self._raw(name)
        if value is None:
            if required:
                self.errors.append(f"{name} is required")
            return default
        return value

    def integer(self, name: str, default: Optional[int] = None, required: bool = False,
                minimum: Optional[int] = None) -> Optional[int]:
        value = self._raw(name)
        if value is None:
            if required:
                self.errors.append(f"{name} is required")
            return default
        try:
            number = int(value)
        except ValueError:
            self.errors.append(f"{name} must be an integer, got {value!r}")
            return default
        if minimum is not None and number < minimum:
            self.errors.append(f"{name} must be >= {minimum}, got {number}")
            return default
        return number

    def boolean(self, name: str, default: bool) -> bool:
        value = self._raw(name)
        if value is None:
            return default
        lowered = value.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        self.errors.append(f"{name} must be a boolean, got {value!r}")
        return default

    def timezone(self, name: str, default: str) -> str:
        value = self.string(name, default)
        try:
            pytz.timezone(value)
        except pytz.UnknownTimeZoneError:
            self.errors.append(f"{name} is not a known timezone, got {value!r}")
            return default
        return value

    def database(self, prefix: str) -> DatabaseSettings:
        name = prefix.lower()
        pool_size = self.integer(f"{prefix}_DB_POOL_SIZE", 5, minimum=1)

        url = self._raw(f"{prefix}_DATABASE_URL")
        if url:
            return DatabaseSettings(name=name, url=url, pool_size=pool_size)

        missing_before = len(self.errors)
        host = self.string(f"{prefix}_DB_HOST", required=True)
        port = self.integer(f"{prefix}_DB_PORT", 5432, minimum=1)
        database = self.string(f"{prefix}_DB_NAME", required=True)
        user = self.string(f"{prefix}_DB_USER", required=True)
        # Password may legitimately be empty (trust auth), but must be set
        if f"{prefix}_DB_PASSWORD" not in self.environ:
            self.errors.append(f"{prefix}_DB_PASSWORD is required")
        password = self.environ.get(f"{prefix}_DB_PASSWORD", "")

        if len(self.errors) > missing_before:
            return DatabaseSettings(name=name, url="", host=host, port=port, database=database)

        url = URL.create(
            "postgresql+psycopg2",
            username=user,
            password=password or None,
            host=host,
            port=port,
            database=database,
        ).render_as_string(hide_password=False)
        return DatabaseSettings(
            name=name, url=url, host=host, port=port, database=database, pool_size=pool_size
        )

    def raise_errors(self):
        if self.errors:
            raise ConfigurationError("Invalid configuration: " + "; ".join(self.errors))
