"""
Shared fixtures for the MeterSync test suite.

SQLite files stand in for the local and remote PostgreSQL databases, a
fake BACpypes3 application stands in for the network, and a controllable
clock drives backoff timing.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, Optional, Set

import pytest
import pytz
from bacpypes3.pdu import Address
from sqlmodel import Session

from metersync.config import DatabaseSettings, Settings
from metersync.database import create_db_engine, create_tables
from metersync.models import DeviceRegister, Meter, MeterElement, Register, Tenant

TENANT_ID = 7
DEVICE_ID = 1001
METER_IP = "10.0.0.21"
METER_PORT = 47808

_CONFIG_ENV_VARS = (
    "LOCAL_DATABASE_URL", "LOCAL_DB_HOST", "LOCAL_DB_PORT", "LOCAL_DB_NAME",
    "LOCAL_DB_USER", "LOCAL_DB_PASSWORD", "LOCAL_DB_POOL_SIZE",
    "REMOTE_DATABASE_URL", "REMOTE_DB_HOST", "REMOTE_DB_PORT", "REMOTE_DB_NAME",
    "REMOTE_DB_USER", "REMOTE_DB_PASSWORD", "REMOTE_DB_POOL_SIZE",
    "TENANT_ID", "COLLECTION_INTERVAL_SECONDS", "UPLOAD_INTERVAL_SECONDS",
    "DOWNLOAD_INTERVAL_SECONDS", "OFFLINE_BACKOFF_SECONDS", "LOG_LEVEL", "TZ",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    """Keep host environment and stray .env files out of every test."""
    for var in _CONFIG_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


# ---------------------------------------------------------------------------
# Databases
# ---------------------------------------------------------------------------


@pytest.fixture
def local_engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'local.db'}", name="local")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def remote_engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'remote.db'}", name="remote")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def unreachable_engine(tmp_path):
    """Engine whose database file can never be opened."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'missing' / 'nowhere.db'}", name="remote")
    yield engine
    engine.dispose()


def make_settings(tmp_path):
    """Settings pointing at the same SQLite files as the engine fixtures."""
    return Settings(
        local_db=DatabaseSettings(name="local", url=f"sqlite:///{tmp_path / 'local.db'}"),
        remote_db=DatabaseSettings(name="remote", url=f"sqlite:///{tmp_path / 'remote.db'}"),
        tenant_id=TENANT_ID,
    )


def seed_configuration(engine, registers=((1, 5, "voltage", "V"), (2, 6, "current", "A")),
                       elements=((11, "A"), (12, "B")), meter_id=1, device_id=DEVICE_ID,
                       ip=METER_IP, port=METER_PORT, tenant_id=TENANT_ID):
    """Insert a tenant, one meter with elements and its device registers."""
    with Session(engine) as session:
        if session.get(Tenant, tenant_id) is None:
            session.add(Tenant(tenant_id=tenant_id, name="Acme Facilities", city="Leeds"))
        session.add(Meter(meter_id=meter_id, tenant_id=tenant_id, name=f"Meter {meter_id}",
                          ip=ip, port=port, device_id=device_id))
        for meter_element_id, letter in elements:
            session.add(MeterElement(meter_element_id=meter_element_id, meter_id=meter_id, element=letter))
        for register_id, number, field_name, unit in registers:
            if session.get(Register, register_id) is None:
                session.add(Register(register_id=register_id, register=number, field_name=field_name, unit=unit))
            session.add(DeviceRegister(device_register_id=device_id * 100 + register_id,
                                       device_id=device_id, register_id=register_id))
        session.commit()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable returning a controllable aware UTC datetime."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 12, 0, 0, tzinfo=pytz.utc))


# ---------------------------------------------------------------------------
# BACnet
# ---------------------------------------------------------------------------


def address_key(ip: str, port: int) -> str:
    return str(Address(f"{ip}:{port}"))


class FakeBACnetApp:
    """Stands in for a BACpypes3 NormalApplication.

    ``values`` maps (address key, object instance) to a present value.
    Offline addresses never answer; ``max_batch`` makes larger
    ReadPropertyMultiple requests hang until the caller times out.
    """

    def __init__(self):
        self.values: Dict[tuple, float] = {}
        self.offline: Set[str] = set()
        self.max_batch: Optional[int] = None
        self.rpm_error: Optional[Exception] = None
        self.rpm_calls = []
        self.rp_calls = []
        self.closed = False

    def set_value(self, ip, port, instance, value):
        self.values[(address_key(ip, port), instance)] = value

    def set_offline(self, ip, port, offline=True):
        key = address_key(ip, port)
        if offline:
            self.offline.add(key)
        else:
            self.offline.discard(key)

    async def _hang(self):
        await asyncio.sleep(3600)

    async def read_property(self, address, objid, propid):
        key = str(address)
        self.rp_calls.append((key, objid[1]))
        if key in self.offline:
            await self._hang()
        if objid[1] == 4194303:
            return "Fake Meter"
        if (key, objid[1]) not in self.values:
            raise LookupError(f"unknown object {objid}")
        return self.values[(key, objid[1])]

    async def read_property_multiple(self, address, parameter_list):
        key = str(address)
        instances = [parameter_list[i][1] for i in range(0, len(parameter_list), 2)]
        self.rpm_calls.append((key, len(instances)))
        if key in self.offline:
            await self._hang()
        if self.rpm_error is not None:
            raise self.rpm_error
        if self.max_batch is not None and len(instances) > self.max_batch:
            await self._hang()

        response = []
        for index in range(0, len(parameter_list), 2):
            objid = parameter_list[index]
            if (key, objid[1]) in self.values:
                response.append((objid, parameter_list[index + 1][0], None, self.values[(key, objid[1])]))
        return response

    def close(self):
        self.closed = True


@pytest.fixture
def fake_app():
    return FakeBACnetApp()


@pytest.fixture
def bacnet_client(fake_app):
    from metersync.worker.bacnet_client import BACnetClient

    return BACnetClient(
        local_ip="127.0.0.1",
        connectivity_timeout_ms=50,
        batch_read_timeout_ms=50,
        sequential_read_timeout_ms=50,
        app=fake_app,
    )
