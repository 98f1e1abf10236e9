"""Download sync manager: tenant-scoped reconciliation into the local copy."""

import logging

import pytest
from sqlmodel import Session, select

from conftest import TENANT_ID, seed_configuration
from metersync.models import DeviceRegister, Meter, MeterElement, Register, SyncLog, Tenant
from metersync.sync.download import DownloadSyncManager


@pytest.fixture
def remote(remote_engine):
    seed_configuration(remote_engine)
    # another tenant's meter on its own device and register
    seed_configuration(remote_engine, meter_id=9, device_id=9009, tenant_id=99,
                       elements=((91, "A"),), registers=((3, 9, "power", "kW"),))
    return remote_engine


@pytest.fixture
def changes():
    return []


@pytest.fixture
def manager(local_engine, remote, changes):
    return DownloadSyncManager(local_engine, remote, TENANT_ID,
                               on_config_changed=changes.append, sleep=lambda s: None)


def _all(engine, model):
    with Session(engine) as session:
        return session.exec(select(model)).all()


def _edit(engine, model, key, **values):
    with Session(engine) as session:
        row = session.get(model, key)
        for name, value in values.items():
            setattr(row, name, value)
        session.add(row)
        session.commit()


class TestInitialSync:

    def test_inserts_only_this_tenants_configuration(self, manager, local_engine):
        result = manager.sync_configuration()

        assert result.success
        assert result.tables["tenant"].inserted == 1
        assert result.tables["meter"].inserted == 1
        assert result.tables["meter_element"].inserted == 2
        assert result.tables["register"].inserted == 2
        assert result.tables["device_register"].inserted == 2
        assert [t.tenant_id for t in _all(local_engine, Tenant)] == [TENANT_ID]
        assert [m.meter_id for m in _all(local_engine, Meter)] == [1]
        assert {r.register_id for r in _all(local_engine, Register)} == {1, 2}

    def test_callback_receives_modified_tables(self, manager, changes):
        manager.sync_configuration()

        assert changes == [{"tenant", "meter", "meter_element", "register", "device_register"}]


class TestIdempotence:

    def test_second_run_changes_nothing(self, manager, local_engine, changes, caplog):
        manager.sync_configuration()

        with caplog.at_level(logging.INFO):
            second = manager.sync_configuration()

        assert second.inserted == 0
        assert second.updated == 0
        assert second.deactivated == 0
        assert second.modified_tables == set()
        assert len(changes) == 1
        assert "up to date" in caplog.text

        logs = _all(local_engine, SyncLog)
        assert [log.operation for log in logs] == ["download", "download"]
        assert logs[-1].message == "up to date"


class TestUpdates:

    def test_changed_fields_are_recorded(self, manager, remote, local_engine, changes):
        manager.sync_configuration()
        _edit(remote, Meter, 1, ip="10.0.0.99", name="Main switchboard")

        result = manager.sync_configuration()

        assert result.tables["meter"].updated == 1
        assert sorted(result.tables["meter"].changed_fields[1]) == ["ip", "name"]
        assert _all(local_engine, Meter)[0].ip == "10.0.0.99"
        assert changes[-1] == {"meter"}

    def test_remote_wins_over_local_edits(self, manager, remote, local_engine):
        manager.sync_configuration()
        _edit(local_engine, Register, 1, field_name="locally_renamed")

        result = manager.sync_configuration()

        assert result.tables["register"].changed_fields[1] == ["field_name"]
        with Session(local_engine) as session:
            assert session.get(Register, 1).field_name == "voltage"


class TestDeactivation:

    def test_rows_missing_remotely_are_deactivated_not_deleted(self, manager, remote, local_engine):
        manager.sync_configuration()
        with Session(remote) as session:
            session.delete(session.get(MeterElement, 12))
            session.commit()

        result = manager.sync_configuration()

        assert result.tables["meter_element"].deactivated == 1
        elements = {e.meter_element_id: e.active for e in _all(local_engine, MeterElement)}
        assert elements == {11: True, 12: False}

        third = manager.sync_configuration()
        assert third.deactivated == 0

    def test_rows_recreated_under_new_keys_replace_the_old_ones(self, manager, remote, local_engine, changes):
        manager.sync_configuration()
        with Session(remote) as session:
            session.delete(session.get(MeterElement, 12))
            session.delete(session.get(DeviceRegister, 100102))
            session.commit()
            session.add(MeterElement(meter_element_id=13, meter_id=1, element="B"))
            session.add(DeviceRegister(device_register_id=500, device_id=1001, register_id=2))
            session.commit()

        result = manager.sync_configuration()

        assert result.success, result.error
        assert result.tables["meter_element"].inserted == 1
        assert result.tables["meter_element"].deactivated == 1
        assert result.tables["device_register"].inserted == 1
        assert result.tables["device_register"].deactivated == 1
        elements = {e.meter_element_id: e.active for e in _all(local_engine, MeterElement)}
        assert elements == {11: True, 12: False, 13: True}
        associations = {a.device_register_id: a.active for a in _all(local_engine, DeviceRegister)}
        assert associations == {100101: True, 100102: False, 500: True}
        assert changes[-1] == {"meter_element", "device_register"}

        later = manager.sync_configuration()
        assert later.success
        assert later.modified_tables == set()

    def test_row_retired_remotely_yields_its_letter_to_a_replacement(self, manager, remote, local_engine):
        manager.sync_configuration()
        _edit(remote, MeterElement, 12, active=False)
        with Session(remote) as session:
            session.add(MeterElement(meter_element_id=13, meter_id=1, element="B"))
            session.commit()

        result = manager.sync_configuration()

        assert result.success, result.error
        assert result.tables["meter_element"].changed_fields[12] == ["active"]
        assert result.tables["meter_element"].inserted == 1
        elements = {e.meter_element_id: e.active for e in _all(local_engine, MeterElement)}
        assert elements == {11: True, 12: False, 13: True}

    def test_reappearing_row_is_reactivated(self, manager, remote, local_engine):
        manager.sync_configuration()
        _edit(local_engine, DeviceRegister, 100101, active=False)

        result = manager.sync_configuration()

        assert result.tables["device_register"].changed_fields[100101] == ["active"]
        with Session(local_engine) as session:
            assert session.get(DeviceRegister, 100101).active is True


class TestFailures:

    def test_unreachable_remote_leaves_local_untouched(self, local_engine, unreachable_engine):
        sleeps = []
        manager = DownloadSyncManager(local_engine, unreachable_engine, TENANT_ID, sleep=sleeps.append)

        result = manager.sync_configuration()

        assert result.success is False
        assert len(sleeps) == 4
        assert _all(local_engine, Meter) == []
        assert manager.status()["last_sync_success"] is False
        assert _all(local_engine, SyncLog)[0].success is False

    def test_callback_errors_do_not_fail_the_cycle(self, local_engine, remote):
        def explode(tables):
            raise RuntimeError("reload failed")

        manager = DownloadSyncManager(local_engine, remote, TENANT_ID, on_config_changed=explode)

        assert manager.sync_configuration().success
