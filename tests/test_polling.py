"""Collection agent: cycles, offline backoff and status."""

import asyncio
import logging

import pytest
from sqlalchemy import func
from sqlmodel import Session, select

from conftest import METER_IP, METER_PORT, address_key, seed_configuration
from metersync.models import MeterReading
from metersync.worker.batcher import ReadingBatcher
from metersync.worker.cache import RegisterCache
from metersync.worker.polling import CollectionAgent

SIBLING_IP = "10.0.0.22"


def _stored(engine):
    with Session(engine) as session:
        return session.exec(select(func.count()).select_from(MeterReading)).one()


@pytest.fixture
def agent(local_engine, bacnet_client, fake_app, clock):
    # meter 1 (elements A, B) and a sibling meter 2 (element A) on another device
    seed_configuration(local_engine)
    seed_configuration(local_engine, meter_id=2, device_id=2002, ip=SIBLING_IP, elements=((21, "A"),))
    for ip in (METER_IP, SIBLING_IP):
        fake_app.set_value(ip, METER_PORT, 5, 231.0)
        fake_app.set_value(ip, METER_PORT, 6, 4.2)
        fake_app.set_value(ip, METER_PORT, 10005, 229.5)
        fake_app.set_value(ip, METER_PORT, 10006, 3.9)

    cache = RegisterCache(local_engine)
    cache.initialize()
    batcher = ReadingBatcher(local_engine, sleep=lambda s: None, clock=clock)
    return CollectionAgent(cache, bacnet_client, batcher, collection_interval=60,
                           offline_backoff=300, clock=clock)


def _reads_of(fake_app, ip):
    key = address_key(ip, METER_PORT)
    return len([call for call in fake_app.rp_calls if call[0] == key])


class TestCycle:

    @pytest.mark.asyncio
    async def test_cycle_reads_every_element_and_persists(self, agent, local_engine):
        result = await agent.run_cycle()

        assert result.elements_total == 3
        assert result.elements_read == 3
        assert result.readings_collected == 6
        assert result.insertion.inserted == 6
        assert _stored(local_engine) == 6
        assert agent.total_readings_collected == 6

    @pytest.mark.asyncio
    async def test_cycle_summary_logged(self, agent, caplog):
        with caplog.at_level(logging.INFO):
            await agent.run_cycle()

        assert "Collection Cycle #1:" in caplog.text

    @pytest.mark.asyncio
    async def test_overlapping_triggers_run_once(self, agent):
        outcomes = await asyncio.gather(agent.trigger(), agent.trigger())

        assert sorted(outcomes) == [False, True]
        assert agent.cycles_run == 1
        assert agent.task.skipped_triggers == 1


class TestOfflineBackoff:

    @pytest.mark.asyncio
    async def test_offline_meter_backs_off_for_five_minutes(self, agent, fake_app, clock, local_engine):
        fake_app.set_offline(METER_IP, METER_PORT)

        first = await agent.run_cycle()
        assert first.elements_offline == 2
        assert first.elements_read == 1
        attempts_at_t = _reads_of(fake_app, METER_IP)
        sibling_reads = _reads_of(fake_app, SIBLING_IP)

        # every minute until just before T+5min: offline meter untouched, sibling read
        for _ in range(4):
            clock.advance(60)
            result = await agent.run_cycle()
            assert result.elements_in_backoff == 2
            assert result.elements_read == 1
        clock.advance(59)
        result = await agent.run_cycle()
        assert result.elements_in_backoff == 2
        assert _reads_of(fake_app, METER_IP) == attempts_at_t
        assert _reads_of(fake_app, SIBLING_IP) == sibling_reads + 5

        # T+5min: retried, and now reachable again
        fake_app.set_offline(METER_IP, METER_PORT, offline=False)
        clock.advance(1)
        result = await agent.run_cycle()
        assert result.elements_in_backoff == 0
        assert result.elements_read == 3
        assert agent.offline_elements == {}

    @pytest.mark.asyncio
    async def test_backoff_is_per_element(self, agent, fake_app, clock):
        fake_app.set_offline(METER_IP, METER_PORT)
        await agent.run_cycle()

        element_a, element_b, sibling = agent.cache.get_elements()
        assert agent.is_in_backoff(element_a.meter_element_id)
        assert agent.is_in_backoff(element_b.meter_element_id)
        assert not agent.is_in_backoff(sibling.meter_element_id)

    @pytest.mark.asyncio
    async def test_still_offline_after_backoff_extends_it(self, agent, fake_app, clock):
        fake_app.set_offline(METER_IP, METER_PORT)
        await agent.run_cycle()

        clock.advance(300)
        await agent.run_cycle()

        status = agent.offline_elements[11]
        assert status.consecutive_failures == 2
        assert status.backoff_until == clock() + agent.offline_backoff

    @pytest.mark.asyncio
    async def test_status_lists_offline_meters(self, agent, fake_app):
        fake_app.set_offline(METER_IP, METER_PORT)
        await agent.run_cycle()

        status = agent.status()

        assert {m["meter_element_id"] for m in status["offline_meters"]} == {11, 12}
        assert status["configured_interval"] == 60
        assert status["effective_interval"] == 60.0
        assert status["last_cycle"]["elements_offline"] == 2

    @pytest.mark.asyncio
    async def test_slow_meter_warning(self, agent, fake_app, clock, caplog):
        fake_app.set_offline(METER_IP, METER_PORT)
        await agent.run_cycle()
        clock.advance(300)

        with caplog.at_level(logging.WARNING):
            await agent.run_cycle()

        assert "Consistently slow meters detected" in caplog.text
