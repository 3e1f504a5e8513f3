import asyncio

import pytest

import stream_controller
from controller import MeasurementSession
from errors import SensorConnectionError
from frame_decoder import TAG_FUEL, TAG_INCLINATION, encode_frame
from models import MeasurementKind
from request_gate import ManualRequestGate
from stream_controller import (
    INCLINATION_CHAR_UUID,
    OFFLINE_CHAR_UUID,
    WEIGHT_CHAR_UUID,
    LinkState,
    MeasurementStreamController,
)

ADDRESS = "AA:BB:CC:DD:EE:FF"
TARE_KG = 5.0
CAPACITY_KG = 10.0


def weight_for(percent):
    return TARE_KG + CAPACITY_KG * percent / 100.0


@pytest.fixture
def cylinder(repo):
    return repo.add_cylinder("10 kg propane", TARE_KG, CAPACITY_KG, make_active=True)


@pytest.fixture
def alerts():
    return []


def make_session(ble, repo, **kwargs):
    controller = MeasurementStreamController(
        repo,
        client_factory=ble.client_factory,
        device_finder=ble.find_device,
        connect_backoff_s=0,
        reconnect_backoff_s=0,
    )
    return MeasurementSession(controller, repo, **kwargs)


@pytest.fixture
def session(ble, repo, cylinder, alerts):
    return make_session(ble, repo, notifier=alerts.append)


@pytest.fixture
def manual_session(ble, repo, cylinder):
    """A session that leaves the offline history to explicit sync_backlog() calls."""
    return make_session(ble, repo, sync_on_connect=False)


async def until(predicate, timeout=2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(poll(), timeout)


def test_low_fuel_alert_fires_once_per_episode(ble, session, alerts):
    async def scenario():
        async with session:
            await session.start(ADDRESS)
            for percent in (20, 10, 8, 20, 12):
                ble.client.notify(WEIGHT_CHAR_UUID, encode_frame(TAG_FUEL, weight_kg=weight_for(percent)))
                await asyncio.sleep(0)
            await until(lambda: session.alert_machine.episode.has_alert_been_sent
                        and len(alerts) == 2)

    asyncio.run(scenario())

    assert [int(a.percentage) for a in alerts] == [10, 12]
    assert all(a.threshold == 15.0 for a in alerts)


def test_disabled_notifications_stay_silent(ble, repo, session, alerts):
    repo.settings.set_notifications_enabled(False)

    async def scenario():
        async with session:
            await session.start(ADDRESS)
            ble.client.notify(WEIGHT_CHAR_UUID, encode_frame(TAG_FUEL, weight_kg=weight_for(5)))
            await until(lambda: session.gate.inserted == 1)

    asyncio.run(scenario())
    assert alerts == []


def test_episode_survives_reconnect(ble, session, alerts):
    async def scenario():
        async with session:
            await session.start(ADDRESS)
            ble.client.notify(WEIGHT_CHAR_UUID, encode_frame(TAG_FUEL, weight_kg=weight_for(10)))
            await until(lambda: len(alerts) == 1)

            ble.client.drop_link()
            await until(lambda: session.controller.state is LinkState.STREAMING)

            ble.client.notify(WEIGHT_CHAR_UUID, encode_frame(TAG_FUEL, weight_kg=weight_for(8)))
            ble.client.notify(INCLINATION_CHAR_UUID, encode_frame(TAG_INCLINATION, pitch_deg=0.5))
            await until(lambda: session.gate.inserted + session.gate.skipped == 3)

    asyncio.run(scenario())

    assert len(ble.clients) == 2
    assert len(alerts) == 1


def test_every_kind_is_persisted(ble, repo, cylinder, session):
    async def scenario():
        async with session:
            await session.start(ADDRESS)
            ble.client.notify(WEIGHT_CHAR_UUID, encode_frame(TAG_FUEL, weight_kg=weight_for(50)))
            ble.client.notify(INCLINATION_CHAR_UUID,
                              encode_frame(TAG_INCLINATION, pitch_deg=2.5, roll_deg=-1.0))
            await until(lambda: session.gate.inserted == 2)

    asyncio.run(scenario())

    fuel = repo.list_readings(cylinder.cylinder_id, MeasurementKind.FUEL)
    assert len(fuel) == 1
    assert fuel[0].percent == pytest.approx(50.0)
    assert len(repo.list_readings(kind=MeasurementKind.INCLINATION)) == 1


def test_backlog_sync_stops_on_duplicate_batch(ble, repo, cylinder, manual_session, monkeypatch):
    monkeypatch.setattr(stream_controller, "now_ms", lambda: 1_700_000_000_000)
    batch = (encode_frame(TAG_FUEL, weight_kg=weight_for(60), seconds_ago=7200)
             + encode_frame(TAG_FUEL, weight_kg=weight_for(55), seconds_ago=3600))
    ble.reads[OFFLINE_CHAR_UUID] = [batch, batch, batch]

    async def scenario():
        async with manual_session as session:
            await session.start(ADDRESS)
            return await session.sync_backlog()

    assert asyncio.run(scenario()) == 2
    assert len(ble.reads[OFFLINE_CHAR_UUID]) == 1
    stored = repo.list_readings(cylinder.cylinder_id, MeasurementKind.FUEL)
    assert [r.is_historical for r in stored] == [True, True]


def test_backlog_sync_stops_on_empty_batch(ble, manual_session):
    ble.reads[OFFLINE_CHAR_UUID] = [encode_frame(TAG_FUEL, weight_kg=weight_for(40), seconds_ago=600)]

    async def scenario():
        async with manual_session as session:
            await session.start(ADDRESS)
            return await session.sync_backlog()

    assert asyncio.run(scenario()) == 1


def test_backlog_sync_respects_batch_limit(ble, manual_session):
    ble.reads[OFFLINE_CHAR_UUID] = [
        encode_frame(TAG_FUEL, weight_kg=weight_for(40), seconds_ago=600 * (i + 1))
        for i in range(5)
    ]

    async def scenario():
        async with manual_session as session:
            await session.start(ADDRESS)
            return await session.sync_backlog(max_batches=3)

    assert asyncio.run(scenario()) == 3


def test_backlog_is_drained_again_after_reconnect(ble, repo, cylinder, session):
    async def scenario():
        async with session:
            await session.start(ADDRESS)
            await session.wait_backlog_synced()

            ble.reads[OFFLINE_CHAR_UUID] = [
                encode_frame(TAG_FUEL, weight_kg=weight_for(30), seconds_ago=900)
            ]
            ble.client.drop_link()
            await until(lambda: session.controller.state is LinkState.STREAMING
                        and not ble.reads[OFFLINE_CHAR_UUID])
            await session.wait_backlog_synced()

    asyncio.run(scenario())

    assert len(ble.clients) == 2
    stored = repo.list_readings(cylinder.cylinder_id, MeasurementKind.FUEL)
    assert len(stored) == 1
    assert stored[0].is_historical
    assert stored[0].percent == pytest.approx(30.0)


def test_backlog_sync_on_lost_link_ends_quietly(ble, manual_session):
    ble.reads[OFFLINE_CHAR_UUID] = [encode_frame(TAG_FUEL, weight_kg=weight_for(40), seconds_ago=600)]

    async def scenario():
        async with manual_session as session:
            await session.start(ADDRESS)
            ble.client.drop_link()
            return await session.sync_backlog()

    assert asyncio.run(scenario()) == 0
    assert len(ble.reads[OFFLINE_CHAR_UUID]) == 1


def test_request_fresh_data_is_rate_limited(ble, session):
    ticks = iter([0.0, 0.5])
    session.request_gate = ManualRequestGate(clock=lambda: next(ticks))
    ble.reads[WEIGHT_CHAR_UUID] = [encode_frame(TAG_FUEL, weight_kg=weight_for(70))] * 2

    async def scenario():
        async with session:
            await session.start(ADDRESS)
            first = await session.request_fresh_data()
            second = await session.request_fresh_data()
            await until(lambda: session.gate.inserted == 1)
            return first, second

    assert asyncio.run(scenario()) == (True, False)
    assert len(ble.reads[WEIGHT_CHAR_UUID]) == 1


def test_failed_start_leaves_nothing_running(ble, session):
    ble.device_present = False

    async def scenario():
        async with session:
            with pytest.raises(SensorConnectionError):
                await session.start(ADDRESS)
            return session._tasks, session.controller._subscribers

    assert asyncio.run(scenario()) == ([], [])


def test_leaving_the_session_releases_the_link(ble, session):
    async def scenario():
        async with session:
            await session.start(ADDRESS)
            tasks = list(session._tasks)
        return tasks

    tasks = asyncio.run(scenario())

    assert session.controller.state is LinkState.DISCONNECTED
    assert not ble.client.is_connected
    assert all(t.done() for t in tasks)
