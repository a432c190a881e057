import asyncio

import pytest

import dispatch
import location
from conftest import make_customer, make_mechanic
from db import get_session
from errors import NotFound, ValidationError
from models import Mechanic
from realtime import feed


def test_publish_updates_mechanic_and_active_requests_only():
    c = make_customer()
    m = make_mechanic()
    active = dispatch.create_request(c.id, "sedan", "flat tyre")
    dispatch.accept_request(active.id, m.id)
    waiting = dispatch.create_request(c.id, "suv", "battery", mechanic_id=m.id)

    res = location.publish_mechanic_location(m.id, 0.40, 32.60)

    assert res["requests_updated"] == [active.id]
    mech = get_session().get(Mechanic, m.id)
    assert (mech.lat, mech.lng) == (0.40, 32.60)
    assert mech.location_updated_at is not None
    assert mech.online is True
    assert dispatch.get_request(active.id).mechanic_lat == 0.40
    assert dispatch.get_request(waiting.id).mechanic_lat is None


def test_publish_skips_completed_requests():
    c = make_customer()
    m = make_mechanic()
    r = dispatch.create_request(c.id, "sedan", "flat tyre")
    dispatch.accept_request(r.id, m.id)
    dispatch.complete_request(r.id, m.id)
    res = location.publish_mechanic_location(m.id, 0.5, 32.5)
    assert res["requests_updated"] == []
    assert dispatch.get_request(r.id).mechanic_lat != 0.5


def test_publish_unknown_mechanic():
    with pytest.raises(NotFound):
        location.publish_mechanic_location(9999, 0.4, 32.6)


def test_publish_emits_change_events():
    c = make_customer()
    m = make_mechanic()
    r = dispatch.create_request(c.id, "sedan", "flat tyre")
    dispatch.accept_request(r.id, m.id)
    mech_sub = feed.subscribe("mechanics", {"id": m.id})
    req_sub = feed.subscribe("requests", {"mechanic_id": m.id})
    location.publish_mechanic_location(m.id, 0.41, 32.61)
    mech_event = mech_sub.queue.get_nowait()
    req_event = req_sub.queue.get_nowait()
    assert mech_event["new"]["lat"] == 0.41
    assert req_event["new"]["id"] == r.id
    assert req_event["new"]["mechanic_lat"] == 0.41


def test_unknown_profile_rejected():
    with pytest.raises(ValidationError):
        location.cadence_for("widget")


def test_one_broadcaster_per_mechanic():
    async def source():
        return (0.3, 32.5)

    first = location.broadcaster_for(7, source, profile="dashboard")
    second = location.broadcaster_for(7, source, profile="map")
    assert first is second
    assert second.profile == "map"
    assert second.interval == location.LOCATION_CADENCES["map"]


@pytest.mark.asyncio
async def test_broadcaster_tick_writes_position():
    m = make_mechanic(lat=None, lng=None)

    async def source():
        return (0.36, 32.59)

    b = location.LocationBroadcaster(m.id, source, profile="navigation")
    res = await b.tick()
    assert res["lat"] == 0.36
    assert b.ticks == 1
    assert get_session().get(Mechanic, m.id).lat == 0.36


@pytest.mark.asyncio
async def test_broadcaster_without_fix_writes_nothing():
    m = make_mechanic(lat=None, lng=None)

    async def source():
        return None

    b = location.LocationBroadcaster(m.id, source)
    assert await b.tick() is None
    assert b.ticks == 0
    assert get_session().get(Mechanic, m.id).lat is None


@pytest.mark.asyncio
async def test_broadcaster_keeps_running_after_failed_tick(monkeypatch):
    monkeypatch.setitem(location.LOCATION_CADENCES, "map", 0.01)
    m = make_mechanic()
    calls = []

    async def source():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("gps unavailable")
        return (0.35, 32.58)

    b = location.LocationBroadcaster(m.id, source, profile="map")
    b.start()
    for _ in range(200):
        if b.ticks >= 2:
            break
        await asyncio.sleep(0.01)
    await b.stop()
    assert b.failures == 1
    assert b.ticks >= 2
    assert not b.running
    assert get_session().get(Mechanic, m.id).lat == 0.35


@pytest.mark.asyncio
async def test_profile_switch_publishes_immediately(monkeypatch):
    monkeypatch.setitem(location.LOCATION_CADENCES, "dashboard", 60.0)
    monkeypatch.setitem(location.LOCATION_CADENCES, "map", 60.0)
    m = make_mechanic()

    async def source():
        return (0.35, 32.58)

    b = location.broadcaster_for(m.id, source, profile="dashboard")
    b.start()
    for _ in range(100):
        if b.ticks >= 1:
            break
        await asyncio.sleep(0.01)
    location.broadcaster_for(m.id, source, profile="map")
    for _ in range(100):
        if b.ticks >= 2:
            break
        await asyncio.sleep(0.01)
    await location.stop_broadcaster(m.id)
    assert b.ticks == 2
    assert b.profile == "map"
