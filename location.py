"""Mechanic location broadcast.

One broadcaster per mechanic. Client contexts (dashboard, map, navigation)
pick a cadence profile; switching profile retimes the running loop instead of
starting another one.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy import update
from sqlmodel import select
from starlette.concurrency import run_in_threadpool

import lifecycle
from config import LOCATION_CADENCES
from db import get_session, run_with_retry
from dispatch import serialize_request, serialize_mechanic
from errors import NotFound, ValidationError
from geo import validate_point
from models import Mechanic, ServiceRequest, _now
from realtime import feed, UPDATE

logger = logging.getLogger(__name__)

# returns (lat, lng), or None when no fix is available (e.g. permission denied)
PositionSource = Callable[[], Awaitable[Optional[Tuple[float, float]]]]


def cadence_for(profile: str) -> float:
    if profile not in LOCATION_CADENCES:
        raise ValidationError(f"unknown location profile {profile!r}")
    return LOCATION_CADENCES[profile]


def publish_mechanic_location(mechanic_id: int, lat: float, lng: float) -> dict:
    """Write the mechanic's position and mirror it onto their active requests."""
    lat, lng = validate_point(lat, lng)
    mechanic, requests = run_with_retry(_write_location, mechanic_id, lat, lng)
    feed.publish("mechanics", UPDATE, serialize_mechanic(mechanic))
    for r in requests:
        feed.publish("requests", UPDATE, serialize_request(r))
    logger.debug("mechanic %s at %.5f,%.5f (%d active requests)", mechanic_id, lat, lng, len(requests))
    return {"mechanic_id": mechanic_id, "lat": lat, "lng": lng,
            "requests_updated": [r.id for r in requests]}


def _write_location(mechanic_id, lat, lng):
    with get_session() as session:
        mechanic = session.get(Mechanic, mechanic_id)
        if not mechanic:
            raise NotFound("mechanic not found")
        mechanic.lat, mechanic.lng = lat, lng
        mechanic.location_updated_at = _now()
        mechanic.online = True
        session.add(mechanic)
        session.execute(
            update(ServiceRequest)
            .where(ServiceRequest.mechanic_id == mechanic_id,
                   ServiceRequest.status.in_(lifecycle.ACTIVE_STATUSES))
            .values(mechanic_lat=lat, mechanic_lng=lng)
        )
        session.commit()
        session.refresh(mechanic)
        requests = session.exec(
            select(ServiceRequest).where(ServiceRequest.mechanic_id == mechanic_id,
                                         ServiceRequest.status.in_(lifecycle.ACTIVE_STATUSES))
        ).all()
        return mechanic, list(requests)


class LocationBroadcaster:
    def __init__(self, mechanic_id: int, source: PositionSource, profile: str = "dashboard"):
        self.mechanic_id = mechanic_id
        self.source = source
        self.profile = profile
        self.interval = cadence_for(profile)
        self.ticks = 0
        self.failures = 0
        # called with each published result, e.g. to acknowledge over a socket
        self.on_publish: Optional[Callable[[dict], None]] = None
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info("location broadcast started for mechanic %s (%s, every %ss)",
                    self.mechanic_id, self.profile, self.interval)

    def set_profile(self, profile: str):
        self.interval = cadence_for(profile)
        self.profile = profile
        # publish now and restart the wait with the new cadence
        self._wakeup.set()

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("location broadcast stopped for mechanic %s", self.mechanic_id)

    async def tick(self) -> Optional[dict]:
        position = await self.source()
        if position is None:
            logger.debug("no position fix for mechanic %s", self.mechanic_id)
            return None
        self.ticks += 1
        res = await run_in_threadpool(publish_mechanic_location, self.mechanic_id, *position)
        if self.on_publish is not None:
            self.on_publish(res)
        return res

    async def _run(self):
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                # one bad fix or write must not end the broadcast
                self.failures += 1
                logger.exception("location tick failed for mechanic %s", self.mechanic_id)
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass


_broadcasters: Dict[int, LocationBroadcaster] = {}


def broadcaster_for(mechanic_id: int, source: PositionSource, profile: str = "dashboard") -> LocationBroadcaster:
    """Return the mechanic's broadcaster, creating it on first use.

    A second caller for the same mechanic switches the existing loop to its
    profile, so an account never publishes at two frequencies.
    """
    b = _broadcasters.get(mechanic_id)
    if b is None:
        b = LocationBroadcaster(mechanic_id, source, profile)
        _broadcasters[mechanic_id] = b
    else:
        b.source = source
        if b.profile != profile:
            b.set_profile(profile)
    return b


async def stop_broadcaster(mechanic_id: int):
    b = _broadcasters.pop(mechanic_id, None)
    if b is not None:
        await b.stop()


async def stop_all():
    for mechanic_id in list(_broadcasters):
        await stop_broadcaster(mechanic_id)
