"""Reverse geocoding against a Nominatim-style HTTP endpoint.

The public endpoint is rate-sensitive, so lookups are debounced per location
kind: within the window a caller gets the last answer for that kind back.
"""
import logging
import time
from typing import Callable, Dict, Optional, Tuple

import httpx

from config import GEOCODER_URL, GEOCODER_USER_AGENT, GEOCODE_DEBOUNCE_SECONDS
from errors import GeocodingError, ValidationError
from geo import validate_point

logger = logging.getLogger(__name__)

KINDS = ("customer", "mechanic")


class ReverseGeocoder:
    def __init__(self, base_url: str = GEOCODER_URL, debounce: float = GEOCODE_DEBOUNCE_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock: Callable[[], float] = time.monotonic, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.debounce = debounce
        self.transport = transport
        self.clock = clock
        self.timeout = timeout
        self.lookups = 0
        # kind -> (timestamp, result)
        self._last: Dict[str, Tuple[float, dict]] = {}

    async def reverse(self, lat: float, lng: float, kind: str = "customer") -> dict:
        if kind not in KINDS:
            raise ValidationError(f"unknown location kind {kind!r}")
        lat, lng = validate_point(lat, lng)
        now = self.clock()
        last = self._last.get(kind)
        if last is not None and now - last[0] < self.debounce:
            return last[1]
        result = await self._fetch(lat, lng)
        self._last[kind] = (now, result)
        return result

    async def _fetch(self, lat: float, lng: float) -> dict:
        params = {"format": "jsonv2", "lat": lat, "lon": lng}
        headers = {"User-Agent": GEOCODER_USER_AGENT, "Accept": "application/json"}
        self.lookups += 1
        try:
            async with httpx.AsyncClient(base_url=self.base_url, transport=self.transport,
                                         timeout=self.timeout) as client:
                resp = await client.get("/reverse", params=params, headers=headers)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("reverse geocode %.5f,%.5f failed: %s", lat, lng, e)
            raise GeocodingError(f"reverse geocoding failed: {e}") from e
        if not isinstance(data, dict):
            logger.warning("reverse geocode %.5f,%.5f returned %s", lat, lng, type(data).__name__)
            raise GeocodingError("reverse geocoding failed: unexpected reply")
        if "error" in data:
            raise GeocodingError(f"reverse geocoding failed: {data['error']}")
        address = data.get("address") or {}
        return {
            "lat": lat,
            "lng": lng,
            "display_name": data.get("display_name"),
            "road": address.get("road"),
            "city": address.get("city") or address.get("town") or address.get("village"),
            "country": address.get("country"),
        }

    def reset(self):
        self._last.clear()


geocoder = ReverseGeocoder()
