import httpx
import pytest

from errors import GeocodingError, ValidationError
from geocoding import ReverseGeocoder

NOMINATIM_REPLY = {
    "display_name": "Jinja Road, Kampala, Uganda",
    "address": {"road": "Jinja Road", "town": "Kampala", "country": "Uganda"},
}


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_geocoder(handler, clock=None):
    return ReverseGeocoder(base_url="https://geo.test", transport=httpx.MockTransport(handler),
                           clock=clock or FakeClock(), debounce=5.0)


@pytest.mark.asyncio
async def test_reverse_parses_address():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=NOMINATIM_REPLY)

    geo = make_geocoder(handler)
    res = await geo.reverse(0.3136, 32.5811)
    assert res["display_name"] == "Jinja Road, Kampala, Uganda"
    assert res["city"] == "Kampala"
    assert res["road"] == "Jinja Road"
    assert seen[0].url.path == "/reverse"
    assert seen[0].url.params["lon"] == "32.5811"
    assert seen[0].url.params["format"] == "jsonv2"
    assert "User-Agent" in seen[0].headers


@pytest.mark.asyncio
async def test_debounce_per_kind():
    clock = FakeClock()
    geo = make_geocoder(lambda request: httpx.Response(200, json=NOMINATIM_REPLY), clock)
    await geo.reverse(0.31, 32.58, kind="customer")
    await geo.reverse(0.32, 32.59, kind="customer")
    assert geo.lookups == 1
    # a different location kind has its own window
    await geo.reverse(0.33, 32.60, kind="mechanic")
    assert geo.lookups == 2
    clock.now += 5.0
    await geo.reverse(0.34, 32.61, kind="customer")
    assert geo.lookups == 3


@pytest.mark.asyncio
async def test_http_error_raises_geocoding_error():
    geo = make_geocoder(lambda request: httpx.Response(503, text="busy"))
    with pytest.raises(GeocodingError):
        await geo.reverse(0.31, 32.58)


@pytest.mark.asyncio
async def test_failed_lookup_not_cached():
    replies = [httpx.Response(500), httpx.Response(200, json=NOMINATIM_REPLY)]
    geo = make_geocoder(lambda request: replies.pop(0))
    with pytest.raises(GeocodingError):
        await geo.reverse(0.31, 32.58)
    res = await geo.reverse(0.31, 32.58)
    assert res["country"] == "Uganda"


@pytest.mark.asyncio
async def test_error_payload_raises():
    geo = make_geocoder(lambda request: httpx.Response(200, json={"error": "Unable to geocode"}))
    with pytest.raises(GeocodingError):
        await geo.reverse(0.0, 0.0)


@pytest.mark.asyncio
async def test_non_object_reply_raises():
    geo = make_geocoder(lambda request: httpx.Response(200, json=[]))
    with pytest.raises(GeocodingError):
        await geo.reverse(0.0, 0.0)
    geo = make_geocoder(lambda request: httpx.Response(200, json="Unable to geocode"))
    with pytest.raises(GeocodingError):
        await geo.reverse(0.0, 0.0)
    assert geo.lookups == 1


@pytest.mark.asyncio
async def test_invalid_input_rejected():
    geo = make_geocoder(lambda request: httpx.Response(200, json=NOMINATIM_REPLY))
    with pytest.raises(ValidationError):
        await geo.reverse(0.31, 32.58, kind="depot")
    with pytest.raises(ValidationError):
        await geo.reverse(95, 32.58)
    assert geo.lookups == 0
