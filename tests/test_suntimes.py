"""Tests for suntimes.py"""

import aiohttp
import pytest

from conftest import TZ, FakeResponse, at
from homebridge_controller.suntimes import SolarDataUnavailable, SolarTimeProvider

URL = "https://api.sunrise-sunset.org/json"


def sun_response(sunrise="2024-06-21T02:46:55+00:00", sunset="2024-06-21T18:44:31+00:00", status="OK"):
    return FakeResponse(200, {"results": {"sunrise": sunrise, "sunset": sunset, "day_length": 57456}, "status": status})


@pytest.fixture
def provider(client):
    return SolarTimeProvider(client, 47.4984, 19.0405, timezone=TZ, url=URL)


@pytest.mark.asyncio
async def test_converts_utc_to_local_time(client, provider):
    client.add("GET", URL, sun_response())
    sunrise, sunset = await provider.sun_times(at("2024-06-21 12:00"))

    assert sunrise == at("2024-06-21 04:46:55")
    assert sunset == at("2024-06-21 20:44:31")
    assert sunrise.utcoffset() == sunset.utcoffset()


@pytest.mark.asyncio
async def test_requests_location_and_local_date(client, provider):
    client.add("GET", URL, sun_response())
    await provider.sunrise(at("2024-06-21 00:30"))

    (_, _, kwargs), = client.calls
    assert kwargs["params"] == {"lat": 47.4984, "lng": 19.0405, "date": "2024-06-21", "formatted": 0}


@pytest.mark.asyncio
async def test_refreshes_at_most_once_per_date(client, provider):
    client.add("GET", URL, sun_response())
    for hour in ("04:00", "12:00", "20:00", "23:59"):
        now = at(f"2024-06-21 {hour}")
        await provider.sunrise(now)
        await provider.sunset(now)
    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_refreshes_on_new_date(client, provider):
    client.add(
        "GET", URL,
        sun_response(),
        sun_response("2024-06-22T02:47:05+00:00", "2024-06-22T18:44:45+00:00"),
    )
    await provider.sunset(at("2024-06-21 21:00"))
    sunset = await provider.sunset(at("2024-06-22 08:00"))

    assert sunset == at("2024-06-22 20:44:45")
    assert provider.cache_date == at("2024-06-22 08:00").date()
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_transport_failure_then_recovery(client, provider):
    client.add("GET", URL, aiohttp.ClientConnectionError("dns failure"), sun_response())

    with pytest.raises(SolarDataUnavailable):
        await provider.sunset(at("2024-06-21 12:00"))
    assert provider.cached_sunrise is None and provider.cached_sunset is None

    assert await provider.sunset(at("2024-06-21 12:01")) == at("2024-06-21 20:44:31")


@pytest.mark.asyncio
async def test_partial_payload_caches_nothing(client, provider):
    client.add("GET", URL, FakeResponse(200, {"results": {"sunrise": "2024-06-21T02:46:55+00:00"}, "status": "OK"}))
    with pytest.raises(SolarDataUnavailable):
        await provider.sunrise(at("2024-06-21 12:00"))
    assert provider.cached_sunrise is None
    assert provider.cache_date is None


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    FakeResponse(500, {"status": "UNKNOWN_ERROR"}),
    FakeResponse(200, ValueError("Expecting value")),
    sun_response(status="INVALID_REQUEST"),
    sun_response(sunrise="sometime in the morning"),
])
async def test_bad_responses(client, provider, response):
    client.add("GET", URL, response)
    with pytest.raises(SolarDataUnavailable):
        await provider.sun_times(at("2024-06-21 12:00"))
