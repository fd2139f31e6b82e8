"""Pytest fixtures for homebridge-controller tests."""

import json
from datetime import datetime

import pytest
import pytz

from homebridge_controller import project
from homebridge_controller.homebridge import LightState

BASE = "http://homebridge.local:8581"
LIGHT_ID = "a1b2c3d4e5"
TZ = pytz.timezone("Europe/Budapest")


def at(value: str, tz=TZ) -> datetime:
    """Local aware datetime from 'YYYY-MM-DD HH:MM[:SS]'."""
    fmt = "%Y-%m-%d %H:%M:%S" if value.count(":") == 2 else "%Y-%m-%d %H:%M"
    return tz.localize(datetime.strptime(value, fmt))


@pytest.fixture(autouse=True)
def test_settings(tmp_path, monkeypatch):
    """Keep logs and error registrations out of the project tree."""
    monkeypatch.setitem(project.settings, "log", False)
    monkeypatch.setitem(project.settings, "dev", True)
    monkeypatch.setitem(project.settings, "verbosity", False)
    monkeypatch.setitem(project.settings, "data_dir", str(tmp_path / "data"))
    return project.settings


class FakeResponse:
    """Stands in for aiohttp.ClientResponse inside `async with client.request(...)`."""

    def __init__(self, status=200, body=None):
        self.status = status
        self.body = body

    async def json(self, content_type="application/json"):
        if isinstance(self.body, Exception):
            raise self.body
        return self.body


class _FakeRequestContext:
    def __init__(self, response):
        self.response = response

    async def __aenter__(self):
        if isinstance(self.response, BaseException):
            raise self.response
        return self.response

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeClientSession:
    """
    Scripted replacement for aiohttp.ClientSession.

    Responses are queued per (method, url); the last queued response keeps being
    served once the others are used up. Queue an exception to simulate a
    transport failure.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, url, *responses):
        self.routes.setdefault((method, url), []).extend(responses)
        return self

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        queue = self.routes.get((method, url))
        if not queue:
            return _FakeRequestContext(FakeResponse(404, {"message": "Not Found"}))
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        return _FakeRequestContext(response)

    def calls_to(self, method, url):
        return [call for call in self.calls if call[0] == method and call[1] == url]


def login_response(token="token-1", expires_in=28800):
    return FakeResponse(201, {"access_token": token, "token_type": "Bearer", "expires_in": expires_in})


def accessories_response(name="Bed Light", unique_id=LIGHT_ID):
    return FakeResponse(200, [
        {
            "uuid": "0000-aaaa", "uniqueId": "ffff0000", "type": "Switch",
            "humanType": "Switch", "serviceName": "Fan",
        },
        {
            "uuid": "0000-bbbb", "uniqueId": unique_id, "type": "Lightbulb",
            "humanType": "Lightbulb", "serviceName": name,
        },
    ])


def light_response(on=1, brightness=40):
    return FakeResponse(200, {
        "uniqueId": LIGHT_ID,
        "serviceName": "Bed Light",
        "values": {"On": on, "Brightness": brightness, "ColorTemperature": 140, "Hue": 30, "Saturation": 10},
    })


@pytest.fixture
def client():
    return FakeClientSession()


@pytest.fixture
def bridge_client(client):
    """Fake client answering login, accessory listing, reads and writes."""
    client.add("POST", f"{BASE}/api/auth/login", login_response())
    client.add("GET", f"{BASE}/api/accessories", accessories_response())
    client.add("GET", f"{BASE}/api/accessories/{LIGHT_ID}", light_response())
    client.add("PUT", f"{BASE}/api/accessories/{LIGHT_ID}", FakeResponse(200, {}))
    return client


class FakeBridge:
    """
    In-memory lightbulb with the BridgeSession surface the programs use.
    `commands` records every write; `ignore_off` makes the bulb refuse to switch off.
    """

    def __init__(self, on=True, brightness=40, timezone=TZ):
        self.light = LightState(on=on, brightness=brightness, color_temperature=140, hue=30, saturation=10)
        self.timezone = timezone
        self.commands = []
        self.reads = 0
        self.ignore_off = False
        self.error = None

    def _check(self):
        if self.error is not None:
            raise self.error

    async def read_light(self):
        self._check()
        self.reads += 1
        return LightState(**vars(self.light))

    async def turn_on(self):
        self._check()
        self.commands.append("on")
        self.light.on = True

    async def turn_off(self):
        self._check()
        self.commands.append("off")
        if not self.ignore_off:
            self.light.on = False

    async def set_brightness(self, brightness):
        self._check()
        self.commands.append(("brightness", brightness))
        self.light.brightness = brightness


class FakeSunTimes:
    def __init__(self, sunrise=None, sunset=None):
        self.sunrise_at = sunrise
        self.sunset_at = sunset
        self.calls = 0
        self.error = None

    async def sunrise(self, now=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.sunrise_at

    async def sunset(self, now=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.sunset_at


@pytest.fixture
def fake_bridge():
    return FakeBridge()


@pytest.fixture
def fake_suntimes():
    return FakeSunTimes(sunrise=at("2024-03-10 06:10"), sunset=at("2024-03-10 18:00"))


@pytest.fixture
def morning_config():
    return {
        "active": True,
        "off_time": "06:30:00",
        "after_sunrise": None,
        "last_call_after_scheduled_off": 30,
    }


@pytest.fixture
def evening_config():
    return {
        "active": True,
        "minutes_before_sunset_start": 30,
        "minutes_after_sunset_peak": 0,
        "minutes_after_sunset_finish": 60,
        "start_brightness": 10,
        "max_brightness": 80,
        "final_brightness": 5,
    }


@pytest.fixture
def controller_config(morning_config, evening_config):
    return {
        "ip_address": BASE,
        "accessory_name": "Bed Light",
        "latitude": 47.4984,
        "longitude": 19.0405,
        "timezone": "Europe/Budapest",
        "program_loop_pause": 20,
        "config_reload_interval": 300,
        "request_timeout": 10,
        "settle_delay": 0,
        "suntimes_url": "https://api.sunrise-sunset.org/json",
        "turn_morning_lights_off": morning_config,
        "control_evening_lights": evening_config,
    }


@pytest.fixture
def write_json(tmp_path):
    def write(name, data):
        path = tmp_path / name
        path.write_text(json.dumps(data), encoding="utf-8")
        return str(path)
    return write
