"""
Sunrise and sunset times for a fixed location, fetched from sunrise-sunset.org
at most once per local calendar day.
"""

import asyncio
from datetime import date, datetime
from typing import Optional

import aiohttp

from homebridge_controller.project import ModuleException, local_now, report

class SolarDataUnavailable(ModuleException):
    def __init__(self, message, severity=1):
        super().__init__(message, severity=severity)

def parse_utc_instant(value: str) -> datetime:
    """
    Parses an RFC 3339 timestamp as returned with formatted=0, e.g. '2024-06-21T03:46:55+00:00'.
    """
    if not isinstance(value, str):
        raise ValueError(f"not a timestamp: {value!r}")
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp without offset: {value!r}")
    return parsed

class SolarTimeProvider:
    DEFAULT_URL = 'https://api.sunrise-sunset.org/json'

    def __init__(self, client, latitude: float, longitude: float, timezone=None, url: str = DEFAULT_URL):
        self.client = client
        self.latitude = latitude
        self.longitude = longitude
        self.timezone = timezone
        self.url = url
        self.cached_sunrise: Optional[datetime] = None
        self.cached_sunset: Optional[datetime] = None
        self.cache_date: Optional[date] = None

    async def _collect_sun_times(self, now: datetime):
        """
        One request fills both sunrise and sunset, nothing is cached unless both parse.
        """
        params = {
            'lat': self.latitude,
            'lng': self.longitude,
            'date': now.date().isoformat(),
            'formatted': 0,
        }
        try:
            async with self.client.request('GET', self.url, params=params) as response:
                if response.status != 200:
                    raise SolarDataUnavailable(f"sun times service answered with status code {response.status}")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError):
            raise SolarDataUnavailable("could not reach sun times service")
        except ValueError:
            raise SolarDataUnavailable("could not decode sun times response")

        try:
            if data.get('status', 'OK') != 'OK':
                raise ValueError(f"status {data['status']}")
            results = data['results']
            sunrise = parse_utc_instant(results['sunrise'])
            sunset = parse_utc_instant(results['sunset'])
        except (AttributeError, KeyError, TypeError, ValueError):
            raise SolarDataUnavailable("could not parse sun times data")

        tz = self.timezone or now.tzinfo
        report(f"Sunrise: {sunrise}, sunset: {sunset} (UTC).", verbose=True)
        self.cached_sunrise = sunrise.astimezone(tz)
        self.cached_sunset = sunset.astimezone(tz)
        self.cache_date = now.date()

    async def sun_times(self, now: datetime = None) -> tuple[datetime, datetime]:
        """
        Returns today's (sunrise, sunset) in local time, refreshing stale data first.
        """
        now = now or local_now(self.timezone)
        if self.cache_date != now.date() or self.cached_sunrise is None or self.cached_sunset is None:
            if self.cache_date is not None:
                report("Sun times data stale.", verbose=True)
            await self._collect_sun_times(now)
        return self.cached_sunrise, self.cached_sunset

    async def sunrise(self, now: datetime = None) -> datetime:
        return (await self.sun_times(now))[0]

    async def sunset(self, now: datetime = None) -> datetime:
        return (await self.sun_times(now))[1]
