"""
Homebridge interfacing.

Keeps an authenticated session to the Homebridge UI REST API and reads and
writes the characteristics of one lightbulb accessory.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import aiohttp

from homebridge_controller.project import ModuleException, local_now, report

#region Errors
class BridgeError(ModuleException):
    """Base of everything that can go wrong while talking to Homebridge."""

class BridgeConnectionError(BridgeError):
    def __init__(self, message, severity=1):
        super().__init__(message, severity=severity)

class AuthenticationError(BridgeError):
    def __init__(self, message, severity=2):
        super().__init__(message, severity=severity)

class ResponseParseError(BridgeError):
    def __init__(self, message, severity=1):
        super().__init__(message, severity=severity)

class UnrecognizedAccessory(BridgeError):
    def __init__(self, name, severity=2):
        self.name = name
        super().__init__(f"no accessory registered for '{name}'", severity=severity)
#endregion

#region Data types
CHARACTERISTICS = ('On', 'Brightness', 'ColorTemperature', 'Hue', 'Saturation')

@dataclass
class LightState:
    on: bool
    brightness: int
    color_temperature: Optional[int] = None
    hue: Optional[int] = None
    saturation: Optional[int] = None

    @property
    def is_on(self) -> bool:
        return self.on

    @property
    def is_off(self) -> bool:
        return not self.on

    @classmethod
    def from_values(cls, values: Any) -> 'LightState':
        """
        Builds the state from the 'values' node of an accessory,
        e.g. {'On': 1, 'Brightness': 40, 'ColorTemperature': 140, 'Hue': 0, 'Saturation': 0}.
        """
        if not isinstance(values, dict):
            raise ResponseParseError(f"accessory values are not an object: {values!r}")
        try:
            on = values['On']
            brightness = int(values['Brightness'])
            if isinstance(on, str):
                on = on.strip().lower() in ('1', 'true')
            optional = {
                key: int(values[name]) if values.get(name) is not None else None
                for key, name in (('color_temperature', 'ColorTemperature'), ('hue', 'Hue'), ('saturation', 'Saturation'))
            }
        except (KeyError, TypeError, ValueError):
            raise ResponseParseError(f"unexpected lightbulb values {values!r}")
        if not 0 <= brightness <= 100:
            raise ResponseParseError(f"brightness out of range: {brightness}")
        return cls(on=bool(on), brightness=brightness, **optional)

    def characteristics(self):
        """
        The (characteristic, value) pairs in the order they get written to the bridge.
        """
        values = (1 if self.on else 0, self.brightness, self.color_temperature, self.hue, self.saturation)
        return list(zip(CHARACTERISTICS, values))

@dataclass
class CharacteristicWrite:
    characteristic: str
    value: Any
    error: Optional[BridgeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None
#endregion

#region Session
class BridgeSession:
    """
    Authenticated session to a Homebridge instance, bound to one lightbulb accessory.

    The HTTP client is injected (an aiohttp.ClientSession or anything with the same
    `request` coroutine context manager) and should carry a request timeout.
    """

    TOKEN_SAFETY_MARGIN = timedelta(seconds=60)
    LOGIN_SUCCESS_STATUS = 201

    def __init__(self, client, base_address: str, username: str, password: str,
                 accessory_name: str = 'Bed Light', timezone=None):
        self.client = client
        self.base_address = base_address.rstrip('/')
        self.username = username
        self.password = password
        self.accessory_name = accessory_name
        self.timezone = timezone
        self.access_token: Optional[str] = None
        self.token_expiry: Optional[datetime] = None
        self.accessory_id_cache: dict[str, str] = {}

    def _now(self) -> datetime:
        return local_now(self.timezone)

    async def _request(self, method: str, path: str, *, payload=None, token: str = None,
                       expected_status=(200,), parse_body: bool = True,
                       failure=ResponseParseError):
        """
        Unified method for all kinds of requests. Do not use on its own.
        Returns (status, body), body is None when not parsed.
        """
        url = f"{self.base_address}{path}"
        headers = {'Authorization': f"Bearer {token}"} if token else None
        try:
            async with self.client.request(method, url, json=payload, headers=headers) as response:
                status = response.status
                if status not in expected_status:
                    if token and status in (401, 403):
                        # rejected token: force a fresh login on the next call
                        self.access_token, self.token_expiry = None, None
                        raise AuthenticationError(f"{method} {path} rejected with status code {status}")
                    raise failure(f"unexpected status code {status} for {method} {path}")
                body = await response.json(content_type=None) if parse_body else None
        except (aiohttp.ClientError, asyncio.TimeoutError):
            raise BridgeConnectionError(f"failed to connect to Homebridge at {url}")
        except ValueError:
            raise failure(f"couldn't decode response body of {method} {path}")
        report(f"{method} {path}: {status}", verbose=True)
        return status, body

    async def check_connection(self):
        """
        Checks that the bridge answers at all, any HTTP status counts as reachable.
        """
        url = self.base_address
        try:
            async with self.client.request('GET', url) as response:
                report(f"Homebridge reachable at {url} ({response.status}).", verbose=True)
        except (aiohttp.ClientError, asyncio.TimeoutError):
            raise BridgeConnectionError(f"failed to connect to Homebridge at {url}", severity=3)

    #region Authentication
    async def _renew_access_token(self, now: datetime):
        _, body = await self._request(
            'POST', '/api/auth/login',
            payload={'username': self.username, 'password': self.password},
            expected_status=(self.LOGIN_SUCCESS_STATUS,),
            failure=AuthenticationError,
        )
        try:
            access_token = body['access_token']
            expires_in = int(body['expires_in'])
            if not isinstance(access_token, str) or not access_token:
                raise TypeError('empty access token')
        except (KeyError, TypeError, ValueError):
            raise AuthenticationError("error parsing login response")
        self.access_token, self.token_expiry = (
            access_token,
            now + timedelta(seconds=expires_in) - self.TOKEN_SAFETY_MARGIN,
        )

    async def ensure_token(self, now: datetime = None) -> str:
        """
        Returns the cached bearer token while it is valid, renews it otherwise.
        A failed renewal leaves the previous token and expiry in place.
        """
        now = now or self._now()
        if self.access_token is None or self.token_expiry is None:
            report("No access token, requesting one.", verbose=True)
            await self._renew_access_token(now)
        elif self.token_expiry <= now:
            report("Access token expired, requesting new one.", verbose=True)
            await self._renew_access_token(now)
        return self.access_token
    #endregion

    #region Accessories
    async def resolve_accessory(self, name: str = None) -> str:
        """
        Returns the unique id of the accessory whose service name is exactly *name*.
        """
        name = name or self.accessory_name
        if name in self.accessory_id_cache:
            return self.accessory_id_cache[name]

        token = await self.ensure_token()
        _, accessories = await self._request('GET', '/api/accessories', token=token)
        if not isinstance(accessories, list):
            raise ResponseParseError("accessory list is not an array")
        for accessory in accessories:
            try:
                service_name = accessory['serviceName']
                unique_id = accessory['uniqueId']
            except (KeyError, TypeError):
                raise ResponseParseError(f"unexpected accessory entry {accessory!r}")
            if service_name == name:
                report(f"Adding id for '{name}' to accessory id table.", verbose=True)
                self.accessory_id_cache[name] = unique_id
                return unique_id

        report(f"Did not find an accessory with service name '{name}'.")
        raise UnrecognizedAccessory(name)

    async def read_light(self) -> LightState:
        """
        Returns the current values of the lightbulb.
        """
        token = await self.ensure_token()
        accessory_id = await self.resolve_accessory()
        _, accessory = await self._request('GET', f'/api/accessories/{accessory_id}', token=token)
        if not isinstance(accessory, dict) or 'values' not in accessory:
            raise ResponseParseError(f"no values for accessory '{self.accessory_name}'")
        light = LightState.from_values(accessory['values'])
        report(f"{self.accessory_name}: {light}", verbose=True)
        return light

    async def light_is_off(self) -> bool:
        return (await self.read_light()).is_off

    async def write_characteristic(self, characteristic: str, value):
        """
        Issues a single characteristic update on the lightbulb.
        """
        token = await self.ensure_token()
        accessory_id = await self.resolve_accessory()
        await self._request(
            'PUT', f'/api/accessories/{accessory_id}',
            payload={'characteristicType': characteristic, 'value': value},
            token=token, parse_body=False,
        )

    async def turn_on(self):
        report(f"Turning {self.accessory_name} ON.")
        await self.write_characteristic('On', 1)

    async def turn_off(self):
        report(f"Turning {self.accessory_name} OFF.")
        await self.write_characteristic('On', 0)

    async def set_brightness(self, brightness: int):
        report(f"Setting {self.accessory_name} brightness: {brightness}.")
        await self.write_characteristic('Brightness', brightness)

    async def set_light(self, values: LightState) -> list[CharacteristicWrite]:
        """
        Writes all five lightbulb characteristics one by one.

        Not transactional: every write is attempted and reported on its own,
        a failure partway leaves the bulb in a mixed state.
        """
        report(f"Setting {self.accessory_name} values: {values}")
        results = []
        for characteristic, value in values.characteristics():
            if value is None:
                continue
            try:
                await self.write_characteristic(characteristic, value)
                results.append(CharacteristicWrite(characteristic, value))
            except BridgeError as e:
                report(f"Failed to write {characteristic}={value}: {e}")
                results.append(CharacteristicWrite(characteristic, value, error=e))
        return results
    #endregion
#endregion
