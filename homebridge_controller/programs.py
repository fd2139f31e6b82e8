"""
Automated programs controlling the bed light.

Each program is built once from its configuration section and then run once per
controller tick with the shared BridgeSession and SolarTimeProvider. A run issues
at most one kind of device command and returns a ProgramResult; bridge and sun
times errors propagate to the caller with the program's memory left untouched.
"""

import asyncio
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from homebridge_controller.project import (
    ConfigurationError,
    localize,
    local_now,
    minute_of_day,
    parse_clock_time,
    report,
    seconds_since_midnight,
    shift_time,
)

@dataclass
class ProgramResult:
    program: str
    acted: bool
    reason: str

def _require_int(config: dict, key: str, minimum: int = None, maximum: int = None, default=None) -> int:
    value = config.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"'{key}' must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"'{key}' must be at least {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigurationError(f"'{key}' must be at most {maximum}, got {value}")
    return value

#region Morning lights off
class MorningOffProgram:
    """
    Turns the light off once a day, at a fixed clock time or some minutes after sunrise.

    Fires only between the scheduled off-time and `last_call_window` minutes after it,
    so a controller that was down in the morning does not switch the light off hours late.
    The day counts as done only once a read-back confirms the light is off.
    """

    name = 'turn_morning_lights_off'

    def __init__(self, config: dict, settle_delay: float = 0.25):
        report("Creating a MorningOffProgram object.", verbose=True)
        self.active = bool(config.get('active', False))
        self.settle_delay = settle_delay

        off_time = config.get('off_time')
        self.off_time = parse_clock_time(off_time) if off_time is not None else None
        self.after_sunrise_offset = (
            _require_int(config, 'after_sunrise') if config.get('after_sunrise') is not None else None
        )
        if self.off_time is None and self.after_sunrise_offset is None:
            raise ConfigurationError("either 'off_time' or 'after_sunrise' is required to turn the morning lights off")
        if self.off_time is not None and self.after_sunrise_offset is not None:
            report(f"Both 'off_time' and 'after_sunrise' configured, using off_time {self.off_time}.")

        last_call_key = 'last_call_after_scheduled_off' if 'last_call_after_scheduled_off' in config else 'duration'
        self.last_call_window = _require_int(config, last_call_key, minimum=0)

        self.last_fired_date: Optional[date] = None

    async def scheduled_off_time(self, now: datetime, suntimes) -> datetime:
        """
        Today's off-time: the absolute clock time if configured, else sunrise plus the offset.
        """
        if self.off_time is not None:
            return localize(datetime.combine(now.date(), self.off_time), now.tzinfo)
        if self.after_sunrise_offset is not None:
            sunrise = await suntimes.sunrise(now)
            return shift_time(sunrise, minutes=self.after_sunrise_offset)
        raise ConfigurationError("no off-time configured")

    def _result(self, acted: bool, reason: str) -> ProgramResult:
        report(f"[{self.name}] {reason}", verbose=not acted)
        return ProgramResult(self.name, acted, reason)

    async def run(self, homebridge, suntimes, now: datetime = None) -> ProgramResult:
        report(f"Executing {self.name}.", verbose=True)
        if not self.active:
            return self._result(False, "program inactive - nothing to do")

        now = now or local_now(homebridge.timezone)
        if self.last_fired_date == now.date():
            return self._result(False, "already turned off the morning light today - nothing to do")

        off_at = await self.scheduled_off_time(now, suntimes)
        if now < off_at:
            return self._result(False, f"not yet time to turn off light ({off_at.time()}) - nothing to do")
        if now > shift_time(off_at, minutes=self.last_call_window):
            return self._result(False, f"last call after {off_at.time()} missed - nothing to do today")

        report(f"After scheduled off-time {off_at.time()}, attempting to turn the light off.")
        await homebridge.turn_off()
        await asyncio.sleep(self.settle_delay)
        light = await homebridge.read_light()
        if light.is_on:
            report(f"[{self.name}] WARNING: light still reads on after the off command, retrying next tick.")
            return ProgramResult(self.name, True, "off command sent but not confirmed")

        self.last_fired_date = now.date()
        return self._result(True, "turned the morning light off")
#endregion

#region Evening lights
@dataclass
class LightsHistory:
    when: datetime
    brightness: int

class EveningRampProgram:
    """
    Ramps brightness along start -> peak -> finish, anchored to sunset.

    Phase A (start..peak) only ever raises brightness, phase B (peak..finish) only
    lowers it. `history` holds the last value this program wrote; a bulb that no
    longer matches it has been changed by someone else and is left alone.
    """

    name = 'control_evening_lights'

    def __init__(self, config: dict, settle_delay: float = 0.25):
        report("Creating an EveningRampProgram object.", verbose=True)
        self.active = bool(config.get('active', False))
        self.settle_delay = settle_delay

        self.lead_minutes = _require_int(config, 'minutes_before_sunset_start')
        self.peak_minutes = _require_int(config, 'minutes_after_sunset_peak')
        self.finish_minutes = _require_int(config, 'minutes_after_sunset_finish')
        if not -self.lead_minutes <= self.peak_minutes:
            raise ConfigurationError("the start time must precede the peak time")
        if not self.peak_minutes <= self.finish_minutes:
            raise ConfigurationError("the time for peak must precede the finish time")

        self.start_brightness = _require_int(config, 'start_brightness', 0, 100)
        self.max_brightness = _require_int(config, 'max_brightness', 0, 100)
        self.final_brightness = _require_int(config, 'final_brightness', 0, 100)
        self.debounce_minutes = _require_int(config, 'debounce_minutes', minimum=1, default=1)

        self.history: Optional[LightsHistory] = None

    def window(self, sunset: datetime) -> tuple[datetime, datetime, datetime]:
        return (
            shift_time(sunset, minutes=-self.lead_minutes),
            shift_time(sunset, minutes=self.peak_minutes),
            shift_time(sunset, minutes=self.finish_minutes),
        )

    def target_brightness(self, now: datetime, sunset: datetime) -> int:
        """
        Brightness on the two-segment line through (start, start_brightness),
        (peak, max_brightness) and (end, final_brightness), truncated to an integer.
        """
        start, peak, end = self.window(sunset)
        if now <= peak:
            (t1, b1), (t2, b2) = (start, self.start_brightness), (peak, self.max_brightness)
        else:
            (t1, b1), (t2, b2) = (peak, self.max_brightness), (end, self.final_brightness)

        day = sunset.date()
        x1, x2 = seconds_since_midnight(t1, day), seconds_since_midnight(t2, day)
        x = seconds_since_midnight(now, day)
        if x2 == x1:
            return b2
        slope = (b2 - b1) / (x2 - x1)
        report(f"slope: {slope}, from ({x1}, {b1}) to ({x2}, {b2})", verbose=True)
        brightness = b1 + (b2 - b1) * ((x - x1) / (x2 - x1))
        return max(0, min(100, math.floor(brightness)))

    def _same_slot(self, earlier: datetime, later: datetime) -> bool:
        return (
            earlier.date() == later.date()
            and minute_of_day(earlier) // self.debounce_minutes == minute_of_day(later) // self.debounce_minutes
        )

    def _result(self, acted: bool, reason: str) -> ProgramResult:
        report(f"[{self.name}] {reason}", verbose=not acted)
        return ProgramResult(self.name, acted, reason)

    async def run(self, homebridge, suntimes, now: datetime = None) -> ProgramResult:
        report(f"Executing {self.name}.", verbose=True)
        if not self.active:
            return self._result(False, "program inactive - nothing to do")

        now = now or local_now(homebridge.timezone)
        sunset = await suntimes.sunset(now)
        start, peak, end = self.window(sunset)
        in_a = start <= now <= peak
        in_b = peak < now <= end
        report(f"Start: {start}, peak: {peak}, end: {end}, in A: {in_a}, in B: {in_b}", verbose=True)

        if not in_a and not in_b:
            self.history = None
            return self._result(False, "outside of operating times - nothing to do")

        light = await homebridge.read_light()

        if light.is_off and self.history is not None:
            return self._result(False, "light turned OFF after program started - doing nothing")

        if self.history is not None:
            if light.brightness != self.history.brightness:
                return self._result(False, "light brightness adjusted externally - doing nothing")
            if self._same_slot(self.history.when, now):
                return self._result(False, "already changed values this minute - doing nothing")

        new_brightness = self.target_brightness(now, sunset)
        if in_a:
            new_brightness = max(new_brightness, light.brightness)
        else:
            new_brightness = min(new_brightness, light.brightness)

        if new_brightness == 0:
            return self._result(False, "skipping setting brightness to 0")
        if new_brightness == light.brightness:
            return self._result(False, "new brightness same as current brightness - doing nothing")

        if light.is_off:
            await homebridge.turn_on()
            await asyncio.sleep(self.settle_delay)
        await homebridge.set_brightness(new_brightness)
        await asyncio.sleep(self.settle_delay)
        self.history = LightsHistory(when=now, brightness=new_brightness)
        return self._result(True, f"set brightness to {new_brightness}")
#endregion
