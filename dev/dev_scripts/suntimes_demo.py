"""
Fetches and prints today's sunrise and sunset for the configured location.
"""
import asyncio
import aiohttp

from homebridge_controller.project import *
from homebridge_controller.suntimes import SolarTimeProvider

settings['verbosity'] = True

config = load_configuration('config/config.json')

async def show_sun_times():
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=config['request_timeout'])) as client:
        tz = get_timezone(config['timezone'])
        suntimes = SolarTimeProvider(client, config['latitude'], config['longitude'], timezone=tz, url=config['suntimes_url'])
        sunrise, sunset = await suntimes.sun_times()
        report(f"Sunrise: {timestamp(sunrise)}")
        report(f"Sunset:  {timestamp(sunset)}")

try:
    asyncio.run(show_sun_times())
except ModuleException as e:
    report(f"Couldn't get sun times: {e}")
