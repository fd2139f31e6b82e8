from homebridge_controller.project import *
from homebridge_controller.homebridge import BridgeSession
import asyncio
import aiohttp

settings['verbosity'] = True

config = load_configuration('config/config.json')
secrets = load_secrets('config/secrets_and_env/secrets.json')

async def show_light():
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=config['request_timeout'])) as client:
        homebridge = BridgeSession(client, config['ip_address'], secrets['username'], secrets['password'],
                                   accessory_name=config['accessory_name'], timezone=get_timezone(config['timezone']))
        light = await homebridge.read_light()
        report(f"{config['accessory_name']} ({homebridge.accessory_id_cache[config['accessory_name']]}): {light}")
        report(f"Token valid until {timestamp(homebridge.token_expiry)}")

asyncio.run(show_light())
