"""
The only continuously running script. If fails, gets restarted by corresponding service file.

Runs the morning lights off and evening lights programs against the bed light
on Homebridge, once every program_loop_pause seconds.
Re-reads the configuration every config_reload_interval seconds.

Usage (from the project root):
    python -m services.homebridge_controller config/config.json --secrets config/secrets_and_env/secrets.json

Usual logging and reporting.
"""

import argparse
import asyncio

import aiohttp

from homebridge_controller.project import *
from homebridge_controller.controller import Controller

DEFAULT_SECRETS_PATH = os.path.join('config', 'secrets_and_env', 'secrets.json')

#region CLI
def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(description="Automated programs controlling Homebridge accessories.")
    parser.add_argument('config', help="Configuration file.")
    parser.add_argument('-s', '--secrets', default=DEFAULT_SECRETS_PATH, help="Secrets file.")
    return parser.parse_args(argv)
#endregion

#region Run
async def run(config_path: str, config: dict, secrets: dict) -> int:
    timeout = aiohttp.ClientTimeout(total=config['request_timeout'])
    async with aiohttp.ClientSession(timeout=timeout) as client:
        try:
            controller = Controller(config, secrets, client)
        except ModuleException as e:
            ServiceException("Invalid program configuration at startup", original_exception=e, severity=3)
            return 1

        success = False
        try:
            await controller.homebridge.check_connection()
            report("Accessed Homebridge successfully.")
            success = True
        except ModuleException as e:
            report("Couldn't access Homebridge.")
            ServiceException("Homebridge access error at startup", original_exception=e, severity=3)
        log({'success_homebridge_access': success})
        if not success:
            return 1

        await controller.run_forever(config_path)
    return 0

def main(argv=None) -> int:
    args = parse_arguments(argv)
    report('\nINITIALIZE')
    try:
        config = load_configuration(args.config)
        secrets = load_secrets(args.secrets)
    except ModuleException as e:
        ServiceException("Invalid configuration at startup", original_exception=e, severity=3)
        return 1
    report(f"Config:\n{json.dumps(config, indent=4)}", verbose=True)

    try:
        return asyncio.run(run(args.config, config, secrets))
    except KeyboardInterrupt:
        report("Stopped.")
        return 0
#endregion

if __name__ == '__main__':
    sys.exit(main())
