"""
Cycle orchestration: runs every configured program once per tick against the shared
Homebridge session and sun times cache, and keeps going whatever happens in a tick.
"""

import asyncio
import time

from homebridge_controller.homebridge import BridgeSession
from homebridge_controller.programs import EveningRampProgram, MorningOffProgram
from homebridge_controller.project import (
    ModuleException,
    ServiceException,
    get_timezone,
    load_configuration,
    log,
    report,
)
from homebridge_controller.suntimes import SolarTimeProvider

PROGRAMS = {
    MorningOffProgram.name: MorningOffProgram,
    EveningRampProgram.name: EveningRampProgram,
}

# Cross-cycle memory carried over to the rebuilt programs on config reload.
PROGRAM_MEMORY = ('last_fired_date', 'history')

IDENTITY_KEYS = ('ip_address', 'accessory_name', 'latitude', 'longitude', 'timezone', 'suntimes_url')

def build_programs(config: dict) -> list:
    """
    Builds a program for every program section present in the configuration.
    Raises ConfigurationError on invalid sections.
    """
    return [
        program_class(config[section], settle_delay=config.get('settle_delay', 0.25))
        for section, program_class in PROGRAMS.items()
        if section in config
    ]

class Controller:
    def __init__(self, config: dict, secrets: dict, client):
        self.config = config
        self.timezone = get_timezone(config.get('timezone'))
        self.homebridge = BridgeSession(
            client,
            config['ip_address'],
            secrets['username'],
            secrets['password'],
            accessory_name=config.get('accessory_name', 'Bed Light'),
            timezone=self.timezone,
        )
        self.suntimes = SolarTimeProvider(
            client,
            config['latitude'],
            config['longitude'],
            timezone=self.timezone,
            url=config.get('suntimes_url', SolarTimeProvider.DEFAULT_URL),
        )
        self.programs = build_programs(config)
        self.last_reload = time.monotonic()

    async def run_cycle(self, now=None) -> list[dict]:
        """
        Runs each program once. Errors are registered and logged per program,
        never raised.
        """
        outcomes = []
        for program in self.programs:
            outcome = {'program': program.name}
            try:
                result = await program.run(self.homebridge, self.suntimes, now)
                outcome.update({'outcome': 'acted' if result.acted else 'noop', 'reason': result.reason})
            except ModuleException as e:
                ServiceException(f"Module error while running {program.name}", original_exception=e, severity=1)
                outcome.update({'outcome': 'error', 'error': type(e).__name__, 'reason': str(e)})
            except Exception as e:
                ServiceException(f"Unexpected error while running {program.name}", severity=2)
                outcome.update({'outcome': 'error', 'error': type(e).__name__, 'reason': str(e)})
            log(outcome, name='homebridge_controller')
            outcomes.append(outcome)
        return outcomes

    def reload_configuration(self, config_path: str) -> bool:
        """
        Re-reads the configuration and rebuilds the programs, keeping their memory.
        On an invalid file the running programs stay in place.
        """
        try:
            config = load_configuration(config_path)
            programs = build_programs(config)
        except ModuleException as e:
            ServiceException("Couldn't reload configuration", original_exception=e, severity=2)
            return False

        previous = {program.name: program for program in self.programs}
        for program in programs:
            old = previous.get(program.name)
            if old is None:
                continue
            for attribute in PROGRAM_MEMORY:
                if hasattr(old, attribute):
                    setattr(program, attribute, getattr(old, attribute))

        changed = [key for key in IDENTITY_KEYS if config.get(key) != self.config.get(key)]
        if changed:
            report(f"Configuration changes to {', '.join(changed)} need a restart to take effect.")
            for key in changed:
                config[key] = self.config.get(key)

        self.config = config
        self.programs = programs
        report("Configuration reloaded.", verbose=True)
        return True

    async def run_forever(self, config_path: str, max_cycles: int = None):
        """
        The poll loop: reload config when due, run a cycle, sleep.
        """
        cycles = 0
        while True:
            if time.monotonic() - self.last_reload >= self.config['config_reload_interval']:
                self.reload_configuration(config_path)
                self.last_reload = time.monotonic()
            report("Running program loop.", verbose=True)
            await self.run_cycle()
            report("Finished program loop.", verbose=True)
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            await asyncio.sleep(self.config['program_loop_pause'])
