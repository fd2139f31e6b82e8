"""
Common toolkit for the entire project.
Import with: from homebridge_controller.project import *
"""

#region Imports
import inspect
import json
import logging
import os
import sys
from datetime import datetime, time as dt_time, timedelta
from logging.handlers import TimedRotatingFileHandler
from typing import Any, Optional

import filelock
import pytz
import tzlocal

#endregion

#region Settings
DEFAULT_SETTINGS = {
    'log': True,
    'verbosity': False,
    'dev': False,
    'timestamp_format': '%Y-%m-%d %H:%M:%S',
    'data_dir': 'data',
}

def initialize_settings():
    """
    Brittle function to initialize the settings dict. Do not use anywhere except directly below.
    Falls back to the defaults for every key missing from settings.json.
    """
    settings_dict = dict(DEFAULT_SETTINGS)
    try:
        settings_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'settings.json')
        with open(settings_path, 'r', encoding='utf-8') as file:
            settings_dict.update(json.load(file))
    except FileNotFoundError:
        pass
    except Exception as e:
        print(f"Can't load settings due to {e}")
    return settings_dict

settings = initialize_settings()

#endregion

#region Comms
"""Everything related to reporting and run logs."""

#region Console
def report(message, *, verbose = False):
    """Generalized output plug for runtime messages and reporting."""
    if verbose: # Verbose is true for messages that should only be printed in verbose mode.
        if settings['verbosity']:
            print(message)
    else:
        print(message)
#endregion

#region Logging
RUN_LOGGER_NAME = 'homebridge_controller.runlog'

def log(data: dict, name: str = None):
    """
    Used for runtime logging.
    Logs the provided data to a JSON log file named after the script calling this function,
    or after *name* if given.
    """
    if name is None:
        name = os.path.basename(inspect.stack()[1].filename).split('.')[0]
    relative_log_file_path = os.path.join('service_execution', name, f'{name}.json')
    log_data(data, relative_log_file_path)

def log_data(data: dict, relative_log_file_path: str):
    """
    Used for feature logging.
    Logs the provided data to a specified log file if settings['log'] is true, else prints to the console.

    Args:
        data (dict): The data to be logged.
        relative_log_file_path (str): Relative path to log file in <data_dir>/logs/.
    """
    log_entry = {'timestamp': timestamp()}
    log_entry.update(data)
    if settings['log']:
        logger = init_logger(relative_log_file_path)
        logger.info(json.dumps(log_entry, default=str))
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
    else:
        print(f"Log: {log_entry} at {relative_log_file_path}")

def init_logger(relative_log_file_path: str):
    """
    Initializes the run logger with a TimedRotatingFileHandler rotating at midnight.
    Should not normally be called on it's own, but by log() or log_data().
    """
    logger = logging.getLogger(RUN_LOGGER_NAME)
    logger.propagate = False
    full_log_file_path = get_data_path('logs', relative_log_file_path)
    os.makedirs(os.path.dirname(full_log_file_path), exist_ok=True)

    handler = TimedRotatingFileHandler(full_log_file_path, when='midnight', interval=1, encoding='utf-8')
    handler.setFormatter(logging.Formatter('%(message)s'))

    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger
#endregion

#endregion

#region Error management
class ModuleException(Exception):
    """
    Custom module exception with proposed severity level and origin details.

    Should only be raised in module functions.
    """
    def __init__(self, message, severity=0):
        caller_details = extract_exception_details()
        self.severity = severity
        if caller_details:
            message += ": "+caller_details['message']+' ('+caller_details['type']+')'
        super().__init__(message)

class ConfigurationError(ModuleException):
    """Invalid or contradictory settings. Fatal only at startup."""
    def __init__(self, message, severity=2):
        super().__init__(message, severity=severity)

class ServiceException(Exception):
    """
    Exception class that calls the error registrar when constructed (except in dev mode),
    should only be instantiated (but not necessarily raised) at the service boundary.
    """
    def __init__(self, message, original_exception = None, severity = 0):
        """
        Generates and registers error entry.
        """
        error_entry = {}
        register = True

        exception_details = extract_exception_details()
        if exception_details: # Called while handling an exception.
            if exception_details['type'] == 'KeyboardInterrupt':
                register = False
            error_entry['message'] = message+': '+exception_details['message']+'.'
            if isinstance(original_exception, ModuleException):
                error_entry['severity'] = max(severity, original_exception.severity)
            else:
                error_entry['severity'] = severity
            error_entry['origin'] = exception_details['origin']
        else:
            error_entry['message'] = message
            error_entry['severity'] = severity
            error_entry['origin'] = generate_call_origin()
        error_entry['origin_timestamp'] = timestamp()

        self.error_entry = error_entry
        if settings['dev']:
            report(json.dumps(error_entry, indent=4))
        elif register:
            error_registrar(error_entry)
        super().__init__(error_entry['message'])

def error_registrar(error_entry):
    """
    Expected keys in a valid error entry: message, severity, origin, origin_timestamp.

    Registers a new error in error_registry.json unless an entry with the same severity
    and origin is already present, in which case its occurrence count is bumped.
    If error_registry.json is locked, appends the error to error_buffer.json, which gets
    flushed into the registry on the next successful registration.

    Returns true only if the registry has been written, false otherwise.
    """
    registry_path = get_data_path('error_management', 'error_registry.json')
    buffer_path = get_data_path('error_management', 'error_buffer.json')
    os.makedirs(os.path.dirname(registry_path), exist_ok=True)

    success = False
    try:
        with filelock.FileLock(registry_path + '.lock', timeout=1):
            error_registry = _load_json_list(registry_path)
            pending = [error_entry]
            try:
                with filelock.FileLock(buffer_path + '.lock', timeout=0):
                    pending = _load_json_list(buffer_path) + pending
                    if os.path.exists(buffer_path):
                        _dump_json(buffer_path, [])
            except filelock.Timeout:
                report("Error buffer locked, flushing it next time.", verbose=True)

            for entry in pending:
                _register_entry(error_registry, entry)
            _dump_json(registry_path, error_registry)
            report("Error registry updated.", verbose=True)
            success = True
    except filelock.Timeout:
        report("Error registry locked, buffering error entry.", verbose=True)
        try:
            with filelock.FileLock(buffer_path + '.lock', timeout=0):
                error_buffer = _load_json_list(buffer_path)
                error_buffer.append(error_entry)
                _dump_json(buffer_path, error_buffer)
        except filelock.Timeout:
            report("Error buffer locked too, dropping error entry.", verbose=True)
    return success

def _register_entry(error_registry, error_entry):
    for existing_error in error_registry:
        if (
            existing_error['severity'] == error_entry['severity'] and
            existing_error['origin'] == error_entry['origin']
            ):
            existing_error['occurrences'] = existing_error.get('occurrences', 1) + 1
            existing_error['last_origin_timestamp'] = error_entry['origin_timestamp']
            return False
    registered = dict(error_entry)
    registered.update({
        'registration_timestamp': timestamp(),
        'occurrences': 1,
        'last_origin_timestamp': error_entry['origin_timestamp'],
    })
    error_registry.append(registered)
    return True

def _load_json_list(path):
    if not os.path.exists(path):
        return []
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)

def _dump_json(path, data):
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=4)

def extract_exception_details():
    """
    Works only if called while an exception is being handled, returns None otherwise.

    Returns a dict containing: type, message and origin.
    """
    exc_type, exc_message, tb = sys.exc_info()
    if exc_type is None:
        return None

    origin_chain = []
    while tb:
        filename = tb.tb_frame.f_code.co_filename.split(os.sep)[-1]
        scope = tb.tb_frame.f_code.co_name or 'main_scope'
        line = tb.tb_lineno
        origin_chain.append(f"{filename}{'/'+scope if scope != '<module>' else ''}:{line}")
        tb = tb.tb_next

    return {
        'type': exc_type.__name__,
        'message': str(exc_message),
        'origin': ' --> '.join(origin_chain),
    }

def generate_call_origin():
    """
    Returns the current call stack as 'filename/function:line --> filename/function:line --> ...'
    """
    origin_chain = []
    for frame_info in inspect.stack()[1:]:
        filename = os.path.basename(frame_info.filename)
        function = frame_info.function if frame_info.function != '<module>' else ''
        if function == '__init__' or filename == '__init__.py':
            continue
        if function:
            origin_chain.append(f"{filename}/{function}:{frame_info.lineno}")
        else:
            origin_chain.append(f"{filename}:{frame_info.lineno}")
    return ' --> '.join(origin_chain)

#endregion

#region Config
"""Utility functions related to config and secrets."""

REQUIRED_CONFIG_KEYS = {
    'ip_address': str,
    'latitude': (int, float),
    'longitude': (int, float),
    'program_loop_pause': (int, float),
}

CONFIG_DEFAULTS = {
    'accessory_name': 'Bed Light',
    'timezone': None,
    'config_reload_interval': 300,
    'request_timeout': 10,
    'settle_delay': 0.25,
    'suntimes_url': 'https://api.sunrise-sunset.org/json',
}

def load_configuration(path: str) -> dict:
    """
    Loads the program configuration and checks the top-level keys.
    Program sections are validated by the programs themselves.
    """
    config = load_json_to_dict(path)
    if not isinstance(config, dict):
        raise ConfigurationError(f"configuration in {path} is not a JSON object")
    for key, expected_type in REQUIRED_CONFIG_KEYS.items():
        if key not in config:
            raise ConfigurationError(f"missing '{key}' in configuration {path}")
        if isinstance(config[key], bool) or not isinstance(config[key], expected_type):
            raise ConfigurationError(f"invalid value for '{key}' in configuration {path}: {config[key]!r}")
    for key, default in CONFIG_DEFAULTS.items():
        config.setdefault(key, default)
    if config['program_loop_pause'] <= 0:
        raise ConfigurationError("'program_loop_pause' must be positive")
    get_timezone(config['timezone'])
    return config

def load_secrets(path: str) -> dict:
    """
    Returns the bridge credentials: a dict with username and password.
    """
    secrets = load_json_to_dict(path)
    if not isinstance(secrets, dict) or not all(isinstance(secrets.get(k), str) for k in ('username', 'password')):
        raise ConfigurationError(f"secrets file {path} needs a username and a password")
    return secrets

def load_json_to_dict(path: str):
    """
    Returns a dict generated from a JSON file, path is absolute or relative to project root.
    """
    full_path = path if os.path.isabs(path) else os.path.join(get_project_root(), path)
    try:
        with open(full_path, 'r', encoding='utf-8') as file:
            return json.load(file)
    except FileNotFoundError:
        raise ConfigurationError(f"no file at {full_path}")
    except ValueError:
        raise ConfigurationError(f"invalid JSON in {full_path}")

#endregion

#region Time
def get_timezone(name: Optional[str] = None):
    """
    Returns the pytz zone for *name*, or the host's zone if no name is given.
    """
    try:
        return pytz.timezone(name or tzlocal.get_localzone_name())
    except pytz.UnknownTimeZoneError:
        raise ConfigurationError(f"unknown timezone {name}")

def local_now(tz = None) -> datetime:
    """
    Returns the current timezone aware local time.
    """
    return datetime.now(tz or get_timezone())

def localize(naive: datetime, tz) -> datetime:
    """
    Attaches *tz* to a naive datetime, honouring pytz zones.
    """
    if hasattr(tz, 'localize'):
        return tz.localize(naive)
    return naive.replace(tzinfo=tz)

def shift_time(dt: datetime, minutes: float = 0, seconds: float = 0) -> datetime:
    """
    Adds an offset to an aware datetime and normalizes it for pytz zones.
    """
    shifted = dt + timedelta(minutes=minutes, seconds=seconds)
    normalize = getattr(dt.tzinfo, 'normalize', None)
    return normalize(shifted) if normalize else shifted

def parse_clock_time(value: str) -> dt_time:
    """
    Parses an 'HH:MM:SS' clock time.
    """
    try:
        return datetime.strptime(value, '%H:%M:%S').time()
    except (TypeError, ValueError):
        raise ConfigurationError(f"invalid clock time {value!r}, expected HH:MM:SS")

def seconds_since_midnight(dt: datetime, day = None) -> float:
    """
    Seconds elapsed between local midnight of *day* (default: dt's own date) and dt.
    """
    day = day or dt.date()
    midnight = localize(datetime.combine(day, dt_time(0)), dt.tzinfo)
    return (dt - midnight).total_seconds()

def minute_of_day(dt: datetime) -> int:
    """
    Returns the minute of day of a datetime.
    """
    return dt.hour * 60 + dt.minute

def timestamp(datetime_object: datetime = None):
    """
    Returns a timestamp string with the format specified in settings.
    """
    if datetime_object:
        return datetime_object.strftime(settings['timestamp_format'])
    else:
        return datetime.now().strftime(settings['timestamp_format'])

#endregion

#region Misc
def get_project_root():
    """
    Returns the root of the project as a string.
    """
    return os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

def get_data_path(*parts: Any) -> str:
    """
    Returns a path under the data directory set in settings.
    """
    data_dir = settings['data_dir']
    if not os.path.isabs(data_dir):
        data_dir = os.path.join(get_project_root(), data_dir)
    return os.path.join(data_dir, *parts)

#endregion
