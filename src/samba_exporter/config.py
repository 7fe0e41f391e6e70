"""
Configuration shared by samba-exporter and samba-statusd.

Both processes read the same YAML file. Every value has a default, so a
missing file is not an error; a present file is merged over the defaults and
validated once at startup.

pipes:
    request: /run/samba_exporter.request.pipe
    response: /run/samba_exporter.response.pipe
    mode: 0660              # permission bits of the fifo files
    group: samba-exporter   # optional group owner of the fifo files
exporter:
    metrics_port: 9922
    namespace: samba
    machine_label: false    # add a 'machine' label with the host name
    response_timeout_sec: 10
statusd:
    smbstatus_command: smbstatus
    command_timeout_sec: 10
    process_name: smbd
    idle_poll_sec: 1
    test_mode: false        # answer requests with canned sample data
logging:
    level: INFO
    ...
"""

import os
import threading
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from samba_exporter.exceptions import ConfigurationError

DEFAULT_CONFIG_PATH = Path("/etc/samba_exporter/samba_exporter.yml")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ProgramSource:
    """Program identity and the configuration file it reads."""
    program_name: str
    config_file: Optional[Path] = None
    verbose: bool = False

    @property
    def logger_name(self) -> str:
        """Logger name derived from the program name."""
        return self.program_name.replace('-', '_')

    @property
    def config_path(self) -> Path:
        """Full path to the config file."""
        return Path(self.config_file) if self.config_file else DEFAULT_CONFIG_PATH

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramConfig:
    """Program configuration with defaults and validation."""

    DEFAULT_REQUEST_PIPE = '/run/samba_exporter.request.pipe'
    DEFAULT_RESPONSE_PIPE = '/run/samba_exporter.response.pipe'
    DEFAULT_PIPE_MODE = 0o660
    DEFAULT_PIPE_GROUP = None

    DEFAULT_METRICS_PORT = 9922
    DEFAULT_NAMESPACE = 'samba'
    DEFAULT_MACHINE_LABEL = False
    DEFAULT_RESPONSE_TIMEOUT = 10

    DEFAULT_SMBSTATUS_COMMAND = 'smbstatus'
    DEFAULT_COMMAND_TIMEOUT = 10
    DEFAULT_PROCESS_NAME = 'smbd'
    DEFAULT_IDLE_POLL = 1
    DEFAULT_TEST_MODE = False

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_FILE = None
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    LOG_LEVELS = ('VERBOSE', 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

    def __init__(self, source: ProgramSource):
        """Initialize configuration manager with defaults only."""
        self._source = source
        self._config = self._get_defaults()
        self._lock = threading.Lock()
        self._start_time = self.now_utc()
        self._running_under_systemd = bool(os.getenv('INVOCATION_ID'))
        self._loaded_from: Optional[Path] = None

    def _get_defaults(self) -> Dict[str, Any]:
        """Get the default configuration."""
        return {
            'pipes': {
                'request': self.DEFAULT_REQUEST_PIPE,
                'response': self.DEFAULT_RESPONSE_PIPE,
                'mode': self.DEFAULT_PIPE_MODE,
                'group': self.DEFAULT_PIPE_GROUP
            },
            'exporter': {
                'metrics_port': self.DEFAULT_METRICS_PORT,
                'namespace': self.DEFAULT_NAMESPACE,
                'machine_label': self.DEFAULT_MACHINE_LABEL,
                'response_timeout_sec': self.DEFAULT_RESPONSE_TIMEOUT
            },
            'statusd': {
                'smbstatus_command': self.DEFAULT_SMBSTATUS_COMMAND,
                'command_timeout_sec': self.DEFAULT_COMMAND_TIMEOUT,
                'process_name': self.DEFAULT_PROCESS_NAME,
                'idle_poll_sec': self.DEFAULT_IDLE_POLL,
                'test_mode': self.DEFAULT_TEST_MODE
            },
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'file': self.DEFAULT_LOG_FILE,
                'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def load(self) -> None:
        """Load the config file, if any, over the defaults."""
        with self._lock:
            path = self._source.config_path
            new_config = self._get_defaults()

            if path.is_file():
                try:
                    with open(path) as f:
                        file_config = yaml.safe_load(f) or {}
                except (OSError, yaml.YAMLError) as e:
                    raise ConfigurationError(f"Failed to load config file {path}: {e}")

                if not isinstance(file_config, dict):
                    raise ConfigurationError(f"Config file {path} must contain a mapping")

                unknown = set(file_config) - set(new_config)
                if unknown:
                    raise ConfigurationError(f"Unknown config sections: {', '.join(sorted(unknown))}")

                new_config = self._merge_with_defaults(new_config, file_config)
                self._loaded_from = path
            elif self._source.config_file:
                # An explicitly requested file has to exist
                raise ConfigurationError(f"Config file {path} not found")

            self._validate(new_config)
            self._config = new_config

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = deepcopy(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and key in result and isinstance(result[key], dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = deepcopy(value)
        return result

    def _validate(self, config: Dict[str, Any]) -> None:
        """Validate all sections, normalizing values in place."""
        for section in ('pipes', 'exporter', 'statusd', 'logging'):
            if not isinstance(config.get(section), dict):
                raise ConfigurationError(f"Section '{section}' must be a dictionary")

        pipes = config['pipes']
        for key in ('request', 'response'):
            if not isinstance(pipes[key], str) or not pipes[key]:
                raise ConfigurationError(f"Invalid pipe path for '{key}': {pipes[key]!r}")
        if pipes['request'] == pipes['response']:
            raise ConfigurationError("Request and response pipe must be different files")
        pipes['mode'] = self._parse_mode(pipes['mode'])

        exporter = config['exporter']
        port = exporter['metrics_port']
        if not isinstance(port, int) or isinstance(port, bool) or port < 1 or port > 65535:
            raise ConfigurationError(f"Invalid metrics_port {port}")
        if not isinstance(exporter['namespace'], str) or not exporter['namespace'].isidentifier():
            raise ConfigurationError(f"Invalid namespace {exporter['namespace']!r}")
        self._validate_positive(exporter, 'response_timeout_sec')

        statusd = config['statusd']
        if not isinstance(statusd['smbstatus_command'], str) or not statusd['smbstatus_command']:
            raise ConfigurationError("smbstatus_command must be a non-empty string")
        self._validate_positive(statusd, 'command_timeout_sec')
        self._validate_positive(statusd, 'idle_poll_sec')

        log_settings = config['logging']
        for key in ('level', 'console_level', 'file_level', 'journal_level'):
            level = str(log_settings[key]).upper()
            if level not in self.LOG_LEVELS:
                raise ConfigurationError(f"Invalid logging {key} {log_settings[key]!r}")
            log_settings[key] = level

    @staticmethod
    def _validate_positive(section: Dict[str, Any], key: str) -> None:
        value = section[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigurationError(f"Invalid {key} {value!r}: must be a positive number")

    @staticmethod
    def _parse_mode(value: Any) -> int:
        """Accept YAML 1.1 octal ints as well as '0o660' / '660' strings."""
        if isinstance(value, int) and not isinstance(value, bool):
            mode = value
        elif isinstance(value, str):
            try:
                mode = int(value.lower().replace('0o', ''), 8)
            except ValueError:
                raise ConfigurationError(f"Invalid pipe mode {value!r}")
        else:
            raise ConfigurationError(f"Invalid pipe mode {value!r}")
        if mode < 0 or mode > 0o777:
            raise ConfigurationError(f"Invalid pipe mode {oct(mode)}")
        return mode

    @staticmethod
    def now_utc() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def get_uptime_seconds(self) -> float:
        """Get service uptime in seconds."""
        return (self.now_utc() - self._start_time).total_seconds()

    @property
    def source(self) -> ProgramSource:
        return self._source

    @property
    def running_under_systemd(self) -> bool:
        """Check if running under systemd."""
        return self._running_under_systemd

    @property
    def loaded_from(self) -> Optional[Path]:
        """Path of the file the configuration was read from, if any."""
        return self._loaded_from

    @property
    def pipes(self) -> Dict[str, Any]:
        """Get pipes configuration."""
        return self._config['pipes']

    @property
    def exporter(self) -> Dict[str, Any]:
        """Get exporter configuration."""
        return self._config['exporter']

    @property
    def statusd(self) -> Dict[str, Any]:
        """Get statusd configuration."""
        return self._config['statusd']

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self._config['logging']

    @property
    def request_pipe(self) -> Path:
        return Path(self.pipes['request'])

    @property
    def response_pipe(self) -> Path:
        return Path(self.pipes['response'])

    @property
    def pipe_mode(self) -> int:
        return self.pipes['mode']

    @property
    def pipe_group(self) -> Optional[str]:
        return self.pipes.get('group')

    @property
    def metrics_port(self) -> int:
        """Get metrics port number."""
        return self.exporter['metrics_port']

    @property
    def namespace(self) -> str:
        """Get the metric name prefix."""
        return self.exporter['namespace']

    @property
    def machine_label(self) -> bool:
        return bool(self.exporter['machine_label'])

    @property
    def response_timeout(self) -> float:
        """Get the deadline for one request/response round trip in seconds."""
        return self.exporter['response_timeout_sec']

    @property
    def smbstatus_command(self) -> str:
        return self.statusd['smbstatus_command']

    @property
    def command_timeout(self) -> float:
        """Get the timeout for one status command invocation in seconds."""
        return self.statusd['command_timeout_sec']

    @property
    def process_name(self) -> str:
        return self.statusd['process_name']

    @property
    def idle_poll(self) -> float:
        """Get the interval the daemon wakes up at while waiting for requests."""
        return self.statusd['idle_poll_sec']

    @property
    def test_mode(self) -> bool:
        return bool(self.statusd['test_mode'])
