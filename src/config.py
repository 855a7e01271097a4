"""Engine configuration management.

Settings are loaded from a converger.yaml file:
- engine tuning (concurrency, timeouts, retry policy)
- state location and workspace
- provider connection (memory or rest)
- per-kind attribute schemas

Resolution order for the settings file:
1. $CONVERGER_CONFIG environment variable
2. ./converger.yaml (current working directory)
3. <base dir>/converger.yaml
4. Built-in defaults (no file)
"""

import getpass
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

CONFIG_FILENAME = 'converger.yaml'

PROVIDER_TYPES = {'memory', 'rest'}


class ConfigError(Exception):
    """Configuration error."""


def _default_operator() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = os.getenv('USER', 'unknown')
    return f'{user}@{socket.gethostname()}'


@dataclass
class RetrySettings:
    """Bounded retry policy for provider calls.

    Attributes:
        max_attempts: Total attempts including the first (>= 1)
        delay: Seconds to wait before the second attempt
        backoff: Multiplier applied to delay after each retry
    """
    max_attempts: int = 3
    delay: float = 1.0
    backoff: float = 2.0

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'RetrySettings':
        if not data:
            return cls()
        settings = cls(
            max_attempts=int(data.get('max_attempts', 3)),
            delay=float(data.get('delay', 1.0)),
            backoff=float(data.get('backoff', 2.0)),
        )
        if settings.max_attempts < 1:
            raise ConfigError("retry.max_attempts must be at least 1")
        if settings.delay < 0 or settings.backoff < 1:
            raise ConfigError("retry.delay must be >= 0 and retry.backoff >= 1")
        return settings


@dataclass
class EngineSettings:
    """Settings for one converger run.

    Attributes:
        workspace: State namespace; each workspace has its own state record
        state_dir: Directory holding {workspace}/state.json
        report_dir: Directory for apply reports
        operator: Lock holder identity ({user}@{host} by default)
        lock_timeout: Seconds to wait for the state lock
        lock_poll_interval: Seconds between lock acquisition attempts
        concurrency: Max provider operations in flight
        fail_fast: Stop issuing operations after the first failure
        operation_timeout: Seconds before a provider call is reported failed
        deadline: Optional run deadline in seconds; exceeded means cancel
        retry: Retry policy for idempotent provider calls
        provider: Provider connection settings ({'type': 'memory'|'rest', ...})
        kinds: Per-kind schema definitions (see providers.KindSchema)
        source_path: File the settings were loaded from, if any
    """
    workspace: str = 'default'
    state_dir: Path = field(default_factory=lambda: get_base_dir() / '.states')
    report_dir: Path = field(default_factory=lambda: get_base_dir() / 'reports')
    operator: str = field(default_factory=_default_operator)
    lock_timeout: float = 30.0
    lock_poll_interval: float = 0.5
    concurrency: int = 4
    fail_fast: bool = False
    operation_timeout: float = 600.0
    deadline: Optional[float] = None
    retry: RetrySettings = field(default_factory=RetrySettings)
    provider: dict = field(default_factory=lambda: {'type': 'memory'})
    kinds: dict = field(default_factory=dict)
    source_path: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if isinstance(self.report_dir, str):
            self.report_dir = Path(self.report_dir)

        if env_state := os.environ.get('CONVERGER_STATE_DIR'):
            self.state_dir = Path(env_state)

        self._validate()

    def _validate(self) -> None:
        if not self.workspace or '/' in self.workspace:
            raise ConfigError(f"Invalid workspace name: '{self.workspace}'")
        if self.concurrency < 1:
            raise ConfigError("concurrency must be at least 1")
        if self.lock_timeout < 0:
            raise ConfigError("lock_timeout must be >= 0")
        if self.lock_poll_interval <= 0:
            raise ConfigError("lock_poll_interval must be > 0")
        if self.operation_timeout <= 0:
            raise ConfigError("operation_timeout must be > 0")
        if self.deadline is not None and self.deadline <= 0:
            raise ConfigError("deadline must be > 0 when set")
        provider_type = self.provider.get('type', 'memory')
        if provider_type not in PROVIDER_TYPES:
            raise ConfigError(
                f"Unknown provider type '{provider_type}'. "
                f"Supported: {', '.join(sorted(PROVIDER_TYPES))}"
            )
        if not isinstance(self.kinds, dict):
            raise ConfigError("kinds must be a mapping of kind name to schema")

    @property
    def state_path(self) -> Path:
        """Path of the state record for this workspace."""
        return self.state_dir / self.workspace / 'state.json'

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'EngineSettings':
        """Create settings from a parsed converger.yaml mapping."""
        if not isinstance(data, dict):
            raise ConfigError("Settings must be a YAML object (dict)")

        kwargs: dict[str, Any] = {'source_path': source_path}
        base = source_path.parent if source_path else Path.cwd()

        for key in ('workspace', 'operator'):
            if key in data:
                kwargs[key] = str(data[key])
        for key in ('state_dir', 'report_dir'):
            if key in data:
                path = Path(data[key]).expanduser()
                kwargs[key] = path if path.is_absolute() else base / path
        try:
            for key in ('lock_timeout', 'lock_poll_interval', 'operation_timeout'):
                if key in data:
                    kwargs[key] = float(data[key])
            if 'concurrency' in data:
                kwargs['concurrency'] = int(data['concurrency'])
            if data.get('deadline') is not None:
                kwargs['deadline'] = float(data['deadline'])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric setting: {e}")
        if 'fail_fast' in data:
            kwargs['fail_fast'] = bool(data['fail_fast'])

        kwargs['retry'] = RetrySettings.from_dict(data.get('retry'))
        if 'provider' in data:
            if not isinstance(data['provider'], dict):
                raise ConfigError("provider must be a mapping")
            kwargs['provider'] = dict(data['provider'])
        if 'kinds' in data:
            kwargs['kinds'] = data['kinds'] or {}

        return cls(**kwargs)


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")


def get_base_dir() -> Path:
    """Get the converger repository directory."""
    return Path(__file__).parent.parent  # src/ -> repo root


def find_settings_file() -> Optional[Path]:
    """Discover the settings file.

    Resolution order:
    1. $CONVERGER_CONFIG environment variable
    2. ./converger.yaml
    3. <base dir>/converger.yaml
    """
    if env_path := os.environ.get('CONVERGER_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"CONVERGER_CONFIG={env_path} does not exist")

    cwd_file = Path.cwd() / CONFIG_FILENAME
    if cwd_file.exists():
        return cwd_file

    base_file = get_base_dir() / CONFIG_FILENAME
    if base_file.exists():
        return base_file

    return None


def load_settings(path: Optional[str] = None, workspace: Optional[str] = None) -> EngineSettings:
    """Load engine settings.

    Args:
        path: Explicit settings file (skips discovery)
        workspace: Optional workspace override (CLI takes precedence)

    Returns:
        EngineSettings instance

    Raises:
        ConfigError: If the file is missing or invalid
    """
    settings_file = Path(path) if path else find_settings_file()

    if settings_file is None:
        settings = EngineSettings()
    else:
        if not settings_file.exists():
            raise ConfigError(f"Settings file not found: {settings_file}")
        settings = EngineSettings.from_dict(_parse_yaml(settings_file), source_path=settings_file)

    if workspace:
        settings.workspace = workspace
        settings._validate()
    return settings
