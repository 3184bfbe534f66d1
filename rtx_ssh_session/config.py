"""Client configuration."""
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

from .errors import ConfigurationError
from .logging_manager import get_logger, sanitize_fields

DEFAULT_PORT = 22
DEFAULT_TIMEOUT = 30


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class ClientConfig:
    host: str = ''
    username: str = ''
    password: str = ''
    port: int = DEFAULT_PORT
    admin_password: str = ''
    timeout: int = DEFAULT_TIMEOUT

    private_key: str = ''
    private_key_file: str = ''
    private_key_passphrase: str = ''

    host_key: str = ''
    known_hosts_file: str = ''
    skip_host_key_check: bool = False

    use_pool: bool = True
    max_sessions: int = 2
    idle_timeout: float = 300
    acquire_timeout: float = 30
    idle_check_interval: float = 60
    save_on_exit: bool = True

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def has_private_key(self) -> bool:
        return bool(self.private_key or self.private_key_file)

    def validate(self) -> 'ClientConfig':
        """Check required fields and ranges, filling in defaults. Returns self."""
        if not self.host:
            raise ConfigurationError("host is required")
        if not self.username:
            raise ConfigurationError("username is required")
        if not self.password and not self.has_private_key:
            raise ConfigurationError("password or private key is required")
        if not 1 <= self.port <= 65535:
            raise ConfigurationError(f"invalid port: {self.port}")
        if self.timeout <= 0:
            self.timeout = DEFAULT_TIMEOUT
        if self.max_sessions < 1:
            raise ConfigurationError(f"max_sessions must be at least 1, got {self.max_sessions}")
        for name in ('idle_timeout', 'acquire_timeout', 'idle_check_interval'):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        return self

    def redacted(self) -> Dict[str, Any]:
        return sanitize_fields({f.name: getattr(self, f.name) for f in fields(self)})

    @classmethod
    def from_env(cls, prefix: str = 'RTX_', environ: Optional[Dict[str, str]] = None, **overrides) -> 'ClientConfig':
        """Build a configuration from ``RTX_*`` environment variables.

        Malformed numbers are logged and the default kept. Keyword
        arguments win over the environment.
        """
        logger = get_logger('config')
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        for f in fields(cls):
            raw = env.get(prefix + f.name.upper())
            if raw is None or raw == '':
                continue
            if f.type in (int, 'int'):
                try:
                    values[f.name] = int(raw)
                except ValueError:
                    logger.warning(f"Ignoring invalid integer {prefix + f.name.upper()}={raw!r}")
            elif f.type in (float, 'float'):
                try:
                    values[f.name] = float(raw)
                except ValueError:
                    logger.warning(f"Ignoring invalid number {prefix + f.name.upper()}={raw!r}")
            elif f.type in (bool, 'bool'):
                values[f.name] = _parse_bool(raw)
            else:
                values[f.name] = raw

        values.update({k: v for k, v in overrides.items() if v is not None})
        config = cls(**values)
        logger.debug(f"Loaded configuration: {config.redacted()}")
        return config
