"""Logging setup for RTX session management."""
import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

LOGGER_NAME = 'rtx_ssh_session'
DEFAULT_LOG_DIR = '/tmp/rtx_ssh_session_logs'
REDACTED = '[REDACTED]'

# Substrings that mark a command or value as carrying credentials
SENSITIVE_PATTERNS = (
    'password',
    'pre-shared-key',
    'secret',
    'community',
    'token',
    'key',
    'credential',
)

SENSITIVE_FIELDS = frozenset({
    'password',
    'admin_password',
    'pre_shared_key',
    'secret',
    'community',
    'token',
    'api_key',
    'credential',
    'private_key',
    'private_key_passphrase',
})

_LEVELS = {
    'trace': logging.DEBUG,
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}

_setup_lock = threading.Lock()
_configured = False


def _level_from_env() -> int:
    return _LEVELS.get(os.getenv('RTX_LOG', 'warn').strip().lower(), logging.WARNING)


def setup_logging(log_dir: Optional[str] = None, level: Optional[int] = None) -> logging.Logger:
    """Configure the package logger once.

    Only a file handler is attached: stdout belongs to the tool server's
    stdio transport and must not carry log lines.
    """
    global _configured
    logger = logging.getLogger(LOGGER_NAME)
    with _setup_lock:
        if _configured:
            if level is not None:
                logger.setLevel(level)
            return logger

        directory = Path(log_dir or os.getenv('RTX_SESSION_LOG_DIR', DEFAULT_LOG_DIR))
        directory.mkdir(exist_ok=True, parents=True)
        log_file = directory / 'rtx_ssh_session.log'

        logger.setLevel(level if level is not None else _level_from_env())
        logger.propagate = False

        file_handler = logging.FileHandler(str(log_file))
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - [%(threadName)s] - %(name)s - %(levelname)s - %(message)s'
        ))
        logger.addHandler(file_handler)
        _configured = True
        logger.info("Logging initialized")
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return the package logger, or a named child of it."""
    logger = setup_logging()
    return logger.getChild(name) if name else logger


def contains_sensitive(text: str) -> bool:
    if not text:
        return False
    lower = text.lower()
    return any(pattern in lower for pattern in SENSITIVE_PATTERNS)


def sanitize_command(command: str) -> str:
    """Replace a command that carries credentials with a redaction marker."""
    if contains_sensitive(command):
        return REDACTED
    return command


def sanitize_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Redact values of sensitive fields (by name or by content)."""
    result = {}
    for name, value in fields.items():
        if name.lower() in SENSITIVE_FIELDS:
            result[name] = REDACTED if value else value
        elif isinstance(value, str) and contains_sensitive(value):
            result[name] = REDACTED
        else:
            result[name] = value
    return result
