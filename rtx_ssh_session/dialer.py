"""SSH transport: dial the router and open interactive sessions."""
import base64
import binascii
import io
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import paramiko

from .config import ClientConfig
from .datastructures import Deadline
from .errors import AuthenticationError, ConfigurationError, DialError, HostKeyMismatchError
from .logging_manager import get_logger
from .prompt import PromptDetector
from .session import InteractiveSession

KEY_CLASSES = (paramiko.RSAKey, paramiko.ECDSAKey, paramiko.Ed25519Key)


class FixedHostKeyPolicy(paramiko.MissingHostKeyPolicy):
    """Accept only the host key given as base64 wire-format blob."""

    def __init__(self, expected_b64: str):
        try:
            self.expected = base64.b64decode(expected_b64.strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError(f"invalid host key format: {exc}") from exc

    def missing_host_key(self, client, hostname, key):
        if key.asbytes() != self.expected:
            raise HostKeyMismatchError(f"host key mismatch for {hostname}")


class KnownHostsPolicy(paramiko.MissingHostKeyPolicy):
    """Reject hosts that are not in the loaded known_hosts file."""

    def missing_host_key(self, client, hostname, key):
        raise HostKeyMismatchError(f"unknown host key for {hostname} ({key.get_name()})")


class SSHDialer:
    """Dials the router with paramiko according to a ``ClientConfig``."""

    BANNER_TIMEOUT = 30

    def __init__(self, config: ClientConfig, prompt_detector: Optional[PromptDetector] = None,
                 client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
                 ssh_config_path: Optional[Path] = None):
        self.config = config
        self.prompt_detector = prompt_detector or PromptDetector()
        self._client_factory = client_factory
        self._ssh_config = self._load_ssh_config(ssh_config_path or Path.home() / '.ssh' / 'config')
        self.logger = get_logger('dialer')

    @staticmethod
    def _load_ssh_config(config_path: Path) -> paramiko.SSHConfig:
        """Load SSH config from the given path, if it exists."""
        ssh_config = paramiko.SSHConfig()
        if config_path.exists():
            with open(config_path) as f:
                ssh_config.parse(f)
        return ssh_config

    def resolve(self) -> Dict[str, Any]:
        """Resolve hostname, user, port and identity file; explicit configuration wins."""
        host_config = self._ssh_config.lookup(self.config.host)
        identity = host_config.get('identityfile', [None])[0]
        port = self.config.port
        if port == 22 and 'port' in host_config:
            port = int(host_config['port'])
        return {
            'hostname': host_config.get('hostname', self.config.host),
            'username': self.config.username or host_config.get('user', ''),
            'port': port,
            'identity_file': self.config.private_key_file or identity or '',
        }

    def _apply_host_key_policy(self, client: paramiko.SSHClient):
        logger = self.logger.getChild('host_key')
        config = self.config
        if config.skip_host_key_check:
            logger.warning("Host key verification skipped by configuration")
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        elif config.host_key:
            client.set_missing_host_key_policy(FixedHostKeyPolicy(config.host_key))
        elif config.known_hosts_file:
            path = os.path.expanduser(config.known_hosts_file)
            try:
                client.load_host_keys(path)
            except OSError as exc:
                raise ConfigurationError(f"failed to load known_hosts file {path!r}: {exc}") from exc
            client.set_missing_host_key_policy(KnownHostsPolicy())
        else:
            logger.warning("SSH host key verification is disabled. Configure known_hosts_file or "
                           "host_key to protect against man-in-the-middle attacks.")
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    def _load_private_key(self) -> paramiko.PKey:
        passphrase = self.config.private_key_passphrase or None
        last_error: Optional[Exception] = None
        for key_class in KEY_CLASSES:
            try:
                return key_class.from_private_key(io.StringIO(self.config.private_key), password=passphrase)
            except paramiko.SSHException as exc:
                last_error = exc
        raise ConfigurationError(f"failed to parse private key: {last_error}")

    def connect_kwargs(self, timeout: float) -> Dict[str, Any]:
        logger = self.logger.getChild('auth')
        resolved = self.resolve()
        kwargs: Dict[str, Any] = {
            'hostname': resolved['hostname'],
            'port': resolved['port'],
            'username': resolved['username'],
            'timeout': timeout,
            'banner_timeout': min(timeout, self.BANNER_TIMEOUT),
            'auth_timeout': timeout,
            'look_for_keys': False,
            'allow_agent': not self.config.has_private_key,
        }
        if self.config.private_key:
            kwargs['pkey'] = self._load_private_key()
            logger.debug("Authenticating with private key from configuration")
        elif resolved['identity_file']:
            kwargs['key_filename'] = os.path.expanduser(resolved['identity_file'])
            if self.config.private_key_passphrase:
                kwargs['passphrase'] = self.config.private_key_passphrase
            logger.debug(f"Authenticating with key file: {kwargs['key_filename']}")
        if self.config.password:
            # paramiko falls back to keyboard-interactive with the same password
            kwargs['password'] = self.config.password
        return kwargs

    def dial(self, deadline: Optional[Deadline] = None) -> paramiko.SSHClient:
        """Open an authenticated SSH connection."""
        logger = self.logger.getChild('dial')
        deadline = deadline or Deadline()
        deadline.check()

        client = self._client_factory()
        try:
            self._apply_host_key_policy(client)
            kwargs = self.connect_kwargs(deadline.bound(self.config.timeout))
            logger.debug(f"[CONN_DEBUG] Attempting connection to {kwargs['hostname']}:{kwargs['port']}")
            client.connect(**kwargs)
        except (HostKeyMismatchError, ConfigurationError):
            client.close()
            raise
        except paramiko.BadHostKeyException as exc:
            client.close()
            raise HostKeyMismatchError(str(exc)) from exc
        except paramiko.AuthenticationException as exc:
            client.close()
            logger.error(f"[CONN_DEBUG] Authentication failed for {self.config.username}@{self.config.address}")
            raise AuthenticationError(f"SSH authentication failed: {exc}") from exc
        except (paramiko.SSHException, OSError, EOFError) as exc:
            client.close()
            logger.error(f"[CONN_DEBUG] Connection failed to {self.config.address}: {type(exc).__name__}: {exc}")
            raise DialError(f"unable to connect to {self.config.address}: {exc}") from exc

        if deadline.done:
            client.close()
            deadline.check()
        logger.info(f"Connected to {self.config.address}")
        return client

    def open_session(self, deadline: Optional[Deadline] = None) -> InteractiveSession:
        """Dial a new connection and start an interactive session on it."""
        client = self.dial(deadline)
        try:
            return InteractiveSession.open(client, prompt_detector=self.prompt_detector,
                                           save_on_exit=self.config.save_on_exit,
                                           name=f"{self.config.username}@{self.config.address}",
                                           deadline=deadline)
        except BaseException:
            client.close()
            raise
