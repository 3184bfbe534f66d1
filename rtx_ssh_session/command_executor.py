"""Command execution on RTX sessions."""
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence, Tuple

from .commands import check_output_error
from .config import ClientConfig
from .datastructures import Deadline
from .dialer import SSHDialer
from .errors import (AuthenticationError, DeviceCommandError, PromptNotFoundError, RTXError,
                     classify_device_output)
from .logging_manager import get_logger, sanitize_command
from .pool import ConnectionPool, PooledSession
from .prompt import has_auth_failure
from .retry import LinearBackoff, NoRetry, RetryStrategy, retry_call
from .session import InteractiveSession


class CommandExecutor:
    """Runs commands on a session and checks that the device answered with a prompt.

    Subclasses decide where sessions come from by implementing ``_session``.
    """

    OLD_PASSWORD_PROMPT = 'Old_Password:'
    NEW_PASSWORD_PROMPT = 'New_Password:'
    ADMIN_PASSWORD_COMMAND = 'administrator password'
    LOGIN_PASSWORD_COMMAND = 'login password'
    HOST_KEY_COMMAND = 'sshd host key generate'

    def __init__(self, config: ClientConfig, retry_strategy: Optional[RetryStrategy] = None):
        self.config = config
        self.retry_strategy = retry_strategy or NoRetry()
        self.logger = get_logger('command_executor')

    # Subclass hooks

    def _session(self, deadline: Deadline, needs_admin: bool):
        """Context manager lending a ready session, elevated when ``needs_admin``."""
        raise NotImplementedError

    def _requires_admin(self, command: str) -> bool:
        return bool(self.config.admin_password)

    def close(self):
        pass

    # Operations

    def run(self, command: str, deadline: Optional[Deadline] = None, check: bool = False) -> bytes:
        """Run one command and return the raw response, prompt included.

        Transport failures and prompt timeouts are retried with the retry
        strategy. With ``check`` the output is also inspected for device
        error markers, which raise DeviceCommandError.
        """
        logger = self.logger.getChild('run')
        logger.info(f"[EXEC_REQ] {sanitize_command(command)}")
        deadline = deadline or Deadline()
        needs_admin = self._requires_admin(command)

        def attempt() -> bytes:
            with self._session(deadline, needs_admin) as session:
                return self._send(session, command, deadline)

        output = retry_call(attempt, self.retry_strategy, deadline,
                            description=f"command {sanitize_command(command)!r}", logger=logger)
        if check:
            check_output_error(output, "command failed", command=command)
        logger.debug(f"[EXEC_DONE] {sanitize_command(command)} ({len(output)} bytes)")
        return output

    def run_batch(self, commands: Sequence[str], deadline: Optional[Deadline] = None,
                  check: bool = False) -> bytes:
        """Run commands in order on one session; stop at the first failure.

        The raised error carries the output gathered so far in
        ``partial_output``.
        """
        logger = self.logger.getChild('run_batch')
        if not commands:
            return b""
        deadline = deadline or Deadline()
        needs_admin = any(self._requires_admin(command) for command in commands)
        collected: List[bytes] = []
        logger.info(f"[BATCH_REQ] {len(commands)} commands")

        current = ''
        try:
            with self._session(deadline, needs_admin) as session:
                for current in commands:
                    logger.info(f"[BATCH_CMD] {sanitize_command(current)}")
                    output = self._send(session, current, deadline)
                    collected.append(output)
                    if check:
                        check_output_error(output, "batch command failed", command=current)
        except RTXError as exc:
            logger.warning(f"[BATCH_FAIL] {sanitize_command(current)!r}: {exc}")
            exc.partial_output = b"".join(collected)
            raise
        return b"".join(collected)

    def set_administrator_password(self, old_password: str, new_password: str,
                                   deadline: Optional[Deadline] = None):
        steps = [
            (self.OLD_PASSWORD_PROMPT, old_password),
            (self.NEW_PASSWORD_PROMPT, new_password),
            (self.NEW_PASSWORD_PROMPT, new_password),
        ]
        self._change_password(self.ADMIN_PASSWORD_COMMAND, steps, "administrator password", deadline)
        # Sessions opened from now on must elevate with the new password
        self.config.admin_password = new_password

    def set_login_password(self, new_password: str, deadline: Optional[Deadline] = None):
        steps = [
            (self.NEW_PASSWORD_PROMPT, new_password),
            (self.NEW_PASSWORD_PROMPT, new_password),
        ]
        self._change_password(self.LOGIN_PASSWORD_COMMAND, steps, "login password", deadline)

    def generate_sshd_host_key(self, deadline: Optional[Deadline] = None) -> bytes:
        """Regenerate the SSH host key, confirming replacement of an existing key."""
        logger = self.logger.getChild('host_key')
        deadline = deadline or Deadline()
        with self._session(deadline, bool(self.config.admin_password)) as session:
            logger.info("Generating SSHD host key")
            result = session.send_with_confirmation(self.HOST_KEY_COMMAND, answer='y',
                                                    timeout=InteractiveSession.KEYGEN_TIMEOUT,
                                                    deadline=deadline)
            if not result.prompt_found:
                raise PromptNotFoundError("no prompt after host key generation", result.output)
        check_output_error(result.output, "sshd host key generation failed", command=self.HOST_KEY_COMMAND)
        return result.output

    # Helpers

    def _send(self, session: InteractiveSession, command: str, deadline: Deadline) -> bytes:
        result = session.send(command, deadline=deadline)
        if not result.prompt_found:
            raise PromptNotFoundError(f"output of {sanitize_command(command)!r} does not end in a prompt",
                                      result.output)
        self.logger.getChild('send').debug(f"Prompt detected: {result.prompt!r}")
        return result.output

    def _elevate(self, session: InteractiveSession, deadline: Deadline):
        if session.administrator_mode:
            return
        session.enter_administrator_mode(self.config.admin_password, deadline)

    def _change_password(self, command: str, steps: List[Tuple[str, str]], description: str,
                         deadline: Optional[Deadline]):
        logger = self.logger.getChild('password')
        deadline = deadline or Deadline()
        logger.info(f"Changing {description}")
        with self._session(deadline, bool(self.config.admin_password)) as session:
            response = session.send_interactive(command, steps, deadline=deadline)
            text = response.decode('utf-8', errors='replace')
            if has_auth_failure(text):
                raise AuthenticationError(f"{description} change failed: {text.strip()}")
            kind = classify_device_output(text)
            if kind is not None:
                raise DeviceCommandError(f"{description} change failed", text, kind, command)
        logger.info(f"{description} changed")


class SimpleExecutor(CommandExecutor):
    """Opens a fresh connection for every command or batch. Simple and slow."""

    # Commands that only work in administrator mode
    ADMIN_COMMANDS = (
        "dhcp scope bind",
        "dhcp scope unbind",
        "no dhcp scope bind",
        "show config",
        "show dhcp scope bind",
        "ip host",
        "no ip host",
        "ip route",
        "no ip route",
        "save",
    )

    def __init__(self, config: ClientConfig, dialer: SSHDialer, retry_strategy: Optional[RetryStrategy] = None):
        super().__init__(config, retry_strategy)
        self.dialer = dialer

    def _requires_admin(self, command: str) -> bool:
        lower = command.strip().lower()
        return any(admin_command in lower for admin_command in self.ADMIN_COMMANDS)

    @contextmanager
    def _session(self, deadline: Deadline, needs_admin: bool) -> Iterator[InteractiveSession]:
        session = self.dialer.open_session(deadline)
        try:
            if needs_admin:
                self._elevate(session, deadline)
            yield session
        finally:
            session.close()


class PooledExecutor(CommandExecutor):
    """Borrows sessions from a ConnectionPool.

    A session that fails mid-command is discarded, never returned, and the
    command is retried on another one. Administrator mode survives release,
    so elevation happens once per pooled session.
    """

    DEFAULT_RETRY_DELAY = 0.1
    DEFAULT_MAX_RETRIES = 2

    def __init__(self, config: ClientConfig, pool: ConnectionPool, retry_strategy: Optional[RetryStrategy] = None):
        super().__init__(config, retry_strategy or LinearBackoff(self.DEFAULT_RETRY_DELAY, self.DEFAULT_MAX_RETRIES))
        self.pool = pool

    @contextmanager
    def _session(self, deadline: Deadline, needs_admin: bool) -> Iterator[InteractiveSession]:
        logger = self.logger.getChild('pooled')
        pooled: PooledSession = self.pool.acquire(deadline)
        try:
            if needs_admin and not pooled.administrator_mode:
                logger.debug(f"Elevating {pooled.pool_id}")
                self._elevate(pooled.resource, deadline)
            yield pooled.resource
        except DeviceCommandError:
            # The device answered with a prompt, the session is still in sync
            self.pool.release(pooled)
            raise
        except BaseException as exc:
            logger.warning(f"Discarding {pooled.pool_id} after {type(exc).__name__}: {exc}")
            self.pool.discard(pooled)
            raise
        self.pool.release(pooled)

    def close(self):
        self.pool.close()
