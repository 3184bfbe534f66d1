"""Device client: one configured router, its session pool and executor."""
import threading
from typing import Any, Callable, Optional, Sequence

from .command_executor import CommandExecutor, PooledExecutor, SimpleExecutor
from .commands import save_config
from .config import ClientConfig
from .datastructures import Deadline, PoolStats
from .dialer import SSHDialer
from .errors import PoolClosedError
from .logging_manager import get_logger
from .pool import ConnectionPool
from .prompt import PromptDetector
from .retry import RetryStrategy


class RTXClient:
    """Entry point for feature code.

    Owns the pool for its router; construct one per device and share it
    between threads.
    """

    CONNECTION_CHECK_COMMAND = 'show environment'

    def __init__(self, config: ClientConfig, prompt_detector: Optional[PromptDetector] = None,
                 retry_strategy: Optional[RetryStrategy] = None, dialer: Optional[SSHDialer] = None,
                 session_factory: Optional[Callable[[Deadline], Any]] = None, idle_cleanup: bool = True):
        self.config = config.validate()
        self.logger = get_logger('client')
        self.dialer = dialer or SSHDialer(config, prompt_detector)
        self.pool: Optional[ConnectionPool] = None
        self._closed = False
        self._lock = threading.Lock()

        if config.use_pool:
            self.pool = ConnectionPool(
                factory=session_factory or self.dialer.open_session,
                max_sessions=config.max_sessions,
                idle_timeout=config.idle_timeout,
                acquire_timeout=config.acquire_timeout,
                idle_check_interval=config.idle_check_interval,
                idle_cleanup=idle_cleanup,
            )
            self.executor: CommandExecutor = PooledExecutor(config, self.pool, retry_strategy)
        else:
            self.executor = SimpleExecutor(config, self.dialer, retry_strategy)
        self.logger.info(f"Client created for {config.username}@{config.address} "
                         f"(pooled={config.use_pool}, max_sessions={config.max_sessions})")

    def __enter__(self) -> 'RTXClient':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self):
        if self._closed:
            raise PoolClosedError("client is closed")

    def run(self, command: str, deadline: Optional[Deadline] = None, check: bool = False) -> bytes:
        self._ensure_open()
        return self.executor.run(command, deadline=deadline, check=check)

    def run_batch(self, commands: Sequence[str], deadline: Optional[Deadline] = None,
                  check: bool = False) -> bytes:
        self._ensure_open()
        return self.executor.run_batch(commands, deadline=deadline, check=check)

    def set_administrator_password(self, old_password: str, new_password: str,
                                   deadline: Optional[Deadline] = None):
        self._ensure_open()
        self.executor.set_administrator_password(old_password, new_password, deadline=deadline)

    def set_login_password(self, new_password: str, deadline: Optional[Deadline] = None):
        self._ensure_open()
        self.executor.set_login_password(new_password, deadline=deadline)

    def generate_sshd_host_key(self, deadline: Optional[Deadline] = None) -> bytes:
        self._ensure_open()
        return self.executor.generate_sshd_host_key(deadline=deadline)

    def save_config(self, deadline: Optional[Deadline] = None):
        self._ensure_open()
        save_config(self.executor, deadline=deadline)

    def check_connection(self, deadline: Optional[Deadline] = None) -> bytes:
        """Run a harmless command to prove the router is reachable and answering."""
        return self.run(self.CONNECTION_CHECK_COMMAND, deadline=deadline)

    def pool_stats(self) -> Optional[PoolStats]:
        if self.pool is None:
            return None
        return self.pool.stats()

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self.pool is not None:
            self.pool.log_stats()
        self.executor.close()
        self.logger.info(f"Client for {self.config.address} closed")
