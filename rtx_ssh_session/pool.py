"""Bounded pool of reusable, possibly broken, device sessions.

The pool is generic over the resource: it is given a factory that dials a
new resource and a closer that tears one down. The router accepts only a
few concurrent shells, so the pool never has more than ``max_sessions``
live resources, counting the ones still being dialed or closed.
"""
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from .datastructures import Deadline, PoolStats
from .errors import OperationCancelledError, PoolClosedError, PoolExhaustedError
from .logging_manager import get_logger


class PooledSession:
    """A pooled resource plus bookkeeping. Owned by the pool, lent to one caller at a time."""

    def __init__(self, resource: Any, pool_id: str):
        self.resource = resource
        self.pool_id = pool_id
        self.created_at = time.monotonic()
        self.last_used = self.created_at
        self.use_count = 0
        self.initialized = False

    @property
    def administrator_mode(self) -> bool:
        return bool(getattr(self.resource, 'administrator_mode', False))

    def idle_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self.last_used

    def __repr__(self):
        return f"PooledSession({self.pool_id}, uses={self.use_count})"


def _close_resource(resource: Any):
    resource.close()


def _resource_usable(resource: Any) -> bool:
    return bool(getattr(resource, 'usable', True))


class ConnectionPool:
    """Blocking, bounded pool with idle reclamation."""

    DEFAULT_MAX_SESSIONS = 2
    DEFAULT_IDLE_TIMEOUT = 300
    DEFAULT_ACQUIRE_TIMEOUT = 30
    DEFAULT_IDLE_CHECK_INTERVAL = 60

    # Waiters re-check cancellation at this granularity
    WAIT_SLICE = 0.1
    SWEEPER_JOIN_TIMEOUT = 5

    def __init__(self, factory: Callable[[Deadline], Any],
                 closer: Callable[[Any], None] = _close_resource,
                 max_sessions: int = DEFAULT_MAX_SESSIONS,
                 idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
                 acquire_timeout: float = DEFAULT_ACQUIRE_TIMEOUT,
                 idle_check_interval: float = DEFAULT_IDLE_CHECK_INTERVAL,
                 idle_cleanup: bool = True,
                 is_usable: Callable[[Any], bool] = _resource_usable,
                 id_prefix: str = 'ssh-conn'):
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self._factory = factory
        self._closer = closer
        self._is_usable = is_usable
        self.max_sessions = max_sessions
        self.idle_timeout = idle_timeout
        self.acquire_timeout = acquire_timeout
        self.idle_check_interval = idle_check_interval
        self.id_prefix = id_prefix

        self._cond = threading.Condition()
        self._available: List[PooledSession] = []
        self._in_use: Dict[str, PooledSession] = {}
        self._pending_creations = 0
        self._pending_closes = 0
        self._closed = False
        self._closed_event = threading.Event()

        self._next_id = 0
        self._total_created = 0
        self._total_acquisitions = 0
        self._wait_count = 0

        self.logger = get_logger('pool')
        self._sweeper: Optional[threading.Thread] = None
        if idle_cleanup:
            self._sweeper = threading.Thread(target=self._sweep_loop, name='rtx-pool-sweeper', daemon=True)
            self._sweeper.start()

        self.logger.debug(f"Pool created: max_sessions={max_sessions}, idle_timeout={idle_timeout}s, "
                          f"acquire_timeout={acquire_timeout}s, idle_cleanup={idle_cleanup}")

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self, deadline: Optional[Deadline] = None) -> PooledSession:
        """Lend out an available session, dialing a new one while under capacity.

        Blocks while the pool is at capacity, until a session is released or
        discarded. Raises PoolExhaustedError when the tighter of the
        acquire timeout and the caller's deadline passes first.
        """
        logger = self.logger.getChild('acquire')
        wait_deadline = (deadline or Deadline()).child(self.acquire_timeout)
        waited = False

        while True:
            stale: Optional[PooledSession] = None
            with self._cond:
                while True:
                    if self._closed:
                        raise PoolClosedError("connection pool is closed")
                    if wait_deadline.cancelled:
                        raise OperationCancelledError("acquisition cancelled")

                    if self._available:
                        pooled = self._available.pop()
                        if self._is_usable(pooled.resource):
                            self._check_out(pooled)
                            logger.debug(f"Reusing {pooled.pool_id} (uses={pooled.use_count}, "
                                         f"admin={pooled.administrator_mode})")
                            return pooled
                        self._pending_closes += 1
                        stale = pooled
                        break

                    if self._live_count() < self.max_sessions:
                        self._pending_creations += 1
                        self._next_id += 1
                        pool_id = f"{self.id_prefix}-{self._next_id}"
                        break

                    if not waited:
                        waited = True
                        self._wait_count += 1
                        logger.debug(f"Pool at capacity ({self.max_sessions}), waiting")
                    remaining = wait_deadline.remaining()
                    if remaining <= 0:
                        logger.warning(f"Timed out waiting for a session (max_sessions={self.max_sessions})")
                        raise PoolExhaustedError(
                            f"no session available within {self.acquire_timeout}s "
                            f"(max_sessions={self.max_sessions})")
                    self._cond.wait(min(remaining, self.WAIT_SLICE))

            if stale is None:
                return self._create(pool_id, wait_deadline)
            logger.info(f"Dropping unusable session {stale.pool_id}")
            self._close_pending(stale)

    def _live_count(self) -> int:
        """In-use sessions plus slots held by dials and closes in progress."""
        return len(self._in_use) + self._pending_creations + self._pending_closes

    def _create(self, pool_id: str, deadline: Deadline) -> PooledSession:
        """Dial outside the lock; the pending slot keeps the capacity reserved."""
        logger = self.logger.getChild('create')
        logger.info(f"Creating session {pool_id}")
        try:
            resource = self._factory(deadline)
        except BaseException as exc:
            logger.error(f"Failed to create session {pool_id}: {type(exc).__name__}: {exc}")
            with self._cond:
                self._pending_creations -= 1
                self._cond.notify()
            raise

        pooled = PooledSession(resource, pool_id)
        with self._cond:
            self._pending_creations -= 1
            self._total_created += 1
            closed = self._closed
            if not closed:
                self._check_out(pooled)
        if closed:
            self._close(pooled)
            raise PoolClosedError("connection pool closed while dialing")
        logger.info(f"Created session {pool_id} (total_created={self._total_created})")
        return pooled

    def _check_out(self, pooled: PooledSession):
        pooled.use_count += 1
        pooled.last_used = time.monotonic()
        pooled.initialized = True
        self._in_use[pooled.pool_id] = pooled
        self._total_acquisitions += 1

    def release(self, pooled: PooledSession):
        """Return a session for reuse. Administrator mode and use count are preserved."""
        logger = self.logger.getChild('release')
        with self._cond:
            if self._in_use.get(pooled.pool_id) is not pooled:
                logger.warning(f"Release of unknown session {pooled.pool_id}, ignoring")
                return
            del self._in_use[pooled.pool_id]
            pooled.last_used = time.monotonic()

            if self._closed or not self._is_usable(pooled.resource):
                if not self._closed:
                    logger.info(f"Released session {pooled.pool_id} is unusable, discarding")
                self._pending_closes += 1
                to_close = pooled
            else:
                to_close = None
                self._available.append(pooled)
                self._cond.notify()
                logger.debug(f"Released {pooled.pool_id} (available={len(self._available)}, "
                             f"in_use={len(self._in_use)})")
        if to_close is not None:
            self._close_pending(to_close)

    def discard(self, pooled: PooledSession):
        """Drop a broken session: never returned to the pool, always closed."""
        logger = self.logger.getChild('discard')
        with self._cond:
            if self._in_use.get(pooled.pool_id) is pooled:
                del self._in_use[pooled.pool_id]
            else:
                logger.warning(f"Discard of session {pooled.pool_id} not marked in use")
            if pooled in self._available:
                self._available.remove(pooled)
            self._pending_closes += 1
        logger.info(f"Discarding session {pooled.pool_id} after {pooled.use_count} uses, "
                    f"{time.monotonic() - pooled.created_at:.0f}s old")
        self._close_pending(pooled)

    def sweep_idle(self) -> int:
        """Close available sessions idle longer than ``idle_timeout``, keeping at least one."""
        logger = self.logger.getChild('sweep')
        now = time.monotonic()
        to_close: List[PooledSession] = []
        with self._cond:
            if self._closed or len(self._available) <= 1:
                return 0
            newest_first = sorted(self._available, key=lambda p: p.last_used, reverse=True)
            survivors = newest_first[:1]
            for pooled in newest_first[1:]:
                if pooled.idle_seconds(now) > self.idle_timeout:
                    to_close.append(pooled)
                else:
                    survivors.append(pooled)
            # acquire pops from the end: most recently used last
            self._available = sorted(survivors, key=lambda p: p.last_used)
            self._pending_closes += len(to_close)

        for pooled in to_close:
            logger.info(f"Closing idle session {pooled.pool_id} (idle {pooled.idle_seconds(now):.0f}s)")
            self._close_pending(pooled)
        return len(to_close)

    def _sweep_loop(self):
        logger = self.logger.getChild('sweep')
        while not self._closed_event.wait(self.idle_check_interval):
            try:
                closed = self.sweep_idle()
                if closed:
                    self.log_stats()
            except Exception as exc:
                logger.error(f"Idle sweep failed: {exc}", exc_info=True)
        logger.debug("Idle sweeper stopped")

    def close(self):
        """Close available sessions now; in-use sessions are closed when released."""
        logger = self.logger.getChild('close')
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._closed_event.set()
            to_close = self._available
            self._available = []
            in_use = len(self._in_use)
            self._cond.notify_all()

        logger.info(f"Closing pool: {len(to_close)} available, {in_use} still in use")
        for pooled in to_close:
            self._close(pooled)
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(self.SWEEPER_JOIN_TIMEOUT)

    def _close(self, pooled: PooledSession):
        try:
            self._closer(pooled.resource)
        except Exception as exc:
            self.logger.warning(f"Error closing session {pooled.pool_id}: {exc}")

    def _close_pending(self, pooled: PooledSession):
        """Close a session whose slot is held in ``_pending_closes``, then free the slot."""
        try:
            self._close(pooled)
        finally:
            with self._cond:
                self._pending_closes -= 1
                self._cond.notify()

    def stats(self) -> PoolStats:
        with self._cond:
            return PoolStats(
                total_created=self._total_created,
                in_use=len(self._in_use),
                available=len(self._available),
                max_sessions=self.max_sessions,
                total_acquisitions=self._total_acquisitions,
                wait_count=self._wait_count,
            )

    def log_stats(self):
        stats = self.stats()
        self.logger.getChild('stats').info(
            f"[POOL_STATS] total_created={stats.total_created}, in_use={stats.in_use}, "
            f"available={stats.available}, max_sessions={stats.max_sessions}, "
            f"total_acquisitions={stats.total_acquisitions}, wait_count={stats.wait_count}")
