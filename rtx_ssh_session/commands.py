"""Helpers for code that builds RTX commands on top of an executor.

Executors raise on transport and protocol failures only; these helpers add
device-error checking, retries of transient device errors and polling for
state that the router applies asynchronously.
"""
from typing import Callable, Collection, Optional, Sequence, TypeVar

from .datastructures import Deadline
from .errors import DeviceCommandError, DeviceErrorKind, StateNotConvergedError, classify_device_output
from .logging_manager import get_logger, sanitize_command
from .retry import ExponentialBackoff, RetryStrategy, retry_call

T = TypeVar('T')

SAVE_COMMAND = 'save'

TRANSIENT_KINDS = frozenset({DeviceErrorKind.BUSY, DeviceErrorKind.CONFLICT, DeviceErrorKind.TIMEOUT})


def check_output_error(output, description: str, ignore_not_found: bool = False,
                       command: Optional[str] = None):
    """Raise DeviceCommandError if the output carries a device error marker.

    ``ignore_not_found`` lets idempotent deletes treat "not found" as success.
    """
    kind = classify_device_output(output)
    if kind is None:
        return
    if ignore_not_found and kind == DeviceErrorKind.NOT_FOUND:
        return
    text = output.decode('utf-8', errors='replace') if isinstance(output, bytes) else output
    raise DeviceCommandError(description, text, kind, command)


def run_command(executor, command: str, deadline: Optional[Deadline] = None,
                ignore_not_found: bool = False) -> bytes:
    output = executor.run(command, deadline=deadline)
    check_output_error(output, "command failed", ignore_not_found=ignore_not_found, command=command)
    return output


def run_batch_commands(executor, commands: Sequence[str], deadline: Optional[Deadline] = None) -> bytes:
    if not commands:
        return b""
    return executor.run_batch(commands, deadline=deadline, check=True)


def run_with_retry(executor, command: str, strategy: Optional[RetryStrategy] = None,
                   transient_kinds: Collection[DeviceErrorKind] = TRANSIENT_KINDS,
                   deadline: Optional[Deadline] = None, ignore_not_found: bool = False) -> bytes:
    """Run a checked command, retrying device errors of the given kinds.

    Other device errors and authentication failures are raised at once.
    """
    strategy = strategy or ExponentialBackoff()

    def transient(exc: BaseException) -> bool:
        return isinstance(exc, DeviceCommandError) and exc.kind in transient_kinds

    return retry_call(lambda: run_command(executor, command, deadline, ignore_not_found), strategy,
                      deadline, should_retry=transient,
                      description=f"command {sanitize_command(command)!r}",
                      logger=get_logger('commands'))


def wait_for(fetch: Callable[[], T], predicate: Callable[[T], bool],
             strategy: Optional[RetryStrategy] = None, deadline: Optional[Deadline] = None,
             pending_kinds: Collection[DeviceErrorKind] = (),
             description: str = "device state") -> T:
    """Poll ``fetch`` until ``predicate`` accepts its result.

    Polls are separated by the strategy's delay. Device errors whose kind
    is in ``pending_kinds`` (e.g. NOT_FOUND right after a create) count as
    "not there yet"; any other error ends the wait.
    """
    logger = get_logger('commands').getChild('wait_for')
    strategy = strategy or ExponentialBackoff()
    deadline = deadline or Deadline()
    attempt = 0
    while True:
        deadline.check()
        try:
            value = fetch()
        except DeviceCommandError as exc:
            if exc.kind not in pending_kinds:
                raise
            logger.debug(f"{description}: {exc.kind.value}, still waiting")
        else:
            if predicate(value):
                return value
        delay, give_up = strategy.next(attempt)
        if give_up:
            raise StateNotConvergedError(f"{description} did not converge after {attempt + 1} polls")
        deadline.sleep(delay)
        attempt += 1


def save_config(executor, description: str = "configuration changed", deadline: Optional[Deadline] = None):
    """Persist the running configuration to flash."""
    output = executor.run(SAVE_COMMAND, deadline=deadline)
    check_output_error(output, f"{description} but failed to save configuration", command=SAVE_COMMAND)
