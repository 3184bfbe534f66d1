"""Interactive RTX shell session over a paramiko PTY channel."""
import queue
import socket
import threading
import time
from typing import Any, Callable, Optional, Sequence, Tuple

import paramiko

from .datastructures import CommandResult, Deadline, SessionState
from .errors import (AuthenticationError, OperationCancelledError, ProtocolError, PromptNotFoundError,
                     RTXError, TransportError)
from .logging_manager import get_logger, sanitize_command
from .prompt import (PromptDetector, has_auth_failure, is_confirmation, is_save_confirmation)

Matcher = Callable[[bytearray], bool]


class _ByteReader(threading.Thread):
    """Performs the blocking channel read for one wait operation.

    Bytes (or the read error) are pushed one at a time onto a single-slot
    queue. When stopped while holding a byte it could not deliver, the byte
    is kept in ``leftover`` so the session can carry it over in order.
    """

    def __init__(self, channel: Any, poll_interval: float, name: str):
        super().__init__(name=name, daemon=True)
        self.queue: 'queue.Queue[Any]' = queue.Queue(maxsize=1)
        self.leftover = b""
        self._channel = channel
        self._poll_interval = poll_interval
        self._halt = threading.Event()

    def halt(self):
        self._halt.set()

    def run(self):
        while not self._halt.is_set():
            try:
                data = self._channel.recv(1)
            except socket.timeout:
                continue
            except Exception as exc:
                self._deliver(exc)
                return
            if not data:
                self._deliver(TransportError("channel closed by device"))
                return
            if not self._deliver(data):
                self.leftover = data
                return

    def _deliver(self, item: Any) -> bool:
        while not self._halt.is_set():
            try:
                self.queue.put(item, timeout=self._poll_interval)
                return True
            except queue.Full:
                continue
        return False


class InteractiveSession:
    """One PTY-backed shell on an RTX router.

    Only one command may be in flight at a time; ``send``, the interactive
    flows and ``close`` all serialize on the session guard. The raw wait
    primitives (``read_until_*``) expect the caller to hold the session.
    """

    TERM = 'vt100'
    PTY_WIDTH = 512
    PTY_HEIGHT = 40
    LINE_TERMINATOR = '\r'

    EXIT_COMMAND = 'exit'
    ELEVATE_COMMAND = 'administrator'
    PASSWORD_PROMPT = 'Password:'
    SETUP_COMMANDS = ('console character en.ascii', 'console lines infinity')

    # Timeouts (seconds)
    INITIAL_PROMPT_TIMEOUT = 10
    SETUP_COMMAND_TIMEOUT = 5
    RESYNC_TIMEOUT = 3
    ELEVATION_TIMEOUT = 10
    INTERACTIVE_STEP_TIMEOUT = 10
    EXIT_PROMPT_TIMEOUT = 5
    SAVE_PROMPT_TIMEOUT = 3
    # Answering Y writes the configuration to flash first
    SAVE_COMPLETE_TIMEOUT = 60
    WRITE_TIMEOUT = 10
    READER_JOIN_TIMEOUT = 5

    DEFAULT_COMMAND_TIMEOUT = 15
    STATUS_COMMAND_TIMEOUT = 30
    BULK_COMMAND_TIMEOUT = 120
    KEYGEN_TIMEOUT = 600

    # Pauses during the exit sequence
    EXIT_SETTLE_DELAY = 0.5
    CLOSE_SETTLE_DELAY = 0.3

    READ_POLL_INTERVAL = 0.1

    STATUS_COMMAND_PREFIXES = ('show status', 'show environment')
    BULK_COMMAND_PREFIXES = ('show config', 'show file configuration', 'show log', 'show running')
    KEYGEN_COMMAND_PREFIXES = ('sshd host key generate',)

    def __init__(self, client: Optional[paramiko.SSHClient] = None, channel: Any = None,
                 prompt_detector: Optional[PromptDetector] = None, save_on_exit: bool = True,
                 name: str = 'rtx'):
        self.client = client
        self.name = name
        self.prompt_detector = prompt_detector or PromptDetector()
        self.save_on_exit = save_on_exit
        self.administrator_mode = False
        self.state = SessionState.CONNECTING
        self.last_prompt = ''
        self.logger = get_logger('session')
        self._channel = channel
        self._lock = threading.Lock()
        self._carry = bytearray()
        self._desynchronized = False
        self._reader_count = 0

    @classmethod
    def open(cls, client: paramiko.SSHClient, prompt_detector: Optional[PromptDetector] = None,
             save_on_exit: bool = True, name: str = 'rtx',
             deadline: Optional[Deadline] = None) -> 'InteractiveSession':
        """Request a PTY shell on a connected client and wait for the first prompt."""
        session = cls(client, prompt_detector=prompt_detector, save_on_exit=save_on_exit, name=name)
        session.start(deadline)
        return session

    @property
    def usable(self) -> bool:
        return self.state == SessionState.READY and not self._desynchronized

    @property
    def desynchronized(self) -> bool:
        return self._desynchronized

    @classmethod
    def command_timeout(cls, command: str) -> int:
        lower = command.strip().lower()
        if lower.startswith(cls.KEYGEN_COMMAND_PREFIXES):
            return cls.KEYGEN_TIMEOUT
        if lower.startswith(cls.BULK_COMMAND_PREFIXES):
            return cls.BULK_COMMAND_TIMEOUT
        if lower.startswith(cls.STATUS_COMMAND_PREFIXES):
            return cls.STATUS_COMMAND_TIMEOUT
        return cls.DEFAULT_COMMAND_TIMEOUT

    # ----------------------------------------------------------------- lifecycle

    def start(self, deadline: Optional[Deadline] = None):
        logger = self.logger.getChild('start')
        with self._lock:
            if self._channel is None:
                if self.client is None:
                    raise TransportError("no SSH client to open a shell on")
                logger.debug(f"[SHELL_CREATE] Requesting {self.TERM} PTY for {self.name}")
                try:
                    self._channel = self.client.invoke_shell(term=self.TERM, width=self.PTY_WIDTH,
                                                             height=self.PTY_HEIGHT)
                except (paramiko.SSHException, OSError) as exc:
                    self._abort()
                    raise TransportError(f"failed to start shell: {exc}") from exc
            self.state = SessionState.AWAITING_INITIAL_PROMPT

            try:
                banner = self._read_until(self._prompt_matcher(), self.INITIAL_PROMPT_TIMEOUT, deadline,
                                          'initial prompt', PromptNotFoundError)
            except ProtocolError:
                logger.error(f"[SHELL_CREATE] No initial prompt from {self.name}")
                self._abort()
                raise
            _, self.last_prompt = self.prompt_detector.detect(banner)
            self.administrator_mode = self.prompt_detector.is_elevated(self.last_prompt)
            self.state = SessionState.READY
            logger.debug(f"[SHELL_CREATE] Initial prompt {self.last_prompt!r} on {self.name}")

            for command in self.SETUP_COMMANDS:
                self._run_setup_command(command, deadline)
            if self._desynchronized:
                self._abort()
                raise ProtocolError(f"session {self.name} did not return to a prompt after setup")

        logger.info(f"[SHELL_READY] Session {self.name} is ready")

    def _run_setup_command(self, command: str, deadline: Optional[Deadline]):
        logger = self.logger.getChild('setup')
        result = self._exchange(command, self.SETUP_COMMAND_TIMEOUT, deadline)
        if result.prompt_found:
            return
        logger.warning(f"Setup command {command!r} got no prompt on {self.name}, resynchronizing")
        self._carry.clear()
        self._desynchronized = False
        try:
            self._write(self.LINE_TERMINATOR)
            self._read_until(self._prompt_matcher(), self.RESYNC_TIMEOUT, deadline, 'prompt',
                             PromptNotFoundError)
        except ProtocolError as exc:
            logger.warning(f"Resynchronization failed on {self.name}: {exc}")

    def close(self):
        """Leave administrator mode (answering any save prompt), exit the shell and close."""
        logger = self.logger.getChild('close')
        with self._lock:
            if self.state in (SessionState.CLOSING, SessionState.CLOSED):
                return
            if not self.usable:
                logger.debug(f"Session {self.name} is not usable, closing without exit sequence")
                self._abort()
                return

            self.state = SessionState.CLOSING
            try:
                if self.administrator_mode:
                    self._exit_administrator_mode()
                    time.sleep(self.EXIT_SETTLE_DELAY)
                self._write(self.EXIT_COMMAND + self.LINE_TERMINATOR)
                time.sleep(self.CLOSE_SETTLE_DELAY)
            except RTXError as exc:
                logger.warning(f"Error during exit sequence on {self.name}: {exc}")
            finally:
                self._abort()
        logger.info(f"Session {self.name} closed")

    def _exit_administrator_mode(self):
        logger = self.logger.getChild('close')
        self._write(self.EXIT_COMMAND + self.LINE_TERMINATOR)
        response = self.read_until_prompt_or_save_confirmation(self.EXIT_PROMPT_TIMEOUT)
        if is_save_confirmation(response):
            answer = 'Y' if self.save_on_exit else 'N'
            logger.info(f"Save confirmation on {self.name}, answering {answer}")
            self._write(answer + self.LINE_TERMINATOR)
            self.read_until_prompt(self.SAVE_COMPLETE_TIMEOUT if self.save_on_exit else self.SAVE_PROMPT_TIMEOUT)
        self.administrator_mode = False

    def _abort(self):
        """Close the channel and connection without any exit sequence."""
        self.state = SessionState.CLOSED
        self._carry.clear()
        if self._channel is not None:
            try:
                self._channel.close()
            except Exception as exc:
                self.logger.warning(f"Error closing channel for {self.name}: {exc}")
        if self.client is not None:
            try:
                self.client.close()
            except Exception as exc:
                self.logger.warning(f"Error closing client for {self.name}: {exc}")

    # ------------------------------------------------------------------ commands

    def send(self, command: str, timeout: Optional[float] = None,
             deadline: Optional[Deadline] = None) -> CommandResult:
        """Send one command and read until the prompt comes back.

        A prompt timeout is reported through ``CommandResult.prompt_found``
        and leaves the session desynchronized.
        """
        with self._lock:
            self._ensure_ready()
            return self._exchange(command, timeout or self.command_timeout(command), deadline)

    def _exchange(self, command: str, timeout: float, deadline: Optional[Deadline]) -> CommandResult:
        logger = self.logger.getChild('send')
        logger.debug(f"[SEND] {self.name}: {sanitize_command(command)!r} (timeout={timeout}s)")
        self._write(command + self.LINE_TERMINATOR)
        try:
            output = self._read_until(self._prompt_matcher(command), timeout, deadline, 'prompt',
                                      PromptNotFoundError)
        except PromptNotFoundError as exc:
            logger.warning(f"[SEND] No prompt within {timeout}s on {self.name} "
                           f"for {sanitize_command(command)!r}")
            return CommandResult(exc.output, False, '')
        _, prompt = self.prompt_detector.detect(output)
        self.last_prompt = prompt
        return CommandResult(output, True, prompt)

    def enter_administrator_mode(self, password: str, deadline: Optional[Deadline] = None):
        """Elevate to administrator mode.

        Raises AuthenticationError when the device rejects the password or
        does not show the administrator prompt afterwards.
        """
        logger = self.logger.getChild('administrator')
        with self._lock:
            self._ensure_ready()
            if self.administrator_mode:
                logger.debug(f"Session {self.name} already in administrator mode")
                return

            logger.info(f"Entering administrator mode on {self.name}")
            self._write(self.ELEVATE_COMMAND + self.LINE_TERMINATOR)
            password_prompt = self.PASSWORD_PROMPT.encode()
            prompt_seen = self._prompt_matcher(self.ELEVATE_COMMAND)
            response = self._read_until(lambda buf: buf.endswith(password_prompt) or prompt_seen(buf),
                                        self.ELEVATION_TIMEOUT, deadline, 'password prompt', ProtocolError)

            if not response.endswith(password_prompt):
                # No password configured on the device
                self._finish_elevation(response)
                return

            self._write(password + self.LINE_TERMINATOR)
            response = self._read_until(
                lambda buf: buf.endswith(password_prompt) or self.prompt_detector.detect(buf)[0],
                self.ELEVATION_TIMEOUT, deadline, 'administrator prompt', PromptNotFoundError)
            if response.endswith(password_prompt):
                # The device asks again; the shell is stuck in its password dialog
                self._desynchronized = True
                raise AuthenticationError("administrator authentication failed: password rejected")
            self._finish_elevation(response)

    def _finish_elevation(self, response: bytes):
        text = response.decode('utf-8', errors='replace')
        if has_auth_failure(text):
            raise AuthenticationError(f"administrator authentication failed: {text.strip()}")
        _, prompt = self.prompt_detector.detect(response)
        if not self.prompt_detector.is_elevated(prompt):
            raise AuthenticationError(
                f"administrator authentication failed: did not get administrator prompt, got {prompt!r}")
        self.last_prompt = prompt
        self.administrator_mode = True
        self.logger.getChild('administrator').info(f"Session {self.name} is in administrator mode")

    def send_interactive(self, command: str, steps: Sequence[Tuple[str, str]],
                         timeout: Optional[float] = None,
                         deadline: Optional[Deadline] = None) -> bytes:
        """Drive an expect/respond dialog, e.g. ``Old_Password:`` then ``New_Password:`` twice.

        Each step waits for its fixed prompt and answers it. Returns the
        response read after the last answer, up to the next prompt. If the
        device shows its command prompt instead of a step prompt (e.g. after
        rejecting an old password) the dialog is over and that response is
        returned.
        """
        logger = self.logger.getChild('interactive')
        with self._lock:
            self._ensure_ready()
            logger.debug(f"[INTERACTIVE] {self.name}: {sanitize_command(command)!r} with {len(steps)} steps")
            self._write(command + self.LINE_TERMINATOR)
            prompt_seen = self._prompt_matcher(command)
            for expected, answer in steps:
                encoded = expected.encode('utf-8')
                response = self._read_until(lambda buf: buf.endswith(encoded) or prompt_seen(buf),
                                            self.INTERACTIVE_STEP_TIMEOUT, deadline, repr(expected),
                                            ProtocolError)
                if not response.endswith(encoded):
                    logger.warning(f"[INTERACTIVE] Dialog ended before {expected!r} on {self.name}")
                    return response
                logger.debug(f"[INTERACTIVE] {expected!r} received")
                self._write(answer + self.LINE_TERMINATOR)
                prompt_seen = self._prompt_matcher()
            return self.read_until_prompt(timeout or self.INTERACTIVE_STEP_TIMEOUT, deadline)

    def send_with_confirmation(self, command: str, answer: str = 'y', timeout: Optional[float] = None,
                               deadline: Optional[Deadline] = None) -> CommandResult:
        """Send a command that may ask a yes/no question before completing."""
        logger = self.logger.getChild('confirm')
        timeout = timeout or self.command_timeout(command)
        with self._lock:
            self._ensure_ready()
            self._write(command + self.LINE_TERMINATOR)
            prompt_seen = self._prompt_matcher(command)
            try:
                output = self._read_until(lambda buf: prompt_seen(buf) or is_confirmation(buf), timeout,
                                          deadline, 'prompt or confirmation', PromptNotFoundError)
                if not prompt_seen(bytearray(output)):
                    logger.info(f"Confirmation requested by {sanitize_command(command)!r}, answering {answer!r}")
                    self._write(answer + self.LINE_TERMINATOR)
                    output += self.read_until_prompt(timeout, deadline)
            except PromptNotFoundError as exc:
                return CommandResult(exc.output, False, '')
            _, prompt = self.prompt_detector.detect(output)
            self.last_prompt = prompt
            return CommandResult(output, True, prompt)

    # ------------------------------------------------------------ wait primitives

    def read_until_prompt(self, timeout: float, deadline: Optional[Deadline] = None) -> bytes:
        return self._read_until(self._prompt_matcher(), timeout, deadline, 'prompt', PromptNotFoundError)

    def read_until_string(self, target: str, timeout: float, deadline: Optional[Deadline] = None) -> bytes:
        encoded = target.encode('utf-8')
        return self._read_until(lambda buf: buf.endswith(encoded), timeout, deadline, repr(target),
                                ProtocolError)

    def read_until_prompt_or_save_confirmation(self, timeout: float,
                                               deadline: Optional[Deadline] = None) -> bytes:
        prompt_seen = self._prompt_matcher()
        return self._read_until(lambda buf: is_save_confirmation(buf) or prompt_seen(buf), timeout,
                                deadline, 'prompt or save confirmation', ProtocolError)

    def read_until_prompt_or_confirmation(self, timeout: float,
                                          deadline: Optional[Deadline] = None) -> bytes:
        prompt_seen = self._prompt_matcher()
        return self._read_until(lambda buf: is_confirmation(buf) or prompt_seen(buf), timeout,
                                deadline, 'prompt or confirmation', ProtocolError)

    # ----------------------------------------------------------------- internals

    def _ensure_ready(self):
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            raise TransportError(f"session {self.name} is closed")
        if self._desynchronized:
            raise ProtocolError(f"session {self.name} lost synchronization with the device")
        if self.state != SessionState.READY:
            raise ProtocolError(f"session {self.name} is not ready ({self.state.value})")

    def _prompt_matcher(self, command: Optional[str] = None) -> Matcher:
        """Prompt matcher that ignores the device's echo of ``command`` while it is being typed."""
        echo = command.encode('utf-8') if command else b''

        def matcher(buf: bytearray) -> bool:
            if echo and b'\n' not in buf and echo.startswith(bytes(buf).rstrip(b'\r')):
                return False
            return self.prompt_detector.detect(buf)[0]
        return matcher

    def _write(self, data: str):
        if self._channel is None or self.state == SessionState.CLOSED:
            raise TransportError(f"session {self.name} is closed")
        # Padding after a matched prompt, e.g. the space in "[RTX1210] > "
        if self._carry and not self._carry.strip():
            self._carry.clear()
        try:
            self._channel.settimeout(self.WRITE_TIMEOUT)
            self._channel.sendall(data.encode('utf-8'))
        except (OSError, paramiko.SSHException) as exc:
            self._abort()
            raise TransportError(f"write to {self.name} failed: {exc}") from exc

    def _read_until(self, matcher: Matcher, timeout: float, deadline: Optional[Deadline],
                    description: str, timeout_error: type) -> bytes:
        """Read byte by byte until ``matcher`` accepts the buffer.

        Bytes left over from a previous read are consumed first. Caller
        cancellation or a transport error closes the session; running out
        of ``timeout`` raises ``timeout_error`` and marks it desynchronized.
        """
        if self._channel is None or self.state == SessionState.CLOSED:
            raise TransportError(f"session {self.name} is closed")

        buffer = bytearray()
        for index in range(len(self._carry)):
            buffer.append(self._carry[index])
            if matcher(buffer):
                del self._carry[:index + 1]
                return bytes(buffer)
        self._carry.clear()

        reader = self._start_reader()
        try:
            return self._wait_for(reader, buffer, matcher, timeout, deadline, description, timeout_error)
        except (TransportError, OperationCancelledError):
            self._stop_reader(reader)
            self._abort()
            raise
        except ProtocolError:
            self._desynchronized = True
            raise
        finally:
            self._stop_reader(reader)

    def _wait_for(self, reader: _ByteReader, buffer: bytearray, matcher: Matcher, timeout: float,
                  deadline: Optional[Deadline], description: str, timeout_error: type) -> bytes:
        expires_at = time.monotonic() + timeout
        while True:
            if deadline is not None:
                deadline.check()
            remaining = expires_at - time.monotonic()
            if remaining <= 0:
                raise timeout_error(f"timed out after {timeout}s waiting for {description} on {self.name}",
                                    bytes(buffer))
            try:
                item = reader.queue.get(timeout=min(remaining, self.READ_POLL_INTERVAL))
            except queue.Empty:
                continue
            if isinstance(item, TransportError):
                raise item
            if isinstance(item, BaseException):
                raise TransportError(f"read from {self.name} failed: {item}") from item
            buffer += item
            if matcher(buffer):
                return bytes(buffer)

    def _start_reader(self) -> _ByteReader:
        self._reader_count += 1
        self._channel.settimeout(self.READ_POLL_INTERVAL)
        reader = _ByteReader(self._channel, self.READ_POLL_INTERVAL,
                             name=f"rtx-reader-{self.name}-{self._reader_count}")
        reader.start()
        return reader

    def _stop_reader(self, reader: _ByteReader):
        """Stop the reader and carry its undelivered bytes over to the next read."""
        if not reader.is_alive() and reader.queue.empty() and not reader.leftover:
            return
        reader.halt()
        reader.join(self.READER_JOIN_TIMEOUT)
        if reader.is_alive():
            # Another read would race this one for bytes
            self.logger.error(f"Reader thread for {self.name} did not stop, marking session unusable")
            self._desynchronized = True
            return
        try:
            item = reader.queue.get_nowait()
        except queue.Empty:
            item = None
        if isinstance(item, bytes):
            self._carry += item
        self._carry += reader.leftover
        reader.leftover = b""
