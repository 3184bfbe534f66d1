"""Error taxonomy for RTX session management.

Device output is classified once, where the text is inspected, into a
tagged ``DeviceErrorKind``; callers branch on the kind instead of
re-matching substrings.
"""
from enum import Enum
from typing import Optional


class DeviceErrorKind(Enum):
    GENERIC = "generic"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    INVALID_PARAMETER = "invalid_parameter"
    BUSY = "busy"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"


class RTXError(Exception):
    """Base class for all errors raised by this package."""

    # Output collected before a batch failed
    partial_output = b""


class TransportError(RTXError):
    """Dial failure, write failure or closed stream. Fatal to the session."""


class DialError(TransportError):
    pass


class HostKeyMismatchError(TransportError):
    pass


class ProtocolError(RTXError):
    """The session has probably lost synchronization with the device."""

    def __init__(self, message: str, output: bytes = b""):
        super().__init__(message)
        self.output = output


class PromptNotFoundError(ProtocolError):
    """No recognizable prompt arrived before the command timeout."""


class AuthenticationError(RTXError):
    """Login or administrator elevation was rejected."""


class ConfigurationError(RTXError):
    pass


class PoolExhaustedError(RTXError):
    """No session became available before the acquisition deadline."""


class PoolClosedError(RTXError):
    pass


class OperationCancelledError(RTXError):
    """The caller cancelled the operation. Bytes already sent are not un-sent."""


class OperationTimeoutError(OperationCancelledError):
    """The caller-supplied deadline elapsed."""


class DeviceCommandError(RTXError):
    """The device reported a command failure in its output."""

    def __init__(self, description: str, output: str, kind: DeviceErrorKind = DeviceErrorKind.GENERIC,
                 command: Optional[str] = None):
        super().__init__(f"{description}: {output.strip()}")
        self.description = description
        self.output = output
        self.kind = kind
        self.command = command


class StateNotConvergedError(RTXError):
    """Polling gave up before the device reported the expected state."""


class RetryableError(RTXError):
    """Wraps an error the caller has explicitly flagged as transient."""

    def __init__(self, cause: BaseException):
        super().__init__(str(cause))
        self.cause = cause


# Markers that map straight to a kind, checked in order
_KIND_MARKERS = (
    ("already exists", DeviceErrorKind.ALREADY_EXISTS),
    ("既に存在", DeviceErrorKind.ALREADY_EXISTS),
    ("not found", DeviceErrorKind.NOT_FOUND),
    ("見つかりません", DeviceErrorKind.NOT_FOUND),
    ("permission denied", DeviceErrorKind.PERMISSION_DENIED),
    ("invalid parameter", DeviceErrorKind.INVALID_PARAMETER),
    ("connection timeout", DeviceErrorKind.TIMEOUT),
)

_GENERIC_MARKERS = ("error:", "% error:", "command failed:", "エラー")

# Refinements applied only once a generic marker has matched
_REFINEMENTS = (
    ("busy", DeviceErrorKind.BUSY),
    ("conflict", DeviceErrorKind.CONFLICT),
    ("timed out", DeviceErrorKind.TIMEOUT),
    ("timeout", DeviceErrorKind.TIMEOUT),
    ("パラメータ", DeviceErrorKind.INVALID_PARAMETER),
)


def classify_device_output(output) -> Optional[DeviceErrorKind]:
    """Return the error kind reported in device output, or None if it looks clean."""
    if not output:
        return None
    if isinstance(output, bytes):
        output = output.decode('utf-8', errors='replace')
    lower = output.lower()

    for marker, kind in _KIND_MARKERS:
        if marker in lower:
            return kind

    if not any(marker in lower for marker in _GENERIC_MARKERS):
        return None

    for marker, kind in _REFINEMENTS:
        if marker in lower:
            return kind
    return DeviceErrorKind.GENERIC


def is_retryable(exc: BaseException) -> bool:
    """Transport failures, prompt timeouts and explicitly flagged errors are retryable.

    A host key mismatch is a transport failure that another dial cannot fix.
    """
    if isinstance(exc, HostKeyMismatchError):
        return False
    return isinstance(exc, (TransportError, PromptNotFoundError, RetryableError))
