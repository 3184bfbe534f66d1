"""Prompt detection and output helpers for the RTX command line.

The router has no message framing: the only sign that a command finished
is the prompt being redisplayed, so everything here works on the tail of
a raw byte stream.
"""
import re
from typing import Optional, Tuple, Union

# A longer last line is treated as output, not a prompt
MAX_PROMPT_LENGTH = 100

NORMAL_TERMINATOR = '>'
ELEVATED_TERMINATOR = '#'
COMMENT_MARKER = '#'

SAVE_CONFIRMATION_PHRASES = (
    "save configuration?",
    "設定を保存しますか",
    "save config?",
    "(y/n)",
    "(y/n):",
    "(yes/no)",
    "save changes?",
    "保存しますか",
)

# Generic yes/no questions, e.g. before regenerating the SSH host key
CONFIRMATION_PHRASES = (
    "(y/n)",
    "[y/n]",
    "(yes/no)",
    "(y or n)",
    "よろしいですか",
    "しますか",
    "update?",
    "overwrite?",
    "continue?",
)

AUTH_FAILURE_KEYWORDS = ("incorrect", "failed", "invalid")

BufferLike = Union[bytes, bytearray, str]


def _last_line(buffer: BufferLike) -> str:
    if isinstance(buffer, (bytes, bytearray)):
        start = buffer.rfind(b'\n') + 1
        line = bytes(buffer[start:]).decode('utf-8', errors='replace')
    else:
        line = buffer[buffer.rfind('\n') + 1:]
    return strip_ansi(line)


def _to_text(buffer: BufferLike) -> str:
    if isinstance(buffer, (bytes, bytearray)):
        return bytes(buffer).decode('utf-8', errors='replace')
    return buffer


class PromptDetector:
    """Decide whether a buffer ends in an RTX prompt.

    Normal mode prompts end in ``>`` (``[RTX1210] >``), administrator mode
    prompts in ``#`` (``[RTX1210] # ``), optionally followed by one space.
    Indented lines and ``#`` comments from configuration dumps are rejected.
    """

    terminators = (NORMAL_TERMINATOR, ELEVATED_TERMINATOR)

    def detect(self, buffer: BufferLike) -> Tuple[bool, str]:
        line = _last_line(buffer)
        if not line or len(line) >= MAX_PROMPT_LENGTH:
            return False, ""
        # Configuration dumps: indented sub-commands and "#" comments
        if line[0].isspace() or line.startswith(COMMENT_MARKER):
            return False, ""

        body = line[:-1] if line.endswith(' ') else line
        if body and body[-1] in self.terminators:
            return True, body
        return False, ""

    def is_elevated(self, prompt: str) -> bool:
        return prompt.rstrip().endswith(ELEVATED_TERMINATOR)


class CustomPromptDetector(PromptDetector):
    """Match a fixed, caller-supplied prompt string at the end of the buffer."""

    def __init__(self, pattern: str):
        if not pattern:
            raise ValueError("prompt pattern must not be empty")
        self.pattern = pattern.rstrip(' ')

    def detect(self, buffer: BufferLike) -> Tuple[bool, str]:
        line = _last_line(buffer)
        body = line[:-1] if line.endswith(' ') else line
        if body.endswith(self.pattern):
            return True, self.pattern
        return False, ""


_default_detector = PromptDetector()


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences and stray control characters."""
    # CSI sequences: \x1b[...
    text = re.sub(r"\x1b\[[0-?]*[ -/]*[@-~]", "", text)
    # OSC sequences: \x1b]...(\x07|\x1b\\)
    text = re.sub(r"\x1b\][^\x07]*\x07", "", text)
    text = re.sub(r"\x1b\][^\x1b]*\x1b\\", "", text)
    # Two-byte escapes such as \x1b= or \x1b>
    text = re.sub(r"\x1b[=>78cDEHM]", "", text)
    text = re.sub(r"[\r\x00]", "", text)
    text = re.sub(r"[\x01-\x08\x0b\x0c\x0e-\x1f\x7f]", "", text)
    return text


def is_save_confirmation(buffer: BufferLike) -> bool:
    lower = _to_text(buffer).lower()
    return any(phrase in lower for phrase in SAVE_CONFIRMATION_PHRASES)


def is_confirmation(buffer: BufferLike) -> bool:
    """Match the tail of the buffer against generic yes/no questions."""
    tail = _last_line(buffer).lower()
    return any(phrase in tail for phrase in CONFIRMATION_PHRASES)


def has_auth_failure(response: BufferLike) -> bool:
    lower = _to_text(response).lower()
    return any(keyword in lower for keyword in AUTH_FAILURE_KEYWORDS)


def clean_output(output: BufferLike, command: Optional[str] = None) -> str:
    """Strip the command echo and the trailing prompt from a raw response."""
    text = strip_ansi(_to_text(output))
    lines = text.split('\n')

    if command is not None and lines and lines[0].strip() == command.strip():
        lines = lines[1:]

    if lines:
        last = lines[-1].strip()
        matched, _ = _default_detector.detect(lines[-1])
        if matched or last in ('', NORMAL_TERMINATOR, ELEVATED_TERMINATOR) or last.startswith('['):
            lines = lines[:-1]

    return '\n'.join(lines)
