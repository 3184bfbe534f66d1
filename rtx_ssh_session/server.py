"""MCP server exposing one RTX router's command line."""
import threading
from typing import List, Optional

from fastmcp import FastMCP

from .client import RTXClient
from .config import ClientConfig
from .datastructures import Deadline
from .errors import DeviceCommandError, RTXError
from .logging_manager import get_logger, sanitize_command
from .prompt import clean_output

# Initialize the MCP server
mcp = FastMCP("rtx-ssh-session")
logger = get_logger('server')

_client: Optional[RTXClient] = None
_client_lock = threading.Lock()


def get_client() -> RTXClient:
    """Create the device client from RTX_* environment variables on first use."""
    global _client
    with _client_lock:
        if _client is None or _client.closed:
            _client = RTXClient(ClientConfig.from_env())
        return _client


def _format_error(exc: RTXError, partial: bytes = b"") -> str:
    status = type(exc).__name__
    if isinstance(exc, DeviceCommandError):
        status = f"{status} ({exc.kind.value})"
    result = f"Status: error {status}\n\nERROR:\n{exc}\n"
    if partial:
        result += f"PARTIAL OUTPUT:\n{partial.decode('utf-8', errors='replace')}\n"
    return result


@mcp.tool()
def run_command(command: str, timeout: Optional[float] = None, clean: bool = True, check: bool = True) -> str:
    """Run one command on the router and return its output.

    Args:
        command: RTX command line, e.g. "show environment"
        timeout: Overall deadline in seconds (optional)
        clean: Strip the command echo and trailing prompt (default: True)
        check: Report device error messages as errors (default: True)
    """
    logger.info(f"[TOOL] run_command {sanitize_command(command)!r}")
    try:
        output = get_client().run(command, deadline=Deadline(timeout), check=check)
    except RTXError as exc:
        return _format_error(exc)

    text = clean_output(output, command) if clean else output.decode('utf-8', errors='replace')
    return f"Status: ok\n\nOUTPUT:\n{text}\n"


@mcp.tool()
def run_batch(commands: List[str], timeout: Optional[float] = None, check: bool = True) -> str:
    """Run several commands in order on one session, stopping at the first failure.

    Args:
        commands: RTX command lines to run in order
        timeout: Overall deadline in seconds (optional)
        check: Stop on device error messages too (default: True)
    """
    logger.info(f"[TOOL] run_batch with {len(commands)} commands")
    try:
        output = get_client().run_batch(commands, deadline=Deadline(timeout), check=check)
    except RTXError as exc:
        return _format_error(exc, exc.partial_output)
    return f"Status: ok\n\nOUTPUT:\n{output.decode('utf-8', errors='replace')}\n"


@mcp.tool()
def pool_stats() -> str:
    """Show connection pool statistics for the router."""
    stats = get_client().pool_stats()
    if stats is None:
        return "Connection pooling is disabled"
    return (
        "Connection Pool:\n"
        f"- total created: {stats.total_created}\n"
        f"- in use: {stats.in_use}\n"
        f"- available: {stats.available}\n"
        f"- max sessions: {stats.max_sessions}\n"
        f"- total acquisitions: {stats.total_acquisitions}\n"
        f"- wait count: {stats.wait_count}"
    )


@mcp.tool()
def close_client() -> str:
    """Close all sessions to the router. The next command reconnects."""
    global _client
    with _client_lock:
        client, _client = _client, None
    if client is None:
        return "No active client"
    client.close()
    return "Client closed"


def main():
    mcp.run()


if __name__ == "__main__":
    main()
