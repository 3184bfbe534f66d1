"""Interactive CLI session engine for Yamaha RTX routers over SSH."""
from .client import RTXClient
from .config import ClientConfig
from .datastructures import CommandResult, Deadline, PoolStats
from .prompt import CustomPromptDetector, PromptDetector
from .retry import ExponentialBackoff, LinearBackoff, NoRetry

__version__ = "0.1.0"

__all__ = [
    'ClientConfig',
    'CommandResult',
    'CustomPromptDetector',
    'Deadline',
    'ExponentialBackoff',
    'LinearBackoff',
    'NoRetry',
    'PoolStats',
    'PromptDetector',
    'RTXClient',
]
