"""baler: durable, strictly sequential job chains."""

from .builder import ChainBuilder
from .callbacks import CALLBACKS, CallbackRegistry, register_callback
from .engine import AdvanceResult, ChainEngine
from .errors import (
    BalerError,
    CallbackNotRegisteredError,
    ChainNotFoundError,
    ConfigurationError,
    StaleSignalError,
)
from .jobs import StackableJob
from .middleware import CheckAttempts, CheckFinished, IncrementAttempts, Middleware
from .models import Chain, ChainStatus, Step, StepMessage
from .persistence import get_repository
from .transports import TransportPool, get_transport
from .worker import StepWorker

__version__ = "0.1.0"
__all__ = [
    "AdvanceResult",
    "BalerError",
    "CALLBACKS",
    "CallbackNotRegisteredError",
    "CallbackRegistry",
    "Chain",
    "ChainBuilder",
    "ChainEngine",
    "ChainNotFoundError",
    "ChainStatus",
    "CheckAttempts",
    "CheckFinished",
    "ConfigurationError",
    "IncrementAttempts",
    "Middleware",
    "StackableJob",
    "StaleSignalError",
    "Step",
    "StepMessage",
    "StepWorker",
    "TransportPool",
    "get_repository",
    "get_transport",
    "register_callback",
]
