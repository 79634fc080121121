"""Exception hierarchy for baler."""

from __future__ import annotations


class BalerError(Exception):
    """Base class for all baler errors."""


class ConfigurationError(BalerError, ValueError):
    """Malformed chain definition detected while building."""


class CallbackNotRegisteredError(ConfigurationError):
    """A callback name was used that is not present in the registry."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Callback '{name}' is not registered")
        self.name = name


class ChainNotFoundError(BalerError, LookupError):
    """The referenced chain does not exist."""

    def __init__(self, chain_id: str) -> None:
        super().__init__(f"Chain {chain_id} not found")
        self.chain_id = chain_id


class StaleSignalError(BalerError):
    """An outcome referenced a step that is no longer the head of its chain."""

    def __init__(self, chain_id: str, reason: str) -> None:
        super().__init__(f"Stale signal for chain {chain_id}: {reason}")
        self.chain_id = chain_id
        self.reason = reason


class InvalidTransitionError(BalerError):
    """A chain was asked to move to a status it cannot reach."""
