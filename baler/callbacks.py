"""Named callback registry.

Chain hooks (``then``, ``catch``, ``finally`` and ``paused``) are persisted as
:class:`~baler.models.CallbackRef` values, so the callable itself has to be
registered by name in every process that may advance a chain.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, Optional, Union

from .errors import CallbackNotRegisteredError, ConfigurationError
from .models import CallbackRef

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]


class CallbackRegistry:
    """Maps callback names to callables."""

    def __init__(self) -> None:
        self._callbacks: Dict[str, Callback] = {}

    def register(
        self, name: Union[str, Callback, None] = None
    ) -> Union[Callback, Callable[[Callback], Callback]]:
        """Register a callback, usable bare or with an explicit name.

        ``@registry.register`` uses the function's qualified name;
        ``@registry.register("send-report")`` uses the given one.
        """

        if callable(name):
            return self.add(name)

        def decorator(func: Callback) -> Callback:
            return self.add(func, name)

        return decorator

    def add(self, func: Callback, name: Optional[str] = None) -> Callback:
        key = name or f"{func.__module__}.{func.__qualname__}"
        existing = self._callbacks.get(key)
        if existing is not None and existing is not func:
            logger.warning(f"Callback '{key}' re-registered with a different callable")
        self._callbacks[key] = func
        return func

    def resolve(self, name: str) -> Callback:
        try:
            return self._callbacks[name]
        except KeyError:
            raise CallbackNotRegisteredError(name) from None

    def name_of(self, func: Callback) -> Optional[str]:
        for key, value in self._callbacks.items():
            if value is func:
                return key
        return None

    def ref_for(self, callback: Union[str, Callback], arguments: Dict[str, Any]) -> CallbackRef:
        """Build a persisted reference for ``callback``.

        ``callback`` may be a registered name or a registered callable.
        """

        if isinstance(callback, str):
            self.resolve(callback)
            return CallbackRef(name=callback, arguments=arguments)
        if not callable(callback):
            raise ConfigurationError(f"Callback {callback!r} is not callable")
        name = self.name_of(callback)
        if name is None:
            raise ConfigurationError(
                f"Callback {getattr(callback, '__qualname__', callback)!r} must be "
                "registered before it can be attached to a chain"
            )
        return CallbackRef(name=name, arguments=arguments)

    async def invoke(self, ref: CallbackRef) -> Any:
        result = self.resolve(ref.name)(**ref.arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __contains__(self, name: str) -> bool:
        return name in self._callbacks


CALLBACKS = CallbackRegistry()


def register_callback(
    name: Union[str, Callback, None] = None,
) -> Union[Callback, Callable[[Callback], Callback]]:
    """Add a callback to the process-wide ``CALLBACKS`` registry."""

    return CALLBACKS.register(name)


__all__ = ["CallbackRegistry", "CALLBACKS", "register_callback"]
