"""Transport factory and initialization."""

from __future__ import annotations

import os
from typing import Dict, Optional

from ..config import BalerConfig, TransportConfig, load_config
from ..errors import ConfigurationError
from .base import BaseTransport
from .inmemory import InMemoryTransport


def _build_transport(transport_config: TransportConfig, backend: Optional[str] = None) -> BaseTransport:
    backend = (backend or transport_config.backend).lower()

    if backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = transport_config.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


def get_transport(
    backend: Optional[str] = None, config: Optional[BalerConfig] = None
) -> BaseTransport:
    """Factory function to get the configured default transport."""

    config = config or load_config()
    return _build_transport(
        config.transport, backend or os.getenv("BALER_TRANSPORT")
    )


class TransportPool:
    """Resolves a step's ``connection`` name to a transport.

    ``None`` selects the default transport. Named transports are created
    lazily from ``config.connections`` unless registered explicitly.
    """

    def __init__(
        self,
        default: BaseTransport,
        connections: Optional[Dict[str, BaseTransport]] = None,
        config: Optional[BalerConfig] = None,
    ) -> None:
        self.default = default
        self._connections: Dict[str, BaseTransport] = dict(connections or {})
        self._config = config

    @classmethod
    def from_config(cls, config: Optional[BalerConfig] = None) -> "TransportPool":
        config = config or load_config()
        return cls(get_transport(config=config), config=config)

    def register(self, name: str, transport: BaseTransport) -> None:
        self._connections[name] = transport

    def __contains__(self, connection: Optional[str]) -> bool:
        return (
            connection is None
            or connection in self._connections
            or (self._config is not None and connection in self._config.connections)
        )

    def check(self, connection: Optional[str]) -> Optional[str]:
        """Raise ``ConfigurationError`` unless ``connection`` can be resolved."""
        if connection not in self:
            raise ConfigurationError(f"Unknown connection: {connection}")
        return connection

    def get(self, connection: Optional[str] = None) -> BaseTransport:
        if connection is None:
            return self.default
        transport = self._connections.get(connection)
        if transport is not None:
            return transport
        self.check(connection)
        transport = _build_transport(self._config.connections[connection])
        self._connections[connection] = transport
        return transport

    async def disconnect(self) -> None:
        for transport in {id(t): t for t in [self.default, *self._connections.values()]}.values():
            await transport.disconnect()


__all__ = ["BaseTransport", "InMemoryTransport", "TransportPool", "get_transport"]
