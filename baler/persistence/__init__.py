"""Persistence layer for baler chains."""

from __future__ import annotations

import os
from typing import Optional

from ..config import BalerConfig, load_config
from .inmemory import InMemoryChainRepository
from .repository import ChainRepository, ChainTransaction
from .sqlite import SQLiteChainRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresChainRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresChainRepository = None  # type: ignore

_repository_instance: ChainRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[BalerConfig] = None
) -> ChainRepository:
    """Factory function to obtain a chain repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``BALER_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("BALER_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryChainRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteChainRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresChainRepository is None:
            raise RuntimeError("Postgres support not available")
        _repository_instance = PostgresChainRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "ChainRepository",
    "ChainTransaction",
    "SQLiteChainRepository",
    "PostgresChainRepository",
    "InMemoryChainRepository",
    "get_repository",
]
