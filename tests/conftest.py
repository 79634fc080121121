import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent / "fixtures"))

import baler.persistence as persistence  # noqa: E402
from baler import ChainEngine  # noqa: E402
from baler.config import BalerConfig  # noqa: E402
from baler.persistence import InMemoryChainRepository  # noqa: E402
from baler.transports import InMemoryTransport, TransportPool  # noqa: E402

from chain_jobs import reset_logs  # noqa: E402


@pytest.fixture(autouse=True)
def _clean_state(monkeypatch):
    monkeypatch.delenv("BALER_CONFIG", raising=False)
    monkeypatch.delenv("BALER_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("BALER_AUTOMATIC_PROCESSING", raising=False)
    monkeypatch.delenv("BALER_TRANSPORT", raising=False)
    reset_logs()
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest.fixture
def repo():
    return InMemoryChainRepository()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def config():
    return BalerConfig()


@pytest.fixture
def engine(repo, transport, config):
    return ChainEngine(repository=repo, transports=TransportPool(transport), config=config)


@pytest.fixture
def drain(transport):
    """Process queued step messages one at a time, like a single worker would."""

    async def _drain(worker, queue="default", limit=50):
        handled = []
        while transport._queues[queue] and len(handled) < limit:
            raw = transport._queues[queue].popleft()
            await worker.handle(raw[1])
            handled.append(raw[1])
        return handled

    return _drain
