import pytest

from naturelens.services.collection.store import CollectionStore
from naturelens.services.database import StateStorage
from naturelens.services.pipeline.orchestrator import PipelineOrchestrator
from tests.fakes import FakeProvider


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
async def storage(tmp_path):
    storage = StateStorage(f"sqlite+aiosqlite:///{tmp_path / 'data' / 'naturelens.db'}")
    await storage.init()
    yield storage
    await storage.close()


@pytest.fixture
async def store(storage):
    return await CollectionStore.open(storage, namespace="naturelens-test", recent_limit=10)


@pytest.fixture
def orchestrator(store, provider):
    return PipelineOrchestrator.from_provider(store, provider)
