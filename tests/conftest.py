"""Shared test fixtures.

Tests run against a throwaway SQLite file (aiosqlite) seeded with the system
taxonomy. Vector search uses the in-process numpy implementation there;
external providers and the job queue are replaced by the fakes below.
"""

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from spendsense.config import settings
from spendsense.models import Base, Transaction, User
from spendsense.seeds import seed_taxonomy
from spendsense.services.llm_provider import LLMProviderBase
from spendsense.services.llm_service import LLMService
from spendsense.services.taxonomy_cache import CategoryCache, SubcategoryCache


def vector(*values: float) -> list[float]:
    """An embedding of the configured width with ``values`` in the leading slots."""
    padded = list(values) + [0.0] * (settings.embedding_dimensions - len(values))
    return padded[: settings.embedding_dimensions]


class FakeLLMProvider(LLMProviderBase):
    """Replays canned responses; an Exception in the list is raised instead."""

    name = "fake"

    def __init__(self, responses=None, configured: bool = True):
        self.responses = list(responses or [])
        self.calls: list[tuple[str, str]] = []
        self._configured = configured

    @property
    def configured(self) -> bool:
        return self._configured

    async def complete(self, system_prompt, user_prompt, max_tokens, temperature=0.1) -> str:
        self.calls.append((system_prompt, user_prompt))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class FakeEmbedder:
    """Deterministic vectors; texts listed in ``vectors`` get exactly that vector."""

    name = "fake"

    def __init__(self, vectors=None, failures=None, configured: bool = True):
        self.vectors = vectors or {}
        self.failures = list(failures or [])
        self.calls: list[list[str]] = []
        self._configured = configured

    @property
    def configured(self) -> bool:
        return self._configured

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return [self.vectors.get(text, vector(1.0, float(len(text)))) for text in texts]


class RecordingQueue:
    def __init__(self):
        self.transactions: list[int] = []
        self.batches: list[tuple[list[int], int | None]] = []
        self.examples: list[int] = []

    def enqueue_transaction(self, transaction_id):
        self.transactions.append(transaction_id)

    def enqueue_transactions(self, transaction_ids, user_id=None):
        self.batches.append((list(transaction_ids), user_id))

    def enqueue_labeled_example(self, example_id):
        self.examples.append(example_id)


class SpyNeighbors:
    """Records searches and finds nothing."""

    def __init__(self):
        self.calls = []

    async def search(self, vector, scope, k, max_distance, exclude_id=None):
        self.calls.append(scope)
        return []

    async def search_many(self, queries, scope, k, max_distance):
        self.calls.append(scope)
        return {query_id: [] for query_id, _ in queries}


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        await seed_taxonomy(session)
        await session.commit()
    return factory


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def user(db):
    user = User(email="asha@example.com", full_name="Asha")
    db.add(user)
    await db.flush()
    return user


@pytest_asyncio.fixture
async def other_user(db):
    user = User(email="vikram@example.com", full_name="Vikram")
    db.add(user)
    await db.flush()
    return user


@pytest.fixture
def category_cache(session_factory):
    return CategoryCache(session_factory)


@pytest.fixture
def subcategory_cache(session_factory):
    return SubcategoryCache(session_factory)


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def make_llm(category_cache, subcategory_cache):
    def _make(*responses, configured: bool = True, **options):
        provider = FakeLLMProvider(responses or ['{"category": "other"}'], configured=configured)
        options.setdefault("retry_base_delay", 0)
        return LLMService(category_cache, subcategory_cache, provider=provider, **options)

    return _make


@pytest.fixture
def make_transaction(db, user):
    async def _make(description, amount="100.00", transaction_type="debit", **fields):
        fields.setdefault("user_id", user.id)
        tx = Transaction(
            description=description,
            original_description=description,
            amount=Decimal(amount),
            transaction_type=transaction_type,
            **fields,
        )
        db.add(tx)
        await db.flush()
        return tx

    return _make
