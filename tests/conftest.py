"""Pytest fixtures: in-memory store with a controllable clock and stub providers."""
from datetime import datetime, timedelta, timezone

import pytest

from askcache.services.cache import CacheEntry, InMemoryCacheStore, StoreError
from askcache.services.embeddings import EmbeddingError
from askcache.services.llm import GenerationError
from askcache.services.text import normalize_question


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class StubEmbedder:
    """Returns fixed vectors per text; unknown texts get the default vector."""

    def __init__(self, vectors=None, default=None, dimensions=3, fail=False):
        self.vectors = vectors or {}
        self.default = default if default is not None else [0.0, 0.0, 1.0]
        self.dimensions = dimensions
        self.fail = fail
        self.calls = []

    async def embed(self, text):
        self.calls.append(text)
        if self.fail:
            raise EmbeddingError("embedder down")
        return list(self.vectors.get(text, self.default))


class StubGenerator:
    def __init__(self, answer="Paris", fail=None):
        self._answer = answer
        self.fail = fail
        self.calls = []

    async def answer(self, question, use_retrieval=False):
        self.calls.append((question, use_retrieval))
        if self.fail:
            raise GenerationError(self.fail)
        return self._answer


class FailingStore:
    supports_vectors = True

    async def find_exact(self, normalized_question):
        raise StoreError("connection refused")

    async def find_fuzzy_candidate(self, normalized_question):
        raise StoreError("connection refused")

    async def find_semantic_candidates(self, normalized_question, embedding, lexical_floor, limit):
        raise StoreError("connection refused")

    async def insert(self, entry):
        raise StoreError("connection refused")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryCacheStore(clock=clock)


@pytest.fixture
def generator():
    return StubGenerator()


@pytest.fixture
def make_entry(clock):
    """Builds an unsaved entry created at the fake clock's current time."""

    def _make(question, answer="cached answer", embedding=None, ttl=timedelta(days=30)):
        return CacheEntry.new(
            normalized_question=normalize_question(question),
            original_question=question,
            answer=answer,
            ttl=ttl,
            embedding=embedding,
            now=clock(),
        )

    return _make
