import asyncio
import itertools
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol, Sequence

import psycopg2
from psycopg2.extras import RealDictCursor

from ..database import Database
from .text import trigram_similarity
from .vector import cosine_similarity, literal_to_vector, vector_to_literal

logger = logging.getLogger(__name__)

# Fuzzy candidates below this trigram similarity are never returned by
# either store (pg_trgm's default similarity_threshold).
FUZZY_CANDIDATE_FLOOR = 0.3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoreError(RuntimeError):
    """The cache store could not complete a read or write."""


@dataclass
class CacheEntry:
    """
    One answered question.

    id is None until the store assigns it on insert.
    expires_at is checked at read time; expired rows are never deleted.
    """
    normalized_question: str
    original_question: str
    answer: str
    created_at: datetime
    expires_at: datetime
    embedding: list[float] | None = None
    id: int | None = None

    @classmethod
    def new(
        cls,
        normalized_question: str,
        original_question: str,
        answer: str,
        ttl: timedelta,
        embedding: list[float] | None = None,
        now: datetime | None = None,
    ) -> "CacheEntry":
        if ttl <= timedelta(0):
            raise ValueError("ttl must be positive")
        created_at = now or utcnow()
        return cls(
            normalized_question=normalized_question,
            original_question=original_question,
            answer=answer,
            created_at=created_at,
            expires_at=created_at + ttl,
            embedding=embedding,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class FuzzyCandidate:
    entry: CacheEntry
    score: float


@dataclass
class SemanticCandidate:
    entry: CacheEntry
    cosine: float


class CacheStore(Protocol):
    """
    What the matchers and the router need from persistence.

    Every read only sees non-expired rows. Failures raise StoreError.
    """

    supports_vectors: bool

    async def find_exact(self, normalized_question: str) -> CacheEntry | None: ...

    async def find_fuzzy_candidate(self, normalized_question: str) -> FuzzyCandidate | None: ...

    async def find_semantic_candidates(
        self,
        normalized_question: str,
        embedding: Sequence[float],
        lexical_floor: float,
        limit: int,
    ) -> list[SemanticCandidate]: ...

    async def insert(self, entry: CacheEntry) -> int: ...


# ============================================================
# IN-MEMORY STORE
# ============================================================

class InMemoryCacheStore:
    """
    Process-local store with the same read semantics as the Postgres one.

    Used for local development (CACHE_BACKEND=memory) and tests. The clock
    is injectable so expiry can be exercised without sleeping.
    """

    supports_vectors = True

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.entries: list[CacheEntry] = []
        self._ids = itertools.count(1)

    def _live_entries(self) -> list[CacheEntry]:
        now = self.clock()
        return [e for e in self.entries if not e.is_expired(now)]

    async def find_exact(self, normalized_question: str) -> CacheEntry | None:
        matches = [e for e in self._live_entries() if e.normalized_question == normalized_question]
        if not matches:
            return None
        return max(matches, key=lambda e: e.id)

    async def find_fuzzy_candidate(self, normalized_question: str) -> FuzzyCandidate | None:
        best = None
        for entry in self._live_entries():
            score = trigram_similarity(normalized_question, entry.normalized_question)
            if score < FUZZY_CANDIDATE_FLOOR:
                continue
            if best is None or (score, entry.id) > (best.score, best.entry.id):
                best = FuzzyCandidate(entry=entry, score=score)
        return best

    async def find_semantic_candidates(self, normalized_question, embedding, lexical_floor, limit):
        candidates = []
        for entry in self._live_entries():
            if entry.embedding is None:
                continue
            if trigram_similarity(normalized_question, entry.normalized_question) < lexical_floor:
                continue
            candidates.append(SemanticCandidate(entry=entry, cosine=cosine_similarity(embedding, entry.embedding)))
        candidates.sort(key=lambda c: (c.cosine, c.entry.id), reverse=True)
        return candidates[:limit]

    async def insert(self, entry: CacheEntry) -> int:
        stored = replace(entry, id=next(self._ids))
        self.entries.append(stored)
        return stored.id


# ============================================================
# POSTGRES STORE
# ============================================================

ENTRY_COLUMNS = "id, qnorm, question, answer, created_at, expires_at"

FIND_EXACT_SQL = f"""
SELECT {ENTRY_COLUMNS}
FROM qa_cache
WHERE qnorm = %s AND expires_at > NOW()
ORDER BY id DESC
LIMIT 1;
"""

# "%%" is pg_trgm's similarity operator escaped for psycopg2. It matches rows
# at or above pg_trgm.similarity_threshold, set per transaction by _fetch.
SET_SIMILARITY_THRESHOLD_SQL = "SELECT set_config('pg_trgm.similarity_threshold', %s, true);"

FIND_FUZZY_SQL = f"""
SELECT {ENTRY_COLUMNS}, similarity(qnorm, %s) AS score
FROM qa_cache
WHERE expires_at > NOW() AND qnorm %% %s
ORDER BY score DESC, id DESC
LIMIT 1;
"""

FIND_SEMANTIC_SQL = f"""
SELECT {ENTRY_COLUMNS}, embedding::text AS embedding,
  1 - (embedding <=> %s::vector) AS cosine
FROM qa_cache
WHERE expires_at > NOW()
  AND embedding IS NOT NULL
  AND qnorm %% %s
ORDER BY embedding <=> %s::vector, id DESC
LIMIT %s;
"""

INSERT_SQL = """
INSERT INTO qa_cache (qnorm, question, answer, created_at, expires_at)
VALUES (%s, %s, %s, %s, %s)
RETURNING id;
"""

INSERT_WITH_EMBEDDING_SQL = """
INSERT INTO qa_cache (qnorm, question, answer, created_at, expires_at, embedding)
VALUES (%s, %s, %s, %s, %s, %s::vector)
RETURNING id;
"""


def _row_to_entry(row: dict) -> CacheEntry:
    return CacheEntry(
        id=row["id"],
        normalized_question=row["qnorm"],
        original_question=row["question"],
        answer=row["answer"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        embedding=literal_to_vector(row.get("embedding")),
    )


class PostgresCacheStore:
    """
    qa_cache table access over the pooled psycopg2 connections.

    The driver is blocking, so every public method runs its query in a
    worker thread. psycopg2 errors surface as StoreError.
    """

    def __init__(self, database: Database):
        self.database = database

    @property
    def supports_vectors(self) -> bool:
        return self.database.vector_enabled

    def _fetch(self, sql: str, params: tuple, many: bool = False, similarity_threshold: float | None = None):
        try:
            with self.database.connection() as conn:
                with conn:
                    with conn.cursor(cursor_factory=RealDictCursor) as cur:
                        if similarity_threshold is not None:
                            cur.execute(SET_SIMILARITY_THRESHOLD_SQL, (str(similarity_threshold),))
                        cur.execute(sql, params)
                        return cur.fetchall() if many else cur.fetchone()
        except psycopg2.Error as e:
            raise StoreError(f"Database query failed: {str(e)}") from e

    def _find_exact_sync(self, normalized_question: str) -> CacheEntry | None:
        row = self._fetch(FIND_EXACT_SQL, (normalized_question,))
        return _row_to_entry(row) if row else None

    def _find_fuzzy_sync(self, normalized_question: str) -> FuzzyCandidate | None:
        row = self._fetch(
            FIND_FUZZY_SQL,
            (normalized_question, normalized_question),
            similarity_threshold=FUZZY_CANDIDATE_FLOOR,
        )
        if not row:
            return None
        return FuzzyCandidate(entry=_row_to_entry(row), score=float(row["score"]))

    def _find_semantic_sync(self, normalized_question, embedding, lexical_floor, limit) -> list[SemanticCandidate]:
        if not self.supports_vectors:
            return []
        vec_lit = vector_to_literal(embedding)
        rows = self._fetch(
            FIND_SEMANTIC_SQL,
            (vec_lit, normalized_question, vec_lit, limit),
            many=True,
            similarity_threshold=lexical_floor,
        )
        return [SemanticCandidate(entry=_row_to_entry(r), cosine=float(r["cosine"])) for r in rows]

    def _insert_sync(self, entry: CacheEntry) -> int:
        params = (
            entry.normalized_question,
            entry.original_question,
            entry.answer,
            entry.created_at,
            entry.expires_at,
        )
        if entry.embedding is not None and self.supports_vectors:
            row = self._fetch(INSERT_WITH_EMBEDDING_SQL, params + (vector_to_literal(entry.embedding),))
        else:
            row = self._fetch(INSERT_SQL, params)
        return int(row["id"])

    async def find_exact(self, normalized_question: str) -> CacheEntry | None:
        return await asyncio.to_thread(self._find_exact_sync, normalized_question)

    async def find_fuzzy_candidate(self, normalized_question: str) -> FuzzyCandidate | None:
        return await asyncio.to_thread(self._find_fuzzy_sync, normalized_question)

    async def find_semantic_candidates(self, normalized_question, embedding, lexical_floor, limit):
        return await asyncio.to_thread(
            self._find_semantic_sync, normalized_question, embedding, lexical_floor, limit
        )

    async def insert(self, entry: CacheEntry) -> int:
        return await asyncio.to_thread(self._insert_sync, entry)
