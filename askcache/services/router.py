import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

from ..config import MatchPolicy, Settings
from .cache import CacheEntry, CacheStore, StoreError, utcnow
from .embeddings import EmbeddingError, EmbeddingProvider
from .llm import AnswerProvider, GenerationError
from .matcher import ExactFuzzyMatcher, MatchOutcome, MatchStatus, SemanticMatcher
from .text import is_time_sensitive, normalize_question

logger = logging.getLogger(__name__)


class RouterState(str, Enum):
    START = "start"
    EXACT_FUZZY_CHECK = "exact_fuzzy_check"
    SEMANTIC_CHECK = "semantic_check"
    EXTERNAL_ANSWER = "external_answer"
    PERSIST = "persist"
    DONE = "done"


@dataclass
class AskResult:
    answer: str
    cached: bool
    mode: str
    similarity: float | None = None
    time_sensitive: bool = False
    diagnostics: dict = field(default_factory=dict)


@dataclass
class _Request:
    """Working state of one question while it moves through the states."""
    question: str
    normalized: str = ""
    time_sensitive: bool = False
    embedding: list[float] | None = None
    answer: str | None = None
    outcome: MatchOutcome | None = None
    generation_failed: bool = False
    states: list[str] = field(default_factory=list)
    diagnostics: dict = field(default_factory=dict)


class AnswerRouter:
    """
    Answers a question from the cache when possible, otherwise from the model.

    START -> EXACT_FUZZY_CHECK -> SEMANTIC_CHECK -> EXTERNAL_ANSWER -> PERSIST -> DONE

    Time-sensitive questions go from START straight to EXTERNAL_ANSWER and
    are never persisted. A hit in either cache tier ends in DONE.
    """

    def __init__(
        self,
        generator: AnswerProvider,
        store: CacheStore | None = None,
        embedder: EmbeddingProvider | None = None,
        policy: MatchPolicy | None = None,
        short_ttl: timedelta = timedelta(minutes=10),
        long_ttl: timedelta = timedelta(days=30),
        background_persist: bool = True,
        clock=utcnow,
    ):
        self.generator = generator
        self.store = store
        self.embedder = embedder
        self.policy = policy or MatchPolicy()
        self.short_ttl = short_ttl
        self.long_ttl = long_ttl
        self.background_persist = background_persist
        self.clock = clock
        self._pending: set[asyncio.Task] = set()

        self.exact_fuzzy = ExactFuzzyMatcher(store, self.policy) if store is not None else None
        self.semantic = SemanticMatcher(store, self.policy) if store is not None else None

        self._handlers = {
            RouterState.START: self._start,
            RouterState.EXACT_FUZZY_CHECK: self._exact_fuzzy_check,
            RouterState.SEMANTIC_CHECK: self._semantic_check,
            RouterState.EXTERNAL_ANSWER: self._external_answer,
            RouterState.PERSIST: self._persist,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        generator: AnswerProvider,
        store: CacheStore | None = None,
        embedder: EmbeddingProvider | None = None,
    ) -> "AnswerRouter":
        return cls(
            generator=generator,
            store=store,
            embedder=embedder,
            policy=settings.POLICY,
            short_ttl=timedelta(minutes=settings.SHORT_TTL_MINUTES),
            long_ttl=timedelta(minutes=settings.LONG_TTL_MINUTES),
            background_persist=settings.BACKGROUND_PERSIST,
        )

    @property
    def semantic_enabled(self) -> bool:
        return self.embedder is not None and self.store is not None and self.store.supports_vectors

    def ttl_for(self, time_sensitive: bool) -> timedelta:
        return self.short_ttl if time_sensitive else self.long_ttl

    # ============================================================
    # ENTRY POINT
    # ============================================================

    async def answer(self, question: str) -> AskResult:
        """
        Runs one question through the state machine.

        Raises ValueError for an empty question. Cache and embedding
        failures never escape; a model failure becomes the answer text.
        """
        request = _Request(question=question)
        state = RouterState.START
        while state is not RouterState.DONE:
            request.states.append(state.value)
            state = await self._handlers[state](request)
        request.states.append(RouterState.DONE.value)
        return self._result(request)

    async def drain(self) -> None:
        """Waits for background writes that are still running."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ============================================================
    # STATES
    # ============================================================

    async def _start(self, request: _Request) -> RouterState:
        request.normalized = normalize_question(request.question)
        if not request.normalized:
            raise ValueError("question must not be empty")

        request.time_sensitive = is_time_sensitive(request.question)
        if request.time_sensitive:
            logger.info(f"Time-sensitive question, bypassing cache: {request.normalized!r}")
            return RouterState.EXTERNAL_ANSWER
        if self.store is None:
            return RouterState.EXTERNAL_ANSWER
        return RouterState.EXACT_FUZZY_CHECK

    async def _exact_fuzzy_check(self, request: _Request) -> RouterState:
        outcome = await self.exact_fuzzy.match(request.normalized)
        if outcome.hit:
            request.outcome = outcome
            logger.info(f"Cache HIT ({outcome.mode}, {outcome.similarity:.3f}) for: {request.normalized!r}")
            return RouterState.DONE

        if outcome.status is MatchStatus.ERROR:
            request.diagnostics["store_error"] = outcome.error
        if outcome.best_score is not None:
            request.diagnostics["best_fuzzy_score"] = round(outcome.best_score, 4)
        return RouterState.SEMANTIC_CHECK

    async def _semantic_check(self, request: _Request) -> RouterState:
        if not self.semantic_enabled:
            return RouterState.EXTERNAL_ANSWER

        request.embedding = await self._embed(request.question)
        if request.embedding is None:
            request.diagnostics["semantic_skipped"] = "embedding unavailable"
            return RouterState.EXTERNAL_ANSWER

        outcome = await self.semantic.match(request.question, request.normalized, request.embedding)
        if outcome.hit:
            request.outcome = outcome
            logger.info(
                f"Cache HIT (semantic, cosine={outcome.cosine:.3f}, overlap={outcome.overlap:.3f}) "
                f"for: {request.normalized!r} -> {outcome.matched_question!r}"
            )
            return RouterState.DONE

        if outcome.status is MatchStatus.ERROR:
            request.diagnostics["store_error"] = outcome.error
        if outcome.best_score is not None:
            request.diagnostics["best_cosine"] = round(outcome.best_score, 4)
        return RouterState.EXTERNAL_ANSWER

    async def _external_answer(self, request: _Request) -> RouterState:
        logger.info(f"Cache MISS, asking model (retrieval={request.time_sensitive}): {request.normalized!r}")
        try:
            request.answer = await self.generator.answer(request.question, use_retrieval=request.time_sensitive)
        except GenerationError as e:
            logger.error(f"Model call failed: {e}")
            request.answer = str(e)
            request.generation_failed = True
            request.diagnostics["error"] = str(e)
            return RouterState.DONE

        if request.time_sensitive or self.store is None:
            return RouterState.DONE
        return RouterState.PERSIST

    async def _persist(self, request: _Request) -> RouterState:
        if self.background_persist:
            task = asyncio.create_task(self._write(request))
            self._pending.add(task)
            task.add_done_callback(self._on_write_done)
        else:
            await self._write(request)
        return RouterState.DONE

    # ============================================================
    # HELPERS
    # ============================================================

    async def _embed(self, text: str) -> list[float] | None:
        try:
            vector = await self.embedder.embed(text)
        except EmbeddingError as e:
            logger.warning(f"Embedding unavailable, skipping semantic tier: {e}")
            return None

        if len(vector) != self.embedder.dimensions:
            logger.warning(
                f"Embedding dimension mismatch: got {len(vector)}, expected {self.embedder.dimensions}"
            )
            return None
        return vector

    async def _write(self, request: _Request) -> None:
        embedding = request.embedding
        if embedding is None and self.semantic_enabled:
            embedding = await self._embed(request.question)

        entry = CacheEntry.new(
            normalized_question=request.normalized,
            original_question=request.question,
            answer=request.answer,
            ttl=self.ttl_for(request.time_sensitive),
            embedding=embedding,
            now=self.clock(),
        )
        try:
            entry_id = await self.store.insert(entry)
        except StoreError as e:
            logger.warning(f"Cache write skipped: {e}")
            return
        logger.info(f"Cached answer id={entry_id} (embedding={'yes' if embedding else 'no'}) for: {request.normalized!r}")

    def _on_write_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Cache write crashed: {exc!r}")

    def _result(self, request: _Request) -> AskResult:
        diagnostics = dict(request.diagnostics)
        diagnostics["states"] = request.states
        diagnostics["normalized_question"] = request.normalized

        outcome = request.outcome
        if outcome is not None and outcome.hit:
            diagnostics["entry_id"] = outcome.entry.id
            diagnostics["matched_question"] = outcome.matched_question
            if outcome.cosine is not None:
                diagnostics["cosine"] = round(outcome.cosine, 4)
                diagnostics["overlap"] = round(outcome.overlap, 4)
            return AskResult(
                answer=outcome.entry.answer,
                cached=True,
                mode=outcome.mode,
                similarity=outcome.similarity,
                time_sensitive=False,
                diagnostics=diagnostics,
            )

        return AskResult(
            answer=request.answer,
            cached=False,
            mode="llm",
            similarity=None,
            time_sensitive=request.time_sensitive,
            diagnostics=diagnostics,
        )
