"""
Cache tiers.

Each matcher returns a MatchOutcome whose status tells "hit", "no match"
and "store failed" apart. The router treats both MISS and ERROR as
"continue to the next tier".
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Sequence

from ..config import MatchPolicy
from .cache import CacheEntry, CacheStore, StoreError
from .text import extract_key_terms, jaccard_overlap

logger = logging.getLogger(__name__)


class MatchStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    ERROR = "error"


@dataclass
class MatchOutcome:
    status: MatchStatus
    mode: str | None = None
    entry: CacheEntry | None = None
    similarity: float | None = None
    best_score: float | None = None
    cosine: float | None = None
    overlap: float | None = None
    matched_question: str | None = None
    error: str | None = None

    @property
    def hit(self) -> bool:
        return self.status is MatchStatus.HIT

    @classmethod
    def miss(cls, best_score: float | None = None) -> "MatchOutcome":
        return cls(status=MatchStatus.MISS, best_score=best_score)

    @classmethod
    def failed(cls, error: Exception | str) -> "MatchOutcome":
        return cls(status=MatchStatus.ERROR, error=str(error))


# ============================================================
# EXACT / FUZZY
# ============================================================

class ExactFuzzyMatcher:
    """
    Exact lookup on the normalized question, then the best trigram match.
    """

    def __init__(self, store: CacheStore, policy: MatchPolicy):
        self.store = store
        self.policy = policy

    async def match(self, normalized_question: str) -> MatchOutcome:
        try:
            entry = await self.store.find_exact(normalized_question)
        except StoreError as e:
            logger.warning(f"Exact lookup failed, treating as miss: {e}")
            return MatchOutcome.failed(e)

        if entry is not None:
            return MatchOutcome(
                status=MatchStatus.HIT,
                mode="exact",
                entry=entry,
                similarity=1.0,
                matched_question=entry.original_question,
            )

        try:
            candidate = await self.store.find_fuzzy_candidate(normalized_question)
        except StoreError as e:
            logger.warning(f"Fuzzy lookup failed, treating as miss: {e}")
            return MatchOutcome.failed(e)

        if candidate is None:
            return MatchOutcome.miss()

        if candidate.score >= self.policy.fuzzy_threshold:
            return MatchOutcome(
                status=MatchStatus.HIT,
                mode="fuzzy",
                entry=candidate.entry,
                similarity=candidate.score,
                matched_question=candidate.entry.original_question,
            )

        logger.debug(f"Fuzzy best score {candidate.score:.3f} below {self.policy.fuzzy_threshold}")
        return MatchOutcome.miss(best_score=candidate.score)


# ============================================================
# SEMANTIC
# ============================================================

class SemanticMatcher:
    """
    Embedding match guarded by key-term overlap.

    Steps:
    1) store returns up to candidate_limit rows above the lexical floor
    2) drop candidates with cosine below cosine_floor
    3) drop candidates whose key-term Jaccard overlap is below overlap_floor
    4) rank the rest by cosine_weight * cosine + overlap_weight * overlap
    """

    def __init__(
        self,
        store: CacheStore,
        policy: MatchPolicy,
        term_extractor: Callable[[str], Iterable[str]] = extract_key_terms,
    ):
        self.store = store
        self.policy = policy
        self.term_extractor = term_extractor

    def blended_score(self, cosine: float, overlap: float) -> float:
        return self.policy.cosine_weight * cosine + self.policy.overlap_weight * overlap

    async def match(self, question: str, normalized_question: str, embedding: Sequence[float]) -> MatchOutcome:
        try:
            candidates = await self.store.find_semantic_candidates(
                normalized_question,
                embedding,
                self.policy.lexical_floor,
                self.policy.candidate_limit,
            )
        except StoreError as e:
            logger.warning(f"Semantic lookup failed, treating as miss: {e}")
            return MatchOutcome.failed(e)

        query_terms = set(self.term_extractor(question))

        best = None
        best_cosine = None
        for candidate in candidates:
            if best_cosine is None or candidate.cosine > best_cosine:
                best_cosine = candidate.cosine

            if candidate.cosine < self.policy.cosine_floor:
                continue

            overlap = jaccard_overlap(query_terms, self.term_extractor(candidate.entry.original_question))
            if overlap < self.policy.overlap_floor:
                logger.debug(
                    f"Semantic candidate {candidate.entry.id} rejected: "
                    f"cosine={candidate.cosine:.3f} overlap={overlap:.3f}"
                )
                continue

            score = self.blended_score(candidate.cosine, overlap)
            if best is None or (score, candidate.entry.id) > (best.similarity, best.entry.id):
                best = MatchOutcome(
                    status=MatchStatus.HIT,
                    mode="semantic",
                    entry=candidate.entry,
                    similarity=score,
                    cosine=candidate.cosine,
                    overlap=overlap,
                    matched_question=candidate.entry.original_question,
                )

        if best is None:
            return MatchOutcome.miss(best_score=best_cosine)
        return best
