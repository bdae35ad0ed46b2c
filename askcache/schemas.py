from typing import Any, Literal

from pydantic import BaseModel, Field


class AskRequest(BaseModel):
    """
    Incoming request payload for the ask endpoint.

    question: the user's question as typed
    """
    question: str


class AskResponse(BaseModel):
    """
    answer: cached or freshly generated answer (or the model error message)
    cached: True when the answer came from the cache
    mode: which tier produced the answer
    similarity: 1.0 for exact, trigram score for fuzzy, blended score for semantic
    """
    answer: str
    cached: bool
    mode: Literal["exact", "fuzzy", "semantic", "llm"]
    similarity: float | None = None
    time_sensitive: bool = False
    diagnostics: dict[str, Any] = Field(default_factory=dict)
