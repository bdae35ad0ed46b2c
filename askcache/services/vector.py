import math
from typing import Sequence


def vector_to_literal(vec: Sequence[float]) -> str:
    """
    Converts python list -> pgvector literal string.
    Example: [0.1,0.2,...]
    """
    return "[" + ",".join(str(float(x)) for x in vec) + "]"


def literal_to_vector(literal: str | None) -> list[float] | None:
    """
    Parses a pgvector text value back into a list of floats.
    """
    if literal is None:
        return None
    body = literal.strip().lstrip("[").rstrip("]").strip()
    if not body:
        return []
    return [float(x) for x in body.split(",")]


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """
    Cosine of the angle between two vectors.

    Returns 0.0 for empty, zero-length or differently sized vectors.
    """
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0
    dot = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)
