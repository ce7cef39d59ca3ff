"""
Bag-of-words vectors and the similarity functions used to rank chunks.

frequency_vector() is the no-model fallback: token counts in first-seen
order, normalized to sum 1, padded or truncated to a fixed dimension.
Positions are not tied to a vocabulary, so two texts only line up where
their tokens happen to appear in the same order. Scores from it are a
coarse signal, not a semantic embedding.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from collections.abc import Sequence

VECTOR_DIMENSION = 3072

SCORING_COSINE = "cosine"
SCORING_OVERLAP = "overlap"
SCORING_MODES = (SCORING_COSINE, SCORING_OVERLAP)

_NON_WORD = re.compile(r"\W+")


def tokenize(text: str) -> list[str]:
    """Lower-case text and split it on runs of non-word characters."""
    return [t for t in _NON_WORD.split(text.lower()) if t]


def frequency_vector(text: str, dimension: int = VECTOR_DIMENSION) -> list[float]:
    """
    Map text to a normalized term-frequency vector of exactly `dimension` floats.

    Empty or token-free text maps to the zero vector.
    """
    counts = Counter(tokenize(text))  # preserves first-seen order
    total = sum(counts.values())
    if total == 0:
        return [0.0] * dimension

    values = [count / total for count in counts.values()][:dimension]
    values.extend([0.0] * (dimension - len(values)))
    return values


def token_set(text: str) -> frozenset[str]:
    """Distinct lower-cased tokens of text."""
    return frozenset(tokenize(text))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine of the angle between two vectors.

    The denominator is floored at 1 when either norm is zero, so a zero
    vector scores 0 against anything. Vectors of different lengths score 0.
    """
    if len(a) != len(b):
        return 0.0

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    denominator = norm_a * norm_b
    if norm_a == 0 or norm_b == 0:
        denominator = 1.0
    return dot / denominator


def overlap_coefficient(a: frozenset[str] | set[str], b: frozenset[str] | set[str]) -> float:
    """|A & B| / sqrt(|A| * |B|), or 0 if either set is empty."""
    if not a or not b:
        return 0.0
    return len(a & b) / math.sqrt(len(a) * len(b))


def score_texts(
    query: str,
    text: str,
    scoring: str = SCORING_COSINE,
    dimension: int = VECTOR_DIMENSION,
    query_vector: Sequence[float] | None = None,
    text_vector: Sequence[float] | None = None,
) -> float:
    """Score text against query with the given scoring mode.

    Precomputed vectors are used for cosine scoring when supplied.
    """
    if scoring == SCORING_OVERLAP:
        return overlap_coefficient(token_set(query), token_set(text))
    if scoring != SCORING_COSINE:
        raise ValueError(f"Unknown scoring mode: {scoring!r}")

    if query_vector is None:
        query_vector = frequency_vector(query, dimension)
    if text_vector is None:
        text_vector = frequency_vector(text, dimension)
    return cosine_similarity(query_vector, text_vector)
