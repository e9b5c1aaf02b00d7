"""
String similarity for product names

Scores are normalized edit distance: ``1 - distance / max(len(a), len(b))``
after case-folding and trimming. Pure functions; no I/O.
"""

import logging
import re
from functools import lru_cache
from typing import Iterable, Optional, Sequence, Tuple

from invoex.models.catalog import MatchResult

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r'\s+')


def normalize_name(name: Optional[str]) -> str:
    """Key used for link uniqueness: case-folded, trimmed, single-spaced"""
    if not name:
        return ''
    return _WHITESPACE.sub(' ', name.strip()).casefold()


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance with unit insert/delete/substitute costs"""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    rows = len(a) + 1
    cols = len(b) + 1
    matrix = [[0] * cols for _ in range(rows)]
    for i in range(rows):
        matrix[i][0] = i
    for j in range(cols):
        matrix[0][j] = j

    for i in range(1, rows):
        for j in range(1, cols):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            matrix[i][j] = min(
                matrix[i - 1][j] + 1,
                matrix[i][j - 1] + 1,
                matrix[i - 1][j - 1] + cost
            )
    return matrix[-1][-1]


@lru_cache(maxsize=4096)
def similarity(a: str, b: str) -> float:
    """Similarity in [0, 1]; identical strings (after case-fold/trim) score 1.0"""
    left = (a or '').strip().casefold()
    right = (b or '').strip().casefold()
    if left == right:
        return 1.0
    distance = edit_distance(left, right)
    return 1.0 - distance / max(len(left), len(right))


def best_match(
    name: str,
    candidates: Iterable[Tuple[str, str]],
    threshold: float
) -> Optional[MatchResult]:
    """
    Highest-scoring candidate, or None if it scores below ``threshold``

    ``candidates`` are ``(id, name)`` pairs. On exact ties the first
    candidate seen wins, so pass candidates in a deterministic order.
    """
    best: Optional[MatchResult] = None
    for candidate_id, candidate_name in candidates:
        score = similarity(name, candidate_name)
        if best is None or score > best.score:
            best = MatchResult(candidate_id, candidate_name, score)
            if score == 1.0:
                break

    if best is None or best.score < threshold:
        logger.debug(f"No match for '{name}' at threshold {threshold}")
        return None
    logger.debug(f"Best match for '{name}': '{best.name}' ({best.score:.3f})")
    return best


def rank_matches(
    name: str,
    candidates: Iterable[Tuple[str, str]],
    threshold: float = 0.0,
    limit: Optional[int] = None
) -> Sequence[MatchResult]:
    """All candidates scoring above ``threshold``, best first (stable on ties)"""
    scored = [
        MatchResult(candidate_id, candidate_name, similarity(name, candidate_name))
        for candidate_id, candidate_name in candidates
    ]
    ranked = sorted(
        (match for match in scored if match.score > threshold),
        key=lambda match: match.score,
        reverse=True
    )
    return ranked[:limit] if limit else ranked
