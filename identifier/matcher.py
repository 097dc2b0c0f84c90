"""
Nearest-level lookup by weighted Euclidean distance.

Distance between two fingerprints a, b of shape (3, N):

    d_c   = sqrt( sum_i  w_i * (a[c, i] - b[c, i])**2 ),   w_i = (N - i) / N
    d     = mean(d_r, d_g, d_b)

Low-index (coarse structure) coefficients weigh more than high-index ones.

Scoring is brute force but vectorised over the whole partition:
    stack  : np.ndarray, shape (M, 3, N)   candidate fingerprints
    diffs  = stack - query                 # broadcast
    dists  = sqrt((diffs**2 * w).sum(-1)).mean(-1)   # (M,)

fingerprint_distance() and the partition scan share _distances().
"""

from __future__ import annotations

from typing import Iterable

import numpy as np

from config import CONFIDENT_DISTANCE, NUM_COEFFICIENTS
from db.database import LevelDatabase
from levels.models import Difficulty, LevelRecord

# w_i = (N - i) / N  →  1.0, 0.9, ..., 0.1 for N = 10
_WEIGHTS = (NUM_COEFFICIENTS - np.arange(NUM_COEFFICIENTS, dtype=np.float64)) / NUM_COEFFICIENTS


def _distances(stack: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Weighted distance from ``query`` (3, N) to each fingerprint in ``stack`` (M, 3, N)."""
    diffs = stack.astype(np.float64) - np.asarray(query, dtype=np.float64)
    per_channel = np.sqrt((diffs * diffs * _WEIGHTS).sum(axis=-1))   # (M, 3)
    return per_channel.mean(axis=-1)


def fingerprint_distance(a: np.ndarray, b: np.ndarray) -> float:
    """Weighted Euclidean distance between two fingerprints."""
    return float(_distances(np.asarray(a)[None], b)[0])


def best_match(fingerprint: np.ndarray,
               candidates: Iterable[LevelRecord]) -> tuple[LevelRecord, float] | None:
    """
    Return the closest candidate and its distance, or None when there are no
    candidates.  Ties go to the candidate that comes first in ``candidates``.
    """
    records = list(candidates)
    if not records:
        return None

    stack = np.stack([np.asarray(r.fingerprint) for r in records], axis=0)
    distances = _distances(stack, fingerprint)
    # NaN sorts last; argmin returns the first occurrence of the minimum
    distances = np.where(np.isnan(distances), np.inf, distances)
    best = int(np.argmin(distances))
    return records[best], float(distances[best])


def identify_level(database: LevelDatabase, difficulty: Difficulty,
                   fingerprint: np.ndarray) -> tuple[LevelRecord, float] | None:
    """Best match within one difficulty partition, under that partition's read lock."""
    with database.reading(difficulty) as levels:
        return best_match(fingerprint, levels.values())


def confidence_label(distance: float) -> str:
    if distance < CONFIDENT_DISTANCE:
        return "high"
    return "low"
