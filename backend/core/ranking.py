"""
ranking.py — Competition ranking ("1224") shared by parser, engine and views.

Equal keys share a rank; the next distinct key gets
1 + (number of entries with a strictly greater key).
"""

from typing import Callable, List, Sequence, Tuple, TypeVar

import numpy as np
from scipy import stats as sp_stats

T = TypeVar("T")


def competition_rank(values: Sequence[float]) -> List[int]:
    """Rank values in descending order, ties sharing the lowest rank."""
    if len(values) == 0:
        return []
    ranks = sp_stats.rankdata(-np.asarray(values, dtype=float), method="min")
    return [int(r) for r in ranks]


def rank_by(items: Sequence[T], key: Callable[[T], float]) -> List[Tuple[T, int]]:
    """
    Return (item, rank) pairs ordered by key descending.
    The sort is stable, so tied items keep their input order.
    """
    keys = [key(item) for item in items]
    ranks = competition_rank(keys)
    order = sorted(range(len(items)), key=lambda i: -keys[i])
    return [(items[i], ranks[i]) for i in order]
