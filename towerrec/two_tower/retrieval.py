"""Top-K retrieval over a trained two-tower model."""

from __future__ import annotations

import warnings
from typing import Iterable, List, Tuple

import numpy as np
import torch

from ..errors import EmptyResultWarning
from .model import TwoTowerModel


def rank_top_k(scores: np.ndarray, exclude: Iterable[int], k: int) -> List[Tuple[int, float]]:
    """Rank item indices by score, skipping `exclude`.

    Parameters
    ----------
    scores:
        1D array, one score per item index.
    exclude:
        Item indices that must never be returned (already rated).
    k:
        Maximum number of results.

    Returns
    -------
    List[(item_idx, score)]
        Sorted by score desc, ties broken by item index asc. Has
        min(k, number of non-excluded items) entries.
    """
    scores = np.asarray(scores, dtype=np.float64).reshape(-1)
    if int(k) <= 0:
        return []

    mask = np.ones(scores.shape[0], dtype=bool)
    excluded = np.fromiter((int(i) for i in exclude), dtype=np.int64)
    excluded = excluded[(excluded >= 0) & (excluded < scores.shape[0])]
    mask[excluded] = False

    candidates = np.flatnonzero(mask)
    # lexsort: last key is primary.
    order = candidates[np.lexsort((candidates, -scores[candidates]))]
    top = order[: int(k)]

    if len(top) < int(k):
        warnings.warn(
            f"Only {len(top)} unrated item(s) available for k={int(k)}",
            EmptyResultWarning,
            stacklevel=2,
        )
    return [(int(i), float(scores[i])) for i in top]


def score_user(model: TwoTowerModel, user_idx: int) -> np.ndarray:
    """Dot-product scores of one user against the model's whole item vocabulary."""
    with torch.no_grad():
        return model.score_all_items(int(user_idx)).detach().cpu().numpy()


def retrieve(model: TwoTowerModel, user_idx: int, *, exclude: Iterable[int], k: int) -> List[Tuple[int, float]]:
    """Score every item for `user_idx`, drop `exclude`, and return the top `k`."""
    return rank_top_k(score_user(model, user_idx), exclude, k)
