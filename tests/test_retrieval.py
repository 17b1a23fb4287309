from __future__ import annotations

import numpy as np
import pytest
import torch

from towerrec.config import TwoTowerConfig
from towerrec.errors import EmptyResultWarning
from towerrec.two_tower.model import build_model
from towerrec.two_tower.retrieval import rank_top_k, retrieve


def test_excluded_items_never_returned() -> None:
    scores = np.array([0.9, 0.1, 0.8, 0.7, 0.3])
    ranked = rank_top_k(scores, exclude={0, 2}, k=2)
    assert ranked == [(3, pytest.approx(0.7)), (4, pytest.approx(0.3))]


def test_sorted_by_score_desc_with_index_tiebreak() -> None:
    scores = np.array([0.5, 0.9, 0.5, 0.9, 0.1])
    ranked = rank_top_k(scores, exclude=(), k=5)
    assert [i for i, _ in ranked] == [1, 3, 0, 2, 4]
    values = [s for _, s in ranked]
    assert values == sorted(values, reverse=True)


def test_short_result_when_few_items_remain() -> None:
    scores = np.arange(4, dtype=np.float32)
    with pytest.warns(EmptyResultWarning):
        ranked = rank_top_k(scores, exclude=[0, 1, 2], k=3)
    assert ranked == [(3, 3.0)]

    with pytest.warns(EmptyResultWarning):
        assert rank_top_k(scores, exclude=range(4), k=2) == []


def test_non_positive_k_is_empty() -> None:
    assert rank_top_k(np.ones(3), exclude=(), k=0) == []


def test_retrieve_uses_dot_product_scores() -> None:
    model = build_model(2, 4, TwoTowerConfig(embedding_dim=2))
    with torch.no_grad():
        model.user_tower.embedding.weight.copy_(torch.tensor([[1.0, 0.0], [0.0, 1.0]]))
        model.item_tower.embedding.weight.copy_(torch.tensor([[3.0, 0.0], [1.0, 5.0], [2.0, 2.0], [-1.0, 4.0]]))

    assert [i for i, _ in retrieve(model, 0, exclude=(), k=4)] == [0, 2, 1, 3]
    assert retrieve(model, 1, exclude={1}, k=2) == [(3, 4.0), (2, 2.0)]
