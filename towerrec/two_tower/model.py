from __future__ import annotations

from typing import Optional

import numpy as np
import torch
import torch.nn as nn

from ..config import TwoTowerConfig
from .towers import FeatureMLPTower, LookupTower, Tower


class TwoTowerModel(nn.Module):
    """User tower + item tower scored by dot product.

    `forward` returns the B x B in-batch affinity matrix: entry (i, j) is
    dot(user_i, item_j), so the diagonal holds the observed pairs.
    """

    def __init__(self, user_tower: Tower, item_tower: Tower) -> None:
        super().__init__()
        if user_tower.embedding_dim != item_tower.embedding_dim:
            raise ValueError(
                f"Tower widths differ: user={user_tower.embedding_dim} item={item_tower.embedding_dim}"
            )
        self.user_tower = user_tower
        self.item_tower = item_tower

    @property
    def embedding_dim(self) -> int:
        return int(self.user_tower.embedding_dim)

    @property
    def num_items(self) -> int:
        return int(self.item_tower.num_entities)

    @property
    def item_tower_kind(self) -> str:
        return "mlp" if isinstance(self.item_tower, FeatureMLPTower) else "lookup"

    def user_embeddings(self, user_idx: torch.Tensor) -> torch.Tensor:
        return self.user_tower.embed(user_idx)

    def item_embeddings(self, item_idx: torch.Tensor) -> torch.Tensor:
        return self.item_tower.embed(item_idx)

    def all_item_embeddings(self) -> torch.Tensor:
        return self.item_tower.embed_all()

    def forward(self, user_idx: torch.Tensor, item_idx: torch.Tensor) -> torch.Tensor:
        u = self.user_embeddings(user_idx)
        i = self.item_embeddings(item_idx)
        return u @ i.T

    def score_all_items(self, user_idx: int) -> torch.Tensor:
        """Scores of one user against every item in the vocabulary, shape [num_items]."""
        device = next(self.parameters()).device
        u = self.user_embeddings(torch.tensor([int(user_idx)], dtype=torch.long, device=device))
        return (self.all_item_embeddings() @ u.T).squeeze(-1)

    def embed_item_features(self, features: torch.Tensor | np.ndarray) -> torch.Tensor:
        """Embed raw feature rows (cold start). Only feature-conditioned towers support this."""
        if not isinstance(self.item_tower, FeatureMLPTower):
            raise TypeError("Lookup item towers cannot embed items outside their vocabulary")
        device = next(self.parameters()).device
        x = torch.as_tensor(np.asarray(features, dtype=np.float32), device=device)
        if x.ndim == 1:
            x = x.unsqueeze(0)
        return self.item_tower(x)


def build_model(
    num_users: int,
    num_items: int,
    cfg: TwoTowerConfig,
    *,
    item_features: Optional[np.ndarray] = None,
    generator: Optional[torch.Generator] = None,
) -> TwoTowerModel:
    """Construct a model; the item-tower variant is chosen by `cfg.item_tower`.

    Both towers draw their initial weights from `generator`, so a seeded generator
    gives identical models without touching torch's global RNG.
    """
    user_tower = LookupTower(num_users, cfg.embedding_dim, init_std=cfg.init_std, generator=generator)

    if cfg.item_tower == "mlp":
        if item_features is None:
            raise ValueError("item_tower='mlp' requires item_features")
        if len(item_features) != int(num_items):
            raise ValueError(f"item_features has {len(item_features)} rows for {num_items} items")
        item_tower: Tower = FeatureMLPTower(
            torch.as_tensor(np.asarray(item_features, dtype=np.float32)),
            cfg.embedding_dim,
            hidden_dim=cfg.hidden_dim,
            generator=generator,
        )
    else:
        item_tower = LookupTower(num_items, cfg.embedding_dim, init_std=cfg.init_std, generator=generator)

    return TwoTowerModel(user_tower, item_tower)
