from __future__ import annotations

from typing import Optional

import torch
import torch.nn as nn
from torch.nn.utils import skip_init


class MatrixFactorization(nn.Module):
    """Explicit-rating MF: dot(user_emb, item_emb) + user/item/global biases.

    The dataset mean rating is added outside the model, so `global_bias` only learns
    the residual offset.
    """

    def __init__(
        self,
        n_users: int,
        n_items: int,
        *,
        embed_dim: int = 20,
        generator: Optional[torch.Generator] = None,
    ) -> None:
        super().__init__()
        self.user_embed = skip_init(nn.Embedding, int(n_users), int(embed_dim))
        self.item_embed = skip_init(nn.Embedding, int(n_items), int(embed_dim))

        self.user_bias = skip_init(nn.Embedding, int(n_users), 1)
        self.item_bias = skip_init(nn.Embedding, int(n_items), 1)
        self.global_bias = nn.Parameter(torch.zeros(1))

        nn.init.normal_(self.user_embed.weight, std=0.05, generator=generator)
        nn.init.normal_(self.item_embed.weight, std=0.05, generator=generator)
        nn.init.zeros_(self.user_bias.weight)
        nn.init.zeros_(self.item_bias.weight)

    def forward(self, user_idx: torch.Tensor, item_idx: torch.Tensor) -> torch.Tensor:
        u = self.user_embed(user_idx)
        m = self.item_embed(item_idx)
        dot = (u * m).sum(dim=1)
        return dot + self.user_bias(user_idx).squeeze(-1) + self.item_bias(item_idx).squeeze(-1) + self.global_bias
