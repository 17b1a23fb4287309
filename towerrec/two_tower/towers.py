from __future__ import annotations

from typing import Optional

import torch
import torch.nn as nn
from torch.nn.utils import skip_init


class Tower(nn.Module):
    """Maps a batch of entities to `[B, embedding_dim]` embeddings.

    `batch_input` converts entity indices into whatever the tower consumes, so callers
    can treat lookup and feature-conditioned towers the same way.
    """

    num_entities: int
    embedding_dim: int

    def batch_input(self, indices: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def all_inputs(self) -> torch.Tensor:
        raise NotImplementedError

    def embed(self, indices: torch.Tensor) -> torch.Tensor:
        return self(self.batch_input(indices))

    def embed_all(self) -> torch.Tensor:
        return self(self.all_inputs())


class LookupTower(Tower):
    """Trainable lookup table; can only embed entities it was built with.

    Weights are drawn from `generator` when given, otherwise from torch's global RNG.
    """

    def __init__(
        self,
        num_entities: int,
        embedding_dim: int,
        *,
        init_std: float = 0.05,
        generator: Optional[torch.Generator] = None,
    ) -> None:
        super().__init__()
        self.num_entities = int(num_entities)
        self.embedding_dim = int(embedding_dim)
        self.embedding = skip_init(nn.Embedding, self.num_entities, self.embedding_dim)
        nn.init.normal_(self.embedding.weight, mean=0.0, std=float(init_std), generator=generator)

    def batch_input(self, indices: torch.Tensor) -> torch.Tensor:
        return indices.long()

    def all_inputs(self) -> torch.Tensor:
        return torch.arange(self.num_entities, dtype=torch.long, device=self.embedding.weight.device)

    def forward(self, indices: torch.Tensor) -> torch.Tensor:
        return self.embedding(indices)


class FeatureMLPTower(Tower):
    """Two-layer perceptron over a fixed-width feature vector (multi-hot genres).

    The catalog feature matrix is kept as a buffer for index-based batches, but
    `forward` accepts any `[B, num_features]` matrix, including rows for items that
    never appeared in training.
    """

    def __init__(
        self,
        features: torch.Tensor,
        embedding_dim: int,
        *,
        hidden_dim: int = 64,
        generator: Optional[torch.Generator] = None,
    ) -> None:
        super().__init__()
        features = torch.as_tensor(features, dtype=torch.float32)
        if features.ndim != 2:
            raise ValueError(f"Expected 2D feature matrix, got shape={tuple(features.shape)}")

        self.num_entities = int(features.shape[0])
        self.num_features = int(features.shape[1])
        self.embedding_dim = int(embedding_dim)
        self.register_buffer("features", features.clone())

        self.mlp = nn.Sequential(
            skip_init(nn.Linear, self.num_features, int(hidden_dim)),
            nn.ReLU(),
            skip_init(nn.Linear, int(hidden_dim), self.embedding_dim),
        )
        hidden, _, output = self.mlp
        nn.init.kaiming_normal_(hidden.weight, nonlinearity="relu", generator=generator)
        nn.init.zeros_(hidden.bias)
        nn.init.xavier_uniform_(output.weight, generator=generator)
        nn.init.zeros_(output.bias)

    def batch_input(self, indices: torch.Tensor) -> torch.Tensor:
        return self.features[indices.long()]

    def all_inputs(self) -> torch.Tensor:
        return self.features

    def forward(self, features: torch.Tensor) -> torch.Tensor:
        if features.shape[-1] != self.num_features:
            raise ValueError(f"Expected {self.num_features} features per row, got {features.shape[-1]}")
        return self.mlp(features.float())
