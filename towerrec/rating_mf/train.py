from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import torch
from torch.utils.data import DataLoader, Dataset

from ..data import MAX_RATING, MIN_RATING, InteractionStore
from ..utils import device_from_str, make_torch_generator
from .model import MatrixFactorization


logger = logging.getLogger(__name__)


class RatingsDataset(Dataset):
    def __init__(self, user_idx: np.ndarray, item_idx: np.ndarray, rating: np.ndarray) -> None:
        self.user_idx = torch.as_tensor(np.asarray(user_idx, dtype=np.int64))
        self.item_idx = torch.as_tensor(np.asarray(item_idx, dtype=np.int64))
        self.rating = torch.as_tensor(np.asarray(rating, dtype=np.float32))

    def __len__(self) -> int:
        return int(len(self.user_idx))

    def __getitem__(self, i: int) -> dict[str, torch.Tensor]:
        return {
            "users": self.user_idx[i],
            "items": self.item_idx[i],
            "ratings": self.rating[i],
        }


@dataclass(frozen=True)
class RatingMFConfig:
    embed_dim: int = 20
    epochs: int = 5
    batch_size: int = 64
    lr: float = 1e-3
    weight_decay: float = 0.0
    seed: Optional[int] = None
    device: Optional[str] = None


@dataclass
class RatingMFResult:
    model: MatrixFactorization
    mean_rating: float
    epoch_rmse: list[float] = field(default_factory=list)


def _clamp(x: torch.Tensor) -> torch.Tensor:
    return torch.clamp(x, min=float(MIN_RATING), max=float(MAX_RATING))


def train_rating_mf(store: InteractionStore, cfg: RatingMFConfig | None = None) -> RatingMFResult:
    """Fit an explicit-rating MF model on every interaction in `store` (MSE, Adam)."""
    cfg = cfg or RatingMFConfig()
    inter = store.interactions
    if inter.empty:
        raise ValueError("No interactions to train on")

    users, items = store.training_arrays()
    ratings = inter["rating"].to_numpy(dtype=np.float32)
    mean_rating = float(ratings.mean())

    generator = make_torch_generator(cfg.seed)
    loader = DataLoader(
        RatingsDataset(users, items, ratings),
        batch_size=int(cfg.batch_size),
        shuffle=True,
        num_workers=0,
        generator=generator,
    )

    torch_device = device_from_str(cfg.device)
    model = MatrixFactorization(
        store.num_users, store.num_items, embed_dim=int(cfg.embed_dim), generator=generator
    ).to(torch_device)
    optimizer = torch.optim.Adam(model.parameters(), lr=float(cfg.lr), weight_decay=float(cfg.weight_decay))
    loss_fn = torch.nn.MSELoss()

    logger.info(
        "RatingMF: users=%d items=%d ratings=%d mean_rating=%.4f epochs=%d batch_size=%d",
        store.num_users,
        store.num_items,
        len(ratings),
        mean_rating,
        int(cfg.epochs),
        int(cfg.batch_size),
    )

    result = RatingMFResult(model=model, mean_rating=mean_rating)
    model.train()
    for epoch in range(int(cfg.epochs)):
        total_loss = 0.0
        n = 0
        for batch in loader:
            u = batch["users"].to(torch_device)
            m = batch["items"].to(torch_device)
            r = batch["ratings"].to(torch_device)

            preds = _clamp(model(u, m) + mean_rating)
            loss = loss_fn(preds, r)
            optimizer.zero_grad(set_to_none=True)
            loss.backward()
            optimizer.step()

            bs = int(u.shape[0])
            total_loss += float(loss.item()) * bs
            n += bs

        rmse = float(np.sqrt(total_loss / max(1, n)))
        result.epoch_rmse.append(rmse)
        logger.info("RatingMF epoch=%d train_rmse=%.4f", epoch + 1, rmse)

    model.eval()
    return result


def predict_rating(result: RatingMFResult, user_idx: int, item_idx: int) -> float:
    """Predicted rating clamped to the MovieLens 1..5 scale."""
    model = result.model
    device = next(model.parameters()).device
    with torch.no_grad():
        u = torch.tensor([int(user_idx)], dtype=torch.long, device=device)
        m = torch.tensor([int(item_idx)], dtype=torch.long, device=device)
        return float(_clamp(model(u, m) + result.mean_rating).item())
