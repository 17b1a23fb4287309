from __future__ import annotations

import enum
import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

import numpy as np
import torch
import torch.nn.functional as F

from ..config import TwoTowerConfig
from ..errors import TrainingCancelled, TrainingFailure
from ..utils import device_from_str, make_torch_generator
from .model import TwoTowerModel, build_model


logger = logging.getLogger(__name__)


class TrainerState(enum.Enum):
    IDLE = "idle"
    TRAINING = "training"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProgressEvent:
    epoch: int  # 1-based
    batch: int  # 1-based within the epoch
    num_batches: int
    loss: float


class CancelSignal(Protocol):
    def is_set(self) -> bool: ...


ProgressCallback = Callable[[ProgressEvent], None]


def in_batch_softmax_loss(user_embs: torch.Tensor, item_embs: torch.Tensor) -> torch.Tensor:
    """Sampled-softmax loss with in-batch negatives.

    Row i of `user_embs @ item_embs.T` is a B-way classification whose correct class is
    i; every other item in the batch acts as a negative for user i.
    """
    logits = user_embs @ item_embs.T
    labels = torch.arange(logits.shape[0], device=logits.device)
    return F.cross_entropy(logits, labels)


class ContrastiveTrainer:
    """Mini-batch Adam training of a TwoTowerModel on positive (user, item) pairs.

    A trainer runs at most once. After a failure or cancellation the caller must build
    a fresh model and trainer; nothing from the aborted run is reused.
    """

    def __init__(
        self,
        model: TwoTowerModel,
        cfg: TwoTowerConfig,
        *,
        generator: Optional[torch.Generator] = None,
    ) -> None:
        self.cfg = cfg
        self.device = device_from_str(cfg.device)
        self.model = model.to(self.device)
        self.optimizer = torch.optim.Adam(self.model.parameters(), lr=float(cfg.learning_rate))
        self.generator = generator if generator is not None else make_torch_generator(cfg.seed)
        self.state = TrainerState.IDLE
        self.loss_history: list[float] = []

    def train_step(self, user_idx: torch.Tensor, item_idx: torch.Tensor) -> float:
        """One Adam step on a batch of positive pairs; returns the scalar loss."""
        self.model.train()
        user_idx = user_idx.to(self.device)
        item_idx = item_idx.to(self.device)

        user_embs = self.model.user_embeddings(user_idx)
        item_embs = self.model.item_embeddings(item_idx)
        loss = in_batch_softmax_loss(user_embs, item_embs)

        self.optimizer.zero_grad(set_to_none=True)
        loss.backward()
        self.optimizer.step()

        value = float(loss.detach().cpu().item())
        if not math.isfinite(value):
            raise FloatingPointError(f"non-finite loss {value}")
        return value

    def fit(
        self,
        user_idx: np.ndarray,
        item_idx: np.ndarray,
        *,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelSignal] = None,
    ) -> list[float]:
        """Train for `cfg.epochs` epochs and return the per-batch loss history."""
        if self.state is not TrainerState.IDLE:
            raise RuntimeError(f"Trainer already used (state={self.state.value}); build a new one")

        users = torch.as_tensor(np.asarray(user_idx), dtype=torch.long)
        items = torch.as_tensor(np.asarray(item_idx), dtype=torch.long)
        if users.shape != items.shape or users.ndim != 1:
            raise ValueError(f"user_idx/item_idx must be equal-length 1D arrays, got {users.shape} and {items.shape}")
        n = int(users.shape[0])
        if n == 0:
            raise ValueError("No interactions to train on")

        batch_size = int(self.cfg.batch_size)
        epochs = int(self.cfg.epochs)
        num_batches = math.ceil(n / batch_size)
        log_every = int(self.cfg.log_every)

        logger.info(
            "Two-tower training: item_tower=%s interactions=%d epochs=%d batch_size=%d batches/epoch=%d device=%s",
            self.model.item_tower_kind,
            n,
            epochs,
            batch_size,
            num_batches,
            self.device,
        )

        self.state = TrainerState.TRAINING
        try:
            for epoch in range(epochs):
                order = torch.randperm(n, generator=self.generator)
                epoch_loss = 0.0
                for b in range(num_batches):
                    if cancel is not None and cancel.is_set():
                        raise TrainingCancelled(f"Cancelled at epoch {epoch + 1} batch {b + 1}")

                    idx = order[b * batch_size : (b + 1) * batch_size]
                    loss = self.train_step(users[idx], items[idx])
                    epoch_loss += loss
                    self.loss_history.append(loss)

                    if b % log_every == 0 or b == num_batches - 1:
                        logger.info(
                            "Epoch %d/%d | Batch %d/%d | loss %.6f", epoch + 1, epochs, b + 1, num_batches, loss
                        )
                        if progress is not None:
                            progress(ProgressEvent(epoch=epoch + 1, batch=b + 1, num_batches=num_batches, loss=loss))

                logger.info("Epoch %d/%d | mean loss %.6f", epoch + 1, epochs, epoch_loss / num_batches)
        except TrainingCancelled:
            self.state = TrainerState.CANCELLED
            raise
        except Exception as exc:
            self.state = TrainerState.FAILED
            raise TrainingFailure(f"Training step failed: {exc}") from exc

        self.model.eval()
        self.model.requires_grad_(False)
        self.state = TrainerState.COMPLETED
        logger.info("Two-tower training complete: %d batches", len(self.loss_history))
        return list(self.loss_history)


# ----- Artifacts -----


@dataclass(frozen=True)
class TwoTowerArtifacts:
    model_path: Path
    meta_path: Path
    loss_history_path: Path


def save_artifacts(
    model: TwoTowerModel,
    cfg: TwoTowerConfig,
    loss_history: list[float],
    out_dir: Path,
    *,
    meta: Optional[dict[str, Any]] = None,
) -> TwoTowerArtifacts:
    """Persist weights, shapes and training metadata for a completed run."""
    out_dir = Path(out_dir).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)

    model_path = out_dir / "two_tower_model.pt"
    meta_path = out_dir / "two_tower_meta.json"
    loss_path = out_dir / "loss_history.json"

    num_users = int(model.user_tower.num_entities)
    torch.save(
        {
            "state_dict": model.state_dict(),
            "num_users": num_users,
            "num_items": model.num_items,
            "item_tower": model.item_tower_kind,
            "config": cfg.to_dict(),
        },
        model_path,
    )

    meta_out = dict(meta or {})
    meta_out.update(
        {
            "num_users": num_users,
            "num_items": model.num_items,
            "item_tower": model.item_tower_kind,
            "batches": len(loss_history),
            "final_loss": (float(loss_history[-1]) if loss_history else None),
            "train_config": cfg.to_dict(),
        }
    )
    meta_path.write_text(json.dumps(meta_out, indent=2, sort_keys=True) + "\n")
    loss_path.write_text(json.dumps([float(x) for x in loss_history]) + "\n")

    return TwoTowerArtifacts(model_path=model_path, meta_path=meta_path, loss_history_path=loss_path)


def load_model(model_path: Path) -> TwoTowerModel:
    """Rebuild a saved model in eval mode."""
    ckpt = torch.load(Path(model_path), map_location="cpu")
    cfg = TwoTowerConfig(**ckpt["config"])
    num_items = int(ckpt["num_items"])
    item_features = None
    if cfg.item_tower == "mlp":
        # Placeholder of the right shape; the saved feature buffer is restored below.
        item_features = np.zeros(tuple(ckpt["state_dict"]["item_tower.features"].shape), dtype=np.float32)

    model = build_model(int(ckpt["num_users"]), num_items, cfg, item_features=item_features)
    model.load_state_dict(ckpt["state_dict"])
    model.eval()
    model.requires_grad_(False)
    return model
