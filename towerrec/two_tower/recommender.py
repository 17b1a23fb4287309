from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Sequence

import numpy as np
import torch

from ..config import ITEM_TOWERS, TwoTowerConfig
from ..data import InteractionStore, Source, load_movielens
from ..errors import TrainingNotReadyError
from ..projection import project_2d, to_points
from ..rating_mf.train import RatingMFConfig, RatingMFResult, predict_rating, train_rating_mf
from ..utils import make_torch_generator
from .model import TwoTowerModel, build_model
from .retrieval import retrieve
from .train import CancelSignal, ContrastiveTrainer, ProgressCallback


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecommendedMovie:
    movieId: int
    score: float
    title: str | None = None
    year: int | None = None


@dataclass(frozen=True)
class RatedMovie:
    movieId: int
    rating: int
    timestamp: int
    title: str | None = None
    year: int | None = None


@dataclass(frozen=True)
class ProjectedMovie:
    x: float
    y: float
    movieId: int
    title: str | None = None


class TwoTowerRecommender:
    """One data load plus the towers trained on it.

    All state lives on the instance; create one per dataset. Retrieval and projection
    raise TrainingNotReadyError until a run for the requested tower has completed,
    and for every tower while any run is in progress.
    """

    def __init__(self, cfg: TwoTowerConfig | None = None) -> None:
        self.cfg = cfg or TwoTowerConfig()
        self.store: Optional[InteractionStore] = None
        self._models: dict[str, TwoTowerModel] = {}
        self._loss_history: dict[str, list[float]] = {}
        self._training: Optional[str] = None
        self._rating_mf: Optional[RatingMFResult] = None
        # Held for the whole of every load and training run; never waited on.
        self._busy = threading.Lock()

    @contextmanager
    def _exclusive(self, what: str) -> Iterator[None]:
        if not self._busy.acquire(blocking=False):
            active = f"training in progress ({self._training})" if self._training else "another load or run in progress"
            raise TrainingNotReadyError(f"Cannot {what}: {active}")
        try:
            yield
        finally:
            self._busy.release()

    # ----- data -----

    def load(self, item_source: Source, interaction_source: Source, *, strict: bool = False) -> InteractionStore:
        """Parse both sources and discard anything trained on a previous load."""
        with self._exclusive("reload data"):
            store = load_movielens(
                item_source,
                interaction_source,
                max_interactions=self.cfg.max_interactions,
                top_k=self.cfg.top_k,
                num_genres=self.cfg.num_genres,
                strict=strict,
            )
            self._models.clear()
            self._loss_history.clear()
            self._rating_mf = None
            self.store = store
        return store

    def _require_store(self) -> InteractionStore:
        if self.store is None:
            raise TrainingNotReadyError("No data loaded; call load() first")
        return self.store

    # ----- training -----

    def train(
        self,
        *,
        item_tower: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelSignal] = None,
    ) -> list[float]:
        """Train a fresh model for `item_tower` ('lookup' or 'mlp') and return its loss history.

        A failed or cancelled run leaves no model behind for that tower. Only one load
        or training run is accepted at a time; a second one raises TrainingNotReadyError.
        """
        cfg = self.cfg.replace(item_tower=item_tower)

        with self._exclusive("train"):
            store = self._require_store()
            generator = make_torch_generator(cfg.seed)
            model = build_model(
                store.num_users,
                store.num_items,
                cfg,
                item_features=store.item_features,
                generator=generator,
            )
            trainer = ContrastiveTrainer(model, cfg, generator=generator)
            users, items = store.training_arrays()

            self._models.pop(cfg.item_tower, None)
            self._loss_history.pop(cfg.item_tower, None)
            self._training = cfg.item_tower
            try:
                history = trainer.fit(users, items, progress=progress, cancel=cancel)
            finally:
                self._training = None

            self._models[cfg.item_tower] = trainer.model
            self._loss_history[cfg.item_tower] = history
        return list(history)

    @property
    def is_training(self) -> bool:
        return self._training is not None

    @property
    def trained_towers(self) -> list[str]:
        return [t for t in ITEM_TOWERS if t in self._models]

    def is_ready(self, tower: Optional[str] = None) -> bool:
        return self._training is None and (tower or self.cfg.item_tower) in self._models

    def loss_history(self, tower: Optional[str] = None) -> list[float]:
        return list(self._loss_history.get(tower or self.cfg.item_tower, []))

    def model(self, tower: Optional[str] = None) -> TwoTowerModel:
        tower = tower or self.cfg.item_tower
        if self._training is not None:
            raise TrainingNotReadyError(f"Model not ready: training in progress ({self._training})")
        if tower not in self._models:
            raise TrainingNotReadyError(f"Model not ready: no completed training run for tower {tower!r}")
        return self._models[tower]

    # ----- retrieval -----

    def recommend(self, user_id: int, k: Optional[int] = None, *, tower: Optional[str] = None) -> list[RecommendedMovie]:
        """Top-k unrated movies for an external user id, best first."""
        model = self.model(tower)
        store = self._require_store()
        uidx = store.user_index(user_id)
        k = self.cfg.top_k if k is None else int(k)

        ranked = retrieve(model, uidx, exclude=store.rated_item_indices(uidx), k=k)
        out: list[RecommendedMovie] = []
        for item_idx, score in ranked:
            item = store.item(item_idx)
            out.append(RecommendedMovie(movieId=item.item_id, score=score, title=item.title, year=item.year))
        return out

    def compare(self, user_id: int, k: Optional[int] = None) -> dict[str, list[RecommendedMovie]]:
        """Independent top-k lists from every trained tower for the same user."""
        if self._training is not None:
            raise TrainingNotReadyError(f"Model not ready: training in progress ({self._training})")
        if not self._models:
            raise TrainingNotReadyError("Model not ready: no completed training run")
        return {tower: self.recommend(user_id, k, tower=tower) for tower in self.trained_towers}

    def score_features(self, user_id: int, features: np.ndarray) -> np.ndarray:
        """Scores of a user against raw genre feature rows, for items outside the catalog.

        Requires a trained 'mlp' tower.
        """
        model = self.model("mlp")
        uidx = self._require_store().user_index(user_id)
        with torch.no_grad():
            device = next(model.parameters()).device
            u = model.user_embeddings(torch.tensor([uidx], dtype=torch.long, device=device))
            item_embs = model.embed_item_features(features)
            return (item_embs @ u.T).squeeze(-1).cpu().numpy()

    # ----- history / evaluation pool -----

    def historical_top(self, user_id: int, k: Optional[int] = None) -> list[RatedMovie]:
        store = self._require_store()
        uidx = store.user_index(user_id)
        out: list[RatedMovie] = []
        for inter in store.historical_top_k(uidx, k):
            item = store.item(inter.item_idx)
            out.append(
                RatedMovie(
                    movieId=item.item_id,
                    rating=inter.rating,
                    timestamp=inter.timestamp,
                    title=item.title,
                    year=item.year,
                )
            )
        return out

    def eligible_users(self) -> list[int]:
        return self._require_store().eligible_users(self.cfg.min_ratings_for_test)

    def sample_eligible_user(self, rng: Optional[np.random.Generator] = None) -> Optional[int]:
        """A random user from the evaluation pool, or None when the pool is empty."""
        pool = self.eligible_users()
        if not pool:
            return None
        rng = rng if rng is not None else np.random.default_rng(self.cfg.seed)
        return int(pool[int(rng.integers(len(pool)))])

    # ----- projection -----

    def project_embeddings(
        self,
        sample_size: Optional[int] = None,
        *,
        tower: Optional[str] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> list[ProjectedMovie]:
        model = self.model(tower)
        store = self._require_store()
        with torch.no_grad():
            embeddings = model.all_item_embeddings().detach().cpu().numpy()

        rng = rng if rng is not None else np.random.default_rng(self.cfg.seed)
        sample_size = self.cfg.pca_sample if sample_size is None else int(sample_size)
        idx, coords = project_2d(embeddings, sample_size=sample_size, rng=rng)
        out: list[ProjectedMovie] = []
        for p in to_points(idx, coords):
            out.append(
                ProjectedMovie(
                    x=p.x,
                    y=p.y,
                    movieId=store.item_ids[p.item_idx],
                    title=str(store.items.at[p.item_idx, "title"]),
                )
            )
        return out

    # ----- rating prediction -----

    def train_rating_model(self, cfg: RatingMFConfig | None = None) -> list[float]:
        """Fit the explicit-rating MF model; returns per-epoch training RMSE."""
        cfg = cfg or RatingMFConfig(seed=self.cfg.seed, device=self.cfg.device)
        with self._exclusive("train the rating model"):
            result = train_rating_mf(self._require_store(), cfg)
            self._rating_mf = result
        return list(result.epoch_rmse)

    def predict_rating(self, user_id: int, movie_id: int) -> float:
        if self._rating_mf is None:
            raise TrainingNotReadyError("Rating model not trained; call train_rating_model() first")
        store = self._require_store()
        return predict_rating(self._rating_mf, store.user_index(user_id), store.item_index(movie_id))


def train_towers(
    rec: TwoTowerRecommender,
    towers: Sequence[str],
    *,
    progress: Optional[ProgressCallback] = None,
) -> dict[str, list[float]]:
    """Train each requested tower in turn; returns loss histories keyed by tower."""
    return {tower: rec.train(item_tower=tower, progress=progress) for tower in towers}
