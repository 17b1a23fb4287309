from __future__ import annotations

import threading

import numpy as np
import pytest
import torch

from towerrec.config import TwoTowerConfig
from towerrec.errors import TrainingFailure, TrainingNotReadyError
from towerrec.rating_mf.train import RatingMFConfig
from towerrec.two_tower import recommender as recommender_module
from towerrec.two_tower.recommender import TwoTowerRecommender, train_towers
from towerrec.two_tower.train import ContrastiveTrainer


@pytest.fixture()
def tiny_cfg() -> TwoTowerConfig:
    return TwoTowerConfig(
        embedding_dim=4,
        hidden_dim=8,
        epochs=3,
        batch_size=4,
        learning_rate=0.01,
        min_ratings_for_test=2,
        pca_sample=10,
        seed=0,
        device="cpu",
    )


@pytest.fixture()
def loaded(tiny_movielens, tiny_cfg) -> TwoTowerRecommender:
    rec = TwoTowerRecommender(tiny_cfg)
    rec.load(*tiny_movielens)
    return rec


def test_end_to_end_tiny_catalog(loaded) -> None:
    history = loaded.train()

    assert len(history) == 9  # 3 epochs x ceil(12 / 4) batches
    assert loaded.is_ready()

    recs = loaded.recommend(10, k=3)
    ids = [r.movieId for r in recs]
    assert len(ids) == 3
    assert len(set(ids)) == 3
    assert set(ids).isdisjoint({1, 2})
    assert [r.score for r in recs] == sorted((r.score for r in recs), reverse=True)


def test_retrieval_before_training_is_not_ready(loaded) -> None:
    assert not loaded.is_ready()
    with pytest.raises(TrainingNotReadyError):
        loaded.recommend(10)
    with pytest.raises(TrainingNotReadyError):
        loaded.project_embeddings()
    with pytest.raises(TrainingNotReadyError):
        loaded.compare(10)


def test_operations_require_loaded_data(tiny_cfg) -> None:
    rec = TwoTowerRecommender(tiny_cfg)
    with pytest.raises(TrainingNotReadyError, match="No data loaded"):
        rec.train()
    with pytest.raises(TrainingNotReadyError):
        rec.historical_top(10)


def test_session_is_busy_while_training(loaded, tiny_movielens) -> None:
    seen = []

    def on_progress(event) -> None:
        seen.append(loaded.is_training)
        with pytest.raises(TrainingNotReadyError):
            loaded.recommend(10)
        with pytest.raises(TrainingNotReadyError):
            loaded.train()
        with pytest.raises(TrainingNotReadyError):
            loaded.load(*tiny_movielens)

    loaded.train(progress=on_progress)

    assert seen and all(seen)
    assert not loaded.is_training
    assert loaded.recommend(10, k=1)


@pytest.mark.parametrize("tower", ["lookup", "mlp"])
def test_recommendations_never_include_rated_items(loaded, tower) -> None:
    loaded.train(item_tower=tower)
    store = loaded.store

    for user_id in store.user_ids:
        rated = {store.item_ids[i] for i in store.rated_item_indices(store.user_index(user_id))}
        recs = loaded.recommend(user_id, k=10, tower=tower)
        assert len(recs) == store.num_items - len(rated)
        assert rated.isdisjoint(r.movieId for r in recs)


def test_compare_returns_one_list_per_trained_tower(loaded) -> None:
    histories = train_towers(loaded, ["lookup", "mlp"])

    assert set(histories) == {"lookup", "mlp"}
    assert loaded.trained_towers == ["lookup", "mlp"]
    lists = loaded.compare(20, k=2)
    assert set(lists) == {"lookup", "mlp"}
    assert all(len(v) == 2 for v in lists.values())


def test_feature_tower_scores_unseen_items(loaded) -> None:
    loaded.train(item_tower="mlp")
    feats = np.zeros((2, 19), dtype=np.float32)
    feats[0, [1, 7]] = 1.0
    feats[1, 12] = 1.0

    scores = loaded.score_features(30, feats)

    assert scores.shape == (2,)
    assert np.isfinite(scores).all()


def test_cold_start_scoring_requires_feature_tower(loaded) -> None:
    loaded.train(item_tower="lookup")
    with pytest.raises(TrainingNotReadyError):
        loaded.score_features(30, np.zeros(19, dtype=np.float32))


def test_projection_points_map_to_known_movies(loaded) -> None:
    loaded.train()
    points = loaded.project_embeddings(3, rng=np.random.default_rng(0))

    assert len(points) == 3
    assert {p.movieId for p in points} <= set(loaded.store.item_ids)
    assert all(np.isfinite([p.x, p.y]).all() for p in points)
    assert len(loaded.project_embeddings()) == 5


def test_reload_discards_trained_towers(loaded, tiny_movielens) -> None:
    loaded.train()
    assert loaded.is_ready()

    loaded.load(*tiny_movielens)

    assert not loaded.is_ready()
    assert loaded.loss_history() == []
    with pytest.raises(TrainingNotReadyError):
        loaded.recommend(10)


def test_failed_training_leaves_no_model(loaded, monkeypatch) -> None:
    loaded.train()

    def broken_step(self, user_idx, item_idx):
        raise FloatingPointError("non-finite loss inf")

    monkeypatch.setattr(ContrastiveTrainer, "train_step", broken_step)
    with pytest.raises(TrainingFailure):
        loaded.train()

    assert not loaded.is_training
    assert not loaded.is_ready()
    with pytest.raises(TrainingNotReadyError):
        loaded.recommend(10)


def test_unknown_user_is_a_key_error(loaded) -> None:
    loaded.train()
    with pytest.raises(KeyError, match="999"):
        loaded.recommend(999)


def test_history_and_evaluation_pool(loaded) -> None:
    top = loaded.historical_top(10)
    assert [(r.movieId, r.rating, r.timestamp) for r in top] == [(2, 5, 110), (1, 5, 100), (1, 4, 106), (2, 3, 102)]
    assert top[0].title == "GoldenEye (1995)"
    assert top[0].year == 1995

    assert loaded.eligible_users() == [10, 20, 30, 40]
    assert loaded.sample_eligible_user(np.random.default_rng(0)) in {10, 20, 30, 40}


def test_rating_model_predicts_on_the_rating_scale(loaded) -> None:
    with pytest.raises(TrainingNotReadyError):
        loaded.predict_rating(10, 3)

    rmse = loaded.train_rating_model(RatingMFConfig(embed_dim=4, epochs=2, batch_size=4, seed=0, device="cpu"))

    assert len(rmse) == 2
    assert all(np.isfinite(rmse))
    assert 1.0 <= loaded.predict_rating(10, 3) <= 5.0


def test_second_run_or_reload_from_another_thread_is_refused(loaded, small_movielens, monkeypatch) -> None:
    inside = threading.Event()
    release = threading.Event()
    real_build_model = recommender_module.build_model

    def held_build_model(*args, **kwargs):
        inside.set()
        assert release.wait(timeout=30)
        return real_build_model(*args, **kwargs)

    monkeypatch.setattr(recommender_module, "build_model", held_build_model)
    errors: list[BaseException] = []

    def run() -> None:
        try:
            loaded.train(item_tower="lookup")
        except BaseException as exc:  # surfaced below
            errors.append(exc)

    worker = threading.Thread(target=run)
    worker.start()
    try:
        assert inside.wait(timeout=30)
        with pytest.raises(TrainingNotReadyError):
            loaded.train(item_tower="mlp")
        with pytest.raises(TrainingNotReadyError):
            loaded.load(*small_movielens)
    finally:
        release.set()
        worker.join(timeout=60)

    assert not errors
    assert loaded.store.num_users == 4
    assert loaded.trained_towers == ["lookup"]
    assert len(loaded.recommend(40, k=2, tower="lookup")) == 2


def test_seeded_training_is_repeatable_without_global_rng(loaded) -> None:
    before = torch.get_rng_state()

    first = loaded.train()
    first_weights = loaded.model().user_tower.embedding.weight.clone()
    second = loaded.train()

    assert first == second
    assert torch.equal(first_weights, loaded.model().user_tower.embedding.weight)
    assert torch.equal(torch.get_rng_state(), before)


def test_projection_rejects_empty_sample(loaded) -> None:
    loaded.train()
    with pytest.raises(ValueError):
        loaded.project_embeddings(0)
