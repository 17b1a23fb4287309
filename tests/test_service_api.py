from __future__ import annotations

import pytest

pytest.importorskip("fastapi.testclient")
from fastapi.testclient import TestClient  # noqa: E402

from towerrec.config import TwoTowerConfig  # noqa: E402
from towerrec.service.app import create_app  # noqa: E402


@pytest.fixture()
def client():
    cfg = TwoTowerConfig(
        embedding_dim=4,
        hidden_dim=8,
        epochs=3,
        batch_size=4,
        min_ratings_for_test=2,
        top_k=3,
        pca_sample=2,
        seed=0,
        device="cpu",
    )
    with TestClient(create_app(cfg)) as c:
        yield c


def _load(client, tiny_movielens):
    items_path, ratings_path = tiny_movielens
    return client.post("/load", json={"items_path": str(items_path), "ratings_path": str(ratings_path)})


def test_load_train_recommend_flow(client, tiny_movielens) -> None:
    r = _load(client, tiny_movielens)
    assert r.status_code == 200
    assert r.json() == {"users": 4, "items": 5, "interactions": 12, "eligible_users": 4}

    r = client.post("/train", json={"tower": "lookup"})
    assert r.status_code == 200
    body = r.json()
    assert body["batches"] == 9
    assert len(body["loss_history"]) == 9

    r = client.post("/recommend", json={"userId": 10, "k": 3})
    assert r.status_code == 200
    results = r.json()["results"]
    assert list(results) == ["lookup"]
    ids = [m["movieId"] for m in results["lookup"]]
    assert len(set(ids)) == 3 and not {1, 2} & set(ids)


def test_recommend_before_training_is_conflict(client, tiny_movielens) -> None:
    _load(client, tiny_movielens)
    r = client.post("/recommend", json={"userId": 10, "k": 3})
    assert r.status_code == 409


def test_load_without_paths_or_config_is_bad_request(client) -> None:
    r = client.post("/load", json={})
    assert r.status_code == 400


def test_load_of_missing_file_is_bad_request(client, tmp_path) -> None:
    r = client.post("/load", json={"items_path": str(tmp_path / "u.item"), "ratings_path": str(tmp_path / "u.data")})
    assert r.status_code == 400
    assert "Cannot read" in r.json()["detail"]


def test_history_eligible_and_unknown_user(client, tiny_movielens) -> None:
    _load(client, tiny_movielens)

    r = client.get("/users/eligible")
    assert r.json() == {"min_ratings": 2, "users": [10, 20, 30, 40]}

    r = client.get("/users/10/history", params={"k": 2})
    assert r.status_code == 200
    assert [m["movieId"] for m in r.json()["results"]] == [2, 1]

    assert client.get("/users/999/history").status_code == 404


def test_projection_and_validation(client, tiny_movielens) -> None:
    _load(client, tiny_movielens)
    client.post("/train", json={"tower": "mlp"})

    r = client.get("/projection", params={"tower": "mlp", "sample_size": 4})
    assert r.status_code == 200
    assert len(r.json()["points"]) == 4

    assert client.get("/projection", params={"tower": "lookup"}).status_code == 409
    assert client.post("/recommend", json={"userId": 10, "k": 0}).status_code == 422
    assert client.post("/recommend", json={"userId": 999, "k": 2, "tower": "mlp"}).status_code == 404


def test_query_defaults_follow_config(client, tiny_movielens) -> None:
    _load(client, tiny_movielens)
    client.post("/train", json={"tower": "lookup"})

    history = client.get("/users/10/history").json()["results"]
    assert len(history) == 3

    points = client.get("/projection", params={"tower": "lookup"}).json()["points"]
    assert len(points) == 2
