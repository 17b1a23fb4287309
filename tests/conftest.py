from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterable, Sequence

import numpy as np
import pytest

# Ensure `import towerrec...` works when pytest uses importlib import mode.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from towerrec.config import TwoTowerConfig  # noqa: E402

NUM_GENRES = 19


def item_line(item_id: int, title: str, genres: Iterable[int] = ()) -> str:
    flags = ["0"] * NUM_GENRES
    for g in genres:
        flags[g] = "1"
    return "|".join([str(item_id), title, "01-Jan-1995", "", f"http://us.imdb.com/M/{item_id}", *flags])


def rating_line(user_id: int, item_id: int, rating: int, ts: int) -> str:
    return f"{user_id}\t{item_id}\t{rating}\t{ts}"


def write_movielens(
    root: Path,
    items: Sequence[str],
    ratings: Sequence[str],
) -> tuple[Path, Path]:
    root.mkdir(parents=True, exist_ok=True)
    items_path = root / "u.item"
    ratings_path = root / "u.data"
    items_path.write_text("\n".join(items) + "\n", encoding="latin-1")
    ratings_path.write_text("\n".join(ratings) + "\n", encoding="latin-1")
    return items_path, ratings_path


@pytest.fixture()
def tiny_movielens(tmp_path: Path) -> tuple[Path, Path]:
    """4 users, 5 items, 12 interactions; every user has rated exactly 2 distinct items."""
    items = [
        item_line(1, "Toy Story (1995)", [3, 4, 5]),
        item_line(2, "GoldenEye (1995)", [1, 2, 16]),
        item_line(3, "Four Rooms (1995)", [16]),
        item_line(4, "Get Shorty (1995)", [1, 5, 8]),
        item_line(5, "Copycat (1995)", [6, 8, 16]),
    ]
    ratings = [
        rating_line(10, 1, 5, 100),
        rating_line(20, 3, 4, 101),
        rating_line(10, 2, 3, 102),
        rating_line(30, 5, 2, 103),
        rating_line(20, 4, 5, 104),
        rating_line(40, 2, 4, 105),
        rating_line(10, 1, 4, 106),
        rating_line(30, 1, 5, 107),
        rating_line(40, 3, 1, 108),
        rating_line(20, 3, 3, 109),
        rating_line(10, 2, 5, 110),
        rating_line(30, 5, 4, 111),
    ]
    return write_movielens(tmp_path / "tiny", items, ratings)


@pytest.fixture()
def small_movielens(tmp_path: Path) -> tuple[Path, Path]:
    """30 users x 40 items; each user rates 22 distinct items, so all are eligible at 20."""
    rng = np.random.default_rng(7)
    items = [
        item_line(i, f"Movie {i} ({1980 + i % 20})", rng.choice(NUM_GENRES, size=2, replace=False).tolist())
        for i in range(1, 41)
    ]
    ratings: list[str] = []
    ts = 1000
    for u in range(1, 31):
        for m in rng.choice(np.arange(1, 41), size=22, replace=False).tolist():
            ratings.append(rating_line(u, int(m), int(rng.integers(1, 6)), ts))
            ts += 1
    return write_movielens(tmp_path / "small", items, ratings)


@pytest.fixture()
def fast_cfg() -> TwoTowerConfig:
    return TwoTowerConfig(
        embedding_dim=8,
        hidden_dim=16,
        batch_size=64,
        epochs=3,
        learning_rate=0.01,
        top_k=10,
        min_ratings_for_test=20,
        pca_sample=25,
        seed=123,
        device="cpu",
    )
