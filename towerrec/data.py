"""MovieLens-100K parsing and the in-memory interaction store.

`u.item` is pipe-delimited (id | title | release date | video date | url | 19 genre
flags) and `u.data` is tab-delimited (user id, item id, rating, timestamp). Both are
latin-1 encoded.

Indexing rules
--------------
- Items get dense indices in the order they are first seen while scanning metadata.
- Users get dense indices in order of first appearance in the interaction stream.
- Ratings that reference an item missing from the metadata are dropped.
"""

from __future__ import annotations

import io
import logging
import re
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Optional, TextIO, Union

import numpy as np
import pandas as pd

from .errors import DataError, EmptyResultWarning


logger = logging.getLogger(__name__)

Source = Union[str, Path, TextIO, io.BufferedIOBase]

GENRES: tuple[str, ...] = (
    "unknown",
    "Action",
    "Adventure",
    "Animation",
    "Children's",
    "Comedy",
    "Crime",
    "Documentary",
    "Drama",
    "Fantasy",
    "Film-Noir",
    "Horror",
    "Musical",
    "Mystery",
    "Romance",
    "Sci-Fi",
    "Thriller",
    "War",
    "Western",
)

ENCODING = "latin-1"
MIN_RATING = 1
MAX_RATING = 5

_TITLE_YEAR_RE = re.compile(r"\((\d{4})\)\s*$")

ITEM_COLUMNS = ("item_id", "item_idx", "title", "year")
RATING_COLUMNS = ("user_id", "item_id", "rating", "timestamp")


@dataclass(frozen=True)
class Interaction:
    user_idx: int
    item_idx: int
    rating: int
    timestamp: int


@dataclass(frozen=True)
class Item:
    item_id: int
    item_idx: int
    title: str
    year: Optional[int]
    genres: tuple[int, ...]

    @property
    def genre_names(self) -> list[str]:
        return [g for g, flag in zip(GENRES, self.genres) if flag]


def split_title_and_year(title: str) -> tuple[str, Optional[int]]:
    """Split a MovieLens title into (title_clean, year) when it ends with '(YYYY)'."""
    title = "" if title is None else str(title).strip()
    match = _TITLE_YEAR_RE.search(title)
    if not match:
        return title, None
    return title[: match.start()].rstrip(), int(match.group(1))


def read_lines(source: Source) -> list[str]:
    """Read a path or an open stream into a list of lines.

    Raises DataError when a path cannot be read.
    """
    if hasattr(source, "read"):
        text = source.read()  # type: ignore[union-attr]
        if isinstance(text, bytes):
            text = text.decode(ENCODING)
        return str(text).splitlines()

    path = Path(source)  # type: ignore[arg-type]
    try:
        return path.read_text(encoding=ENCODING).splitlines()
    except OSError as exc:
        raise DataError(f"Cannot read data source {path}: {exc}") from exc


class _LineSkipper:
    """Counts malformed lines, or raises on the first one in strict mode."""

    def __init__(self, name: str, *, strict: bool) -> None:
        self.name = name
        self.strict = strict
        self.skipped = 0

    def __call__(self, lineno: int, reason: str) -> None:
        if self.strict:
            raise DataError(f"{self.name} line {lineno}: {reason}")
        self.skipped += 1

    def report(self) -> None:
        if self.skipped:
            logger.warning("%s: skipped %d malformed line(s)", self.name, self.skipped)


def _genre_flags(parts: list[str], num_genres: int) -> tuple[int, ...]:
    if num_genres and len(parts) > num_genres + 1:
        tail = [p.strip() for p in parts[-num_genres:]]
        if all(t in ("0", "1") for t in tail):
            return tuple(int(t) for t in tail)
    return (0,) * num_genres


def parse_item_lines(
    lines: Iterable[str],
    *,
    num_genres: int = len(GENRES),
    strict: bool = False,
) -> tuple[pd.DataFrame, np.ndarray]:
    """Parse pipe-delimited item metadata.

    Returns
    -------
    (items, features)
        `items` has columns item_id, item_idx, title, year in index order;
        `features` is a float32 multi-hot matrix of shape [num_items, num_genres].
    """
    skip = _LineSkipper("items", strict=strict)
    seen: set[int] = set()
    rows: list[tuple[int, int, str, Optional[int]]] = []
    feats: list[tuple[int, ...]] = []

    for lineno, raw in enumerate(lines, start=1):
        line = raw.rstrip("\r\n")
        if not line.strip():
            continue
        parts = line.split("|")
        if len(parts) < 2:
            skip(lineno, "expected at least 2 pipe-delimited fields")
            continue
        try:
            item_id = int(parts[0].strip())
        except ValueError:
            skip(lineno, f"non-numeric item id {parts[0]!r}")
            continue
        title = parts[1].strip()
        if not title:
            skip(lineno, "missing title")
            continue
        if item_id in seen:
            continue
        seen.add(item_id)

        _, year = split_title_and_year(title)
        rows.append((item_id, len(rows), title, year))
        feats.append(_genre_flags(parts, num_genres))

    skip.report()

    items = pd.DataFrame(rows, columns=list(ITEM_COLUMNS))
    items["item_id"] = items["item_id"].astype("int64")
    items["item_idx"] = items["item_idx"].astype("int64")
    items["title"] = items["title"].astype("string")
    items["year"] = pd.array(items["year"].tolist(), dtype="Int64")
    features = np.asarray(feats, dtype=np.float32).reshape(len(rows), num_genres)
    return items, features


def parse_interaction_lines(
    lines: Iterable[str],
    *,
    max_interactions: Optional[int] = None,
    strict: bool = False,
) -> pd.DataFrame:
    """Parse tab-delimited (user, item, rating, timestamp) records.

    Only the first `max_interactions` well-formed records are kept; anything after the
    ceiling is dropped, not sampled.
    """
    skip = _LineSkipper("interactions", strict=strict)
    records: list[tuple[int, int, int, int]] = []
    dropped = 0

    for lineno, raw in enumerate(lines, start=1):
        line = raw.rstrip("\r\n")
        if not line.strip():
            continue
        parts = line.split("\t")
        if len(parts) < 4:
            skip(lineno, "expected 4 tab-delimited fields")
            continue
        try:
            user_id, item_id, rating, ts = (int(p.strip()) for p in parts[:4])
        except ValueError:
            skip(lineno, "non-numeric field")
            continue
        if not MIN_RATING <= rating <= MAX_RATING:
            skip(lineno, f"rating {rating} outside [{MIN_RATING}, {MAX_RATING}]")
            continue
        if max_interactions is not None and len(records) >= max_interactions:
            dropped += 1
            continue
        records.append((user_id, item_id, rating, ts))

    skip.report()
    if dropped:
        logger.info("interactions: ceiling of %d reached, dropped %d record(s)", max_interactions, dropped)

    return pd.DataFrame(records, columns=list(RATING_COLUMNS), dtype="int64")


def _top_rated_frame(df: pd.DataFrame, k: int) -> pd.DataFrame:
    # Rating desc, then most recent first; the stable sort keeps load order for full ties.
    ordered = df.sort_values(
        ["user_idx", "rating", "timestamp"],
        ascending=[True, False, False],
        kind="mergesort",
    )
    return ordered.groupby("user_idx", sort=False).head(int(k))


def _as_interactions(df: pd.DataFrame) -> Iterator[Interaction]:
    for row in df.itertuples(index=False):
        yield Interaction(
            user_idx=int(row.user_idx),
            item_idx=int(row.item_idx),
            rating=int(row.rating),
            timestamp=int(row.timestamp),
        )


@dataclass(frozen=True, eq=False)
class InteractionStore:
    """Read-only view of one data load: index maps, interactions and per-user history."""

    items: pd.DataFrame
    item_features: np.ndarray
    interactions: pd.DataFrame
    user_ids: tuple[int, ...]
    item_ids: tuple[int, ...]
    user_to_idx: dict[int, int]
    item_to_idx: dict[int, int]
    rated_items: dict[int, frozenset[int]]
    top_rated: dict[int, tuple[Interaction, ...]]
    top_k: int = 10

    @property
    def num_users(self) -> int:
        return len(self.user_ids)

    @property
    def num_items(self) -> int:
        return len(self.item_ids)

    @property
    def num_interactions(self) -> int:
        return int(len(self.interactions))

    @property
    def num_genres(self) -> int:
        return int(self.item_features.shape[1])

    def user_index(self, user_id: int) -> int:
        uid = int(user_id)
        if uid not in self.user_to_idx:
            raise KeyError(f"Unknown userId: {uid}")
        return self.user_to_idx[uid]

    def item_index(self, item_id: int) -> int:
        iid = int(item_id)
        if iid not in self.item_to_idx:
            raise KeyError(f"Unknown itemId: {iid}")
        return self.item_to_idx[iid]

    def item(self, item_idx: int) -> Item:
        row = self.items.iloc[int(item_idx)]
        year = row["year"]
        return Item(
            item_id=int(row["item_id"]),
            item_idx=int(row["item_idx"]),
            title=str(row["title"]),
            year=(None if pd.isna(year) else int(year)),
            genres=tuple(int(v) for v in self.item_features[int(item_idx)]),
        )

    def iter_interactions(self) -> Iterator[Interaction]:
        """Interactions in load order."""
        return _as_interactions(self.interactions)

    def rated_item_indices(self, user_idx: int) -> frozenset[int]:
        return self.rated_items.get(int(user_idx), frozenset())

    def historical_top_k(self, user_idx: int, k: int | None = None) -> list[Interaction]:
        """Top-k of a user's ratings by rating desc, then timestamp desc."""
        k = self.top_k if k is None else int(k)
        if k <= 0:
            return []
        uidx = int(user_idx)
        if k <= self.top_k:
            return list(self.top_rated.get(uidx, ()))[:k]
        rows = self.interactions[self.interactions["user_idx"] == uidx]
        return list(_as_interactions(_top_rated_frame(rows, k)))

    def eligible_users(self, min_ratings: int = 20) -> list[int]:
        """External ids of users with at least `min_ratings` rated items, in index order."""
        out = [
            self.user_ids[uidx]
            for uidx in range(self.num_users)
            if len(self.rated_item_indices(uidx)) >= int(min_ratings)
        ]
        if not out:
            warnings.warn(
                f"No users with at least {min_ratings} rated items",
                EmptyResultWarning,
                stacklevel=2,
            )
        return out

    def training_arrays(self) -> tuple[np.ndarray, np.ndarray]:
        """(user_idx, item_idx) int64 arrays aligned with `interactions`."""
        return (
            self.interactions["user_idx"].to_numpy(dtype=np.int64),
            self.interactions["item_idx"].to_numpy(dtype=np.int64),
        )


def build_store(
    items: pd.DataFrame,
    item_features: np.ndarray,
    ratings: pd.DataFrame,
    *,
    top_k: int = 10,
) -> InteractionStore:
    """Resolve ratings against item metadata and derive per-user history."""
    missing = [c for c in RATING_COLUMNS if c not in ratings.columns]
    if missing:
        raise DataError(f"ratings missing required columns: {missing}")
    if len(item_features) != len(items):
        raise DataError(f"item_features has {len(item_features)} rows for {len(items)} items")

    item_ids = tuple(int(i) for i in items["item_id"].tolist())
    item_to_idx = {iid: idx for idx, iid in enumerate(item_ids)}

    known = ratings["item_id"].isin(list(item_to_idx))
    n_unknown = int((~known).sum())
    if n_unknown:
        logger.warning("Dropping %d interaction(s) that reference items missing from metadata", n_unknown)

    df = ratings.loc[known, list(RATING_COLUMNS)].reset_index(drop=True).copy()
    codes, uniques = pd.factorize(df["user_id"], sort=False)
    df["user_idx"] = codes.astype(np.int64)
    df["item_idx"] = df["item_id"].map(item_to_idx).astype("int64")

    user_ids = tuple(int(u) for u in uniques.tolist())
    user_to_idx = {uid: idx for idx, uid in enumerate(user_ids)}

    rated_items = {
        int(uidx): frozenset(int(i) for i in grp.tolist())
        for uidx, grp in df.groupby("user_idx")["item_idx"]
    }

    history: dict[int, list[Interaction]] = {}
    for inter in _as_interactions(_top_rated_frame(df, top_k)):
        history.setdefault(inter.user_idx, []).append(inter)
    top_rated = {uidx: tuple(rows) for uidx, rows in history.items()}

    return InteractionStore(
        items=items.reset_index(drop=True),
        item_features=np.asarray(item_features, dtype=np.float32),
        interactions=df,
        user_ids=user_ids,
        item_ids=item_ids,
        user_to_idx=user_to_idx,
        item_to_idx=item_to_idx,
        rated_items=rated_items,
        top_rated=top_rated,
        top_k=int(top_k),
    )


def load_movielens(
    item_source: Source,
    interaction_source: Source,
    *,
    max_interactions: Optional[int] = 80_000,
    top_k: int = 10,
    num_genres: int = len(GENRES),
    strict: bool = False,
) -> InteractionStore:
    """Load `u.item` + `u.data` into an InteractionStore.

    Raises DataError when a source is unreachable, when `strict` and a line is
    malformed, or when either source yields no usable records.
    """
    items, features = parse_item_lines(read_lines(item_source), num_genres=num_genres, strict=strict)
    if items.empty:
        raise DataError("Item metadata contains no usable records")

    ratings = parse_interaction_lines(
        read_lines(interaction_source),
        max_interactions=max_interactions,
        strict=strict,
    )
    if ratings.empty:
        raise DataError("Interaction data contains no usable records")

    store = build_store(items, features, ratings, top_k=top_k)
    if store.num_interactions == 0:
        raise DataError("No interaction references a known item")

    logger.info(
        "Data loaded: interactions=%d users=%d items=%d",
        store.num_interactions,
        store.num_users,
        store.num_items,
    )
    return store
