"""Data-quality checks over a loaded InteractionStore."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from .data import MAX_RATING, MIN_RATING, InteractionStore
from .errors import DataError


@dataclass(frozen=True)
class CheckResult:
    """Single validation check outcome."""

    name: str
    status: str  # "PASS" | "WARN" | "FAIL"
    details: str


def run_store_checks(
    store: InteractionStore,
    *,
    strict: bool = True,
    min_ratings: int = 20,
) -> Tuple[CheckResult, ...]:
    """Run all checks.

    Parameters
    ----------
    store:
        A loaded store.
    strict:
        If True, raise DataError on the first FAIL check.
    min_ratings:
        Users below this many ratings are reported as WARN (they are excluded from
        the evaluation pool, not an error).
    """
    inter = store.interactions
    checks: List[CheckResult] = []

    def _fail_or_warn(name: str, ok: bool, fail_msg: str, warn: bool = False) -> None:
        if ok:
            checks.append(CheckResult(name=name, status="PASS", details="OK"))
            return
        status = "WARN" if warn else "FAIL"
        checks.append(CheckResult(name=name, status=status, details=fail_msg))
        if strict and status == "FAIL":
            raise DataError(f"[FAIL] {name}: {fail_msg}")

    # 1) Index ranges
    _fail_or_warn(
        "interactions.user_idx_range",
        ok=bool(inter["user_idx"].between(0, store.num_users - 1).all()),
        fail_msg=f"user_idx outside [0, {store.num_users})",
    )
    _fail_or_warn(
        "interactions.item_idx_range",
        ok=bool(inter["item_idx"].between(0, store.num_items - 1).all()),
        fail_msg=f"item_idx outside [0, {store.num_items})",
    )

    # 2) Index maps are bijections with the external ids
    _fail_or_warn(
        "users.index_bijection",
        ok=(
            len(store.user_to_idx) == store.num_users
            and all(store.user_ids[i] == u for u, i in store.user_to_idx.items())
        ),
        fail_msg="user index map is not a bijection",
    )
    _fail_or_warn(
        "items.index_bijection",
        ok=(
            len(store.item_to_idx) == store.num_items
            and all(store.item_ids[i] == m for m, i in store.item_to_idx.items())
        ),
        fail_msg="item index map is not a bijection",
    )

    # 3) Ratings
    _fail_or_warn(
        "interactions.rating_range",
        ok=bool(inter["rating"].between(MIN_RATING, MAX_RATING).all()),
        fail_msg=f"ratings outside [{MIN_RATING}, {MAX_RATING}]",
    )
    n_dupes = int(inter.duplicated(subset=["user_id", "item_id"]).sum())
    _fail_or_warn(
        "interactions.user_item_unique",
        ok=(n_dupes == 0),
        fail_msg=f"{n_dupes} duplicate (user, item) rows",
        warn=True,
    )
    _fail_or_warn(
        "interactions.timestamp_non_negative",
        ok=bool((inter["timestamp"] >= 0).all()),
        fail_msg="negative timestamps found",
    )

    # 4) Item features
    feats = store.item_features
    _fail_or_warn(
        "items.genre_multi_hot",
        ok=bool(np.isin(feats, (0.0, 1.0)).all()),
        fail_msg="genre features contain values other than 0/1",
    )
    n_missing_year = int(store.items["year"].isna().sum())
    _fail_or_warn(
        "items.title_year_parse",
        ok=(n_missing_year == 0),
        fail_msg=f"Could not parse year from {n_missing_year} titles",
        warn=True,
    )

    # 5) Evaluation pool coverage
    per_user = inter.groupby("user_idx")["item_idx"].nunique()
    n_thin = int((per_user < int(min_ratings)).sum())
    _fail_or_warn(
        f"users.min_{int(min_ratings)}_ratings",
        ok=(n_thin == 0),
        fail_msg=f"{n_thin} user(s) have fewer than {min_ratings} rated items",
        warn=True,
    )

    return tuple(checks)
