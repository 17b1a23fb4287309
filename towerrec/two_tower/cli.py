from __future__ import annotations

import argparse
from pathlib import Path

import pandas as pd

from ..config import ITEM_TOWERS, TwoTowerConfig, load_config
from ..paths import ProjectPaths, get_repo_root
from ..utils import setup_logging
from .recommender import TwoTowerRecommender, train_towers


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Two-tower retrieval demo on MovieLens-100K")
    p.add_argument("--items", type=Path, default=None, help="Path to u.item (default: <raw_dir>/u.item)")
    p.add_argument("--ratings", type=Path, default=None, help="Path to u.data (default: <raw_dir>/u.data)")
    p.add_argument("--config", type=Path, default=None, help="Optional config YAML with a two_tower section")
    p.add_argument("--user-id", type=int, default=None, help="MovieLens user id; default: random eligible user")
    p.add_argument("--k", type=int, default=None, help="How many recommendations to return")
    p.add_argument("--towers", nargs="+", choices=ITEM_TOWERS, default=list(ITEM_TOWERS), help="Item towers to train")
    p.add_argument("--epochs", type=int, default=None, help="Override epochs")
    p.add_argument("--batch-size", type=int, default=None, help="Override batch size")
    p.add_argument("--embedding-dim", type=int, default=None, help="Override embedding dimension")
    p.add_argument("--lr", type=float, default=None, help="Override learning rate")
    p.add_argument("--seed", type=int, default=None, help="Seed for initialization and shuffles")
    p.add_argument("--device", type=str, default=None, help="cpu/cuda/mps; default auto")
    return p


def _print_table(title: str, rows: list) -> None:
    print(f"\n=== {title} ===")
    if rows:
        print(pd.DataFrame([r.__dict__ for r in rows]).to_string(index=False))
    else:
        print("(none)")


def main(argv: list[str] | None = None) -> None:
    setup_logging("INFO")
    args = build_arg_parser().parse_args(argv)

    cfg = load_config(args.config) if args.config is not None else TwoTowerConfig()
    cfg = cfg.replace(
        epochs=args.epochs,
        batch_size=args.batch_size,
        embedding_dim=args.embedding_dim,
        learning_rate=args.lr,
        seed=args.seed,
        device=args.device,
    )

    items_path, ratings_path = args.items, args.ratings
    if items_path is None or ratings_path is None:
        paths = ProjectPaths.from_repo_root(get_repo_root())
        items_path = items_path or paths.items_path
        ratings_path = ratings_path or paths.ratings_path

    rec = TwoTowerRecommender(cfg)
    rec.load(items_path, ratings_path)
    train_towers(rec, args.towers)

    user_id = args.user_id if args.user_id is not None else rec.sample_eligible_user()
    if user_id is None:
        print(f"No users found with at least {cfg.min_ratings_for_test} ratings.")
        return

    print(f"\nUser {user_id}")
    _print_table("Historically top-rated", rec.historical_top(user_id, args.k))
    for tower, recs in rec.compare(user_id, args.k).items():
        _print_table(f"Recommended ({tower} item tower)", recs)


if __name__ == "__main__":
    main()
