from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from ..checks import run_store_checks
from ..config import ITEM_TOWERS, load_config, load_dataset_section
from ..paths import ProjectPaths, get_repo_root
from ..two_tower.recommender import TwoTowerRecommender
from ..two_tower.train import save_artifacts
from ..utils import setup_logging


logger = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Train two-tower models and write their artifacts.")
    p.add_argument("--config", type=Path, default=Path("config.yaml"), help="Path to config YAML.")
    p.add_argument("--out-dir", type=Path, default=None, help="Output directory for artifacts")
    p.add_argument("--towers", nargs="+", choices=ITEM_TOWERS, default=list(ITEM_TOWERS), help="Item towers to train")
    p.add_argument("--device", type=str, default=None, help="cpu/cuda/mps; default auto")
    p.add_argument("--epochs", type=int, default=None, help="Override epochs")
    p.add_argument("--seed", type=int, default=None, help="Override seed")
    return p


def run_build(
    config_path: Path,
    *,
    towers: list[str],
    out_dir: Path | None = None,
    overrides: dict | None = None,
) -> dict[str, dict[str, str]]:
    """Load data per config, run store checks, train each tower and save its artifacts."""
    repo_root = get_repo_root()
    config_path = Path(config_path)
    if not config_path.is_absolute():
        config_path = (repo_root / config_path).resolve()

    cfg = load_config(config_path).replace(**(overrides or {}))
    dataset_cfg = load_dataset_section(config_path)
    paths = ProjectPaths.from_repo_root(repo_root, raw_dir=str(dataset_cfg.get("raw_dir", "data/raw")))

    rec = TwoTowerRecommender(cfg)
    store = rec.load(
        paths.raw_dir / str(dataset_cfg.get("items_file", "u.item")),
        paths.raw_dir / str(dataset_cfg.get("ratings_file", "u.data")),
    )
    for check in run_store_checks(store, strict=True, min_ratings=cfg.min_ratings_for_test):
        if check.status != "PASS":
            logger.warning("[%s] %s: %s", check.status, check.name, check.details)

    out_root = Path(out_dir) if out_dir is not None else paths.two_tower_dir
    if not out_root.is_absolute():
        out_root = (repo_root / out_root).resolve()

    outputs: dict[str, dict[str, str]] = {}
    for tower in towers:
        history = rec.train(item_tower=tower)
        artifacts = save_artifacts(
            rec.model(tower),
            cfg.replace(item_tower=tower),
            history,
            out_root / tower,
            meta={
                "interactions": store.num_interactions,
                "eligible_users": len(rec.eligible_users()),
            },
        )
        outputs[tower] = {k: str(v) for k, v in artifacts.__dict__.items()}
        logger.info("Saved %s tower artifacts to %s", tower, out_root / tower)

    manifest_path = out_root / "manifest.json"
    manifest_path.write_text(json.dumps(outputs, indent=2, sort_keys=True) + "\n")
    return outputs


def main(argv: list[str] | None = None) -> None:
    setup_logging("INFO")
    args = build_arg_parser().parse_args(argv)
    run_build(
        args.config,
        towers=list(args.towers),
        out_dir=args.out_dir,
        overrides={"device": args.device, "epochs": args.epochs, "seed": args.seed},
    )


if __name__ == "__main__":
    main()
