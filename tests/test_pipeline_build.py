from __future__ import annotations

import json
import shutil

from towerrec.pipelines.two_tower_build import run_build
from towerrec.two_tower.train import load_model


def test_build_writes_artifacts_per_tower(tmp_path, monkeypatch, tiny_movielens) -> None:
    raw = tmp_path / "repo" / "data" / "raw"
    raw.mkdir(parents=True)
    for src in tiny_movielens:
        shutil.copy(src, raw / src.name)

    config_path = tmp_path / "repo" / "config.yaml"
    config_path.write_text(
        "dataset:\n"
        "  raw_dir: data/raw\n"
        "  items_file: u.item\n"
        "  ratings_file: u.data\n"
        "two_tower:\n"
        "  embedding_dim: 4\n"
        "  hidden_dim: 8\n"
        "  epochs: 2\n"
        "  batch_size: 4\n"
        "  min_ratings_for_test: 2\n"
    )
    monkeypatch.chdir(tmp_path / "repo")

    outputs = run_build(config_path, towers=["lookup", "mlp"], overrides={"device": "cpu", "seed": 5})

    assert set(outputs) == {"lookup", "mlp"}
    out_root = tmp_path / "repo" / "artifacts" / "two_tower"
    manifest = json.loads((out_root / "manifest.json").read_text())
    assert manifest == outputs

    meta = json.loads((out_root / "mlp" / "two_tower_meta.json").read_text())
    assert meta["item_tower"] == "mlp"
    assert meta["batches"] == 6
    assert meta["eligible_users"] == 4

    model = load_model(out_root / "lookup" / "two_tower_model.pt")
    assert model.num_items == 5
