"""Two-tower configuration and `config.yaml` loading."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

ITEM_TOWERS = ("lookup", "mlp")


@dataclass(frozen=True)
class TwoTowerConfig:
    # data
    max_interactions: int = 80_000
    top_k: int = 10
    min_ratings_for_test: int = 20
    num_genres: int = 19

    # model
    embedding_dim: int = 32
    hidden_dim: int = 64
    init_std: float = 0.05
    item_tower: str = "lookup"

    # training
    batch_size: int = 512
    epochs: int = 20
    learning_rate: float = 1e-3
    log_every: int = 10
    seed: Optional[int] = None
    device: Optional[str] = None

    # analysis
    pca_sample: int = 1000

    def __post_init__(self) -> None:
        for name in ("max_interactions", "top_k", "embedding_dim", "hidden_dim", "batch_size", "epochs", "log_every"):
            if int(getattr(self, name)) <= 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)!r}")
        if self.min_ratings_for_test < 0:
            raise ValueError(f"min_ratings_for_test must be >= 0, got {self.min_ratings_for_test!r}")
        if self.num_genres < 0:
            raise ValueError(f"num_genres must be >= 0, got {self.num_genres!r}")
        if self.pca_sample < 1:
            raise ValueError(f"pca_sample must be >= 1, got {self.pca_sample!r}")
        if not self.learning_rate > 0.0:
            raise ValueError(f"learning_rate must be > 0, got {self.learning_rate!r}")
        if not self.init_std > 0.0:
            raise ValueError(f"init_std must be > 0, got {self.init_std!r}")
        if self.item_tower not in ITEM_TOWERS:
            raise ValueError(f"item_tower must be one of {ITEM_TOWERS}, got {self.item_tower!r}")

    def replace(self, **overrides: Any) -> "TwoTowerConfig":
        """Return a copy with `overrides` applied; `None` values are ignored."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    obj = yaml.safe_load(path.read_text())
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ValueError(f"Expected YAML mapping at {path}, got {type(obj)}")
    return obj


def config_from_mapping(raw: dict[str, Any], base: TwoTowerConfig | None = None) -> TwoTowerConfig:
    """Build a config from a plain mapping, rejecting keys the config does not know."""
    base = base or TwoTowerConfig()
    known = {f.name for f in dataclasses.fields(TwoTowerConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown two_tower config keys: {unknown}")
    return dataclasses.replace(base, **raw)


def load_config(path: Path) -> TwoTowerConfig:
    """Read the `two_tower` section of a YAML config file."""
    cfg_yaml = _load_yaml(Path(path))
    section = cfg_yaml.get("two_tower", {})
    if section is None:
        section = {}
    if not isinstance(section, dict):
        raise ValueError("config.yaml `two_tower` section must be a mapping")
    return config_from_mapping(section)


def load_dataset_section(path: Path) -> dict[str, Any]:
    """Read the `dataset` section (raw_dir, file names) of a YAML config file."""
    cfg_yaml = _load_yaml(Path(path))
    section = cfg_yaml.get("dataset", {})
    return section if isinstance(section, dict) else {}
