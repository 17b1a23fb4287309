"""2D PCA projection of a sample of item embeddings, for plotting only."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
from sklearn.decomposition import PCA


@dataclass(frozen=True)
class ProjectedPoint:
    x: float
    y: float
    item_idx: int


def sample_indices(n: int, sample_size: int, rng: Optional[np.random.Generator] = None) -> np.ndarray:
    """Uniform sample of up to `sample_size` distinct indices from range(n)."""
    if sample_size <= 0:
        raise ValueError(f"sample_size must be > 0, got {sample_size}")
    rng = rng if rng is not None else np.random.default_rng()
    if n <= sample_size:
        return np.arange(n, dtype=np.int64)
    return np.sort(rng.choice(n, size=int(sample_size), replace=False)).astype(np.int64)


def project_2d(
    embeddings: np.ndarray,
    *,
    sample_size: int = 1000,
    rng: Optional[np.random.Generator] = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Center a sample of rows and project it onto its top-2 principal axes.

    PCA with the full SVD solver centers the sample and takes the two leading right
    singular vectors as the basis.

    Returns
    -------
    (indices, coords)
        Row indices that were sampled and their [n, 2] coordinates.
    """
    embeddings = np.asarray(embeddings, dtype=np.float64)
    if embeddings.ndim != 2:
        raise ValueError(f"Expected 2D embeddings array, got shape={embeddings.shape}")

    idx = sample_indices(int(embeddings.shape[0]), int(sample_size), rng)
    sample = embeddings[idx]
    coords = np.zeros((len(idx), 2), dtype=np.float64)

    # A single centered point sits at the origin.
    n_components = min(2, sample.shape[0], sample.shape[1])
    if sample.shape[0] < 2 or n_components == 0:
        return idx, coords

    coords[:, :n_components] = PCA(n_components=n_components, svd_solver="full").fit_transform(sample)
    return idx, coords


def to_points(indices: np.ndarray, coords: np.ndarray) -> list[ProjectedPoint]:
    return [
        ProjectedPoint(x=float(x), y=float(y), item_idx=int(i))
        for i, (x, y) in zip(indices.tolist(), coords.tolist())
    ]
