"""Error taxonomy shared by the data, training and retrieval layers."""

from __future__ import annotations


class TowerRecError(Exception):
    """Base class for all project errors."""


class DataError(TowerRecError, ValueError):
    """Raised when source files are unreachable, malformed or yield no usable records."""


class TrainingNotReadyError(TowerRecError, RuntimeError):
    """Raised when retrieval or projection is requested without a completed training run."""


class TrainingFailure(TowerRecError, RuntimeError):
    """Raised when a gradient step fails; the run is discarded and must be restarted."""


class TrainingCancelled(TowerRecError):
    """Raised when the cancellation signal is observed between batches."""


class EmptyResultWarning(UserWarning):
    """Emitted when fewer results than requested are available (possibly none)."""
