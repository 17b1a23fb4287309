"""Pydantic schemas for the two-tower API."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

TowerName = Literal["lookup", "mlp"]


class LoadRequest(BaseModel):
    """Paths to the MovieLens-100K files; defaults come from config.yaml."""

    items_path: Optional[str] = Field(None, description="Path to u.item")
    ratings_path: Optional[str] = Field(None, description="Path to u.data")


class LoadResponse(BaseModel):
    users: int
    items: int
    interactions: int
    eligible_users: int


class TrainRequest(BaseModel):
    tower: TowerName = Field("lookup", description="Item tower variant to train")


class TrainResponse(BaseModel):
    tower: TowerName
    batches: int
    final_loss: float
    loss_history: list[float]


class RecommendRequest(BaseModel):
    """Request for top-k unrated movies for one user."""

    userId: int = Field(..., ge=1, description="MovieLens user id from u.data")
    k: int = Field(10, ge=1, le=100, description="Number of recommendations to return (1..100)")
    tower: Optional[TowerName] = Field(None, description="Restrict to one tower; default: every trained tower")


class RecommendationItem(BaseModel):
    movieId: int
    score: float
    title: Optional[str] = None
    year: Optional[int] = None


class RecommendResponse(BaseModel):
    userId: int
    k: int
    results: dict[str, list[RecommendationItem]]


class HistoryItem(BaseModel):
    movieId: int
    rating: int
    timestamp: int
    title: Optional[str] = None
    year: Optional[int] = None


class HistoryResponse(BaseModel):
    userId: int
    results: list[HistoryItem]


class EligibleUsersResponse(BaseModel):
    min_ratings: int
    users: list[int]


class ProjectionPoint(BaseModel):
    x: float
    y: float
    movieId: int
    title: Optional[str] = None


class ProjectionResponse(BaseModel):
    tower: TowerName
    points: list[ProjectionPoint]
