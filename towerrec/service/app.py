"""FastAPI entrypoint exposing load / train / recommend / projection to a UI."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from ..config import TwoTowerConfig, load_config, load_dataset_section
from ..errors import DataError, TrainingFailure, TrainingNotReadyError
from ..paths import ProjectPaths, get_repo_root
from ..two_tower.recommender import TwoTowerRecommender
from ..utils import setup_logging
from .schemas import (
    EligibleUsersResponse,
    HistoryResponse,
    LoadRequest,
    LoadResponse,
    ProjectionResponse,
    RecommendRequest,
    RecommendResponse,
    TrainRequest,
    TrainResponse,
)

logger = logging.getLogger(__name__)


def _config_from_env() -> tuple[TwoTowerConfig, ProjectPaths | None, dict]:
    raw = os.getenv("CONFIG_PATH")
    try:
        repo_root = get_repo_root()
    except FileNotFoundError:
        repo_root = None

    if raw:
        config_path: Optional[Path] = Path(raw)
        if not config_path.is_absolute() and repo_root is not None:
            config_path = (repo_root / config_path).resolve()
    elif repo_root is not None and (repo_root / "config.yaml").is_file():
        config_path = repo_root / "config.yaml"
    else:
        config_path = None

    if config_path is None:
        return TwoTowerConfig(), None, {}

    dataset_cfg = load_dataset_section(config_path)
    paths = ProjectPaths.from_repo_root(
        repo_root or config_path.parent, raw_dir=str(dataset_cfg.get("raw_dir", "data/raw"))
    )
    return load_config(config_path), paths, dataset_cfg


def create_app(cfg: TwoTowerConfig | None = None, *, paths: ProjectPaths | None = None) -> FastAPI:
    """Build the API. Without `cfg`, configuration is read from CONFIG_PATH or config.yaml."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(os.getenv("LOG_LEVEL", "INFO"))
        dataset_cfg: dict = {}
        if cfg is None:
            app_cfg, app_paths, dataset_cfg = _config_from_env()
        else:
            app_cfg, app_paths = cfg, paths
        app.state.recommender = TwoTowerRecommender(app_cfg)
        app.state.paths = app_paths
        app.state.dataset_cfg = dataset_cfg
        logger.info("Two-tower service ready (data not loaded yet)")
        yield

    app = FastAPI(title="MovieLens Two-Tower Retrieval Service", lifespan=lifespan)

    @app.exception_handler(DataError)
    async def _data_error(_: Request, exc: DataError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(TrainingNotReadyError)
    async def _not_ready(_: Request, exc: TrainingNotReadyError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(TrainingFailure)
    async def _failure(_: Request, exc: TrainingFailure) -> JSONResponse:
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    def _recommender(request: Request) -> TwoTowerRecommender:
        rec = getattr(request.app.state, "recommender", None)
        if rec is None:
            raise HTTPException(status_code=503, detail="Recommender not initialized")
        return rec

    @app.post("/load", response_model=LoadResponse)
    def load(req: LoadRequest, request: Request) -> dict:
        """Parse u.item + u.data; discards any trained towers."""
        rec = _recommender(request)
        paths: ProjectPaths | None = request.app.state.paths
        dataset_cfg: dict = request.app.state.dataset_cfg
        items_path = req.items_path
        ratings_path = req.ratings_path
        if items_path is None or ratings_path is None:
            if paths is None:
                raise HTTPException(status_code=400, detail="items_path and ratings_path are required")
            items_path = items_path or str(paths.raw_dir / str(dataset_cfg.get("items_file", "u.item")))
            ratings_path = ratings_path or str(paths.raw_dir / str(dataset_cfg.get("ratings_file", "u.data")))

        store = rec.load(items_path, ratings_path)
        return {
            "users": store.num_users,
            "items": store.num_items,
            "interactions": store.num_interactions,
            "eligible_users": len(store.eligible_users(rec.cfg.min_ratings_for_test)),
        }

    @app.post("/train", response_model=TrainResponse)
    def train(req: TrainRequest, request: Request) -> dict:
        """Train one tower from scratch; blocks until the run completes."""
        rec = _recommender(request)
        history = rec.train(item_tower=req.tower)
        return {
            "tower": req.tower,
            "batches": len(history),
            "final_loss": float(history[-1]),
            "loss_history": history,
        }

    @app.get("/users/eligible", response_model=EligibleUsersResponse)
    def eligible_users(request: Request) -> dict:
        rec = _recommender(request)
        return {"min_ratings": rec.cfg.min_ratings_for_test, "users": rec.eligible_users()}

    @app.get("/users/{user_id}/history", response_model=HistoryResponse)
    def history(user_id: int, request: Request, k: Optional[int] = Query(None, ge=1, le=100)) -> dict:
        """A user's top-k ratings (rating desc, most recent first); k defaults to `top_k`."""
        rec = _recommender(request)
        try:
            rows = rec.historical_top(user_id, k)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc
        return {"userId": user_id, "results": [r.__dict__ for r in rows]}

    @app.post("/recommend", response_model=RecommendResponse)
    def recommend(req: RecommendRequest, request: Request) -> dict:
        """Top-k unrated movies per trained tower (or the requested one)."""
        rec = _recommender(request)
        try:
            if req.tower is None:
                lists = rec.compare(req.userId, req.k)
            else:
                lists = {req.tower: rec.recommend(req.userId, req.k, tower=req.tower)}
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc
        return {
            "userId": req.userId,
            "k": req.k,
            "results": {tower: [r.__dict__ for r in recs] for tower, recs in lists.items()},
        }

    @app.get("/projection", response_model=ProjectionResponse)
    def projection(
        request: Request,
        tower: str = Query("lookup", pattern="^(lookup|mlp)$"),
        sample_size: Optional[int] = Query(None, ge=1, le=5000),
    ) -> dict:
        """2D PCA coordinates of a sample of item embeddings; sample_size defaults to `pca_sample`."""
        rec = _recommender(request)
        points = rec.project_embeddings(sample_size, tower=tower)
        return {"tower": tower, "points": [p.__dict__ for p in points]}

    return app


app = create_app()
