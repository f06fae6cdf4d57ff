"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from yufarm.config import Settings
    from yufarm.ml.image_classifier import Classifier

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from yufarm.api.routes import router
from yufarm.config import get_settings
from yufarm.errors import ModelLoadError
from yufarm.ml.image_source import ImageSourceAdapter
from yufarm.ml.inference import InferencePool
from yufarm.ml.model_loader import ModelLoader
from yufarm.ml.preprocessing import ImageLimits
from yufarm.session import SessionContext, SessionStore

logger = logging.getLogger(__name__)


def init_state(
    app: FastAPI,
    settings: Settings,
    open_model: Callable[[], Classifier] | None = None,
) -> None:
    """Attach settings and the shared session context to ``app.state``."""
    inference_pool = InferencePool(settings)
    model_loader = ModelLoader(settings, inference_pool, open_model=open_model)
    context = SessionContext(
        loader=model_loader,
        pool=inference_pool,
        images=ImageSourceAdapter(ImageLimits.from_settings(settings)),
    )

    app.state.settings = settings
    app.state.inference_pool = inference_pool
    app.state.model_loader = model_loader
    app.state.session_store = SessionStore(context, max_sessions=settings.max_sessions, ttl=settings.session_ttl)
    app.state.background_tasks = set()


async def _load_model(loader: ModelLoader) -> None:
    # Failures are recorded on the loader and surfaced through /health and sessions
    with suppress(ModelLoadError):
        await loader.load()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: start the model load on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting YuFarm (device=%s, max_concurrent=%s, model=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_path or f"{settings.model_repo_id}/{settings.model_filename}",
    )

    init_state(app, settings)
    loader_task = asyncio.create_task(_load_model(app.state.model_loader))

    logger.info("YuFarm accepting requests")
    yield

    logger.info("Shutting down YuFarm")
    pending = [loader_task, *app.state.background_tasks]
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)
    app.state.inference_pool.shutdown()
    logger.info("YuFarm shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="YuFarm",
        description="Potato leaf disease detection API",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the API with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("yufarm.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
