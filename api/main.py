"""
FastAPI application entrypoint.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from api.routes import router
from core.backend import GeminiClient
from core.config import Settings
from core.lanes import LaneAnalyzer
from core.orchestrator import FallbackOrchestrator

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, analyzer: Optional[LaneAnalyzer] = None) -> FastAPI:
    """
    Build the API app.

    One orchestrator (gates + sticky models) is shared by every request of
    the process. Tests inject their own analyzer.
    """
    settings = settings or Settings()
    backend = None
    if analyzer is None:
        backend = GeminiClient(settings)
        analyzer = LaneAnalyzer(settings, FallbackOrchestrator(settings, backend))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[api] starting lite={settings.LITE_MODEL} flash={settings.FLASH_MODEL} pro={settings.PRO_MODEL}")
        yield
        if backend is not None:
            await backend.close()

    app = FastAPI(title="Live Face Overlay API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.analyzer = analyzer
    app.include_router(router)

    @app.get("/health")
    def health() -> dict:
        """
        Health check endpoint.

        Returns:
            dict: Simple status payload.
        """
        return {"status": "ok"}

    return app


_settings = Settings()
logging.basicConfig(level=getattr(logging, _settings.LOG_LEVEL))
app = create_app(_settings)
