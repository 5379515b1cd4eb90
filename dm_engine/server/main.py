from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from dm_engine import __version__
from dm_engine.core.config import settings
from dm_engine.core.logging import configure_logging
from dm_engine.server.db.session import engine
from dm_engine.server.models import Base
from dm_engine.server.route.routes import router as api_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    configure_logging()
    Base.metadata.create_all(bind=engine)
    logger.info("[SUB] %s ready on %s", settings.app_name, engine.url.render_as_string(hide_password=True))
    yield


def create_application() -> FastAPI:
    application = FastAPI(
        title=settings.app_name,
        version=__version__,
        docs_url="/swagger",
        redoc_url=None,
        lifespan=lifespan,
    )
    application.include_router(api_router)
    return application


app = create_application()
