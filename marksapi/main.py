import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from mangum import Mangum
from starlette.middleware.cors import CORSMiddleware

from marksapi import containers
from marksapi.config import settings
from marksapi.core.exception_handlers import register_exception_handlers
from marksapi.core.logging_middleware import LoggingMiddleware
from marksapi.database.connection import dispose_engine, init_engine
from marksapi.logging_config import setup_logging
from marksapi.routers import admin_router, health_router, marks_router

load_dotenv("marksapi/.env")
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_engine()
    logger.info(f"{settings.APP_NAME} started ({settings.ENVIRONMENT})")
    try:
        yield
    finally:
        app.container.adapters.treasury_gateway().close()  # type: ignore[attr-defined]
        dispose_engine()
        logger.info(f"{settings.APP_NAME} stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )
    app.container = containers.Container()  # type: ignore[attr-defined]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)
    register_exception_handlers(app)

    app.include_router(health_router.router)
    app.include_router(marks_router.router, prefix=settings.API_V1_STR)
    app.include_router(admin_router.router, prefix=settings.API_V1_STR)

    return app


app = create_app()

handler = Mangum(app)
