import logging

from fastapi import APIRouter
from sqlalchemy import text

from marksapi.config import settings
from marksapi.database.connection import get_engine
from marksapi.schemas.health import HealthCheckResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
def health_check() -> HealthCheckResponse:
    """Health check endpoint."""

    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Health check database probe failed: {str(e)}")
        return HealthCheckResponse(
            status="degraded",
            database="unavailable",
            environment=settings.ENVIRONMENT,
            error=str(e),
        )

    return HealthCheckResponse(environment=settings.ENVIRONMENT)
