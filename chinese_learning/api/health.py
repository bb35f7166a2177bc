"""
Dependency health endpoint.
"""

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Response

from chinese_learning.models.api_models import HealthResponse
from chinese_learning.services.pronunciation_service import (
    PronunciationService,
    get_pronunciation_service
)

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1", tags=["health"])

SERVICE_VERSION = "1.0.0"


@router.get("/health", response_model=HealthResponse)
async def dependency_health(
    response: Response,
    service: PronunciationService = Depends(get_pronunciation_service)
) -> HealthResponse:
    """
    Check the database, Pinata and Gemini.

    Responds 503 with status "degraded" if any component is down.
    """
    checks = {
        "database": service.db.health_check,
        "pinata": service.storage.test_connection,
        "gemini": service.analyzer.test_connection,
    }

    components = {}
    for name, check in checks.items():
        try:
            healthy = await check()
        except Exception as e:
            logger.error("Health check raised", component=name, error=str(e))
            healthy = False
        components[name] = "ok" if healthy else "down"

    status = "healthy" if all(state == "ok" for state in components.values()) else "degraded"
    if status != "healthy":
        logger.warning("Dependency health degraded", components=components)
        response.status_code = 503

    return HealthResponse(
        status=status,
        timestamp=datetime.utcnow(),
        version=SERVICE_VERSION,
        components=components
    )
