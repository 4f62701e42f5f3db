"""
Health and readiness check endpoints.
Provides liveness and readiness checks plus the realtime metrics scrape.
"""
import logging
from typing import Dict, Any
from fastapi import APIRouter, HTTPException, Response, status, Depends
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from api.dependencies import get_db
from api.metrics import registry, update_websocket_metrics
from api.websocket_manager import connection_manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

SERVICE_NAME = "Chatty API"
SERVICE_VERSION = "1.0.0"


def check_database(db: Session) -> Dict[str, Any]:
    """
    Check database connectivity.

    Args:
        db: Database session

    Returns:
        Status dict with healthy=True/False and details
    """
    try:
        db.execute(text("SELECT 1")).fetchone()
        return {"healthy": True, "message": "Database connection OK"}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        return {"healthy": False, "message": f"Database connection failed: {str(e)}"}


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """
    Liveness check endpoint.

    Returns basic service status without checking dependencies.

    Example Response:
        {
            "status": "healthy",
            "service": "Chatty API",
            "version": "1.0.0"
        }
    """
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "live_channels": connection_manager.get_connection_count()
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check endpoint.

    Returns 200 OK only if the database answers, 503 otherwise.

    Example Response:
        {
            "status": "ready",
            "checks": {
                "database": {"healthy": true, "message": "Database connection OK"}
            }
        }
    """
    checks = {"database": check_database(db)}

    if all(check["healthy"] for check in checks.values()):
        return {"status": "ready", "checks": checks}

    logger.warning("Readiness check failed for services: database")
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Database unavailable"
    )


@router.get("/metrics/realtime")
async def realtime_metrics():
    """Prometheus scrape of live-channel, delivery and authentication metrics."""
    update_websocket_metrics(connection_manager)
    return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
