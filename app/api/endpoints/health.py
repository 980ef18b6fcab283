"""
Health check endpoints.

Reports database and rate limiter store availability.
"""

import logging
from typing import Dict, Any
from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from redis import RedisError

from app.core.database import get_db, utcnow

router = APIRouter(tags=["Health"])
logger = logging.getLogger(__name__)


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> Dict[str, str]:
    """
    Basic health check endpoint.

    Returns 200 OK if the service is running. Use this for load balancer checks.
    """
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat()
    }


@router.get("/health/detailed", status_code=status.HTTP_200_OK)
def detailed_health_check(request: Request, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """
    Detailed health check with dependency status.

    Checks:
    - Database connectivity
    - Rate limiter counter store (Redis in production)
    """
    health_status = {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "checks": {}
    }

    try:
        db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {"status": "healthy"}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = {"status": "unhealthy", "message": "Database unavailable"}

    try:
        request.app.state.rate_limiter.store.ping()
        health_status["checks"]["rate_limiter"] = {"status": "healthy"}
    except RedisError as e:
        logger.error(f"Rate limiter store health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["rate_limiter"] = {"status": "unhealthy", "message": "Counter store unavailable"}

    return health_status
