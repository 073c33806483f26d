import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from pointledger.database.session import get_db
from pointledger.schemas.health import HealthCheckResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: Session = Depends(get_db)) -> HealthCheckResponse:
    """Health check endpoint (includes a database round-trip)."""

    try:
        db.execute(text("SELECT 1"))
    except DBAPIError as e:
        logger.error(f"Health check database probe failed: {str(e)}")
        return HealthCheckResponse(status="degraded", database="error", error=str(e))

    return HealthCheckResponse()
