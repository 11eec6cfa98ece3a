"""
Health check endpoint.

Used by load balancers, monitoring systems, and humans
to verify the application is running and responsive.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError

from roommate_ledger.models.base import get_store
from roommate_ledger.models.store import DocumentStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(store: DocumentStore = Depends(get_store)):
    """
    Return application health status including database connectivity.
    """
    try:
        store.ping()
        db_status = "healthy"
    except SQLAlchemyError as e:
        logger.error("Database health check failed: %s", e)
        db_status = "unhealthy"

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "service": "roommate-ledger",
        "database": db_status,
    }
