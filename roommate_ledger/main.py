"""
Roommate Ledger FastAPI Application.

This is the entry point for the application.
All routers are registered here.
"""

import logging

from fastapi import FastAPI

from roommate_ledger.config import get_settings
from roommate_ledger.api.health import router as health_router
from roommate_ledger.api.apartments import router as apartments_router
from roommate_ledger.api.ledger import router as ledger_router
from roommate_ledger.api.settlements import router as settlements_router

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Shared-expense ledger and debt settlement for roommates",
)

# Register routers
app.include_router(health_router)
app.include_router(apartments_router)
app.include_router(ledger_router)
app.include_router(settlements_router)
