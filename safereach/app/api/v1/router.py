"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from safereach.app.api.v1.endpoints import journeys, routes, tracking

router = APIRouter()

# Traveler journeys: start, live position, check-ins, arrival and alerts
router.include_router(journeys.router)

# Walking ETA and address lookup
router.include_router(routes.router)

# Public tracking links for contacts
router.include_router(tracking.router)
