"""Top-level API router."""

from fastapi import APIRouter

from demand_engine.api.routes.demand_matrix import router as demand_matrix_router
from demand_engine.api.routes.health import router as health_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(demand_matrix_router)
