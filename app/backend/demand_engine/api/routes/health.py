"""Health check endpoints."""

from fastapi import APIRouter

from demand_engine.core.config import get_settings

router = APIRouter()


@router.get("/health")
def health() -> dict[str, str]:
    """Liveness probe; does not touch the database."""

    return {"status": "ok", "service": get_settings().app_name}
