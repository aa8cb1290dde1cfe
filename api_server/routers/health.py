# api_server/routers/health.py
from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
def health():
    """Liveness probe; needs no API key."""
    return {"status": "ok"}
