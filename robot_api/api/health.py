"""
Health check endpoint - no authentication required
"""

from fastapi import APIRouter

from .. import config

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health():
    return {"status": "ok", "service": config.SERVICE_NAME, "version": config.API_VERSION}
