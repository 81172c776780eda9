"""Health check router."""

from fastapi import APIRouter

from .. import __version__

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "folio",
        "version": __version__,
    }
