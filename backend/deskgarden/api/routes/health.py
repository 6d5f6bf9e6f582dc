from fastapi import APIRouter

from deskgarden.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict:
    """Report which integrations are configured.

    Configuration only: no outbound call is made, so a Gemini or Coupang
    outage never fails the health check.
    """
    coupang_configured = bool(
        settings.coupang_access_key.strip() and settings.coupang_secret_key.strip()
    )
    return {
        "status": "ok",
        "version": "0.1.0",
        "environment": settings.environment,
        "integrations": {
            "gemini": "configured" if settings.google_ai_api_key else "missing",
            "coupang": "configured" if coupang_configured else "missing",
        },
        "recommendations_enabled": settings.recommendations_enabled,
    }
