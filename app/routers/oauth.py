from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import HTMLResponse, RedirectResponse
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.logging_config import get_logger
from app.schemas.webhook import TenantCredentialCallback
from app.services.platform_service import (
    PlatformAuthError,
    build_connect_url,
    exchange_code_for_tokens,
    store_platform_token,
)
from app.services.tenant_service import upsert_tenant_credentials

logger = get_logger("oauth")

router = APIRouter(prefix="/chatbot/oauth", tags=["oauth"])

AUTHORIZED_PAGE = """<!DOCTYPE html>
<html>
<head><title>Chat platform authorized</title></head>
<body>
<h1>Authorized</h1>
<p>The bot can now send proactive messages to open conversations. You can close this tab.</p>
</body>
</html>"""


def _require_platform_settings() -> None:
    missing = [
        name
        for name, value in (
            ("SALESIQ_CLIENT_ID", settings.salesiq_client_id),
            ("SALESIQ_CLIENT_SECRET", settings.salesiq_client_secret),
            ("SALESIQ_REDIRECT_URL", settings.salesiq_redirect_url),
            ("SALESIQ_SCREEN_NAME", settings.salesiq_screen_name),
        )
        if not value
    ]
    if missing:
        raise HTTPException(status_code=500, detail=f"Missing configuration: {', '.join(missing)}")


@router.get("/platform/connect")
def connect_platform():
    """Send the operator to the chat platform's consent screen."""
    _require_platform_settings()
    logger.info("Starting platform OAuth flow")
    return RedirectResponse(build_connect_url())


@router.get("/platform/callback", response_class=HTMLResponse)
async def platform_callback(code: str | None = None, db: Session = Depends(get_db)):
    if not code:
        raise HTTPException(status_code=400, detail="Authorization code not provided")
    _require_platform_settings()

    try:
        token_data = await exchange_code_for_tokens(code)
    except PlatformAuthError as e:
        logger.error(f"Platform OAuth code exchange failed: {e}")
        raise HTTPException(status_code=502, detail="Failed to exchange authorization code for tokens")

    store_platform_token(
        db,
        settings.salesiq_screen_name,
        token_data["access_token"],
        token_data.get("refresh_token"),
        token_data.get("expires_in"),
    )
    return HTMLResponse(AUTHORIZED_PAGE)


@router.post("/tenant/callback")
def tenant_callback(callback: TenantCredentialCallback, db: Session = Depends(get_db)):
    """Credential delivery from a tenant's identity provider after the user logs in."""
    if not callback.access_token:
        raise HTTPException(status_code=400, detail="Missing access token")
    if not callback.tenant_id:
        raise HTTPException(status_code=400, detail="Missing required field: tenant_id")

    tenant = upsert_tenant_credentials(db, callback)
    return {"success": True, "tenant_id": tenant.id, "message": "Token stored successfully"}
