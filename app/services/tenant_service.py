from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import Tenant
from app.schemas.webhook import TenantCredentialCallback

logger = get_logger("tenant_service")

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


class TokenRefreshError(Exception):
    """Tenant credentials could not be refreshed."""


def get_tenant(db: Session, tenant_id: str) -> Optional[Tenant]:
    return db.query(Tenant).filter(Tenant.id == tenant_id).first()


def apply_token_response(tenant: Tenant, token_data: dict, now: Optional[datetime] = None) -> None:
    """Copy an OAuth token response onto the tenant. A missing refresh token keeps the old one."""
    now = now or datetime.now(timezone.utc)
    tenant.access_token = token_data["access_token"]
    if token_data.get("refresh_token"):
        tenant.refresh_token = token_data["refresh_token"]
    if token_data.get("token_type"):
        tenant.token_type = token_data["token_type"]
    if token_data.get("scope"):
        tenant.token_scope = token_data["scope"]
    expires_in = int(token_data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS)
    tenant.token_expires_at = now + timedelta(seconds=expires_in)
    tenant.updated_at = now


async def refresh_tenant_token(db: Session, tenant: Tenant, timeout_seconds: float = 5.0) -> str:
    """Exchange the tenant's refresh token for a new access token and persist it."""
    if not tenant.refresh_token or not tenant.token_refresh_url:
        raise TokenRefreshError("Cannot refresh token: missing refresh token or refresh URL")

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            response = await client.post(
                tenant.token_refresh_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": tenant.refresh_token,
                    "client_id": tenant.oauth_client_id or "",
                    "client_secret": tenant.oauth_client_secret or "",
                },
            )
    except httpx.HTTPError as e:
        raise TokenRefreshError(f"Token refresh request failed: {e}") from e

    if response.status_code != 200:
        raise TokenRefreshError(f"Token refresh rejected: {response.status_code}")

    try:
        token_data = response.json()
    except ValueError as e:
        raise TokenRefreshError(f"Token refresh response is not JSON: {e}") from e
    if not isinstance(token_data, dict) or not token_data.get("access_token"):
        raise TokenRefreshError("Token refresh response has no access_token")

    apply_token_response(tenant, token_data)
    db.commit()
    logger.info("Refreshed tenant token", extra={"context": {"tenant_id": tenant.id}})
    return tenant.access_token


def upsert_tenant_credentials(db: Session, callback: TenantCredentialCallback) -> Tenant:
    """Create or update a tenant from a credential callback."""
    if not callback.tenant_id or not callback.access_token:
        raise ValueError("tenant_id and token are required")

    now = datetime.now(timezone.utc)
    tenant = get_tenant(db, callback.tenant_id)
    if tenant is None:
        tenant = Tenant(
            id=callback.tenant_id,
            name=(callback.user.name if callback.user and callback.user.name else callback.tenant_id),
            status="active",
            tenant_metadata={},
            created_at=now,
        )
        db.add(tenant)
    else:
        tenant.status = "active"

    apply_token_response(
        tenant,
        {
            "access_token": callback.access_token,
            "refresh_token": callback.delivered_refresh_token,
            "expires_in": callback.expires_in,
        },
        now=now,
    )
    if callback.token_refresh_url:
        tenant.token_refresh_url = callback.token_refresh_url
    if callback.api_base_url:
        tenant.api_base_url = callback.api_base_url.rstrip("/")

    if callback.user:
        metadata = dict(tenant.tenant_metadata or {})
        metadata["contact"] = callback.user.model_dump(exclude_none=True)
        tenant.tenant_metadata = metadata

    db.commit()
    logger.info(
        "Stored tenant credentials",
        extra={"context": {"tenant_id": tenant.id, "has_refresh_token": bool(tenant.refresh_token)}},
    )
    return tenant
