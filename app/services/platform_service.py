import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.logging_config import get_logger
from app.models import PlatformToken
from app.services.result import Result

logger = get_logger("platform_service")

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600
SERVER_ERROR_STATUS_CODES = {500, 502, 503}


class PlatformAuthError(Exception):
    """Chat platform OAuth token missing or could not be refreshed."""


def build_connect_url(
    client_id: Optional[str] = None,
    redirect_url: Optional[str] = None,
    scopes: Optional[str] = None,
    accounts_url: Optional[str] = None,
) -> str:
    query = urlencode(
        {
            "scope": scopes or settings.salesiq_scopes,
            "client_id": client_id or settings.salesiq_client_id or "",
            "response_type": "code",
            "redirect_uri": redirect_url or settings.salesiq_redirect_url or "",
            "access_type": "offline",
        }
    )
    return f"{(accounts_url or settings.salesiq_accounts_url).rstrip('/')}/auth?{query}"


def store_platform_token(
    db: Session,
    screen_name: str,
    access_token: str,
    refresh_token: Optional[str],
    expires_in: Optional[int],
) -> PlatformToken:
    """Upsert the platform token for a portal."""
    now = datetime.now(timezone.utc)
    seconds = expires_in if isinstance(expires_in, int) and expires_in > 0 else DEFAULT_TOKEN_LIFETIME_SECONDS

    token = db.query(PlatformToken).filter(PlatformToken.screen_name == screen_name).first()
    if token is None:
        token = PlatformToken(screen_name=screen_name)
        db.add(token)
    token.access_token = access_token
    if refresh_token:
        token.refresh_token = refresh_token
    token.expires_at = now + timedelta(seconds=seconds)
    token.updated_at = now
    db.commit()
    logger.info(
        "Stored platform token",
        extra={"context": {"screen_name": screen_name, "expires_at": token.expires_at.isoformat()}},
    )
    return token


async def _token_request(params: dict, timeout_seconds: float) -> dict:
    async with httpx.AsyncClient(timeout=timeout_seconds) as client:
        response = await client.post(f"{settings.salesiq_accounts_url.rstrip('/')}/token", params=params)
    if response.status_code != 200:
        raise PlatformAuthError(f"Token endpoint returned {response.status_code}")
    try:
        data = response.json()
    except ValueError as e:
        raise PlatformAuthError(f"Token endpoint returned a non-JSON body: {e}") from e
    if not isinstance(data, dict) or not data.get("access_token"):
        raise PlatformAuthError(f"Token endpoint returned no access_token: {data.get('error') if isinstance(data, dict) else data}")
    return data


async def exchange_code_for_tokens(code: str, timeout_seconds: float = 10.0) -> dict:
    try:
        return await _token_request(
            {
                "code": code,
                "client_id": settings.salesiq_client_id,
                "client_secret": settings.salesiq_client_secret,
                "redirect_uri": settings.salesiq_redirect_url,
                "grant_type": "authorization_code",
            },
            timeout_seconds,
        )
    except httpx.HTTPError as e:
        raise PlatformAuthError(f"Code exchange failed: {e}") from e


async def refresh_platform_token(db: Session, screen_name: str, timeout_seconds: float = 10.0) -> PlatformToken:
    token = db.query(PlatformToken).filter(PlatformToken.screen_name == screen_name).first()
    if token is None or not token.refresh_token:
        raise PlatformAuthError("No refresh token available. Please re-authorize.")
    if not settings.salesiq_client_id or not settings.salesiq_client_secret:
        raise PlatformAuthError("SALESIQ_CLIENT_ID and SALESIQ_CLIENT_SECRET must be set")

    try:
        data = await _token_request(
            {
                "refresh_token": token.refresh_token,
                "client_id": settings.salesiq_client_id,
                "client_secret": settings.salesiq_client_secret,
                "grant_type": "refresh_token",
            },
            timeout_seconds,
        )
    except httpx.HTTPError as e:
        raise PlatformAuthError(f"Token refresh failed: {e}") from e

    return store_platform_token(
        db,
        screen_name,
        data["access_token"],
        data.get("refresh_token"),
        data.get("expires_in"),
    )


async def get_valid_access_token(db: Session, screen_name: str) -> str:
    token = db.query(PlatformToken).filter(PlatformToken.screen_name == screen_name).first()
    if token is None:
        raise PlatformAuthError("Platform not authorized. Please complete the OAuth flow first.")
    if token.needs_refresh():
        logger.info("Platform token expiring, refreshing", extra={"context": {"screen_name": screen_name}})
        token = await refresh_platform_token(db, screen_name)
    return token.access_token


class PlatformMessenger:
    """
    Proactive operator messages into an open chat.

    One retry at most: after refreshing the token on 401, or after a short
    pause on 500/502/503. A closed conversation (404) or a rate limit (429)
    fails straight away so the caller can fall back to a pending result.
    """

    def __init__(
        self,
        base_url: str = settings.salesiq_api_base_url,
        timeout_seconds: float = settings.push_timeout_seconds,
        retry_delay_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.retry_delay_seconds = retry_delay_seconds
        self.transport = transport
        self._sleep = sleep

    def message_url(self, screen_name: str, conversation_id: str) -> str:
        return f"{self.base_url}/{screen_name}/conversations/{conversation_id}/messages"

    async def _post(self, db: Session, screen_name: str, conversation_id: str, text: str) -> httpx.Response:
        access_token = await get_valid_access_token(db, screen_name)
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            return await client.post(
                self.message_url(screen_name, conversation_id),
                json={"text": text},
                headers={"Authorization": f"Zoho-oauthtoken {access_token}"},
            )

    async def send_operator_message(
        self,
        db: Session,
        screen_name: Optional[str],
        conversation_id: Optional[str],
        text: str,
    ) -> Result[bool]:
        if not screen_name or not conversation_id or not text:
            return Result.failure("Missing required parameters", "invalid_request")

        context = {"screen_name": screen_name, "conversation_id": conversation_id}
        try:
            response = await self._post(db, screen_name, conversation_id, text)
            status = response.status_code

            if status == 401:
                logger.info("Push got 401, refreshing token and retrying", extra={"context": context})
                await refresh_platform_token(db, screen_name)
                response = await self._post(db, screen_name, conversation_id, text)
            elif status in SERVER_ERROR_STATUS_CODES:
                logger.info(f"Push got {status}, retrying once", extra={"context": context})
                await self._sleep(self.retry_delay_seconds)
                response = await self._post(db, screen_name, conversation_id, text)
        except PlatformAuthError as e:
            logger.error(f"Push authentication failed: {e}", extra={"context": context})
            return Result.failure(str(e), "auth_error")
        except httpx.HTTPError as e:
            logger.error(f"Push transport error: {e}", extra={"context": context})
            return Result.failure(str(e), "transport_error")

        status = response.status_code
        if 200 <= status < 300:
            logger.info("Proactive message sent", extra={"context": context})
            return Result.success(True)
        if status == 404:
            logger.warning("Push target conversation not found or closed", extra={"context": context})
            return Result.failure("Conversation not found or closed", "conversation_closed")
        if status == 429:
            logger.warning("Push rate limited", extra={"context": context})
            return Result.failure("Rate limit exceeded", "rate_limited")

        logger.error(f"Push failed: {status}", extra={"context": context})
        return Result.failure(f"Push failed with status {status}", "push_error")
