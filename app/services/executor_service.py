import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ApiEndpoint, Tenant
from app.services.tenant_service import TokenRefreshError, get_tenant, refresh_tenant_token

logger = get_logger("executor_service")

API_ERROR = "api_error"
AUTH_ERROR = "auth_error"
EXECUTION_ERROR = "execution_error"

ERROR_MESSAGES = {
    API_ERROR: "Sorry, that action failed. Please try again shortly.",
    AUTH_ERROR: "Authentication failed. Please contact support.",
    EXECUTION_ERROR: "Sorry, I couldn't reach the service right now. Please try again shortly.",
}

RETRYABLE_STATUS_CODES = {500, 502, 503, 504}
BODY_METHODS = {"POST", "PUT", "PATCH"}


@dataclass
class ActionRequest:
    method: str
    url: str
    params: dict = field(default_factory=dict)
    headers: dict = field(default_factory=dict)
    json: Optional[dict] = None


@dataclass
class ExecutionResult:
    success: bool
    endpoint: str
    status_code: Optional[int] = None
    data: Any = None
    error_code: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return ERROR_MESSAGES.get(self.error_code) if self.error_code else None

    @classmethod
    def failure(cls, endpoint: str, error_code: str, status_code: Optional[int] = None) -> "ExecutionResult":
        return cls(success=False, endpoint=endpoint, status_code=status_code, error_code=error_code)


def build_request(endpoint: ApiEndpoint, parameters: dict, token: str, base_url: str) -> ActionRequest:
    """Place parameters by their declared location. Undeclared ones go in the body for write methods."""
    method = endpoint.method.upper()
    url = base_url.rstrip("/") + endpoint.path
    query: dict = {}
    headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
    placed = set()

    for param in endpoint.parameters or []:
        name = param.get("name")
        location = param.get("in")
        if not name or parameters.get(name) in (None, ""):
            continue
        value = parameters[name]
        if location == "path":
            url = url.replace(f"{{{name}}}", str(value))
        elif location == "query":
            query[name] = value
        elif location == "header":
            headers[name] = str(value)
        else:
            continue
        placed.add(name)

    body = None
    if method in BODY_METHODS:
        body = {key: value for key, value in parameters.items() if key not in placed}

    return ActionRequest(method=method, url=url, params=query, headers=headers, json=body)


def format_api_response(result: ExecutionResult) -> str:
    """Visitor-facing text for an execution outcome."""
    if not result.success:
        return result.message or ERROR_MESSAGES[EXECUTION_ERROR]

    text = f"Great! I executed {result.endpoint} successfully."
    data = result.data
    if isinstance(data, list):
        return f"{text} Found {len(data)} result(s)."
    if isinstance(data, dict):
        return f"{text} Here's what I found."
    if data not in (None, ""):
        return f"{text} {data}"
    return text


class ActionExecutor:
    """
    Performs one authenticated call against a tenant's API.

    Expired tokens are refreshed before the call. A 401 triggers one refresh
    and one retry; 5xx gateway errors are retried once after a short delay.
    Never raises: every outcome is an ``ExecutionResult``.
    """

    def __init__(
        self,
        timeout_seconds: float = 5.0,
        retry_delay_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.timeout_seconds = timeout_seconds
        self.retry_delay_seconds = retry_delay_seconds
        self.transport = transport
        self._sleep = sleep

    def get_endpoint(self, db: Session, tenant_id: str, endpoint_id: str) -> Optional[ApiEndpoint]:
        return (
            db.query(ApiEndpoint)
            .filter(ApiEndpoint.tenant_id == tenant_id, ApiEndpoint.endpoint_id == endpoint_id)
            .first()
        )

    async def execute(self, db: Session, tenant_id: str, endpoint_id: str, parameters: dict) -> ExecutionResult:
        endpoint = self.get_endpoint(db, tenant_id, endpoint_id)
        if endpoint is None:
            logger.error(f"Endpoint {endpoint_id} not found", extra={"context": {"tenant_id": tenant_id}})
            return ExecutionResult.failure(endpoint_id or "", EXECUTION_ERROR)

        tenant = get_tenant(db, tenant_id)
        if tenant is None or not tenant.api_base_url:
            logger.error("Tenant API base URL not configured", extra={"context": {"tenant_id": tenant_id}})
            return ExecutionResult.failure(endpoint.label, EXECUTION_ERROR)

        return await self.execute_endpoint(db, tenant, endpoint, parameters)

    async def execute_endpoint(
        self,
        db: Session,
        tenant: Tenant,
        endpoint: ApiEndpoint,
        parameters: dict,
    ) -> ExecutionResult:
        context = {"tenant_id": tenant.id, "endpoint_id": endpoint.endpoint_id}

        if not tenant.access_token:
            logger.error("OAuth credentials not configured", extra={"context": context})
            return ExecutionResult.failure(endpoint.label, AUTH_ERROR)

        token = tenant.access_token
        refreshed = False
        if not tenant.is_token_valid():
            try:
                token = await refresh_tenant_token(db, tenant, timeout_seconds=self.timeout_seconds)
            except TokenRefreshError as e:
                logger.error(f"Token refresh failed: {e}", extra={"context": context})
                return ExecutionResult.failure(endpoint.label, AUTH_ERROR)
            refreshed = True

        retried = False
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            while True:
                request = build_request(endpoint, parameters, token, tenant.api_base_url)
                logger.info(f"Calling {request.method} {request.url}", extra={"context": context})
                try:
                    response = await client.request(
                        request.method,
                        request.url,
                        params=request.params,
                        headers=request.headers,
                        json=request.json,
                    )
                except httpx.HTTPError as e:
                    logger.error(f"Action transport error: {e}", extra={"context": context})
                    return ExecutionResult.failure(endpoint.label, EXECUTION_ERROR)

                status = response.status_code
                if status == 401 and not refreshed:
                    refreshed = True
                    try:
                        token = await refresh_tenant_token(db, tenant, timeout_seconds=self.timeout_seconds)
                    except TokenRefreshError as e:
                        logger.error(f"Token refresh after 401 failed: {e}", extra={"context": context})
                        return ExecutionResult.failure(endpoint.label, AUTH_ERROR, status)
                    continue

                if status in RETRYABLE_STATUS_CODES and not retried:
                    retried = True
                    logger.warning(f"Action returned {status}, retrying once", extra={"context": context})
                    await self._sleep(self.retry_delay_seconds)
                    continue
                break

        if status in (401, 403):
            logger.error(f"Action rejected credentials: {status}", extra={"context": context})
            return ExecutionResult.failure(endpoint.label, AUTH_ERROR, status)
        if status >= 400:
            logger.error(f"Action failed: {status}", extra={"context": context})
            return ExecutionResult.failure(endpoint.label, API_ERROR, status)

        try:
            data = response.json()
        except ValueError:
            data = response.text

        logger.info(f"Action succeeded: {status}", extra={"context": context})
        return ExecutionResult(success=True, endpoint=endpoint.label, status_code=status, data=data)
