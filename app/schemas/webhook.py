from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class WebhookVisitor(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    email: Optional[str] = Field(default=None, validation_alias=AliasChoices("email", "email_id"))
    active_conversation_id: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    os: Optional[str] = None
    department_id: Optional[str] = None
    channel: Optional[str] = None
    language: Optional[str] = None
    time_zone: Optional[str] = None
    custom_info: Optional[dict[str, Any]] = None
    info: Optional[dict[str, Any]] = None


class WebhookMessage(BaseModel):
    type: Optional[str] = "text"
    text: Optional[str] = None


class WebhookRequestInfo(BaseModel):
    id: Optional[str] = None
    app_id: Optional[str] = None


class WebhookEvent(BaseModel):
    """Inbound chat-platform event. Accepts both platform and generic field names."""

    model_config = ConfigDict(extra="allow")

    handler: Optional[str] = None
    request: Optional[WebhookRequestInfo] = None
    unique_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("unique_id", "requestId"))
    org_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("org_id", "tenantId", "tenant_id"))
    screen_name: Optional[str] = None
    visitor: Optional[WebhookVisitor] = None
    message: Optional[WebhookMessage] = None
    chat: Optional[dict[str, Any]] = None
    session: Optional[dict[str, Any]] = None

    @property
    def request_id(self) -> Optional[str]:
        if self.request and self.request.id:
            return self.request.id
        return self.unique_id

    @property
    def tenant_id(self) -> Optional[str]:
        return self.org_id

    @property
    def visitor_id(self) -> Optional[str]:
        if not self.visitor:
            return None
        return self.visitor.email or self.visitor.id or self.visitor.active_conversation_id

    @property
    def message_text(self) -> str:
        return (self.message.text or "") if self.message else ""

    @property
    def is_validation_ping(self) -> bool:
        return self.handler == "ping" or (not self.handler and not self.message)


class WebhookReply(BaseModel):
    text: str


class WebhookResponse(BaseModel):
    replies: list[WebhookReply] = Field(default_factory=list)

    @classmethod
    def of(cls, text: str) -> "WebhookResponse":
        return cls(replies=[WebhookReply(text=text)])


class SessionParamsRequest(BaseModel):
    email: str
    custom_params: dict[str, Any] = Field(default_factory=dict)


class ReplyOverrideRequest(BaseModel):
    text: str = Field(min_length=1)


class TenantCredentialUser(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("_id", "id"))
    email: Optional[str] = None
    name: Optional[str] = None
    mobile: Optional[str] = None


class TenantCredentialCallback(BaseModel):
    """Credential delivery from a tenant's identity provider."""

    event: Optional[str] = None
    tenant_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("tenant_id", "org_id", "orgId"))
    token: Any = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_refresh_url: Optional[str] = None
    api_base_url: Optional[str] = None
    user: Optional[TenantCredentialUser] = None

    @property
    def access_token(self) -> Optional[str]:
        if isinstance(self.token, str):
            return self.token
        if isinstance(self.token, dict):
            return self.token.get("access_token")
        return None

    @property
    def delivered_refresh_token(self) -> Optional[str]:
        if self.refresh_token:
            return self.refresh_token
        if isinstance(self.token, dict):
            return self.token.get("refresh_token")
        return None
