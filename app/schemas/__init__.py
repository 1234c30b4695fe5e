from app.schemas.decision import Decision, ResolverSelection
from app.schemas.webhook import WebhookEvent, WebhookResponse

__all__ = ["Decision", "ResolverSelection", "WebhookEvent", "WebhookResponse"]
