from app.models.api_endpoint import ApiEndpoint
from app.models.conversation import Conversation
from app.models.platform_token import PlatformToken
from app.models.tenant import Tenant

__all__ = [
    "Tenant",
    "Conversation",
    "ApiEndpoint",
    "PlatformToken",
]
