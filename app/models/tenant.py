from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Text

from app.database import Base, JSONType, as_utc


class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(Text, primary_key=True)  # platform org id, also the vector namespace
    name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")  # active, inactive, pending
    api_base_url = Column(Text)
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_type = Column(Text, default="Bearer")
    token_expires_at = Column(DateTime(timezone=True))
    token_scope = Column(Text)
    token_refresh_url = Column(Text)
    oauth_client_id = Column(Text)
    oauth_client_secret = Column(Text)
    tenant_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    def is_token_valid(self, now: datetime | None = None) -> bool:
        """Token present and not expired. Missing expiry counts as valid."""
        if not self.access_token:
            return False
        expires_at = as_utc(self.token_expires_at)
        if expires_at is None:
            return True
        return (now or datetime.now(timezone.utc)) < expires_at
