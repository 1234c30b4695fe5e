from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, DateTime, Text

from app.database import Base, as_utc

REFRESH_MARGIN = timedelta(minutes=5)


class PlatformToken(Base):
    """OAuth token for the chat platform's REST API, one per portal."""

    __tablename__ = "platform_tokens"

    screen_name = Column(Text, primary_key=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))

    def needs_refresh(self, now: datetime | None = None) -> bool:
        """True when the token is expired or expires within five minutes."""
        now = now or datetime.now(timezone.utc)
        return as_utc(self.expires_at) <= now + REFRESH_MARGIN
