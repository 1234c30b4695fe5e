import uuid

from sqlalchemy import Boolean, Column, DateTime, Integer, Text, UniqueConstraint, Uuid

from app.database import Base, JSONType


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("tenant_id", "visitor_id", name="uq_conversations_tenant_visitor"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    visitor_id = Column(Text, nullable=False, index=True)
    active_conversation_id = Column(Text)  # platform chat handle, needed for proactive push
    screen_name = Column(Text)  # platform portal identifier
    history = Column(JSONType, nullable=False, default=list)  # [{role, text, timestamp}], max 10
    visitor_details = Column(JSONType, nullable=False, default=dict)
    request_info = Column(JSONType, nullable=False, default=dict)
    clarification_attempts = Column(Integer, nullable=False, default=0)
    resolved_parameters = Column(JSONType, nullable=False, default=dict)
    pending_result_text = Column(Text)
    pending_result_at = Column(DateTime(timezone=True))
    pending_result_consumed = Column(Boolean, nullable=False, default=False)
    pending_reply_override = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_activity_at = Column(DateTime(timezone=True))
