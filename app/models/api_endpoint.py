import uuid

from sqlalchemy import Column, DateTime, Text, UniqueConstraint, Uuid

from app.database import Base, JSONType


class ApiEndpoint(Base):
    """One operation of a tenant's ingested API spec."""

    __tablename__ = "api_endpoints"
    __table_args__ = (UniqueConstraint("tenant_id", "endpoint_id", name="uq_api_endpoints_tenant_endpoint"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Text, nullable=False, index=True)
    endpoint_id = Column(Text, nullable=False)
    method = Column(Text, nullable=False)  # GET, POST, PUT, PATCH, DELETE
    path = Column(Text, nullable=False)
    summary = Column(Text)
    description = Column(Text)
    parameters = Column(JSONType, nullable=False, default=list)  # [{name, in, required, description}]
    request_body = Column(JSONType)
    created_at = Column(DateTime(timezone=True))

    @property
    def label(self) -> str:
        return f"{self.method.upper()} {self.path}"

    @property
    def required_parameter_names(self) -> list[str]:
        return [p.get("name") for p in self.parameters or [] if p.get("required") and p.get("name")]
