import uuid

from sqlalchemy import Boolean, Column, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

from wabot.database import Base


class OrganizationIntegration(Base):
    __tablename__ = "organization_integrations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), nullable=False)
    slug = Column(Text, nullable=False)  # claude-ai, twilio-whatsapp, voyage-ai
    config_values = Column(JSONB, nullable=False, default=dict)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))
