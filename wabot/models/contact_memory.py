import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

from wabot.database import Base


class ContactMemory(Base):
    __tablename__ = "contact_memories"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), nullable=False)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False, unique=True)
    name_status = Column(Text, nullable=False, default="unasked")  # unasked, asked, confirmed
    name_confirmed_at = Column(TIMESTAMP(timezone=True))
    original_whatsapp_name = Column(Text)
    facts = Column(JSONB, nullable=False, default=list)
    objections = Column(JSONB, nullable=False, default=list)
    qualification = Column(JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))

    @property
    def name_asked(self) -> bool:
        return self.name_status in ("asked", "confirmed")

    @property
    def name_confirmed(self) -> bool:
        return self.name_status == "confirmed"
