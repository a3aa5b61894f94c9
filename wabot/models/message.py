import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from wabot.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    thread_id = Column(UUID(as_uuid=True), ForeignKey("message_threads.id"), nullable=False)
    organization_id = Column(UUID(as_uuid=True), nullable=False)
    direction = Column(Text, nullable=False)  # inbound, outbound
    content = Column(Text)
    sender_type = Column(Text)  # contact, agent, human
    ai_processed = Column(Boolean, nullable=False, default=False)
    media_type = Column(Text)
    media_urls = Column(ARRAY(Text))
    whatsapp_message_sid = Column(Text)
    whatsapp_status = Column(Text)  # sending, sent, delivered, read, failed
    error_message = Column(Text)
    message_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    deleted_at = Column(TIMESTAMP(timezone=True))

    thread = relationship("MessageThread", back_populates="messages")
