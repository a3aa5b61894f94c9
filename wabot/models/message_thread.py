import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from wabot.database import Base


class MessageThread(Base):
    __tablename__ = "message_threads"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id = Column(UUID(as_uuid=True), nullable=False)
    contact_id = Column(UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False)
    channel = Column(Text, nullable=False, default="whatsapp")
    awaiting_button_response = Column(Boolean, nullable=False, default=False)
    button_options = Column(JSONB)  # [{"id": ..., "title": ...}] while awaiting, else NULL
    agent_typing = Column(Boolean, nullable=False, default=False)
    agent_typing_at = Column(TIMESTAMP(timezone=True))
    needs_human_attention = Column(Boolean, nullable=False, default=False)
    created_at = Column(TIMESTAMP(timezone=True))
    updated_at = Column(TIMESTAMP(timezone=True))

    contact = relationship("Contact", back_populates="threads")
    messages = relationship("Message", back_populates="thread")

    def set_button_options(self, options: list[dict]) -> None:
        """Start waiting for a numbered reply to ``options``."""
        cleaned = [{"id": str(o.get("id", "")), "title": str(o.get("title", ""))} for o in options or []]
        if not cleaned:
            self.clear_button_state()
            return
        self.awaiting_button_response = True
        self.button_options = cleaned

    def clear_button_state(self) -> None:
        self.awaiting_button_response = False
        self.button_options = None

    def pending_button_options(self) -> list[dict]:
        if not self.awaiting_button_response or not self.button_options:
            return []
        return list(self.button_options)
