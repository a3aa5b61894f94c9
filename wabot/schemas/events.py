from typing import Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field


class MessageReceivedEvent(BaseModel):
    """Trigger emitted for every stored inbound message."""

    thread_id: UUID = Field(validation_alias=AliasChoices("thread_id", "threadId"))
    organization_id: UUID = Field(validation_alias=AliasChoices("organization_id", "organizationId"))
    message_id: Optional[UUID] = Field(default=None, validation_alias=AliasChoices("message_id", "messageId"))
    contact_id: UUID = Field(validation_alias=AliasChoices("contact_id", "contactId"))


class EventAcceptedResponse(BaseModel):
    accepted: bool
    thread_id: UUID
    message: str
