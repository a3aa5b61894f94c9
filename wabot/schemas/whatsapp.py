from typing import List, Literal, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field, model_validator


class QuickReplyButton(BaseModel):
    id: Optional[str] = None
    title: str


class InteractivePayload(BaseModel):
    type: Literal["quick_reply"] = "quick_reply"
    quick_reply_buttons: List[QuickReplyButton] = Field(
        default_factory=list,
        validation_alias=AliasChoices("quick_reply_buttons", "quickReplyButtons"),
    )


class SendMessageRequest(BaseModel):
    """Outbound message from an operator or an automation."""

    thread_id: UUID = Field(validation_alias=AliasChoices("thread_id", "threadId"))
    organization_id: UUID = Field(validation_alias=AliasChoices("organization_id", "organizationId"))
    content: str = ""
    type: Literal["text", "interactive", "template"] = "text"
    content_sid: Optional[str] = Field(default=None, validation_alias=AliasChoices("content_sid", "contentSid"))
    content_variables: Optional[dict] = Field(
        default=None, validation_alias=AliasChoices("content_variables", "contentVariables")
    )
    interactive: Optional[InteractivePayload] = None

    @model_validator(mode="after")
    def check_payload(self):
        if self.type == "template":
            if not self.content_sid:
                raise ValueError("content_sid is required for template messages")
        elif not self.content.strip():
            raise ValueError("content is required")
        if self.type == "interactive" and not self.buttons:
            raise ValueError("interactive messages need at least one quick reply button")
        return self

    @property
    def buttons(self) -> List[dict]:
        if not self.interactive:
            return []
        return [b.model_dump() for b in self.interactive.quick_reply_buttons]


class SendMessageResponse(BaseModel):
    success: bool
    message_id: Optional[UUID] = None
    twilio_sid: Optional[str] = None
