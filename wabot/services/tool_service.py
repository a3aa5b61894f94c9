from dataclasses import dataclass
from datetime import datetime, timezone
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy.orm import Session

from wabot.logging_config import get_logger
from wabot.models import Contact, MessageThread
from wabot.schemas.tools import (
    MarkNameAskedArgs,
    ToolArgs,
    ToolCall,
    ToolResult,
    TransferToHumanArgs,
    UpdateContactArgs,
)
from wabot.services.memory_service import confirm_contact_name, mark_name_asked

logger = get_logger("tool_service")

AVAILABLE_TOOLS = [
    {
        "name": "update_contact",
        "description": (
            "Update the contact's CRM record.\n\n"
            "IMPORTANT CONTEXT:\n"
            "The current name came from the WhatsApp profile and is often NOT the customer's real name "
            '(e.g. "g.s." for Gianluca Silveira, "Mãe do Pedro" for Maria Santos).\n\n'
            "NAME RULES:\n"
            "1. Only change the name when the customer TOLD or CONFIRMED their real name.\n"
            "2. Always send name_was_confirmed: true together with a name.\n\n"
            "Email, phone and company can be updated directly whenever the customer provides them."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "full_name": {"type": "string", "description": "Real full name (not the WhatsApp name)"},
                "first_name": {"type": "string", "description": "Real first name"},
                "last_name": {"type": "string", "description": "Last name"},
                "email": {"type": "string", "description": "Email address"},
                "phone": {"type": "string", "description": "Phone number"},
                "company_name": {"type": "string", "description": "Company name"},
                "name_was_confirmed": {
                    "type": "boolean",
                    "description": "REQUIRED for name changes. True = the customer stated/confirmed the real name.",
                },
            },
        },
    },
    {
        "name": "mark_name_asked",
        "description": (
            "Record that you already asked for the customer's name in this conversation. "
            "Call it IMMEDIATELY after asking so the question is never repeated."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "question_asked": {"type": "string", "description": "The question you asked"},
            },
        },
    },
    {
        "name": "transfer_to_human",
        "description": (
            "Hand the conversation over to a human attendant. Use when the customer explicitly asks for it, "
            "the subject is too complex, or there is a serious complaint."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "reason": {"type": "string", "description": "Why the conversation is being transferred"},
            },
        },
    },
]

TOOL_ARGUMENT_MODELS = {
    "update_contact": UpdateContactArgs,
    "mark_name_asked": MarkNameAskedArgs,
    "transfer_to_human": TransferToHumanArgs,
}


class UnknownToolError(ValueError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool: {name}")


@dataclass(frozen=True)
class ToolContext:
    organization_id: UUID
    contact_id: UUID
    thread_id: UUID


def parse_tool_call(call: ToolCall) -> ToolArgs:
    """Validate raw tool input into the argument model for that tool."""
    model = TOOL_ARGUMENT_MODELS.get(call.name)
    if model is None:
        raise UnknownToolError(call.name)
    return model.model_validate(call.input or {})


def _update_contact(db: Session, args: UpdateContactArgs, ctx: ToolContext) -> ToolResult:
    if args.has_name_fields and not args.name_was_confirmed:
        logger.info("Name update rejected: no confirmation flag")
        return ToolResult(
            success=False,
            message=(
                "ERROR: the name can only be updated after the customer confirmed it. "
                "Send name_was_confirmed: true only when the customer told you their real name."
            ),
            data={"requires_confirmation": True},
        )

    contact = (
        db.query(Contact)
        .filter(Contact.id == ctx.contact_id, Contact.organization_id == ctx.organization_id)
        .first()
    )
    if contact is None:
        return ToolResult(success=False, message="Contact not found")

    updated: dict = {}
    if args.has_name_fields:
        confirm_contact_name(
            db,
            ctx.organization_id,
            contact,
            full_name=args.full_name,
            first_name=args.first_name,
            last_name=args.last_name,
        )
        updated.update(
            {k: v for k, v in (("full_name", args.full_name), ("first_name", args.first_name), ("last_name", args.last_name)) if v}
        )

    for field_name in ("email", "phone", "company_name"):
        value = getattr(args, field_name)
        if value:
            setattr(contact, field_name, value)
            updated[field_name] = value

    if not updated:
        return ToolResult(success=False, message="No fields to update")

    contact.updated_at = datetime.now(timezone.utc)
    db.flush()
    logger.info(f"Contact {ctx.contact_id} updated: {sorted(updated)}")
    return ToolResult(success=True, message="Contact updated successfully", data=updated)


def _mark_name_asked(db: Session, args: MarkNameAskedArgs, ctx: ToolContext) -> ToolResult:
    mark_name_asked(db, ctx.organization_id, ctx.contact_id)
    return ToolResult(success=True, message="Recorded that the name was asked")


def _transfer_to_human(db: Session, args: TransferToHumanArgs, ctx: ToolContext) -> ToolResult:
    thread = (
        db.query(MessageThread)
        .filter(MessageThread.id == ctx.thread_id, MessageThread.organization_id == ctx.organization_id)
        .first()
    )
    if thread is None:
        return ToolResult(success=False, message="Thread not found")

    thread.needs_human_attention = True
    thread.updated_at = datetime.now(timezone.utc)
    db.flush()
    logger.info(
        "Conversation flagged for human attention",
        extra={"context": {"thread_id": str(ctx.thread_id), "reason": args.reason}},
    )
    return ToolResult(success=True, message="Conversation flagged for a human attendant")


_HANDLERS = {
    "update_contact": _update_contact,
    "mark_name_asked": _mark_name_asked,
    "transfer_to_human": _transfer_to_human,
}


def execute_tool(db: Session, call: ToolCall, ctx: ToolContext) -> ToolResult:
    """Run one tool call. Failures come back as results, never as exceptions."""
    logger.info(f"Executing tool: {call.name}", extra={"context": {"input": call.input}})
    try:
        args = parse_tool_call(call)
    except UnknownToolError as e:
        return ToolResult(success=False, message=str(e))
    except ValidationError as e:
        return ToolResult(success=False, message=f"Invalid arguments for {call.name}: {e.errors()[:3]}")

    try:
        # Savepoint so a failed handler leaves the batch transaction usable.
        with db.begin_nested():
            return _HANDLERS[call.name](db, args, ctx)
    except Exception as e:
        logger.error(f"Error executing tool {call.name}: {e}")
        return ToolResult(success=False, message=str(e))
