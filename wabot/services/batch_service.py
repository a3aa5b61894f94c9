import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from wabot.logging_config import LoggerAdapter, get_logger
from wabot.models import AIAgent, Contact, Message, MessageThread
from wabot.schemas.events import MessageReceivedEvent
from wabot.services.reply_service import process_ai_message
from wabot.services.whatsapp_service import hide_typing_indicator, show_typing_indicator

logger = get_logger("batch_service")


class ThreadNotFoundError(Exception):
    def __init__(self, thread_id: UUID, organization_id: UUID):
        self.thread_id = thread_id
        self.organization_id = organization_id
        super().__init__(f"Thread {thread_id} not found for organization {organization_id}")


@dataclass
class BatchResult:
    processed: bool
    reason: str
    message_ids: List[UUID] = field(default_factory=list)
    reply_text: Optional[str] = None
    tools_invoked: List[str] = field(default_factory=list)


def resolve_button_answer(content: Optional[str], options: Sequence[dict]) -> str:
    """Replace a bare option number ("2") by that option's title."""
    text = content or ""
    stripped = text.strip()
    if options and re.fullmatch(r"[0-9]+", stripped):
        index = int(stripped)
        if 1 <= index <= len(options):
            return options[index - 1].get("title") or text
    return text


def resolve_button_answers(contents: Sequence[Optional[str]], options: Sequence[dict]) -> List[str]:
    return [resolve_button_answer(content, options) for content in contents]


def combine_messages(contents: Sequence[str]) -> str:
    return "\n".join(c for c in contents if c and c.strip())


def get_thread(db: Session, thread_id: UUID, organization_id: UUID) -> Optional[MessageThread]:
    return (
        db.query(MessageThread)
        .filter(MessageThread.id == thread_id, MessageThread.organization_id == organization_id)
        .first()
    )


def get_pending_messages(db: Session, thread_id: UUID, organization_id: UUID) -> List[Message]:
    return (
        db.query(Message)
        .filter(
            Message.thread_id == thread_id,
            Message.organization_id == organization_id,
            Message.direction == "inbound",
            Message.ai_processed == False,
            Message.deleted_at.is_(None),
        )
        .order_by(Message.created_at.asc())
        .all()
    )


def get_enabled_agent(db: Session, organization_id: UUID) -> Optional[AIAgent]:
    return (
        db.query(AIAgent)
        .filter(AIAgent.organization_id == organization_id, AIAgent.is_enabled == True)
        .order_by(AIAgent.created_at.asc())
        .first()
    )


def mark_messages_consumed(db: Session, organization_id: UUID, message_ids: Sequence[UUID]) -> int:
    """Flag exactly ``message_ids`` as processed. Already-consumed rows are left alone."""
    if not message_ids:
        return 0
    return (
        db.query(Message)
        .filter(
            Message.id.in_(list(message_ids)),
            Message.organization_id == organization_id,
            Message.ai_processed == False,
        )
        .update({Message.ai_processed: True}, synchronize_session=False)
    )


def _safe_hide_typing(db: Session, thread: MessageThread, log) -> None:
    try:
        hide_typing_indicator(db, thread)
    except Exception as e:
        log.warning(f"Failed to hide typing indicator: {e}")


def process_message_batch(db: Session, event: MessageReceivedEvent) -> BatchResult:
    """Process every unconsumed inbound message of a thread as one AI turn.

    Raises ThreadNotFoundError when the thread does not belong to the
    organization. Completion and configuration errors propagate so the
    scheduler can retry.
    """
    log = LoggerAdapter(logger, {"thread_id": str(event.thread_id), "organization_id": str(event.organization_id)})

    thread = get_thread(db, event.thread_id, event.organization_id)
    if thread is None:
        log.error("Thread not found for organization")
        raise ThreadNotFoundError(event.thread_id, event.organization_id)

    try:
        show_typing_indicator(db, thread)
        db.commit()
    except Exception as e:
        db.rollback()
        log.warning(f"Failed to show typing indicator: {e}")

    pending = get_pending_messages(db, thread.id, event.organization_id)
    if not pending:
        log.info("No pending messages")
        _safe_hide_typing(db, thread, log)
        db.commit()
        return BatchResult(processed=False, reason="no_pending_messages")

    message_ids = [m.id for m in pending]
    log = log.bind(batch_size=len(pending))
    options = thread.pending_button_options()
    resolved = resolve_button_answers([m.content for m in pending], options)
    combined_text = combine_messages(resolved)

    thread.clear_button_state()
    db.flush()

    log.info(
        f"Processing batch of {len(pending)} messages",
        context={"message_ids": [str(m) for m in message_ids], "button_options": len(options)},
    )

    agent = get_enabled_agent(db, event.organization_id)
    if agent is None:
        log.info("No enabled AI agent for organization, skipping")
        _safe_hide_typing(db, thread, log)
        db.commit()
        return BatchResult(processed=False, reason="no_agent", message_ids=message_ids)

    if thread.needs_human_attention:
        log.info("Thread is with a human attendant, consuming without reply")
        mark_messages_consumed(db, event.organization_id, message_ids)
        _safe_hide_typing(db, thread, log)
        db.commit()
        return BatchResult(processed=False, reason="human_attention", message_ids=message_ids)

    contact = (
        db.query(Contact)
        .filter(Contact.id == thread.contact_id, Contact.organization_id == event.organization_id)
        .first()
    )

    reply = process_ai_message(db, thread, event.organization_id, agent, contact, combined_text, message_ids)
    if reply.skipped:
        _safe_hide_typing(db, thread, log)

    consumed = mark_messages_consumed(db, event.organization_id, message_ids)
    thread.updated_at = datetime.now(timezone.utc)
    db.commit()

    log.info(
        "Batch processed",
        context={"consumed": consumed, "tools": reply.tools_invoked, "sent": reply.sent},
    )
    if reply.skipped:
        reason = "nothing_to_answer"
    elif reply.sent:
        reason = "replied"
    else:
        reason = "send_failed"
    return BatchResult(
        processed=True,
        reason=reason,
        message_ids=message_ids,
        reply_text=reply.reply_text,
        tools_invoked=reply.tools_invoked,
    )
