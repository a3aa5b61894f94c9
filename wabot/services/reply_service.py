"""Reply composition: prompt assembly, bounded tool loop and sending."""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from wabot.config import settings
from wabot.logging_config import get_logger
from wabot.models import AIAgent, Contact, ContactMemory, Message, MessageThread, OrganizationIntegration
from wabot.services.llm import AnthropicProvider, LLMProvider, LLMResponse
from wabot.services.memory_service import get_contact_memory
from wabot.services.name_state import build_name_instruction
from wabot.services.rag_service import format_rag_context, get_relevant_context
from wabot.services.tool_service import AVAILABLE_TOOLS, ToolContext, execute_tool
from wabot.services.whatsapp_service import send_whatsapp_message

logger = get_logger("reply_service")

MAX_TOOL_ITERATIONS = 5
HISTORY_LIMIT = 20
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
FALLBACK_RESPONSE = "Desculpe, não consegui processar sua mensagem. Pode repetir?"
FORCED_TEXT_PROMPT = "The tools were executed. Now reply to the customer naturally."
TOOL_LIMIT_RESULT = {"success": False, "message": "Tool limit reached. Reply to the customer now."}

TONE_AND_FORMAT_RULES = """## TONE
- Be informal and natural, like a WhatsApp conversation
- Reply in the customer's language
- Avoid excessive emojis
- Short, direct sentences

## FORMATTING RULES
- NEVER use tags such as [BUTTONS] or [OPTIONS]
- NEVER format options as a numbered list (1. 2. 3.)
- Answer in flowing, natural text"""


class CompletionConfigError(Exception):
    """No usable completion credentials for the organization."""


@dataclass
class ComposedReply:
    reply_text: str
    tools_invoked: List[str] = field(default_factory=list)
    used_fallback: bool = False
    sent: bool = False
    message_id: Optional[UUID] = None
    skipped: bool = False


def get_completion_api_key(db: Session, organization_id: UUID) -> str:
    integration = (
        db.query(OrganizationIntegration)
        .filter(
            OrganizationIntegration.organization_id == organization_id,
            OrganizationIntegration.slug == "claude-ai",
            OrganizationIntegration.is_enabled == True,
        )
        .first()
    )
    api_key = (integration.config_values or {}).get("api_key") if integration else None
    api_key = api_key or settings.anthropic_api_key
    if not api_key:
        raise CompletionConfigError(f"Anthropic API key not configured for organization {organization_id}")
    return api_key


def get_llm_provider(api_key: str) -> LLMProvider:
    return AnthropicProvider(api_key=api_key, default_model=settings.anthropic_model)


def load_history(
    db: Session,
    thread_id: UUID,
    exclude_message_ids: Iterable[UUID] = (),
    limit: int = HISTORY_LIMIT,
) -> List[Message]:
    """Most recent non-deleted messages of the thread, oldest first."""
    query = db.query(Message).filter(Message.thread_id == thread_id, Message.deleted_at.is_(None))
    exclude_message_ids = list(exclude_message_ids)
    if exclude_message_ids:
        query = query.filter(~Message.id.in_(exclude_message_ids))
    rows = query.order_by(Message.created_at.desc()).limit(limit).all()
    return list(reversed(rows))


def history_as_dicts(history: Iterable[Message]) -> List[dict]:
    return [{"direction": m.direction, "content": m.content} for m in history if m.content and m.content.strip()]


def build_llm_messages(history: Iterable[dict], incoming_text: str) -> List[dict]:
    """Map stored turns to user/assistant roles, merging consecutive same-role turns."""
    turns = list(history)
    if incoming_text and incoming_text.strip():
        turns.append({"direction": "inbound", "content": incoming_text})

    messages: List[dict] = []
    for turn in turns:
        content = (turn.get("content") or "").strip()
        if not content:
            continue
        role = "user" if turn.get("direction") == "inbound" else "assistant"
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n" + content
        else:
            messages.append({"role": role, "content": content})

    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    return messages


def build_system_prompt(
    agent: AIAgent,
    contact: Optional[Contact],
    memory: Optional[ContactMemory],
    rag_block: str = "",
) -> str:
    display_name = contact.full_name if contact else None
    sections = [
        agent.system_prompt or DEFAULT_SYSTEM_PROMPT,
        "## CONTACT CONTEXT\n"
        f"- Current name: {display_name or 'not provided'}\n"
        f"- Email: {(contact.email if contact else None) or 'not provided'}\n"
        f"- Phone: {(contact.phone if contact else None) or 'not provided'}",
        "## CONTACT NAME STATUS\n" + build_name_instruction(display_name, memory),
    ]
    if rag_block:
        sections.append(rag_block)
    sections.append(TONE_AND_FORMAT_RULES)
    return "\n\n".join(sections)


def _append_user_blocks(messages: List[dict], blocks: List[dict]) -> None:
    if messages and messages[-1]["role"] == "user":
        last = messages[-1]
        if isinstance(last["content"], str):
            last["content"] = [{"type": "text", "text": last["content"]}]
        last["content"].extend(blocks)
    else:
        messages.append({"role": "user", "content": blocks})


def run_tool_loop(
    db: Session,
    provider: LLMProvider,
    system: str,
    messages: List[dict],
    ctx: ToolContext,
    model: Optional[str] = None,
) -> tuple[str, List[str], bool]:
    """Call the model, executing requested tools for at most MAX_TOOL_ITERATIONS rounds.

    Returns ``(text, tools_invoked, used_fallback)``. When tools ran but the
    model produced no text, one extra tool-less call asks for a plain reply.
    """
    messages = list(messages)
    max_tokens = settings.anthropic_max_tokens
    tools_invoked: List[str] = []

    response: LLMResponse = provider.generate(
        messages, system=system, tools=AVAILABLE_TOOLS, model=model, max_tokens=max_tokens
    )

    iterations = 0
    while response.wants_tools and iterations < MAX_TOOL_ITERATIONS:
        iterations += 1
        logger.info(f"Tool iteration {iterations}/{MAX_TOOL_ITERATIONS}")

        tool_results = []
        for call in response.tool_calls:
            tools_invoked.append(call.name)
            result = execute_tool(db, call, ctx)
            tool_results.append(
                {
                    "type": "tool_result",
                    "tool_use_id": call.id,
                    "content": json.dumps(result.model_dump(exclude_none=True), ensure_ascii=False, default=str),
                }
            )

        messages.append({"role": "assistant", "content": response.blocks})
        messages.append({"role": "user", "content": tool_results})

        response = provider.generate(
            messages, system=system, tools=AVAILABLE_TOOLS, model=model, max_tokens=max_tokens
        )

    text = (response.content or "").strip()

    if not text and tools_invoked:
        logger.warning("Empty response after tools, forcing text reply")
        if response.blocks:
            messages.append({"role": "assistant", "content": response.blocks})
        if response.wants_tools:
            # Unanswered tool_use blocks need results before the next user turn.
            _append_user_blocks(
                messages,
                [
                    {"type": "tool_result", "tool_use_id": call.id, "content": json.dumps(TOOL_LIMIT_RESULT)}
                    for call in response.tool_calls
                ],
            )
        _append_user_blocks(messages, [{"type": "text", "text": FORCED_TEXT_PROMPT}])
        retry = provider.generate(messages, system=system, tools=None, model=model, max_tokens=max_tokens)
        text = (retry.content or "").strip()

    if not text:
        return FALLBACK_RESPONSE, tools_invoked, True
    return text, tools_invoked, False


def compose_reply(
    db: Session,
    thread: MessageThread,
    organization_id: UUID,
    agent: AIAgent,
    contact: Optional[Contact],
    incoming_text: str,
    exclude_message_ids: Iterable[UUID] = (),
) -> ComposedReply:
    """Build the prompt for ``incoming_text`` and run the model with tools.

    Raises CompletionConfigError when no API key is available. Completion
    errors propagate so the caller can retry the batch.
    """
    api_key = get_completion_api_key(db, organization_id)
    provider = get_llm_provider(api_key)

    history = history_as_dicts(load_history(db, thread.id, exclude_message_ids))
    memory = get_contact_memory(db, organization_id, contact.id) if contact else None

    messages = build_llm_messages(history, incoming_text)
    if not messages:
        logger.warning(f"No valid messages to send to the model for thread {thread.id}")
        return ComposedReply(reply_text="", skipped=True)

    rag_contexts = get_relevant_context(db, incoming_text, organization_id, history)
    system = build_system_prompt(agent, contact, memory, format_rag_context(rag_contexts))

    ctx = ToolContext(
        organization_id=organization_id,
        contact_id=contact.id if contact else thread.contact_id,
        thread_id=thread.id,
    )
    text, tools_invoked, used_fallback = run_tool_loop(db, provider, system, messages, ctx, model=agent.model)

    logger.info(
        "Reply composed",
        extra={
            "context": {
                "thread_id": str(thread.id),
                "tools": tools_invoked,
                "rag_chunks": len(rag_contexts),
                "fallback": used_fallback,
            }
        },
    )
    return ComposedReply(reply_text=text, tools_invoked=tools_invoked, used_fallback=used_fallback)


def compute_batch_key(thread_id: UUID, message_ids: Iterable[UUID]) -> str:
    raw = str(thread_id) + ":" + ",".join(sorted(str(m) for m in message_ids))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def find_sent_reply(db: Session, thread_id: UUID, batch_key: str) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(
            Message.thread_id == thread_id,
            Message.direction == "outbound",
            Message.whatsapp_status != "failed",
            Message.message_metadata["batch_key"].astext == batch_key,
        )
        .first()
    )


def process_ai_message(
    db: Session,
    thread: MessageThread,
    organization_id: UUID,
    agent: AIAgent,
    contact: Optional[Contact],
    incoming_text: str,
    message_ids: Iterable[UUID],
) -> ComposedReply:
    """Compose and send one reply for a batch, at most once per batch."""
    message_ids = list(message_ids)
    batch_key = compute_batch_key(thread.id, message_ids)

    existing = find_sent_reply(db, thread.id, batch_key)
    if existing is not None:
        logger.info(f"Reply for batch {batch_key[:12]} already sent, skipping", extra={"context": {"thread_id": str(thread.id)}})
        return ComposedReply(reply_text=existing.content or "", sent=True, message_id=existing.id)

    reply = compose_reply(db, thread, organization_id, agent, contact, incoming_text, message_ids)
    if reply.skipped:
        logger.info(f"Nothing to answer for thread {thread.id}, not sending")
        return reply

    result = send_whatsapp_message(
        db,
        thread,
        reply.reply_text,
        metadata={"batch_key": batch_key, "batch_size": len(message_ids), "tools": reply.tools_invoked},
    )
    reply.sent = result.ok
    if result.ok:
        reply.message_id = result.value.id
    else:
        logger.error(f"Reply not delivered for thread {thread.id}: {result.error}")
    return reply
