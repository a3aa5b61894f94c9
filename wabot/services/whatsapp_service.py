import hashlib
import json
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, List, Optional
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from wabot.config import settings
from wabot.logging_config import get_logger
from wabot.models import Message, MessageThread, OrganizationIntegration
from wabot.services.alert_service import alert_error
from wabot.services.result import CONTACT_MISSING, NOT_CONFIGURED, Result, TransportError

logger = get_logger("whatsapp_service")

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"
TWILIO_CONTENT_URL = "https://content.twilio.com/v1/Content"
TWILIO_TIMEOUT_SECONDS = 30.0
TEMPLATE_LANGUAGE = "pt_BR"
MAX_QUICK_REPLY_BUTTONS = 3
MAX_BUTTON_TITLE_CHARS = 20


class ContentTemplateCache:
    """Content SIDs of quick-reply templates already provisioned in Twilio.

    Entries expire after ``ttl_seconds``; past ``max_entries`` the oldest entry
    is evicted.
    """

    def __init__(
        self,
        ttl_seconds: float = 24 * 60 * 60,
        max_entries: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[str, float]]" = OrderedDict()

    @staticmethod
    def make_key(body: str, buttons: List[dict]) -> str:
        raw = json.dumps({"body": body, "buttons": buttons}, sort_keys=True, ensure_ascii=False)
        return "qr_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]

    def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        sid, created_at = entry
        if self._clock() - created_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return sid

    def set(self, key: str, sid: str) -> None:
        self._entries[key] = (sid, self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)


content_template_cache = ContentTemplateCache()


def get_twilio_config(db: Session, organization_id: UUID) -> dict:
    """Organization's twilio-whatsapp integration, falling back to process settings."""
    integration = (
        db.query(OrganizationIntegration)
        .filter(
            OrganizationIntegration.organization_id == organization_id,
            OrganizationIntegration.slug == "twilio-whatsapp",
            OrganizationIntegration.is_enabled == True,
        )
        .first()
    )
    values = dict(integration.config_values or {}) if integration else {}
    return {
        "account_sid": values.get("account_sid") or settings.twilio_account_sid,
        "auth_token": values.get("auth_token") or settings.twilio_auth_token,
        "whatsapp_number": values.get("whatsapp_number") or settings.twilio_whatsapp_number,
    }


def prepare_buttons(buttons: Optional[List[dict]]) -> List[dict]:
    prepared = []
    for index, button in enumerate((buttons or [])[:MAX_QUICK_REPLY_BUTTONS], start=1):
        title = str(button.get("title") or "").strip()[:MAX_BUTTON_TITLE_CHARS]
        if not title:
            continue
        prepared.append({"id": str(button.get("id") or f"option_{index}"), "title": title})
    return prepared


def get_quick_reply_content_sid(
    client: httpx.Client,
    config: dict,
    body: str,
    buttons: List[dict],
    cache: Optional[ContentTemplateCache] = None,
) -> str:
    cache = cache if cache is not None else content_template_cache
    key = cache.make_key(body, buttons)
    cached_sid = cache.get(key)
    if cached_sid:
        logger.debug(f"Using cached quick reply template: {cached_sid}")
        return cached_sid

    response = client.post(
        TWILIO_CONTENT_URL,
        auth=(config["account_sid"], config["auth_token"]),
        json={
            "friendly_name": f"quick_reply_{key[3:15]}",
            "language": TEMPLATE_LANGUAGE,
            "types": {"twilio/quick-reply": {"body": body, "actions": buttons}},
        },
    )
    if response.status_code not in (200, 201):
        raise TransportError(f"Twilio Content API error: {response.status_code} - {response.text[:200]}")

    sid = response.json()["sid"]
    cache.set(key, sid)
    logger.info(f"Quick reply template created: {sid}")
    return sid


def _save_outbound(
    db: Session,
    thread: MessageThread,
    content: str,
    *,
    status: str,
    sid: Optional[str] = None,
    error_message: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Message:
    message = Message(
        thread_id=thread.id,
        organization_id=thread.organization_id,
        direction="outbound",
        content=content,
        sender_type="agent",
        ai_processed=True,
        whatsapp_message_sid=sid,
        whatsapp_status=status,
        error_message=error_message,
        message_metadata=metadata or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(message)
    db.flush()
    return message


def show_typing_indicator(db: Session, thread: MessageThread) -> None:
    thread.agent_typing = True
    thread.agent_typing_at = datetime.now(timezone.utc)
    db.flush()


def hide_typing_indicator(db: Session, thread: MessageThread) -> None:
    thread.agent_typing = False
    thread.agent_typing_at = None
    thread.updated_at = datetime.now(timezone.utc)
    db.flush()


def send_whatsapp_message(
    db: Session,
    thread: MessageThread,
    content: str,
    *,
    buttons: Optional[List[dict]] = None,
    metadata: Optional[dict] = None,
    cache: Optional[ContentTemplateCache] = None,
    content_sid: Optional[str] = None,
    content_variables: Optional[dict] = None,
) -> Result[Message]:
    """Send ``content`` to the thread's contact through Twilio and store it.

    The outbound message is saved either way: ``sending`` with the Twilio SID
    on success, ``failed`` with the error otherwise. Sending buttons puts the
    thread in the awaiting-button-response state. A ``content_sid`` sends a
    pre-provisioned template filled with ``content_variables``.
    """
    metadata = dict(metadata or {})
    prepared_buttons = prepare_buttons(buttons)
    if content_sid:
        metadata["message_type"] = "template"
    else:
        metadata["message_type"] = "quick_reply" if prepared_buttons else "text"

    try:
        config = get_twilio_config(db, thread.organization_id)
        if not config["account_sid"] or not config["auth_token"] or not config["whatsapp_number"]:
            raise TransportError("Twilio credentials not configured", NOT_CONFIGURED)

        phone = thread.contact.phone if thread.contact else None
        if not phone:
            raise TransportError(f"Contact phone missing for thread {thread.id}", CONTACT_MISSING)

        form = {
            "From": f"whatsapp:{config['whatsapp_number']}",
            "To": f"whatsapp:{phone}",
        }
        with httpx.Client(timeout=TWILIO_TIMEOUT_SECONDS) as client:
            if content_sid:
                form["ContentSid"] = content_sid
                if content_variables:
                    form["ContentVariables"] = json.dumps(content_variables, ensure_ascii=False)
            elif prepared_buttons:
                form["ContentSid"] = get_quick_reply_content_sid(client, config, content, prepared_buttons, cache)
            else:
                form["Body"] = content
            response = client.post(
                f"{TWILIO_API_BASE}/Accounts/{config['account_sid']}/Messages.json",
                auth=(config["account_sid"], config["auth_token"]),
                data=form,
            )

        if response.status_code not in (200, 201):
            raise TransportError(f"Twilio API error: {response.status_code} - {response.text[:200]}")

        sid = response.json().get("sid")
        logger.info(f"Message sent to Twilio: {sid}", extra={"context": {"thread_id": str(thread.id)}})

        if prepared_buttons and not content_sid:
            thread.set_button_options(prepared_buttons)
        message = _save_outbound(db, thread, content, status="sending", sid=sid, metadata=metadata)
        hide_typing_indicator(db, thread)
        return Result.success(message)
    except Exception as e:
        logger.error(f"Error sending WhatsApp message: {e}")
        alert_error("WhatsApp send failed", {"thread_id": str(thread.id), "error": str(e)[:200]})
        _save_outbound(db, thread, content, status="failed", error_message=str(e), metadata=metadata)
        hide_typing_indicator(db, thread)
        return Result.from_exception(e)
