from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from wabot.logging_config import get_logger
from wabot.models import Contact, ContactMemory
from wabot.services.name_state import NameStatus, can_transition, get_name_status, transition

logger = get_logger("memory_service")


def get_contact_memory(db: Session, organization_id: UUID, contact_id: UUID) -> Optional[ContactMemory]:
    return (
        db.query(ContactMemory)
        .filter(ContactMemory.organization_id == organization_id, ContactMemory.contact_id == contact_id)
        .first()
    )


def get_or_create_contact_memory(db: Session, organization_id: UUID, contact_id: UUID) -> ContactMemory:
    """Memory records are created lazily the first time a tool touches the contact."""
    memory = get_contact_memory(db, organization_id, contact_id)
    if memory is None:
        now = datetime.now(timezone.utc)
        memory = ContactMemory(
            organization_id=organization_id,
            contact_id=contact_id,
            name_status=NameStatus.UNASKED.value,
            facts=[],
            objections=[],
            qualification={},
            created_at=now,
            updated_at=now,
        )
        db.add(memory)
        db.flush()
    return memory


def mark_name_asked(db: Session, organization_id: UUID, contact_id: UUID) -> ContactMemory:
    """Record that the agent asked for the name. A confirmed name stays confirmed."""
    memory = get_or_create_contact_memory(db, organization_id, contact_id)
    status = get_name_status(memory)

    if can_transition(status, NameStatus.ASKED):
        memory.name_status = transition(status, NameStatus.ASKED).value
        memory.updated_at = datetime.now(timezone.utc)
        db.flush()
        logger.info(f"Marked name as asked for contact {contact_id}")
    else:
        logger.debug(f"mark_name_asked ignored for contact {contact_id}: status={status.value}")
    return memory


def confirm_contact_name(
    db: Session,
    organization_id: UUID,
    contact: Contact,
    *,
    full_name: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
) -> ContactMemory:
    """Write confirmed name fields and move the memory to CONFIRMED.

    The display name the contact had before its first confirmation is kept in
    ``original_whatsapp_name`` and never overwritten afterwards.
    """
    memory = get_or_create_contact_memory(db, organization_id, contact.id)
    now = datetime.now(timezone.utc)

    if not memory.original_whatsapp_name and contact.full_name:
        memory.original_whatsapp_name = contact.full_name

    if full_name:
        contact.full_name = full_name
    if first_name:
        contact.first_name = first_name
    if last_name:
        contact.last_name = last_name
    if not full_name and first_name:
        contact.full_name = " ".join(part for part in (first_name, last_name) if part)
    contact.updated_at = now

    status = get_name_status(memory)
    if status != NameStatus.CONFIRMED:
        memory.name_status = transition(status, NameStatus.CONFIRMED).value
        memory.name_confirmed_at = now
    memory.updated_at = now

    db.flush()
    logger.info(f"Confirmed name for contact {contact.id}")
    return memory
