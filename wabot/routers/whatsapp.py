from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from wabot.config import settings
from wabot.database import get_db
from wabot.logging_config import get_logger
from wabot.schemas.whatsapp import SendMessageRequest, SendMessageResponse
from wabot.services.batch_service import get_thread
from wabot.services.whatsapp_service import send_whatsapp_message

router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])

logger = get_logger("whatsapp_router")


def _require_admin_token(provided: Optional[str]) -> None:
    if not settings.admin_token:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.post("/send", response_model=SendMessageResponse)
def send_message(
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
):
    """Send text, quick-reply buttons or a pre-provisioned template to a thread.

    Quick-reply buttons put the thread in the awaiting-button-response state,
    so a numbered answer from the customer resolves to the button title.
    """
    _require_admin_token(x_admin_token)

    thread = get_thread(db, request.thread_id, request.organization_id)
    if thread is None:
        raise HTTPException(status_code=404, detail="Thread not found")

    result = send_whatsapp_message(
        db,
        thread,
        request.content,
        buttons=request.buttons or None,
        metadata={"source": "api"},
        content_sid=request.content_sid if request.type == "template" else None,
        content_variables=request.content_variables if request.type == "template" else None,
    )
    db.commit()

    if not result.ok:
        logger.error(
            f"Send failed for thread {thread.id}: {result.error}",
            extra={"context": {"error_code": result.error_code}},
        )
        raise HTTPException(
            status_code=502,
            detail={"message": "Failed to send message", "error": result.error, "error_code": result.error_code},
        )

    return SendMessageResponse(
        success=True,
        message_id=result.value.id,
        twilio_sid=result.value.whatsapp_message_sid,
    )
