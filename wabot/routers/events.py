from fastapi import APIRouter, BackgroundTasks

from wabot.logging_config import get_logger
from wabot.schemas.events import EventAcceptedResponse, MessageReceivedEvent
from wabot.services.debounce_service import handle_message_received

router = APIRouter(prefix="/events", tags=["events"])

logger = get_logger("events")


async def _run_trigger(event: MessageReceivedEvent) -> None:
    try:
        result = await handle_message_received(event)
    except Exception as e:
        # Already logged and alerted by the retry loop.
        logger.error(f"Message batch failed for thread {event.thread_id}: {e}")
        return
    if result is not None:
        logger.info(
            "Message batch finished",
            extra={"context": {"thread_id": str(event.thread_id), "reason": result.reason}},
        )


@router.post("/message-received", response_model=EventAcceptedResponse, status_code=202)
async def message_received(event: MessageReceivedEvent, background_tasks: BackgroundTasks):
    """Schedule debounced batch processing for the event's thread."""
    background_tasks.add_task(_run_trigger, event)
    logger.info(
        "Message received event accepted",
        extra={"context": {"thread_id": str(event.thread_id), "message_id": str(event.message_id)}},
    )
    return EventAcceptedResponse(accepted=True, thread_id=event.thread_id, message="Batch scheduled")
