"""Debounced, single-flight scheduling of batch processing per thread.

A trigger stores its token under the thread's debounce key, waits for the
quiet window and only proceeds when no newer trigger replaced the token.
The surviving trigger then takes a per-thread claim so two executions for
the same thread never overlap, and runs the batch with bounded retries.
"""

import asyncio
import contextlib
from typing import Callable, Optional
from uuid import uuid4

import redis.asyncio as redis_async

from wabot.config import settings
from wabot.database import SessionLocal
from wabot.logging_config import get_logger
from wabot.schemas.events import MessageReceivedEvent
from wabot.services.alert_service import alert_error, alert_warning
from wabot.services.batch_service import BatchResult, ThreadNotFoundError, process_message_batch
from wabot.services.reply_service import CompletionConfigError

logger = get_logger("debounce_service")

DEBOUNCE_KEY_PREFIX = "wabot:debounce"
CLAIM_KEY_PREFIX = "wabot:claim"
CLAIM_POLL_SECONDS = 0.5
REDIS_SOCKET_TIMEOUT_SECONDS = 0.5
NON_RETRYABLE_ERRORS = (ThreadNotFoundError, CompletionConfigError)

_redis_client = None
_redis_url = None

# Compare-and-delete so an expired claim re-taken by another execution is not released.
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

_EXTEND_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('expire', KEYS[1], ARGV[2])
end
return 0
"""


def get_redis_client():
    global _redis_client, _redis_url

    if _redis_client is None or _redis_url != settings.redis_url:
        _redis_url = settings.redis_url
        _redis_client = redis_async.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
        )
    return _redis_client


async def should_process_debounced_batch(
    *,
    thread_id: str,
    token: str,
    sleep_func=asyncio.sleep,
    redis_client=None,
) -> bool:
    """True only for the latest trigger of a thread after the quiet window.

    If Redis is unavailable, processes immediately.
    """
    if not settings.debounce_enabled:
        return True

    key = f"{DEBOUNCE_KEY_PREFIX}:{thread_id}"
    redis_client = redis_client or get_redis_client()
    if not redis_client:
        return True

    try:
        await redis_client.set(key, token, ex=settings.debounce_ttl_seconds)
        await sleep_func(settings.debounce_seconds)
        last_token = await redis_client.get(key)
        return last_token == token
    except Exception as e:
        logger.warning(f"Debounce unavailable, proceeding without it: {e}")
        return True


async def claim_thread(
    *,
    thread_id: str,
    token: str,
    sleep_func=asyncio.sleep,
    redis_client=None,
    wait_seconds: Optional[float] = None,
) -> bool:
    """Take the per-thread execution claim, waiting for a running execution to finish.

    Returns False when the claim could not be taken within ``wait_seconds``.
    """
    redis_client = redis_client or get_redis_client()
    if not redis_client:
        return True

    key = f"{CLAIM_KEY_PREFIX}:{thread_id}"
    wait_seconds = settings.thread_claim_wait_seconds if wait_seconds is None else wait_seconds
    waited = 0.0
    try:
        while True:
            if await redis_client.set(key, token, nx=True, ex=settings.thread_claim_ttl_seconds):
                return True
            if waited >= wait_seconds:
                return False
            await sleep_func(CLAIM_POLL_SECONDS)
            waited += CLAIM_POLL_SECONDS
    except Exception as e:
        logger.warning(f"Thread claim unavailable, proceeding without it: {e}")
        return True


async def release_thread(*, thread_id: str, token: str, redis_client=None) -> None:
    redis_client = redis_client or get_redis_client()
    if not redis_client:
        return
    try:
        await redis_client.eval(_RELEASE_SCRIPT, 1, f"{CLAIM_KEY_PREFIX}:{thread_id}", token)
    except Exception as e:
        logger.warning(f"Failed to release thread claim {thread_id}: {e}")


async def extend_claim(*, thread_id: str, token: str, redis_client=None, ttl_seconds: Optional[int] = None) -> bool:
    """Push the claim's expiry forward. False when the claim is no longer ours."""
    redis_client = redis_client or get_redis_client()
    if not redis_client:
        return False
    ttl_seconds = settings.thread_claim_ttl_seconds if ttl_seconds is None else ttl_seconds
    try:
        return bool(
            await redis_client.eval(_EXTEND_SCRIPT, 1, f"{CLAIM_KEY_PREFIX}:{thread_id}", token, ttl_seconds)
        )
    except Exception as e:
        logger.warning(f"Failed to extend thread claim {thread_id}: {e}")
        return False


async def keep_claim_alive(
    *,
    thread_id: str,
    token: str,
    redis_client=None,
    interval_seconds: Optional[float] = None,
    sleep_func=asyncio.sleep,
) -> None:
    """Extend the claim every ``interval_seconds`` until cancelled or the claim is lost."""
    if interval_seconds is None:
        interval_seconds = settings.thread_claim_ttl_seconds / 3
    while True:
        await sleep_func(interval_seconds)
        if not await extend_claim(thread_id=thread_id, token=token, redis_client=redis_client):
            logger.warning(f"Thread claim {thread_id} lost while processing")
            alert_warning("Thread claim lost during processing", {"thread_id": thread_id})
            return


async def run_with_retries(
    func: Callable[[], BatchResult],
    *,
    max_retries: Optional[int] = None,
    backoff_seconds: Optional[float] = None,
    sleep_func=asyncio.sleep,
    label: str = "batch",
) -> BatchResult:
    """Run blocking ``func`` in a worker thread, retrying failures with linear backoff."""
    max_retries = settings.batch_max_retries if max_retries is None else max_retries
    backoff_seconds = settings.batch_retry_backoff_seconds if backoff_seconds is None else backoff_seconds

    attempt = 0
    while True:
        attempt += 1
        try:
            return await asyncio.to_thread(func)
        except NON_RETRYABLE_ERRORS as e:
            logger.error(f"{label} failed permanently: {e}")
            alert_error("Batch processing aborted", {"job": label, "error": str(e)[:200]})
            raise
        except Exception as e:
            if attempt > max_retries:
                logger.error(f"{label} failed after {attempt} attempts: {e}", exc_info=True)
                alert_error("Batch processing failed", {"job": label, "attempts": attempt, "error": str(e)[:200]})
                raise
            delay = backoff_seconds * attempt
            logger.warning(f"{label} attempt {attempt} failed, retrying in {delay}s: {e}")
            await sleep_func(delay)


def _process_in_session(event: MessageReceivedEvent, session_factory) -> BatchResult:
    db = session_factory()
    try:
        return process_message_batch(db, event)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def handle_message_received(
    event: MessageReceivedEvent,
    *,
    sleep_func=asyncio.sleep,
    redis_client=None,
    session_factory=SessionLocal,
) -> Optional[BatchResult]:
    """Entry point for one "message received" trigger.

    Returns None when the trigger was superseded by a newer one for the
    same thread, otherwise the batch result.
    """
    thread_id = str(event.thread_id)
    token = str(event.message_id) if event.message_id else uuid4().hex

    should_process = await should_process_debounced_batch(
        thread_id=thread_id, token=token, sleep_func=sleep_func, redis_client=redis_client
    )
    if not should_process:
        logger.info("Debounced intermediate trigger", extra={"context": {"thread_id": thread_id, "token": token}})
        return None

    claim_token = uuid4().hex
    claimed = await claim_thread(
        thread_id=thread_id, token=claim_token, sleep_func=sleep_func, redis_client=redis_client
    )
    if not claimed:
        logger.warning(f"Thread {thread_id} still busy, skipping trigger")
        alert_warning("Thread claim timeout", {"thread_id": thread_id})
        return None

    heartbeat = asyncio.create_task(
        keep_claim_alive(thread_id=thread_id, token=claim_token, redis_client=redis_client)
    )
    try:
        return await run_with_retries(
            lambda: _process_in_session(event, session_factory),
            sleep_func=sleep_func,
            label=f"batch:{thread_id}",
        )
    finally:
        heartbeat.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await heartbeat
        await release_thread(thread_id=thread_id, token=claim_token, redis_client=redis_client)
