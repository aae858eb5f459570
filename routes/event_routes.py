import asyncio
import json
import logging
from typing import AsyncGenerator, Awaitable, Callable

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from auth.session_auth import verify_session, verify_stream_token
from reqResVal_models.billing_models import ClientEventRequest
from services.event_bus import EventBus, Subscription
from services.registry import get_event_bus
from settings import Settings, get_settings

logger = logging.getLogger(__name__)
router = APIRouter()


def format_sse(event) -> str:
    return f"event: {event.type}\ndata: {json.dumps(event.to_wire(), default=str)}\n\n"


async def sse_events(
    bus: EventBus,
    subscription: Subscription,
    is_disconnected: Callable[[], Awaitable[bool]],
    heartbeat_seconds: float,
) -> AsyncGenerator[str, None]:
    """Generate SSE frames for one session until the client goes away."""
    try:
        yield ": connected\n\n"
        while True:
            if await is_disconnected():
                break
            try:
                event = await asyncio.wait_for(subscription.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield format_sse(event)
    except asyncio.CancelledError:
        logger.info("SSE stream cancelled for user %s", subscription.user_id)
        raise
    finally:
        bus.unsubscribe(subscription)


@router.get("/notifications/stream")
async def stream_notifications(
    request: Request,
    user_id: str = Depends(verify_stream_token),
    bus: EventBus = Depends(get_event_bus),
    settings: Settings = Depends(get_settings),
):
    """
    Stream change events for the authenticated user via Server-Sent Events (SSE).

    Events are refetch hints with thin payloads: invoice.*, payment.*,
    client.* and recurring.*.
    """
    subscription = bus.subscribe(user_id)
    return StreamingResponse(
        sse_events(bus, subscription, request.is_disconnected, settings.stream_heartbeat_seconds),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"
        }
    )


@router.post("/clients/{client_id}/events", status_code=202)
def publish_client_event(
    client_id: str,
    body: ClientEventRequest,
    user_id: str = Depends(verify_session),
    bus: EventBus = Depends(get_event_bus),
):
    """Client records live elsewhere; their owner announces changes here."""
    delivered = bus.publish(body.type, user_id, {"id": client_id})
    return {"status": "accepted", "delivered": delivered}
