"""WebSocket handler for real-time task notifications.

Clients connect to ``/ws/tasks/{task_id}?token=...`` with the subscriber
token returned by the dispatch endpoint. The token must grant exactly the
task's topic; otherwise the socket is closed with code 4403.

Delivery is live only: an envelope published while no client is
subscribed is not replayed. Clients that must not miss the terminal event
confirm it through the project status endpoint.
"""

import asyncio
import contextlib

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from events.bus import TOPIC_CLOSED, get_topic_hub
from events.credentials import TopicTokenIssuer
from events.types import task_topic

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

CLOSE_FORBIDDEN = 4403

_token_issuer: TopicTokenIssuer | None = None


def set_token_issuer(issuer: TopicTokenIssuer) -> None:
    """Set the issuer used to check subscriber tokens."""
    global _token_issuer
    _token_issuer = issuer
    logger.info("websocket_token_issuer_configured")


def get_token_issuer() -> TopicTokenIssuer:
    """Return the configured token issuer."""
    if _token_issuer is None:
        raise RuntimeError(
            "TopicTokenIssuer not configured for WebSocket handlers. "
            "Call set_token_issuer() during startup."
        )
    return _token_issuer


@websocket_router.websocket("/ws/tasks/{task_id}")
async def task_notifications(
    websocket: WebSocket,
    task_id: str,
    token: str = Query(default=""),
) -> None:
    """Stream a task's notification envelopes to the client.

    Server -> Client: envelopes ``{type, taskId, stageType, payload|error, timestamp}``.
    Client -> Server: ``{"type": "ping"}``, answered with ``{"type": "pong"}``.
    """
    topic = task_topic(task_id)
    await websocket.accept()

    if not token or not get_token_issuer().can_subscribe(token, topic):
        logger.warning("websocket_subscription_denied", task_id=task_id)
        await websocket.close(code=CLOSE_FORBIDDEN)
        return

    hub = get_topic_hub()
    queue = hub.subscribe(topic)
    logger.info("websocket_connected", task_id=task_id)

    async def send_notifications() -> None:
        try:
            while True:
                message = await queue.get()
                if message is TOPIC_CLOSED:
                    logger.info("topic_closed_sentinel", task_id=task_id)
                    break
                await websocket.send_json(message)
                logger.debug("notification_sent", task_id=task_id, event_type=message.get("type"))
        except WebSocketDisconnect:
            logger.info("websocket_disconnect_during_send", task_id=task_id)
        except Exception as e:
            logger.error("websocket_send_error", task_id=task_id, error=str(e))

    async def receive_commands() -> None:
        try:
            while True:
                data = await websocket.receive_json()
                if not isinstance(data, dict):
                    logger.warning("invalid_ws_message", task_id=task_id)
                    continue
                if data.get("type") == "ping":
                    await websocket.send_json({"type": "pong", "timestamp": data.get("timestamp")})
                else:
                    logger.warning(
                        "unknown_command", task_id=task_id, command_type=data.get("type")
                    )
        except WebSocketDisconnect:
            logger.info("websocket_disconnect_during_receive", task_id=task_id)
        except Exception as e:
            logger.error("websocket_receive_error", task_id=task_id, error=str(e))

    try:
        send_task = asyncio.create_task(send_notifications())
        receive_task = asyncio.create_task(receive_commands())
        done, pending = await asyncio.wait(
            [send_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if send_task in done:
            with contextlib.suppress(RuntimeError):
                await websocket.close()
    finally:
        hub.unsubscribe(topic, queue)
        logger.info("websocket_cleanup_complete", task_id=task_id)
