"""
WebSocket chat transport.

WHAT: Bidirectional socket carrying room events out and chat commands in
WHY: Interactive clients send, acknowledge and bargain over one connection
HOW: One reader loop dispatching named events; one writer task draining the room queue
"""

import asyncio
import contextlib
import json
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError

from ....models.message import MessageDraft
from ....services.chat_service import ChatService
from ....services.room_hub import RoomEvent, RoomSubscription
from ....utils.exceptions import APIException, AuthenticationError, ValidationError
from ....utils.logger import get_logger
from ...deps import get_chat_service, resolve_identity

logger = get_logger(__name__)

router = APIRouter()

# Error event emitted for failures of each command
ERROR_EVENTS = {
    "joinRoom": "joinRoomError",
    "sendMessage": "messageError",
    "markAsSeen": "markSeenError",
    "acceptOffer": "offerError",
    "declineOffer": "offerError",
    "endBargain": "offerError",
    "typing": "messageError",
}


def _emit(subscription: RoomSubscription, event: str, data: dict) -> None:
    """Queue a frame for this connection only."""
    try:
        subscription.queue.put_nowait(RoomEvent(event=event, data=data))
    except asyncio.QueueFull:
        logger.warning(f"Queue full for subscription {subscription.subscription_id}, dropping {event}")


def _fields(event: str, data: Any) -> dict:
    """Command data as an object; anything else is a validation failure."""
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(
            f"{event} expects an object",
            [{"field": "data", "message": f"got {type(data).__name__}"}],
        )
    return data


async def _pump(websocket: WebSocket, subscription: RoomSubscription) -> None:
    """Write queued events to the socket in order."""
    while True:
        event = await subscription.get()
        await websocket.send_json(event.to_socket())


async def handle_command(
    service: ChatService,
    subscription: RoomSubscription,
    caller_id: str,
    event: str,
    data: Any,
) -> None:
    """
    Run one client command.

    Errors become the command's named error event; they are never raised to the socket.
    """
    try:
        if event == "joinRoom":
            user_id = data if isinstance(data, str) else _fields(event, data).get("userId")
            joined = service.hub.join(subscription, user_id or "", caller_id)
            _emit(subscription, "roomJoined", {"userId": caller_id, "joined": joined})

        elif event == "sendMessage":
            draft = MessageDraft.model_validate(data or {})
            message = await service.send(draft, caller_id)
            if not subscription.joined:
                _emit(subscription, "messageSynced", message.to_wire(tempId=draft.temp_id))

        elif event == "markAsSeen":
            fields = _fields(event, data)
            await service.mark_seen(
                fields.get("messageIds") or [],
                fields.get("receiverId") or caller_id,
                caller_id,
            )

        elif event in ("acceptOffer", "declineOffer"):
            fields = _fields(event, data)
            action = service.accept_offer if event == "acceptOffer" else service.decline_offer
            await action(
                caller_id,
                str(fields.get("counterpartyId", "")),
                str(fields.get("productId", "")),
                fields.get("role"),
            )

        elif event == "endBargain":
            fields = _fields(event, data)
            await service.end_bargain(caller_id, str(fields.get("counterpartyId", "")), str(fields.get("productId", "")))

        elif event == "typing":
            fields = _fields(event, data)
            await service.relay_typing(caller_id, str(fields.get("receiverId", "")), bool(fields.get("isTyping", True)))

        else:
            _emit(subscription, "error", {"error": "UNKNOWN_EVENT", "message": f"Unknown event: {event}"})

    except APIException as e:
        logger.warning(f"Socket {event} from {caller_id} failed: {e.code} - {e.message}")
        payload = {"error": e.code, "message": e.message, "details": e.details}
        if event == "sendMessage" and isinstance(data, dict):
            payload["tempId"] = data.get("tempId")
            payload["receiverId"] = data.get("receiverId")
        _emit(subscription, ERROR_EVENTS[event], payload)

    except PydanticValidationError as e:
        logger.warning(f"Socket {event} from {caller_id} rejected: {e.error_count()} invalid fields")
        payload = {
            "error": "VALIDATION_ERROR",
            "message": "Invalid event payload",
            "details": [{"loc": err["loc"], "msg": err["msg"]} for err in e.errors()],
        }
        if isinstance(data, dict):
            payload["tempId"] = data.get("tempId")
            payload["receiverId"] = data.get("receiverId")
        _emit(subscription, ERROR_EVENTS.get(event, "error"), payload)

    except Exception as e:
        logger.exception(f"Socket {event} from {caller_id} crashed: {type(e).__name__}")
        _emit(subscription, "error", {
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "details": {"event": event},
        })


async def _read(
    websocket: WebSocket,
    service: ChatService,
    subscription: RoomSubscription,
    caller_id: str,
) -> None:
    """Dispatch incoming frames until the client goes away."""
    while True:
        try:
            frame = await websocket.receive_json()
        except json.JSONDecodeError:
            _emit(subscription, "error", {"error": "BAD_FRAME", "message": "Frame is not valid JSON"})
            continue
        if not isinstance(frame, dict) or "event" not in frame:
            _emit(subscription, "error", {"error": "BAD_FRAME", "message": "Expected {event, data}"})
            continue
        await handle_command(service, subscription, caller_id, str(frame["event"]), frame.get("data"))


@router.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(default=None),
    service: ChatService = Depends(get_chat_service),
):
    """
    Chat socket.

    Frames in and out are JSON objects `{"event": <name>, "data": {...}}`.
    Incoming: joinRoom, sendMessage, markAsSeen, acceptOffer, declineOffer,
    endBargain, typing. Outgoing: room events plus roomJoined and the
    command error events.
    """
    try:
        caller_id = resolve_identity(token)
    except AuthenticationError as e:
        logger.warning(f"Socket rejected: {e.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    subscription = RoomSubscription()
    logger.info(f"Socket {subscription.subscription_id} opened for {caller_id}")

    reader = asyncio.create_task(_read(websocket, service, subscription, caller_id))
    writer = asyncio.create_task(_pump(websocket, subscription))
    try:
        # Whichever side stops first ends the connection
        done, _ = await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if isinstance(error, WebSocketDisconnect):
                logger.info(f"Socket {subscription.subscription_id} closed by {caller_id}")
            elif error is not None:
                logger.warning(f"Socket {subscription.subscription_id} for {caller_id} stopped: {error!r}")
    finally:
        service.hub.leave(subscription)
        for task in (reader, writer):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                await task
