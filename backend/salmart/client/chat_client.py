"""
Async chat client.

WHAT: Python client for the chat API with optimistic sends and offline history
WHY: UI code gets load_history/send/mark_seen plus event callbacks, whatever the network does
HOW: HTTPX client with bounded fixed-delay retries, SSE line parsing, ConversationCache as local truth
"""

import asyncio
import inspect
import json
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union
from uuid import uuid4

import httpx

from ..core.config import settings
from ..models.message import Attachment, DeliveryStatus, MessageKind
from ..utils.exceptions import NetworkError
from ..utils.logger import get_logger
from .cache import CacheEntry, ConversationCache, SyncState, conversation_key

logger = get_logger(__name__)

Callback = Callable[..., Union[None, Awaitable[None]]]

ERROR_EVENTS = {
    "messageError": "send",
    "offerError": "offer",
    "markSeenError": "markSeen",
    "joinRoomError": "joinRoom",
}


class ChatClient:
    """
    Chat client for one signed-in user.

    Callbacks (sync or async):
        on_new_message(entry), on_synced(entry), on_seen(message_ids), on_error(kind, detail)
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        user_id: str,
        cache: Optional[ConversationCache] = None,
        client: Optional[httpx.AsyncClient] = None,
        on_new_message: Optional[Callback] = None,
        on_synced: Optional[Callback] = None,
        on_seen: Optional[Callback] = None,
        on_error: Optional[Callback] = None,
        auto_mark_seen: bool = True,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.cache = cache or ConversationCache()
        self.max_retries = settings.HISTORY_FETCH_MAX_RETRIES
        self.retry_delay = settings.HISTORY_FETCH_RETRY_DELAY
        self.headers = {"Authorization": f"Bearer {token}"}
        self.token = token

        self.on_new_message = on_new_message
        self.on_synced = on_synced
        self.on_seen = on_seen
        self.on_error = on_error
        self.auto_mark_seen = auto_mark_seen

        self.unread_count = 0
        self.flags: dict[str, list[str]] = {}

        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.CLIENT_REQUEST_TIMEOUT),
            limits=httpx.Limits(
                max_keepalive_connections=5,
                max_connections=10
            )
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/v1{path}"

    async def _call(self, callback: Optional[Callback], *args: Any) -> None:
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    async def _report(self, kind: str, detail: str) -> None:
        logger.warning(f"Chat client {kind} error: {detail}")
        await self._call(self.on_error, kind, detail)

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            return response.json().get("message") or response.text
        except (ValueError, AttributeError):
            return response.text or f"HTTP {response.status_code}"

    async def load_history(self, partner_id: str) -> list[CacheEntry]:
        """
        Fetch the conversation and reconcile the cache with it.

        Tries max_retries + 1 times with a fixed delay; a 401 stops retrying.
        When every attempt fails, the cached history is returned and on_error
        receives a non-blocking warning.

        Returns:
            Entries to render, oldest first
        """
        key = conversation_key(self.user_id, partner_id)
        attempts = self.max_retries + 1
        status_code = None

        for attempt in range(attempts):
            try:
                response = await self.client.get(
                    self._url("/messages"),
                    params={"user1": self.user_id, "user2": partner_id},
                    headers=self.headers,
                )
                status_code = response.status_code
                if status_code == 401:
                    logger.error("History fetch rejected: authentication failed")
                    break
                response.raise_for_status()

                data = response.json()
                messages = data["messages"]
                self.flags = data.get("flags") or {}
                entries = self.cache.reconcile(key, messages)
                logger.info(f"Loaded {len(messages)} messages with {partner_id} (attempt {attempt + 1})")
                return entries

            except httpx.HTTPStatusError as e:
                logger.warning(
                    f"History fetch failed with HTTP {e.response.status_code} (attempt {attempt + 1}/{attempts})"
                )
            except httpx.TransportError as e:
                logger.warning(f"History fetch failed: {e!r} (attempt {attempt + 1}/{attempts})")
            except (KeyError, TypeError, json.JSONDecodeError) as e:
                logger.warning(f"Invalid history response: {e} (attempt {attempt + 1}/{attempts})")

            if attempt < attempts - 1:
                await asyncio.sleep(self.retry_delay)

        error = NetworkError(
            f"Failed to load messages after {attempt + 1} attempts. Showing offline messages.",
            attempts=attempt + 1,
            status_code=status_code,
        )
        await self._report("history", error.message)
        return self.cache.load(key)

    async def send(
        self,
        partner_id: str,
        text: Optional[str] = None,
        attachment: Optional[Attachment] = None,
        message_type: MessageKind = MessageKind.TEXT,
        proposed_price: Optional[float] = None,
        temp_id: Optional[str] = None,
    ) -> CacheEntry:
        """
        Send a message optimistically.

        The entry is cached as pending under a tempId before the request; on
        success it is replaced by the stored message, on failure marked failed.

        Returns:
            The synced entry, or the failed optimistic entry
        """
        key = conversation_key(self.user_id, partner_id)
        temp_id = temp_id or f"temp-{uuid4()}"
        pending = self.cache.add_pending(key, CacheEntry(
            temp_id=temp_id,
            sender_id=self.user_id,
            receiver_id=partner_id,
            text=text,
            attachment=attachment,
            message_type=message_type,
            proposed_price=proposed_price,
            created_at=datetime.utcnow(),
            sync_state=SyncState.PENDING,
        ))

        body = {
            "receiverId": partner_id,
            "text": text,
            "messageType": message_type.value,
            "proposedPrice": proposed_price,
            "tempId": temp_id,
        }
        if attachment is not None:
            body["attachment"] = attachment.model_dump(mode="json")

        try:
            response = await self.client.post(
                self._url("/messages"),
                json={k: v for k, v in body.items() if v is not None},
                headers=self.headers,
            )
            if response.is_error:
                await self._report("send", self._error_detail(response))
                return self.cache.mark_failed(key, temp_id) or pending
            message = response.json()["message"]
        except httpx.TransportError as e:
            await self._report("send", f"Network error: {e!r}")
            return self.cache.mark_failed(key, temp_id) or pending

        entry = self._merge_synced(key, message, temp_id)
        await self._call(self.on_synced, entry)
        return entry

    def _merge_synced(self, key: str, message: dict, temp_id: Optional[str]) -> CacheEntry:
        message = {**message, "tempId": temp_id}
        for entry in self.cache.merge(key, [message]):
            if entry.message_id == message["id"]:
                return entry
        raise KeyError(message["id"])

    async def retry_failed(self, partner_id: str) -> list[CacheEntry]:
        """Resend every failed optimistic entry of a conversation, reusing its tempId."""
        key = conversation_key(self.user_id, partner_id)
        results = []
        for entry in self.cache.unsynced(key):
            if entry.sync_state != SyncState.FAILED:
                continue
            results.append(await self.send(
                partner_id,
                text=entry.text,
                attachment=entry.attachment,
                message_type=entry.message_type,
                proposed_price=entry.proposed_price,
                temp_id=entry.temp_id,
            ))
        return results

    async def mark_seen(self, partner_id: str, message_ids: list[str]) -> list[str]:
        """
        Acknowledge received messages.

        Returns:
            Ids the server reports as newly seen ([] on failure)
        """
        if not message_ids:
            return []
        try:
            response = await self.client.post(
                self._url("/messages/seen"),
                json={"messageIds": message_ids, "receiverId": self.user_id},
                headers=self.headers,
            )
            if response.is_error:
                await self._report("markSeen", self._error_detail(response))
                return []
            changed = response.json()["messageIds"]
        except httpx.TransportError as e:
            await self._report("markSeen", f"Network error: {e!r}")
            return []

        self.cache.apply_status(conversation_key(self.user_id, partner_id), message_ids, DeliveryStatus.SEEN)
        return changed

    async def handle_event(self, event: str, data: dict) -> None:
        """Apply one room event to the cache and fire callbacks."""
        if event == "newMessage":
            sender_id = data.get("senderId")
            partner_id = data.get("receiverId") if sender_id == self.user_id else sender_id
            key = conversation_key(self.user_id, partner_id)
            entry = self._merge_synced(key, data, data.get("tempId"))
            if sender_id != self.user_id:
                await self._call(self.on_new_message, entry)
                if self.auto_mark_seen and entry.status != DeliveryStatus.SEEN:
                    await self.mark_seen(partner_id, [entry.message_id])

        elif event == "messageSynced":
            key = conversation_key(self.user_id, data.get("receiverId"))
            entry = self._merge_synced(key, data, data.get("tempId"))
            await self._call(self.on_synced, entry)

        elif event in ("messagesSeen", "messagesDelivered"):
            status = DeliveryStatus.SEEN if event == "messagesSeen" else DeliveryStatus.DELIVERED
            key = conversation_key(self.user_id, data.get("receiverId"))
            self.cache.apply_status(key, data.get("messageIds") or [], status)
            if event == "messagesSeen":
                await self._call(self.on_seen, data.get("messageIds") or [])

        elif event == "badge-update":
            self.unread_count = int(data.get("count", 0))

        elif event in ERROR_EVENTS:
            temp_id = data.get("tempId")
            receiver_id = data.get("receiverId")
            if temp_id and receiver_id:
                self.cache.mark_failed(conversation_key(self.user_id, receiver_id), temp_id)
            await self._report(ERROR_EVENTS[event], data.get("message") or event)

        else:
            logger.debug(f"Ignoring event {event}")

    async def listen(self) -> None:
        """
        Consume the caller's SSE room stream until cancelled or closed.

        Raises:
            NetworkError: stream could not be opened or broke off
        """
        try:
            async with self.client.stream(
                "GET",
                self._url("/rooms/stream"),
                params={"token": self.token},
                timeout=httpx.Timeout(settings.CLIENT_REQUEST_TIMEOUT, read=None),
            ) as response:
                response.raise_for_status()

                event_name = "message"
                async for line in response.aiter_lines():
                    line = line.strip()

                    # Blank line ends an event; comments are keepalives
                    if not line or line.startswith(":"):
                        event_name = "message"
                        continue

                    if line.startswith("event:"):
                        event_name = line[6:].strip()
                    elif line.startswith("data:"):
                        try:
                            data = json.loads(line[5:].strip())
                        except json.JSONDecodeError:
                            logger.error(f"Invalid SSE data: {line[:100]}")
                            continue
                        if event_name not in ("connected", "heartbeat"):
                            await self.handle_event(event_name, data)

        except httpx.HTTPStatusError as e:
            raise NetworkError(
                f"Room stream rejected: HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Room stream failed: {e!r}") from e

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
