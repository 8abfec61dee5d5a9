"""Per-connection live-channel state machine.

One ProtocolHandler exists per websocket. The websocket loop in main.py feeds it
frames one at a time, so events of a single connection are handled strictly in
arrival order. Everything that reaches another principal goes through the
Notifier (the PresenceTracker when serving).

Only ``send`` reports failures back to the client (``message-error``); every
other event is fire-and-forget and failures are logged and dropped.
"""
import logging
from collections import defaultdict
from enum import Enum
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from errors import ChatError, ProtocolIgnored, Unauthorized, ValidationError
from presence import Notifier, PresenceTracker, frame
from schemas import MessageStatus
from store import ChatStore

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    UNIDENTIFIED = "unidentified"
    IDENTIFIED = "identified"
    CLOSED = "closed"


def require(data, *keys) -> list:
    if not isinstance(data, dict):
        raise ValidationError("Payload must be an object")
    missing = [k for k in keys if not data.get(k)]
    if missing:
        raise ValidationError(f"Missing {', '.join(missing)}")
    return [data[k] for k in keys]


class ProtocolHandler:
    def __init__(self, store: ChatStore, presence: PresenceTracker, session,
                 authenticated_user_id: Optional[str] = None, notifier: Optional[Notifier] = None):
        self.store = store
        self.presence = presence
        self.notifier = notifier or presence
        self.session = session
        self.authenticated_user_id = authenticated_user_id
        self.user_id: Optional[str] = None
        self.state = ConnectionState.UNIDENTIFIED
        self._handlers = {
            "identify": self.on_identify,
            "query-status": self.on_query_status,
            "send": self.on_send,
            "typing-start": self.on_typing_start,
            "typing-stop": self.on_typing_stop,
            "read-receipt": self.on_read_receipt,
            "reaction": self.on_reaction,
            "disconnect": self.on_disconnect,
        }

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    @property
    def superseded(self) -> bool:
        """A newer connection for the same principal has replaced this one."""
        return self.state is ConnectionState.IDENTIFIED and self.presence.lookup(self.user_id) is not self.session

    async def handle(self, event: str, data=None):
        if self.closed:
            logger.debug("Event %s after close dropped", event)
            return
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("Unknown event %r dropped", event)
            return
        if self.state is ConnectionState.UNIDENTIFIED and event not in ("identify", "disconnect"):
            logger.debug("Event %s before identify dropped", event)
            return
        if self.superseded and event != "disconnect":
            logger.debug("Event %s on superseded connection of %s dropped", event, self.user_id)
            return

        try:
            await handler(data)
        except ProtocolIgnored as e:
            logger.debug("Event %s ignored: %s", event, e.message)
        except ChatError as e:
            logger.warning("Event %s from %s failed: %s", event, self.user_id, e.message)
        except Exception:
            logger.exception("Event %s from %s failed", event, self.user_id)

    async def reply(self, event: str, payload):
        """Send straight back on this connection."""
        try:
            await self.session.send_json(frame(event, payload))
        except Exception:
            logger.warning("Reply %s to %s lost", event, self.user_id, exc_info=True)

    # ------------ Events ------------

    async def on_identify(self, data):
        if self.state is ConnectionState.IDENTIFIED:
            raise ProtocolIgnored("Connection already identified")
        user_id = data.get("user_id") if isinstance(data, dict) else data
        if not user_id or not isinstance(user_id, str):
            raise ProtocolIgnored("identify without user id")
        if self.authenticated_user_id is not None and user_id != self.authenticated_user_id:
            raise ProtocolIgnored("identify for a different principal")

        self.user_id = user_id
        self.state = ConnectionState.IDENTIFIED
        await self.presence.announce(user_id, self.session)

    async def on_query_status(self, data):
        if isinstance(data, dict):
            (user_id,) = require(data, "user_id")
            request_id = data.get("request_id")
        else:
            user_id, request_id = data, None
        if not user_id:
            raise ValidationError("Missing user_id")
        status = await self.presence.query_status(user_id)
        await self.reply("query-status", {**status, "request_id": request_id})

    async def on_send(self, data):
        try:
            await self._relay(data)
        except ChatError as e:
            logger.warning("Send from %s failed: %s", self.user_id, e.message)
            await self.reply("message-error", {"error": e.message, "message": data})
        except Exception:
            logger.exception("Send from %s failed", self.user_id)
            await self.reply("message-error", {"error": "Failed to send message", "message": data})

    async def _relay(self, data):
        # Persistence happens on the REST path; this only echoes and forwards
        (receiver_id,) = require(data, "receiver_id")
        message = dict(data)
        sender_id = message.setdefault("sender_id", self.user_id)
        if sender_id != self.user_id:
            raise Unauthorized("Cannot send on behalf of another user")

        if self.presence.lookup(receiver_id) is not None:
            if message.get("_id"):
                # Only a stored record addressed to this receiver advances
                stored = await run_in_threadpool(self.store.mark_delivered, message["_id"], sender_id, receiver_id)
                if stored is not None:
                    message["message_status"] = stored["message_status"]
            await self.notifier.send_to(receiver_id, "message-forward", message)
        await self.reply("message-ack", message)

    async def on_typing_start(self, data):
        conversation_id, receiver_id = require(data, "conversation_id", "receiver_id")
        await self.presence.typing.start(self.user_id, conversation_id, receiver_id)

    async def on_typing_stop(self, data):
        conversation_id, receiver_id = require(data, "conversation_id", "receiver_id")
        await self.presence.typing.stop(self.user_id, conversation_id, receiver_id)

    async def on_read_receipt(self, data):
        (message_ids,) = require(data, "message_ids")
        updated = await run_in_threadpool(self.store.mark_read_by_ids, message_ids, self.user_id)

        by_sender = defaultdict(list)
        for m in updated:
            by_sender[m["sender_id"]].append(m["_id"])
        for sender_id, ids in by_sender.items():
            await self.notifier.send_to(sender_id, "status-update", {
                "message_ids": ids,
                "status": MessageStatus.READ.value,
            })

    async def on_reaction(self, data):
        message_id, emoji = require(data, "message_id", "emoji")
        reactor_id = data.get("reactor_id") or self.user_id
        if reactor_id != self.user_id:
            raise Unauthorized("Cannot react on behalf of another user")

        message = await run_in_threadpool(self.store.upsert_reaction, message_id, reactor_id, emoji)
        populated = await run_in_threadpool(self.store.populate_message, message)
        payload = {"message_id": message["_id"], "reactions": populated["reactions"]}
        for user_id in {message["sender_id"], message["receiver_id"]}:
            await self.notifier.send_to(user_id, "reaction-update", payload)

    async def on_disconnect(self, data=None):
        try:
            if self.state is ConnectionState.IDENTIFIED:
                await self.presence.retire(self.user_id, self.session)
        finally:
            self.state = ConnectionState.CLOSED
