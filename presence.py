"""Live-session registry, presence fan-out and typing indicators.

PresenceTracker is created once per application (see main.lifespan) and holds
the principal -> session-handle map. It is also the transport used to reach a
principal: anything that needs to push an event calls ``send_to`` or
``broadcast_all`` and never touches a socket directly.

A session handle is any object with ``async send_json(dict)``: a FastAPI
``WebSocket`` when serving, an in-memory fake in tests.

Map mutations happen under a lock and never span an ``await``, so a reader in
another thread never sees a half-applied update.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional

from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder

import settings
from schemas import PresenceState, WsOutbound

logger = logging.getLogger(__name__)


def frame(event: str, payload) -> dict:
    return jsonable_encoder(WsOutbound(type=event, data=payload))


class Notifier:
    """Interface for pushing a named event to one principal or to everyone connected.

    Subclasses implement both coroutines; PresenceTracker is the serving implementation.
    """

    async def send_to(self, user_id: str, event: str, payload) -> bool:
        raise NotImplementedError

    async def broadcast_all(self, event: str, payload, exclude: Optional[str] = None):
        raise NotImplementedError


@dataclass
class TypingEntry:
    receiver_id: str
    typing: bool = False
    timer: Optional[asyncio.Task] = None


class TypingTracker:
    """Typing state per (owner, conversation) with a debounced auto-clear.

    Entries are indexed by owner first so a disconnect can drop everything the
    owner armed without scanning other principals.
    """

    def __init__(self, notifier: Notifier, quiet_period: float = settings.TYPING_QUIET_PERIOD):
        self.notifier = notifier
        self.quiet_period = quiet_period
        self._entries: dict[str, dict[str, TypingEntry]] = {}
        self._lock = threading.Lock()

    def is_typing(self, user_id: str, conversation_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(user_id, {}).get(conversation_id)
            return bool(entry and entry.typing)

    def pending_timers(self, user_id: str) -> int:
        with self._lock:
            return sum(1 for e in self._entries.get(user_id, {}).values() if e.timer is not None)

    async def start(self, user_id: str, conversation_id: str, receiver_id: str):
        with self._lock:
            owned = self._entries.setdefault(user_id, {})
            entry = owned.get(conversation_id)
            if entry is None:
                entry = owned[conversation_id] = TypingEntry(receiver_id=receiver_id)
            entry.receiver_id = receiver_id
            entry.typing = True
            # Re-arming replaces the previous timer, so only the latest deadline fires
            self._cancel(entry)
            entry.timer = asyncio.create_task(self._expire(user_id, conversation_id, entry))
        await self._notify(user_id, conversation_id, receiver_id, True)

    async def stop(self, user_id: str, conversation_id: str, receiver_id: str):
        with self._lock:
            entry = self._entries.get(user_id, {}).pop(conversation_id, None)
            if entry is not None:
                self._cancel(entry)
                entry.typing = False
            self._forget_owner_if_empty(user_id)
        await self._notify(user_id, conversation_id, receiver_id, False)

    async def clear_owner(self, user_id: str):
        """Drop every entry owned by user_id, cancelling timers; one typing:false per active entry."""
        with self._lock:
            owned = self._entries.pop(user_id, {})
            active = []
            for conversation_id, entry in owned.items():
                self._cancel(entry)
                if entry.typing:
                    entry.typing = False
                    active.append((conversation_id, entry.receiver_id))
        for conversation_id, receiver_id in active:
            await self._notify(user_id, conversation_id, receiver_id, False)

    def shutdown(self):
        with self._lock:
            for owned in self._entries.values():
                for entry in owned.values():
                    self._cancel(entry)
            self._entries.clear()

    async def _expire(self, user_id: str, conversation_id: str, entry: TypingEntry):
        await asyncio.sleep(self.quiet_period)
        with self._lock:
            if entry.timer is not asyncio.current_task() or not entry.typing:
                return
            entry.typing = False
            entry.timer = None
            owned = self._entries.get(user_id, {})
            if owned.get(conversation_id) is entry:
                del owned[conversation_id]
            self._forget_owner_if_empty(user_id)
            receiver_id = entry.receiver_id
        await self._notify(user_id, conversation_id, receiver_id, False)

    def _cancel(self, entry: TypingEntry):
        timer, entry.timer = entry.timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    def _forget_owner_if_empty(self, user_id: str):
        if user_id in self._entries and not self._entries[user_id]:
            del self._entries[user_id]

    async def _notify(self, user_id: str, conversation_id: str, receiver_id: str, typing: bool):
        await self.notifier.send_to(receiver_id, "typing-notify", {
            "user_id": user_id,
            "conversation_id": conversation_id,
            "typing": typing,
        })


class PresenceTracker(Notifier):
    def __init__(self, store, typing_quiet_period: float = settings.TYPING_QUIET_PERIOD):
        self.store = store
        self._sessions: dict[str, Any] = {}
        self._lock = threading.Lock()
        self.typing = TypingTracker(self, typing_quiet_period)

    def lookup(self, user_id: str):
        with self._lock:
            return self._sessions.get(user_id)

    def online_user_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    async def announce(self, user_id: str, handle):
        with self._lock:
            previous = self._sessions.get(user_id)
            self._sessions[user_id] = handle
        if previous is not None and previous is not handle:
            logger.info("User %s reconnected, previous session replaced", user_id)

        last_seen = await run_in_threadpool(self.store.set_presence, user_id, True)
        await self.broadcast_all("status-change", {"user_id": user_id, "online": True, "last_seen": last_seen},
                                 exclude=user_id)
        logger.info("User %s online", user_id)

    async def retire(self, user_id: str, handle=None):
        """Remove user_id's live session. A handle that was already replaced by a reconnect is a no-op."""
        with self._lock:
            current = self._sessions.get(user_id)
            if current is None or (handle is not None and current is not handle):
                stale = True
            else:
                del self._sessions[user_id]
                stale = False
        if stale:
            logger.debug("Ignoring retire of stale session for %s", user_id)
            return None

        await self.typing.clear_owner(user_id)
        last_seen = await run_in_threadpool(self.store.set_presence, user_id, False)
        await self.broadcast_all("status-change", {"user_id": user_id, "online": False, "last_seen": last_seen},
                                 exclude=user_id)
        logger.info("User %s disconnected", user_id)
        return last_seen

    async def query_status(self, user_id: str) -> dict:
        online = self.lookup(user_id) is not None
        last_seen = await run_in_threadpool(self.store.get_last_seen, user_id)
        return PresenceState(user_id=user_id, online=online, last_seen=last_seen).model_dump()

    async def send_to(self, user_id: str, event: str, payload) -> bool:
        handle = self.lookup(user_id)
        if handle is None:
            return False
        return await self._deliver(user_id, handle, frame(event, payload))

    async def broadcast_all(self, event: str, payload, exclude: Optional[str] = None):
        with self._lock:
            targets = [(uid, h) for uid, h in self._sessions.items() if uid != exclude]
        message = frame(event, payload)
        await asyncio.gather(*(self._deliver(uid, h, message) for uid, h in targets))

    async def shutdown(self):
        self.typing.shutdown()
        with self._lock:
            self._sessions.clear()

    async def _deliver(self, user_id: str, handle, message: dict) -> bool:
        try:
            await handle.send_json(message)
            return True
        except Exception:
            # Best-effort: a dead socket is cleaned up by its own disconnect
            logger.warning("Dropping %s for %s, session unreachable", message.get("type"), user_id, exc_info=True)
            return False
