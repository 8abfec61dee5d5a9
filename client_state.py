"""Client-side cache that layers live events on top of REST snapshots.

ChatState mirrors what a chat client holds in memory: the open conversation's
messages, the conversation summaries, who is typing where and who is online.
It does no I/O; callers feed it REST responses and live-channel frames.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

SENDING = "sending"
FAILED = "failed"


def _ref_id(value) -> Optional[str]:
    """Accepts either a bare id or a populated ``{"_id": ...}`` reference."""
    if isinstance(value, dict):
        return value.get("_id")
    return value


class ChatState:
    def __init__(self, current_user_id: Optional[str] = None):
        self.current_user_id = current_user_id
        self.current_conversation: Optional[str] = None
        self.messages: list[dict] = []
        self.conversations: list[dict] = []
        self.typing: dict[str, set] = {}
        self.presence: dict[str, dict] = {}
        self.error: Optional[str] = None

    # ------------ Snapshots ------------

    def load_conversations(self, conversations: list[dict]):
        self.conversations = list(conversations)

    def load_messages(self, conversation_id: str, messages: list[dict]):
        self.current_conversation = conversation_id
        self.messages = list(messages)

    def known_ids(self) -> set:
        return {m["_id"] for m in self.messages}

    def find_conversation(self, user_a: str, user_b: str) -> Optional[dict]:
        for conv in self.conversations:
            ids = conv.get("participant_ids") or [_ref_id(p) for p in conv.get("participants", [])]
            if user_a in ids and user_b in ids:
                return conv
        return None

    # ------------ Optimistic send ------------

    def begin_send(self, receiver_id: str, content: Optional[str] = None, media_kind: Optional[str] = None) -> dict:
        conv = self.find_conversation(self.current_user_id, receiver_id)
        conversation_id = conv["_id"] if conv else self.current_conversation
        record = {
            "_id": f"temp-{uuid.uuid4().hex}",
            "conversation_id": conversation_id,
            "sender_id": self.current_user_id,
            "receiver_id": receiver_id,
            "content": content,
            "content_type": media_kind or "text",
            "reactions": [],
            "message_status": SENDING,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self.messages.append(record)
        return record

    def confirm_send(self, temp_id: str, record: dict):
        """Swap the optimistic record for the durable one, wherever it now sits."""
        if record["_id"] in self.known_ids():
            # The durable copy already arrived through the live channel
            self.messages = [m for m in self.messages if m["_id"] != temp_id]
            self._merge(record)
            return
        for i, m in enumerate(self.messages):
            if m["_id"] == temp_id:
                self.messages[i] = record
                return
        self.messages.append(record)

    def fail_send(self, temp_id: str, error: Optional[str] = None):
        for m in self.messages:
            if m["_id"] == temp_id:
                m["message_status"] = FAILED
        if error:
            self.error = error

    # ------------ Inbound ------------

    def receive_message(self, message: dict) -> bool:
        """Append an inbound message unless already known. Returns True if it was new."""
        if not message or message["_id"] in self.known_ids():
            return False
        if message.get("conversation_id") == self.current_conversation:
            self.messages.append(message)

        incoming = _ref_id(message.get("receiver_id")) == self.current_user_id
        for conv in self.conversations:
            if conv["_id"] == message.get("conversation_id"):
                conv["last_message"] = message
                if incoming:
                    conv["unread_count"] = conv.get("unread_count", 0) + 1
        return True

    def unread_ids(self) -> list[str]:
        return [
            m["_id"] for m in self.messages
            if m.get("message_status") != "read"
            and m.get("receiver_id") == self.current_user_id
            and not m["_id"].startswith("temp-")
        ]

    def mark_read_locally(self, message_ids):
        ids = set(message_ids)
        for m in self.messages:
            if m["_id"] in ids:
                m["message_status"] = "read"

    def remove_message(self, message_id: str):
        self.messages = [m for m in self.messages if m["_id"] != message_id]

    # ------------ Live events ------------

    def apply_event(self, event: str, data):
        if event == "message-forward":
            self.receive_message(data)
        elif event == "message-ack":
            self._merge(data)
        elif event == "message-error":
            message = (data or {}).get("message") or {}
            if message.get("_id"):
                self.fail_send(message["_id"], (data or {}).get("error"))
        elif event == "status-update":
            ids = set(data["message_ids"])
            for m in self.messages:
                if m["_id"] in ids:
                    m["message_status"] = data["status"]
        elif event == "reaction-update":
            for m in self.messages:
                if m["_id"] == data["message_id"]:
                    # Full list from the server replaces ours
                    m["reactions"] = data["reactions"]
        elif event == "message-deleted":
            self.remove_message(data["message_id"])
        elif event == "typing-notify":
            users = self.typing.setdefault(data["conversation_id"], set())
            if data["typing"]:
                users.add(data["user_id"])
            else:
                users.discard(data["user_id"])
        elif event in ("status-change", "query-status"):
            self.presence[data["user_id"]] = {"online": data["online"], "last_seen": data.get("last_seen")}

    def _merge(self, record: dict):
        for m in self.messages:
            if m["_id"] == record.get("_id"):
                m.update(record)

    # ------------ Queries ------------

    def is_typing(self, user_id: str, conversation_id: Optional[str] = None) -> bool:
        conversation_id = conversation_id or self.current_conversation
        return user_id in self.typing.get(conversation_id, set())

    def is_online(self, user_id: str) -> bool:
        return self.presence.get(user_id, {}).get("online", False)

    def last_seen(self, user_id: str):
        return self.presence.get(user_id, {}).get("last_seen")

    def reset(self):
        self.current_conversation = None
        self.messages = []
        self.conversations = []
        self.typing = {}
        self.presence = {}
        self.error = None
