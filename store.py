"""
Conversation and message persistence.

ChatStore owns every write to the ``conversation`` and ``message`` collections
and the presence fields of ``user``. Records are returned as plain dicts with
``_id`` serialized to a string, the same shape the REST gateway and the live
channel send to clients.
"""
import logging
from typing import Iterable, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, now_utc
from errors import Forbidden, NotFound, Unauthorized, UpstreamFailure, ValidationError
from schemas import Conversation, Message, MessageStatus, Reaction

logger = logging.getLogger(__name__)

UNREAD_STATUSES = (MessageStatus.SENT.value, MessageStatus.DELIVERED.value)
MEDIA_KINDS = ("image", "video")
USER_DISPLAY_FIELDS = {"name": 1, "avatar_url": 1}
PARTICIPANT_FIELDS = {"name": 1, "avatar_url": 1, "online": 1, "last_seen": 1}

# Compare-and-set attempts for reaction updates before giving up
REACTION_RETRIES = 5


def to_object_id(value, what="id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what.capitalize()} not found")


def serialize(doc):
    if not doc:
        return doc
    out = dict(doc)
    out["_id"] = str(out["_id"])
    return out


def pair_key(user_a: str, user_b: str) -> str:
    low, high = sorted([user_a, user_b])
    return f"{low}:{high}"


def content_kind(content: Optional[str], media_kind: Optional[str]) -> str:
    """text iff only content is given; otherwise the media's declared kind."""
    if media_kind is not None:
        if media_kind not in MEDIA_KINDS:
            raise ValidationError("Unsupported file type")
        return media_kind
    if content and content.strip():
        return "text"
    raise ValidationError("Message content is required")


class ChatStore:
    def __init__(self, db: Database):
        self.db = db
        self.users = db["user"]
        self.conversations = db["conversation"]
        self.messages = db["message"]

    # ------------ Users & presence fields ------------

    def get_user(self, user_id: str) -> Optional[dict]:
        try:
            oid = ObjectId(user_id)
        except (InvalidId, TypeError):
            return None
        return serialize(self.users.find_one({"_id": oid}))

    def set_presence(self, user_id: str, online: bool, last_seen=None):
        last_seen = last_seen or now_utc()
        try:
            oid = ObjectId(user_id)
        except (InvalidId, TypeError):
            logger.warning("Presence update for malformed user id %r", user_id)
            return last_seen
        self.users.update_one({"_id": oid}, {"$set": {"online": online, "last_seen": last_seen}})
        return last_seen

    def get_last_seen(self, user_id: str):
        user = self.get_user(user_id)
        return user.get("last_seen") if user else None

    # ------------ Conversations ------------

    def get_conversation(self, conversation_id: str) -> dict:
        conv = self.conversations.find_one({"_id": to_object_id(conversation_id, "conversation")})
        if not conv:
            raise NotFound("Conversation not found")
        return serialize(conv)

    def find_or_create_conversation(self, user_a: str, user_b: str) -> dict:
        if user_a == user_b:
            raise ValidationError("Cannot start a conversation with yourself")
        key = pair_key(user_a, user_b)
        fresh = Conversation(participant_ids=sorted([user_a, user_b]), pair_key=key).model_dump(mode="json")
        fresh.pop("pair_key")  # seeded from the filter on insert
        stamp = now_utc()
        try:
            conv = self.conversations.find_one_and_update(
                {"pair_key": key},
                {"$setOnInsert": {**fresh, "created_at": stamp, "updated_at": stamp}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Lost the creation race to a concurrent call for the same pair
            conv = self.conversations.find_one({"pair_key": key})
        return serialize(conv)

    def list_conversations(self, user_id: str) -> list[dict]:
        convs = self.conversations.find({"participant_ids": user_id}).sort("updated_at", DESCENDING)
        return [serialize(c) for c in convs]

    def require_participant(self, conversation_id: str, user_id: str) -> dict:
        conv = self.get_conversation(conversation_id)
        if user_id not in conv["participant_ids"]:
            raise Forbidden("Not authorized to view this conversation")
        return conv

    # ------------ Messages ------------

    def get_message(self, message_id: str) -> dict:
        msg = self.messages.find_one({"_id": to_object_id(message_id, "message")})
        if not msg:
            raise NotFound("Message not found")
        return serialize(msg)

    def append_message(self, conversation_id: str, sender_id: str, receiver_id: str,
                       content: Optional[str] = None, media_url: Optional[str] = None,
                       media_kind: Optional[str] = None, status: str = MessageStatus.SENT.value) -> dict:
        if (media_url is None) != (media_kind is None):
            raise ValidationError("Media URL and media kind must be given together")
        kind = content_kind(content, media_kind)
        conv_oid = to_object_id(conversation_id, "conversation")

        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content if content and content.strip() else None,
            media_url=media_url,
            content_type=kind,
            message_status=status,
        )
        message_id = create_document(self.db, "message", message.model_dump(mode="json"))

        # The conversation pointer and counter move with the insert or not at all
        try:
            result = self.conversations.update_one(
                {"_id": conv_oid},
                {"$set": {"last_message_id": message_id, "updated_at": now_utc()}, "$inc": {"unread_count": 1}},
            )
            if result.matched_count == 0:
                raise NotFound("Conversation not found")
        except (PyMongoError, NotFound) as e:
            self.messages.delete_one({"_id": ObjectId(message_id)})
            if isinstance(e, NotFound):
                raise
            logger.exception("Conversation update failed, message %s rolled back", message_id)
            raise UpstreamFailure("Failed to store message")

        return self.get_message(message_id)

    def list_messages(self, conversation_id: str) -> list[dict]:
        cursor = self.messages.find({"conversation_id": conversation_id}).sort(
            [("created_at", ASCENDING), ("_id", ASCENDING)]
        )
        return [serialize(m) for m in cursor]

    def mark_read(self, conversation_id: str, receiver_id: str,
                  statuses: Iterable[str] = UNREAD_STATUSES, reset_unread: bool = True) -> int:
        statuses = [s for s in statuses if s != MessageStatus.READ.value]
        result = self.messages.update_many(
            {"conversation_id": conversation_id, "receiver_id": receiver_id, "message_status": {"$in": statuses}},
            {"$set": {"message_status": MessageStatus.READ.value, "updated_at": now_utc()}},
        )
        if reset_unread:
            self.conversations.update_one(
                {"_id": to_object_id(conversation_id, "conversation")}, {"$set": {"unread_count": 0}}
            )
        return result.modified_count

    def mark_read_by_ids(self, message_ids: list, receiver_id: str) -> list[dict]:
        if not isinstance(message_ids, list) or not message_ids:
            raise ValidationError("No message IDs provided")
        try:
            oids = [ObjectId(m) for m in message_ids]
        except (InvalidId, TypeError):
            raise ValidationError("Malformed message ID")

        scope = {"_id": {"$in": oids}, "receiver_id": receiver_id}
        self.messages.update_many(
            {**scope, "message_status": {"$in": list(UNREAD_STATUSES)}},
            {"$set": {"message_status": MessageStatus.READ.value, "updated_at": now_utc()}},
        )
        return [serialize(m) for m in self.messages.find(scope).sort([("created_at", ASCENDING), ("_id", ASCENDING)])]

    def mark_delivered(self, message_id: str, sender_id: Optional[str] = None,
                       receiver_id: Optional[str] = None) -> Optional[dict]:
        """Advance sent -> delivered. Returns the current record, or None if absent or out of scope."""
        try:
            oid = ObjectId(message_id)
        except (InvalidId, TypeError):
            return None
        scope = {"_id": oid}
        if sender_id is not None:
            scope["sender_id"] = sender_id
        if receiver_id is not None:
            scope["receiver_id"] = receiver_id
        msg = self.messages.find_one_and_update(
            {**scope, "message_status": MessageStatus.SENT.value},
            {"$set": {"message_status": MessageStatus.DELIVERED.value, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        return serialize(msg or self.messages.find_one(scope))

    def delete_message(self, message_id: str, requester_id: str) -> dict:
        msg = self.get_message(message_id)
        if msg["sender_id"] != requester_id:
            raise Unauthorized("Not authorized to delete this message")
        result = self.messages.delete_one({"_id": ObjectId(msg["_id"]), "sender_id": requester_id})
        if result.deleted_count == 0:
            raise NotFound("Message not found")

        conv_oid = to_object_id(msg["conversation_id"], "conversation")
        conv = self.conversations.find_one({"_id": conv_oid})
        if conv and conv.get("last_message_id") == msg["_id"]:
            latest = self.messages.find_one(
                {"conversation_id": msg["conversation_id"]},
                sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
            )
            self.conversations.update_one(
                {"_id": conv_oid}, {"$set": {"last_message_id": str(latest["_id"]) if latest else None}}
            )
        return msg

    def upsert_reaction(self, message_id: str, reactor_id: str, emoji: str) -> dict:
        if not emoji or not emoji.strip():
            raise ValidationError("Emoji is required")
        oid = to_object_id(message_id, "message")

        for _ in range(REACTION_RETRIES):
            msg = self.messages.find_one({"_id": oid})
            if not msg:
                raise NotFound("Message not found")
            if reactor_id not in (msg["sender_id"], msg["receiver_id"]):
                raise Forbidden("Not a participant of this conversation")

            current = msg.get("reactions", [])
            existing = next((r for r in current if r["user_id"] == reactor_id), None)
            if existing is None:
                reactions = current + [Reaction(user_id=reactor_id, emoji=emoji).model_dump()]
            elif existing["emoji"] == emoji:
                # Re-sending the same emoji takes the reaction back
                reactions = [r for r in current if r["user_id"] != reactor_id]
            else:
                reactions = [
                    {"user_id": reactor_id, "emoji": emoji} if r["user_id"] == reactor_id else r
                    for r in current
                ]

            result = self.messages.update_one(
                {"_id": oid, "reactions": current},
                {"$set": {"reactions": reactions, "updated_at": now_utc()}},
            )
            if result.modified_count == 1:
                return self.get_message(message_id)
            logger.debug("Reaction on %s raced with another writer, retrying", message_id)

        raise UpstreamFailure("Could not apply reaction")

    # ------------ Population ------------

    def _user_map(self, user_ids: Iterable[str], fields: dict) -> dict[str, dict]:
        oids = []
        for uid in set(user_ids):
            try:
                oids.append(ObjectId(uid))
            except (InvalidId, TypeError):
                continue
        if not oids:
            return {}
        return {str(u["_id"]): serialize(u) for u in self.users.find({"_id": {"$in": oids}}, fields)}

    def populate_messages(self, messages: list[dict]) -> list[dict]:
        ids = []
        for m in messages:
            ids += [m["sender_id"], m["receiver_id"]] + [r["user_id"] for r in m.get("reactions", [])]
        users = self._user_map(ids, USER_DISPLAY_FIELDS)

        def brief(uid):
            return users.get(uid, {"_id": uid})

        out = []
        for m in messages:
            out.append({
                **m,
                "sender": brief(m["sender_id"]),
                "receiver": brief(m["receiver_id"]),
                "reactions": [{**r, "user": brief(r["user_id"])} for r in m.get("reactions", [])],
            })
        return out

    def populate_message(self, message: dict) -> dict:
        return self.populate_messages([message])[0]

    def populate_conversations(self, conversations: list[dict]) -> list[dict]:
        ids = [uid for c in conversations for uid in c["participant_ids"]]
        users = self._user_map(ids, PARTICIPANT_FIELDS)

        last_ids = [ObjectId(c["last_message_id"]) for c in conversations if c.get("last_message_id")]
        last = {}
        if last_ids:
            last_docs = [serialize(m) for m in self.messages.find({"_id": {"$in": last_ids}})]
            last = {m["_id"]: m for m in self.populate_messages(last_docs)}

        return [
            {
                **c,
                "participants": [users.get(uid, {"_id": uid}) for uid in c["participant_ids"]],
                "last_message": last.get(c.get("last_message_id")),
            }
            for c in conversations
        ]
