"""
Database Schemas for the messaging app

Each Pydantic model represents a collection in MongoDB. The collection name is the
lowercase of the class name (handled by our database helpers at usage time).
Documents reference each other by id strings only; display fields are joined in
when a record leaves the store (see ChatStore.populate_*).
"""

from datetime import datetime
from enum import Enum
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


ContentType = Literal["text", "image", "video"]


class User(BaseModel):
    name: str = Field(..., description="Display name")
    email: Optional[EmailStr] = Field(None, description="Verified email, if any")
    phone: Optional[str] = Field(None, description="Verified phone number in international format")
    avatar_url: Optional[str] = Field(None, description="Profile picture URL")
    about: Optional[str] = Field("Hey there! I am using Vibe Chat.")
    # Written only by the presence tracker on connect/disconnect
    online: bool = Field(default=False)
    last_seen: Optional[datetime] = None


class Conversation(BaseModel):
    # One-to-one only, stored sorted so [A, B] and [B, A] are the same document
    participant_ids: List[str] = Field(..., min_length=2, max_length=2, description="Sorted user IDs")
    pair_key: str = Field(..., description="'<low>:<high>' of participant_ids, unique")
    last_message_id: Optional[str] = None
    unread_count: int = Field(0, ge=0)


class Reaction(BaseModel):
    user_id: str
    emoji: str = Field(..., min_length=1)


class Message(BaseModel):
    conversation_id: str = Field(..., description="Conversation ID")
    sender_id: str = Field(..., description="User ID of sender")
    receiver_id: str = Field(..., description="User ID of receiver")
    content: Optional[str] = Field(None, description="Text, or caption when media is present")
    media_url: Optional[str] = Field(None, description="Durable URL of image/video")
    content_type: ContentType = "text"
    reactions: List[Reaction] = Field(default_factory=list)
    message_status: MessageStatus = MessageStatus.SENT


# ------------ Wire models ------------

class WsInbound(BaseModel):
    """Client -> server live-channel frame."""
    type: str
    data: Any = None


class WsOutbound(BaseModel):
    """Server -> client live-channel frame."""
    type: str
    data: Any = None


class PresenceState(BaseModel):
    user_id: str
    online: bool
    last_seen: Optional[datetime] = None


class MarkReadRequest(BaseModel):
    message_ids: List[str] = Field(..., min_length=1)


class Envelope(BaseModel):
    status: Literal["success", "error"]
    message: str
    data: Any = None
