"""Pydantic record and request shapes. JSON uses camelCase aliases."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

SYSTEM_SENDER = "system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        """JSON-ready dict with camelCase keys (used for storage and responses)."""
        return self.model_dump(mode="json", by_alias=True)


# -----------------------------
# Records
# -----------------------------
class User(_Model):
    id: str
    secret_hash: str


class Article(_Model):
    id: str = Field(default_factory=new_id)
    owner: str
    title: str = "Untitled"
    price: str = "0"
    description: str = ""
    version: str = ""
    server: str = ""
    image: Optional[str] = None


class Message(_Model):
    id: str = Field(default_factory=new_id)
    sender: str
    body: str
    created_at: datetime = Field(default_factory=utcnow)
    system: bool = False


class Room(_Model):
    id: str = Field(default_factory=lambda: f"chat-{new_id()}")
    display_name: str
    members: List[str]
    messages: List[Message] = Field(default_factory=list)

    def has_member(self, user_id: str) -> bool:
        return user_id in self.members


# -----------------------------
# Requests
# -----------------------------
def _text(value: Any) -> Any:
    # prices and tags arrive as numbers from some clients
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class LoginRequest(_Model):
    id: str = Field(..., min_length=1)
    secret: str = Field(..., min_length=1)


class UserCreate(_Model):
    id: str = Field(..., min_length=1, max_length=64)
    secret: str = Field(..., min_length=1)


class UserUpdate(_Model):
    secret: Optional[str] = Field(default=None, min_length=1)


class ArticleCreate(_Model):
    title: str = "Untitled"
    price: str = "0"
    description: str = ""
    version: str = ""
    server: str = ""

    @field_validator("title", "price", "description", "version", "server", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Any:
        return _text(value)


class ArticleUpdate(_Model):
    title: Optional[str] = None
    price: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None
    server: Optional[str] = None

    @field_validator("title", "price", "description", "version", "server", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Any:
        return _text(value)

    def changes(self) -> dict:
        """Fields to overwrite; absent, null and empty-string values keep the stored value."""
        return {k: v for k, v in self.model_dump().items() if v is not None and v != ""}


class RoomCreate(_Model):
    member_ids: List[str]
    display_name: Optional[str] = None


class MembersAdd(_Model):
    member_ids: List[str] = Field(..., min_length=1)


class RoomRename(_Model):
    display_name: str = Field(..., min_length=1)


class MessageCreate(_Model):
    """Fallback HTTP message post. Extra fields (e.g. client timestamps) are dropped."""

    room_id: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
