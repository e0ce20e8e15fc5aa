"""Group chat rooms: creation, membership, rename and message append.

Every mutation is one serialized read-modify-write over the ``chats``
collection, so concurrent appends to the same room are never lost. Both the
HTTP fallback and the live connection post messages through
:meth:`ChatService.append_message`.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .errors import Forbidden, InvalidInput, NotFound, UnknownMember
from .models import SYSTEM_SENDER, Message, Room, utcnow
from .store import RecordStore

logger = logging.getLogger(__name__)


def _dedupe(ids: Iterable[str]) -> List[str]:
    out: List[str] = []
    for i in ids:
        i = (i or "").strip()
        if i and i not in out:
            out.append(i)
    return out


def _find(rooms: List[Dict[str, Any]], room_id: str) -> Dict[str, Any]:
    for r in rooms:
        if r.get("id") == room_id:
            return r
    raise NotFound(f"Chat not found: {room_id}")


def _require_member(room: Dict[str, Any], actor_id: str) -> None:
    if actor_id not in room.get("members", []):
        raise Forbidden("Only members of this chat may do that")


class ChatService:
    """Domain logic for chat rooms.

    Parameters
    ----------
    store : RecordStore
        Backing store holding the ``chats`` collection.
    user_exists : Callable[[str], bool]
        Resolves member ids against the user collection.
    clock : Callable[[], datetime]
        Source of server timestamps (UTC).
    """

    def __init__(
        self,
        store: RecordStore,
        user_exists: Callable[[str], bool],
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.user_exists = user_exists
        self.clock = clock

    # --------- reads ----------
    def list_rooms(self, user_id: str) -> List[Room]:
        """Rooms the user belongs to; also the reconnect catch-up path."""
        rooms = self.store.load("chats")["chats"]
        return [Room.model_validate(r) for r in rooms if user_id in r.get("members", [])]

    def get_room(self, actor_id: str, room_id: str, *, is_admin: bool = False) -> Room:
        room = _find(self.store.load("chats")["chats"], room_id)
        if not is_admin:
            _require_member(room, actor_id)
        return Room.model_validate(room)

    # --------- mutations ----------
    def create_room(self, creator_id: str, member_ids: Iterable[str], display_name: Optional[str] = None) -> Room:
        requested = _dedupe(member_ids)
        if len(requested) < 2:
            raise InvalidInput("A chat needs at least two distinct members")
        self._check_users(requested)
        members = sorted(set(requested) | {creator_id})
        name = (display_name or "").strip() or " & ".join(requested)
        room = Room(
            display_name=name,
            members=members,
            messages=[self._system_message(f"{creator_id} created the chat", None)],
        )
        with self.store.transaction("chats") as doc:
            doc["chats"].append(room.dump())
        logger.info("User %s created chat %s with %s", creator_id, room.id, members)
        return room

    def add_members(self, actor_id: str, room_id: str, new_member_ids: Iterable[str]) -> Tuple[Room, List[str]]:
        """Add members. Already-present ids are ignored; all-present is a no-op."""
        proposed = _dedupe(new_member_ids)
        with self.store.lock("chats"):
            room = _find(self.store.load("chats")["chats"], room_id)
            _require_member(room, actor_id)
            added = [m for m in proposed if m not in room["members"]]
            if not added:
                return Room.model_validate(room), []
            self._check_users(added)
            with self.store.transaction("chats") as doc:
                room = _find(doc["chats"], room_id)
                room["members"] = sorted(set(room["members"]) | set(added))
                notice = self._system_message(f"{actor_id} added {', '.join(added)}", room)
                room["messages"].append(notice.dump())
        logger.info("User %s added %s to chat %s", actor_id, added, room_id)
        return Room.model_validate(room), added

    def rename(self, actor_id: str, room_id: str, new_name: str) -> Room:
        new_name = (new_name or "").strip()
        if not new_name:
            raise InvalidInput("displayName is required")
        with self.store.transaction("chats") as doc:
            room = _find(doc["chats"], room_id)
            _require_member(room, actor_id)
            room["displayName"] = new_name
        return Room.model_validate(room)

    def append_message(
        self,
        actor_id: str,
        room_id: str,
        body: str,
        on_commit: Optional[Callable[[Message], None]] = None,
    ) -> Message:
        """Append a message with a server-assigned id and timestamp.

        ``on_commit`` runs after the save while the collection lock is still
        held, so callbacks observe messages in the order they were persisted.
        """
        if not (body or "").strip():
            raise InvalidInput("Message body is required")
        with self.store.lock("chats"):
            with self.store.transaction("chats") as doc:
                room = _find(doc["chats"], room_id)
                _require_member(room, actor_id)
                message = Message(sender=actor_id, body=body, created_at=self._next_timestamp(room))
                room["messages"].append(message.dump())
            if on_commit is not None:
                on_commit(message)
        return message

    # --------- internals ----------
    def _check_users(self, ids: Iterable[str]) -> None:
        for member_id in ids:
            if not self.user_exists(member_id):
                raise UnknownMember(member_id)

    def _system_message(self, body: str, room: Optional[Dict[str, Any]]) -> Message:
        return Message(
            sender=SYSTEM_SENDER,
            body=body,
            created_at=self._next_timestamp(room),
            system=True,
        )

    def _next_timestamp(self, room: Optional[Dict[str, Any]]) -> datetime:
        # never earlier than the last stored message, even if the clock steps back
        now = self.clock()
        if room and room.get("messages"):
            last = datetime.fromisoformat(room["messages"][-1]["createdAt"].replace("Z", "+00:00"))
            if last > now:
                return last
        return now
