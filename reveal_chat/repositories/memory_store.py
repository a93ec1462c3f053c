from __future__ import annotations

import logging
from uuid import uuid4

from reveal_chat.models import Message, MessageState, Room, Session, now_iso

logger = logging.getLogger(__name__)


class InMemoryMessageStore:
    """Process-local message store.

    ``visibility_lag_reads`` simulates a replicated backend: a write only
    becomes visible to ``get_message`` after that many reads of the record.
    """

    def __init__(self, visibility_lag_reads: int = 0):
        self.visibility_lag_reads = max(0, visibility_lag_reads)
        self.rooms: dict[str, Room] = {}
        self.messages: dict[str, Message] = {}
        self._lagging: dict[str, tuple[Message, int]] = {}
        self.write_count = 0

    async def create_room(
        self, model: str, session: Session, name: str | None = None
    ) -> Room:
        room = Room(
            id=uuid4().hex[:12],
            user_id=session.user_id,
            model=model,
            name=name or "",
        )
        self.rooms[room.id] = room
        self.write_count += 1
        return room

    async def update_room(self, room: Room) -> None:
        if room.id not in self.rooms:
            raise LookupError(f"Room not found: {room.id}")
        self.rooms[room.id] = room.model_copy(update={"updated_at": now_iso()})
        self.write_count += 1

    async def get_room(self, room_id: str) -> Room | None:
        room = self.rooms.get(room_id)
        if room is None or room.deleted:
            return None
        return room

    async def list_rooms(self, user_id: str) -> list[Room]:
        rooms = [
            room
            for room in self.rooms.values()
            if room.user_id == user_id and not room.deleted
        ]
        return sorted(rooms, key=lambda r: r.updated_at, reverse=True)

    async def create_message(self, message: Message) -> Message:
        stored = message.model_copy(update={"remote_id": uuid4().hex[:12]})
        self._write(stored)
        return stored

    async def update_message(self, message: Message) -> None:
        if not message.remote_id:
            raise ValueError("Cannot update a message without a remote id.")
        remote_id = message.remote_id
        if remote_id not in self.messages and remote_id not in self._lagging:
            raise LookupError(f"Message not found: {message.remote_id}")
        self._write(message)

    async def get_message(self, remote_id: str) -> Message | None:
        lagging = self._lagging.get(remote_id)
        if lagging is not None:
            record, remaining = lagging
            if remaining > 1:
                self._lagging[remote_id] = (record, remaining - 1)
                return self.messages.get(remote_id)
            del self._lagging[remote_id]
            self.messages[remote_id] = record
        return self.messages.get(remote_id)

    async def list_messages(self, room_id: str) -> list[Message]:
        return [
            m
            for m in self.messages.values()
            if m.room_id == room_id and m.state != MessageState.DELETED
        ]

    async def delete_message(self, remote_id: str) -> None:
        lagging = self._lagging.pop(remote_id, None)
        if lagging is not None:
            self.messages[remote_id] = lagging[0]
        existing = self.messages.get(remote_id)
        if existing is None or existing.state == MessageState.DELETED:
            return
        self.messages[remote_id] = existing.model_copy(
            update={"state": MessageState.DELETED}
        )
        self.write_count += 1

    async def delete_room(self, room_id: str) -> None:
        room = self.rooms.get(room_id)
        for remote_id, (record, _) in list(self._lagging.items()):
            if record.room_id == room_id:
                self.messages[remote_id] = record
                del self._lagging[remote_id]
        for remote_id, message in list(self.messages.items()):
            if message.room_id == room_id:
                await self.delete_message(remote_id)
        if room is None or room.deleted:
            return
        self.rooms[room_id] = room.model_copy(update={"deleted": True})
        self.write_count += 1

    def _write(self, message: Message) -> None:
        assert message.remote_id is not None
        self.write_count += 1
        if self.visibility_lag_reads > 0:
            self._lagging[message.remote_id] = (message, self.visibility_lag_reads)
            return
        self.messages[message.remote_id] = message
