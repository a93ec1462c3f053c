from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from reveal_chat.constants import MAX_HISTORY_MESSAGES, ROOM_NAME_MAX_LENGTH
from reveal_chat.errors import AccessDenied, NotFound, StaleReadTimeout
from reveal_chat.models import Message, PersistenceSettings, Room, Session
from reveal_chat.repositories.interfaces import MessageStoreProtocol

logger = logging.getLogger(__name__)


def room_name_from(content: str) -> str:
    first_line = content.strip().splitlines()[0] if content.strip() else ""
    return first_line[:ROOM_NAME_MAX_LENGTH].strip()


class MessagePersistence:
    def __init__(
        self,
        store: MessageStoreProtocol,
        settings: PersistenceSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.store = store
        self.settings = settings or PersistenceSettings()
        self._sleep = sleep or asyncio.sleep

    async def create_room_if_needed(
        self, room_id: str | None, session: Session, model: str, first_message: str
    ) -> tuple[Room, bool]:
        if room_id:
            room = await self.store.get_room(room_id)
            if room is None:
                raise NotFound(f"Room not found: {room_id}")
            if room.user_id != session.user_id:
                raise AccessDenied(f"Room {room_id} belongs to another user.")
            return room, False
        name = room_name_from(first_message)
        room = await self.store.create_room(model, session, name)
        logger.info(
            "Created room %s model=%s user=%s", room.id, model, session.user_id
        )
        return room, True

    async def save_message(self, message: Message) -> Message:
        created = await self.store.create_message(message)
        return await self.wait_for_visibility(created)

    async def update_message(self, message: Message) -> Message:
        await self.store.update_message(message)
        return await self.wait_for_visibility(message)

    async def wait_for_visibility(self, record: Message) -> Message:
        if not record.remote_id:
            raise ValueError("Cannot verify a message without a remote id.")
        attempts = max(1, self.settings.poll_attempts)
        for attempt in range(1, attempts + 1):
            found = await self.store.get_message(record.remote_id)
            if (
                found is not None
                and found.content == record.content
                and found.state == record.state
            ):
                if attempt > 1:
                    logger.debug(
                        "Write %s visible after %s reads", record.remote_id, attempt
                    )
                return found
            if attempt < attempts:
                await self._sleep(self.settings.poll_delay)
        raise StaleReadTimeout(
            f"Write {record.remote_id} not visible after {attempts} reads.",
            record=record,
            attempts=attempts,
        )

    async def touch_room(
        self, room_id: str, last_message: str, name: str | None = None
    ) -> bool:
        try:
            room = await self.store.get_room(room_id)
            if room is None:
                return False
            update: dict[str, str] = {"last_message": last_message[:200]}
            if name and not room.name:
                update["name"] = name[:ROOM_NAME_MAX_LENGTH]
            await self.store.update_room(room.model_copy(update=update))
            return True
        except Exception as exc:
            logger.warning("Room metadata update failed for %s: %s", room_id, exc)
            return False

    async def load_history(self, room_id: str) -> list[Message]:
        messages = await self.store.list_messages(room_id)
        messages.sort(key=lambda m: m.created_at)
        return messages[-MAX_HISTORY_MESSAGES:]

    async def list_rooms(self, user_id: str) -> list[Room]:
        return await self.store.list_rooms(user_id)

    async def get_room(self, room_id: str) -> Room | None:
        return await self.store.get_room(room_id)

    async def delete_message(self, remote_id: str) -> None:
        try:
            await self.store.delete_message(remote_id)
        except LookupError:
            logger.debug("Message %s already gone", remote_id)

    async def delete_room(self, room_id: str) -> None:
        try:
            await self.store.delete_room(room_id)
        except LookupError:
            logger.debug("Room %s already gone", room_id)
