from typing import Any, Protocol

from reveal_chat.models import Message, Room, Session


class MessageStoreProtocol(Protocol):
    async def create_room(
        self, model: str, session: Session, name: str | None = None
    ) -> Room:
        pass

    async def update_room(self, room: Room) -> None:
        pass

    async def get_room(self, room_id: str) -> Room | None:
        pass

    async def list_rooms(self, user_id: str) -> list[Room]:
        pass

    async def create_message(self, message: Message) -> Message:
        pass

    async def update_message(self, message: Message) -> None:
        pass

    async def get_message(self, remote_id: str) -> Message | None:
        pass

    async def list_messages(self, room_id: str) -> list[Message]:
        pass

    async def delete_message(self, remote_id: str) -> None:
        pass

    async def delete_room(self, room_id: str) -> None:
        pass


class KeyValueRepositoryProtocol(Protocol):
    def get_item(self, key: str) -> Any:
        pass

    def set_item(self, key: str, value: Any) -> bool:
        pass

    def remove_item(self, key: str) -> bool:
        pass
