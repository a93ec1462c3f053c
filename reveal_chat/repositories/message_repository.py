from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import time
from pathlib import Path
from typing import Any
from uuid import uuid4

import portalocker
from pydantic import ValidationError as SchemaValidationError

from reveal_chat.constants import (
    LOCK_BACKOFF_BASE_SECONDS,
    LOCK_BACKOFF_MAX_SECONDS,
    LOCK_MAX_ATTEMPTS,
    LOCK_TIMEOUT_SECONDS,
    STORE_ALLOWED_OPS,
    STORE_SCHEMA_VERSION,
)
from reveal_chat.models import Message, MessageState, Room, Session, now_iso

logger = logging.getLogger(__name__)


class FileMessageStore:
    def __init__(self, root_dir: str | Path):
        self.root = Path(root_dir)

    # Room layout: <root>/<room_id>/room.json + messages.jsonl (append log)

    def get_room_dir(self, room_id: str) -> Path:
        base = self.root.resolve()
        target = (base / room_id).resolve()
        if target.parent != base:
            raise ValueError("Invalid room path.")
        return target

    def get_room_file(self, room_id: str) -> Path:
        return self.get_room_dir(room_id) / "room.json"

    def get_message_file(self, room_id: str) -> Path:
        return self.get_room_dir(room_id) / "messages.jsonl"

    def room_id_for(self, remote_id: str) -> str:
        room_id, sep, _ = remote_id.partition("-")
        if not sep or not room_id:
            raise ValueError(f"Malformed message id: {remote_id}")
        return room_id

    async def create_room(
        self, model: str, session: Session, name: str | None = None
    ) -> Room:
        room = Room(
            id=uuid4().hex[:12], user_id=session.user_id, model=model, name=name or ""
        )
        await asyncio.to_thread(self._create_room_sync, room)
        return room

    async def update_room(self, room: Room) -> None:
        updated = room.model_copy(update={"updated_at": now_iso()})
        await asyncio.to_thread(self._write_room_sync, updated)

    async def get_room(self, room_id: str) -> Room | None:
        room = await asyncio.to_thread(self._read_room_sync, room_id)
        if room is None or room.deleted:
            return None
        return room

    async def list_rooms(self, user_id: str) -> list[Room]:
        return await asyncio.to_thread(self._list_rooms_sync, user_id)

    async def create_message(self, message: Message) -> Message:
        stored = message.model_copy(
            update={"remote_id": f"{message.room_id}-{uuid4().hex[:10]}"}
        )
        await asyncio.to_thread(self._append_op_sync, stored.room_id, "upsert", stored)
        return stored

    async def update_message(self, message: Message) -> None:
        if not message.remote_id:
            raise ValueError("Cannot update a message without a remote id.")
        await asyncio.to_thread(
            self._append_op_sync, self.room_id_for(message.remote_id), "upsert", message
        )

    async def get_message(self, remote_id: str) -> Message | None:
        room_id = self.room_id_for(remote_id)
        messages = await asyncio.to_thread(self._fold_messages_sync, room_id)
        return messages.get(remote_id)

    async def list_messages(self, room_id: str) -> list[Message]:
        messages = await asyncio.to_thread(self._fold_messages_sync, room_id)
        return [m for m in messages.values() if m.state != MessageState.DELETED]

    async def delete_message(self, remote_id: str) -> None:
        room_id = self.room_id_for(remote_id)
        messages = await asyncio.to_thread(self._fold_messages_sync, room_id)
        existing = messages.get(remote_id)
        if existing is None or existing.state == MessageState.DELETED:
            return
        deleted = existing.model_copy(update={"state": MessageState.DELETED})
        await asyncio.to_thread(self._append_op_sync, room_id, "delete", deleted)

    async def delete_room(self, room_id: str) -> None:
        room = await asyncio.to_thread(self._read_room_sync, room_id)
        if room is None or room.deleted:
            return
        for message in await self.list_messages(room_id):
            if message.remote_id:
                await self.delete_message(message.remote_id)
        await asyncio.to_thread(
            self._write_room_sync, room.model_copy(update={"deleted": True})
        )

    def _create_room_sync(self, room: Room) -> None:
        room_dir = self.get_room_dir(room.id)
        os.makedirs(room_dir, exist_ok=True)
        self.get_message_file(room.id).touch(exist_ok=True)
        self._write_room_sync(room)

    def _write_room_sync(self, room: Room) -> None:
        path = self.get_room_file(room.id)
        if not path.parent.exists():
            raise LookupError(f"Room not found: {room.id}")
        self._locked_write(path, "w", json.dumps(room.to_dict(), ensure_ascii=True))

    def _read_room_sync(self, room_id: str) -> Room | None:
        path = self.get_room_file(room_id)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read room %s: %s", room_id, exc)
            return None
        if not isinstance(data, dict):
            return None
        try:
            return Room(**data)
        except SchemaValidationError as exc:
            logger.warning("Invalid room schema for %s: %s", room_id, exc)
            return None

    def _list_rooms_sync(self, user_id: str) -> list[Room]:
        if not self.root.exists():
            return []
        rooms: list[Room] = []
        for entry in self.root.iterdir():
            if not entry.is_dir():
                continue
            room = self._read_room_sync(entry.name)
            if room is not None and not room.deleted and room.user_id == user_id:
                rooms.append(room)
        return sorted(rooms, key=lambda r: r.updated_at, reverse=True)

    def _append_op_sync(self, room_id: str, op: str, message: Message) -> None:
        path = self.get_message_file(room_id)
        if not path.parent.exists():
            raise LookupError(f"Room not found: {room_id}")
        row = {
            "v": STORE_SCHEMA_VERSION,
            "op": op,
            "ts": now_iso(),
            "message": message.to_dict(),
        }
        self._locked_write(path, "a", json.dumps(row, ensure_ascii=True) + "\n")

    def parse_row(self, line: str) -> tuple[str, Message] | None:
        line = line.strip()
        if not line:
            return None
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Invalid message JSONL row ignored.")
            return None
        if not isinstance(data, dict):
            return None
        op = str(data.get("op", "")).strip().lower()
        if op not in STORE_ALLOWED_OPS:
            logger.warning("Invalid store op '%s' ignored.", op)
            return None
        version = data.get("v")
        if not isinstance(version, int) or version > STORE_SCHEMA_VERSION:
            logger.warning("Unsupported store schema version %s ignored.", version)
            return None
        payload = data.get("message")
        if not isinstance(payload, dict):
            return None
        try:
            return op, Message.from_dict(payload)
        except SchemaValidationError as exc:
            logger.warning("Invalid message schema: %s", exc)
            return None

    def _fold_messages_sync(self, room_id: str) -> dict[str, Message]:
        path = self.get_message_file(room_id)
        folded: dict[str, Message] = {}
        if not path.exists():
            return folded
        try:
            with open(path, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as exc:
            logger.warning("Failed reading messages for room %s: %s", room_id, exc)
            return folded
        for line in lines:
            parsed = self.parse_row(line)
            if parsed is None:
                continue
            _op, message = parsed
            if message.remote_id:
                folded[message.remote_id] = message
        return folded

    def _locked_write(self, path: Path, mode: str, payload: str) -> None:
        last_error: Exception | None = None
        for attempt in range(LOCK_MAX_ATTEMPTS):
            try:
                with portalocker.Lock(
                    str(path),
                    mode=mode,
                    timeout=LOCK_TIMEOUT_SECONDS,
                    fail_when_locked=True,
                    encoding="utf-8",
                ) as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                return
            except portalocker.exceptions.LockException as exc:
                last_error = exc
            if attempt == LOCK_MAX_ATTEMPTS - 1:
                break
            delay = min(
                LOCK_BACKOFF_MAX_SECONDS,
                LOCK_BACKOFF_BASE_SECONDS * (2 ** min(attempt, 5)),
            )
            time.sleep(delay + random.uniform(0, 0.03))
        raise TimeoutError(f"Storage busy: could not lock {path.name}") from last_error


def describe_store(store: Any) -> str:
    root = getattr(store, "root", None)
    if root is not None:
        return f"file:{root}"
    return store.__class__.__name__
