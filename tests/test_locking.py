import asyncio
import json
from pathlib import Path

import pytest

from reveal_chat.models import Message, MessageState, Role, Session
from reveal_chat.repositories import message_repository
from reveal_chat.repositories.message_repository import FileMessageStore, describe_store


class FakeLockException(Exception):
    pass


class FakeFileLock:
    def __init__(self, filename, mode="a", encoding="utf-8", **kwargs):
        self.filename = filename
        self.mode = mode
        self.encoding = encoding
        self._file = None

    def __enter__(self):
        self._file = open(self.filename, self.mode, encoding=self.encoding)
        return self._file

    def __exit__(self, exc_type, exc, tb):
        if self._file is not None:
            self._file.close()


class FakePortalocker:
    class exceptions:
        LockException = FakeLockException

    def Lock(self, filename, mode="a", timeout=None, fail_when_locked=False, **kwargs):
        return FakeFileLock(filename, mode=mode, **kwargs)


class BusyPortalocker(FakePortalocker):
    def __init__(self):
        self.attempts = 0

    def Lock(self, filename, mode="a", timeout=None, fail_when_locked=False, **kwargs):
        self.attempts += 1
        raise FakeLockException("locked")


def _message(room_id: str, content: str) -> Message:
    return Message(
        room_id=room_id,
        role=Role.USER,
        content=content,
        state=MessageState.COMPLETED,
        user_id="u1",
    )


def test_messages_are_appended_as_jsonl_rows(tmp_path, monkeypatch):
    monkeypatch.setattr(message_repository, "portalocker", FakePortalocker())
    store = FileMessageStore(tmp_path)

    async def scenario():
        room = await store.create_room("gpt-4o", Session(user_id="u1"), "Hello")
        created = await store.create_message(_message(room.id, "hello"))
        return room, created, await store.get_message(created.remote_id)

    room, created, fetched = asyncio.run(scenario())

    assert created.remote_id.startswith(f"{room.id}-")
    assert fetched.model_dump() == created.model_dump()
    lines = (tmp_path / room.id / "messages.jsonl").read_text(encoding="utf-8")
    row = json.loads(lines.splitlines()[0])
    assert row["v"] == 1
    assert row["op"] == "upsert"
    assert row["message"]["content"] == "hello"
    room_data = json.loads((tmp_path / room.id / "room.json").read_text())
    assert room_data["name"] == "Hello"


def test_updates_fold_last_write_wins(tmp_path, monkeypatch):
    monkeypatch.setattr(message_repository, "portalocker", FakePortalocker())
    store = FileMessageStore(tmp_path)

    async def scenario():
        room = await store.create_room("gpt-4o", Session(user_id="u1"))
        created = await store.create_message(_message(room.id, "draft"))
        await store.update_message(created.model_copy(update={"content": "final"}))
        return room, created

    room, created = asyncio.run(scenario())

    fetched = asyncio.run(store.get_message(created.remote_id))
    assert fetched.content == "final"
    assert [m.content for m in asyncio.run(store.list_messages(room.id))] == ["final"]


def test_delete_message_is_idempotent(tmp_path, monkeypatch):
    monkeypatch.setattr(message_repository, "portalocker", FakePortalocker())
    store = FileMessageStore(tmp_path)

    async def scenario():
        room = await store.create_room("gpt-4o", Session(user_id="u1"))
        created = await store.create_message(_message(room.id, "bye"))
        await store.delete_message(created.remote_id)
        await store.delete_message(created.remote_id)
        return room, created

    room, created = asyncio.run(scenario())

    log = (tmp_path / room.id / "messages.jsonl").read_text().splitlines()
    assert [json.loads(line)["op"] for line in log] == ["upsert", "delete"]
    assert asyncio.run(store.list_messages(room.id)) == []
    deleted = asyncio.run(store.get_message(created.remote_id))
    assert deleted.state == MessageState.DELETED


def test_list_and_delete_rooms(tmp_path, monkeypatch):
    monkeypatch.setattr(message_repository, "portalocker", FakePortalocker())
    store = FileMessageStore(tmp_path)

    async def scenario():
        mine = await store.create_room("gpt-4o", Session(user_id="u1"), "mine")
        await store.create_room("gpt-4o", Session(user_id="u2"), "theirs")
        doomed = await store.create_room("gpt-4o", Session(user_id="u1"), "doomed")
        await store.create_message(_message(doomed.id, "x"))
        await store.delete_room(doomed.id)
        await store.delete_room(doomed.id)
        return mine, doomed, await store.list_rooms("u1")

    mine, doomed, rooms = asyncio.run(scenario())

    assert [room.id for room in rooms] == [mine.id]
    assert asyncio.run(store.get_room(doomed.id)) is None
    assert asyncio.run(store.list_messages(doomed.id)) == []


def test_busy_lock_raises_timeout(tmp_path, monkeypatch):
    busy = BusyPortalocker()
    monkeypatch.setattr(message_repository, "portalocker", busy)
    monkeypatch.setattr(message_repository.time, "sleep", lambda _delay: None)
    store = FileMessageStore(tmp_path)
    (tmp_path / "room1").mkdir()

    with pytest.raises(TimeoutError, match="Storage busy"):
        asyncio.run(store.create_message(_message("room1", "hello")))
    assert busy.attempts == message_repository.LOCK_MAX_ATTEMPTS


def test_write_to_missing_room_raises_lookup_error(tmp_path, monkeypatch):
    monkeypatch.setattr(message_repository, "portalocker", FakePortalocker())
    store = FileMessageStore(tmp_path)
    with pytest.raises(LookupError):
        asyncio.run(store.create_message(_message("ghost", "hello")))


def test_parse_row_rejects_invalid_rows(tmp_path):
    store = FileMessageStore(tmp_path)
    message = _message("r1", "ok").to_dict()
    assert store.parse_row("") is None
    assert store.parse_row("{bad-json") is None
    for row in (
        {"v": 1, "op": "drop", "message": message},
        {"v": 99, "op": "upsert", "message": message},
    ):
        assert store.parse_row(json.dumps(row)) is None
    assert store.parse_row(json.dumps({"v": 1, "op": "upsert", "message": {}})) is None
    parsed = store.parse_row(json.dumps({"v": 1, "op": "UPSERT", "message": message}))
    assert parsed is not None
    assert parsed[0] == "upsert"


def test_room_paths_reject_traversal(tmp_path):
    store = FileMessageStore(tmp_path)
    with pytest.raises(ValueError):
        store.get_room_dir("../escape")
    with pytest.raises(ValueError):
        store.room_id_for("no_separator")
    assert store.room_id_for("abc-123") == "abc"


def test_describe_store(tmp_path):
    assert describe_store(FileMessageStore(tmp_path)) == f"file:{Path(tmp_path)}"
    assert describe_store(object()) == "object"
