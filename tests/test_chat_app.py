import asyncio

from dependency_injector import providers  # type: ignore[import-not-found]
from prompt_toolkit.document import Document

import chat
from reveal_chat.constants import LAST_ROOM_KEY, NEW_ROOM_KEY
from reveal_chat.container import ChatAppContainer
from reveal_chat.models import AppConfig, MessageState, Room
from reveal_chat.repositories import KeyValueRepository
from reveal_chat.services import MessageAnimation
from reveal_chat.ui import SlashCompleter


async def instant(_delay: float) -> None:
    await asyncio.sleep(0)


class ReplyModel:
    def __init__(self, reply: str = "Hi there"):
        self.reply = reply
        self.calls: list[tuple] = []

    async def complete(self, context, model, on_token=None):
        self.calls.append((context, model))
        await asyncio.sleep(0)
        return self.reply


class FakeView:
    def __init__(self):
        self.lines: list[str] = []
        self.sidebar: list[tuple[str, str]] = []
        self.exited = False

    def show_lines(self, lines: list[str]) -> None:
        self.lines = list(lines)

    def show_sidebar(self, fragments: list[tuple[str, str]]) -> None:
        self.sidebar = list(fragments)

    def exit(self, result=None) -> None:
        self.exited = True

    async def run_async(self):
        return None


def _app(tmp_path, model: ReplyModel | None = None) -> chat.ChatApp:
    container = ChatAppContainer()
    container.config.override(providers.Object(AppConfig(store="memory")))
    container.kv_repository.override(
        providers.Object(KeyValueRepository(tmp_path / "kv.json"))
    )
    container.model_service.override(providers.Object(model or ReplyModel()))
    container.animation.override(providers.Object(MessageAnimation(sleep=instant)))
    container.view.override(providers.Object(FakeView()))
    return chat.ChatApp(container)


async def _settle(app: chat.ChatApp) -> None:
    for _ in range(20):
        await app.orchestrator.drain()
        pending = [task for task in app._tasks if not task.done()]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)


def test_container_wires_shared_services(tmp_path):
    app = _app(tmp_path)

    assert app.container.app() is app
    assert app.orchestrator.store is app.store
    assert app.orchestrator.metrics is app.metrics
    assert app.orchestrator.persistence.store is app.container.message_store()
    assert app.config.store == "memory"
    assert isinstance(app.view, FakeView)


def test_model_command_selects_and_reports(tmp_path):
    app = _app(tmp_path)

    app.handle_input("/model gpt-4o")
    assert app.current_model() == "gpt-4o"
    assert app.view.lines[-1].endswith("system: Model set to gpt-4o.")
    assert app.kv.get_item("selected_model") == "gpt-4o"

    app.handle_input("/model llama-3")
    assert app.view.lines[-1].endswith("system: Error: Unsupported model 'llama-3'.")
    assert app.current_model() == "gpt-4o"


def test_unknown_command_and_help(tmp_path):
    app = _app(tmp_path)

    app.handle_input("/bogus now")
    assert app.view.lines[-1].endswith("Unknown command '/bogus'. Try /help.")

    app.handle_input("/help")
    assert "/regen" in app.view.lines[-1]
    assert "/deleteroom" in app.view.lines[-1]


def test_clear_and_system_line_cap(tmp_path):
    app = _app(tmp_path)

    for i in range(25):
        app.append_system_message(f"notice {i}")
    assert len(app.system_lines) == chat.MAX_SYSTEM_LINES
    assert app.system_lines[0].endswith("notice 5")

    app.handle_input("/clear")
    assert app.system_lines == []


def test_first_message_follows_new_room(tmp_path):
    model = ReplyModel("Hi there")
    app = _app(tmp_path, model)

    async def scenario():
        app.watch_room(NEW_ROOM_KEY)
        app.handle_input("Hello")
        assert app.view.lines[0].endswith("you: Hello (sending)")
        await _settle(app)

    asyncio.run(scenario())

    assert app.current_room != NEW_ROOM_KEY
    assert app.kv.get_item(LAST_ROOM_KEY) == app.current_room
    assert app.view.lines[0].endswith("you: Hello")
    assert app.view.lines[1].endswith("assistant: Hi there")
    assert [room.id for room in app.room_index] == [app.current_room]
    assert model.calls[0][1] == "gpt-3.5-turbo"


def test_send_errors_surface_as_system_notice(tmp_path):
    app = _app(tmp_path)

    async def scenario():
        app.handle_input("x" * 10001)

    asyncio.run(scenario())

    assert "Error: Message content is too long." in app.view.lines[-1]
    assert app.store.keys() == []


def test_delete_and_regen_commands(tmp_path):
    model = ReplyModel("First answer")
    app = _app(tmp_path, model)

    async def scenario():
        app.watch_room(NEW_ROOM_KEY)
        app.handle_input("Hello")
        await _settle(app)
        model.reply = "Second answer"
        app.handle_input("/regen")
        await _settle(app)
        app.handle_input("/delete 1")
        await _settle(app)

    asyncio.run(scenario())

    state = app.current_state()
    user, reply = state.messages
    assert user.state == MessageState.DELETED
    assert reply.content == "Second answer"
    assert app.view.lines[0].startswith("(1) ")
    assert app.view.lines[0].endswith("assistant: Second answer")
    assert any(line.endswith("system: Message deleted.") for line in app.view.lines)
    assert len(model.calls) == 2


def test_delete_command_requires_a_number(tmp_path):
    app = _app(tmp_path)

    app.handle_input("/delete")
    assert app.view.lines[-1].endswith("Usage: /delete <message-number>")
    app.handle_input("/regen 7")
    assert app.view.lines[-1].endswith("Usage: /regen [message-number]")


def test_run_async_reopens_last_room(tmp_path):
    app = _app(tmp_path)

    async def scenario():
        room = await app.container.message_store().create_room(
            "gpt-4o", app.session, "Earlier chat"
        )
        app.kv.set_item(LAST_ROOM_KEY, room.id)
        await app.run_async()
        return room

    room = asyncio.run(scenario())

    assert app.current_room == room.id
    assert app.current_state().name == "Earlier chat"


def test_run_async_forgets_missing_last_room(tmp_path):
    app = _app(tmp_path)
    app.kv.set_item(LAST_ROOM_KEY, "gone")

    asyncio.run(app.run_async())

    assert app.current_room == NEW_ROOM_KEY
    assert app.kv.get_item(LAST_ROOM_KEY) is None


def test_exit_command_closes_view(tmp_path):
    app = _app(tmp_path)

    app.handle_input("/exit")

    assert app.view.exited is True


def test_completer_offers_models_and_rooms(tmp_path):
    app = _app(tmp_path)
    app.room_index = [Room(id="abc123", user_id="local-user", name="Trip")]
    completer = SlashCompleter(app)

    def complete(text: str) -> list[str]:
        document = Document(text, cursor_position=len(text))
        return [c.text for c in completer.get_completions(document, None)]

    assert "gpt-4o" in complete("/model gpt-4")
    assert complete("/join ab") == ["abc123"]
    assert complete("/dele") == ["/delete", "/deleteroom"]
