import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from prompt_toolkit.styles import Style

from reveal_chat.commands.registry import CommandRegistry
from reveal_chat.constants import LAST_ROOM_KEY, NEW_ROOM_KEY, THEMES
from reveal_chat.container import ChatAppContainer
from reveal_chat.errors import ChatError
from reveal_chat.models import Message, Role, Room, RoomState, Session
from reveal_chat.view import lex_line, render_room, visible_messages

logger = logging.getLogger(__name__)

MAX_SYSTEM_LINES = 20


class ChatApp:
    def __init__(self, container: ChatAppContainer | None = None):
        self.container = container or ChatAppContainer()
        self.container.app.override(self)
        self.config = self.container.config()
        self.session = Session(user_id=self.config.user_id)
        self.current_theme = "default"
        self.current_room = NEW_ROOM_KEY
        self.system_lines: list[str] = []
        self.room_index: list[Room] = []
        self._room_unsubscribe: Callable[[], None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

        self.store = self.container.room_store()
        self.orchestrator = self.container.orchestrator()
        self.model_selection = self.container.model_selection()
        self.kv = self.container.kv_repository()
        self.metrics = self.container.metrics()
        self.command_handlers = CommandRegistry(self).build()
        self.view = self.container.view()

    def get_style(self) -> Style:
        theme_dict = THEMES.get(self.current_theme, THEMES["default"])
        base_dict = {
            "scrollbar.background": "bg:#222222",
            "scrollbar.button": "bg:#777777",
        }
        base_dict.update(theme_dict)
        return Style.from_dict(base_dict)

    def lex_line(self, line_text: str) -> list[tuple[str, str]]:
        return lex_line(line_text)

    def current_state(self) -> RoomState | None:
        return self.store.get(self.current_room)

    def current_model(self) -> str:
        state = self.current_state()
        if state is not None:
            return state.model
        return self.model_selection.model_for(self.current_room)

    def handle_input(self, text: str) -> None:
        text = text.strip()
        if not text:
            return
        if text.startswith("/"):
            cmd, _, args = text.partition(" ")
            handler = self.command_handlers.get(cmd.lower())
            if handler is None:
                self.append_system_message(f"Unknown command '{cmd}'. Try /help.")
                return
            handler(args)
            return
        self.send_message(text)

    def send_message(self, text: str) -> None:
        try:
            model = self.model_selection.model_for(self.current_room)
            if model != self.current_model():
                self.orchestrator.set_room_model(self.current_room, model)
            self.orchestrator.submit(self.current_room, text, self.session)
        except ChatError as exc:
            self.append_system_message(f"Error: {exc.reason}")

    def select_model(self, model: str) -> str:
        model = self.model_selection.select(self.current_room, model)
        self.orchestrator.set_room_model(self.current_room, model)
        return model

    def find_message(
        self, token: str, assistant_default: bool = False
    ) -> Message | None:
        messages = visible_messages(self.current_state())
        if not token:
            if not assistant_default:
                return None
            replies = [m for m in messages if m.role == Role.ASSISTANT]
            return replies[-1] if replies else None
        try:
            index = int(token)
        except ValueError:
            return None
        if 1 <= index <= len(messages):
            return messages[index - 1]
        return None

    def watch_room(self, room_key: str) -> None:
        if self._room_unsubscribe is not None:
            self._room_unsubscribe()
        self._room_unsubscribe = self.store.subscribe(room_key, self.on_room_state)

    def on_room_state(self, room_key: str, state: RoomState) -> None:
        if (
            room_key == NEW_ROOM_KEY
            and state.created_room_id
            and self.current_room == NEW_ROOM_KEY
        ):
            # First send created the room; follow it without cancelling the turn.
            self.follow_room(state.created_room_id)
            self.refresh_rooms()
            return
        self.refresh_output()

    def follow_room(self, room_id: str) -> None:
        self.current_room = room_id
        self.watch_room(room_id)
        self.kv.set_item(LAST_ROOM_KEY, room_id)
        self.refresh_output()

    def switch_room(self, room_key: str) -> None:
        if room_key == self.current_room:
            self.append_system_message("Already in this conversation.")
            return
        previous = self.current_room
        self.run_background(self.orchestrator.cancel_room(previous))
        self.current_room = room_key
        self.watch_room(room_key)
        if room_key == NEW_ROOM_KEY:
            self.kv.remove_item(LAST_ROOM_KEY)
            self.refresh_output()
            return
        self.kv.set_item(LAST_ROOM_KEY, room_key)
        self.run_background(
            self.orchestrator.open_room(
                room_key, self.model_selection.model_for(room_key), self.session
            ),
            on_done=lambda _state: self.refresh_output(),
            on_error=lambda: self.switch_room(NEW_ROOM_KEY),
        )

    def cancel_current_reply(self) -> None:
        def done(count: int) -> None:
            if count:
                self.append_system_message("Reply cancelled.")

        self.run_background(self.orchestrator.cancel_room(self.current_room), done)

    def refresh_rooms(self) -> None:
        self.run_background(
            self.orchestrator.list_rooms(self.session), on_done=self.set_room_index
        )

    def set_room_index(self, rooms: list[Room]) -> None:
        self.room_index = rooms
        self.update_sidebar()

    def show_rooms(self, rooms: list[Room]) -> None:
        self.set_room_index(rooms)
        if not rooms:
            self.append_system_message("No conversations yet.")
            return
        listing = ", ".join(f"{r.id} ({r.name or 'untitled'})" for r in rooms)
        self.append_system_message(f"Rooms: {listing}")

    def update_sidebar(self) -> None:
        fragments: list[tuple[str, str]] = []
        for room in self.room_index:
            marker = "> " if room.id == self.current_room else "  "
            label = (room.name or "untitled")[:24]
            fragments.append(("", f"{marker}{label}\n"))
            fragments.append(("class:timestamp", f"    {room.id} {room.model}\n"))
        state = self.current_state()
        phase = state.phase.value if state is not None else "idle"
        fragments.append(("class:status", f"\n model: {self.current_model()} \n"))
        fragments.append(("class:status", f" phase: {phase} \n"))
        self.view.show_sidebar(fragments)

    def append_system_message(self, text: str) -> None:
        stamp = datetime.now().strftime("%H:%M:%S")
        self.system_lines.append(f"[{stamp}] system: {text}")
        self.system_lines = self.system_lines[-MAX_SYSTEM_LINES:]
        self.refresh_output()

    def refresh_output(self) -> None:
        self.view.show_lines(render_room(self.current_state()) + self.system_lines)
        self.update_sidebar()

    def run_background(
        self,
        coro: Awaitable[Any],
        on_done: Callable[[Any], None] | None = None,
        on_error: Callable[[], None] | None = None,
    ) -> asyncio.Task[Any]:
        async def runner() -> None:
            try:
                result = await coro
            except ChatError as exc:
                self.append_system_message(f"Error: {exc.reason}")
                if on_error is not None:
                    on_error()
                return
            if on_done is not None:
                on_done(result)

        task = asyncio.get_running_loop().create_task(runner())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run_async(self) -> Any:
        last_room = self.kv.get_item(LAST_ROOM_KEY)
        self.watch_room(self.current_room)
        if isinstance(last_room, str) and last_room:
            try:
                await self.orchestrator.open_room(
                    last_room, self.model_selection.model_for(last_room), self.session
                )
                self.current_room = last_room
                self.watch_room(last_room)
            except ChatError as exc:
                logger.warning("Could not reopen room %s: %s", last_room, exc)
                self.kv.remove_item(LAST_ROOM_KEY)
        self.refresh_output()
        self.refresh_rooms()
        try:
            return await self.view.run_async()
        finally:
            await self.orchestrator.cancel_room(self.current_room)
            await self.orchestrator.drain()
            if self._room_unsubscribe is not None:
                self._room_unsubscribe()

    def run(self) -> None:
        try:
            asyncio.run(self.run_async())
        except KeyboardInterrupt:
            pass


def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")
    ChatApp().run()


if __name__ == "__main__":
    main()
