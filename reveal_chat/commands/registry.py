from typing import TYPE_CHECKING, Any

from reveal_chat.constants import NEW_ROOM_KEY, SUPPORTED_MODELS
from reveal_chat.errors import ChatError
from reveal_chat.repositories.message_repository import describe_store
from reveal_chat.ui import COMMANDS

if TYPE_CHECKING:
    from chat import ChatApp


class CommandRegistry:
    def __init__(self, app: "ChatApp"):
        self.app = app

    def build(self) -> dict[str, Any]:
        return {
            "/new": self.command_new,
            "/rooms": self.command_rooms,
            "/join": self.command_join,
            "/room": self.command_room,
            "/model": self.command_model,
            "/regen": self.command_regen,
            "/delete": self.command_delete,
            "/cancel": self.command_cancel,
            "/deleteroom": self.command_deleteroom,
            "/status": self.command_status,
            "/clear": self.command_clear,
            "/help": self.command_help,
            "/exit": self.command_exit,
            "/quit": self.command_exit,
        }

    def command_new(self, _args: str) -> None:
        self.app.switch_room(NEW_ROOM_KEY)

    def command_rooms(self, _args: str) -> None:
        self.app.run_background(
            self.app.orchestrator.list_rooms(self.app.session),
            on_done=self.app.show_rooms,
        )

    def command_join(self, args: str) -> None:
        if not args.strip():
            self.app.append_system_message("Usage: /join <room-id>")
            return
        self.app.switch_room(args.strip())

    def command_room(self, _args: str) -> None:
        state = self.app.current_state()
        if self.app.current_room == NEW_ROOM_KEY:
            self.app.append_system_message(
                f"New conversation (model {self.app.current_model()})."
            )
            return
        name = state.name if state is not None and state.name else "untitled"
        self.app.append_system_message(
            f"Room {self.app.current_room}: {name} (model {self.app.current_model()})"
        )

    def command_model(self, args: str) -> None:
        target = args.strip()
        if not target:
            available = ", ".join(
                name for names in SUPPORTED_MODELS.values() for name in names
            )
            self.app.append_system_message(
                f"Model: {self.app.current_model()}. Available: {available}"
            )
            return
        try:
            model = self.app.select_model(target)
        except ChatError as exc:
            self.app.append_system_message(f"Error: {exc.reason}")
            return
        self.app.append_system_message(f"Model set to {model}.")

    def command_regen(self, args: str) -> None:
        message = self.app.find_message(args.strip(), assistant_default=True)
        if message is None:
            self.app.append_system_message("Usage: /regen [message-number]")
            return
        try:
            started = self.app.orchestrator.regenerate(message.local_id)
        except ChatError as exc:
            self.app.append_system_message(f"Error: {exc.reason}")
            return
        if not started:
            self.app.append_system_message("A regeneration is already pending.")

    def command_delete(self, args: str) -> None:
        message = self.app.find_message(args.strip())
        if message is None:
            self.app.append_system_message("Usage: /delete <message-number>")
            return
        self.app.run_background(
            self.app.orchestrator.delete_message(message.local_id, self.app.session),
            on_done=lambda _deleted: self.app.append_system_message(
                "Message deleted."
            ),
        )

    def command_cancel(self, _args: str) -> None:
        self.app.cancel_current_reply()

    def command_deleteroom(self, args: str) -> None:
        target = args.strip() or self.app.current_room
        if target == NEW_ROOM_KEY:
            self.app.append_system_message("Nothing to delete yet.")
            return

        def done(deleted: bool) -> None:
            if not deleted:
                self.app.append_system_message(f"Room {target} was already gone.")
                return
            if self.app.current_room == target:
                self.app.switch_room(NEW_ROOM_KEY)
            self.app.append_system_message(f"Room {target} deleted.")
            self.app.refresh_rooms()

        self.app.run_background(
            self.app.orchestrator.delete_room(target, self.app.session),
            on_done=done,
        )

    def command_status(self, _args: str) -> None:
        store = describe_store(self.app.orchestrator.persistence.store)
        counters = self.app.metrics.snapshot()
        summary = ", ".join(f"{k}={v}" for k, v in sorted(counters.items()))
        self.app.append_system_message(f"Store: {store}. {summary or 'No activity.'}")

    def command_clear(self, _args: str) -> None:
        self.app.system_lines = []
        self.app.refresh_output()

    def command_help(self, _args: str) -> None:
        lines = [f"{cmd} - {desc}" for cmd, desc in COMMANDS]
        self.app.append_system_message("Commands: " + " | ".join(lines))

    def command_exit(self, _args: str) -> None:
        self.app.view.exit()
