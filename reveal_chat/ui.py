from collections.abc import Iterable
from typing import TYPE_CHECKING

from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.lexers import Lexer

from reveal_chat.constants import SUPPORTED_MODELS

if TYPE_CHECKING:
    from chat import ChatApp

COMMANDS = [
    ("/new", "Start a new conversation"),
    ("/rooms", "List your conversations"),
    ("/join", "Open a conversation by id (e.g. /join 3f9c...)"),
    ("/room", "Show current conversation"),
    ("/model", "Show or set the model (e.g. /model gpt-4o)"),
    ("/regen", "Regenerate an assistant reply (e.g. /regen 4)"),
    ("/delete", "Delete a message by number (e.g. /delete 3)"),
    ("/cancel", "Cancel the reply in progress"),
    ("/deleteroom", "Delete the current or given conversation"),
    ("/status", "Show storage and delivery stats"),
    ("/clear", "Clear system notices"),
    ("/help", "Show available commands"),
    ("/exit", "Quit the application"),
]

ROOM_ARGUMENT_COMMANDS = ("/join", "/deleteroom")


def _matches(prefix: str, choices: dict[str, str]) -> Iterable[Completion]:
    for value, meta in choices.items():
        if value.startswith(prefix):
            yield Completion(value, -len(prefix), display=value, display_meta=meta)


class SlashCompleter(Completer):
    """Completes command names, then model names or room ids as arguments."""

    def __init__(self, app: "ChatApp"):
        self.app = app

    def argument_choices(self, command: str) -> dict[str, str]:
        if command == "/model":
            return {
                model: provider
                for provider, models in SUPPORTED_MODELS.items()
                for model in models
            }
        if command in ROOM_ARGUMENT_COMMANDS:
            return {room.id: room.name or "" for room in self.app.room_index}
        return {}

    def get_completions(self, document, complete_event):
        text = document.text_before_cursor
        if not text.startswith("/"):
            return
        command, space, argument = text.partition(" ")
        if space:
            choices = self.argument_choices(command.lower())
            yield from _matches(argument.lstrip(), choices)
            return
        yield from _matches(command.lower(), dict(COMMANDS))


class ChatLexer(Lexer):
    def __init__(self, app: "ChatApp"):
        self.app = app

    def lex_document(self, document):
        lines = document.lines

        def styled(line_number):
            if line_number >= len(lines):
                return []
            return self.app.lex_line(lines[line_number])

        return styled
