from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from prompt_toolkit.application import Application
from prompt_toolkit.document import Document
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.layout.containers import (
    Float,
    FloatContainer,
    HSplit,
    VSplit,
    Window,
)
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.layout import Layout
from prompt_toolkit.layout.menus import CompletionsMenu
from prompt_toolkit.widgets import Frame, TextArea

from reveal_chat.models import Message, MessageState, Role, RoomState
from reveal_chat.ui import ChatLexer, SlashCompleter

if TYPE_CHECKING:
    from chat import ChatApp

LINE_RE = re.compile(r"^\((\d+)\) \[(\d{2}:\d{2}:\d{2})\] ([^:]+): (.*)$")
SYSTEM_LINE_RE = re.compile(r"^\[(\d{2}:\d{2}:\d{2})\] system: (.*)$")

SPEAKER_COLORS = {
    "you": "fg:#55ffff bold",
    "assistant": "fg:#88ff88 bold",
    "system": "fg:#ffff55 bold",
}
REVEAL_CURSOR = "▌"


def format_time(created_at: str) -> str:
    try:
        return datetime.fromisoformat(created_at).strftime("%H:%M:%S")
    except ValueError:
        return "--:--:--"


def format_message(message: Message, index: int) -> str:
    speaker = "you" if message.role == Role.USER else message.role.value
    body = message.visible_content
    if message.state == MessageState.LOADING_INDICATOR:
        body = "..."
    elif message.state in (MessageState.ANIMATING, MessageState.STREAMING):
        body = f"{body}{REVEAL_CURSOR}"
    elif message.state in (MessageState.PENDING, MessageState.PERSISTING_USER):
        body = f"{body} (sending)"
    elif message.state == MessageState.ERROR:
        reason = message.error or "Failed."
        body = f"{body} [error] {reason}" if body else f"[error] {reason}"
    body = body.replace("\n", "\n    ")
    return f"({index}) [{format_time(message.created_at)}] {speaker}: {body}"


def visible_messages(state: RoomState | None) -> list[Message]:
    if state is None:
        return []
    return [m for m in state.messages if m.state != MessageState.DELETED]


def render_room(state: RoomState | None) -> list[str]:
    return [
        format_message(message, idx + 1)
        for idx, message in enumerate(visible_messages(state))
    ]


def lex_line(line_text: str) -> list[tuple[str, str]]:
    match = LINE_RE.match(line_text)
    if match:
        index, ts, speaker, body = match.groups()
        body_style = ""
        if "[error]" in body:
            body_style = "class:msg-error"
        elif body.endswith("(sending)") or body == "...":
            body_style = "class:msg-pending"
        return [
            ("class:timestamp", f"({index}) [{ts}] "),
            (SPEAKER_COLORS.get(speaker, "fg:white bold"), speaker),
            ("", ": "),
            (body_style, body),
        ]
    system_match = SYSTEM_LINE_RE.match(line_text)
    if system_match:
        ts, body = system_match.groups()
        return [
            ("class:timestamp", f"[{ts}] "),
            (SPEAKER_COLORS["system"], "system"),
            ("fg:#bbbbbb", f": {body}"),
        ]
    return [("", line_text)]


class PromptToolkitView:
    """Full-screen layout: transcript and room sidebar above a one-line input."""

    def __init__(self, app: "ChatApp", on_submit: Callable[[str], None]):
        self.app = app
        self.on_submit = on_submit
        self.transcript = TextArea(
            style="class:chat-area",
            lexer=ChatLexer(app),
            focusable=False,
            wrap_lines=True,
        )
        self.prompt = TextArea(
            prompt="> ",
            height=3,
            multiline=False,
            style="class:input-area",
            completer=SlashCompleter(app),
            complete_while_typing=True,
        )
        self.sidebar = FormattedTextControl(focusable=False)
        self.application: Any = Application(
            layout=Layout(self._build_layout(), focused_element=self.prompt),
            key_bindings=self._build_bindings(),
            style=app.get_style(),
            full_screen=True,
            mouse_support=True,
        )

    def _build_layout(self) -> FloatContainer:
        body = VSplit(
            [
                Frame(self.transcript, title="Conversation"),
                Frame(
                    Window(self.sidebar, width=34, style="class:sidebar"),
                    title="Rooms",
                ),
            ]
        )
        menu = Float(
            xcursor=True,
            ycursor=True,
            content=CompletionsMenu(max_height=12, scroll_offset=1),
        )
        return FloatContainer(
            HSplit([body, Frame(self.prompt, title="Message  (/help, Esc cancels)")]),
            floats=[menu],
        )

    def _build_bindings(self) -> KeyBindings:
        bindings = KeyBindings()

        @bindings.add("enter")
        def _send(_event: Any) -> None:
            text, self.prompt.text = self.prompt.text, ""
            self.on_submit(text)

        @bindings.add("tab")
        def _tab(event: Any) -> None:
            buffer = event.current_buffer
            state = buffer.complete_state
            if state is None:
                buffer.start_completion(select_first=True)
                return
            choice = state.current_completion or next(iter(state.completions), None)
            if choice is not None:
                buffer.apply_completion(choice)

        @bindings.add("escape", eager=True)
        def _cancel(_event: Any) -> None:
            self.app.cancel_current_reply()

        @bindings.add("c-c")
        @bindings.add("c-d")
        def _quit(event: Any) -> None:
            event.app.exit()

        return bindings

    def show_lines(self, lines: list[str]) -> None:
        text = "\n".join(lines)
        self.transcript.buffer.set_document(
            Document(text, cursor_position=len(text)), bypass_readonly=True
        )
        self.invalidate()

    def show_sidebar(self, fragments: list[tuple[str, str]]) -> None:
        self.sidebar.text = fragments
        self.invalidate()

    def invalidate(self) -> None:
        self.application.invalidate()

    async def run_async(self) -> Any:
        return await self.application.run_async()

    def exit(self, result: str | None = None) -> None:
        if self.application.is_running:
            self.application.exit(result=result)
