from reveal_chat.models import Message, MessageState, Role, RoomState
from reveal_chat.view import format_message, lex_line, render_room

STAMP = "2026-01-01T10:00:00.000"


def _message(role: Role, state: MessageState, content: str = "", **extra) -> Message:
    return Message(
        room_id="r1",
        role=role,
        state=state,
        content=content,
        created_at=STAMP,
        **extra,
    )


def test_format_message_by_state():
    assert (
        format_message(_message(Role.USER, MessageState.PENDING, "hi"), 1)
        == "(1) [10:00:00] you: hi (sending)"
    )
    assert (
        format_message(_message(Role.ASSISTANT, MessageState.LOADING_INDICATOR), 2)
        == "(2) [10:00:00] assistant: ..."
    )
    animating = _message(
        Role.ASSISTANT, MessageState.ANIMATING, "Hello world", revealed_length=5
    )
    assert format_message(animating, 2) == "(2) [10:00:00] assistant: Hello▌"
    failed = _message(Role.ASSISTANT, MessageState.ERROR, error="Boom")
    assert format_message(failed, 3) == "(3) [10:00:00] assistant: [error] Boom"
    multiline = _message(Role.ASSISTANT, MessageState.COMPLETED, "a\nb")
    assert format_message(multiline, 4) == "(4) [10:00:00] assistant: a\n    b"


def test_render_room_skips_deleted_messages():
    state = RoomState(
        messages=[
            _message(Role.USER, MessageState.DELETED, "gone"),
            _message(Role.USER, MessageState.COMPLETED, "kept"),
        ]
    )

    assert render_room(state) == ["(1) [10:00:00] you: kept"]
    assert render_room(None) == []


def test_lex_line_styles():
    fragments = lex_line("(2) [10:00:00] assistant: [error] Boom")
    assert fragments[0] == ("class:timestamp", "(2) [10:00:00] ")
    assert fragments[1] == ("fg:#88ff88 bold", "assistant")
    assert fragments[-1] == ("class:msg-error", "[error] Boom")

    assert lex_line("(1) [10:00:00] you: hi (sending)")[-1][0] == "class:msg-pending"
    assert lex_line("(2) [10:00:00] assistant: ...")[-1][0] == "class:msg-pending"

    system = lex_line("[10:00:00] system: Model set to gpt-4o.")
    assert system[1] == ("fg:#ffff55 bold", "system")
    assert system[2] == ("fg:#bbbbbb", ": Model set to gpt-4o.")

    assert lex_line("    continuation") == [("", "    continuation")]
