from collections.abc import Callable
from typing import Any

OPENAI_CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"


def completion_text(data: dict[str, Any]) -> str:
    """Pull the first choice's text out of a chat completions body."""
    choices = data.get("choices")
    first = choices[0] if isinstance(choices, list) and choices else None
    if not isinstance(first, dict):
        raise RuntimeError("OpenAI returned no choices.")
    message = first.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    text = content.strip() if isinstance(content, str) else ""
    if not text:
        reason = first.get("finish_reason") or "unknown"
        raise RuntimeError(f"OpenAI response was empty (finish_reason={reason}).")
    return text


def stream_delta_text(event: Any) -> str:
    choices = getattr(event, "choices", None) or []
    if not choices:
        return ""
    content = getattr(getattr(choices[0], "delta", None), "content", None)
    return content if isinstance(content, str) else ""


class OpenAIClient:
    def __init__(self, url: str = OPENAI_CHAT_COMPLETIONS_URL):
        self.url = url

    def generate(
        self,
        *,
        api_key: str,
        model: str,
        messages: list[dict[str, str]],
        post_json_request: Any,
    ) -> str:
        data = post_json_request(
            self.url,
            {"Authorization": f"Bearer {api_key}"},
            {"model": model, "messages": messages},
        )
        return completion_text(data)

    def generate_stream(
        self,
        *,
        api_key: str,
        model: str,
        messages: list[dict[str, str]],
        on_token: Callable[[str], None],
    ) -> str:
        try:
            from openai import OpenAI  # type: ignore[import-not-found]
        except ImportError as exc:
            raise RuntimeError(
                "Streaming replies need the optional 'openai' package."
            ) from exc

        stream = OpenAI(api_key=api_key).chat.completions.create(
            model=model, messages=messages, stream=True
        )
        received: list[str] = []
        for event in stream:
            piece = stream_delta_text(event)
            if piece:
                received.append(piece)
                on_token(piece)
        answer = "".join(received).strip()
        if not answer:
            raise RuntimeError("OpenAI stream produced no text.")
        return answer
