from collections.abc import Callable
from typing import Any

GEMINI_API_ROOT = "https://generativelanguage.googleapis.com/v1beta/models"

_ROLE_NAMES = {"assistant": "model", "user": "user"}


def to_gemini_contents(
    messages: list[dict[str, str]],
) -> tuple[list[dict[str, Any]], str]:
    """Split chat messages into Gemini `contents` plus one system instruction.

    Gemini has no system role inside `contents`, so system messages are joined
    and sent separately.
    """
    system_text = "\n\n".join(
        m.get("content", "") for m in messages if m.get("role") == "system"
    )
    contents = [
        {
            "role": _ROLE_NAMES.get(m.get("role", "user"), "user"),
            "parts": [{"text": m.get("content", "")}],
        }
        for m in messages
        if m.get("role") != "system"
    ]
    return contents, system_text


def candidate_text(data: dict[str, Any]) -> str:
    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        feedback = data.get("promptFeedback") or {}
        blocked = feedback.get("blockReason") if isinstance(feedback, dict) else None
        suffix = f" (blocked: {blocked})" if blocked else ""
        raise RuntimeError(f"Gemini returned no candidates{suffix}.")
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    text = "".join(
        str(part["text"])
        for part in parts or []
        if isinstance(part, dict) and part.get("text")
    ).strip()
    if not text:
        raise RuntimeError("Gemini response did not contain text.")
    return text


class GeminiClient:
    def __init__(self, api_root: str = GEMINI_API_ROOT):
        self.api_root = api_root.rstrip("/")

    def endpoint(self, model: str) -> str:
        return f"{self.api_root}/{model}:generateContent"

    def generate(
        self,
        *,
        api_key: str,
        model: str,
        messages: list[dict[str, str]],
        post_json_request: Any,
    ) -> str:
        contents, system_text = to_gemini_contents(messages)
        payload: dict[str, Any] = {"contents": contents}
        if system_text:
            payload["systemInstruction"] = {"parts": [{"text": system_text}]}
        data = post_json_request(
            self.endpoint(model), {"x-goog-api-key": api_key}, payload
        )
        return candidate_text(data)

    def generate_stream(
        self,
        *,
        api_key: str,
        model: str,
        messages: list[dict[str, str]],
        on_token: Callable[[str], None],
    ) -> str:
        try:
            from google import genai  # type: ignore[import-not-found]
        except ImportError as exc:
            raise RuntimeError(
                "Streaming replies need the optional 'google-genai' package."
            ) from exc

        contents, system_text = to_gemini_contents(messages)
        request: dict[str, Any] = {"model": model, "contents": contents}
        if system_text:
            request["config"] = {"system_instruction": system_text}
        received: list[str] = []
        client = genai.Client(api_key=api_key)
        for chunk in client.models.generate_content_stream(**request):
            piece = getattr(chunk, "text", None)
            if isinstance(piece, str) and piece:
                received.append(piece)
                on_token(piece)
        answer = "".join(received).strip()
        if not answer:
            raise RuntimeError("Gemini stream produced no text.")
        return answer
