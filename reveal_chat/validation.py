import re

from reveal_chat.constants import (
    ID_PATTERN,
    MESSAGE_MAX_LENGTH,
    MESSAGE_MAX_NEWLINES,
    NEW_ROOM_KEY,
    SUPPORTED_MODELS,
)
from reveal_chat.errors import ValidationError

_ID_RE = re.compile(ID_PATTERN)


class MessageValidator:
    def __init__(
        self,
        max_length: int = MESSAGE_MAX_LENGTH,
        max_newlines: int = MESSAGE_MAX_NEWLINES,
    ):
        self.max_length = max_length
        self.max_newlines = max_newlines

    def validate_content(self, content: str) -> str:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Message content cannot be empty.")
        if len(content) > self.max_length:
            raise ValidationError(
                f"Message content is too long. "
                f"Maximum {self.max_length} characters allowed."
            )
        if content.count("\n") > self.max_newlines:
            raise ValidationError("Message contains too many line breaks.")
        return self.normalize_content(content)

    def normalize_content(self, content: str) -> str:
        normalized = content.strip().replace("\r\n", "\n")
        normalized = re.sub(r"[ \t]+\n", "\n", normalized)
        return re.sub(r"\n{3,}", "\n\n", normalized)

    def validate_identifier(self, value: str, label: str = "ID") -> str:
        candidate = str(value or "").strip()
        if not candidate:
            raise ValidationError(f"{label} cannot be empty.")
        if not _ID_RE.match(candidate):
            raise ValidationError(f"Invalid {label} format.")
        return candidate

    def validate_room_key(self, room_key: str) -> str:
        if room_key == NEW_ROOM_KEY:
            return room_key
        return self.validate_identifier(room_key, "Room ID")

    def validate_model(self, model: str) -> str:
        candidate = str(model or "").strip()
        if not candidate:
            raise ValidationError("Model cannot be empty.")
        known = {name for names in SUPPORTED_MODELS.values() for name in names}
        if candidate in known:
            return candidate
        if candidate.startswith(("gpt-", "o1", "o3", "o4", "gemini-")):
            return candidate
        raise ValidationError(f"Unsupported model '{candidate}'.")
