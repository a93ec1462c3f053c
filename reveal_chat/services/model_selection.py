from __future__ import annotations

import logging
from collections.abc import Callable

from reveal_chat.constants import DEFAULT_MODEL, SELECTED_MODEL_KEY
from reveal_chat.errors import ValidationError
from reveal_chat.repositories.interfaces import KeyValueRepositoryProtocol
from reveal_chat.state_store import KeyedStateStore
from reveal_chat.validation import MessageValidator

logger = logging.getLogger(__name__)


class ModelSelectionService:
    """Per-room model choice, remembered across sessions for the next room."""

    def __init__(
        self,
        kv: KeyValueRepositoryProtocol,
        default_model: str = DEFAULT_MODEL,
        validator: MessageValidator | None = None,
        store: KeyedStateStore[str] | None = None,
    ):
        self.kv = kv
        self.default_model = default_model
        self.validator = validator or MessageValidator()
        self.store = store or KeyedStateStore[str](
            default_factory=lambda _key: self.preferred_model()
        )

    def preferred_model(self) -> str:
        saved = self.kv.get_item(SELECTED_MODEL_KEY)
        if isinstance(saved, str) and saved.strip():
            try:
                return self.validator.validate_model(saved)
            except ValidationError:
                logger.warning("Ignoring unsupported saved model '%s'", saved)
        return self.default_model

    def model_for(self, room_key: str) -> str:
        return self.store.get(room_key) or self.default_model

    def select(self, room_key: str, model: str) -> str:
        model = self.validator.validate_model(model)
        self.store.set(room_key, model)
        if not self.kv.set_item(SELECTED_MODEL_KEY, model):
            logger.warning("Could not remember model selection '%s'", model)
        return model

    def subscribe(
        self, room_key: str, listener: Callable[[str, str], None]
    ) -> Callable[[], None]:
        return self.store.subscribe(room_key, listener)
