from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from reveal_chat.constants import KV_STORE_FILE

logger = logging.getLogger(__name__)


class KeyValueRepository:
    def __init__(self, path: str | Path = KV_STORE_FILE):
        self.path = Path(path)

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load key-value store %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, payload: dict[str, Any]) -> bool:
        try:
            os.makedirs(self.path.parent, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            return True
        except OSError as exc:
            logger.warning("Failed saving key-value store %s: %s", self.path, exc)
            return False

    def get_item(self, key: str) -> Any:
        return self._load().get(key)

    def set_item(self, key: str, value: Any) -> bool:
        data = self._load()
        data[key] = value
        return self._save(data)

    def remove_item(self, key: str) -> bool:
        data = self._load()
        if key not in data:
            return True
        data.pop(key)
        return self._save(data)
