from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError as SchemaValidationError

from reveal_chat.constants import AI_CONFIG_FILE, CONFIG_FILE
from reveal_chat.models import AIProviderConfig, AppConfig

logger = logging.getLogger(__name__)

API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


class ConfigRepository:
    def __init__(
        self,
        config_file: str | Path = CONFIG_FILE,
        ai_config_file: str | Path = AI_CONFIG_FILE,
    ):
        self.config_file = Path(config_file)
        self.ai_config_file = Path(ai_config_file)

    def _read_json(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to load config from %s: %s", path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def load_config(self) -> AppConfig:
        data = self._read_json(self.config_file)
        ai_data = self._read_json(self.ai_config_file)
        providers = ai_data.get("providers", {})
        if isinstance(providers, dict) and providers:
            data["providers"] = providers
        try:
            config = AppConfig(**data)
        except SchemaValidationError as exc:
            logger.warning(
                "Invalid config in %s, using defaults: %s", self.config_file, exc
            )
            config = AppConfig()
        for provider_name, env_var in API_KEY_ENV_VARS.items():
            env_key = os.environ.get(env_var, "").strip()
            provider = config.providers.setdefault(provider_name, AIProviderConfig())
            if env_key:
                provider.api_key = env_key
        return config

    def save_config(self, config: AppConfig) -> None:
        payload = config.model_dump(mode="json", exclude={"providers"})
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)

    def save_ai_config(self, config: AppConfig) -> None:
        try:
            os.makedirs(self.ai_config_file.parent, exist_ok=True)
            payload = {
                "providers": {
                    name: provider.model_dump(mode="json")
                    for name, provider in config.providers.items()
                }
            }
            with open(self.ai_config_file, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
        except OSError as exc:
            logger.warning("Failed saving AI config: %s", exc)
