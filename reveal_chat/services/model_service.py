from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol

from reveal_chat.constants import SUPPORTED_MODELS
from reveal_chat.errors import TerminalError, ValidationError
from reveal_chat.models import AppConfig, ErrorKind, RoomContext
from reveal_chat.providers import ProviderClient
from reveal_chat.providers.http import post_json_request

logger = logging.getLogger(__name__)


class ModelClient(Protocol):
    async def complete(
        self,
        context: RoomContext,
        model: str,
        on_token: Callable[[str], None] | None = None,
    ) -> str:
        pass


class ModelService:
    def __init__(
        self,
        config: AppConfig,
        clients: dict[str, ProviderClient],
        post_json: Callable[..., dict[str, Any]] = post_json_request,
    ):
        self.config = config
        self.clients = clients
        self.post_json = post_json

    def provider_for_model(self, model: str) -> str:
        for provider, models in SUPPORTED_MODELS.items():
            if model in models:
                return provider
        if model.startswith("gemini"):
            return "gemini"
        if model.startswith(("gpt-", "o1", "o3", "o4")):
            return "openai"
        raise ValidationError(f"Unsupported model '{model}'.")

    def is_streaming_enabled(self, provider: str) -> bool:
        provider_cfg = self.config.providers.get(provider)
        return bool(provider_cfg and provider_cfg.streaming)

    def resolve_api_key(self, provider: str) -> str:
        provider_cfg = self.config.providers.get(provider)
        api_key = provider_cfg.api_key.strip() if provider_cfg else ""
        if not api_key:
            raise TerminalError(
                f"Provider '{provider}' is missing API key.", ErrorKind.AUTHORIZATION
            )
        return api_key

    async def complete(
        self,
        context: RoomContext,
        model: str,
        on_token: Callable[[str], None] | None = None,
    ) -> str:
        provider = self.provider_for_model(model)
        client = self.clients.get(provider)
        if client is None:
            raise ValidationError(f"Unsupported provider '{provider}'.")
        api_key = self.resolve_api_key(provider)
        messages = context.to_payload()
        logger.info(
            "Model call provider=%s model=%s messages=%s tokens~%s",
            provider,
            model,
            len(messages),
            context.estimated_tokens,
        )
        if on_token is not None and self.is_streaming_enabled(provider):
            return await asyncio.to_thread(
                lambda: client.generate_stream(
                    api_key=api_key,
                    model=model,
                    messages=messages,
                    on_token=on_token,
                )
            )
        return await asyncio.to_thread(
            lambda: client.generate(
                api_key=api_key,
                model=model,
                messages=messages,
                post_json_request=self.post_json,
            )
        )
