from reveal_chat.providers.base import ProviderClient
from reveal_chat.providers.gemini import GeminiClient
from reveal_chat.providers.http import ProviderHTTPError
from reveal_chat.providers.openai import OpenAIClient

__all__ = ["ProviderClient", "ProviderHTTPError", "GeminiClient", "OpenAIClient"]
