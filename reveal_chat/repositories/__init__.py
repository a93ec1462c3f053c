from reveal_chat.repositories.config_repository import ConfigRepository
from reveal_chat.repositories.interfaces import (
    KeyValueRepositoryProtocol,
    MessageStoreProtocol,
)
from reveal_chat.repositories.kv_repository import KeyValueRepository
from reveal_chat.repositories.memory_store import InMemoryMessageStore
from reveal_chat.repositories.message_repository import FileMessageStore

__all__ = [
    "ConfigRepository",
    "FileMessageStore",
    "InMemoryMessageStore",
    "KeyValueRepository",
    "KeyValueRepositoryProtocol",
    "MessageStoreProtocol",
]
