import os

CONFIG_FILE = "chat_config.json"
LOCAL_CHAT_ROOT = ".local_chat"
AI_CONFIG_FILE = os.path.join(LOCAL_CHAT_ROOT, "ai_config.json")
KV_STORE_FILE = os.path.join(LOCAL_CHAT_ROOT, "kv_store.json")
LOCAL_ROOMS_ROOT = os.path.join(LOCAL_CHAT_ROOT, "rooms")

NEW_ROOM_KEY = "__new__"
DEFAULT_MODEL = "gpt-3.5-turbo"
SUPPORTED_MODELS = {
    "openai": [
        "gpt-3.5-turbo",
        "gpt-4",
        "gpt-4-turbo",
        "gpt-4o",
        "gpt-4o-mini",
    ],
    "gemini": ["gemini-2.5-flash", "gemini-2.5-pro"],
}
ROOM_NAME_MAX_LENGTH = 50
SELECTED_MODEL_KEY = "selected_model"
LAST_ROOM_KEY = "last_room"

MESSAGE_MAX_LENGTH = 10000
MESSAGE_MAX_NEWLINES = 50
ID_PATTERN = r"^[a-zA-Z0-9_-]+$"
LOCAL_ID_LENGTH = 16

SEND_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY_SECONDS = 1.0
RETRY_DELAY_INCREMENT_SECONDS = 1.0
RATE_LIMIT_BACKOFF_MULTIPLIER = 2.0

STALE_READ_POLL_ATTEMPTS = 10
STALE_READ_POLL_DELAY_SECONDS = 0.5

CONTEXT_TOKEN_BUDGET = 3000
CHARS_PER_TOKEN = 4
MESSAGE_TOKEN_OVERHEAD = 4
MODEL_COST_PER_1K_TOKENS = {
    "gpt-3.5-turbo": 0.0015,
    "gpt-4": 0.03,
    "gpt-4-turbo": 0.01,
    "gpt-4o": 0.005,
    "gpt-4o-mini": 0.00015,
}

ANIMATION_DEFAULT_CHUNK_SIZE = 5
ANIMATION_DEFAULT_TICK_MS = 16.0
ANIMATION_ADAPTIVE_THRESHOLD = 600
ANIMATION_TARGET_DURATION_MS = 2500.0
ANIMATION_MIN_CHUNK_SIZE = 3
ANIMATION_MAX_CHUNK_SIZE = 40
ANIMATION_FRAME_BUDGET_MS = 16.0

AI_HTTP_TIMEOUT_SECONDS = 45
LOCK_TIMEOUT_SECONDS = 2.0
LOCK_MAX_ATTEMPTS = 20
LOCK_BACKOFF_BASE_SECONDS = 0.05
LOCK_BACKOFF_MAX_SECONDS = 0.5
STORE_SCHEMA_VERSION = 1
STORE_ALLOWED_OPS = ("upsert", "delete")
MAX_HISTORY_MESSAGES = 200

THEMES = {
    "default": {
        "chat-area": "bg:#000000 #ffffff",
        "input-area": "bg:#222222 #ffffff",
        "sidebar": "bg:#111111 #88ff88",
        "frame.label": "bg:#0000aa #ffffff bold",
        "status": "bg:#004400 #ffffff",
        "completion-menu": "bg:#333333 #ffffff",
        "completion-menu.completion.current": "bg:#00aaaa #000000",
        "msg-error": "fg:#ff5555 bold",
        "msg-pending": "fg:#888888 italic",
        "timestamp": "fg:#888888",
    },
}
