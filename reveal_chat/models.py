from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from reveal_chat.constants import (
    ANIMATION_ADAPTIVE_THRESHOLD,
    ANIMATION_DEFAULT_CHUNK_SIZE,
    ANIMATION_DEFAULT_TICK_MS,
    ANIMATION_FRAME_BUDGET_MS,
    ANIMATION_MAX_CHUNK_SIZE,
    ANIMATION_MIN_CHUNK_SIZE,
    ANIMATION_TARGET_DURATION_MS,
    CONTEXT_TOKEN_BUDGET,
    DEFAULT_MODEL,
    LOCAL_ID_LENGTH,
    LOCAL_ROOMS_ROOT,
    NEW_ROOM_KEY,
    RATE_LIMIT_BACKOFF_MULTIPLIER,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_DELAY_INCREMENT_SECONDS,
    SEND_MAX_ATTEMPTS,
    STALE_READ_POLL_ATTEMPTS,
    STALE_READ_POLL_DELAY_SECONDS,
)


def now_iso() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def new_local_id() -> str:
    return uuid4().hex[:LOCAL_ID_LENGTH]


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    PENDING = "pending"
    PERSISTING_USER = "persistingUser"
    AWAITING_MODEL = "awaitingModel"
    STREAMING = "streaming"
    LOADING_INDICATOR = "loadingIndicator"
    ANIMATING = "animating"
    COMPLETED = "completed"
    ERROR = "error"
    DELETED = "deleted"


TERMINAL_STATES = frozenset(
    {
        MessageState.IDLE,
        MessageState.COMPLETED,
        MessageState.ERROR,
        MessageState.DELETED,
    }
)


def is_terminal(state: MessageState) -> bool:
    return state in TERMINAL_STATES


class ErrorKind(str, Enum):
    NETWORK = "network"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    RATE_LIMITED = "rateLimited"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {ErrorKind.NETWORK, ErrorKind.RATE_LIMITED, ErrorKind.UNKNOWN}
)


class Session(BaseModel):
    user_id: str
    access_token: str = ""


class Message(BaseModel):
    model_config = ConfigDict(extra="ignore")

    local_id: str = Field(default_factory=new_local_id)
    remote_id: str | None = None
    room_id: str
    role: Role
    content: str = ""
    state: MessageState = MessageState.IDLE
    created_at: str = Field(default_factory=now_iso)
    user_id: str = ""
    turn_id: str = ""
    generation: int = 0
    revealed_length: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None

    @property
    def visible_content(self) -> str:
        if self.state in (MessageState.ANIMATING, MessageState.STREAMING):
            return self.content[: self.revealed_length]
        return self.content

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        return cls(**data)


class Room(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    model: str = DEFAULT_MODEL
    name: str = ""
    last_message: str = ""
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)
    deleted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class RoomState(BaseModel):
    room_key: str = NEW_ROOM_KEY
    room_id: str | None = None
    model: str = DEFAULT_MODEL
    name: str = ""
    messages: list[Message] = Field(default_factory=list)
    phase: MessageState = MessageState.IDLE
    active_turn_id: str | None = None
    created_room_id: str | None = None
    updated_at: str = Field(default_factory=now_iso)

    def find(self, local_id: str) -> Message | None:
        for message in self.messages:
            if message.local_id == local_id or message.remote_id == local_id:
                return message
        return None

    def in_flight(self) -> list[Message]:
        return [m for m in self.messages if not is_terminal(m.state)]


class ContextMessage(BaseModel):
    role: Role
    content: str


class RoomContext(BaseModel):
    room_id: str
    model: str
    messages: list[ContextMessage] = Field(default_factory=list)
    estimated_tokens: int = 0

    def to_payload(self) -> list[dict[str, str]]:
        return [{"role": m.role.value, "content": m.content} for m in self.messages]


class ClassifiedError(BaseModel):
    kind: ErrorKind
    reason: str
    retryable: bool
    status: int | None = None


class RetryContext(BaseModel):
    generation: int
    max_attempts: int = SEND_MAX_ATTEMPTS
    attempts: int = 0
    failures: int = 0
    last_error: ClassifiedError | None = None
    next_delay: float = 0.0
    delays: list[float] = Field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.failures >= self.max_attempts


class AnimationSchedule(BaseModel):
    total_length: int
    chunk_size: int
    tick_interval_ms: float
    total_ticks: int
    revealed_length: int = 0
    generation: int = 0

    @property
    def planned_duration_ms(self) -> float:
        return self.total_ticks * self.tick_interval_ms

    @property
    def done(self) -> bool:
        return self.revealed_length >= self.total_length


class OrchestratorSettings(BaseModel):
    max_attempts: int = SEND_MAX_ATTEMPTS
    retry_base_delay: float = RETRY_BASE_DELAY_SECONDS
    retry_delay_increment: float = RETRY_DELAY_INCREMENT_SECONDS
    rate_limit_multiplier: float = RATE_LIMIT_BACKOFF_MULTIPLIER
    context_token_budget: int = CONTEXT_TOKEN_BUDGET
    system_prompt: str = ""


class PersistenceSettings(BaseModel):
    poll_attempts: int = STALE_READ_POLL_ATTEMPTS
    poll_delay: float = STALE_READ_POLL_DELAY_SECONDS


class AnimationSettings(BaseModel):
    default_chunk_size: int = ANIMATION_DEFAULT_CHUNK_SIZE
    default_tick_ms: float = ANIMATION_DEFAULT_TICK_MS
    adaptive_threshold: int = ANIMATION_ADAPTIVE_THRESHOLD
    target_duration_ms: float = ANIMATION_TARGET_DURATION_MS
    min_chunk_size: int = ANIMATION_MIN_CHUNK_SIZE
    max_chunk_size: int = ANIMATION_MAX_CHUNK_SIZE
    frame_budget_ms: float = ANIMATION_FRAME_BUDGET_MS


class AIProviderConfig(BaseModel):
    api_key: str = ""
    streaming: bool = False


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    user_id: str = "local-user"
    data_dir: str = LOCAL_ROOMS_ROOT
    store: str = "file"
    default_model: str = DEFAULT_MODEL
    providers: dict[str, AIProviderConfig] = Field(
        default_factory=lambda: {
            "openai": AIProviderConfig(),
            "gemini": AIProviderConfig(),
        }
    )
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    animation: AnimationSettings = Field(default_factory=AnimationSettings)


class SubmitResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    room_key: str
    turn_id: str
    user_message_id: str
    assistant_message_id: str
    task: Any = None

