from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, TypeVar

from reveal_chat.constants import DEFAULT_MODEL, NEW_ROOM_KEY
from reveal_chat.errors import (
    AccessDenied,
    InFlightError,
    NotFound,
    SendFailed,
    StaleReadTimeout,
    ValidationError,
)
from reveal_chat.metrics import InMemoryMetrics, MetricsSink
from reveal_chat.models import (
    ClassifiedError,
    ContextMessage,
    ErrorKind,
    Message,
    MessageState,
    OrchestratorSettings,
    RetryContext,
    Role,
    Room,
    RoomContext,
    RoomState,
    Session,
    SubmitResult,
    is_terminal,
    new_local_id,
    now_iso,
)
from reveal_chat.services.animation_service import MessageAnimation
from reveal_chat.services.error_service import MessageErrorHandler
from reveal_chat.services.model_service import ModelClient
from reveal_chat.services.persistence_service import MessagePersistence
from reveal_chat.state_store import KeyedStateStore
from reveal_chat.tokens import TokenEstimator
from reveal_chat.validation import MessageValidator

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_REASON = "Request cancelled."
EMPTY_REPLY_REASON = "Model returned an empty response."


@dataclass
class _Turn:
    turn_id: str
    room_key: str
    session: Session
    user_message_id: str
    assistant_message_id: str
    content: str
    model: str
    retry: RetryContext
    task: asyncio.Task[None] | None = None
    response: str | None = None
    regenerating: bool = False


class MessageOrchestrator:
    def __init__(
        self,
        store: KeyedStateStore[RoomState],
        persistence: MessagePersistence,
        model_client: ModelClient,
        *,
        validator: MessageValidator | None = None,
        token_estimator: TokenEstimator | None = None,
        error_handler: MessageErrorHandler | None = None,
        animation: MessageAnimation | None = None,
        settings: OrchestratorSettings | None = None,
        metrics: MetricsSink | None = None,
        default_model: str = DEFAULT_MODEL,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.store = store
        self.persistence = persistence
        self.model_client = model_client
        self.validator = validator or MessageValidator()
        self.token_estimator = token_estimator or TokenEstimator()
        self.settings = settings or OrchestratorSettings()
        self.error_handler = error_handler or MessageErrorHandler(self.settings)
        self.animation = animation or MessageAnimation()
        self.metrics = metrics or InMemoryMetrics()
        self.default_model = default_model
        self._sleep = sleep or asyncio.sleep
        self._generations: dict[str, int] = {}
        self._turns: dict[str, _Turn] = {}
        self._persist_tasks: dict[str, asyncio.Task[None]] = {}
        self._remote_ids: dict[str, str] = {}
        self._background: set[asyncio.Task[Any]] = set()

    # Public operations

    def submit(self, room_key: str, content: str, session: Session) -> SubmitResult:
        room_key = self.validator.validate_room_key(room_key)
        text = self.validator.validate_content(content)
        if not session.user_id:
            raise AccessDenied("A signed-in session is required to send messages.")
        state = self._room_state(room_key)
        if state.active_turn_id is not None or state.in_flight():
            self.metrics.increment("submit_rejected")
            raise InFlightError(
                f"A message is already being sent in room {room_key}."
            )
        loop = asyncio.get_running_loop()

        turn_id = new_local_id()
        room_id = state.room_id or ("" if room_key == NEW_ROOM_KEY else room_key)
        user_message = Message(
            room_id=room_id,
            role=Role.USER,
            content=text,
            state=MessageState.PENDING,
            user_id=session.user_id,
            turn_id=turn_id,
        )
        assistant_message = Message(
            room_id=room_id,
            role=Role.ASSISTANT,
            state=MessageState.LOADING_INDICATOR,
            user_id=session.user_id,
            turn_id=turn_id,
            generation=1,
        )
        self._generations[assistant_message.local_id] = 1
        self.store.set(
            room_key,
            state.model_copy(
                update={
                    "messages": [*state.messages, user_message, assistant_message],
                    "phase": MessageState.PENDING,
                    "active_turn_id": turn_id,
                    "created_room_id": None,
                    "updated_at": now_iso(),
                }
            ),
        )

        turn = _Turn(
            turn_id=turn_id,
            room_key=room_key,
            session=session,
            user_message_id=user_message.local_id,
            assistant_message_id=assistant_message.local_id,
            content=text,
            model=state.model,
            retry=self._new_retry(1),
        )
        self._turns[assistant_message.local_id] = turn
        turn.task = self._spawn(loop, self._run_send(turn, 1))
        self.metrics.increment("send_started")
        logger.info(
            "Submitted turn %s room=%s model=%s chars=%s",
            turn_id,
            room_key,
            state.model,
            len(text),
        )
        return SubmitResult(
            room_key=room_key,
            turn_id=turn_id,
            user_message_id=user_message.local_id,
            assistant_message_id=assistant_message.local_id,
            task=turn.task,
        )

    def regenerate(self, message_id: str) -> bool:
        located = self._locate(message_id)
        if located is None:
            raise NotFound(f"Message not found: {message_id}")
        room_key, message = located
        if message.role != Role.ASSISTANT:
            raise ValidationError("Only assistant replies can be regenerated.")
        if message.state == MessageState.DELETED:
            raise ValidationError("Deleted messages cannot be regenerated.")

        aid = message.local_id
        live = self._turns.get(aid)
        if live is not None and live.regenerating:
            return False
        state = self.store.require(room_key)
        active = state.active_turn_id
        if active is not None and active != message.turn_id:
            raise InFlightError(f"Another message is in flight in room {room_key}.")
        user_message = self._user_message_for(state, aid)
        if user_message is None:
            return False
        resend = self._needs_resend(user_message, message)
        if not resend and (
            not user_message.remote_id
            or user_message.state != MessageState.COMPLETED
        ):
            return False
        loop = asyncio.get_running_loop()

        generation = self._generations.get(aid, message.generation) + 1
        self._generations[aid] = generation
        if live is not None and live.task is not None and not live.task.done():
            live.task.cancel()
        if message.remote_id:
            self._remote_ids.setdefault(aid, message.remote_id)

        turn = _Turn(
            turn_id=message.turn_id or new_local_id(),
            room_key=room_key,
            session=Session(user_id=message.user_id or user_message.user_id),
            user_message_id=user_message.local_id,
            assistant_message_id=aid,
            content=user_message.content,
            model=state.model,
            retry=self._new_retry(generation),
            regenerating=True,
        )
        self._update_message(
            room_key,
            aid,
            generation,
            allow_terminal=True,
            state=MessageState.LOADING_INDICATOR,
            content="",
            revealed_length=0,
            error=None,
            error_kind=None,
        )
        self._turns[aid] = turn
        if resend:
            # The user message never reached the store; run the whole send again.
            self._update_message(
                room_key,
                user_message.local_id,
                None,
                allow_terminal=True,
                state=MessageState.PENDING,
                error=None,
                error_kind=None,
            )
            self._update_state(
                room_key, active_turn_id=turn.turn_id, phase=MessageState.PENDING
            )
            turn.task = self._spawn(loop, self._run_send(turn, generation))
            self.metrics.increment("resend")
            logger.info(
                "Resending turn %s room=%s generation=%s",
                turn.turn_id,
                room_key,
                generation,
            )
            return True
        self._update_state(
            room_key, active_turn_id=turn.turn_id, phase=MessageState.AWAITING_MODEL
        )
        turn.task = self._spawn(loop, self._run_regeneration(turn, generation))
        self.metrics.increment("regenerate")
        logger.info(
            "Regenerating %s room=%s generation=%s", aid, room_key, generation
        )
        return True

    async def delete_message(self, message_id: str, session: Session) -> Message:
        located = self._locate(message_id)
        if located is None:
            raise NotFound(f"Message not found: {message_id}")
        room_key, message = located
        if not message.user_id or message.user_id != session.user_id:
            raise AccessDenied("You can only delete your own messages.")
        if message.state == MessageState.DELETED:
            return message
        if not is_terminal(message.state):
            raise InFlightError("Message is still being sent.")

        if message.remote_id:
            remote_id = message.remote_id
            await self._with_retry(
                self._new_retry(0),
                lambda: self.persistence.delete_message(remote_id),
                "delete_message",
            )
        self._update_message(
            room_key,
            message.local_id,
            None,
            allow_terminal=True,
            state=MessageState.DELETED,
        )
        self.metrics.increment("message_deleted")
        logger.info("Deleted message %s room=%s", message.local_id, room_key)
        return self._require_message(room_key, message.local_id)

    async def cancel_room(self, room_key: str) -> int:
        turns = [
            turn
            for turn in self._turns.values()
            if turn.room_key == room_key
            and turn.task is not None
            and not turn.task.done()
        ]
        for turn in turns:
            assert turn.task is not None
            turn.task.cancel()
        if turns:
            await asyncio.gather(
                *(turn.task for turn in turns if turn.task is not None),
                return_exceptions=True,
            )
            self.metrics.increment("turn_cancelled", len(turns))
            logger.info("Cancelled %s turn(s) in room %s", len(turns), room_key)
        return len(turns)

    async def open_room(
        self,
        room_id: str,
        model: str | None = None,
        session: Session | None = None,
    ) -> RoomState:
        room_id = self.validator.validate_identifier(room_id, "Room ID")
        current = self.store.get(room_id)
        if current is not None and current.active_turn_id is not None:
            return current
        room = await self.persistence.get_room(room_id)
        if room is None:
            raise NotFound(f"Room not found: {room_id}")
        if session is not None and room.user_id != session.user_id:
            raise AccessDenied(f"Room {room_id} belongs to another user.")
        history = await self.persistence.load_history(room_id)
        for message in history:
            if message.role == Role.ASSISTANT:
                self._generations.setdefault(message.local_id, message.generation)
        state = RoomState(
            room_key=room_id,
            room_id=room_id,
            model=self.validator.validate_model(model) if model else room.model,
            name=room.name,
            messages=history,
        )
        self.store.set(room_id, state)
        logger.info("Opened room %s with %s message(s)", room_id, len(history))
        return state

    async def list_rooms(self, session: Session) -> list[Room]:
        return await self.persistence.list_rooms(session.user_id)

    async def delete_room(self, room_id: str, session: Session) -> bool:
        room = await self.persistence.get_room(room_id)
        if room is None:
            return False
        if room.user_id != session.user_id:
            raise AccessDenied(f"Room {room_id} belongs to another user.")
        if self.store.has(room_id) and self.store.require(room_id).active_turn_id:
            raise InFlightError(f"A message is still being sent in room {room_id}.")
        await self._with_retry(
            self._new_retry(0),
            lambda: self.persistence.delete_room(room_id),
            "delete_room",
        )
        if self.store.has(room_id):
            state = self.store.require(room_id)
            messages = [
                m.model_copy(update={"state": MessageState.DELETED})
                for m in state.messages
            ]
            self._update_state(
                room_id, messages=messages, phase=MessageState.DELETED
            )
        self.metrics.increment("room_deleted")
        logger.info("Deleted room %s", room_id)
        return True

    def set_room_model(self, room_key: str, model: str) -> str:
        model = self.validator.validate_model(model)
        state = self._room_state(room_key)
        self.store.set(
            room_key,
            state.model_copy(update={"model": model, "updated_at": now_iso()}),
        )
        return model

    async def drain(self) -> None:
        while True:
            pending = [task for task in self._background if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # Turn flow

    async def _run_send(self, turn: _Turn, generation: int) -> None:
        async def steps() -> None:
            await self._ensure_room(turn)
            await self._persist_user_message(turn)
            await self._complete_with_model(turn, generation)

        await self._guarded(turn, generation, steps)

    async def _run_regeneration(self, turn: _Turn, generation: int) -> None:
        await self._guarded(
            turn, generation, lambda: self._complete_with_model(turn, generation)
        )

    async def _guarded(
        self,
        turn: _Turn,
        generation: int,
        steps: Callable[[], Awaitable[None]],
    ) -> None:
        try:
            await steps()
        except SendFailed as exc:
            self._fail_turn(turn, generation, exc.classified)
        except asyncio.CancelledError:
            self._finalize_cancelled(turn, generation)
            raise
        except Exception as exc:
            logger.exception("Turn %s failed unexpectedly", turn.turn_id)
            self._fail_turn(turn, generation, self.error_handler.classify(exc))
        finally:
            if self._turns.get(turn.assistant_message_id) is turn:
                del self._turns[turn.assistant_message_id]

    async def _ensure_room(self, turn: _Turn) -> None:
        state = self.store.require(turn.room_key)
        if state.room_id:
            return
        existing = None if turn.room_key == NEW_ROOM_KEY else turn.room_key
        room, created = await self._with_retry(
            turn.retry,
            lambda: self.persistence.create_room_if_needed(
                existing, turn.session, turn.model, turn.content
            ),
            "ensure_room",
        )
        self._adopt_room(turn, room)
        if created:
            self.metrics.increment("room_created")

    def _adopt_room(self, turn: _Turn, room: Room) -> None:
        state = self.store.require(turn.room_key)
        messages = [
            m.model_copy(update={"room_id": room.id}) if not m.room_id else m
            for m in state.messages
        ]
        adopted = state.model_copy(
            update={
                "room_key": room.id,
                "room_id": room.id,
                "name": room.name or state.name,
                "messages": messages,
                "updated_at": now_iso(),
            }
        )
        if turn.room_key == NEW_ROOM_KEY:
            self.store.set(room.id, adopted)
            self.store.set(
                NEW_ROOM_KEY,
                RoomState(model=state.model, created_room_id=room.id),
            )
            turn.room_key = room.id
        else:
            self.store.set(turn.room_key, adopted)

    async def _persist_user_message(self, turn: _Turn) -> None:
        self._update_state(turn.room_key, phase=MessageState.PERSISTING_USER)
        self._update_message(
            turn.room_key,
            turn.user_message_id,
            None,
            state=MessageState.PERSISTING_USER,
        )
        message = self._require_message(turn.room_key, turn.user_message_id)
        record = message.model_copy(update={"state": MessageState.COMPLETED})
        saved = await self._with_retry(
            turn.retry,
            lambda: self._write_verified(
                lambda: self.persistence.save_message(record)
            ),
            "persist_user",
        )
        self._update_message(
            turn.room_key,
            turn.user_message_id,
            None,
            remote_id=saved.remote_id,
            state=MessageState.COMPLETED,
        )
        state = self.store.require(turn.room_key)
        await self.persistence.touch_room(record.room_id, record.content, state.name)

    async def _complete_with_model(self, turn: _Turn, generation: int) -> None:
        aid = turn.assistant_message_id
        self._set_phase(turn, generation, MessageState.AWAITING_MODEL)
        context = self._build_context(turn)
        loop = asyncio.get_running_loop()
        buffer: list[str] = []

        def on_token(token: str) -> None:
            loop.call_soon_threadsafe(
                self._apply_stream_token, turn, generation, buffer, token
            )

        async def call_model() -> str:
            buffer.clear()
            return await self.model_client.complete(
                context, turn.model, on_token=on_token
            )

        response = await self._with_retry(turn.retry, call_model, "model_call")
        content = response or ""
        if not self._is_current(aid, generation):
            return
        if not content.strip():
            raise SendFailed(
                ClassifiedError(
                    kind=ErrorKind.UNKNOWN,
                    reason=EMPTY_REPLY_REASON,
                    retryable=False,
                )
            )

        turn.response = content
        self._schedule_persist(turn, generation, content)
        if buffer:
            self._update_message(
                turn.room_key,
                aid,
                generation,
                state=MessageState.COMPLETED,
                content=content,
                revealed_length=len(content),
            )
        else:
            await self._animate(turn, generation, content)
        self._end_turn(turn, generation, MessageState.COMPLETED)
        self.metrics.increment("send_completed")
        logger.info(
            "Turn %s completed room=%s chars=%s attempts=%s",
            turn.turn_id,
            turn.room_key,
            len(content),
            turn.retry.attempts,
        )

    async def _animate(self, turn: _Turn, generation: int, content: str) -> None:
        aid = turn.assistant_message_id
        schedule = self.animation.build_schedule(content, generation)
        self._set_phase(turn, generation, MessageState.ANIMATING)
        started = self._update_message(
            turn.room_key,
            aid,
            generation,
            state=MessageState.ANIMATING,
            content=content,
            revealed_length=0,
        )
        if not started:
            return

        def on_step(length: int) -> bool:
            return self._update_message(
                turn.room_key, aid, generation, revealed_length=length
            )

        if await self.animation.reveal(content, schedule, on_step):
            self._update_message(
                turn.room_key,
                aid,
                generation,
                state=MessageState.COMPLETED,
                revealed_length=len(content),
            )

    def _apply_stream_token(
        self, turn: _Turn, generation: int, buffer: list[str], token: str
    ) -> None:
        if not token or not self._is_current(turn.assistant_message_id, generation):
            return
        buffer.append(token)
        text = "".join(buffer)
        updated = self._update_message(
            turn.room_key,
            turn.assistant_message_id,
            generation,
            expect_states=(MessageState.LOADING_INDICATOR, MessageState.STREAMING),
            state=MessageState.STREAMING,
            content=text,
            revealed_length=len(text),
        )
        if updated and len(buffer) == 1:
            self._set_phase(turn, generation, MessageState.STREAMING)

    def _build_context(self, turn: _Turn) -> RoomContext:
        state = self.store.require(turn.room_key)
        history: list[ContextMessage] = []
        for message in state.messages:
            if message.local_id == turn.assistant_message_id:
                break
            if (
                message.role in (Role.USER, Role.ASSISTANT)
                and message.state == MessageState.COMPLETED
                and message.content
            ):
                history.append(
                    ContextMessage(role=message.role, content=message.content)
                )
        if self.settings.system_prompt:
            prompt = ContextMessage(
                role=Role.SYSTEM, content=self.settings.system_prompt
            )
            history.insert(0, prompt)
        messages = self.token_estimator.trim_to_budget(
            history, self.settings.context_token_budget
        )
        estimated = self.token_estimator.estimate_messages(messages)
        logger.debug(
            "Context turn=%s kept=%s/%s tokens~%s cost~%sc",
            turn.turn_id,
            len(messages),
            len(history),
            estimated,
            self.token_estimator.estimate_cost_cents(messages, turn.model),
        )
        return RoomContext(
            room_id=state.room_id or turn.room_key,
            model=turn.model,
            messages=messages,
            estimated_tokens=estimated,
        )

    # Assistant persistence runs beside the reveal and is never cancelled.

    def _schedule_persist(self, turn: _Turn, generation: int, content: str) -> None:
        aid = turn.assistant_message_id
        message = self._require_message(turn.room_key, aid)
        record = message.model_copy(
            update={
                "content": content,
                "state": MessageState.COMPLETED,
                "revealed_length": len(content),
                "generation": generation,
                "error": None,
                "error_kind": None,
            }
        )
        previous = self._persist_tasks.get(aid)
        task = self._spawn(
            asyncio.get_running_loop(),
            self._persist_assistant(self._new_retry(generation), record, previous),
        )
        self._persist_tasks[aid] = task

        def forget(done: asyncio.Task[None]) -> None:
            if self._persist_tasks.get(aid) is done:
                del self._persist_tasks[aid]

        task.add_done_callback(forget)

    async def _persist_assistant(
        self,
        retry: RetryContext,
        record: Message,
        previous: asyncio.Task[None] | None,
    ) -> None:
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        remote_id = self._remote_ids.get(record.local_id) or record.remote_id
        if remote_id:
            record = record.model_copy(update={"remote_id": remote_id})

        async def write() -> Message:
            if record.remote_id:
                return await self.persistence.update_message(record)
            return await self.persistence.save_message(record)

        try:
            saved = await self._with_retry(
                retry, lambda: self._write_verified(write), "persist_assistant"
            )
        except SendFailed as exc:
            self.metrics.increment("assistant_persist_failed")
            logger.error(
                "Assistant reply %s was not persisted: %s",
                record.local_id,
                exc.reason,
            )
            return
        if saved.remote_id:
            self._remote_ids[record.local_id] = saved.remote_id
            self._bind_remote_id(record.local_id, saved.remote_id)
        await self.persistence.touch_room(record.room_id, record.content)

    async def _write_verified(
        self, write: Callable[[], Awaitable[Message]]
    ) -> Message:
        try:
            return await write()
        except StaleReadTimeout as exc:
            # The write landed; only the read-back lagged.
            self.metrics.increment("stale_read")
            self.metrics.event(
                "stale_read", remote_id=exc.record.remote_id, attempts=exc.attempts
            )
            logger.warning("%s Continuing with the written record.", exc)
            return exc.record

    async def _with_retry(
        self,
        retry: RetryContext,
        operation: Callable[[], Awaitable[T]],
        label: str,
    ) -> T:
        while True:
            retry.attempts += 1
            try:
                return await operation()
            except Exception as exc:
                classified = self.error_handler.classify(exc)
                retry.failures += 1
                retry.last_error = classified
                self.metrics.increment(f"{label}_failure")
                if not classified.retryable or retry.exhausted:
                    logger.warning(
                        "%s failed after %s attempt(s) kind=%s: %s",
                        label,
                        retry.attempts,
                        classified.kind.value,
                        classified.reason,
                    )
                    raise SendFailed(classified) from exc
                delay = self.error_handler.backoff_delay(
                    retry.failures, classified.kind
                )
                retry.next_delay = delay
                retry.delays.append(delay)
                self.metrics.increment("retry")
                logger.info(
                    "%s attempt %s failed kind=%s, retrying in %.1fs",
                    label,
                    retry.attempts,
                    classified.kind.value,
                    delay,
                )
                await self._sleep(delay)

    # Terminal transitions

    def _fail_turn(
        self, turn: _Turn, generation: int, classified: ClassifiedError
    ) -> None:
        if not self._is_current(turn.assistant_message_id, generation):
            return
        reason = self.error_handler.user_message(classified)
        self._update_message(
            turn.room_key,
            turn.user_message_id,
            None,
            state=MessageState.ERROR,
            error=reason,
            error_kind=classified.kind,
        )
        self._update_message(
            turn.room_key,
            turn.assistant_message_id,
            generation,
            state=MessageState.ERROR,
            error=reason,
            error_kind=classified.kind,
        )
        self._end_turn(turn, generation, MessageState.ERROR)
        self.metrics.increment("send_failed")
        self.metrics.event(
            "send_failed",
            turn_id=turn.turn_id,
            kind=classified.kind.value,
            attempts=turn.retry.attempts,
        )

    def _finalize_cancelled(self, turn: _Turn, generation: int) -> None:
        aid = turn.assistant_message_id
        if not self._is_current(aid, generation):
            return
        if turn.response is not None:
            self._update_message(
                turn.room_key,
                aid,
                generation,
                state=MessageState.COMPLETED,
                content=turn.response,
                revealed_length=len(turn.response),
            )
        else:
            self._update_message(
                turn.room_key,
                aid,
                generation,
                state=MessageState.ERROR,
                error=CANCELLED_REASON,
            )
        self._update_message(
            turn.room_key,
            turn.user_message_id,
            None,
            state=MessageState.ERROR,
            error=CANCELLED_REASON,
        )
        self._end_turn(turn, generation, MessageState.IDLE)
        logger.info("Turn %s cancelled room=%s", turn.turn_id, turn.room_key)

    def _end_turn(self, turn: _Turn, generation: int, phase: MessageState) -> None:
        if not self._is_current(turn.assistant_message_id, generation):
            return
        state = self.store.get(turn.room_key)
        if state is not None and state.active_turn_id == turn.turn_id:
            self._update_state(turn.room_key, active_turn_id=None, phase=phase)

    # Store helpers; every write of an assistant reply is tagged by generation.

    def _is_current(self, local_id: str, generation: int) -> bool:
        return self._generations.get(local_id) == generation

    def _set_phase(self, turn: _Turn, generation: int, phase: MessageState) -> None:
        if self._is_current(turn.assistant_message_id, generation):
            self._update_state(turn.room_key, phase=phase)

    def _update_state(self, room_key: str, **changes: Any) -> None:
        state = self.store.require(room_key)
        changes["updated_at"] = now_iso()
        self.store.set(room_key, state.model_copy(update=changes))

    def _update_message(
        self,
        room_key: str,
        local_id: str,
        generation: int | None,
        *,
        allow_terminal: bool = False,
        expect_states: Iterable[MessageState] | None = None,
        **changes: Any,
    ) -> bool:
        if generation is not None and not self._is_current(local_id, generation):
            self.metrics.increment("stale_update_discarded")
            return False
        state = self.store.get(room_key)
        if state is None:
            return False
        for index, message in enumerate(state.messages):
            if message.local_id != local_id:
                continue
            if expect_states is not None and message.state not in expect_states:
                return False
            if is_terminal(message.state) and not allow_terminal:
                return False
            if generation is not None:
                changes["generation"] = generation
            messages = list(state.messages)
            messages[index] = message.model_copy(update=changes)
            updated = {"messages": messages, "updated_at": now_iso()}
            self.store.set(room_key, state.model_copy(update=updated))
            return True
        return False

    def _bind_remote_id(self, local_id: str, remote_id: str) -> None:
        located = self._locate(local_id)
        if located is None:
            return
        room_key, message = located
        if message.remote_id != remote_id:
            self._update_message(
                room_key, local_id, None, allow_terminal=True, remote_id=remote_id
            )

    def _room_state(self, room_key: str) -> RoomState:
        state = self.store.get(room_key)
        if state is None:
            state = RoomState(room_key=room_key, model=self.default_model)
        return state

    def _locate(self, message_id: str) -> tuple[str, Message] | None:
        for room_key in self.store.keys():
            state = self.store.get(room_key)
            if state is None:
                continue
            message = state.find(message_id)
            if message is not None:
                return room_key, message
        return None

    def _require_message(self, room_key: str, local_id: str) -> Message:
        message = self.store.require(room_key).find(local_id)
        if message is None:
            raise NotFound(f"Message not found: {local_id}")
        return message

    def _user_message_for(
        self, state: RoomState, assistant_id: str
    ) -> Message | None:
        previous: Message | None = None
        for message in state.messages:
            if message.local_id == assistant_id:
                break
            if message.role == Role.USER:
                previous = message
        else:
            return None
        if previous is None or previous.state == MessageState.DELETED:
            return None
        return previous

    def _needs_resend(self, user_message: Message, reply: Message) -> bool:
        return (
            user_message.state == MessageState.ERROR
            and not user_message.remote_id
            and bool(reply.turn_id)
            and user_message.turn_id == reply.turn_id
        )

    def _new_retry(self, generation: int) -> RetryContext:
        return RetryContext(
            generation=generation, max_attempts=self.settings.max_attempts
        )

    def _spawn(
        self, loop: asyncio.AbstractEventLoop, coro: Awaitable[Any]
    ) -> asyncio.Task[Any]:
        task = loop.create_task(coro)  # type: ignore[arg-type]
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
