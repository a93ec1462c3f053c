import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Iterator

from reveal_chat.models import AnimationSchedule, AnimationSettings

logger = logging.getLogger(__name__)

CODE_FENCE = "```"


class MessageAnimation:
    def __init__(
        self,
        settings: AnimationSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.settings = settings or AnimationSettings()
        self._sleep = sleep or asyncio.sleep

    def build_schedule(self, content: str, generation: int = 0) -> AnimationSchedule:
        s = self.settings
        length = len(content)
        if length == 0:
            return AnimationSchedule(
                total_length=0,
                chunk_size=s.default_chunk_size,
                tick_interval_ms=s.default_tick_ms,
                total_ticks=0,
                generation=generation,
            )

        if length < s.adaptive_threshold:
            chunk = max(1, s.default_chunk_size)
            tick = max(s.frame_budget_ms, s.default_tick_ms)
            ticks = math.ceil(length / chunk)
        else:
            max_ticks = max(1, math.floor(s.target_duration_ms / s.frame_budget_ms))
            chunk = math.ceil(length / max_ticks)
            chunk = min(s.max_chunk_size, max(s.min_chunk_size, chunk))
            ticks = math.ceil(length / chunk)
            tick = max(s.frame_budget_ms, s.target_duration_ms / ticks)

        schedule = AnimationSchedule(
            total_length=length,
            chunk_size=chunk,
            tick_interval_ms=tick,
            total_ticks=ticks,
            generation=generation,
        )
        logger.debug(
            "Reveal schedule length=%s chunk=%s ticks=%s planned_ms=%.0f",
            length,
            chunk,
            ticks,
            schedule.planned_duration_ms,
        )
        return schedule

    def next_boundary(self, content: str, start: int, chunk_size: int) -> int:
        total = len(content)
        if start >= total:
            return total
        step = chunk_size
        if self._inside_code_block(content, start):
            step = chunk_size * 2
        end = min(total, start + max(1, step))

        if (
            end < total
            and not content[end - 1].isspace()
            and not content[end].isspace()
        ):
            # Finish the current token when it ends within one more chunk.
            limit = min(total, end + chunk_size)
            scan = end
            while scan < limit and not content[scan].isspace():
                scan += 1
            if scan < limit or scan == total:
                end = scan

        while end < total and content[end].isspace():
            end += 1
        return end

    def iter_steps(self, content: str, schedule: AnimationSchedule) -> Iterator[int]:
        position = schedule.revealed_length
        while position < len(content):
            position = self.next_boundary(content, position, schedule.chunk_size)
            yield position

    async def reveal(
        self,
        content: str,
        schedule: AnimationSchedule,
        on_step: Callable[[int], bool],
    ) -> bool:
        interval = schedule.tick_interval_ms / 1000.0
        for length in self.iter_steps(content, schedule):
            await self._sleep(interval)
            if not on_step(length):
                logger.debug(
                    "Reveal stopped at %s/%s generation=%s",
                    schedule.revealed_length,
                    schedule.total_length,
                    schedule.generation,
                )
                return False
            schedule.revealed_length = length
        return schedule.done

    def _inside_code_block(self, content: str, position: int) -> bool:
        return content.count(CODE_FENCE, 0, position) % 2 == 1
