from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class MetricsSink(Protocol):
    def increment(self, name: str, value: int = 1) -> None:
        pass

    def event(self, name: str, **fields: Any) -> None:
        pass


@dataclass
class MetricEvent:
    name: str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass
class InMemoryMetrics:
    counters: Counter[str] = field(default_factory=Counter)
    events: list[MetricEvent] = field(default_factory=list)
    max_events: int = 500

    def increment(self, name: str, value: int = 1) -> None:
        self.counters[name] += value

    def event(self, name: str, **fields: Any) -> None:
        self.events.append(MetricEvent(name=name, fields=dict(fields)))
        if len(self.events) > self.max_events:
            self.events.pop(0)
        logger.debug("metric event=%s fields=%s", name, fields)

    def count(self, name: str) -> int:
        return self.counters.get(name, 0)

    def events_named(self, name: str) -> list[MetricEvent]:
        return [e for e in self.events if e.name == name]

    def snapshot(self) -> dict[str, int]:
        return dict(self.counters)
