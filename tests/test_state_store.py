import logging

import pytest

from reveal_chat.state_store import KeyedStateStore


def test_set_notifies_listeners_in_subscription_order():
    store: KeyedStateStore[int] = KeyedStateStore()
    calls: list[tuple[str, str, int]] = []
    store.subscribe("room", lambda key, value: calls.append(("first", key, value)))
    store.subscribe("room", lambda key, value: calls.append(("second", key, value)))
    store.subscribe("other", lambda key, value: calls.append(("other", key, value)))

    store.set("room", 1)

    assert calls == [("first", "room", 1), ("second", "room", 1)]
    assert store.get("room") == 1
    assert store.metrics.notifications == 2


def test_failing_listener_is_logged_and_others_still_run(caplog):
    store: KeyedStateStore[str] = KeyedStateStore()
    seen: list[str] = []

    def broken(_key: str, _value: str) -> None:
        raise RuntimeError("listener exploded")

    store.subscribe("k", broken)
    store.subscribe("k", lambda _key, value: seen.append(value))

    with caplog.at_level(logging.ERROR):
        store.set("k", "v")

    assert seen == ["v"]
    assert store.metrics.listener_failures == 1
    assert "State listener failed" in caplog.text


def test_unsubscribe_is_idempotent():
    store: KeyedStateStore[int] = KeyedStateStore()
    calls: list[int] = []
    unsubscribe = store.subscribe("k", lambda _key, value: calls.append(value))
    store.set("k", 4)

    unsubscribe()
    unsubscribe()
    store.set("k", 5)

    assert calls == [4]
    assert store.metrics.notifications == 1


def test_listener_may_unsubscribe_during_notification():
    store: KeyedStateStore[int] = KeyedStateStore()
    calls: list[str] = []
    holder: dict[str, object] = {}

    def once(_key: str, _value: int) -> None:
        calls.append("once")
        holder["unsubscribe"]()  # type: ignore[operator]

    holder["unsubscribe"] = store.subscribe("k", once)
    store.subscribe("k", lambda _key, _value: calls.append("always"))

    store.set("k", 1)
    store.set("k", 2)

    assert calls == ["once", "always", "always"]


def test_default_factory_and_update():
    store: KeyedStateStore[list[str]] = KeyedStateStore(default_factory=lambda key: [])
    assert store.get("a") == []
    assert store.has("a")

    updated = store.update("a", lambda current: [*(current or []), "x"])

    assert updated == ["x"]
    assert store.keys() == ["a"]


def test_require_raises_without_value():
    store: KeyedStateStore[int] = KeyedStateStore()
    assert store.get("missing") is None
    with pytest.raises(KeyError):
        store.require("missing")
