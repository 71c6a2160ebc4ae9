"""EventHook tests."""

from __future__ import annotations

import logging

import pytest

from procctl.events import EventHook


class TestSubscription:
    """Test adding and removing handlers."""

    def test_fire_calls_handlers_in_order(self):
        hook = EventHook("test")
        calls: list[tuple[str, int]] = []
        hook += lambda value: calls.append(("a", value))
        hook += lambda value: calls.append(("b", value))

        hook.fire(1)

        assert calls == [("a", 1), ("b", 1)]

    def test_call_is_fire(self):
        hook = EventHook("test")
        calls: list[str] = []
        hook += calls.append
        hook("x")
        assert calls == ["x"]

    def test_unsubscribe(self):
        hook = EventHook("test")
        calls: list[int] = []
        handler = calls.append
        hook += handler
        hook -= handler
        hook.fire(1)
        assert calls == []
        assert not hook

    def test_unsubscribe_unknown_is_ignored(self):
        hook = EventHook("test")
        hook.unsubscribe(print)
        assert len(hook) == 0

    def test_len_and_bool(self):
        hook = EventHook("test")
        assert not hook
        hook += print
        hook += print
        assert len(hook) == 2
        assert hook

    def test_attribute_augmented_assignment(self):
        """``obj.event += handler`` keeps the same hook on the attribute."""

        class Owner:
            def __init__(self):
                self.changed = EventHook("changed")

        owner = Owner()
        hook = owner.changed
        owner.changed += print
        assert owner.changed is hook
        assert len(hook) == 1


class TestFiring:
    """Test firing semantics."""

    def test_handler_removing_itself(self):
        """A handler may unsubscribe while the hook is firing."""
        hook = EventHook("test")
        calls: list[str] = []

        def once():
            calls.append("once")
            hook.unsubscribe(once)

        hook += once
        hook += lambda: calls.append("always")

        hook.fire()
        hook.fire()

        assert calls == ["once", "always", "always"]

    def test_exception_is_logged_and_others_run(self, caplog: pytest.LogCaptureFixture):
        """A failing handler does not stop the remaining handlers."""
        hook = EventHook("command_ended")
        calls: list[str] = []

        def broken():
            raise ValueError("bad handler")

        hook += broken
        hook += lambda: calls.append("ran")

        with caplog.at_level(logging.WARNING, logger="procctl.events"):
            hook.fire()

        assert calls == ["ran"]
        assert "Error in command_ended handler: bad handler" in caplog.text

    def test_fire_without_handlers(self):
        EventHook("empty").fire("ignored")
