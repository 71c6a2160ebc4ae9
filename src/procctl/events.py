"""Multi-subscriber callback lists used for controller notifications."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

__all__ = ["EventHook"]

logger = logging.getLogger(__name__)


class EventHook:
    """A list of callbacks fired together.

    Handlers may be added or removed from any thread. Firing takes a snapshot
    of the current handlers, so a handler removing itself is safe. An
    exception raised by one handler is logged and does not prevent the others
    from running.

    Example:
        ```python
        controller.stdout_text += lambda text: print(text, end="")
        ```
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._handlers: list[Callable[..., Any]] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Callable[..., Any]) -> None:
        with self._lock:
            self._handlers.append(handler)

    def unsubscribe(self, handler: Callable[..., Any]) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def __iadd__(self, handler: Callable[..., Any]) -> "EventHook":
        self.subscribe(handler)
        return self

    def __isub__(self, handler: Callable[..., Any]) -> "EventHook":
        self.unsubscribe(handler)
        return self

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    def __bool__(self) -> bool:
        return len(self) > 0

    def fire(self, *args: Any) -> None:
        """Call every handler with ``args``."""
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(*args)
            except Exception as e:
                logger.warning(f"Error in {self.name} handler: {e}")

    __call__ = fire
