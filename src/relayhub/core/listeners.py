"""Fan-out callback registry shared by the pool and subscription handles."""

from __future__ import annotations

import contextlib
from collections.abc import Callable
from typing import Any

from .logger import Logger


Unregister = Callable[[], None]


class ListenerSet:
    """Ordered set of callbacks that are all invoked on every emit.

    Registration validates the callback right away and returns a function
    that removes it again. Removing twice is harmless. A callback that
    raises is logged with its traceback and the remaining callbacks still
    run.

    Args:
        name: Label used in log lines (``listener=<name>``).
        logger: Logger that receives ``listener_failed`` records.
    """

    __slots__ = ("_callbacks", "_logger", "name")

    def __init__(self, name: str, logger: Logger) -> None:
        self.name = name
        self._logger = logger
        self._callbacks: list[Callable[..., Any]] = []

    def add(self, callback: Callable[..., Any]) -> Unregister:
        if not callable(callback):
            raise TypeError(
                f"{self.name} listener must be callable, got {type(callback).__name__}"
            )
        self._callbacks.append(callback)

        def unregister() -> None:
            with contextlib.suppress(ValueError):
                self._callbacks.remove(callback)

        return unregister

    def emit(self, *args: Any) -> None:
        # Iterate over a copy so callbacks may unregister themselves
        for callback in tuple(self._callbacks):
            try:
                callback(*args)
            except Exception as e:
                self._logger.exception("listener_failed", listener=self.name, error=str(e))

    def clear(self) -> None:
        self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)
