"""Named callables referenced from serialisable rules and workflows."""

from __future__ import annotations

import inspect
from collections.abc import Callable
from typing import Any

import structlog

from .errors import HandlerNotFoundError


logger = structlog.get_logger(__name__)


class HandlerRegistry:
    """
    Maps handler names to callables.

    Recovery scripts, custom alert actions, custom workflow steps and custom
    workflow gates are all looked up here by name, so rule and workflow
    definitions stay plain data. Handlers may be sync or async.
    """

    def __init__(self, handlers: dict[str, Callable[..., Any]] | None = None):
        self._handlers: dict[str, Callable[..., Any]] = dict(handlers or {})

    def register(self, name: str, func: Callable[..., Any]) -> None:
        if name in self._handlers:
            logger.warning("Handler already registered, replacing", handler=name)
        self._handlers[name] = func

    def unregister(self, name: str) -> bool:
        return self._handlers.pop(name, None) is not None

    def has(self, name: str) -> bool:
        return name in self._handlers

    def get(self, name: str) -> Callable[..., Any]:
        try:
            return self._handlers[name]
        except KeyError:
            raise HandlerNotFoundError(f"No handler registered under '{name}'") from None

    def names(self) -> list[str]:
        return sorted(self._handlers)

    async def call(self, name: str, *args: Any, **kwargs: Any) -> Any:
        result = self.get(name)(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result
