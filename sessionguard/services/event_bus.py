"""
In-process domain event bus

``publish`` is synchronous and never raises: type-specific handlers run first,
then wildcard handlers, each group in registration order. A handler that
returns a coroutine has it spawned on the task registry, so publishers never
wait on subscriber work.
"""

import inspect
from typing import Any, Callable, Dict, Optional

import structlog

from sessionguard.models.events import DomainEvent, DomainEventType
from sessionguard.services.task_registry import TaskRegistry, task_registry

logger = structlog.get_logger(__name__)

EventHandler = Callable[[DomainEvent], Any]
Unsubscribe = Callable[[], None]


class DomainEventBus:
    def __init__(self, registry: Optional[TaskRegistry] = None):
        self._registry = registry if registry is not None else task_registry
        # dicts keep insertion order and give O(1) removal
        self._handlers: Dict[DomainEventType, Dict[EventHandler, None]] = {}
        self._wildcard: Dict[EventHandler, None] = {}

    def subscribe(self, event_type: DomainEventType, handler: EventHandler) -> Unsubscribe:
        handlers = self._handlers.setdefault(event_type, {})
        handlers[handler] = None

        def unsubscribe() -> None:
            handlers.pop(handler, None)
            # Drop the bucket only if it is still the one registered for the type
            if not handlers and self._handlers.get(event_type) is handlers:
                del self._handlers[event_type]

        return unsubscribe

    def subscribe_all(self, handler: EventHandler) -> Unsubscribe:
        self._wildcard[handler] = None

        def unsubscribe() -> None:
            self._wildcard.pop(handler, None)

        return unsubscribe

    def publish(self, event: DomainEvent) -> None:
        # Snapshot so handlers may (un)subscribe while we iterate
        handlers = list(self._handlers.get(event.type, {})) + list(self._wildcard)
        if not handlers:
            logger.debug("event_bus.no_subscribers", event_type=event.type.value)
            return

        for handler in handlers:
            self._invoke(handler, event)

    def _invoke(self, handler: EventHandler, event: DomainEvent) -> None:
        name = getattr(handler, "__qualname__", repr(handler))
        result = None
        try:
            result = handler(event)
            if inspect.iscoroutine(result):
                self._registry.spawn(result, name=f"event:{event.type.value}:{name}")
        except Exception as exc:
            if inspect.iscoroutine(result):
                # Never scheduled, e.g. publish from a thread with no running loop
                result.close()
            logger.error(
                "event_bus.handler_failed",
                handler=name,
                event_type=event.type.value,
                event_id=event.id,
                error=str(exc),
            )

    @property
    def handler_count(self) -> int:
        return sum(len(h) for h in self._handlers.values()) + len(self._wildcard)
