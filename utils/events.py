"""
Event system for agentdeck.

A small emitter mixin that lets the scheduler and job runner publish
lifecycle events without knowing who listens (console, notifications,
tests).

Events:
    Scheduler events:
        - run_start: an agent run is starting ({agent_id, agent_name, trigger})
        - run_end: an agent run finished ({agent_id, run_id, status, duration_ms})
        - schedule_changed: a job was added or removed ({agent_id, action})

    Run events (forwarded from the conversation loop):
        - content, tool_status, error, done

Usage:
    scheduler.on("run_end", lambda e: print(e["status"]))

    @scheduler.on("run_start")
    def announce(e):
        console.run_start(e["agent_name"], e["trigger"])
"""

import logging
from typing import Callable, Any

logger = logging.getLogger(__name__)


class EventEmitter:
    """
    Mixin class that provides event emission and subscription.

    Supports multiple subscribers per event and "*" wildcard subscriptions.
    """

    def __init_events__(self):
        """Initialize event storage. Call this in your __init__ if using as mixin."""
        if not hasattr(self, '_event_handlers'):
            self._event_handlers: dict[str, list[Callable]] = {}

    def on(self, event: str, handler: Callable[[dict[str, Any]], None] = None) -> Callable:
        """
        Subscribe to an event.

        Args:
            event: Event name (e.g. "run_end") or "*" for all events
            handler: Callback receiving the event dict (omit to use as a decorator)

        Returns:
            The handler, or a decorator if handler is None
        """
        self.__init_events__()
        handlers = self._event_handlers.setdefault(event, [])

        if handler is None:
            def decorator(fn: Callable[[dict[str, Any]], None]) -> Callable:
                handlers.append(fn)
                return fn
            return decorator

        handlers.append(handler)
        return handler

    def off(self, event: str, handler: Callable = None):
        """Unsubscribe one handler, or every handler when handler is None."""
        self.__init_events__()
        if event not in self._event_handlers:
            return
        if handler is None:
            self._event_handlers[event] = []
        else:
            self._event_handlers[event] = [h for h in self._event_handlers[event] if h != handler]

    def emit(self, event: str, data: dict[str, Any] = None):
        """
        Emit an event to all subscribers.

        Delivery is synchronous. A failing handler is logged and skipped so a
        broken listener can never interrupt a run.
        """
        self.__init_events__()
        data = dict(data or {})
        data['_event'] = event

        handlers = self._event_handlers.get(event, []) + self._event_handlers.get('*', [])
        for handler in handlers:
            try:
                handler(data)
            except Exception as e:
                logger.debug("Event handler for %s failed: %s", event, e)

    def once(self, event: str, handler: Callable[[dict[str, Any]], None]) -> Callable:
        """Subscribe to a single emission of an event."""
        def wrapper(data):
            self.off(event, wrapper)
            handler(data)

        return self.on(event, wrapper)
