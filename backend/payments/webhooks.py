"""Event-type routing for verified processor webhooks."""

from typing import Any, Awaitable, Callable, Optional

import structlog

WebhookHandler = Callable[[dict, str], Awaitable[Any]]


class WebhookRouter:
    """
    Maps webhook event types to handlers.
    Separates routing logic from business logic.
    """

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, event: dict, correlation_id: str) -> Optional[Any]:
        """Route event to its handler; unknown types return None"""
        event_type = event.get("type", "unknown")

        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.info("no_handler", event_type=event_type, correlation_id=correlation_id)
            return None

        return await handler(event, correlation_id)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())
