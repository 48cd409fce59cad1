import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class EventChannel:
    """
    Publish/subscribe channel scoped to whoever owns the instance.

    A chat session gets one injected so screens can listen for list changes
    and failures without a process-wide bus. Handlers run synchronously in
    registration order; a failing handler is logged and the rest still run.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        self._handlers.setdefault(event, []).append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        remaining = [h for h in self._handlers.get(event, []) if h is not handler]
        if remaining:
            self._handlers[event] = remaining
        else:
            self._handlers.pop(event, None)

    def emit(self, event: str, payload: Any = None) -> int:
        """Deliver `payload` to every handler of `event`, returning how many were called."""
        handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception("Handler for event %r failed", event)
        return len(handlers)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))
