"""
Controller-to-UI event notifications.
"""

from typing import Any, Callable, Dict, List

import structlog

logger = structlog.get_logger(__name__)

STATUS_UPDATE = "status-update"
LOG = "log"
AUTH_COMPLETED = "auth-completed"
SHOW_SUCCESS = "show-success"
PREREQUISITE_STATUS = "prerequisite-status"
PREREQUISITES_READY = "prerequisites-ready"
CREDENTIALS_STORED = "credentials-stored"
TOOL_CONNECTED = "tool-connected"

Listener = Callable[[str, Dict[str, Any]], None]


class EventEmitter:
    """Fan-out of named events to registered listeners."""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: str, **payload: Any) -> None:
        """Deliver an event synchronously to every listener."""
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception as e:
                # A broken UI listener must not break the login flow
                logger.error("Event listener failed", event_name=event, error=str(e))

    def status(self, tool_id: str, phase: str, message: str) -> None:
        self.emit(STATUS_UPDATE, tool_id=str(tool_id), status=phase, message=message)

    def log(self, tool_id: str, message: str) -> None:
        self.emit(LOG, tool_id=str(tool_id), message=message)
