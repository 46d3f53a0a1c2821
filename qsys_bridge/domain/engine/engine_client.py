"""
Engine Client interface.

The engine client owns the live session to the remote engine: it turns an
open transport socket into a snapshot of components and controls, performs
confirmed control writes, and publishes ``update``, ``disconnected`` and
``error`` events. The bridge only depends on the abstract surface defined
here; a concrete client is loaded from configuration (see
``infrastructure.engine.factory_loader``).

Events
    ``update``        ``handler(component, control, state)`` for every control change
    ``disconnected``  ``handler()`` when the session is lost
    ``error``         ``handler(exc)`` on a session-level error

Per-control subscriptions (``Control.on_update``) receive ``handler(state)``.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol
import structlog

from qsys_bridge.domain.models.control_state import ControlState

logger = structlog.get_logger(__name__)


class Subscription:
    """Cancellation handle returned by every subscribe call"""

    def __init__(self, emitter: "EventEmitter", event: str, handler: Callable[..., Any]):
        self._emitter = emitter
        self.event = event
        self.handler = handler
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self):
        """Unsubscribe; safe to call more than once"""
        if not self._active:
            return
        self._active = False
        self._emitter._remove(self)


class EventEmitter:
    """Minimal synchronous publish/subscribe hub"""

    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def on(self, event: str, handler: Callable[..., Any]) -> Subscription:
        subscription = Subscription(self, event, handler)
        self._subscriptions.setdefault(event, []).append(subscription)
        return subscription

    def emit(self, event: str, *args: Any):
        """Deliver an event to a snapshot of the current subscribers.

        A failing handler is logged and never prevents delivery to the others.
        """
        for subscription in list(self._subscriptions.get(event, [])):
            if not subscription.active:
                continue
            try:
                subscription.handler(*args)
            except Exception as e:
                logger.error("Error in event handler", event_type=event, error=str(e))

    def listener_count(self, event: str) -> int:
        return len(self._subscriptions.get(event, []))

    def _remove(self, subscription: Subscription):
        handlers = self._subscriptions.get(subscription.event)
        if handlers and subscription in handlers:
            handlers.remove(subscription)


class Control(ABC):
    """A single addressable value inside a component"""

    def __init__(self, name: str):
        self.name = name
        self._events = EventEmitter()

    @property
    @abstractmethod
    def state(self) -> ControlState:
        """Current state as last reported by the engine"""

    @abstractmethod
    async def update(self, value: Any) -> ControlState:
        """Request a new value and return the engine-confirmed state"""

    def on_update(self, handler: Callable[[ControlState], Any]) -> Subscription:
        return self._events.on("update", handler)

    def publish(self, state: ControlState):
        """Called by engine client implementations when the control changes"""
        self._events.emit("update", state)

    def listener_count(self) -> int:
        return self._events.listener_count("update")


class Component:
    """A named group of controls"""

    def __init__(self, name: str, type: Optional[str] = None, controls: Optional[Dict[str, Control]] = None):
        self.name = name
        self.type = type
        self.controls: Dict[str, Control] = controls or {}


class EngineClient(ABC):
    """Live session against the remote control engine"""

    def __init__(self):
        self._events = EventEmitter()

    @property
    @abstractmethod
    def components(self) -> Dict[str, Component]:
        """Snapshot of loaded components keyed by name"""

    @abstractmethod
    async def close(self):
        """Terminate the session and release the transport socket"""

    def on(self, event: str, handler: Callable[..., Any]) -> Subscription:
        return self._events.on(event, handler)

    def emit(self, event: str, *args: Any):
        self._events.emit(event, *args)

    def listener_count(self, event: str) -> int:
        return self._events.listener_count(event)


class EngineClientFactory(Protocol):
    """Builds an engine client from an open transport socket"""

    def __call__(
        self,
        *,
        socket: Any,
        polling_interval: int,
        component_filter: Optional[str] = None
    ) -> Awaitable[EngineClient]:
        ...
