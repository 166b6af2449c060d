"""Event handlers, processors and the routing of events between them."""

from __future__ import annotations

import threading
import traceback
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Optional, Protocol

from origin import log


class EventType(IntEnum):
    """System event types; user-defined types start at SYS_EVENT_USER_DEFINE."""

    SERVICE_RPC_REQUEST_EVENT = -1
    SERVICE_RPC_RESPONSE_EVENT = -2
    SYS_EVENT_TCP = -3
    SYS_EVENT_HTTP_EVENT = -4
    SYS_EVENT_WEBSOCKET = -5
    SYS_EVENT_RPC_EVENT = -6
    SYS_EVENT_USER_DEFINE = 1


@dataclass
class Event:
    """An event of some type carrying arbitrary data."""

    type: int = 0
    data: Any = None
    _ref: bool = field(default=False, init=False, repr=False)

    @property
    def is_ref(self) -> bool:
        return self._ref

    def reset(self) -> None:
        self.type = 0
        self.data = None
        self._ref = False

    def ref(self) -> None:
        self._ref = True

    def unref(self) -> None:
        self._ref = False


EventCallback = Callable[[Any], Any]


class EventChannel(Protocol):
    def push_event(self, event: Any) -> Any: ...


class EventHandler:
    """Receives events through its processor and remembers its registrations."""

    def __init__(self) -> None:
        self.event_processor: Optional[EventProcessor] = None
        self._lock = threading.RLock()
        self._reg_events: dict[int, set[EventProcessor]] = {}

    def init(self, processor: "EventProcessor") -> None:
        self.event_processor = processor
        with self._lock:
            self._reg_events = {}

    def _add_reg_info(self, event_type: int, processor: "EventProcessor") -> None:
        with self._lock:
            self._reg_events.setdefault(event_type, set()).add(processor)

    def _remove_reg_info(self, event_type: int, processor: "EventProcessor") -> None:
        with self._lock:
            processors = self._reg_events.get(event_type)
            if processors is not None:
                processors.discard(processor)

    def notify_event(self, event: Any) -> None:
        """Broadcast ``event`` to every processor listening on this handler's processor."""
        if self.event_processor is None:
            raise RuntimeError("event handler is not initialised")
        self.event_processor.cast_event(event)

    def destroy(self) -> None:
        """Undo every registration this handler made."""
        with self._lock:
            pairs = [
                (event_type, processor)
                for event_type, processors in self._reg_events.items()
                for processor in list(processors)
            ]
            for event_type, processor in pairs:
                processor.unreg_event_receiver_fun(event_type, self)


class EventProcessor:
    """Routes events to listening processors and dispatches them to callbacks."""

    def __init__(self, channel: Optional[EventChannel] = None) -> None:
        self._channel = channel
        self._lock = threading.RLock()
        self._listeners: dict[int, dict[EventProcessor, int]] = {}
        self._bindings: dict[int, dict[EventHandler, EventCallback]] = {}

    def init(self, channel: EventChannel) -> None:
        self._channel = channel

    def push_event(self, event: Any) -> Any:
        """Hand ``event`` to this processor's channel."""
        if self._channel is None:
            raise RuntimeError("event channel is not set")
        return self._channel.push_event(event)

    def _add_bind_event(
        self, event_type: int, receiver: EventHandler, callback: EventCallback
    ) -> None:
        with self._lock:
            self._bindings.setdefault(event_type, {})[receiver] = callback

    def _add_listen(self, event_type: int, receiver: EventHandler) -> None:
        with self._lock:
            listeners = self._listeners.setdefault(event_type, {})
            processor = receiver.event_processor
            listeners[processor] = listeners.get(processor, 0) + 1

    def _remove_bind_event(self, event_type: int, receiver: EventHandler) -> None:
        with self._lock:
            bindings = self._bindings.get(event_type)
            if bindings is not None:
                bindings.pop(receiver, None)

    def _remove_listen(self, event_type: int, receiver: EventHandler) -> None:
        with self._lock:
            listeners = self._listeners.get(event_type)
            if listeners is None:
                return
            processor = receiver.event_processor
            count = listeners.get(processor, 0) - 1
            if count <= 0:
                listeners.pop(processor, None)
            else:
                listeners[processor] = count

    def reg_event_receiver_func(
        self, event_type: int, receiver: EventHandler, callback: EventCallback
    ) -> None:
        """Make ``receiver`` get events of ``event_type`` cast on this processor."""
        if receiver.event_processor is None:
            raise RuntimeError("event handler is not initialised")
        receiver._add_reg_info(event_type, self)
        receiver.event_processor._add_bind_event(event_type, receiver, callback)
        self._add_listen(event_type, receiver)

    def unreg_event_receiver_fun(self, event_type: int, receiver: EventHandler) -> None:
        self._remove_listen(event_type, receiver)
        if receiver.event_processor is not None:
            receiver.event_processor._remove_bind_event(event_type, receiver)
        receiver._remove_reg_info(event_type, self)

    def handle_event(self, event: Any) -> None:
        """Run the callbacks bound to the event's type; errors are logged."""
        with self._lock:
            callbacks = list(self._bindings.get(event.type, {}).values())
        try:
            for callback in callbacks:
                callback(event)
        except Exception as exc:
            log.serror("core dump info[", str(exc), "]\n", traceback.format_exc())

    def cast_event(self, event: Any) -> None:
        """Push ``event`` to every processor listening for its type."""
        with self._lock:
            listeners = self._listeners.get(event.type)
            processors = None if listeners is None else list(listeners)
        if processors is None:
            log.sdebug("event type ", int(event.type), " not listen.")
            return
        for processor in processors:
            processor.push_event(event)