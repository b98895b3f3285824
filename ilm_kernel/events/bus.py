"""
Kernel event bus.

Components emit KernelEvents describing facts (a batch started, an entry
failed, a condition was skipped). Sinks consume them for logging, tests or
an append-only audit file. Emission is synchronous and in-process.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union

from pydantic import BaseModel, Field


class KernelEvent(BaseModel):
    """An immutable fact observed by the kernel."""

    name: str                                     # e.g. "batch.started"
    occurred_at: datetime = Field(default_factory=datetime.utcnow)
    schedule_name: Optional[str] = None
    batch_id: Optional[str] = None
    entry_id: Optional[int] = None
    payload: Dict[str, Any] = {}


class EventSink(Protocol):
    def on_event(self, event: KernelEvent) -> None:
        """Consume a kernel event."""


class EventBus:
    """Dispatches events to registered sinks."""

    def __init__(self, sinks: Optional[Iterable[EventSink]] = None):
        self._sinks: List[EventSink] = list(sinks) if sinks is not None else []
        self._closed = False

    def register(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def emit(self, name: str, **fields: Any) -> KernelEvent:
        """Build an event from keyword fields and hand it to every sink."""
        event = KernelEvent(name=name, **fields)
        for sink in self._sinks:
            sink.on_event(event)
        return event

    def close(self) -> None:
        """Finalize all sinks that expose a close() method."""
        if self._closed:
            return
        for sink in self._sinks:
            close_fn = getattr(sink, "close", None)
            if callable(close_fn):
                close_fn()
        self._closed = True


class LoggingEventSink:
    """Logs kernel events using the standard logging module."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger("ilm_kernel.events")

    def on_event(self, event: KernelEvent) -> None:
        self._logger.info(event.name, extra={"event": event.model_dump(mode="json")})


class MemoryEventSink:
    """Keeps every event in a list. Used by tests and the operator API."""

    def __init__(self):
        self.events: List[KernelEvent] = []

    def on_event(self, event: KernelEvent) -> None:
        self.events.append(event)

    def names(self) -> List[str]:
        return [e.name for e in self.events]

    def of(self, name: str) -> List[KernelEvent]:
        return [e for e in self.events if e.name == name]


class JsonlFileSink:
    """Writes each event as a JSON line to a file."""

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self._path.open("a", encoding="utf-8")
        self._closed = False

    def on_event(self, event: KernelEvent) -> None:
        self._fh.write(json.dumps(event.model_dump(mode="json")) + "\n")
        self._fh.flush()

    def close(self) -> None:
        if self._closed:
            return
        self._fh.flush()
        self._fh.close()
        self._closed = True
