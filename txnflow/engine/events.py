"""One-shot UI commands emitted by the engine."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any

EVENT_BUFFER_SIZE = 100


@dataclass(frozen=True)
class Toast:
    message: str
    is_error: bool = True


@dataclass(frozen=True)
class OpenFilePicker:
    field_id: str
    allowed_types: tuple[str, ...] = ()


@dataclass(frozen=True)
class ViewFile:
    uri: str
    mime_type: str = ""


@dataclass(frozen=True)
class RemoveFile:
    field_id: str


@dataclass(frozen=True)
class ShowInterrupt:
    """Interrupt screen: compliance details or a non-resumable request status."""

    title: str
    reason: str
    status: str = ""
    issues: tuple[Any, ...] = ()
    data: dict[str, Any] = field(default_factory=dict)


Event = Toast | OpenFilePicker | ViewFile | RemoveFile | ShowInterrupt


class EventChannel:
    """FIFO of events; each one is handed out exactly once.

    Holds at most `maxlen` undelivered events; the oldest are dropped first.
    """

    def __init__(self, maxlen: int = EVENT_BUFFER_SIZE):
        self._queue: deque[Event] = deque(maxlen=maxlen)

    def emit(self, event: Event) -> None:
        self._queue.append(event)

    def pop(self) -> Event | None:
        return self._queue.popleft() if self._queue else None

    def drain(self) -> list[Event]:
        events = list(self._queue)
        self._queue.clear()
        return events

    def clear(self) -> None:
        self._queue.clear()

    def __len__(self) -> int:
        return len(self._queue)
