"""Structured memory events for an external metrics or tracing sink.

The core does not format or persist its own metrics.  Instead it
emits one ``MemoryEvent`` per interesting step — a TLB miss, a fault,
an eviction — to whatever ``EventSink`` the caller plugged in.  Think
of it as the VM subsystem's tracepoints: the kernel fires them, a
separate tool decides what to do with them.

Every event carries an **ordinal** instead of a wall-clock timestamp.
Ordinals increase strictly across the whole simulated machine, so two
runs with the same inputs produce the same event stream.
"""

from __future__ import annotations

import itertools
import threading
from collections import Counter
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol


class EventKind(StrEnum):
    """What happened."""

    TLB_HIT = "tlb_hit"
    TLB_MISS = "tlb_miss"
    TLB_MISS_TRAP = "tlb_miss_trap"
    TLB_REFILL = "tlb_refill"
    TLB_SHOOTDOWN = "tlb_shootdown"
    SOFT_MISS = "soft_miss"
    HARD_MISS = "hard_miss"
    MINOR_FAULT = "minor_fault"
    MAJOR_FAULT = "major_fault"
    PROTECTION_FAULT = "protection_fault"
    SEGMENTATION_FAULT = "segmentation_fault"
    FRAME_ALLOCATED = "frame_allocated"
    FRAME_FREED = "frame_freed"
    EVICTION = "eviction"
    WRITE_BACK = "write_back"
    PAGE_IN = "page_in"
    OUT_OF_MEMORY = "out_of_memory"


@dataclass(frozen=True)
class MemoryEvent:
    """One structured event.

    Attributes:
        ordinal: Position of this event in the machine-wide stream.
        kind: What happened.
        asid: Address space involved, if any.
        virtual_page: Virtual page involved, if any.
        frame: Physical frame involved, if any.
        cpu: Simulated CPU that observed the event, if any.

    """

    ordinal: int
    kind: EventKind
    asid: int | None = None
    virtual_page: int | None = None
    frame: int | None = None
    cpu: int | None = None


class EventSink(Protocol):
    """Anything that accepts memory events."""

    def emit(self, event: MemoryEvent) -> None:
        """Receive one event."""
        ...  # pragma: no cover


class EventLog:
    """In-memory event sink with simple querying.

    Keeps every event it receives, in arrival order.  Used by the
    tests and by the web inspection API.
    """

    def __init__(self) -> None:
        """Create an empty event log."""
        self._events: list[MemoryEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: MemoryEvent) -> None:
        """Record an event."""
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[MemoryEvent]:
        """Return every recorded event in arrival order."""
        with self._lock:
            return list(self._events)

    def filter(
        self,
        *,
        kind: EventKind | None = None,
        asid: int | None = None,
        virtual_page: int | None = None,
    ) -> list[MemoryEvent]:
        """Return events matching every given criterion."""
        return [
            e
            for e in self.events
            if (kind is None or e.kind is kind)
            and (asid is None or e.asid == asid)
            and (virtual_page is None or e.virtual_page == virtual_page)
        ]

    def counts(self) -> Counter[EventKind]:
        """Return how many events of each kind were recorded."""
        return Counter(e.kind for e in self.events)

    def clear(self) -> None:
        """Forget all recorded events."""
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        """Return the number of recorded events."""
        with self._lock:
            return len(self._events)


class EventEmitter:
    """Stamp events with ordinals and forward them to a sink.

    Stamping and delivery happen under one lock, so the sink always
    sees events in ordinal order.
    """

    def __init__(self, sink: EventSink | None) -> None:
        """Create an emitter; a None sink discards events."""
        self._sink = sink
        self._ordinals = itertools.count()
        self._lock = threading.Lock()

    def emit(
        self,
        kind: EventKind,
        *,
        asid: int | None = None,
        virtual_page: int | None = None,
        frame: int | None = None,
        cpu: int | None = None,
    ) -> None:
        """Build an event and deliver it to the sink."""
        if self._sink is None:
            return
        with self._lock:
            event = MemoryEvent(
                ordinal=next(self._ordinals),
                kind=kind,
                asid=asid,
                virtual_page=virtual_page,
                frame=frame,
                cpu=cpu,
            )
            self._sink.emit(event)
