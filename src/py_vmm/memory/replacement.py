"""Page replacement — choosing which frame to evict.

When the free list is empty and a fault needs a frame, the kernel must
take one away from some page.  Which one it picks decides how many
future faults the system takes.

Policies (Strategy pattern, selected by ``ReplacementKind``):
    - **Clock** — second-chance approximation of LRU.  A hand sweeps
      the frames in allocation order.  A frame whose page has its
      referenced bit set gets the bit cleared and is skipped; the first
      frame with the bit clear is the victim.  If every candidate was
      referenced, the second pass takes the first one.  At most two
      passes, always.
    - **FIFO** — evict the frame allocated longest ago.  Can suffer
      from Belady's anomaly.
    - **LRU** — evict the frame accessed longest ago, tracked with an
      OrderedDict for O(1) move-to-end.

Policies see frames, not pages.  The referenced bit lives in the
owning page's PTE, so clock reads and clears it through a
``ReferenceBits`` accessor supplied by the caller.

Only the frames in ``candidates`` may be chosen; pinned frames and
frames in the middle of a fault or an eviction are left out by the
caller.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import TYPE_CHECKING, Protocol

from py_vmm.config import ReplacementKind

if TYPE_CHECKING:
    from collections.abc import Sequence


class ReferenceBits(Protocol):
    """Access to the referenced bit of the page that owns a frame."""

    def is_referenced(self, frame_number: int) -> bool:
        """Return the referenced bit of the frame's owning PTE."""
        ...  # pragma: no cover

    def clear_referenced(self, frame_number: int) -> None:
        """Clear the referenced bit of the frame's owning PTE."""
        ...  # pragma: no cover


class ReplacementPolicy(Protocol):
    """Interface for page replacement algorithms."""

    def on_allocate(self, frame_number: int) -> None:
        """Record that a frame was handed to a new owner."""
        ...  # pragma: no cover

    def on_release(self, frame_number: int) -> None:
        """Record that a frame went back to the free list or is being reassigned."""
        ...  # pragma: no cover

    def record_access(self, frame_number: int) -> None:
        """Record that a frame was accessed."""
        ...  # pragma: no cover

    def select_victim(self, candidates: Sequence[int], references: ReferenceBits) -> int:
        """Choose a frame to evict from the candidates.

        Raises:
            IndexError: If no candidate can be chosen.

        """
        ...  # pragma: no cover


class ClockPolicy:
    """Second chance (clock) over frames in allocation order."""

    def __init__(self) -> None:
        """Create an empty clock."""
        self._ring: list[int] = []
        self._hand = 0

    @property
    def ring(self) -> list[int]:
        """Return the frames on the clock face, in allocation order."""
        return list(self._ring)

    @property
    def hand(self) -> int | None:
        """Return the frame under the hand, or None for an empty clock."""
        return self._ring[self._hand] if self._ring else None

    def on_allocate(self, frame_number: int) -> None:
        """Place a frame at the end of the ring."""
        if frame_number in self._ring:
            self.on_release(frame_number)
        self._ring.append(frame_number)

    def on_release(self, frame_number: int) -> None:
        """Take a frame off the ring, keeping the hand on the same neighbour."""
        if frame_number not in self._ring:
            return
        idx = self._ring.index(frame_number)
        self._ring.pop(idx)
        if not self._ring:
            self._hand = 0
        elif self._hand > idx:
            self._hand -= 1
        elif self._hand >= len(self._ring):
            self._hand = 0

    def record_access(self, frame_number: int) -> None:
        """Clock relies on the PTE referenced bit instead."""

    def _advance(self) -> None:
        self._hand = (self._hand + 1) % len(self._ring)

    def select_victim(self, candidates: Sequence[int], references: ReferenceBits) -> int:
        """Sweep the hand until an unreferenced candidate turns up.

        Raises:
            IndexError: If no candidate is on the clock face.

        """
        allowed = set(candidates)
        if not self._ring or allowed.isdisjoint(self._ring):
            msg = "No frames to evict"
            raise IndexError(msg)
        # First pass: second chance for every referenced candidate.
        for _ in range(len(self._ring)):
            frame = self._ring[self._hand]
            if frame in allowed:
                if not references.is_referenced(frame):
                    return frame
                references.clear_referenced(frame)
            self._advance()
        # Second pass: every candidate was referenced; take the first.
        while self._ring[self._hand] not in allowed:
            self._advance()
        return self._ring[self._hand]


class FIFOPolicy:
    """First in, first out — evict the frame allocated longest ago."""

    def __init__(self) -> None:
        """Create an empty FIFO policy."""
        self._queue: OrderedDict[int, None] = OrderedDict()

    def on_allocate(self, frame_number: int) -> None:
        """Append the frame to the back of the queue."""
        self._queue.pop(frame_number, None)
        self._queue[frame_number] = None

    def on_release(self, frame_number: int) -> None:
        """Remove the frame from the queue."""
        self._queue.pop(frame_number, None)

    def record_access(self, frame_number: int) -> None:
        """FIFO ignores accesses — order is purely by load time."""

    def select_victim(self, candidates: Sequence[int], references: ReferenceBits) -> int:  # noqa: ARG002
        """Return the oldest candidate.

        Raises:
            IndexError: If no candidate is tracked.

        """
        allowed = set(candidates)
        for frame in self._queue:
            if frame in allowed:
                return frame
        msg = "No frames to evict"
        raise IndexError(msg)


class LRUPolicy:
    """Least recently used — evict the frame accessed longest ago."""

    def __init__(self) -> None:
        """Create an empty LRU policy."""
        self._order: OrderedDict[int, None] = OrderedDict()

    def on_allocate(self, frame_number: int) -> None:
        """Record the frame as most recently used."""
        self._order[frame_number] = None
        self._order.move_to_end(frame_number)

    def on_release(self, frame_number: int) -> None:
        """Stop tracking the frame."""
        self._order.pop(frame_number, None)

    def record_access(self, frame_number: int) -> None:
        """Move the frame to the most recently used position."""
        if frame_number in self._order:
            self._order.move_to_end(frame_number)

    def select_victim(self, candidates: Sequence[int], references: ReferenceBits) -> int:  # noqa: ARG002
        """Return the least recently used candidate.

        Raises:
            IndexError: If no candidate is tracked.

        """
        allowed = set(candidates)
        for frame in self._order:
            if frame in allowed:
                return frame
        msg = "No frames to evict"
        raise IndexError(msg)


def make_policy(kind: ReplacementKind) -> ClockPolicy | FIFOPolicy | LRUPolicy:
    """Build a fresh policy instance for a replacement kind."""
    match kind:
        case ReplacementKind.CLOCK:
            return ClockPolicy()
        case ReplacementKind.FIFO:
            return FIFOPolicy()
        case ReplacementKind.LRU:
            return LRUPolicy()
