"""Frame allocator — ownership of the physical memory pool.

Physical memory is divided into fixed-size **frames** (the physical
counterpart of virtual pages).  The allocator tracks which frames are
free, who owns each allocated frame, and in which order frames were
handed out (the clock hand sweeps in that order).

Each frame moves through four states::

    FREE ──allocate──▶ LOADING ──commit──▶ ALLOCATED ──begin_reclaim──▶ RECLAIMING
                          ▲                    ▲                            │
                          │                    └──────abort_reclaim─────────┤
                          └────────────────reassign─────────────────────────┘

LOADING marks a frame handed to a page whose mapping is not installed
yet; RECLAIMING marks a frame whose current owner is being evicted.
Neither is a replacement candidate, so two faults can never pick the
same victim and a half-installed page is never stolen.  ``free`` works
from any non-free state.

Why a free list instead of a bitmap?
    A deque gives O(1) allocate and O(1) free.  A bitmap would be more
    compact but needs a scan to find a free bit.

The allocator's lock is the one global lock of the memory system.  It
is re-entrant so the fault handler can hold it across a short sequence
of allocator calls; it is never held across backing-store I/O.
"""

from __future__ import annotations

import dataclasses
import threading
from collections import deque
from dataclasses import dataclass
from enum import StrEnum

from py_vmm.errors import FramesExhaustedError


class FrameState(StrEnum):
    """Lifecycle state of a physical frame."""

    FREE = "free"
    LOADING = "loading"
    ALLOCATED = "allocated"
    RECLAIMING = "reclaiming"


@dataclass(frozen=True)
class FrameOwner:
    """The (address space, virtual page) a frame currently backs."""

    asid: int
    virtual_page: int


@dataclass
class Frame:
    """Bookkeeping for one physical frame."""

    frame_number: int
    owner: FrameOwner | None = None
    state: FrameState = FrameState.FREE
    pinned: bool = False


class FrameAllocator:
    """Hand out and take back physical frames.

    Frames are numbered ``0 .. total_frames - 1`` and handed out in
    ascending order from a fresh pool; freed frames go to the back of
    the free list.
    """

    def __init__(self, *, total_frames: int) -> None:
        """Create an allocator with the given number of physical frames.

        Args:
            total_frames: Total number of frames in physical memory.

        """
        if total_frames < 1:
            msg = f"total_frames must be at least 1, got {total_frames}"
            raise ValueError(msg)
        self._frames = [Frame(frame_number=n) for n in range(total_frames)]
        self._free: deque[int] = deque(range(total_frames))
        # Insertion-ordered: allocation order for the clock sweep.
        self._allocated: dict[int, None] = {}
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        """Return the global frame lock."""
        return self._lock

    @property
    def total_frames(self) -> int:
        """Return the total number of physical frames."""
        return len(self._frames)

    @property
    def free_count(self) -> int:
        """Return the number of currently free frames."""
        with self._lock:
            return len(self._free)

    def allocated_frames(self) -> list[int]:
        """Return non-free frames in allocation order."""
        with self._lock:
            return list(self._allocated)

    def evictable_frames(self) -> list[int]:
        """Return allocated, unpinned frames in allocation order."""
        with self._lock:
            return [
                n
                for n in self._allocated
                if self._frames[n].state is FrameState.ALLOCATED and not self._frames[n].pinned
            ]

    def frame(self, frame_number: int) -> Frame:
        """Return a snapshot of one frame's bookkeeping record."""
        with self._lock:
            return dataclasses.replace(self._record(frame_number))

    def owned_by(self, asid: int) -> list[int]:
        """Return every frame currently owned by an address space."""
        with self._lock:
            return [
                n
                for n in self._allocated
                if (owner := self._frames[n].owner) is not None and owner.asid == asid
            ]

    def allocate(self, owner: FrameOwner) -> int:
        """Take a frame from the free list and assign it to an owner.

        The frame starts out LOADING; call ``commit`` once its page is
        mapped.

        Returns:
            The allocated frame number.

        Raises:
            FramesExhaustedError: If the free list is empty.

        """
        with self._lock:
            if not self._free:
                msg = f"No free frames for page {owner.virtual_page} of space {owner.asid}"
                raise FramesExhaustedError(msg)
            number = self._free.popleft()
            frame = self._frames[number]
            frame.state = FrameState.LOADING
            frame.owner = owner
            self._allocated[number] = None
            return number

    def free(self, frame_number: int) -> None:
        """Return a frame to the free list.

        Raises:
            ValueError: If the frame is already free.

        """
        with self._lock:
            frame = self._record(frame_number)
            if frame.state is FrameState.FREE:
                msg = f"Frame {frame_number} is already free"
                raise ValueError(msg)
            frame.state = FrameState.FREE
            frame.owner = None
            frame.pinned = False
            del self._allocated[frame_number]
            self._free.append(frame_number)

    def begin_reclaim(self, frame_number: int) -> FrameOwner:
        """Mark an allocated frame as being evicted.

        Returns:
            The owner being evicted.

        Raises:
            ValueError: If the frame is not an allocated, unpinned frame.

        """
        with self._lock:
            frame = self._record(frame_number)
            if frame.state is not FrameState.ALLOCATED or frame.pinned or frame.owner is None:
                msg = f"Frame {frame_number} cannot be reclaimed (state={frame.state})"
                raise ValueError(msg)
            frame.state = FrameState.RECLAIMING
            return frame.owner

    def abort_reclaim(self, frame_number: int) -> None:
        """Give a RECLAIMING frame back to its current owner."""
        with self._lock:
            frame = self._record(frame_number)
            if frame.state is not FrameState.RECLAIMING:
                msg = f"Frame {frame_number} is not being reclaimed"
                raise ValueError(msg)
            frame.state = FrameState.ALLOCATED

    def reassign(self, frame_number: int, owner: FrameOwner) -> None:
        """Hand a RECLAIMING frame to a new owner.

        The frame becomes LOADING and moves to the back of the
        allocation order, exactly as if it had been freshly allocated.
        """
        with self._lock:
            frame = self._record(frame_number)
            if frame.state is not FrameState.RECLAIMING:
                msg = f"Frame {frame_number} is not being reclaimed"
                raise ValueError(msg)
            frame.state = FrameState.LOADING
            frame.owner = owner
            frame.pinned = False
            del self._allocated[frame_number]
            self._allocated[frame_number] = None

    def commit(self, frame_number: int) -> None:
        """Mark a LOADING frame as mapped, making it a replacement candidate."""
        with self._lock:
            frame = self._record(frame_number)
            if frame.state is not FrameState.LOADING:
                msg = f"Frame {frame_number} is not loading (state={frame.state})"
                raise ValueError(msg)
            frame.state = FrameState.ALLOCATED

    def in_transit(self) -> int:
        """Return how many frames are LOADING or RECLAIMING."""
        with self._lock:
            return sum(
                1
                for n in self._allocated
                if self._frames[n].state in {FrameState.LOADING, FrameState.RECLAIMING}
            )

    def set_pinned(self, frame_number: int, *, pinned: bool) -> None:
        """Pin or unpin an allocated frame; pinned frames are never evicted."""
        with self._lock:
            frame = self._record(frame_number)
            if frame.state is FrameState.FREE:
                msg = f"Frame {frame_number} is not allocated"
                raise ValueError(msg)
            frame.pinned = pinned

    def _record(self, frame_number: int) -> Frame:
        if not 0 <= frame_number < len(self._frames):
            msg = f"Frame {frame_number} does not exist"
            raise ValueError(msg)
        return self._frames[frame_number]


class PhysicalMemory:
    """Simulated RAM: one bytearray per frame.

    Storage for a frame is created on first use, so a large machine
    costs nothing until its frames are touched.
    """

    def __init__(self, *, frame_size: int) -> None:
        """Create empty physical memory with the given frame size."""
        self._frame_size = frame_size
        self._frames: dict[int, bytearray] = {}

    @property
    def frame_size(self) -> int:
        """Return the frame size in bytes."""
        return self._frame_size

    def _ensure_frame(self, frame_number: int) -> bytearray:
        if frame_number not in self._frames:
            self._frames[frame_number] = bytearray(self._frame_size)
        return self._frames[frame_number]

    def snapshot(self, frame_number: int) -> bytes:
        """Return a copy of a whole frame."""
        return bytes(self._ensure_frame(frame_number))

    def fill(self, frame_number: int, data: bytes) -> None:
        """Overwrite a whole frame, zero-padding short data.

        Raises:
            ValueError: If data is larger than a frame.

        """
        if len(data) > self._frame_size:
            msg = f"{len(data)} bytes do not fit a {self._frame_size}-byte frame"
            raise ValueError(msg)
        storage = self._ensure_frame(frame_number)
        storage[:] = data.ljust(self._frame_size, b"\x00")

    def zero(self, frame_number: int) -> None:
        """Clear a frame to all zero bytes."""
        self._frames[frame_number] = bytearray(self._frame_size)

    def read(self, frame_number: int, offset: int, size: int) -> bytes:
        """Read bytes from within one frame."""
        storage = self._ensure_frame(frame_number)
        return bytes(storage[offset : offset + size])

    def write(self, frame_number: int, offset: int, data: bytes) -> None:
        """Write bytes within one frame."""
        storage = self._ensure_frame(frame_number)
        storage[offset : offset + len(data)] = data
