"""Configuration for a simulated memory system.

A ``VMConfig`` is the "hardware data sheet" of one simulated machine:
how wide its addresses are, how many physical frames it has, how big
each CPU's TLB is, and which replacement algorithm the kernel runs.

Configs can be built in code or loaded from a JSON document::

    {
        "levels": [10, 10],
        "offset_bits": 12,
        "frame_count": 256,
        "tlb_capacity": 16,
        "replacement_policy": "clock",
        "allow_lazy_intermediate": true
    }

Every enum is a ``StrEnum`` so its JSON spelling is simply its value.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from py_vmm.addressing import AddressLayout

if TYPE_CHECKING:
    from pathlib import Path

DEFAULT_LEVELS = (9, 9, 9, 9)
DEFAULT_OFFSET_BITS = 12


class ReplacementKind(StrEnum):
    """Which page replacement algorithm to run."""

    CLOCK = "clock"
    FIFO = "fifo"
    LRU = "lru"


class TLBEviction(StrEnum):
    """How a full TLB picks the entry to overwrite."""

    LRU = "lru"
    ROUND_ROBIN = "round_robin"


class TLBManagement(StrEnum):
    """Who refills the TLB on a miss.

    HARDWARE: the MMU walks the page table itself (x86).
    SOFTWARE: the miss traps into the kernel, which refills (MIPS, SPARC).
    """

    HARDWARE = "hardware"
    SOFTWARE = "software"


class PageTableKind(StrEnum):
    """Which page table structure each address space uses."""

    MULTI_LEVEL = "multi_level"
    INVERTED = "inverted"


class ConfigError(ValueError):
    """Raise when a configuration is invalid or cannot be loaded."""


@dataclass(frozen=True)
class VMConfig:
    """Immutable description of a simulated memory system."""

    levels: tuple[int, ...] = DEFAULT_LEVELS
    """Index width of each page-table level, top level first."""

    offset_bits: int = DEFAULT_OFFSET_BITS
    """Width of the in-page byte offset; frame size is ``2**offset_bits``."""

    frame_count: int = 64
    """Number of physical frames."""

    tlb_capacity: int = 16
    """Entries per CPU TLB."""

    replacement_policy: ReplacementKind = ReplacementKind.CLOCK
    """Victim selection algorithm."""

    allow_lazy_intermediate: bool = True
    """Allocate missing page-table levels on first touch."""

    tlb_eviction: TLBEviction = TLBEviction.LRU
    tlb_management: TLBManagement = TLBManagement.HARDWARE
    num_cpus: int = 1
    page_table_kind: PageTableKind = PageTableKind.MULTI_LEVEL

    def __post_init__(self) -> None:
        """Validate field ranges.

        Raises:
            ConfigError: If any field is out of range.

        """
        try:
            AddressLayout(level_bits=tuple(self.levels), offset_bits=self.offset_bits)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        for name in ("frame_count", "tlb_capacity", "num_cpus"):
            value = getattr(self, name)
            if value < 1:
                msg = f"{name} must be at least 1, got {value}"
                raise ConfigError(msg)

    @property
    def layout(self) -> AddressLayout:
        """Return the address layout described by this config."""
        return AddressLayout(level_bits=tuple(self.levels), offset_bits=self.offset_bits)

    @property
    def frame_size(self) -> int:
        """Return the size of one frame in bytes."""
        return 1 << self.offset_bits

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VMConfig:
        """Build a config from a plain dict (e.g. decoded JSON).

        Unknown keys are rejected so typos do not silently fall back
        to defaults.

        Raises:
            ConfigError: If a key is unknown or a value is invalid.

        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            msg = f"Unknown config keys: {', '.join(unknown)}"
            raise ConfigError(msg)
        kwargs = dict(data)
        try:
            if "levels" in kwargs:
                kwargs["levels"] = tuple(int(b) for b in kwargs["levels"])
            if "replacement_policy" in kwargs:
                kwargs["replacement_policy"] = ReplacementKind(kwargs["replacement_policy"])
            if "tlb_eviction" in kwargs:
                kwargs["tlb_eviction"] = TLBEviction(kwargs["tlb_eviction"])
            if "tlb_management" in kwargs:
                kwargs["tlb_management"] = TLBManagement(kwargs["tlb_management"])
            if "page_table_kind" in kwargs:
                kwargs["page_table_kind"] = PageTableKind(kwargs["page_table_kind"])
        except (TypeError, ValueError) as e:
            msg = f"Invalid config value: {e}"
            raise ConfigError(msg) from e
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dict of this config."""
        return {
            "levels": list(self.levels),
            "offset_bits": self.offset_bits,
            "frame_count": self.frame_count,
            "tlb_capacity": self.tlb_capacity,
            "replacement_policy": self.replacement_policy.value,
            "allow_lazy_intermediate": self.allow_lazy_intermediate,
            "tlb_eviction": self.tlb_eviction.value,
            "tlb_management": self.tlb_management.value,
            "num_cpus": self.num_cpus,
            "page_table_kind": self.page_table_kind.value,
        }


def load_config(path: Path) -> VMConfig:
    """Load a config from a JSON file.

    Args:
        path: The file to read.

    Returns:
        The validated configuration.

    Raises:
        ConfigError: If the file cannot be read or is invalid.

    """
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        msg = f"Cannot load config: {e}"
        raise ConfigError(msg) from e
    if not isinstance(data, dict):
        msg = "Config document must be a JSON object"
        raise ConfigError(msg)
    return VMConfig.from_dict(data)  # pyright: ignore[reportUnknownArgumentType]
