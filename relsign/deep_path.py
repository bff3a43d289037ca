"""DeepPath: the address of a file through nested archives.

Segment 0 is the path relative to the source root. Segment *i* is the
entry name inside the archive addressed by segments ``[0..i)``. Capacity
is fixed at three levels, e.g.::

    DeepPath.of("chocolatey/app.nupkg", "tools/windows-x64.zip", "bin/app.exe")

Unused slots hold the empty string, so equality and hashing are
structural and a DeepPath can be used directly as a dict key.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Tuple

from relsign.errors import DeepPathOverflowError

MAX_DEPTH = 3


@dataclass(frozen=True, order=True)
class DeepPath:
    parts: Tuple[str, str, str] = ("", "", "")

    def __post_init__(self) -> None:
        if len(self.parts) != MAX_DEPTH:
            raise DeepPathOverflowError(
                f"DeepPath holds exactly {MAX_DEPTH} slots, got {len(self.parts)}"
            )
        seen_empty = False
        for part in self.parts:
            if not part:
                seen_empty = True
            elif seen_empty:
                raise ValueError(f"DeepPath segments must be filled left to right: {self.parts!r}")

    @classmethod
    def of(cls, *segments: str) -> "DeepPath":
        """Build a DeepPath from 1 to 3 non-empty segments."""
        if not 1 <= len(segments) <= MAX_DEPTH:
            raise DeepPathOverflowError(
                f"DeepPath takes 1 to {MAX_DEPTH} segments, got {len(segments)}"
            )
        for s in segments:
            if not s:
                raise ValueError("DeepPath segments must be non-empty")
        padded = tuple(segments) + ("",) * (MAX_DEPTH - len(segments))
        return cls(padded)  # type: ignore[arg-type]

    def append(self, child: str) -> "DeepPath":
        """Return a new DeepPath with ``child`` placed in the first unused slot."""
        if not child:
            raise ValueError("cannot append an empty segment to a DeepPath")
        parts = list(self.parts)
        for i, part in enumerate(parts):
            if not part:
                parts[i] = child
                return DeepPath(tuple(parts))  # type: ignore[arg-type]
        raise DeepPathOverflowError(f"cannot append {child!r} to {self}; DeepPath has no space left")

    def last(self) -> str:
        """Deepest filled segment (the leaf file name)."""
        for part in reversed(self.parts):
            if part:
                return part
        return ""

    @property
    def depth(self) -> int:
        return sum(1 for p in self.parts if p)

    @property
    def can_append(self) -> bool:
        return not self.parts[-1]

    def segments(self) -> Iterator[str]:
        return (p for p in self.parts if p)

    def __str__(self) -> str:
        return "!".join(self.segments())
