"""Transform operations and transform results."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class TransformOp(Enum):
    """What to do with a leaf file named in the sign plan."""
    NONE = "none"
    CODE_SIGN = "code-sign"
    DETACHED_SIGNATURE = "detached-signature"
    EXECUTABLE_SIGN = "executable-sign"


class ResultKind(Enum):
    UNCHANGED = "unchanged"
    REPLACE = "replace"
    ADD_SIBLING = "add-sibling"


@dataclass(frozen=True)
class TransformResult:
    """Outcome of processing one file or archive entry.

    - ``UNCHANGED``: keep the original bytes.
    - ``REPLACE``: use ``new_content`` instead.
    - ``ADD_SIBLING``: write ``sibling_content`` as ``sibling_name`` in the
      same directory; the primary is replaced by ``new_content`` when set
      and otherwise left untouched.
    """
    kind: ResultKind
    new_content: Optional[bytes] = None
    sibling_name: str = ""
    sibling_content: Optional[bytes] = None

    def __post_init__(self) -> None:
        if self.kind is ResultKind.UNCHANGED:
            if self.new_content is not None or self.sibling_content is not None:
                raise ValueError("unchanged result carries no content")
        elif self.kind is ResultKind.REPLACE:
            if self.new_content is None or self.sibling_content is not None:
                raise ValueError("replace result carries new content and no sibling")
        elif self.kind is ResultKind.ADD_SIBLING:
            if self.sibling_content is None or not self.sibling_name:
                raise ValueError("sibling result needs a sibling name and content")
            if "/" in self.sibling_name:
                raise ValueError(f"sibling name must be a bare file name: {self.sibling_name!r}")

    @classmethod
    def unchanged(cls) -> "TransformResult":
        return cls(ResultKind.UNCHANGED)

    @classmethod
    def replace(cls, content: bytes) -> "TransformResult":
        return cls(ResultKind.REPLACE, new_content=content)

    @classmethod
    def with_sibling(
        cls,
        sibling_name: str,
        sibling_content: bytes,
        new_content: Optional[bytes] = None,
    ) -> "TransformResult":
        return cls(
            ResultKind.ADD_SIBLING,
            new_content=new_content,
            sibling_name=sibling_name,
            sibling_content=sibling_content,
        )

    def renamed(self, sibling_name: str) -> "TransformResult":
        """Same result with the sibling written under ``sibling_name``."""
        if not self.has_sibling or sibling_name == self.sibling_name:
            return self
        return replace(self, sibling_name=sibling_name)

    @property
    def replaces_primary(self) -> bool:
        return self.new_content is not None

    @property
    def has_sibling(self) -> bool:
        return self.sibling_content is not None
