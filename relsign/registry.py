"""Transform registry: which files in a release tree must be signed, and how.

Entries are keyed by DeepPath and consumed as they are applied. Whatever
is left after the whole source tree has been walked names files the plan
expected but never found.

A registry is normally loaded from a YAML sign plan::

    plan_version: "1"
    entries:
      - path: ["manual/windows.zip", "bin/app.exe"]
        transform: executable-sign
"""

from __future__ import annotations

import logging
import pathlib
import threading
from typing import Any, Dict, List, Mapping, Optional, Set

import yaml

from relsign.deep_path import DeepPath
from relsign.errors import ConfigError, PlanValidationError
from relsign.result import TransformOp
from relsign.schema import SIGN_PLAN_SCHEMA, validate_against_schema

logger = logging.getLogger(__name__)


class TransformRegistry:
    """Mapping DeepPath -> TransformOp with consume-once semantics."""

    def __init__(self, entries: Optional[Mapping[DeepPath, TransformOp]] = None):
        self._lock = threading.Lock()
        self._entries: Dict[DeepPath, TransformOp] = {}
        for path, op in (entries or {}).items():
            if op is TransformOp.NONE:
                raise ConfigError(f"registry entry {path} has transform 'none'")
            self._entries[path] = op

    def lookup(self, path: DeepPath) -> TransformOp:
        with self._lock:
            return self._entries.get(path, TransformOp.NONE)

    def consume(self, path: DeepPath) -> bool:
        """Remove ``path``; returns False if it was not (or no longer) registered."""
        with self._lock:
            return self._entries.pop(path, None) is not None

    def remaining_entries(self) -> List[DeepPath]:
        with self._lock:
            return sorted(self._entries)

    def ops(self) -> Set[TransformOp]:
        """Transform ops still awaiting a matching file."""
        with self._lock:
            return set(self._entries.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._entries


def registry_from_plan(plan: Any, *, source: str = "<plan>") -> TransformRegistry:
    """Build a registry from a parsed sign plan document."""
    errors = validate_against_schema(plan, SIGN_PLAN_SCHEMA)
    if errors:
        raise PlanValidationError(f"invalid sign plan {source}", errors)

    entries: Dict[DeepPath, TransformOp] = {}
    for i, raw in enumerate(plan["entries"]):
        path = DeepPath.of(*raw["path"])
        if path in entries:
            raise PlanValidationError(f"invalid sign plan {source}", [f"$.entries[{i}]: duplicate path {path}"])
        entries[path] = TransformOp(raw["transform"])

    logger.debug("loaded %d sign plan entries from %s", len(entries), source)
    return TransformRegistry(entries)


def load_plan(path: pathlib.Path) -> TransformRegistry:
    """Load and validate a YAML sign plan file."""
    path = pathlib.Path(path)
    if not path.exists():
        raise ConfigError(f"sign plan not found: {path}")
    try:
        plan = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return registry_from_plan(plan, source=str(path))
