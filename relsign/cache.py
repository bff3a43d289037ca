"""Content-addressed transform cache.

Signing tools are slow, and several of them are not byte-idempotent
(embedded timestamps, timestamp-authority countersignatures). The cache
maps the SHA-256 of a file's original bytes to the TransformResult it
received, so every occurrence of the same bytes anywhere in the release
tree gets exactly the same treatment.

Entries are never evicted; the cache lives for one run.

Usage:
    cache = TransformCache()
    result = cache.get_or_compute(digest, lambda: signer.sign(name, data))
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from relsign.core import is_valid_sha256
from relsign.result import TransformResult


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    entries: int = 0

    @property
    def total_requests(self) -> int:
        return self.hits + self.misses

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "entries": self.entries,
            "total_requests": self.total_requests,
        }


class TransformCache:
    """Digest -> TransformResult with single-flight computation.

    ``get_or_compute`` runs ``compute`` at most once per digest. Concurrent
    callers asking for a digest that is being computed wait for the
    producer and receive its result, or its exception. Errors are not
    cached.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, TransformResult] = {}
        self._computing: Dict[str, threading.Event] = {}
        self._compute_errors: Dict[str, BaseException] = {}
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get(self, digest: str) -> Optional[TransformResult]:
        with self._lock:
            result = self._entries.get(digest)
            if result is None:
                self._misses += 1
            else:
                self._hits += 1
            return result

    def put(self, digest: str, result: TransformResult) -> None:
        if not is_valid_sha256(digest):
            raise ValueError(f"cache key must be a lowercase sha256 hex digest: {digest!r}")
        with self._lock:
            self._entries[digest] = result

    def __contains__(self, digest: object) -> bool:
        with self._lock:
            return digest in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_or_compute(
        self,
        digest: str,
        compute: Callable[[], TransformResult],
    ) -> TransformResult:
        with self._lock:
            cached = self._entries.get(digest)
            if cached is not None:
                self._hits += 1
                return cached
            self._misses += 1

            # Check if another thread is computing
            if digest in self._computing:
                event: Optional[threading.Event] = self._computing[digest]
            else:
                self._computing[digest] = threading.Event()
                self._compute_errors.pop(digest, None)
                event = None

        if event is not None:
            event.wait()
            with self._lock:
                if digest in self._compute_errors:
                    raise self._compute_errors[digest]
                result = self._entries.get(digest)
            if result is None:
                raise RuntimeError(f"transform cache: no result available for {digest}")
            return result

        try:
            result = compute()
            self.put(digest, result)
            return result
        except BaseException as e:
            with self._lock:
                self._compute_errors[digest] = e
            raise
        finally:
            with self._lock:
                done = self._computing.pop(digest, None)
            if done is not None:
                done.set()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(hits=self._hits, misses=self._misses, entries=len(self._entries))
