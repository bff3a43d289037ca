"""Post-run invariant checks.

Completeness
    Every sign plan entry must have been consumed. All leftovers are
    reported together.

Determinism ("double signing")
    If two files in the source tree are bit-identical, their counterparts
    in the destination tree must be bit-identical too. The check re-hashes
    both trees independently of the transform cache, descending into
    archives as deep as the transform engine does, so it validates the
    dispatcher instead of trusting it.
"""

from __future__ import annotations

import io
import logging
import os
import pathlib
from collections import defaultdict
from typing import BinaryIO, Dict, List, Set, Tuple

from relsign.core import looks_like_tar_gz, looks_like_zip, sha256_bytes
from relsign.deep_path import DeepPath
from relsign.errors import CompletenessError, DeterminismError
from relsign.registry import TransformRegistry
from relsign.tarball import iter_tar_gz
from relsign.zipball import iter_zip, open_zip

logger = logging.getLogger(__name__)


def check_completeness(registry: TransformRegistry) -> None:
    missing = registry.remaining_entries()
    for path in missing:
        logger.error("file should have been signed but wasn't: %s", path)
    if missing:
        raise CompletenessError(missing)


class DeepHasher:
    """Collects DeepPath -> sha256 for a tree, including archive members."""

    def __init__(self) -> None:
        self.hashes: Dict[DeepPath, str] = {}

    def hash_directory(self, root: pathlib.Path) -> Dict[DeepPath, str]:
        root = pathlib.Path(root)
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for name in sorted(filenames):
                full = pathlib.Path(dirpath) / name
                rel = full.relative_to(root).as_posix()
                with open(full, "rb") as f:
                    self.hash_stream(DeepPath.of(rel), f)
        return self.hashes

    def hash_stream(self, path: DeepPath, stream: BinaryIO) -> None:
        content = stream.read()
        self.hashes[path] = sha256_bytes(content)

        leaf = path.last()
        if not path.can_append:
            return
        if looks_like_tar_gz(leaf):
            for member, member_content in iter_tar_gz(io.BytesIO(content), label=str(path)):
                if member.isfile():
                    self.hash_stream(path.append(member.name), io.BytesIO(member_content))
        elif looks_like_zip(leaf):
            with open_zip(content, label=str(path)) as zf:
                for info, entry_content in iter_zip(zf, label=str(path)):
                    if not info.is_dir():
                        self.hash_stream(path.append(info.filename), io.BytesIO(entry_content))


def find_double_signing(
    source_hashes: Dict[DeepPath, str],
    destination_hashes: Dict[DeepPath, str],
) -> List[Tuple[DeepPath, DeepPath]]:
    """Return destination path pairs that differ although their sources match.

    Paths that only exist in the destination (added signatures) are ignored;
    a source path missing from the destination counts as an empty digest.
    """
    source_to_destinations: Dict[str, Set[str]] = defaultdict(set)
    destination_to_paths: Dict[str, List[DeepPath]] = defaultdict(list)
    for path in sorted(source_hashes):
        dest_hash = destination_hashes.get(path, "")
        source_to_destinations[source_hashes[path]].add(dest_hash)
        destination_to_paths[dest_hash].append(path)

    violations: List[Tuple[DeepPath, DeepPath]] = []
    for source_hash in sorted(source_to_destinations):
        dest_hashes = source_to_destinations[source_hash]
        if len(dest_hashes) <= 1:
            continue
        representatives = sorted(
            next(p for p in destination_to_paths[h] if source_hashes[p] == source_hash)
            for h in dest_hashes
        )
        for previous, current in zip(representatives, representatives[1:]):
            violations.append((previous, current))
    return violations


def check_double_signing(source_dir: pathlib.Path, destination_dir: pathlib.Path) -> None:
    source_hashes = DeepHasher().hash_directory(source_dir)
    destination_hashes = DeepHasher().hash_directory(destination_dir)

    violations = find_double_signing(source_hashes, destination_hashes)
    for a, b in violations:
        logger.error(
            "bug detected in release signing: destination %s and %s have different hashes "
            "despite coming from bit-identical sources",
            a,
            b,
        )
    if violations:
        raise DeterminismError(violations)
