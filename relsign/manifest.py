"""SHA256SUMS digest manifest.

One line per top-level destination file, in the order files were written::

    <64 lowercase hex>  <relative/posix/path>

The format is the one ``sha256sum --check`` / ``shasum -a 256 --check``
accept; ``verify_manifest`` performs the same check in-process.
"""

from __future__ import annotations

import logging
import pathlib
from dataclasses import dataclass, field
from typing import List, Tuple

from relsign.core import is_valid_sha256, sha256_file
from relsign.errors import ManifestError

logger = logging.getLogger(__name__)

DEFAULT_MANIFEST_NAME = "SHA256SUMS"
_SEPARATOR = "  "


@dataclass
class DigestManifest:
    entries: List[Tuple[str, str]] = field(default_factory=list)

    def add(self, digest: str, relative_path: str) -> None:
        if not is_valid_sha256(digest):
            raise ValueError(f"not a sha256 hex digest: {digest!r}")
        if "\n" in relative_path:
            raise ManifestError(f"file name contains a newline: {relative_path!r}")
        self.entries.append((digest, relative_path))

    def add_file(self, path: pathlib.Path, relative_path: str) -> str:
        digest = sha256_file(path)
        self.add(digest, relative_path)
        return digest

    def render(self) -> str:
        return "".join(f"{digest}{_SEPARATOR}{rel}\n" for digest, rel in self.entries)

    def write(self, path: pathlib.Path) -> pathlib.Path:
        path = pathlib.Path(path)
        path.write_bytes(self.render().encode("utf-8"))
        logger.info("wrote %d digests to %s", len(self.entries), path)
        return path


def parse_manifest(text: str) -> DigestManifest:
    manifest = DigestManifest()
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line:
            continue
        digest, sep, rel = line.partition(_SEPARATOR)
        if not sep or not rel or not is_valid_sha256(digest):
            raise ManifestError(f"malformed manifest line {lineno}: {line!r}")
        manifest.add(digest, rel)
    return manifest


def verify_manifest(path: pathlib.Path) -> int:
    """Re-hash every file listed in the manifest at ``path``.

    Paths are resolved relative to the manifest's directory. Returns the
    number of verified entries; all mismatches are reported in one
    ManifestError.
    """
    path = pathlib.Path(path)
    manifest = parse_manifest(path.read_text(encoding="utf-8"))
    base = path.parent
    problems: List[str] = []
    for digest, rel in manifest.entries:
        target = base / rel
        if not target.is_file():
            problems.append(f"{rel}: missing")
            continue
        actual = sha256_file(target)
        if actual != digest:
            problems.append(f"{rel}: expected {digest}, found {actual}")
    if problems:
        raise ManifestError(f"{path} does not match the files on disk:\n  " + "\n  ".join(problems))
    logger.info("%s: %d files OK", path.name, len(manifest.entries))
    return len(manifest.entries)
