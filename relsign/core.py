"""Core primitives for relsign.

- SHA-256 content digests (lowercase hex)
- Archive format sniffing by file name
- JSON loading with consistent encoding
"""

from __future__ import annotations

import hashlib
import json
import pathlib
import re
from typing import Any, BinaryIO

SHA256_HEX_RE = re.compile(r"^[a-f0-9]{64}$")

TAR_GZ_SUFFIXES = (".tar.gz", ".tgz")
ZIP_SUFFIXES = (".nupkg", ".vsix", ".zip")

_READ_CHUNK = 1024 * 1024


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def sha256_stream(stream: BinaryIO) -> str:
    """Compute SHA-256 of a binary stream, reading it to EOF."""
    h = hashlib.sha256()
    while True:
        chunk = stream.read(_READ_CHUNK)
        if not chunk:
            break
        h.update(chunk)
    return h.hexdigest()


def sha256_file(path: pathlib.Path) -> str:
    """Compute SHA-256 hash of file contents."""
    with open(path, "rb") as f:
        return sha256_stream(f)


def is_valid_sha256(digest: str) -> bool:
    """Check if string is a valid SHA-256 hex digest."""
    return bool(SHA256_HEX_RE.match(digest or ""))


def looks_like_tar_gz(name: str) -> bool:
    return name.endswith(TAR_GZ_SUFFIXES)


def looks_like_zip(name: str) -> bool:
    return name.endswith(ZIP_SUFFIXES)


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
