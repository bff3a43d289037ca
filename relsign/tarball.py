"""Gzip-compressed tar rebuilding.

The source is decompressed and decoded in a single streaming pass. Every
regular-file member is handed to the dispatcher, and a new archive is
encoded member by member in the original order. Members are never
dropped; a detached signature is inserted right after the member it
signs.

The output gzip header carries the process-start time and no file name,
so rebuilding the same input twice yields the same bytes.
"""

from __future__ import annotations

import gzip
import io
import logging
import posixpath
import tarfile
import zlib
from typing import BinaryIO, Callable, Iterator, Tuple

from relsign.deep_path import DeepPath
from relsign.errors import ArchiveError
from relsign.result import TransformResult

logger = logging.getLogger(__name__)

TransformFn = Callable[[DeepPath, BinaryIO], TransformResult]

# pax records that shadow the ustar fields we rewrite
_PAX_TIME_KEYS = ("atime", "ctime")

_CORRUPT_ERRORS = (tarfile.TarError, gzip.BadGzipFile, zlib.error, EOFError)


def iter_tar_gz(source: BinaryIO, *, label: str = "") -> Iterator[Tuple[tarfile.TarInfo, bytes]]:
    """Yield ``(member, content)`` for every member of a .tar.gz stream.

    Non-regular members yield empty content. A member whose data is
    shorter than its declared size is an ArchiveError.
    """
    try:
        with tarfile.open(fileobj=source, mode="r|gz") as tar:
            for member in tar:
                content = b""
                if member.isfile():
                    extracted = tar.extractfile(member)
                    if extracted is None:
                        raise ArchiveError(f"{label}: cannot read member {member.name!r}")
                    content = extracted.read()
                    if len(content) != member.size:
                        raise ArchiveError(
                            f"{label}: member {member.name!r} declares {member.size} bytes "
                            f"but {len(content)} were read"
                        )
                yield member, content
    except _CORRUPT_ERRORS as e:
        raise ArchiveError(f"{label}: corrupt tar.gz archive: {e}") from e


def _apply_replacement(member: tarfile.TarInfo, size: int, mtime: int) -> None:
    member.size = size
    member.mtime = mtime
    if "size" in member.pax_headers:
        member.pax_headers["size"] = str(size)
    if "mtime" in member.pax_headers:
        member.pax_headers["mtime"] = str(mtime)
    for key in _PAX_TIME_KEYS:
        if key in member.pax_headers:
            member.pax_headers[key] = str(mtime)


def _sibling_member(member: tarfile.TarInfo, name: str, size: int, mtime: int) -> tarfile.TarInfo:
    sibling = tarfile.TarInfo(posixpath.join(posixpath.dirname(member.name), name))
    sibling.type = tarfile.REGTYPE
    sibling.size = size
    sibling.mode = member.mode & ~0o111
    sibling.uid = member.uid
    sibling.gid = member.gid
    sibling.uname = member.uname
    sibling.gname = member.gname
    sibling.mtime = mtime
    return sibling


def rebuild_tar_gz(
    archive_path: DeepPath,
    source: BinaryIO,
    transform: TransformFn,
    *,
    mtime: int,
) -> bytes:
    """Rewrite a .tar.gz stream, dispatching each regular file through ``transform``."""
    out = io.BytesIO()
    with gzip.GzipFile(filename="", mode="wb", fileobj=out, mtime=mtime) as gz_out:
        with tarfile.open(fileobj=gz_out, mode="w|", format=tarfile.PAX_FORMAT) as tar_out:
            for member, content in iter_tar_gz(source, label=str(archive_path)):
                if not member.isfile():
                    tar_out.addfile(member)
                    continue

                result = transform(archive_path.append(member.name), io.BytesIO(content))
                if result.replaces_primary:
                    content = result.new_content  # type: ignore[assignment]
                    _apply_replacement(member, len(content), mtime)
                tar_out.addfile(member, io.BytesIO(content))

                if result.has_sibling:
                    sibling_content = result.sibling_content or b""
                    sibling = _sibling_member(member, result.sibling_name, len(sibling_content), mtime)
                    logger.debug("adding %s to %s", sibling.name, archive_path)
                    tar_out.addfile(sibling, io.BytesIO(sibling_content))
    return out.getvalue()
