"""Zip-family rebuilding (.zip, .nupkg, .vsix).

Zip needs random access to its central directory, so the whole archive
is held in memory. Entries the dispatcher leaves alone are copied with
their original compressed bytes, compression method and CRC; only
replaced entries and new sibling entries are compressed afresh.
"""

from __future__ import annotations

import copy
import io
import logging
import posixpath
import struct
import zipfile
import zlib
from typing import BinaryIO, Callable, Iterator, Tuple

from relsign.deep_path import DeepPath
from relsign.errors import ArchiveError
from relsign.result import TransformResult

logger = logging.getLogger(__name__)

TransformFn = Callable[[DeepPath, BinaryIO], TransformResult]
DateTime = Tuple[int, int, int, int, int, int]

# Local file header field indexes (APPNOTE 4.3.7)
_FH_SIGNATURE = 0
_FH_FILENAME_LENGTH = 10
_FH_EXTRA_FIELD_LENGTH = 11

_MASK_USE_DATA_DESCRIPTOR = 0x08

SIBLING_MODE = 0o644

_CORRUPT_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError)


def open_zip(data: bytes, *, label: str = "") -> zipfile.ZipFile:
    try:
        return zipfile.ZipFile(io.BytesIO(data), "r")
    except _CORRUPT_ERRORS as e:
        raise ArchiveError(f"{label}: corrupt zip archive: {e}") from e


def iter_zip(zf: zipfile.ZipFile, *, label: str = "") -> Iterator[Tuple[zipfile.ZipInfo, bytes]]:
    """Yield ``(info, content)`` for every entry; directories yield empty content."""
    for info in zf.infolist():
        if info.is_dir():
            yield info, b""
            continue
        try:
            content = zf.read(info)
        except _CORRUPT_ERRORS as e:
            raise ArchiveError(f"{label}: cannot read entry {info.filename!r}: {e}") from e
        yield info, content


def raw_entry_bytes(archive: bytes, info: zipfile.ZipInfo, *, label: str = "") -> bytes:
    """Return the still-compressed data of ``info`` as stored in ``archive``."""
    offset = info.header_offset
    header = archive[offset:offset + zipfile.sizeFileHeader]
    if len(header) != zipfile.sizeFileHeader:
        raise ArchiveError(f"{label}: truncated local header for {info.filename!r}")
    fields = struct.unpack(zipfile.structFileHeader, header)
    if fields[_FH_SIGNATURE] != zipfile.stringFileHeader:
        raise ArchiveError(f"{label}: bad local header magic for {info.filename!r}")
    start = offset + zipfile.sizeFileHeader + fields[_FH_FILENAME_LENGTH] + fields[_FH_EXTRA_FIELD_LENGTH]
    raw = archive[start:start + info.compress_size]
    if len(raw) != info.compress_size:
        raise ArchiveError(
            f"{label}: entry {info.filename!r} declares {info.compress_size} compressed bytes "
            f"but only {len(raw)} are present"
        )
    return raw


def write_raw_entry(dst: zipfile.ZipFile, info: zipfile.ZipInfo, raw: bytes) -> None:
    """Append an entry whose data is already compressed.

    CRC and sizes come from ``info``, so they go in the local header and no
    data descriptor is written.
    """
    zinfo = copy.copy(info)
    zinfo.flag_bits &= ~_MASK_USE_DATA_DESCRIPTOR
    dst.fp.seek(dst.start_dir)
    zinfo.header_offset = dst.fp.tell()
    dst.fp.write(zinfo.FileHeader())
    dst.fp.write(raw)
    dst.start_dir = dst.fp.tell()
    dst.filelist.append(zinfo)
    dst.NameToInfo[zinfo.filename] = zinfo


def _replacement_info(info: zipfile.ZipInfo, size: int, date_time: DateTime) -> zipfile.ZipInfo:
    zinfo = copy.copy(info)
    zinfo.date_time = date_time
    zinfo.file_size = size
    return zinfo


def _sibling_info(info: zipfile.ZipInfo, name: str, date_time: DateTime) -> zipfile.ZipInfo:
    zinfo = zipfile.ZipInfo(posixpath.join(posixpath.dirname(info.filename), name), date_time=date_time)
    zinfo.compress_type = zipfile.ZIP_DEFLATED
    zinfo.create_system = info.create_system
    zinfo.external_attr = SIBLING_MODE << 16
    return zinfo


def rebuild_zip(
    archive_path: DeepPath,
    data: bytes,
    transform: TransformFn,
    *,
    date_time: DateTime,
) -> bytes:
    """Rewrite a zip archive held in memory, dispatching each file entry through ``transform``."""
    label = str(archive_path)
    out = io.BytesIO()
    with open_zip(data, label=label) as src, zipfile.ZipFile(out, "w") as dst:
        for info, content in iter_zip(src, label=label):
            if info.is_dir():
                write_raw_entry(dst, info, raw_entry_bytes(data, info, label=label))
                continue

            result = transform(archive_path.append(info.filename), io.BytesIO(content))
            if result.replaces_primary:
                new_content = result.new_content or b""
                dst.writestr(
                    _replacement_info(info, len(new_content), date_time),
                    new_content,
                    compress_type=info.compress_type,
                )
            else:
                write_raw_entry(dst, info, raw_entry_bytes(data, info, label=label))

            if result.has_sibling:
                sibling = _sibling_info(info, result.sibling_name, date_time)
                logger.debug("adding %s to %s", sibling.filename, archive_path)
                dst.writestr(sibling, result.sibling_content or b"")
    return out.getvalue()
