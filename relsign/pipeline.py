"""
Release signing pipeline.

Walks a source release tree and writes the signed tree:

    1. every directory is recreated with the source permission bits
    2. every file goes through the Dispatcher (archives are rebuilt,
       registered files signed, everything else copied)
    3. post-run checks: completeness of the sign plan, then determinism
    4. SHA256SUMS is written, detached-signed and verified, then re-checked
       against the files on disk
    5. the configured source tarball, if any, is detached-signed

Any error aborts the run. A destination file that was being written when
the error happened is removed; files finished before it are left alone.
"""

from __future__ import annotations

import logging
import os
import pathlib
import shutil
import stat
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

from relsign.cache import TransformCache
from relsign.certificates import SigningCertificate, load_public_key_block
from relsign.config import RelsignConfig
from relsign.deep_path import DeepPath
from relsign.dispatch import Dispatcher
from relsign.errors import ConfigError, UnsupportedFileError
from relsign.invariants import check_completeness, check_double_signing
from relsign.manifest import DEFAULT_MANIFEST_NAME, DigestManifest, verify_manifest
from relsign.registry import TransformRegistry, load_plan
from relsign.result import TransformOp
from relsign.signers import (
    AppleCodesignSigner,
    GPGSigner,
    OsslsigncodeSigner,
    SignerSet,
)

logger = logging.getLogger(__name__)

_EXECUTE_BITS = stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH


@dataclass
class RunSummary:
    """What a completed run produced."""
    files_written: List[str] = field(default_factory=list)
    manifest_path: Optional[pathlib.Path] = None
    detached_signatures: List[pathlib.Path] = field(default_factory=list)
    signer_invocations: int = 0
    cache_hits: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "files_written": len(self.files_written),
            "manifest": str(self.manifest_path) if self.manifest_path else None,
            "detached_signatures": [str(p) for p in self.detached_signatures],
            "signer_invocations": self.signer_invocations,
            "cache_hits": self.cache_hits,
        }


def _write_file(path: pathlib.Path, data: bytes, mode: int) -> None:
    """Write ``data`` to ``path``; a partially written file is removed."""
    try:
        with open(path, "wb") as f:
            f.write(data)
        os.chmod(path, mode)
    except BaseException:
        _remove_partial(path)
        raise


def _copy_file(source: pathlib.Path, destination: pathlib.Path, st: os.stat_result) -> None:
    try:
        shutil.copyfile(source, destination)
        os.chmod(destination, stat.S_IMODE(st.st_mode))
        os.utime(destination, ns=(st.st_atime_ns, st.st_mtime_ns))
    except BaseException:
        _remove_partial(destination)
        raise


def _remove_partial(path: pathlib.Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    else:
        logger.warning("removed partially written %s", path)


def _is_within(path: pathlib.Path, root: pathlib.Path) -> bool:
    path, root = path.resolve(), root.resolve()
    return path == root or root in path.parents


def _walk_lexical(root: pathlib.Path) -> Iterator[Tuple[pathlib.Path, bool]]:
    """Yield (path, is_dir) below ``root`` depth-first in lexical order."""
    for name in sorted(os.listdir(root)):
        path = root / name
        if path.is_symlink() and path.is_dir():
            raise UnsupportedFileError(f"symbolic links are not supported: {path}")
        if path.is_dir():
            yield path, True
            yield from _walk_lexical(path)
        else:
            yield path, False


class ReleaseSigner:
    """
    Owns everything one signing run needs: the sign plan registry, the
    transform cache, the signer backends and the run start time.
    """

    def __init__(
        self,
        registry: TransformRegistry,
        signers: SignerSet,
        *,
        manifest_name: str = DEFAULT_MANIFEST_NAME,
        source_tarball: Optional[str] = None,
        started_at: Optional[int] = None,
        cache: Optional[TransformCache] = None,
    ):
        self.registry = registry
        self.signers = signers
        self.cache = cache if cache is not None else TransformCache()
        self.manifest_name = manifest_name
        self.source_tarball = source_tarball or None
        self.started_at = int(started_at if started_at is not None else time.time())
        self.dispatcher = Dispatcher(self.registry, self.cache, self.signers, started_at=self.started_at)
        self._claimed: Set[str] = set()

        needed = set(self.registry.ops())
        needed.add(TransformOp.DETACHED_SIGNATURE)
        missing = sorted(op.value for op in needed if op not in self.signers)
        if missing:
            raise ConfigError(
                "no signer configured for: " + ", ".join(missing)
                + "; check the signing identities in the configuration"
            )

    def run(self, source_dir: pathlib.Path, destination_dir: pathlib.Path) -> RunSummary:
        source_dir = pathlib.Path(source_dir)
        destination_dir = pathlib.Path(destination_dir)
        if not source_dir.is_dir():
            raise ConfigError(f"source is not a directory: {source_dir}")
        if _is_within(destination_dir, source_dir):
            raise ConfigError("destination must not be the source directory or lie inside it")
        if (source_dir / self.manifest_name).exists():
            raise ConfigError(f"source tree already contains {self.manifest_name}")
        for rel in filter(None, (self.manifest_name, self.source_tarball)):
            signature = self._signature_rel(rel)
            if (source_dir / signature).exists():
                raise ConfigError(f"source tree already contains {signature}, which this run signs")

        logger.info("signing release %s -> %s", source_dir, destination_dir)
        summary = RunSummary()
        summary.files_written = self.transform_tree(source_dir, destination_dir)
        tarball = self._check_source_tarball(destination_dir)

        check_completeness(self.registry)
        check_double_signing(source_dir, destination_dir)

        summary.manifest_path = self.write_manifest(destination_dir, summary.files_written)
        summary.detached_signatures.append(self.sign_detached(summary.manifest_path))
        verify_manifest(summary.manifest_path)

        if tarball is not None:
            summary.detached_signatures.append(self.sign_detached(tarball))

        stats = self.cache.stats()
        summary.signer_invocations = stats.misses
        summary.cache_hits = stats.hits
        logger.info(
            "release signed: %d files, %d signer invocations, %d cache hits",
            len(summary.files_written),
            summary.signer_invocations,
            summary.cache_hits,
        )
        return summary

    def transform_tree(self, source_dir: pathlib.Path, destination_dir: pathlib.Path) -> List[str]:
        """Mirror ``source_dir`` into ``destination_dir``; returns written paths in walk order.

        Entries are visited in lexical order, descending into each directory
        where it sorts, so ``a/x`` comes before ``b``.
        """
        written: List[str] = []
        self._claimed = set()
        # Directory modes are applied last so read-only source directories
        # can still be filled.
        directory_modes = [(destination_dir, stat.S_IMODE(source_dir.stat().st_mode))]
        destination_dir.mkdir(parents=True, exist_ok=True)

        for src, is_dir in _walk_lexical(source_dir):
            rel = src.relative_to(source_dir).as_posix()
            if is_dir:
                dst = destination_dir / rel
                dst.mkdir(exist_ok=True)
                directory_modes.append((dst, stat.S_IMODE(src.stat().st_mode)))
            else:
                written.extend(self.transform_file(rel, src, destination_dir / rel))

        for directory, mode in reversed(directory_modes):
            os.chmod(directory, mode)
        return written

    def transform_file(self, rel: str, source: pathlib.Path, destination: pathlib.Path) -> List[str]:
        """Copy or transform one top-level file; returns the destination-relative paths written."""
        st = os.lstat(source)
        if not stat.S_ISREG(st.st_mode):
            raise UnsupportedFileError(f"not a regular file: {source}")
        mode = stat.S_IMODE(st.st_mode)
        self._claim(rel, f"{rel} was already written in this run")

        with open(source, "rb") as f:
            result = self.dispatcher.transform(DeepPath.of(rel), f)

        if result.replaces_primary:
            _write_file(destination, result.new_content or b"", mode)
        else:
            _copy_file(source, destination, st)
        written = [rel]

        if result.has_sibling:
            if (source.parent / result.sibling_name).exists():
                raise ConfigError(
                    f"{rel}: signature {result.sibling_name} would overwrite a file from the source tree"
                )
            sibling_rel = (pathlib.PurePosixPath(rel).parent / result.sibling_name).as_posix()
            self._claim(sibling_rel, f"{rel}: signature {sibling_rel} was already written in this run")
            _write_file(destination.with_name(result.sibling_name), result.sibling_content or b"", mode & ~_EXECUTE_BITS)
            written.append(sibling_rel)
        return written

    def _claim(self, rel: str, message: str) -> None:
        if rel in self._claimed:
            raise ConfigError(message)
        self._claimed.add(rel)

    def _check_source_tarball(self, destination_dir: pathlib.Path) -> Optional[pathlib.Path]:
        if not self.source_tarball:
            return None
        tarball = destination_dir / self.source_tarball
        if not tarball.is_file():
            raise ConfigError(f"source tarball not found in destination: {tarball}")
        if self._signature_rel(self.source_tarball) in self._claimed:
            raise ConfigError(f"{self.source_tarball} is already detach-signed by the sign plan")
        return tarball

    def _signature_rel(self, rel: str) -> str:
        signer = self.signers.get(TransformOp.DETACHED_SIGNATURE)
        return (pathlib.PurePosixPath(rel).parent / signer.sibling_name(rel)).as_posix()

    def write_manifest(self, destination_dir: pathlib.Path, files: List[str]) -> pathlib.Path:
        manifest = DigestManifest()
        skip = {self.manifest_name, self.manifest_name + GPGSigner.suffix}
        for rel in files:
            if rel in skip:
                continue
            manifest.add_file(destination_dir / rel, rel)
        return manifest.write(destination_dir / self.manifest_name)

    def sign_detached(self, path: pathlib.Path) -> pathlib.Path:
        """Detached-sign a finished destination file, writing the signature next to it."""
        logger.info("signing with %s: %s", TransformOp.DETACHED_SIGNATURE.value, path)
        signer = self.signers.get(TransformOp.DETACHED_SIGNATURE)
        result = signer.sign(path.name, path.read_bytes())
        if not result.has_sibling:
            raise ConfigError(f"{type(signer).__name__} did not produce a detached signature")
        signature = path.with_name(result.sibling_name)
        _write_file(signature, result.sibling_content or b"", 0o644)
        return signature


def build_signers(config: RelsignConfig) -> SignerSet:
    """Instantiate the backends whose identities are configured."""
    signers = SignerSet()

    certificate: Optional[SigningCertificate] = None
    certificate_path = config.optional_path("signing.certificate_path")
    if certificate_path:
        certificate = SigningCertificate.load(certificate_path)

    codesign_identity = config.get("signing.codesign_identity")
    if codesign_identity:
        if certificate is None:
            raise ConfigError("code-sign requires signing.certificate_path")
        signers.register(AppleCodesignSigner(
            codesign_identity, certificate, tool=config.get("tools.codesign"),
        ))

    gpg_identity = config.get("signing.gpg_identity")
    if gpg_identity:
        key_path = config.optional_path("signing.gpg_public_key_path")
        if key_path is None:
            raise ConfigError("detached-signature requires signing.gpg_public_key_path")
        signers.register(GPGSigner(
            gpg_identity, load_public_key_block(key_path), tool=config.get("tools.gpg"),
        ))

    pkcs12_path = config.optional_path("signing.pkcs12_path")
    if pkcs12_path:
        if certificate is None:
            raise ConfigError("executable-sign requires signing.certificate_path")
        signers.register(OsslsigncodeSigner(
            pkcs12_path,
            certificate,
            timestamp_url=config.get("signing.timestamp_url"),
            tool=config.get("tools.osslsigncode"),
        ))

    logger.debug("configured signers: %s", ", ".join(op.value for op in signers.ops()) or "none")
    return signers


def build_release_signer(config: RelsignConfig) -> ReleaseSigner:
    plan_path = config.optional_path("release.plan_path")
    if plan_path:
        registry = load_plan(plan_path)
    else:
        logger.warning("no sign plan configured; files will be copied without signing")
        registry = TransformRegistry()
    return ReleaseSigner(
        registry,
        build_signers(config),
        manifest_name=config.get("release.manifest_name"),
        source_tarball=config.get("release.source_tarball"),
    )
