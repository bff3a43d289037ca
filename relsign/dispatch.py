"""Archive transform dispatcher.

Given a DeepPath and the bytes found there, decide what happens:

1. ``.tar.gz`` / ``.tgz``            -> recurse through the tar rebuilder
2. ``.zip`` / ``.nupkg`` / ``.vsix``  -> recurse through the zip rebuilder
3. otherwise consult the registry; unregistered files are left unchanged,
   registered files are signed through the content-addressed cache.

Archives are always rewritten, even when nothing inside them is signed.
Nested archives are never signed directly, so the archive checks come
before the registry lookup.
"""

from __future__ import annotations

import logging
import time
from typing import BinaryIO, Tuple

from relsign.cache import TransformCache
from relsign.core import looks_like_tar_gz, looks_like_zip, sha256_bytes
from relsign.deep_path import DeepPath
from relsign.registry import TransformRegistry
from relsign.result import TransformOp, TransformResult
from relsign.signers import SignerSet
from relsign.tarball import rebuild_tar_gz
from relsign.zipball import rebuild_zip

logger = logging.getLogger(__name__)

_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


class Dispatcher:
    """Routes each file or archive entry to a rebuilder, a signer, or nowhere.

    ``started_at`` (whole seconds since the epoch) is stamped on every
    rewritten entry so archive bytes do not depend on how long signing took.
    """

    def __init__(
        self,
        registry: TransformRegistry,
        cache: TransformCache,
        signers: SignerSet,
        *,
        started_at: int,
    ):
        self.registry = registry
        self.cache = cache
        self.signers = signers
        self.started_at = int(started_at)

    @property
    def zip_date_time(self) -> Tuple[int, int, int, int, int, int]:
        # zip cannot represent dates before 1980
        return max(time.gmtime(self.started_at)[:6], _ZIP_EPOCH)  # type: ignore[return-value]

    def transform(self, path: DeepPath, stream: BinaryIO) -> TransformResult:
        leaf = path.last()

        if looks_like_tar_gz(leaf):
            logger.debug("rewriting tar.gz %s", path)
            return TransformResult.replace(
                rebuild_tar_gz(path, stream, self.transform, mtime=self.started_at)
            )

        if looks_like_zip(leaf):
            logger.debug("rewriting zip %s", path)
            return TransformResult.replace(
                rebuild_zip(path, stream.read(), self.transform, date_time=self.zip_date_time)
            )

        op = self.registry.lookup(path)
        if op is TransformOp.NONE:
            return TransformResult.unchanged()
        return self._sign(path, op, stream.read())

    def _sign(self, path: DeepPath, op: TransformOp, content: bytes) -> TransformResult:
        digest = sha256_bytes(content)
        signer = self.signers.get(op)

        def compute() -> TransformResult:
            logger.info("signing with %s: %s", op.value, path)
            return signer.sign(path.last(), content)

        if digest in self.cache:
            logger.info("reusing %s result for identical content: %s", op.value, path)
        result = self.cache.get_or_compute(digest, compute)
        self.registry.consume(path)
        # cached results are shared by content; the sibling name follows this path
        return result.renamed(signer.sibling_name(path.last()))
