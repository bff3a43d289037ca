"""
relsign: release artifact signing engine.

Copies an unsigned release tree to a destination, signing the files a sign
plan names, including files nested inside .tar.gz and zip-family archives
(up to three levels deep), then proves after the fact that the run was
complete and deterministic.

Architecture
────────────

    pipeline.py     walks the source tree, writes the destination, manifest
    dispatch.py     routes each file or archive entry to a rebuilder or signer
    tarball.py      streaming .tar.gz rebuild
    zipball.py      in-memory zip rebuild with raw copy of untouched entries
    signers.py      codesign, gpg and osslsigncode backends
    cache.py        content-addressed transform cache
    registry.py     sign plan loading and consume-once lookup
    invariants.py   completeness and determinism checks
    manifest.py     SHA256SUMS writing and verification
"""

__version__ = "0.1.0"

from relsign.cache import CacheStats, TransformCache
from relsign.deep_path import DeepPath
from relsign.dispatch import Dispatcher
from relsign.errors import (
    ArchiveError,
    CompletenessError,
    ConfigError,
    DeterminismError,
    ManifestError,
    RelsignError,
    SigningError,
    VerificationError,
)
from relsign.pipeline import ReleaseSigner, RunSummary
from relsign.registry import TransformRegistry, load_plan, registry_from_plan
from relsign.result import ResultKind, TransformOp, TransformResult
from relsign.signers import (
    AppleCodesignSigner,
    GPGSigner,
    OsslsigncodeSigner,
    Signer,
    SignerSet,
)

__all__ = [
    "__version__",
    # Core types
    "DeepPath",
    "TransformOp",
    "ResultKind",
    "TransformResult",
    # Engine
    "TransformRegistry",
    "registry_from_plan",
    "load_plan",
    "TransformCache",
    "CacheStats",
    "Dispatcher",
    "ReleaseSigner",
    "RunSummary",
    # Signers
    "Signer",
    "SignerSet",
    "AppleCodesignSigner",
    "GPGSigner",
    "OsslsigncodeSigner",
    # Errors
    "RelsignError",
    "ConfigError",
    "ArchiveError",
    "SigningError",
    "VerificationError",
    "CompletenessError",
    "DeterminismError",
    "ManifestError",
]
