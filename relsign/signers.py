"""Signer backends.

Each backend wraps one external signing tool. ``sign`` takes the original
file name (used for naming only; it need not exist on disk) and the file's
bytes, runs the tool in a private scratch directory, verifies the output
with the matching verification command, and returns a TransformResult.

Backends:
    AppleCodesignSigner   codesign (in-place, identity pinned by certificate SHA-1)
    GPGSigner             gpg --detach-sign (adds a ``.asc`` sibling)
    OsslsigncodeSigner    osslsigncode with a timestamp authority (in-place)

Any tool failure raises SigningError carrying the tool's output; a failed
verification raises VerificationError. Nothing is retried.
"""

from __future__ import annotations

import logging
import os
import pathlib
import posixpath
import subprocess
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Type

from relsign.certificates import SigningCertificate
from relsign.errors import ConfigError, SigningError, VerificationError
from relsign.result import TransformOp, TransformResult

logger = logging.getLogger(__name__)

TEMP_PREFIX = "relsign-"
DEFAULT_TIMESTAMP_URL = "http://timestamp.digicert.com"

# gpg-agent refuses socket paths that are too long, and macOS' default
# temp dir is long enough to hit that.
_SHORT_TEMP_ROOT = "/tmp"


def run_tool(
    argv: Sequence[str],
    *,
    input_bytes: Optional[bytes] = None,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[pathlib.Path] = None,
    error_cls: Type[SigningError] = SigningError,
) -> str:
    """Run an external tool, returning its merged output.

    Raises ``error_cls`` (carrying the output) on non-zero exit or when the
    executable cannot be started.
    """
    logger.debug("running %s", " ".join(argv))
    try:
        proc = subprocess.run(
            list(argv),
            input=input_bytes,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            env=dict(env) if env is not None else None,
            cwd=str(cwd) if cwd is not None else None,
            check=True,
        )
    except subprocess.CalledProcessError as ex:
        output = (ex.stdout or b"").decode("utf-8", errors="replace")
        raise error_cls(f"{argv[0]} exited with status {ex.returncode}", output) from ex
    except OSError as ex:
        raise error_cls(f"failed to run {argv[0]}: {ex}") from ex
    output = (proc.stdout or b"").decode("utf-8", errors="replace")
    if output.strip():
        logger.debug("%s: %s", argv[0], output.rstrip())
    return output


@contextmanager
def scratch_dir(short: bool = False) -> Iterator[pathlib.Path]:
    """Private temporary directory, removed on every exit path."""
    root = _SHORT_TEMP_ROOT if short and os.path.isdir(_SHORT_TEMP_ROOT) else None
    with tempfile.TemporaryDirectory(prefix=TEMP_PREFIX, dir=root) as td:
        yield pathlib.Path(td)


def _basename(original_name: str) -> str:
    name = posixpath.basename(original_name.replace("\\", "/"))
    if not name:
        raise SigningError(f"cannot derive a file name from {original_name!r}")
    return name


class Signer(ABC):
    """A signing backend for one TransformOp."""

    op: TransformOp = TransformOp.NONE
    suffix = ""

    @abstractmethod
    def sign(self, original_name: str, content: bytes) -> TransformResult:
        """Sign ``content`` and verify the result before returning it."""
        pass

    def sibling_name(self, original_name: str) -> str:
        """Name of the file a detached result is written to, next to ``original_name``."""
        return _basename(original_name) + self.suffix


class AppleCodesignSigner(Signer):
    """Code-sign Mach-O binaries in place with ``codesign``."""

    op = TransformOp.CODE_SIGN

    def __init__(
        self,
        identity: str,
        certificate: SigningCertificate,
        *,
        tool: str = "codesign",
    ):
        if not identity:
            raise ConfigError("code-sign requires a codesign identity")
        self.identity = identity
        self.certificate = certificate
        self.tool = tool

    def sign(self, original_name: str, content: bytes) -> TransformResult:
        with scratch_dir() as tmp:
            # codesign sometimes derives the Identifier from the file name,
            # so keep the original base name.
            target = tmp / _basename(original_name)
            target.write_bytes(content)
            self.sign_file(target)
            self.verify_file(target)
            return TransformResult.replace(target.read_bytes())

    def sign_file(self, path: pathlib.Path) -> None:
        run_tool([self.tool, "--sign", self.identity, "--force", "--", str(path)])

    def verify_file(self, path: pathlib.Path) -> None:
        requirement = f'certificate leaf = H"{self.certificate.sha1_fingerprint_hex}"'
        run_tool(
            [self.tool, "-vvv", f"-R={requirement}", "--", str(path)],
            error_cls=VerificationError,
        )


class GPGSigner(Signer):
    """Produce armored detached signatures with ``gpg``."""

    op = TransformOp.DETACHED_SIGNATURE
    suffix = ".asc"

    def __init__(
        self,
        identity: str,
        public_key: bytes,
        *,
        tool: str = "gpg",
    ):
        if not identity:
            raise ConfigError("detached-signature requires a GPG identity")
        if not public_key:
            raise ConfigError("detached-signature requires a GPG public key for verification")
        self.identity = identity
        self.public_key = public_key
        self.tool = tool

    def sign(self, original_name: str, content: bytes) -> TransformResult:
        sibling_name = self.sibling_name(original_name)
        with scratch_dir() as tmp:
            data = tmp / "data"
            data.write_bytes(content)
            signature = self.sign_file(data)
            self.verify_file(data, signature)
            return TransformResult.with_sibling(sibling_name, signature.read_bytes())

    def sign_file(self, path: pathlib.Path) -> pathlib.Path:
        """Write ``<path>.asc`` next to ``path`` and return its location."""
        path = pathlib.Path(path)
        signature = path.with_name(path.name + self.suffix)
        if signature.exists():
            signature.unlink()
        run_tool([
            self.tool,
            "--batch",
            "--yes",
            "--local-user", self.identity,
            "--armor",
            "--detach-sign",
            "--",
            str(path),
        ])
        if not signature.exists():
            raise SigningError(f"{self.tool} did not produce {signature}")
        return signature

    def verify_file(self, path: pathlib.Path, signature: pathlib.Path) -> None:
        """Verify against the configured public key only, in a throwaway keyring."""
        with scratch_dir(short=True) as gnupg_home:
            os.chmod(gnupg_home, 0o700)
            env = dict(os.environ)
            env["GNUPGHOME"] = str(gnupg_home)
            run_tool(
                [self.tool, "--batch", "--import"],
                input_bytes=self.public_key,
                env=env,
                error_cls=VerificationError,
            )
            run_tool(
                [self.tool, "--batch", "--verify", "--", str(signature), str(path)],
                env=env,
                error_cls=VerificationError,
            )


class OsslsigncodeSigner(Signer):
    """Authenticode-sign PE executables with ``osslsigncode``."""

    op = TransformOp.EXECUTABLE_SIGN

    def __init__(
        self,
        pkcs12_path: pathlib.Path,
        certificate: SigningCertificate,
        *,
        timestamp_url: str = DEFAULT_TIMESTAMP_URL,
        tool: str = "osslsigncode",
    ):
        if not pkcs12_path:
            raise ConfigError("executable-sign requires a PKCS#12 private key path")
        self.pkcs12_path = pathlib.Path(pkcs12_path)
        if not self.pkcs12_path.exists():
            raise ConfigError(f"PKCS#12 private key not found: {self.pkcs12_path}")
        self.certificate = certificate
        self.timestamp_url = timestamp_url
        self.tool = tool

    def sign(self, original_name: str, content: bytes) -> TransformResult:
        with scratch_dir() as tmp:
            unsigned = tmp / "unsigned.exe"
            signed = tmp / "signed.exe"
            unsigned.write_bytes(content)
            self.sign_file(unsigned, signed)
            self.verify_file(signed)
            return TransformResult.replace(signed.read_bytes())

    def sign_file(self, in_path: pathlib.Path, out_path: pathlib.Path) -> None:
        run_tool([
            self.tool, "sign",
            "-pkcs12", str(self.pkcs12_path),
            "-t", self.timestamp_url,
            "-in", str(in_path),
            "-out", str(out_path),
        ])

    def verify_file(self, path: pathlib.Path) -> None:
        with scratch_dir() as tmp:
            ca_file = tmp / "ca.pem"
            ca_file.write_bytes(self.certificate.pem)
            run_tool(
                [self.tool, "verify", "-in", str(path), "-CAfile", str(ca_file)],
                error_cls=VerificationError,
            )


class SignerSet:
    """The backends available for a run, keyed by TransformOp."""

    def __init__(self, signers: Sequence[Signer] = ()):
        self._signers: Dict[TransformOp, Signer] = {}
        for s in signers:
            self.register(s)

    def register(self, signer: Signer) -> None:
        if signer.op is TransformOp.NONE:
            raise ConfigError(f"{type(signer).__name__} does not declare a transform op")
        self._signers[signer.op] = signer

    def get(self, op: TransformOp) -> Signer:
        try:
            return self._signers[op]
        except KeyError:
            raise ConfigError(
                f"no signer configured for '{op.value}'; check the signing identities in the configuration"
            ) from None

    def ops(self) -> List[TransformOp]:
        return sorted(self._signers, key=lambda op: op.value)

    def __contains__(self, op: object) -> bool:
        return op in self._signers
