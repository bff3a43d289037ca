import gzip
import hashlib
import io
import logging
import os
import pathlib
import sys
import tarfile
import zipfile
from typing import Dict, Iterable, List, Tuple, Union

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import relsign`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from relsign.result import TransformOp, TransformResult  # noqa: E402
from relsign.signers import Signer, SignerSet  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "tools: needs real signing tools such as gpg (skipped unless RELSIGN_RUN_TOOLS=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    run_tools = _env_flag('RELSIGN_RUN_TOOLS')

    for item in items:
        if 'tools' in item.keywords and not run_tools:
            item.add_marker(pytest.mark.skip(reason='tool tests skipped; set RELSIGN_RUN_TOOLS=1 to enable'))


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path):
    """Keep RELSIGN_* settings and ./relsign.yaml from leaking into tests."""
    for key in list(os.environ):
        if key.startswith("RELSIGN_") and key != "RELSIGN_RUN_TOOLS":
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    yield
    logger = logging.getLogger("relsign")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


# ─────────────────────────────────────────────────────────────────────────────
# Fake signers
# ─────────────────────────────────────────────────────────────────────────────

SIGNATURE_TRAILER = b"\n-- signed --\n"


class FakeSigner(Signer):
    """Deterministic stand-in for an external signing tool.

    In-place ops append a trailer; detached signatures are the sha256 of
    the content. Every invocation is recorded in ``calls``.
    """

    def __init__(self, op: TransformOp):
        self.op = op
        if op is TransformOp.DETACHED_SIGNATURE:
            self.suffix = ".asc"
        self.calls: List[Tuple[str, bytes]] = []

    def sign(self, original_name: str, content: bytes) -> TransformResult:
        self.calls.append((original_name, content))
        if self.op is TransformOp.DETACHED_SIGNATURE:
            return TransformResult.with_sibling(self.sibling_name(original_name), fake_signature(content))
        return TransformResult.replace(content + SIGNATURE_TRAILER)


class FailingSigner(FakeSigner):
    def sign(self, original_name: str, content: bytes) -> TransformResult:
        from relsign.errors import SigningError

        self.calls.append((original_name, content))
        raise SigningError(f"refusing to sign {original_name}", "fake tool output")


def fake_signature(content: bytes) -> bytes:
    return b"FAKE SIGNATURE " + hashlib.sha256(content).hexdigest().encode("ascii") + b"\n"


@pytest.fixture
def fake_signers() -> Dict[TransformOp, FakeSigner]:
    return {
        op: FakeSigner(op)
        for op in (TransformOp.CODE_SIGN, TransformOp.DETACHED_SIGNATURE, TransformOp.EXECUTABLE_SIGN)
    }


@pytest.fixture
def signer_set(fake_signers: Dict[TransformOp, FakeSigner]) -> SignerSet:
    return SignerSet(list(fake_signers.values()))


@pytest.fixture
def expected():
    """What the fake signers produce for given content."""

    class _Expected:
        @staticmethod
        def signed(content: bytes) -> bytes:
            return content + SIGNATURE_TRAILER

        @staticmethod
        def signature(content: bytes) -> bytes:
            return fake_signature(content)

    return _Expected


@pytest.fixture
def failing_signer():
    """Factory for a signer that always raises SigningError."""
    return FailingSigner


# ─────────────────────────────────────────────────────────────────────────────
# Archive builders
# ─────────────────────────────────────────────────────────────────────────────

Entries = Iterable[Tuple[str, Union[bytes, None]]]


def make_tar_gz(entries: Entries, *, mode: int = 0o755, mtime: int = 1_600_000_000) -> bytes:
    """Build a .tar.gz; a ``None`` payload makes a directory member."""
    buf = io.BytesIO()
    with gzip.GzipFile(filename="", mode="wb", fileobj=buf, mtime=mtime) as gz:
        with tarfile.open(fileobj=gz, mode="w|", format=tarfile.PAX_FORMAT) as tar:
            for name, content in entries:
                info = tarfile.TarInfo(name)
                info.mtime = mtime
                info.uid = 1000
                info.gid = 1000
                info.uname = "builder"
                info.gname = "builders"
                if content is None:
                    info.type = tarfile.DIRTYPE
                    info.mode = 0o755
                    tar.addfile(info)
                else:
                    info.mode = mode
                    info.size = len(content)
                    tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def make_zip(
    entries: Entries,
    *,
    compression: int = zipfile.ZIP_DEFLATED,
    date_time: Tuple[int, int, int, int, int, int] = (2020, 9, 13, 12, 26, 40),
) -> bytes:
    """Build a zip; a ``None`` payload makes a directory entry."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in entries:
            if content is None:
                info = zipfile.ZipInfo(name.rstrip("/") + "/", date_time=date_time)
                info.external_attr = (0o40755 << 16) | 0x10
                zf.writestr(info, b"")
            else:
                info = zipfile.ZipInfo(name, date_time=date_time)
                info.compress_type = compression
                info.external_attr = 0o755 << 16
                zf.writestr(info, content)
    return buf.getvalue()


def read_tar_gz(data: bytes) -> Dict[str, Tuple[tarfile.TarInfo, bytes]]:
    out = {}
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
        for member in tar.getmembers():
            content = b""
            if member.isfile():
                f = tar.extractfile(member)
                assert f is not None
                content = f.read()
            out[member.name] = (member, content)
    return out


def read_zip(data: bytes) -> Dict[str, Tuple[zipfile.ZipInfo, bytes]]:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return {info.filename: (info, zf.read(info)) for info in zf.infolist()}


@pytest.fixture
def archives():
    """Archive builder/reader helpers."""

    class _Archives:
        tar_gz = staticmethod(make_tar_gz)
        zip = staticmethod(make_zip)
        read_tar_gz = staticmethod(read_tar_gz)
        read_zip = staticmethod(read_zip)

    return _Archives


# ─────────────────────────────────────────────────────────────────────────────
# Trust material and stand-in executables
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def signing_certificate():
    """A throwaway self-signed certificate wrapped as a SigningCertificate."""
    import datetime

    from cryptography import x509
    from cryptography.hazmat.primitives import hashes
    from cryptography.hazmat.primitives.asymmetric import ec
    from cryptography.x509.oid import NameOID

    from relsign.certificates import SigningCertificate

    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "relsign test")])
    now = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=30))
        .sign(key, hashes.SHA256())
    )
    return SigningCertificate(cert)


@pytest.fixture
def fake_tool(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    """Write an executable shell script standing in for a signing tool.

    Every invocation appends its arguments to the file named by
    FAKE_TOOL_LOG, returned as ``fake_tool.log``.
    """
    if os.name == "nt":
        pytest.skip("shell-script tools need a POSIX shell")
    bin_dir = tmp_path / "fake-bin"
    bin_dir.mkdir()
    log = tmp_path / "fake-tool.log"
    log.touch()
    monkeypatch.setenv("FAKE_TOOL_LOG", str(log))

    def make(name: str, body: str) -> str:
        script = bin_dir / name
        script.write_text('#!/bin/sh\necho "$@" >> "$FAKE_TOOL_LOG"\n' + body, encoding="utf-8")
        script.chmod(0o755)
        return str(script)

    make.log = log  # type: ignore[attr-defined]
    return make
