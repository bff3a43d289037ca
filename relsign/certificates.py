"""Trust material used by the signer backends.

The signing certificate is used twice: its SHA-1 fingerprint pins the
code-signing identity during ``codesign`` verification, and its PEM form
is the CA file for ``osslsigncode verify``. The detached-signature public
key is imported into a throwaway GnuPG home for verification.
"""

from __future__ import annotations

import pathlib
from dataclasses import dataclass

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization

from relsign.errors import ConfigError

_PEM_MARKER = b"-----BEGIN"


@dataclass(frozen=True)
class SigningCertificate:
    """An X.509 certificate, loaded from DER or PEM."""
    certificate: x509.Certificate

    @classmethod
    def from_bytes(cls, data: bytes) -> "SigningCertificate":
        try:
            if data.lstrip().startswith(_PEM_MARKER):
                cert = x509.load_pem_x509_certificate(data)
            else:
                cert = x509.load_der_x509_certificate(data)
        except ValueError as e:
            raise ConfigError(f"cannot parse signing certificate: {e}") from e
        return cls(cert)

    @classmethod
    def load(cls, path: pathlib.Path) -> "SigningCertificate":
        path = pathlib.Path(path)
        if not path.exists():
            raise ConfigError(f"signing certificate not found: {path}")
        return cls.from_bytes(path.read_bytes())

    @property
    def der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)

    @property
    def pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    @property
    def sha1_fingerprint_hex(self) -> str:
        # SHA-1 of the DER encoding; codesign requirement language pins leaf certs this way.
        return self.certificate.fingerprint(hashes.SHA1()).hex()

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()


def load_public_key_block(path: pathlib.Path) -> bytes:
    """Read an exported GnuPG public key (armored or binary)."""
    path = pathlib.Path(path)
    if not path.exists():
        raise ConfigError(f"GPG public key not found: {path}")
    data = path.read_bytes()
    if not data.strip():
        raise ConfigError(f"GPG public key is empty: {path}")
    return data
