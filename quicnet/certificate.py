"""Server certificates: fingerprints, self-signed generation, PEM files."""

from __future__ import annotations

import base64
import datetime
import hashlib
import ipaddress
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from .errors import EndpointCertificateError

logger = logging.getLogger(__name__)

_FINGERPRINT_LEN = 32
_CERT_PEM_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----(.*?)-----END CERTIFICATE-----", re.DOTALL
)


@dataclass(frozen=True)
class CertificateFingerprint:
    """SHA-256 hash of a certificate in DER form."""

    digest: bytes

    def __post_init__(self) -> None:
        if len(self.digest) != _FINGERPRINT_LEN:
            raise ValueError(f"fingerprint must be {_FINGERPRINT_LEN} bytes")

    @classmethod
    def from_der(cls, cert_der: bytes) -> "CertificateFingerprint":
        """Compute the fingerprint of a DER encoded certificate."""
        return cls(hashlib.sha256(cert_der).digest())

    def to_base64(self) -> str:
        """Encode the fingerprint in base64."""
        return base64.b64encode(self.digest).decode("ascii")

    def __str__(self) -> str:
        return self.to_base64()


@dataclass(frozen=True)
class CertOrigin:
    """Where a certificate came from: generated for a hostname, or loaded."""

    server_hostname: Optional[str] = None

    @property
    def generated(self) -> bool:
        return self.server_hostname is not None


@dataclass(frozen=True)
class GenerateSelfSigned:
    """Always generate a new self-signed certificate."""

    server_hostname: str


@dataclass(frozen=True)
class LoadFromFile:
    """Load the certificate chain and key from PEM files."""

    cert_file: str
    key_file: str


@dataclass(frozen=True)
class LoadFromFileOrGenerateSelfSigned:
    """Load from PEM files if both exist, otherwise generate (and maybe save)."""

    cert_file: str
    key_file: str
    save_on_disk: bool
    server_hostname: str


CertificateRetrievalMode = Union[
    GenerateSelfSigned, LoadFromFile, LoadFromFileOrGenerateSelfSigned
]


@dataclass
class ServerCertificate:
    """A server certificate chain in DER form with its PKCS#8 DER key."""

    cert_chain: List[bytes]
    priv_key: bytes
    fingerprint: CertificateFingerprint


def _pkcs8_der(key) -> bytes:
    return key.private_bytes(
        serialization.Encoding.DER,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


def read_cert_from_files(cert_file: str, key_file: str) -> ServerCertificate:
    """Read a PEM certificate chain and a PEM private key."""
    try:
        cert_data = Path(cert_file).read_bytes()
        key_data = Path(key_file).read_bytes()
    except OSError as err:
        raise EndpointCertificateError(f"I/O error: {err}") from err

    try:
        cert_chain = [
            base64.b64decode(b"".join(block.split()), validate=True)
            for block in _CERT_PEM_RE.findall(cert_data)
        ]
    except ValueError as err:
        raise EndpointCertificateError(f"Invalid certificate file: {err}") from err
    if not cert_chain:
        raise EndpointCertificateError(f"No certificate found in {cert_file}")

    try:
        key = serialization.load_pem_private_key(key_data, None)
    except (ValueError, TypeError) as err:
        raise EndpointCertificateError(f"Invalid private key file: {err}") from err

    return ServerCertificate(
        cert_chain=cert_chain,
        priv_key=_pkcs8_der(key),
        fingerprint=CertificateFingerprint.from_der(cert_chain[0]),
    )


def write_cert_to_files(
    cert_pem: bytes, key_pem: bytes, cert_file: str, key_file: str
) -> None:
    """Write PEM data to the given files, creating parent directories."""
    try:
        for path in (cert_file, key_file):
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        Path(cert_file).write_bytes(cert_pem)
        Path(key_file).write_bytes(key_pem)
    except OSError as err:
        raise EndpointCertificateError(f"I/O error: {err}") from err


def _subject_alt_name(server_hostname: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(server_hostname))
    except ValueError:
        return x509.DNSName(server_hostname)


def generate_self_signed_certificate(
    server_hostname: str,
) -> Tuple[ServerCertificate, bytes, bytes]:
    """Generate a self-signed certificate for ``server_hostname``.

    Returns the certificate with its certificate and key in PEM form.
    """
    try:
        key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "self signed cert")])
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(datetime.datetime(1975, 1, 1))
            .not_valid_after(datetime.datetime(4096, 1, 1))
            .add_extension(
                x509.SubjectAlternativeName([_subject_alt_name(server_hostname)]),
                critical=False,
            )
            .sign(key, hashes.SHA256())
        )
    except (ValueError, TypeError) as err:
        raise EndpointCertificateError(
            f"Failed to generate a self-signed certificate: {err}"
        ) from err

    cert_der = cert.public_bytes(serialization.Encoding.DER)
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    server_cert = ServerCertificate(
        cert_chain=[cert_der],
        priv_key=_pkcs8_der(key),
        fingerprint=CertificateFingerprint.from_der(cert_der),
    )
    return server_cert, cert_pem, key_pem


def retrieve_certificate(cert_mode: CertificateRetrievalMode) -> ServerCertificate:
    """Obtain the server certificate as described by ``cert_mode``."""
    if isinstance(cert_mode, GenerateSelfSigned):
        server_cert, _, _ = generate_self_signed_certificate(cert_mode.server_hostname)
        logger.debug("Generated a new self-signed certificate")
        return server_cert
    if isinstance(cert_mode, LoadFromFile):
        server_cert = read_cert_from_files(cert_mode.cert_file, cert_mode.key_file)
        logger.debug("Successfully loaded cert and key from files")
        return server_cert
    if isinstance(cert_mode, LoadFromFileOrGenerateSelfSigned):
        if Path(cert_mode.cert_file).exists() and Path(cert_mode.key_file).exists():
            server_cert = read_cert_from_files(cert_mode.cert_file, cert_mode.key_file)
            logger.debug("Successfully loaded cert and key from files")
            return server_cert
        logger.warning(
            "%s and/or %s do not exist, could not load existing certificate. "
            "Generating a new self-signed certificate.",
            cert_mode.cert_file,
            cert_mode.key_file,
        )
        server_cert, cert_pem, key_pem = generate_self_signed_certificate(
            cert_mode.server_hostname
        )
        if cert_mode.save_on_disk:
            write_cert_to_files(
                cert_pem, key_pem, cert_mode.cert_file, cert_mode.key_file
            )
            logger.debug("Successfully saved cert and key to files")
        return server_cert
    raise TypeError(f"unsupported certificate retrieval mode: {cert_mode!r}")