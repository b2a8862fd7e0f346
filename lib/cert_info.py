from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID


@dataclass
class CertInfo:
    subject_cn: Optional[str]
    issuer_cn: Optional[str]
    not_before: datetime        # naive UTC, matching the DB convention
    not_after: datetime
    sha256: str                 # colon-free lowercase hex

    @property
    def days_remaining(self) -> int:
        return (self.not_after - datetime.utcnow()).days


def _cn(name: x509.Name) -> Optional[str]:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else None


def load_cert_info(cert_path: str) -> CertInfo:
    """Parse the leaf certificate from a PEM file (the first block if it holds a chain)."""
    with open(cert_path, "rb") as f:
        cert = x509.load_pem_x509_certificates(f.read())[0]
    return CertInfo(
        subject_cn=_cn(cert.subject),
        issuer_cn=_cn(cert.issuer),
        not_before=cert.not_valid_before_utc.replace(tzinfo=None),
        not_after=cert.not_valid_after_utc.replace(tzinfo=None),
        sha256=cert.fingerprint(hashes.SHA256()).hex(),
    )
