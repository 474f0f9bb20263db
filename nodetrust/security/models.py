"""
Security models shared by the providers.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from . import crypto


@dataclass
class EnrollmentResult:
    """Outcome of a successful enrollment."""
    already_enrolled: bool
    attempts: int = 0
    csr_digest: str = ""


@dataclass
class SrvServer:
    """A host discovered through DNS SRV records."""
    host: str
    port: int
    scheme: str = "https"

    def url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


@dataclass
class CertificateInfo:
    """Information about a certificate."""
    subject: str
    issuer: str
    common_name: str
    dns_names: List[str]
    serial_number: str
    not_before: datetime
    not_after: datetime
    fingerprint: str

    @classmethod
    def from_certificate(cls, cert: x509.Certificate) -> 'CertificateInfo':
        return cls(
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            common_name=crypto.common_name(cert),
            dns_names=crypto.dns_names(cert),
            serial_number=str(cert.serial_number),
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            fingerprint=cert.fingerprint(hashes.SHA256()).hex()
        )
