"""
The contract every security provider implements.
"""
import re
import ssl
import threading
from typing import List, Optional, Tuple

import requests
from cryptography import x509

from . import crypto
from .errors import InvalidCallerFormat
from .models import CertificateInfo, EnrollmentResult

CALLER_RE = re.compile(r"^[a-z]+=([\w\.\-]+)")


class RequestSigner:
    """Interface for signing requests through an external signing service."""

    def kind(self) -> str:
        """Short description of the signer used in log messages."""
        raise NotImplementedError

    def sign(self, request: bytes, provider: 'SecurityProvider',
             cancel: Optional[threading.Event] = None) -> bytes:
        """Sign request on behalf of provider, returning the secured request."""
        raise NotImplementedError


class SecurityProvider:
    """Interface for identity, signing and trust operations."""

    def provider(self) -> str:
        """Name of the provider implementation."""
        raise NotImplementedError

    def identity(self) -> str:
        raise NotImplementedError

    def caller_name(self) -> str:
        """Caller name in the form choria=<identity>."""
        return f"choria={self.identity()}"

    def caller_identity(self, caller: str) -> str:
        """
        Extract the identity from a caller name like choria=<identity>.

        Raises:
            InvalidCallerFormat: If caller does not look like a caller name
        """
        match = CALLER_RE.match(caller)
        if match is None:
            raise InvalidCallerFormat(f"could not find a valid caller identity name in {caller}")

        return match.group(1)

    def validate(self) -> Tuple[List[str], bool]:
        """Report every problem with the current setup, returns (errors, ok)."""
        raise NotImplementedError

    def checksum_bytes(self, data: bytes) -> bytes:
        return crypto.checksum_bytes(data)

    def checksum_string(self, data: str) -> bytes:
        return crypto.checksum_string(data)

    def sign_bytes(self, data: bytes) -> bytes:
        raise NotImplementedError

    def sign_string(self, data: str) -> bytes:
        return self.sign_bytes(data.encode("utf-8"))

    def verify_signature_bytes(self, data: bytes, signature: bytes,
                               public_cert: Optional[bytes] = None) -> Tuple[bool, str]:
        """Verify signature over data, returns (ok, signer common name) and never raises."""
        raise NotImplementedError

    def tls_config(self) -> ssl.SSLContext:
        raise NotImplementedError

    def client_tls_config(self) -> ssl.SSLContext:
        raise NotImplementedError

    def http_client(self, secure: bool = True) -> requests.Session:
        raise NotImplementedError

    def verify_certificate(self, cert_pem: bytes, name: str) -> None:
        raise NotImplementedError

    def public_cert(self) -> x509.Certificate:
        raise NotImplementedError

    def public_cert_bytes(self) -> bytes:
        """The public certificate in PEM form."""
        raise NotImplementedError

    def public_cert_pem(self) -> bytes:
        """DER payload of the public certificate PEM block."""
        raise NotImplementedError

    def public_cert_txt(self) -> bytes:
        return self.public_cert_bytes()

    def certificate_info(self) -> CertificateInfo:
        return CertificateInfo.from_certificate(self.public_cert())

    def cache_public_data(self, cert_pem: bytes, identity: str) -> None:
        raise NotImplementedError

    def cached_public_data(self, identity: str) -> bytes:
        raise NotImplementedError

    def should_allow_caller(self, name: str, cert_pem: bytes) -> bool:
        raise NotImplementedError

    def enroll(self, cancel: Optional[threading.Event] = None, max_wait: float = 0,
               progress_callback=None) -> EnrollmentResult:
        raise NotImplementedError

    def remote_sign_request(self, request: bytes,
                            cancel: Optional[threading.Event] = None) -> bytes:
        raise NotImplementedError

    def is_remote_signing(self) -> bool:
        raise NotImplementedError


class FileSecurityDelegate(SecurityProvider):
    """Base for providers that hand signing, trust and caching to an embedded file provider."""

    def __init__(self):
        self.fsec = None

    def identity(self) -> str:
        return self.fsec.identity()

    def sign_bytes(self, data: bytes) -> bytes:
        return self.fsec.sign_bytes(data)

    def verify_signature_bytes(self, data: bytes, signature: bytes,
                               public_cert: Optional[bytes] = None) -> Tuple[bool, str]:
        return self.fsec.verify_signature_bytes(data, signature, public_cert)

    def privileged_verify_signature_bytes(self, data: bytes, signature: bytes, identity: str) -> bool:
        return self.fsec.privileged_verify_signature_bytes(data, signature, identity)

    def tls_config(self) -> ssl.SSLContext:
        return self.fsec.tls_config()

    def client_tls_config(self) -> ssl.SSLContext:
        return self.fsec.client_tls_config()

    def http_client(self, secure: bool = True) -> requests.Session:
        return self.fsec.http_client(secure)

    def verify_certificate(self, cert_pem: bytes, name: str) -> None:
        self.fsec.verify_certificate(cert_pem, name)

    def public_cert(self) -> x509.Certificate:
        return self.fsec.public_cert()

    def public_cert_bytes(self) -> bytes:
        return self.fsec.public_cert_bytes()

    def public_cert_pem(self) -> bytes:
        return self.fsec.public_cert_pem()

    def cache_public_data(self, cert_pem: bytes, identity: str) -> None:
        self.fsec.cache_public_data(cert_pem, identity)

    def cached_public_data(self, identity: str) -> bytes:
        return self.fsec.cached_public_data(identity)

    def should_allow_caller(self, name: str, cert_pem: bytes) -> bool:
        return self.fsec.should_allow_caller(name, cert_pem)

    def remote_sign_request(self, request: bytes,
                            cancel: Optional[threading.Event] = None) -> bytes:
        return self.fsec.remote_sign_request(request, cancel)

    def is_remote_signing(self) -> bool:
        return self.fsec.is_remote_signing()
