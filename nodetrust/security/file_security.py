"""
Security provider using certificates, keys and a CA bundle from configured file paths.
"""
import logging
import os
import ssl
import threading
from typing import List, Optional, Tuple

import requests
from cryptography import x509

from ..models.config import FileSecurityConfig
from . import crypto
from .cert_cache import CertificateCache
from .errors import (
    ConfigurationInvalid,
    EnrollmentUnsupported,
    MalformedCertificate,
    RemoteSigningUnavailable,
    UnsupportedKeyType,
)
from .models import EnrollmentResult
from .provider import SecurityProvider
from .tls import TLSConfigBuilder
from .trust_engine import TrustEngine


class FileSecurity(SecurityProvider):
    """Security provider where all material is supplied as paths on disk."""

    def __init__(self, config: FileSecurityConfig):
        if config is None:
            raise ConfigurationInvalid("configuration not given")

        if not config.identity:
            raise ConfigurationInvalid("identity could not be determined")

        self.config = config
        self.logger = logging.getLogger(__name__)

        self.trust_engine = TrustEngine(
            ca_path=config.ca,
            allow_list=config.allow_list,
            privileged_users=config.privileged_users,
        )
        self.cache = CertificateCache(
            cache_dir=config.cache,
            trust_engine=self.trust_engine,
            always_overwrite=config.always_overwrite_cache,
        )

        if config.backward_compat_verification:
            self.logger.info("Enabling support for legacy SAN free certificates")

    def provider(self) -> str:
        return "file"

    def identity(self) -> str:
        return self.config.identity

    def validate(self) -> Tuple[List[str], bool]:
        """Check that the certificate, key and CA are configured and present."""
        errors = []

        for path, missing, unset in [
            (self.config.certificate, "public certificate %s does not exist",
             "the public certificate path is not configured"),
            (self.config.key, "private key %s does not exist",
             "the private key path is not configured"),
            (self.config.ca, "CA %s does not exist",
             "the CA path is not configured"),
        ]:
            if not path:
                errors.append(unset)
            elif not os.path.exists(path):
                errors.append(missing % path)

        return errors, len(errors) == 0

    def sign_bytes(self, data: bytes) -> bytes:
        """
        Sign data with the private key using SHA-256 and PKCS#1 v1.5.

        Raises:
            UnsupportedKeyType: If the key cannot be read or is not RSA
        """
        try:
            with open(self.config.key, 'rb') as f:
                key_pem = f.read()
        except OSError as e:
            raise UnsupportedKeyType(f"could not read Private Key {self.config.key}: {e}")

        key = crypto.load_rsa_private_key(key_pem)
        return crypto.sign(key, data)

    def verify_signature_bytes(self, data: bytes, signature: bytes,
                               public_cert: Optional[bytes] = None) -> Tuple[bool, str]:
        """
        Verify signature over data using public_cert, or our own certificate
        when none is given.

        Returns:
            Tuple of (ok, signer common name), (False, "") on any failure
        """
        try:
            if public_cert is None:
                public_cert = self.public_cert_bytes()
            cert = crypto.parse_certificate(public_cert)
        except (OSError, MalformedCertificate) as e:
            self.logger.error(f"Could not load certificate for signature verification: {e}")
            return False, ""

        if not crypto.verify(cert, data, signature):
            self.logger.debug(f"Signature verification using {crypto.common_name(cert)} failed")
            return False, ""

        return True, crypto.common_name(cert)

    def verify_identity_signature_bytes(self, data: bytes, signature: bytes, identity: str) -> bool:
        """Verify signature using the cached certificate of identity."""
        certfile = self.cache.path_for(identity)
        self.logger.debug(f"Attempting to verify signature for {identity} using {certfile}")

        try:
            with open(certfile, 'rb') as f:
                cert_pem = f.read()
        except OSError as e:
            self.logger.warning(f"Could not read cached certificate for {identity}: {e}")
            return False

        ok, _ = self.verify_signature_bytes(data, signature, cert_pem)
        return ok

    def privileged_verify_signature_bytes(self, data: bytes, signature: bytes, identity: str) -> bool:
        """Accept a signature made by identity or by any cached privileged certificate."""
        candidates = []
        if identity and self.cache.exists(identity):
            candidates.append(identity)

        candidates.extend(self.cache.privileged_identities())

        for candidate in candidates:
            if self.verify_identity_signature_bytes(data, signature, candidate):
                self.logger.debug(f"Allowing certificate {candidate} to act as {identity}")
                return True

        return False

    def tls_config(self) -> ssl.SSLContext:
        return self._tls_builder().server_context()

    def client_tls_config(self) -> ssl.SSLContext:
        return self._tls_builder().client_context()

    def http_client(self, secure: bool = True) -> requests.Session:
        return self._tls_builder().http_session(secure)

    def _tls_builder(self) -> TLSConfigBuilder:
        return TLSConfigBuilder(
            certificate_path=self.config.certificate,
            key_path=self.config.key,
            ca_path=self.config.ca,
            settings=self.config.tls,
            disable_tls_verify=self.config.disable_tls_verify,
            backward_compat_verification=self.config.backward_compat_verification,
        )

    def verify_certificate(self, cert_pem: bytes, name: str) -> None:
        self.trust_engine.verify_certificate(cert_pem, name)

    def public_cert_bytes(self) -> bytes:
        with open(self.config.certificate, 'rb') as f:
            return f.read()

    def public_cert_pem(self) -> bytes:
        return crypto.certificate_der(self.public_cert())

    def public_cert(self) -> x509.Certificate:
        return crypto.parse_certificate(self.public_cert_bytes())

    def cache_public_data(self, cert_pem: bytes, identity: str) -> None:
        self.cache.store(cert_pem, identity)

    def cached_public_data(self, identity: str) -> bytes:
        return self.cache.load(identity)

    def should_allow_caller(self, name: str, cert_pem: bytes) -> bool:
        return self.trust_engine.should_allow_caller(name, cert_pem)

    def enroll(self, cancel: Optional[threading.Event] = None, max_wait: float = 0,
               progress_callback=None) -> EnrollmentResult:
        raise EnrollmentUnsupported("the file security provider does not support enrollment")

    def remote_sign_request(self, request: bytes,
                            cancel: Optional[threading.Event] = None) -> bytes:
        signer = self.config.remote_signer
        if signer is None:
            raise RemoteSigningUnavailable("remote signing not configured")

        self.logger.info(f"Signing request using {signer.kind()}")
        return signer.sign(request, self, cancel)

    def is_remote_signing(self) -> bool:
        return self.config.remote_signer is not None
