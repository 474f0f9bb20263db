"""
Security provider backed by a PKCS#11 token holding the private key and certificate.
"""
import getpass
import logging
import os
import ssl
import threading
from typing import Callable, List, Optional, Tuple

import pkcs11
import requests
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from pkcs11 import Attribute, Mechanism, ObjectClass

from ..models.config import FileSecurityConfig, PKCS11SecurityConfig
from . import crypto
from .errors import (
    ConfigurationInvalid,
    EnrollmentUnsupported,
    RemoteSigningUnavailable,
    TokenUnavailable,
)
from .file_security import FileSecurity
from .models import EnrollmentResult
from .provider import SecurityProvider
from .tls import TLSConfigBuilder


class TokenPrivateKey:
    """Signs with an RSA key that never leaves the token."""

    def __init__(self, key, lock: threading.Lock):
        self.key = key
        self._lock = lock

    def sign(self, data: bytes) -> bytes:
        """PKCS#1 v1.5 SHA-256 signature over data, the token receives the DigestInfo."""
        with self._lock:
            return bytes(self.key.sign(crypto.digest_info(data), mechanism=Mechanism.RSA_PKCS))


class PKCS11Security(SecurityProvider):
    """Security provider using a private key and certificate stored on a PKCS#11 token."""

    def __init__(self, config: PKCS11SecurityConfig,
                 lib_loader: Callable = pkcs11.lib,
                 pin_prompt: Callable[[str], str] = getpass.getpass):
        """
        Initialize the PKCS#11 provider, logging in immediately when a PIN is configured.

        Args:
            config: Provider settings
            lib_loader: Opens the PKCS#11 module at a path
            pin_prompt: Asks the operator for the PIN when none is configured
        """
        if config is None:
            raise ConfigurationInvalid("configuration not given")

        if not config.driver_file:
            raise ConfigurationInvalid("pkcs11: the PKCS11 driver file option is required")

        self.config = config
        self.lib_loader = lib_loader
        self.pin_prompt = pin_prompt
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._pin = config.pin
        self._session = None
        self._key: Optional[TokenPrivateKey] = None
        self._cert: Optional[x509.Certificate] = None

        self.fsec = FileSecurity(FileSecurityConfig(
            identity="unused",
            certificate="unused",
            ca=config.ca,
            cache=config.cache,
            allow_list=config.allow_list,
            privileged_users=config.privileged_users,
            disable_tls_verify=config.disable_tls_verify,
            always_overwrite_cache=config.always_overwrite_cache,
        ))

        if self._pin is not None:
            self.login()

    def provider(self) -> str:
        return "pkcs11"

    def is_logged_in(self) -> bool:
        return self._cert is not None

    def login(self) -> None:
        """
        Open a session on the configured slot and locate the key and certificate.

        Raises:
            TokenUnavailable: If the token cannot be used
        """
        with self._lock:
            if self._pin is None:
                self._pin = self.pin_prompt("PIN: ")

            self.logger.debug(f"Attempting to open PKCS11 driver file {self.config.driver_file}")
            try:
                lib = self.lib_loader(self.config.driver_file)
            except (pkcs11.exceptions.PKCS11Error, RuntimeError, OSError) as e:
                raise TokenUnavailable(f"failed to open PKCS11 driver file {self.config.driver_file}: {e}")

            token = self._select_slot(lib).get_token()
            session = self._open_session(token)

            try:
                key = self._single_object(session, ObjectClass.PRIVATE_KEY, "private key")
                cert_obj = self._single_object(session, ObjectClass.CERTIFICATE, "certificate")
                cert = x509.load_der_x509_certificate(bytes(cert_obj[Attribute.VALUE]))
            except (TokenUnavailable, ValueError, pkcs11.exceptions.PKCS11Error) as e:
                session.close()
                raise TokenUnavailable(f"failed to load identity from token: {e}")

            if not crypto.common_name(cert):
                session.close()
                raise TokenUnavailable("cert on token must have valid CommonName")

            self._session = session
            self._key = TokenPrivateKey(key, self._lock)
            self._cert = cert

    def logout(self) -> None:
        """Close the token session, the next operation logs in again."""
        with self._lock:
            if self._session is not None:
                self._session.close()
            self._session = None
            self._key = None
            self._cert = None

    def _select_slot(self, lib):
        self.logger.debug("Attempting to fetch PKCS11 driver slots")
        try:
            slots = lib.get_slots(token_present=True)
        except pkcs11.exceptions.PKCS11Error as e:
            raise TokenUnavailable(f"failed to fetch PKCS11 driver slots: {e}")

        for slot in slots:
            self.logger.debug(f"Found slot {slot.slot_id}")
            if self.config.slot is not None and slot.slot_id == self.config.slot:
                return slot

        if len(slots) == 1:
            return slots[0]

        raise TokenUnavailable(f"failed to find slot with id {self.config.slot}")

    def _open_session(self, token):
        self.logger.debug("Attempting to open session for selected slot")
        try:
            return token.open(user_pin=self._pin)
        except pkcs11.exceptions.UserAlreadyLoggedIn:
            # the login state is shared by all sessions of the application
            return token.open()
        except pkcs11.exceptions.PKCS11Error as e:
            raise TokenUnavailable(f"failed to login with provided pin: {e}")

    def _single_object(self, session, object_class: ObjectClass, description: str):
        self.logger.debug(f"Attempting to find {description} object")
        objects = list(session.get_objects({Attribute.CLASS: object_class}))

        if len(objects) != 1:
            raise TokenUnavailable(f"expected one {description} object on the token, found {len(objects)}")

        return objects[0]

    def _ensure_logged_in(self) -> None:
        if not self.is_logged_in():
            self.login()

    def identity(self) -> str:
        self._ensure_logged_in()
        return crypto.common_name(self._cert)

    def validate(self) -> Tuple[List[str], bool]:
        """Check that the CA is a regular file and the token can be logged in to."""
        errors = []

        if not os.path.exists(self.config.ca):
            errors.append(f"CA {self.config.ca} does not exist")
        elif not os.path.isfile(self.config.ca):
            errors.append(f"{self.config.ca} is not a regular file")

        if not self.is_logged_in():
            self.logger.debug("Attempting to login to token in validate()")
            try:
                self.login()
            except TokenUnavailable as e:
                errors.append(f"failed to login to token in validate(): {e}")

        return errors, len(errors) == 0

    def sign_bytes(self, data: bytes) -> bytes:
        self._ensure_logged_in()
        return self._key.sign(data)

    def verify_signature_bytes(self, data: bytes, signature: bytes,
                               public_cert: Optional[bytes] = None) -> Tuple[bool, str]:
        if public_cert is None:
            try:
                public_cert = self.public_cert_bytes()
            except TokenUnavailable as e:
                self.logger.error(f"Could not load token certificate: {e}")
                return False, ""

        return self.fsec.verify_signature_bytes(data, signature, public_cert)

    def privileged_verify_signature_bytes(self, data: bytes, signature: bytes, identity: str) -> bool:
        return self.fsec.privileged_verify_signature_bytes(data, signature, identity)

    def public_cert(self) -> x509.Certificate:
        self._ensure_logged_in()
        return self._cert

    def public_cert_pem(self) -> bytes:
        return self.public_cert().public_bytes(serialization.Encoding.DER)

    def public_cert_bytes(self) -> bytes:
        return self.public_cert().public_bytes(serialization.Encoding.PEM)

    def tls_config(self) -> ssl.SSLContext:
        """
        Server contexts need the private key inside OpenSSL, which a token
        never releases.

        Raises:
            TokenUnavailable: Always
        """
        raise TokenUnavailable("the token private key cannot be used for a TLS server context")

    def client_tls_config(self) -> ssl.SSLContext:
        """
        Client context trusting the configured CA.

        No client certificate is presented since the private key never leaves
        the token, servers requiring mutual TLS will reject the connection.
        """
        self.logger.warning("PKCS11 TLS client contexts do not present the token certificate")
        return self._tls_builder().client_context()

    def http_client(self, secure: bool = True) -> requests.Session:
        return self._tls_builder().http_session(secure)

    def _tls_builder(self) -> TLSConfigBuilder:
        # the key never leaves the token so no certificate chain is loaded from disk
        return TLSConfigBuilder(
            certificate_path="",
            key_path="",
            ca_path=self.config.ca,
            settings=self.config.tls,
            disable_tls_verify=self.config.disable_tls_verify,
        )

    def verify_certificate(self, cert_pem: bytes, name: str) -> None:
        self.fsec.verify_certificate(cert_pem, name)

    def cache_public_data(self, cert_pem: bytes, identity: str) -> None:
        self.fsec.cache_public_data(cert_pem, identity)

    def cached_public_data(self, identity: str) -> bytes:
        return self.fsec.cached_public_data(identity)

    def should_allow_caller(self, name: str, cert_pem: bytes) -> bool:
        return self.fsec.should_allow_caller(name, cert_pem)

    def enroll(self, cancel: Optional[threading.Event] = None, max_wait: float = 0,
               progress_callback=None) -> EnrollmentResult:
        raise EnrollmentUnsupported("the pkcs11 security provider does not support enrollment")

    def remote_sign_request(self, request: bytes,
                            cancel: Optional[threading.Event] = None) -> bytes:
        raise RemoteSigningUnavailable("the pkcs11 security provider does not support remote signing")

    def is_remote_signing(self) -> bool:
        return False
