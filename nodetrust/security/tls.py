"""
TLS context construction for the security providers.
"""
import logging
import os
import ssl
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..models.config import TLSSettings


class TLSConfigBuilder:
    """Builds SSL contexts from a certificate, key, CA bundle and cipher policy."""

    def __init__(self, certificate_path: str, key_path: str, ca_path: str,
                 settings: Optional[TLSSettings] = None,
                 disable_tls_verify: bool = False,
                 backward_compat_verification: bool = False):
        self.certificate_path = certificate_path
        self.key_path = key_path
        self.ca_path = ca_path
        self.settings = settings or TLSSettings()
        self.disable_tls_verify = disable_tls_verify
        self.backward_compat_verification = backward_compat_verification
        self.logger = logging.getLogger(__name__)

    def server_context(self) -> ssl.SSLContext:
        """Create an SSL context for accepting connections, clients must present a certificate."""
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        self._configure(context)

        if self.disable_tls_verify:
            context.verify_mode = ssl.CERT_NONE
        elif self._exists(self.ca_path):
            context.verify_mode = ssl.CERT_REQUIRED

        return context

    def client_context(self) -> ssl.SSLContext:
        """
        Create an SSL context for outgoing connections.

        With backward compatible verification, server certificates without
        DNS subject alternative names are matched on their Common Name.
        OpenSSL still builds and verifies the chain, including any
        intermediates the server presents.
        """
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        self._configure(context)

        if self.disable_tls_verify:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        elif self.backward_compat_verification:
            context.hostname_checks_common_name = True
            self.logger.info("Enabled legacy SAN free certificate verification")

        return context

    def http_session(self, secure: bool = True, max_retries: int = 3,
                     backoff_factor: float = 1.0) -> requests.Session:
        """
        Create a requests session that authenticates with this identity.

        Args:
            secure: Present the client certificate and verify the server against the CA
            max_retries: Retries for idempotent requests on transient failures
            backoff_factor: Factor for exponential backoff between retries
        """
        session = requests.Session()

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "OPTIONS"]
        )

        if secure:
            adapter = SSLContextAdapter(self.client_context(), max_retries=retry_strategy)
            if self._exists(self.certificate_path) and self._exists(self.key_path):
                session.cert = (self.certificate_path, self.key_path)
            if self.disable_tls_verify:
                session.verify = False
            elif self._exists(self.ca_path):
                session.verify = self.ca_path
        else:
            adapter = HTTPAdapter(max_retries=retry_strategy)

        session.mount("http://", adapter)
        session.mount("https://", adapter)

        return session

    def _configure(self, context: ssl.SSLContext) -> None:
        context.minimum_version = ssl.TLSVersion.TLSv1_2

        if self.settings.cipher_suites:
            context.set_ciphers(":".join(self.settings.cipher_suites))

        # only a single curve can be selected through the ssl module
        if self.settings.curve_preferences:
            context.set_ecdh_curve(self.settings.curve_preferences[0])

        if self._exists(self.certificate_path) and self._exists(self.key_path):
            context.load_cert_chain(certfile=self.certificate_path, keyfile=self.key_path)

        if self._exists(self.ca_path):
            context.load_verify_locations(cafile=self.ca_path)

    def _exists(self, path: str) -> bool:
        return bool(path) and os.path.exists(path)


class SSLContextAdapter(HTTPAdapter):
    """HTTP adapter that uses a prepared SSL context for its connection pools."""

    def __init__(self, ssl_context: ssl.SSLContext, **kwargs):
        self.ssl_context = ssl_context
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs['ssl_context'] = self.ssl_context
        return super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, *args, **kwargs):
        kwargs['ssl_context'] = self.ssl_context
        return super().proxy_manager_for(*args, **kwargs)
