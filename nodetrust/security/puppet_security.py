"""
Security provider that enrolls against a Puppet certificate authority.
"""
import logging
import os
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

import requests

from ..models.config import FileSecurityConfig, PuppetSecurityConfig
from .enrollment import (
    EnrollmentStateMachine,
    EnrollmentSteps,
    FixedIntervalRetry,
    ProgressCallback,
    RetryPolicy,
    make_directory,
)
from .errors import ConfigurationInvalid, EnrollmentFailed
from .file_security import FileSecurity
from .models import EnrollmentResult, SrvServer
from .provider import FileSecurityDelegate

USER_AGENT = "Choria Orchestrator - http://choria.io"
PUPPET_CA_SRV_RECORDS = ["_x-puppet-ca._tcp", "_x-puppet._tcp"]


class SrvResolver:
    """Interface for DNS SRV lookups."""

    def query_srv_records(self, records: List[str]) -> List[SrvServer]:
        """Resolve records in order, returning the servers of the first one that exists."""
        raise NotImplementedError


class PuppetSecurity(FileSecurityDelegate, EnrollmentSteps):
    """Security provider using a Puppet SSL directory, enrolling through the Puppet CA."""

    tolerate_resubmit_failure = True

    def __init__(self, config: PuppetSecurityConfig, resolver: Optional[SrvResolver] = None,
                 session: Optional[requests.Session] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 timeout: int = 30):
        """
        Initialize the Puppet security provider.

        Args:
            config: Provider settings
            resolver: SRV resolver used to locate the CA, SRV lookups are skipped without one
            session: HTTP session used for all CA requests instead of building one per request
            retry_policy: Delay between certificate fetch attempts, 10 seconds by default
            timeout: Request timeout in seconds
        """
        super().__init__()

        if config is None:
            raise ConfigurationInvalid("configuration not given")

        if not config.identity:
            raise ConfigurationInvalid(
                "identity could not be determine automatically via Choria or was not supplied"
            )

        if not config.ssl_dir:
            raise ConfigurationInvalid("the Puppet SSL directory is not configured")

        self.config = config
        self.resolver = resolver
        self.session = session
        self.retry_policy = retry_policy or FixedIntervalRetry(10.0)
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

        self.fsec = FileSecurity(FileSecurityConfig(
            identity=config.identity,
            certificate=self.certificate_path(),
            key=self.key_path(),
            ca=self.ca_path(),
            cache=self.cache_dir(),
            allow_list=config.allow_list,
            privileged_users=config.privileged_users,
            disable_tls_verify=config.disable_tls_verify,
            backward_compat_verification=True,
            always_overwrite_cache=config.always_overwrite_cache,
            tls=config.tls,
            remote_signer=config.remote_signer,
        ))
        self.logger.debug("Puppet security system requesting legacy TLS support")

    def provider(self) -> str:
        return "puppet"

    def identity(self) -> str:
        return self.config.identity

    def validate(self) -> Tuple[List[str], bool]:
        return self.fsec.validate()

    def enroll(self, cancel: Optional[threading.Event] = None, max_wait: float = 60.0,
               progress_callback: Optional[ProgressCallback] = None) -> EnrollmentResult:
        """Create a key and CSR, submit it to the Puppet CA and wait for it to be signed."""
        machine = EnrollmentStateMachine(self, self.retry_policy)
        return machine.run(cancel, max_wait, progress_callback)

    def ssl_dir(self) -> str:
        return self.config.ssl_dir

    def key_path(self) -> str:
        return os.path.join(self.ssl_dir(), "private_keys", f"{self.identity()}.pem")

    def csr_path(self) -> str:
        return os.path.join(self.ssl_dir(), "certificate_requests", f"{self.identity()}.pem")

    def certificate_path(self) -> str:
        return os.path.join(self.ssl_dir(), "certs", f"{self.identity()}.pem")

    def ca_path(self) -> str:
        return os.path.join(self.ssl_dir(), "certs", "ca.pem")

    def cache_dir(self) -> str:
        return os.path.join(self.ssl_dir(), "choria_security", "public_certs")

    def prepare_directories(self) -> None:
        make_directory(self.ssl_dir(), 0o771)

        for directory in ["certificate_requests", "certs", "public_keys"]:
            make_directory(os.path.join(self.ssl_dir(), directory), 0o755)

        for directory in ["private_keys", "private"]:
            make_directory(os.path.join(self.ssl_dir(), directory), 0o750)

    def puppet_ca(self) -> SrvServer:
        """Locate the Puppet CA, preferring SRV records over the configured host."""
        found = SrvServer(self.config.puppetca_host, self.config.puppetca_port, "https")

        if self.config.disable_srv or self.resolver is None:
            return found

        try:
            servers = self.resolver.query_srv_records(PUPPET_CA_SRV_RECORDS)
        except Exception as e:
            self.logger.warning(f"Could not resolve Puppet CA SRV records: {e}")
            return found

        if not servers:
            return found

        found = servers[0]
        if not found.scheme:
            found.scheme = "https"

        return found

    def fetch_ca(self) -> None:
        """Download the CA, verification is impossible as the CA is not known yet."""
        server = self.puppet_ca()
        url = f"{server.url()}/puppet-ca/v1/certificate/ca?environment=production"

        with self._client() as session:
            response = session.get(url, verify=False, timeout=self.timeout)

        if response.status_code != 200:
            raise EnrollmentFailed(f"could not fetch CA: {response.text}")

        self._write_file(self.ca_path(), response.content)

    def submit_csr(self, csr_pem: bytes) -> None:
        server = self.puppet_ca()
        url = f"{server.url()}/puppet-ca/v1/certificate_request/{self.identity()}?environment=production"

        self.logger.debug("Submitting CSR to the PuppetCA")
        with self._client(server) as session:
            response = session.put(
                url,
                data=csr_pem,
                headers=self._headers(),
                timeout=self.timeout,
            )

        if response.status_code == 200:
            return

        if response.text:
            raise EnrollmentFailed(
                f"could not send CSR to {server.url()}: {response.status_code} {response.reason}: {response.text}"
            )

        raise EnrollmentFailed(f"could not send CSR to {server.url()}: {response.status_code} {response.reason}")

    def fetch_certificate(self) -> None:
        if os.path.exists(self.certificate_path()):
            return

        server = self.puppet_ca()
        url = f"{server.url()}/puppet-ca/v1/certificate/{self.identity()}?environment=production"

        with self._client(server) as session:
            response = session.get(url, headers=self._headers(), timeout=self.timeout)

        if response.status_code != 200:
            raise EnrollmentFailed(f"could not fetch certificate: {response.status_code}")

        self._write_file(self.certificate_path(), response.content)

    @contextmanager
    def _client(self, server: Optional[SrvServer] = None) -> Iterator[requests.Session]:
        """Yield the injected session, or a fresh one that is closed afterwards."""
        if self.session is not None:
            yield self.session
            return

        if server is None:
            session = requests.Session()
        else:
            session = self.http_client(server.scheme == "https")

        with session:
            yield session

    def _headers(self) -> dict:
        return {
            'Content-Type': 'text/plain',
            'User-Agent': USER_AGENT,
        }

    def _write_file(self, path: str, data: bytes) -> None:
        with open(path, 'wb') as f:
            f.write(data)
        os.chmod(path, 0o644)
