"""
Security provider that enrolls through a Kubernetes cert-manager CertificateRequest.
"""
import base64
import json
import logging
import os
import threading
from typing import List, Optional, Tuple

import requests

from ..models.config import CertManagerSecurityConfig, FileSecurityConfig
from .enrollment import (
    EnrollmentStateMachine,
    EnrollmentSteps,
    ExponentialBackoffRetry,
    ProgressCallback,
    RetryPolicy,
    make_directory,
)
from .errors import ConfigurationInvalid, EnrollmentFailed, SecurityError
from .file_security import FileSecurity
from .models import EnrollmentResult
from .provider import FileSecurityDelegate

KUBERNETES_API = "https://kubernetes.default.svc"
SERVICE_ACCOUNT_TOKEN = "/var/run/secrets/kubernetes.io/serviceaccount/token"
SERVICE_ACCOUNT_CA = "/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"


class CertManagerSecurity(FileSecurityDelegate, EnrollmentSteps):
    """Security provider whose certificate is issued by cert-manager inside Kubernetes."""

    def __init__(self, config: CertManagerSecurityConfig,
                 session: Optional[requests.Session] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 token_path: str = SERVICE_ACCOUNT_TOKEN,
                 kubernetes_ca_path: str = SERVICE_ACCOUNT_CA,
                 timeout: int = 30):
        """
        Initialize the cert-manager provider, enrolling immediately when
        enroll_on_start is set and no certificate is present yet.

        Args:
            config: Provider settings
            session: HTTP session for the Kubernetes API
            retry_policy: Delay between certificate fetch attempts, exponential by default
            token_path: Service account token used as bearer token
            kubernetes_ca_path: CA used to verify the Kubernetes API
            timeout: Request timeout in seconds

        Raises:
            ConfigurationInvalid: If the configuration is incomplete
            SecurityError: If enrollment on start fails
        """
        super().__init__()

        if config is None:
            raise ConfigurationInvalid("configuration not given")

        if not config.identity:
            raise ConfigurationInvalid("identity could not be determined")

        if not config.ssl_dir:
            raise ConfigurationInvalid("the SSL directory is not configured")

        self.config = config
        self.session = session
        self.retry_policy = retry_policy or ExponentialBackoffRetry()
        self.token_path = token_path
        self.kubernetes_ca_path = kubernetes_ca_path
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
            backward_compat_verification=config.backward_compat_verification,
            always_overwrite_cache=config.always_overwrite_cache,
            tls=config.tls,
            remote_signer=config.remote_signer,
        ))

        if config.enroll_on_start and not self._machine().is_enrolled():
            self.logger.info(
                f"Attempting to enroll with Cert Manager in namespace {config.namespace!r} "
                f"using issuer {config.issuer!r}"
            )
            try:
                self.enroll(max_wait=60.0, progress_callback=self._log_attempt)
            except SecurityError as e:
                raise EnrollmentFailed(f"enrollment failed: {e}")

            self.logger.info(f"Enrollment with Cert Manager completed in namespace {config.namespace!r}")

    def provider(self) -> str:
        return "certmanager"

    def identity(self) -> str:
        return self.config.identity

    def validate(self) -> Tuple[List[str], bool]:
        errors = []

        if not os.path.isdir(self.ssl_dir()):
            errors.append(f"{self.ssl_dir()} does not exist or is not a directory")

        if not os.path.isdir(self.cache_dir()):
            errors.append(f"{self.cache_dir()} does not exist or is not a directory")

        return errors, len(errors) == 0

    def enroll(self, cancel: Optional[threading.Event] = None, max_wait: float = 60.0,
               progress_callback: Optional[ProgressCallback] = None) -> EnrollmentResult:
        result = self._machine().run(cancel, max_wait, progress_callback)
        if result.already_enrolled:
            self.logger.info(f"Enrollment already completed, remove {self.ssl_dir()!r} to force re-enrolment")
        return result

    def _machine(self) -> EnrollmentStateMachine:
        return EnrollmentStateMachine(self, self.retry_policy)

    def _log_attempt(self, digest: str, attempt: int) -> None:
        self.logger.info(f"Enrollment attempt {attempt}")

    def ssl_dir(self) -> str:
        return self.config.ssl_dir

    def key_path(self) -> str:
        return os.path.join(self.ssl_dir(), "key.pem")

    def csr_path(self) -> str:
        return os.path.join(self.ssl_dir(), "csr.pem")

    def certificate_path(self) -> str:
        return os.path.join(self.ssl_dir(), "cert.pem")

    def ca_path(self) -> str:
        return os.path.join(self.ssl_dir(), "ca.pem")

    def cache_dir(self) -> str:
        return os.path.join(self.ssl_dir(), "cache")

    def alt_names(self) -> List[str]:
        return list(self.config.alt_names)

    def prepare_directories(self) -> None:
        make_directory(self.ssl_dir(), 0o771)
        make_directory(self.cache_dir(), 0o700)

    def fetch_ca(self) -> None:
        # the CA is delivered together with the signed certificate
        return

    def should_submit(self) -> bool:
        return not os.path.exists(self.certificate_path()) or self.config.replace

    def requests_url(self) -> str:
        return (f"{KUBERNETES_API}/apis/cert-manager.io/{self.config.api_version}"
                f"/namespaces/{self.config.namespace}/certificaterequests")

    def request_url(self) -> str:
        return f"{self.requests_url()}/{self.identity()}"

    def certificate_request(self, csr_pem: bytes) -> dict:
        """CertificateRequest manifest for csr_pem."""
        encoded = base64.b64encode(csr_pem).decode("ascii")

        return {
            "apiVersion": f"cert-manager.io/{self.config.api_version}",
            "kind": "CertificateRequest",
            "metadata": {
                "name": self.identity(),
                "namespace": self.config.namespace,
            },
            "spec": {
                "issuerRef": {
                    "name": self.config.issuer,
                },
                "csr": encoded,
                "request": encoded,
            },
        }

    def submit_csr(self, csr_pem: bytes) -> None:
        """
        Create the CertificateRequest, replacing an existing one when configured to.

        Raises:
            EnrollmentFailed: If the Kubernetes API rejects the request
        """
        response = self._create_request(csr_pem)

        if response.status_code == 201:
            return

        if response.status_code == 409:
            if not self.config.replace:
                raise EnrollmentFailed(f"found an existing CSR for {self.identity()!r}")

            self.logger.warning(f"Found an existing CSR for {self.identity()!r}, removing and creating a new one")

            deleted = self._k8s_request("DELETE", self.request_url())
            if deleted.status_code != 200:
                raise EnrollmentFailed(
                    f"deleting existing CSR for {self.identity()!r} failed: code {deleted.status_code}"
                )

            response = self._create_request(csr_pem)
            if response.status_code != 201:
                raise EnrollmentFailed(
                    f"csr creation failed: code: {response.status_code} body: {response.text!r}"
                )
            return

        raise EnrollmentFailed(
            f"unexpected error from the Kubernetes API: code: {response.status_code} body: {response.text!r}"
        )

    def _create_request(self, csr_pem: bytes) -> requests.Response:
        self.logger.info(f"Submitting CSR for {self.identity()!r} to Cert Manager")
        return self._k8s_request("POST", self.requests_url(), self.certificate_request(csr_pem))

    def fetch_certificate(self) -> None:
        """Store the CA and certificate once the CertificateRequest has been signed."""
        self.logger.info(f"Fetching certificate {self.identity()!r}")
        response = self._k8s_request("GET", self.request_url())

        if response.status_code != 200:
            raise EnrollmentFailed(
                f"could not load CSR for {self.identity()!r}: code: {response.status_code} body: {response.text!r}"
            )

        status = response.json().get("status") or {}

        if "ca" not in status:
            raise EnrollmentFailed("did not receive a CA from Cert Manager")
        self._write_file(self.ca_path(), base64.b64decode(status["ca"]))

        if "certificate" not in status:
            raise EnrollmentFailed("did not receive a certificate from Cert Manager")
        self._write_file(self.certificate_path(), base64.b64decode(status["certificate"]))

    def _k8s_request(self, method: str, url: str, body: Optional[dict] = None) -> requests.Response:
        with open(self.token_path, 'r') as f:
            token = f.read().strip()

        headers = {
            'Authorization': f"Bearer {token}",
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

        kwargs = {
            'data': json.dumps(body) if body is not None else None,
            'headers': headers,
            'verify': self.kubernetes_ca_path,
            'timeout': self.timeout,
        }

        if self.session is not None:
            return self.session.request(method, url, **kwargs)

        with requests.Session() as session:
            return session.request(method, url, **kwargs)

    def _write_file(self, path: str, data: bytes) -> None:
        with open(path, 'wb') as f:
            f.write(data)
        os.chmod(path, 0o644)
