"""
Certificate enrollment: ensure a key, CA and CSR exist, submit the CSR and
poll until a signed certificate arrives.
"""
import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

import requests
from cryptography.hazmat.primitives.asymmetric import rsa

from . import crypto
from .errors import (
    CSRAlreadyExists,
    EnrollmentInterrupted,
    EnrollmentTimedOut,
    KeyAlreadyExists,
    SecurityError,
)
from .models import EnrollmentResult

ProgressCallback = Callable[[str, int], None]

# failures of a single fetch attempt that are worth retrying
RETRYABLE_ERRORS = (SecurityError, requests.RequestException, OSError, ValueError, KeyError)


class RetryPolicy:
    """Strategy deciding how long to wait between certificate fetch attempts."""

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given 1-based attempt failed."""
        raise NotImplementedError


class FixedIntervalRetry(RetryPolicy):
    def __init__(self, interval: float = 10.0):
        self.interval = interval

    def delay(self, attempt: int) -> float:
        return self.interval


class ExponentialBackoffRetry(RetryPolicy):
    """Exponential backoff capped at max_delay."""

    def __init__(self, retry_delay: float = 0.5, backoff_factor: float = 2.0,
                 max_delay: float = 20.0):
        self.retry_delay = retry_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay

    def delay(self, attempt: int) -> float:
        return min(self.retry_delay * (self.backoff_factor ** max(attempt - 1, 0)), self.max_delay)


def write_private_key(path: str, key_size: int = crypto.RSA_KEY_SIZE) -> rsa.RSAPrivateKey:
    """
    Generate a new RSA key and write it to path with mode 0640.

    Raises:
        KeyAlreadyExists: If a key is already present at path
    """
    if os.path.exists(path):
        raise KeyAlreadyExists(f"a private key already exist in {path}")

    key = crypto.generate_private_key(key_size)
    _write_exclusive(path, crypto.private_key_pem(key), 0o640, KeyAlreadyExists)

    return key


def read_private_key(path: str) -> rsa.RSAPrivateKey:
    with open(path, 'rb') as f:
        return crypto.load_rsa_private_key(f.read())


def write_csr(path: str, key: rsa.RSAPrivateKey, identity: str,
              alt_names: Optional[List[str]] = None) -> str:
    """
    Create a CSR for identity and write it to path with mode 0640.

    Returns:
        Hex SHA-256 digest of the DER encoded request

    Raises:
        CSRAlreadyExists: If a request is already present at path
    """
    if os.path.exists(path):
        raise CSRAlreadyExists(f"a certificate request already exist for {identity}")

    csr = crypto.build_csr(key, identity, alt_names)
    _write_exclusive(path, crypto.csr_pem(csr), 0o640, CSRAlreadyExists)

    return crypto.csr_digest(csr)


def _write_exclusive(path: str, data: bytes, mode: int, exists_error) -> None:
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    except FileExistsError:
        raise exists_error(f"{path} already exists")

    with os.fdopen(fd, 'wb') as f:
        f.write(data)


def make_directory(path: str, mode: int) -> None:
    Path(path).mkdir(mode=mode, parents=True, exist_ok=True)


class EnrollmentSteps:
    """
    Backend specific actions driven by EnrollmentStateMachine.

    Implementations provide the file locations and the network interactions
    with their certificate authority.
    """

    # a failed submission is ignored when the CSR was made by an earlier run
    tolerate_resubmit_failure = False

    def identity(self) -> str:
        raise NotImplementedError

    def key_path(self) -> str:
        raise NotImplementedError

    def csr_path(self) -> str:
        raise NotImplementedError

    def certificate_path(self) -> str:
        raise NotImplementedError

    def ca_path(self) -> str:
        raise NotImplementedError

    def alt_names(self) -> List[str]:
        return []

    def prepare_directories(self) -> None:
        raise NotImplementedError

    def fetch_ca(self) -> None:
        """Obtain the CA bundle before the certificate is requested, if the backend can."""
        raise NotImplementedError

    def should_submit(self) -> bool:
        return not os.path.exists(self.certificate_path())

    def submit_csr(self, csr_pem: bytes) -> None:
        raise NotImplementedError

    def fetch_certificate(self) -> None:
        """Fetch and store the signed certificate, raising when it is not available yet."""
        raise NotImplementedError


class EnrollmentStateMachine:
    """Drives enrollment through key, CA, CSR, submission and certificate polling."""

    def __init__(self, steps: EnrollmentSteps, retry_policy: RetryPolicy,
                 clock: Callable[[], float] = time.monotonic):
        self.steps = steps
        self.retry_policy = retry_policy
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def is_enrolled(self) -> bool:
        return all(os.path.exists(path) for path in [
            self.steps.key_path(),
            self.steps.ca_path(),
            self.steps.certificate_path(),
        ])

    def run(self, cancel: Optional[threading.Event] = None, max_wait: float = 60.0,
            progress_callback: Optional[ProgressCallback] = None) -> EnrollmentResult:
        """
        Enroll the identity, waiting at most max_wait seconds for the signed certificate.

        Args:
            cancel: Event that aborts enrollment when set
            max_wait: Seconds to wait for the certificate to be signed
            progress_callback: Called with the CSR digest and attempt number before every fetch

        Returns:
            EnrollmentResult describing the enrollment

        Raises:
            EnrollmentInterrupted: If cancel was set
            EnrollmentTimedOut: If no certificate arrived within max_wait
        """
        cancel = cancel or threading.Event()
        identity = self.steps.identity()

        if self.is_enrolled():
            self.logger.info(f"Enrollment already completed for {identity}")
            return EnrollmentResult(already_enrolled=True)

        deadline = self.clock() + max_wait

        self.steps.prepare_directories()

        key = self._ensure_key(identity)

        self._check_cancelled(cancel, 0)
        if not os.path.exists(self.steps.ca_path()):
            self.logger.debug("Fetching CA")
            self.steps.fetch_ca()

        previous_csr = os.path.exists(self.steps.csr_path())
        digest = ""
        if not previous_csr:
            self.logger.debug(f"Creating a new CSR for {identity}")
            digest = write_csr(self.steps.csr_path(), key, identity, self.steps.alt_names())

        if self.steps.should_submit():
            self._check_cancelled(cancel, 0)
            self._submit(previous_csr)

        return self._poll(cancel, deadline, digest, progress_callback)

    def _ensure_key(self, identity: str) -> rsa.RSAPrivateKey:
        if os.path.exists(self.steps.key_path()):
            self.logger.debug(f"Loading existing private key for {identity}")
            return read_private_key(self.steps.key_path())

        self.logger.debug(f"Creating a new Private Key {identity}")
        return write_private_key(self.steps.key_path())

    def _submit(self, previous_csr: bool) -> None:
        with open(self.steps.csr_path(), 'rb') as f:
            csr_pem = f.read()

        try:
            self.steps.submit_csr(csr_pem)
        except RETRYABLE_ERRORS as e:
            if previous_csr and self.steps.tolerate_resubmit_failure:
                self.logger.warning(
                    f"Submitting CSR failed, ignoring failure as this might be a continuation of a previous attempt: {e}"
                )
                return
            raise

    def _poll(self, cancel: threading.Event, deadline: float, digest: str,
              progress_callback: Optional[ProgressCallback]) -> EnrollmentResult:
        attempt = 0
        last_error = None

        while True:
            self._check_cancelled(cancel, attempt)

            attempt += 1
            if progress_callback:
                progress_callback(digest, attempt)

            try:
                self.steps.fetch_certificate()
                self.logger.info(f"Received signed certificate for {self.steps.identity()} after {attempt} attempt(s)")
                return EnrollmentResult(already_enrolled=False, attempts=attempt, csr_digest=digest)
            except RETRYABLE_ERRORS as e:
                last_error = e
                self.logger.debug(f"Error while fetching cert on attempt {attempt}: {e}")

            remaining = deadline - self.clock()
            if remaining <= 0:
                self._timed_out(attempt, last_error)

            if cancel.wait(min(self.retry_policy.delay(attempt), remaining)):
                self._check_cancelled(cancel, attempt)

            if self.clock() >= deadline:
                self._timed_out(attempt, last_error)

    def _check_cancelled(self, cancel: threading.Event, attempt: int) -> None:
        if cancel.is_set():
            raise EnrollmentInterrupted("interrupted", attempts=attempt)

    def _timed_out(self, attempt: int, last_error: Optional[Exception]):
        raise EnrollmentTimedOut(
            f"timed out waiting for a certificate after {attempt} attempt(s): {last_error}",
            attempts=attempt,
            last_error=last_error,
        )
