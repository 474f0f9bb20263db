"""
Error types raised by the security providers.
"""
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Kinds of failures a security provider can report."""
    CONFIGURATION_INVALID = "configuration_invalid"
    TRUST_STORE_UNAVAILABLE = "trust_store_unavailable"
    MALFORMED_CERTIFICATE = "malformed_certificate"
    UNTRUSTED_CERTIFICATE = "untrusted_certificate"
    NAME_MISMATCH = "name_mismatch"
    CALLER_NOT_ALLOWED = "caller_not_allowed"
    UNSUPPORTED_KEY_TYPE = "unsupported_key_type"
    KEY_ALREADY_EXISTS = "key_already_exists"
    CSR_ALREADY_EXISTS = "csr_already_exists"
    ENROLLMENT_UNSUPPORTED = "enrollment_unsupported"
    ENROLLMENT_FAILED = "enrollment_failed"
    ENROLLMENT_TIMED_OUT = "enrollment_timed_out"
    ENROLLMENT_INTERRUPTED = "enrollment_interrupted"
    NOT_CACHED = "not_cached"
    CERTIFICATE_REJECTED = "certificate_rejected"
    INVALID_CALLER_FORMAT = "invalid_caller_format"
    TOKEN_UNAVAILABLE = "token_unavailable"
    REMOTE_SIGNING_UNAVAILABLE = "remote_signing_unavailable"


class SecurityError(Exception):
    """Base class for all security provider errors."""

    kind: ErrorKind = ErrorKind.CONFIGURATION_INVALID

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message


class ConfigurationInvalid(SecurityError):
    kind = ErrorKind.CONFIGURATION_INVALID


class TrustStoreUnavailable(SecurityError):
    kind = ErrorKind.TRUST_STORE_UNAVAILABLE


class MalformedCertificate(SecurityError):
    kind = ErrorKind.MALFORMED_CERTIFICATE


class UntrustedCertificate(SecurityError):
    kind = ErrorKind.UNTRUSTED_CERTIFICATE


class NameMismatch(SecurityError):
    kind = ErrorKind.NAME_MISMATCH


class CallerNotAllowed(SecurityError):
    kind = ErrorKind.CALLER_NOT_ALLOWED


class UnsupportedKeyType(SecurityError):
    kind = ErrorKind.UNSUPPORTED_KEY_TYPE


class KeyAlreadyExists(SecurityError):
    kind = ErrorKind.KEY_ALREADY_EXISTS


class CSRAlreadyExists(SecurityError):
    kind = ErrorKind.CSR_ALREADY_EXISTS


class EnrollmentUnsupported(SecurityError):
    kind = ErrorKind.ENROLLMENT_UNSUPPORTED


class EnrollmentFailed(SecurityError):
    """A non retryable enrollment step failed."""
    kind = ErrorKind.ENROLLMENT_FAILED


class EnrollmentTimedOut(SecurityError):
    """The signed certificate did not arrive before the deadline."""
    kind = ErrorKind.ENROLLMENT_TIMED_OUT

    def __init__(self, message: str, attempts: int = 0, last_error: Optional[Exception] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class EnrollmentInterrupted(SecurityError):
    kind = ErrorKind.ENROLLMENT_INTERRUPTED

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class NotCached(SecurityError):
    kind = ErrorKind.NOT_CACHED


class CertificateRejected(SecurityError):
    kind = ErrorKind.CERTIFICATE_REJECTED


class InvalidCallerFormat(SecurityError):
    kind = ErrorKind.INVALID_CALLER_FORMAT


class TokenUnavailable(SecurityError):
    kind = ErrorKind.TOKEN_UNAVAILABLE


class RemoteSigningUnavailable(SecurityError):
    kind = ErrorKind.REMOTE_SIGNING_UNAVAILABLE
