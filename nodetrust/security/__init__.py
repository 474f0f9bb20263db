"""
Security providers: identity, signing, certificate trust, TLS and enrollment.
"""
from .errors import ErrorKind, SecurityError
from .models import EnrollmentResult, SrvServer, CertificateInfo
from .provider import SecurityProvider, RequestSigner
from .trust_engine import TrustEngine
from .cert_cache import CertificateCache
from .tls import TLSConfigBuilder
from .enrollment import (
    EnrollmentStateMachine,
    RetryPolicy,
    FixedIntervalRetry,
    ExponentialBackoffRetry,
)
from .file_security import FileSecurity
from .puppet_security import PuppetSecurity, SrvResolver
from .certmanager_security import CertManagerSecurity
from .pkcs11_security import PKCS11Security, TokenPrivateKey

__all__ = [
    'ErrorKind',
    'SecurityError',
    'EnrollmentResult',
    'SrvServer',
    'CertificateInfo',
    'SecurityProvider',
    'RequestSigner',
    'TrustEngine',
    'CertificateCache',
    'TLSConfigBuilder',
    'EnrollmentStateMachine',
    'RetryPolicy',
    'FixedIntervalRetry',
    'ExponentialBackoffRetry',
    'FileSecurity',
    'PuppetSecurity',
    'SrvResolver',
    'CertManagerSecurity',
    'PKCS11Security',
    'TokenPrivateKey',
]
