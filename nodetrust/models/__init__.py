"""
Models package for the security providers.
"""

from .config import (
    TLSSettings,
    FileSecurityConfig,
    PuppetSecurityConfig,
    CertManagerSecurityConfig,
    PKCS11SecurityConfig,
    SecurityConfig,
    ConfigValidationError,
    ConfigValidationResult,
)

__all__ = [
    'TLSSettings',
    'FileSecurityConfig',
    'PuppetSecurityConfig',
    'CertManagerSecurityConfig',
    'PKCS11SecurityConfig',
    'SecurityConfig',
    'ConfigValidationError',
    'ConfigValidationResult',
]
