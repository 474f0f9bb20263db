"""
Configuration data models for the security providers.
"""
from dataclasses import dataclass, field
from typing import Any, List, Optional


DEFAULT_ALLOW_LIST = [r"\.mcollective$", r"\.choria$"]
DEFAULT_PRIVILEGED_USERS = [r"\.privileged.mcollective$", r"\.privileged.choria$"]

DEFAULT_CIPHER_SUITES = [
    "ECDHE-ECDSA-AES256-GCM-SHA384",
    "ECDHE-RSA-AES256-GCM-SHA384",
    "ECDHE-ECDSA-CHACHA20-POLY1305",
    "ECDHE-RSA-CHACHA20-POLY1305",
    "ECDHE-ECDSA-AES128-GCM-SHA256",
    "ECDHE-RSA-AES128-GCM-SHA256",
]
DEFAULT_CURVE_PREFERENCES = ["prime256v1", "secp384r1", "secp521r1"]

PROVIDERS = ["file", "puppet", "pkcs11", "certmanager"]


@dataclass
class TLSSettings:
    """Cipher and curve policy applied to every TLS context."""
    cipher_suites: List[str] = field(default_factory=lambda: list(DEFAULT_CIPHER_SUITES))
    curve_preferences: List[str] = field(default_factory=lambda: list(DEFAULT_CURVE_PREFERENCES))


@dataclass
class FileSecurityConfig:
    """Settings for the file security provider, all material comes from paths."""

    identity: str = ""
    certificate: str = ""
    key: str = ""
    ca: str = ""
    cache: str = ""

    allow_list: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOW_LIST))
    privileged_users: List[str] = field(default_factory=lambda: list(DEFAULT_PRIVILEGED_USERS))

    disable_tls_verify: bool = False
    backward_compat_verification: bool = False
    always_overwrite_cache: bool = False

    tls: TLSSettings = field(default_factory=TLSSettings)
    remote_signer: Optional[Any] = None

    def __post_init__(self):
        self._validate_types()

    def _validate_types(self):
        if not isinstance(self.allow_list, list):
            raise ValueError("allow_list must be a list of regular expressions")

        if not isinstance(self.privileged_users, list):
            raise ValueError("privileged_users must be a list of regular expressions")


@dataclass
class PuppetSecurityConfig:
    """Settings for the Puppet CA provider, paths are derived from ssl_dir."""

    identity: str = ""
    ssl_dir: str = ""

    puppetca_host: str = "puppet"
    puppetca_port: int = 8140
    disable_srv: bool = False

    allow_list: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOW_LIST))
    privileged_users: List[str] = field(default_factory=lambda: list(DEFAULT_PRIVILEGED_USERS))

    disable_tls_verify: bool = False
    always_overwrite_cache: bool = False

    tls: TLSSettings = field(default_factory=TLSSettings)
    remote_signer: Optional[Any] = None

    def __post_init__(self):
        self._validate_types()

    def _validate_types(self):
        if not isinstance(self.puppetca_port, int) or not (1 <= self.puppetca_port <= 65535):
            raise ValueError("puppetca_port must be an integer between 1 and 65535")


@dataclass
class CertManagerSecurityConfig:
    """Settings for the Kubernetes cert-manager provider."""

    identity: str = ""
    ssl_dir: str = ""

    namespace: str = "choria"
    issuer: str = ""
    replace: bool = True
    api_version: str = "v1"
    alt_names: List[str] = field(default_factory=list)
    enroll_on_start: bool = True

    allow_list: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOW_LIST))
    privileged_users: List[str] = field(default_factory=lambda: list(DEFAULT_PRIVILEGED_USERS))

    disable_tls_verify: bool = False
    backward_compat_verification: bool = False
    always_overwrite_cache: bool = False

    tls: TLSSettings = field(default_factory=TLSSettings)
    remote_signer: Optional[Any] = None


@dataclass
class PKCS11SecurityConfig:
    """Settings for the PKCS#11 token provider."""

    driver_file: str = ""
    slot: Optional[int] = None
    pin: Optional[str] = None
    ca: str = ""
    cache: str = ""

    allow_list: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOW_LIST))
    privileged_users: List[str] = field(default_factory=lambda: list(DEFAULT_PRIVILEGED_USERS))

    disable_tls_verify: bool = False
    always_overwrite_cache: bool = False

    tls: TLSSettings = field(default_factory=TLSSettings)


@dataclass
class SecurityConfig:
    """Flat settings as read from a configuration file, before a provider is chosen."""

    provider: str = "puppet"

    # Identity settings
    identity: str = ""
    override_certname: str = ""
    client: bool = False
    identity_suffix: str = "mcollective"

    # File provider settings
    certificate: str = ""
    key: str = ""
    ca: str = ""
    cache: str = ""

    # Puppet settings
    ssl_dir: str = ""
    puppetca_host: str = ""
    puppetca_port: int = 0

    # PKCS#11 settings
    pkcs11_driver_file: str = ""
    pkcs11_slot: Optional[int] = None

    # Cert-manager settings
    certmanager_namespace: str = "choria"
    certmanager_issuer: str = ""
    certmanager_replace: bool = True
    certmanager_alt_names: List[str] = field(default_factory=list)
    certmanager_api_version: str = "v1"

    # Trust settings
    allow_list: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOW_LIST))
    privileged_users: List[str] = field(default_factory=lambda: list(DEFAULT_PRIVILEGED_USERS))
    disable_tls_verify: bool = False
    backward_compat_verification: bool = False
    always_overwrite_cache: bool = False

    # TLS settings
    cipher_suites: List[str] = field(default_factory=lambda: list(DEFAULT_CIPHER_SUITES))
    curve_preferences: List[str] = field(default_factory=lambda: list(DEFAULT_CURVE_PREFERENCES))

    # Application settings
    log_level: str = "INFO"
    log_file_path: str = "logs/nodetrust.log"

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate_types()

    def _validate_types(self):
        """Ensure all configuration values have correct types."""
        if self.provider not in PROVIDERS:
            raise ValueError(f"provider must be one of: {', '.join(PROVIDERS)}")

        if not isinstance(self.puppetca_port, int) or not (0 <= self.puppetca_port <= 65535):
            raise ValueError("puppetca_port must be an integer between 0 and 65535, 0 selects the default")

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ValueError("log_level must be one of: DEBUG, INFO, WARNING, ERROR, CRITICAL")


@dataclass
class ConfigValidationError:
    """Represents a configuration validation error."""
    field: str
    message: str
    severity: str = "error"  # error, warning

    def __str__(self):
        return f"{self.severity.upper()}: {self.field} - {self.message}"


@dataclass
class ConfigValidationResult:
    """Result of configuration validation."""
    is_valid: bool
    errors: List[ConfigValidationError]
    warnings: List[ConfigValidationError]

    def __post_init__(self):
        """Separate errors and warnings."""
        all_issues = self.errors + self.warnings
        self.errors = [e for e in all_issues if e.severity == "error"]
        self.warnings = [e for e in all_issues if e.severity == "warning"]

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    def get_error_summary(self) -> str:
        """Get a formatted summary of all errors and warnings."""
        lines = []

        if self.errors:
            lines.append("Configuration Errors:")
            for error in self.errors:
                lines.append(f"  - {error}")

        if self.warnings:
            lines.append("Configuration Warnings:")
            for warning in self.warnings:
                lines.append(f"  - {warning}")

        return "\n".join(lines) if lines else "Configuration is valid"
