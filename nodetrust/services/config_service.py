"""
Configuration service for loading settings and building security providers.
"""
import os
import configparser
import socket
from typing import Optional, Dict, Any, List, Mapping
import logging

from ..models.config import (
    SecurityConfig,
    ConfigValidationError,
    ConfigValidationResult,
    TLSSettings,
    FileSecurityConfig,
    PuppetSecurityConfig,
    CertManagerSecurityConfig,
    PKCS11SecurityConfig,
)
from ..security.certmanager_security import CertManagerSecurity
from ..security.errors import ConfigurationInvalid
from ..security.file_security import FileSecurity
from ..security.pkcs11_security import PKCS11Security
from ..security.puppet_security import PuppetSecurity

ROOT_SSL_DIR = "/etc/puppetlabs/puppet/ssl"
WINDOWS_SSL_DIR = "C:\\ProgramData\\PuppetLabs\\puppet\\etc\\ssl"
DEFAULT_PUPPETCA_HOST = "puppet"
DEFAULT_PUPPETCA_PORT = 8140


class ConfigService:
    """Service for loading configuration and constructing the configured security provider."""

    def __init__(self, config_path: Optional[str] = None,
                 environ: Optional[Mapping[str, str]] = None,
                 uid: Optional[int] = None,
                 os_name: Optional[str] = None):
        """
        Initialize the configuration service.

        Args:
            config_path: Configuration file to load immediately
            environ: Environment used for identity and path resolution, os.environ by default
            uid: Effective user id, the current process uid by default
            os_name: Operating system name as in os.name, the current one by default
        """
        self.logger = logging.getLogger(__name__)
        self.environ = environ if environ is not None else os.environ
        self.uid = uid if uid is not None else (os.getuid() if hasattr(os, "getuid") else -1)
        self.os_name = os_name or os.name
        self._config = None
        if config_path:
            self._config = self.load_config(config_path)

    def get_config(self) -> SecurityConfig:
        """
        Get the loaded configuration.

        Raises:
            ValueError: If no configuration has been loaded
        """
        if self._config is None:
            raise ValueError("No configuration loaded. Call load_config() first.")
        return self._config

    def load_config(self, config_path: str) -> SecurityConfig:
        """
        Load configuration from a property file.

        Args:
            config_path: Path to the configuration file

        Returns:
            SecurityConfig with loaded settings

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config file is invalid or has validation errors
        """
        if not os.path.exists(config_path):
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        config_data = self._load_config_file(config_path)
        config = self._create_config_from_data(config_data)

        validation_result = self.validate_config(config)

        if validation_result.has_errors():
            error_summary = validation_result.get_error_summary()
            raise ValueError(f"Configuration validation failed:\n{error_summary}")

        if validation_result.has_warnings():
            warning_summary = validation_result.get_error_summary()
            self.logger.warning(f"Configuration warnings:\n{warning_summary}")

        self._config = config
        return config

    def _load_config_file(self, config_path: str) -> Dict[str, Any]:
        """Load configuration data from file."""
        config_parser = configparser.ConfigParser(interpolation=None)

        try:
            config_parser.read(config_path)
        except configparser.Error as e:
            raise ValueError(f"Failed to parse configuration file: {e}")

        # Convert to flat dictionary
        config_data = {}
        for section in config_parser.sections():
            for key, value in config_parser.items(section):
                # Use section.key format for namespacing
                config_data[f"{section}.{key}"] = value

        # DEFAULT holds properties style keys like plugin.security.provider
        for key, value in config_parser.defaults().items():
            if key not in config_data:
                config_data[key] = value

        return config_data

    def _create_config_from_data(self, config_data: Dict[str, Any]) -> SecurityConfig:
        """Create SecurityConfig from configuration data."""
        config_mapping = {
            # Provider selection and identity
            "security.provider": ("provider", str),
            "plugin.security.provider": ("provider", str),
            "security.identity": ("identity", str),
            "identity": ("identity", str),
            "security.certname": ("override_certname", str),
            "plugin.choria.override_certname": ("override_certname", str),
            "security.client": ("client", bool),
            "security.identity_suffix": ("identity_suffix", str),
            "plugin.security.identity_suffix": ("identity_suffix", str),

            # File provider settings
            "file.certificate": ("certificate", str),
            "plugin.security.file.certificate": ("certificate", str),
            "file.key": ("key", str),
            "plugin.security.file.key": ("key", str),
            "file.ca": ("ca", str),
            "plugin.security.file.ca": ("ca", str),
            "file.cache": ("cache", str),
            "plugin.security.file.cache": ("cache", str),

            # Puppet settings
            "puppet.ssldir": ("ssl_dir", str),
            "plugin.choria.ssldir": ("ssl_dir", str),
            "puppet.puppetca_host": ("puppetca_host", str),
            "plugin.choria.puppetca_host": ("puppetca_host", str),
            "puppet.puppetca_port": ("puppetca_port", int),
            "plugin.choria.puppetca_port": ("puppetca_port", int),

            # PKCS#11 settings
            "pkcs11.driver_file": ("pkcs11_driver_file", str),
            "plugin.security.pkcs11.driver_file": ("pkcs11_driver_file", str),
            "pkcs11.slot": ("pkcs11_slot", int),
            "plugin.security.pkcs11.slot": ("pkcs11_slot", int),

            # Cert-manager settings
            "certmanager.namespace": ("certmanager_namespace", str),
            "plugin.security.certmanager.namespace": ("certmanager_namespace", str),
            "certmanager.issuer": ("certmanager_issuer", str),
            "plugin.security.certmanager.issuer": ("certmanager_issuer", str),
            "certmanager.replace": ("certmanager_replace", bool),
            "plugin.security.certmanager.replace": ("certmanager_replace", bool),
            "certmanager.alt_names": ("certmanager_alt_names", list),
            "plugin.security.certmanager.alt_names": ("certmanager_alt_names", list),
            "certmanager.api_version": ("certmanager_api_version", str),
            "plugin.security.certmanager.api_version": ("certmanager_api_version", str),

            # Trust settings
            "security.allow_list": ("allow_list", list),
            "plugin.choria.security.certname_whitelist": ("allow_list", list),
            "security.privileged_users": ("privileged_users", list),
            "plugin.choria.security.privileged_users": ("privileged_users", list),
            "security.disable_tls_verify": ("disable_tls_verify", bool),
            "security.backward_compat_verification": ("backward_compat_verification", bool),
            "plugin.security.support_legacy_certificates": ("backward_compat_verification", bool),
            "security.always_overwrite_cache": ("always_overwrite_cache", bool),
            "plugin.security.always_overwrite_cache": ("always_overwrite_cache", bool),

            # TLS settings
            "tls.cipher_suites": ("cipher_suites", list),
            "plugin.security.cipher_suites": ("cipher_suites", list),
            "tls.ecc_curves": ("curve_preferences", list),
            "plugin.security.ecc_curves": ("curve_preferences", list),

            # Application settings
            "app.log_level": ("log_level", str),
            "log_level": ("log_level", str),
            "app.log_file_path": ("log_file_path", str),
            "log_file_path": ("log_file_path", str),
        }

        config_kwargs = {}

        for config_key, raw_value in config_data.items():
            if config_key in config_mapping:
                field_name, field_type = config_mapping[config_key]
                if field_type in (int, list) and not str(raw_value).strip():
                    continue
                try:
                    if field_type == bool:
                        value = self._parse_bool(raw_value)
                    elif field_type == int:
                        value = int(raw_value)
                    elif field_type == list:
                        value = self._parse_list(raw_value)
                    else:
                        value = str(raw_value) if raw_value is not None else None

                    config_kwargs[field_name] = value
                except (ValueError, TypeError) as e:
                    raise ValueError(f"Invalid value for {config_key}: {raw_value} ({e})")

        return SecurityConfig(**config_kwargs)

    def _parse_bool(self, value: Any) -> bool:
        """Parse boolean value from string."""
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "yes", "1", "on", "enabled")
        return bool(value)

    def _parse_list(self, value: Any) -> List[str]:
        """Parse a comma separated list, dropping empty items."""
        if isinstance(value, list):
            return value
        return [item.strip() for item in str(value).split(",") if item.strip()]

    def validate_config(self, config: SecurityConfig) -> ConfigValidationResult:
        """
        Validate configuration settings for the selected provider.

        Args:
            config: Configuration object to validate

        Returns:
            ConfigValidationResult with validation results
        """
        errors = []
        warnings = []

        if config.provider == "file":
            for field_name, path in [
                ("certificate", config.certificate),
                ("key", config.key),
                ("ca", config.ca),
            ]:
                if not path:
                    errors.append(ConfigValidationError(
                        field_name,
                        f"{field_name} is required for the file security provider"
                    ))
                elif not os.path.exists(path):
                    warnings.append(ConfigValidationError(
                        field_name,
                        f"File not found: {path}",
                        "warning"
                    ))

            if not config.cache:
                warnings.append(ConfigValidationError(
                    "cache",
                    "No certificate cache directory configured",
                    "warning"
                ))

        if config.provider == "pkcs11":
            if not config.pkcs11_driver_file:
                errors.append(ConfigValidationError(
                    "pkcs11_driver_file",
                    "PKCS11 driver file is required for the pkcs11 security provider"
                ))
            if not config.ca:
                errors.append(ConfigValidationError(
                    "ca",
                    "CA is required for the pkcs11 security provider"
                ))

        if config.provider == "certmanager":
            if not config.certmanager_issuer:
                errors.append(ConfigValidationError(
                    "certmanager_issuer",
                    "Issuer is required for the certmanager security provider"
                ))
            if not config.ssl_dir:
                errors.append(ConfigValidationError(
                    "ssl_dir",
                    "SSL directory is required for the certmanager security provider"
                ))

        if not config.allow_list:
            warnings.append(ConfigValidationError(
                "allow_list",
                "An empty allow list rejects every non privileged caller",
                "warning"
            ))

        if config.disable_tls_verify:
            warnings.append(ConfigValidationError(
                "disable_tls_verify",
                "TLS verification is disabled",
                "warning"
            ))

        all_issues = errors + warnings
        return ConfigValidationResult(
            is_valid=len(errors) == 0,
            errors=all_issues,
            warnings=[]
        )

    def resolve_identity(self, config: SecurityConfig) -> str:
        """
        Determine the identity, an explicit override wins over the environment
        which wins over the configured or derived identity.

        Raises:
            ConfigurationInvalid: If a client identity cannot be derived
        """
        if config.override_certname:
            return config.override_certname

        if self.environ.get("MCOLLECTIVE_CERTNAME"):
            return self.environ["MCOLLECTIVE_CERTNAME"]

        if not config.client:
            return config.identity or socket.getfqdn()

        user_var = "USERNAME" if self.os_name == "nt" else "USER"
        user = self.environ.get(user_var, "")
        if not user:
            raise ConfigurationInvalid(
                f"could not determine client identity, ensure {user_var} environment variable is set"
            )

        return f"{user}.{config.identity_suffix}"

    def puppet_ssl_dir(self, config: SecurityConfig) -> str:
        """
        Determine the Puppet SSL directory.

        Raises:
            ConfigurationInvalid: If no HOME is set for a non root user
        """
        if config.ssl_dir:
            return config.ssl_dir

        if self.os_name == "nt":
            return WINDOWS_SSL_DIR

        if self.uid == 0:
            return ROOT_SSL_DIR

        home = self.environ.get("HOME", "")
        if not home:
            raise ConfigurationInvalid(
                "cannot determine home dir while looking for SSL Directory, no HOME environment is set. "
                "Please set HOME or configure plugin.choria.ssldir"
            )

        return os.path.join(home, ".puppetlabs", "etc", "puppet", "ssl")

    def create_provider(self, config: Optional[SecurityConfig] = None, remote_signer=None,
                        **provider_kwargs):
        """
        Build the security provider selected in the configuration.

        Args:
            config: Configuration to use, the loaded one by default
            remote_signer: RequestSigner used for remote signing, not supported by pkcs11
            **provider_kwargs: Passed to the provider constructor, for example an SRV resolver

        Returns:
            A SecurityProvider implementation
        """
        config = config or self.get_config()
        tls = TLSSettings(
            cipher_suites=list(config.cipher_suites),
            curve_preferences=list(config.curve_preferences),
        )

        self.logger.info(f"Creating {config.provider} security provider")

        if config.provider == "pkcs11":
            return PKCS11Security(PKCS11SecurityConfig(
                driver_file=config.pkcs11_driver_file,
                slot=config.pkcs11_slot,
                ca=config.ca,
                cache=config.cache,
                allow_list=config.allow_list,
                privileged_users=config.privileged_users,
                disable_tls_verify=config.disable_tls_verify,
                always_overwrite_cache=config.always_overwrite_cache,
                tls=tls,
            ), **provider_kwargs)

        identity = self.resolve_identity(config)

        if config.provider == "file":
            return FileSecurity(FileSecurityConfig(
                identity=identity,
                certificate=config.certificate,
                key=config.key,
                ca=config.ca,
                cache=config.cache,
                allow_list=config.allow_list,
                privileged_users=config.privileged_users,
                disable_tls_verify=config.disable_tls_verify,
                backward_compat_verification=config.backward_compat_verification,
                always_overwrite_cache=config.always_overwrite_cache,
                tls=tls,
                remote_signer=remote_signer,
            ), **provider_kwargs)

        if config.provider == "certmanager":
            return CertManagerSecurity(CertManagerSecurityConfig(
                identity=identity,
                ssl_dir=config.ssl_dir,
                namespace=config.certmanager_namespace,
                issuer=config.certmanager_issuer,
                replace=config.certmanager_replace,
                api_version=config.certmanager_api_version,
                alt_names=config.certmanager_alt_names,
                allow_list=config.allow_list,
                privileged_users=config.privileged_users,
                disable_tls_verify=config.disable_tls_verify,
                backward_compat_verification=config.backward_compat_verification,
                always_overwrite_cache=config.always_overwrite_cache,
                tls=tls,
                remote_signer=remote_signer,
            ), **provider_kwargs)

        if config.provider == "puppet":
            # an explicitly configured CA location disables SRV lookups
            disable_srv = bool(config.puppetca_host) or bool(config.puppetca_port)

            return PuppetSecurity(PuppetSecurityConfig(
                identity=identity,
                ssl_dir=self.puppet_ssl_dir(config),
                puppetca_host=config.puppetca_host or DEFAULT_PUPPETCA_HOST,
                puppetca_port=config.puppetca_port or DEFAULT_PUPPETCA_PORT,
                disable_srv=disable_srv,
                allow_list=config.allow_list,
                privileged_users=config.privileged_users,
                disable_tls_verify=config.disable_tls_verify,
                always_overwrite_cache=config.always_overwrite_cache,
                tls=tls,
                remote_signer=remote_signer,
            ), **provider_kwargs)

        raise ConfigurationInvalid(f"unknown security provider {config.provider}")

    def create_default_config_file(self, config_path: str) -> None:
        """
        Create a default configuration file with example settings.

        Args:
            config_path: Path where to create the config file
        """
        config_content = """# Security Provider Configuration File

[security]
# one of puppet, file, pkcs11, certmanager
provider = file
identity = node1.example.net
client = false
identity_suffix = mcollective
allow_list = \\.mcollective$, \\.choria$
privileged_users = \\.privileged.mcollective$, \\.privileged.choria$
disable_tls_verify = false
backward_compat_verification = false
always_overwrite_cache = false

[file]
certificate = /etc/nodetrust/ssl/cert.pem
key = /etc/nodetrust/ssl/key.pem
ca = /etc/nodetrust/ssl/ca.pem
cache = /etc/nodetrust/ssl/cache

[puppet]
ssldir =
puppetca_host =
puppetca_port =

[pkcs11]
driver_file =
slot =

[certmanager]
namespace = choria
issuer =
replace = true
alt_names =
api_version = v1

[tls]
cipher_suites = ECDHE-ECDSA-AES256-GCM-SHA384, ECDHE-RSA-AES256-GCM-SHA384, ECDHE-ECDSA-CHACHA20-POLY1305, ECDHE-RSA-CHACHA20-POLY1305, ECDHE-ECDSA-AES128-GCM-SHA256, ECDHE-RSA-AES128-GCM-SHA256
ecc_curves = prime256v1, secp384r1, secp521r1

[app]
log_level = INFO
log_file_path = logs/nodetrust.log
"""

        config_dir = os.path.dirname(config_path)
        if config_dir:
            os.makedirs(config_dir, exist_ok=True)

        with open(config_path, 'w') as f:
            f.write(config_content)

        self.logger.info(f"Created default configuration file: {config_path}")
