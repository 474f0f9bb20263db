"""
Certificate trust engine: chain verification, name matching and caller authorization.
"""
import logging
import re
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Set, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import ExtendedKeyUsageOID, ExtensionOID

from . import crypto
from .errors import (
    CallerNotAllowed,
    MalformedCertificate,
    NameMismatch,
    TrustStoreUnavailable,
    UntrustedCertificate,
)

MAX_CHAIN_DEPTH = 10


def match_any_regex(value: str, patterns: Sequence[str]) -> bool:
    """Check if value matches any of the regular expressions in patterns."""
    for pattern in patterns:
        if re.search(pattern, value):
            return True
    return False


def load_ca_pool(ca_path: str) -> List[x509.Certificate]:
    """
    Load the CA bundle at ca_path.

    Raises:
        TrustStoreUnavailable: If the file cannot be read or holds no certificates
    """
    try:
        with open(ca_path, 'rb') as f:
            ca_pem = f.read()
    except OSError as e:
        raise TrustStoreUnavailable(f"could not read CA '{ca_path}': {e}")

    try:
        roots = crypto.parse_certificates(ca_pem)
    except MalformedCertificate as e:
        raise TrustStoreUnavailable(f"could not use CA '{ca_path}' as PEM data: {e}")

    return roots


def _is_ca(cert: x509.Certificate, required: bool) -> bool:
    try:
        constraints = cert.extensions.get_extension_for_oid(ExtensionOID.BASIC_CONSTRAINTS).value
    except x509.ExtensionNotFound:
        return not required
    return constraints.ca


def _within_validity(cert: x509.Certificate, now: datetime) -> bool:
    return cert.not_valid_before_utc <= now <= cert.not_valid_after_utc


def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
    if cert.issuer != issuer.subject:
        return False

    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False

    return True


def _allows_usage(cert: x509.Certificate, usage: x509.ObjectIdentifier) -> bool:
    try:
        usages = cert.extensions.get_extension_for_oid(ExtensionOID.EXTENDED_KEY_USAGE).value
    except x509.ExtensionNotFound:
        return True
    return (usage in usages
            or ExtendedKeyUsageOID.ANY_EXTENDED_KEY_USAGE in usages)


def verify_chain(leaf: x509.Certificate, intermediates: Sequence[x509.Certificate],
                 roots: Sequence[x509.Certificate],
                 usage: Optional[x509.ObjectIdentifier] = ExtendedKeyUsageOID.CLIENT_AUTH,
                 now: Optional[datetime] = None) -> None:
    """
    Verify that leaf chains up to one of roots, optionally through intermediates.

    Raises:
        UntrustedCertificate: If no valid chain can be built
    """
    now = now or datetime.now(timezone.utc)

    if not _within_validity(leaf, now):
        raise UntrustedCertificate("x509: certificate has expired or is not yet valid")

    if usage is not None and not _allows_usage(leaf, usage):
        raise UntrustedCertificate("x509: certificate specifies an incompatible key usage")

    if any(leaf == root for root in roots):
        return

    if not _chain_to_root(leaf, intermediates, roots, now, usage, set(), 0):
        raise UntrustedCertificate("x509: certificate signed by unknown authority")


def _chain_to_root(cert: x509.Certificate, intermediates: Sequence[x509.Certificate],
                   roots: Sequence[x509.Certificate], now: datetime,
                   usage: Optional[x509.ObjectIdentifier], seen: Set[bytes], depth: int) -> bool:
    if depth > MAX_CHAIN_DEPTH:
        return False

    for root in roots:
        if not (_issued_by(cert, root) and _is_ca(root, required=False) and _within_validity(root, now)):
            continue
        if usage is None or _allows_usage(root, usage):
            return True

    for candidate in intermediates:
        fingerprint = candidate.fingerprint(hashes.SHA256())
        if fingerprint in seen or candidate == cert:
            continue
        if not (_issued_by(cert, candidate) and _is_ca(candidate, required=True)
                and _within_validity(candidate, now)):
            continue

        # issuers constrain the usages of everything they sign
        if usage is not None and not _allows_usage(candidate, usage):
            continue

        if _chain_to_root(candidate, intermediates, roots, now, usage, seen | {fingerprint}, depth + 1):
            return True

    return False


class TrustEngine:
    """Verifies certificates against a CA bundle and decides which callers are allowed."""

    def __init__(self, ca_path: str, allow_list: Optional[List[str]] = None,
                 privileged_users: Optional[List[str]] = None):
        self.ca_path = ca_path
        self.allow_list = list(allow_list or [])
        self.privileged_users = list(privileged_users or [])
        self.logger = logging.getLogger(__name__)

    def verify_certificate(self, cert_pem: bytes, name: str) -> None:
        """
        Verify a certificate is signed by the configured CA and, if name is
        not empty, that it was issued to name.

        Args:
            cert_pem: PEM data holding the certificate followed by any intermediates
            name: Expected identity, "" for a chain only check, "email:<addr>" for emails

        Raises:
            TrustStoreUnavailable: If the CA bundle cannot be loaded
            MalformedCertificate: If cert_pem cannot be decoded
            UntrustedCertificate: If the chain does not verify
            NameMismatch: If the certificate is not valid for name
        """
        roots = load_ca_pool(self.ca_path)

        try:
            certs = crypto.parse_certificates(cert_pem)
        except MalformedCertificate as e:
            self.logger.warning(f"Could not parse certificate '{name}': {e}")
            raise

        leaf = certs[0]

        try:
            verify_chain(leaf, certs, roots)
        except UntrustedCertificate as e:
            self.logger.warning(f"Certificate does not pass verification as '{name}': {e}")
            raise

        self.verify_name(leaf, name)

    def verify_name(self, cert: x509.Certificate, name: str) -> None:
        """Check that an already chain verified certificate is valid for name."""
        emails = crypto.email_addresses(cert)
        if emails and name.startswith("email:"):
            self.logger.debug("Email addresses found in certificate, attempting verification")
            if name[len("email:"):] in emails:
                return
            raise NameMismatch(f"email address not found in SAN: {name}, {emails}")

        if name == "":
            return

        if name in crypto.dns_names(cert):
            return

        cn = crypto.common_name(cert)
        if cn != name:
            raise NameMismatch(f"x509: certificate is valid for {cn}, not {name}")

    def is_privileged_name(self, name: str) -> bool:
        return match_any_regex(name, self.privileged_users)

    def is_allowed_name(self, name: str) -> bool:
        return match_any_regex(name, self.allow_list)

    def authorize(self, name: str, cert_pem: bytes) -> Tuple[bool, str]:
        """
        Decide whether the holder of cert_pem may act as name.

        Certificates carrying a privileged name only need to be signed by the
        CA, they may act on behalf of any caller and skip the allow list.

        Returns:
            Tuple of (privileged, effective name) where the effective name is the
            privileged certificate name for privileged callers and name otherwise

        Raises:
            MalformedCertificate, UntrustedCertificate, NameMismatch, CallerNotAllowed
        """
        names = crypto.certificate_names(cert_pem)

        for cert_name in names:
            if self.is_privileged_name(cert_name):
                self.verify_certificate(cert_pem, "")
                return True, cert_name

        self.verify_certificate(cert_pem, name)

        if not self.is_allowed_name(name):
            self.logger.warning(
                f"Received certificate '{name}' does not match the allowed list '{self.allow_list}'"
            )
            raise CallerNotAllowed("not on allow list")

        return False, name

    def should_allow_caller(self, name: str, cert_pem: bytes) -> bool:
        """Authorize a caller, returning True when it holds a privileged certificate."""
        privileged, _ = self.authorize(name, cert_pem)
        return privileged
