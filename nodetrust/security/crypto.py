"""
Cryptographic primitives shared by the security providers.

Checksums, RSA PKCS#1 v1.5 signing over SHA-256, PEM and X.509 decoding,
key and CSR generation.
"""
import hashlib
from typing import List, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import ExtensionOID, NameOID

from .errors import MalformedCertificate, UnsupportedKeyType

# ASN.1 DigestInfo header for a SHA-256 digest, see RFC 8017 section 9.2
SHA256_DIGEST_INFO_PREFIX = bytes([
    0x30, 0x31, 0x30, 0x0d, 0x06, 0x09, 0x60, 0x86, 0x48, 0x01,
    0x65, 0x03, 0x04, 0x02, 0x01, 0x05, 0x00, 0x04, 0x20,
])

CSR_ORGANIZATIONAL_UNIT = "choria.io"
RSA_KEY_SIZE = 2048


def checksum_bytes(data: bytes) -> bytes:
    """Calculate the SHA-256 checksum of data."""
    return hashlib.sha256(data).digest()


def checksum_string(data: str) -> bytes:
    """Calculate the SHA-256 checksum of a string."""
    return checksum_bytes(data.encode("utf-8"))


def digest_info(data: bytes) -> bytes:
    """DER DigestInfo for the SHA-256 digest of data, as consumed by raw RSA_PKCS signing."""
    return SHA256_DIGEST_INFO_PREFIX + checksum_bytes(data)


def parse_certificate(data: bytes) -> x509.Certificate:
    """Parse the first certificate found in PEM data."""
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as e:
        raise MalformedCertificate(f"could not parse certificate: {e}")


def parse_certificates(data: bytes) -> List[x509.Certificate]:
    """Parse every certificate block in PEM data, ignoring other block types."""
    try:
        return x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise MalformedCertificate(f"could not parse certificates: {e}")


def certificate_der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


def common_name(cert: x509.Certificate) -> str:
    """Extract the subject Common Name, empty when there is none."""
    for attribute in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME):
        return str(attribute.value)
    return ""


def _subject_alt_names(cert: x509.Certificate) -> Optional[x509.SubjectAlternativeName]:
    try:
        return cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME).value
    except x509.ExtensionNotFound:
        return None


def has_san_extension(cert: x509.Certificate) -> bool:
    return _subject_alt_names(cert) is not None


def dns_names(cert: x509.Certificate) -> List[str]:
    san = _subject_alt_names(cert)
    if san is None:
        return []
    return san.get_values_for_type(x509.DNSName)


def email_addresses(cert: x509.Certificate) -> List[str]:
    san = _subject_alt_names(cert)
    if san is None:
        return []
    return san.get_values_for_type(x509.RFC822Name)


def certificate_names(cert_pem: bytes) -> List[str]:
    """Common Name followed by all DNS names of the first certificate in cert_pem."""
    cert = parse_certificate(cert_pem)
    return [common_name(cert)] + dns_names(cert)


def load_rsa_private_key(data: bytes) -> rsa.RSAPrivateKey:
    """
    Load an unencrypted RSA private key from PEM data.

    Both the traditional PKCS#1 and the PKCS#8 encodings are accepted.

    Raises:
        UnsupportedKeyType: If the data is not a parsable RSA key
    """
    try:
        key = serialization.load_pem_private_key(data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise UnsupportedKeyType(f"could not parse private key PEM data: {e}")

    if not isinstance(key, rsa.RSAPrivateKey):
        raise UnsupportedKeyType(f"unhandled key type {type(key).__name__}")

    return key


def sign(key: rsa.RSAPrivateKey, data: bytes) -> bytes:
    """Sign data using RSA PKCS#1 v1.5 over its SHA-256 digest."""
    return key.sign(data, padding.PKCS1v15(), hashes.SHA256())


def verify(cert: x509.Certificate, data: bytes, signature: bytes) -> bool:
    """Verify an RSA PKCS#1 v1.5 SHA-256 signature made by the key in cert."""
    public_key = cert.public_key()
    if not isinstance(public_key, rsa.RSAPublicKey):
        return False

    try:
        public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False

    return True


def generate_private_key(key_size: int = RSA_KEY_SIZE) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def private_key_pem(key: rsa.RSAPrivateKey) -> bytes:
    """Serialize a private key in the traditional PKCS#1 PEM encoding."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def build_csr(key: rsa.RSAPrivateKey, identity: str,
              alt_names: Optional[List[str]] = None) -> x509.CertificateSigningRequest:
    """
    Build a certificate signing request for identity.

    The subject carries the identity as Common Name and the fixed
    organizational unit, alt_names are added as DNS names.
    """
    builder = x509.CertificateSigningRequestBuilder().subject_name(x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, identity),
        x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, CSR_ORGANIZATIONAL_UNIT),
    ]))

    if alt_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(name) for name in alt_names]),
            critical=False,
        )

    return builder.sign(key, hashes.SHA256())


def csr_pem(csr: x509.CertificateSigningRequest) -> bytes:
    return csr.public_bytes(serialization.Encoding.PEM)


def csr_digest(csr: x509.CertificateSigningRequest) -> str:
    """Hex SHA-256 digest of the DER encoded CSR, used to identify it to operators."""
    return checksum_bytes(csr.public_bytes(serialization.Encoding.DER)).hex()
