"""Key, CSR and certificate helpers for user identities."""

import base64

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.ec import EllipticCurvePrivateKey
from cryptography.x509.oid import NameOID

from .errors import DecodeError


def generate_private_key() -> EllipticCurvePrivateKey:
    """Generate a fresh EC private key on curve secp256r1 (P-256)."""
    return ec.generate_private_key(ec.SECP256R1())


def build_csr(key: EllipticCurvePrivateKey, subject_org: str) -> x509.CertificateSigningRequest:
    """Build a CSR with subject O=<subject_org>, signed by key.

    Args:
        key: Private key whose public half goes into the request
        subject_org: Organization name, the account username

    Returns:
        Signed certificate signing request
    """
    subject = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, subject_org)])
    return x509.CertificateSigningRequestBuilder().subject_name(subject).sign(key, hashes.SHA256())


def serialize_private_key(key: EllipticCurvePrivateKey) -> bytes:
    """Serialize private key to PEM format (PKCS8, no encryption)."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def deserialize_private_key(pem_data: bytes) -> EllipticCurvePrivateKey:
    """Deserialize EC private key from PEM bytes.

    Raises:
        DecodeError: If data is not an unencrypted PEM EC private key
    """
    try:
        key = serialization.load_pem_private_key(pem_data, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise DecodeError(f"invalid private key PEM: {e}") from e
    if not isinstance(key, EllipticCurvePrivateKey):
        raise DecodeError("expected EC private key")
    return key


def serialize_certificate(cert: x509.Certificate) -> bytes:
    """Serialize certificate to PEM format."""
    return cert.public_bytes(serialization.Encoding.PEM)


def deserialize_certificate(pem_data: bytes) -> x509.Certificate:
    """Deserialize certificate from PEM bytes.

    Raises:
        DecodeError: If data is not a PEM certificate
    """
    try:
        return x509.load_pem_x509_certificate(pem_data)
    except ValueError as e:
        raise DecodeError(f"invalid certificate PEM: {e}") from e


def serialize_csr(csr: x509.CertificateSigningRequest) -> bytes:
    """Serialize CSR to PEM format."""
    return csr.public_bytes(serialization.Encoding.PEM)


def deserialize_csr(pem_data: bytes) -> x509.CertificateSigningRequest:
    """Deserialize CSR from PEM bytes.

    Raises:
        DecodeError: If data is not a PEM CSR
    """
    try:
        return x509.load_pem_x509_csr(pem_data)
    except ValueError as e:
        raise DecodeError(f"invalid CSR PEM: {e}") from e


def encode_csr_base64(csr: x509.CertificateSigningRequest) -> str:
    """Base64-encode the CSR PEM for transport in a JSON body."""
    return base64.b64encode(serialize_csr(csr)).decode("ascii")


def extract_subject_org(cert: x509.Certificate) -> str:
    """Return the subject O attribute of a certificate.

    Raises:
        DecodeError: If the subject carries no string organization name
    """
    attributes = cert.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)
    if not attributes or not isinstance(attributes[0].value, str):
        raise DecodeError("certificate subject has no organization")
    return attributes[0].value


def certificate_matches_key(cert: x509.Certificate, key: EllipticCurvePrivateKey) -> bool:
    """Check that the certificate was issued for this key's public half."""
    cert_public = cert.public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    key_public = key.public_key().public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return cert_public == key_public
