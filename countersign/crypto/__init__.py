"""
Countersign - Hash and Crypto Adapter

Provides:
- SHA-256 and named hash digests, HMAC-SHA256, constant-time compare
- Canonical JSON encoding used for every hashed or signed structure
- X.509 certificate loading and fingerprints
- Signature creation/verification for Ed25519, ECDSA and RSA keys
- Trust anchors with certificate chain verification
"""

import base64
import hashlib
import hmac
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

logger = logging.getLogger(__name__)

DEPRECATED_HASH_ALGORITHMS = frozenset({"sha1", "md5"})

HASH_ALGORITHMS = {
    "sha1": hashes.SHA1,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}

PrivateKey = Union[ed25519.Ed25519PrivateKey, ec.EllipticCurvePrivateKey, rsa.RSAPrivateKey]
PublicKey = Union[ed25519.Ed25519PublicKey, ec.EllipticCurvePublicKey, rsa.RSAPublicKey]


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def normalize_hash_name(name: str) -> str:
    """'SHA-256' -> 'sha256'."""
    return name.replace("-", "").replace("_", "").lower()


def digest(data: bytes, algorithm: str = "sha256") -> bytes:
    return hashlib.new(normalize_hash_name(algorithm), data).digest()


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hmac_sha256(key: bytes, data: bytes) -> bytes:
    return hmac.new(key, data, hashlib.sha256).digest()


def constant_time_equals(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    return hmac.compare_digest(a, b)


def is_deprecated_hash(name: str) -> bool:
    return normalize_hash_name(name) in DEPRECATED_HASH_ALGORITHMS


# ---------------------------------------------------------------------------
# Canonical encoding
# ---------------------------------------------------------------------------

def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not canonically encodable")


def canonical_json(value: Any) -> bytes:
    """Deterministic JSON: sorted keys, compact separators, UTF-8."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    ).encode("utf-8")


def b64encode(data: Optional[bytes]) -> Optional[str]:
    if data is None:
        return None
    return base64.b64encode(data).decode("ascii")


def b64decode(data: Optional[str]) -> Optional[bytes]:
    if data is None:
        return None
    return base64.b64decode(data)


# ---------------------------------------------------------------------------
# Certificates and keys
# ---------------------------------------------------------------------------

def load_certificate(data: Union[bytes, x509.Certificate]) -> x509.Certificate:
    """Load a certificate from PEM or DER bytes."""
    if isinstance(data, x509.Certificate):
        return data
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def certificate_der(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.DER)


def certificate_pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def certificate_fingerprint(cert: Union[bytes, x509.Certificate]) -> str:
    """SHA-256 over the DER encoding, hex."""
    return sha256_hex(certificate_der(load_certificate(cert)))


def certificate_valid_at(cert: x509.Certificate, at: datetime) -> bool:
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    return cert.not_valid_before_utc <= at <= cert.not_valid_after_utc


def load_private_key(data: bytes, password: Optional[bytes] = None) -> PrivateKey:
    if data.lstrip().startswith(b"-----BEGIN"):
        return serialization.load_pem_private_key(data, password=password)
    return serialization.load_der_private_key(data, password=password)


def sign_message(private_key: PrivateKey, message: bytes, hash_algorithm: str = "sha256") -> bytes:
    """Sign with the scheme matching the key type."""
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return private_key.sign(message)
    algorithm = HASH_ALGORITHMS[normalize_hash_name(hash_algorithm)]()
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return private_key.sign(message, ec.ECDSA(algorithm))
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key.sign(message, padding.PKCS1v15(), algorithm)
    raise TypeError(f"Unsupported private key type: {type(private_key).__name__}")


def verify_message(
    public_key: PublicKey,
    signature: bytes,
    message: bytes,
    hash_algorithm: str = "sha256",
) -> Tuple[bool, Optional[str]]:
    """
    Verify a signature.

    Returns:
        Tuple of (valid, error_message)
    """
    try:
        if isinstance(public_key, ed25519.Ed25519PublicKey):
            public_key.verify(signature, message)
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            algorithm = HASH_ALGORITHMS[normalize_hash_name(hash_algorithm)]()
            public_key.verify(signature, message, ec.ECDSA(algorithm))
        elif isinstance(public_key, rsa.RSAPublicKey):
            algorithm = HASH_ALGORITHMS[normalize_hash_name(hash_algorithm)]()
            public_key.verify(signature, message, padding.PKCS1v15(), algorithm)
        else:
            return False, f"Unsupported public key type: {type(public_key).__name__}"
        return True, None
    except InvalidSignature:
        return False, "Invalid signature"
    except (KeyError, ValueError, UnsupportedAlgorithm) as e:
        return False, f"Signature verification failed: {e}"


@dataclass
class KeySigner:
    """A private key with its certificate and issuing chain."""
    private_key: PrivateKey
    certificate: x509.Certificate
    chain: List[x509.Certificate] = field(default_factory=list)
    hash_algorithm: str = "sha256"

    @property
    def fingerprint(self) -> str:
        return certificate_fingerprint(self.certificate)

    def sign(self, message: bytes) -> bytes:
        return sign_message(self.private_key, message, self.hash_algorithm)

    def chain_der(self) -> List[bytes]:
        return [certificate_der(c) for c in self.chain]


# ---------------------------------------------------------------------------
# Trust anchors
# ---------------------------------------------------------------------------

@dataclass
class ChainVerification:
    """Result of a certificate path check."""
    valid: bool
    path: List[str]
    reasons: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "path": self.path, "reasons": self.reasons}


class TrustStore:
    """
    Set of trust anchor certificates.

    Chains are built leaf-first from the supplied intermediates and verified
    link by link with the issuer's public key.
    """

    MAX_DEPTH = 8

    def __init__(self, anchors: Optional[Iterable[x509.Certificate]] = None):
        self._anchors: Dict[str, x509.Certificate] = {}
        self._lock = threading.RLock()
        for anchor in anchors or []:
            self.add_anchor(anchor)

    def add_anchor(self, cert: Union[bytes, x509.Certificate]) -> str:
        cert = load_certificate(cert)
        fingerprint = certificate_fingerprint(cert)
        with self._lock:
            self._anchors[fingerprint] = cert
        return fingerprint

    def remove_anchor(self, fingerprint: str) -> bool:
        with self._lock:
            return self._anchors.pop(fingerprint, None) is not None

    def load_pem_file(self, path: Union[str, Path]) -> int:
        """Load every certificate in a PEM bundle. Returns the number added."""
        data = Path(path).read_bytes()
        certs = x509.load_pem_x509_certificates(data)
        for cert in certs:
            self.add_anchor(cert)
        logger.info(f"Loaded {len(certs)} trust anchors from {path}")
        return len(certs)

    def is_anchor(self, cert: x509.Certificate) -> bool:
        with self._lock:
            return certificate_fingerprint(cert) in self._anchors

    def __len__(self) -> int:
        return len(self._anchors)

    @staticmethod
    def _issued_by(cert: x509.Certificate, issuer: x509.Certificate) -> bool:
        if cert.issuer != issuer.subject:
            return False
        try:
            cert.verify_directly_issued_by(issuer)
            return True
        except (ValueError, TypeError, InvalidSignature):
            return False

    def find_issuer(
        self,
        cert: x509.Certificate,
        intermediates: Sequence[x509.Certificate] = (),
    ) -> Optional[x509.Certificate]:
        with self._lock:
            anchors = list(self._anchors.values())
        for candidate in list(anchors) + list(intermediates):
            if candidate is cert:
                continue
            if self._issued_by(cert, candidate):
                return candidate
        return None

    def verify_chain(
        self,
        leaf: Union[bytes, x509.Certificate],
        intermediates: Sequence[Union[bytes, x509.Certificate]] = (),
        at: Optional[datetime] = None,
    ) -> ChainVerification:
        """
        Verify that ``leaf`` chains to a trust anchor.

        Args:
            leaf: End-entity certificate
            intermediates: Candidate issuing certificates
            at: Instant at which every certificate in the path must be valid

        Returns:
            ChainVerification with the fingerprint path and failure reasons
        """
        current = load_certificate(leaf)
        pool = [load_certificate(c) for c in intermediates]
        path = [certificate_fingerprint(current)]
        reasons: List[str] = []

        for _ in range(self.MAX_DEPTH):
            if at is not None and not certificate_valid_at(current, at):
                reasons.append(
                    f"certificate {current.subject.rfc4514_string()} not valid at {at.isoformat()}"
                )
            if self.is_anchor(current):
                return ChainVerification(valid=not reasons, path=path, reasons=reasons)
            issuer = self.find_issuer(current, pool)
            if issuer is None:
                reasons.append(
                    f"no trusted issuer for {current.subject.rfc4514_string()}"
                )
                return ChainVerification(valid=False, path=path, reasons=reasons)
            current = issuer
            path.append(certificate_fingerprint(current))

        reasons.append("certificate chain exceeds maximum depth")
        return ChainVerification(valid=False, path=path, reasons=reasons)
