"""
Certificate revocation checking: OCSP with CRL fallback, and a static
list for offline deployments.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import aiohttp
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509 import ocsp
from cryptography.x509.oid import AuthorityInformationAccessOID, ExtensionOID

from ..core.clock import format_datetime, parse_datetime
from ..core.exceptions import DependencyUnavailableError
from ..crypto import certificate_fingerprint

logger = logging.getLogger(__name__)


class RevocationStatus(Enum):
    GOOD = "good"
    REVOKED = "revoked"
    UNKNOWN = "unknown"


@dataclass
class RevocationResult:
    status: RevocationStatus
    method: str
    checked_at: Optional[datetime] = None
    reason: Optional[str] = None
    revoked_at: Optional[datetime] = None

    @property
    def revoked(self) -> bool:
        return self.status == RevocationStatus.REVOKED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "method": self.method,
            "checked_at": format_datetime(self.checked_at),
            "reason": self.reason,
            "revoked_at": format_datetime(self.revoked_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RevocationResult":
        return cls(
            status=RevocationStatus(data["status"]),
            method=data["method"],
            checked_at=parse_datetime(data.get("checked_at")),
            reason=data.get("reason"),
            revoked_at=parse_datetime(data.get("revoked_at")),
        )


class RevocationChecker(ABC):
    """Revocation status port."""

    @abstractmethod
    async def check(
        self,
        cert: x509.Certificate,
        issuer: Optional[x509.Certificate],
        at: datetime,
    ) -> RevocationResult:
        """
        Return the revocation status of ``cert``.

        Raises:
            DependencyUnavailableError: every configured responder was unreachable
        """

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


class StaticRevocationChecker(RevocationChecker):
    """Revocation list kept in memory, keyed by certificate fingerprint."""

    def __init__(self, revoked: Optional[Iterable[str]] = None):
        self._revoked: Dict[str, Optional[datetime]] = {fp: None for fp in revoked or []}
        self.unavailable = False
        self.checks = 0

    def revoke(self, cert: Any, revoked_at: Optional[datetime] = None) -> None:
        self._revoked[certificate_fingerprint(cert)] = revoked_at

    def reinstate(self, cert: Any) -> None:
        self._revoked.pop(certificate_fingerprint(cert), None)

    async def check(
        self,
        cert: x509.Certificate,
        issuer: Optional[x509.Certificate],
        at: datetime,
    ) -> RevocationResult:
        self.checks += 1
        if self.unavailable:
            raise DependencyUnavailableError("Revocation list unavailable", dependency="revocation")
        fingerprint = certificate_fingerprint(cert)
        if fingerprint in self._revoked:
            return RevocationResult(
                status=RevocationStatus.REVOKED,
                method="static",
                checked_at=at,
                revoked_at=self._revoked[fingerprint],
            )
        return RevocationResult(status=RevocationStatus.GOOD, method="static", checked_at=at)


def ocsp_urls(cert: x509.Certificate) -> List[str]:
    try:
        aia = cert.extensions.get_extension_for_oid(ExtensionOID.AUTHORITY_INFORMATION_ACCESS).value
    except x509.ExtensionNotFound:
        return []
    return [
        desc.access_location.value
        for desc in aia
        if desc.access_method == AuthorityInformationAccessOID.OCSP
        and isinstance(desc.access_location, x509.UniformResourceIdentifier)
    ]


def crl_urls(cert: x509.Certificate) -> List[str]:
    try:
        points = cert.extensions.get_extension_for_oid(ExtensionOID.CRL_DISTRIBUTION_POINTS).value
    except x509.ExtensionNotFound:
        return []
    urls = []
    for point in points:
        for name in point.full_name or []:
            if isinstance(name, x509.UniformResourceIdentifier):
                urls.append(name.value)
    return urls


def load_crl(data: bytes) -> x509.CertificateRevocationList:
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_crl(data)
    return x509.load_der_x509_crl(data)


class OcspCrlRevocationChecker(RevocationChecker):
    """
    Queries the certificate's OCSP responders (2 s per attempt) and falls
    back to its CRL distribution points (10 s per fetch).

    A certificate without responders or distribution points is reported as
    ``unknown``; responders that exist but cannot be reached raise
    DependencyUnavailableError.
    """

    def __init__(self, ocsp_timeout: float = 2.0, crl_timeout: float = 10.0):
        self.ocsp_timeout = ocsp_timeout
        self.crl_timeout = crl_timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()

    async def stop(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def check(
        self,
        cert: x509.Certificate,
        issuer: Optional[x509.Certificate],
        at: datetime,
    ) -> RevocationResult:
        await self.start()
        errors: List[str] = []

        if issuer is not None:
            for url in ocsp_urls(cert):
                try:
                    result = await self._check_ocsp(url, cert, issuer, at)
                except (aiohttp.ClientError, ValueError, asyncio.TimeoutError) as e:
                    logger.warning(f"OCSP responder {url} failed: {e}")
                    errors.append(f"ocsp {url}: {e}")
                    continue
                if result.status != RevocationStatus.UNKNOWN:
                    return result
                errors.append(f"ocsp {url}: {result.reason}")

        for url in crl_urls(cert):
            try:
                return await self._check_crl(url, cert, issuer, at)
            except (aiohttp.ClientError, ValueError, asyncio.TimeoutError) as e:
                logger.warning(f"CRL fetch from {url} failed: {e}")
                errors.append(f"crl {url}: {e}")

        if errors:
            raise DependencyUnavailableError(
                "No revocation source answered",
                dependency="revocation",
                attempts=len(errors),
                details={"errors": errors},
            )
        return RevocationResult(
            status=RevocationStatus.UNKNOWN,
            method="none",
            checked_at=at,
            reason="certificate names no OCSP responder or CRL distribution point",
        )

    async def _check_ocsp(
        self,
        url: str,
        cert: x509.Certificate,
        issuer: x509.Certificate,
        at: datetime,
    ) -> RevocationResult:
        request = ocsp.OCSPRequestBuilder().add_certificate(cert, issuer, hashes.SHA1()).build()
        async with self._session.post(
            url,
            data=request.public_bytes(serialization.Encoding.DER),
            headers={"Content-Type": "application/ocsp-request"},
            timeout=aiohttp.ClientTimeout(total=self.ocsp_timeout),
        ) as resp:
            if resp.status != 200:
                raise ValueError(f"HTTP {resp.status}")
            body = await resp.read()

        response = ocsp.load_der_ocsp_response(body)
        if response.response_status != ocsp.OCSPResponseStatus.SUCCESSFUL:
            return RevocationResult(
                status=RevocationStatus.UNKNOWN,
                method="ocsp",
                checked_at=at,
                reason=f"responder status {response.response_status.name}",
            )
        if response.serial_number != cert.serial_number:
            raise ValueError("OCSP response is for a different certificate")
        status = response.certificate_status
        if status == ocsp.OCSPCertStatus.REVOKED:
            return RevocationResult(
                status=RevocationStatus.REVOKED,
                method="ocsp",
                checked_at=at,
                reason=response.revocation_reason.value if response.revocation_reason else None,
                revoked_at=response.revocation_time_utc,
            )
        if status == ocsp.OCSPCertStatus.GOOD:
            return RevocationResult(status=RevocationStatus.GOOD, method="ocsp", checked_at=at)
        return RevocationResult(status=RevocationStatus.UNKNOWN, method="ocsp", checked_at=at, reason="unknown")

    async def _check_crl(
        self,
        url: str,
        cert: x509.Certificate,
        issuer: Optional[x509.Certificate],
        at: datetime,
    ) -> RevocationResult:
        async with self._session.get(url, timeout=aiohttp.ClientTimeout(total=self.crl_timeout)) as resp:
            if resp.status != 200:
                raise ValueError(f"HTTP {resp.status}")
            body = await resp.read()

        crl = load_crl(body)
        if issuer is not None and not crl.is_signature_valid(issuer.public_key()):
            raise ValueError("CRL signature does not verify")
        entry = crl.get_revoked_certificate_by_serial_number(cert.serial_number)
        if entry is not None:
            return RevocationResult(
                status=RevocationStatus.REVOKED,
                method="crl",
                checked_at=at,
                revoked_at=entry.revocation_date_utc,
            )
        return RevocationResult(status=RevocationStatus.GOOD, method="crl", checked_at=at)
