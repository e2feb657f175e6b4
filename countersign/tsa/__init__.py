"""
Countersign - Timestamp Authority Client Port

RFC 3161 timestamping with multi-provider failover:
- TimeStampRequest/TimestampToken/TSAResponse data model
- HttpTimestampAuthorityClient: DER TimeStampReq over HTTP (aiohttp, asn1crypto)
- LocalTimestampAuthority: on-premise authority issuing signed JSON tokens
- FailoverTimestampClient: ordered providers, per-attempt timeout,
  independent attempt budget per provider, statistics and health checks
- verify_token: offline verification of either token format
"""

import asyncio
import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp
from asn1crypto import algos, cms, tsp

from ..core.clock import Clock, SystemClock, format_datetime, new_id, parse_datetime
from ..core.config import TSAProviderConfig
from ..core.exceptions import DependencyUnavailableError, TsaRejectedError, TsaUnavailableError
from ..crypto import (
    KeySigner,
    b64decode,
    b64encode,
    canonical_json,
    certificate_der,
    certificate_fingerprint,
    constant_time_equals,
    digest,
    load_certificate,
    normalize_hash_name,
    verify_message,
)

logger = logging.getLogger(__name__)

TOKEN_FORMAT_JSON = "json"
TOKEN_FORMAT_RFC3161 = "rfc3161"

# esi4-qtstStatement-1
QUALIFIED_TST_STATEMENT = "0.4.0.19422.1.1"


class TSAStatus(Enum):
    """PKIStatus values from RFC 3161."""
    GRANTED = "granted"
    GRANTED_WITH_MODS = "granted_with_mods"
    REJECTION = "rejection"
    WAITING = "waiting"
    REVOCATION_WARNING = "revocation_warning"
    REVOCATION_NOTIFICATION = "revocation_notification"

    @property
    def granted(self) -> bool:
        return self in (TSAStatus.GRANTED, TSAStatus.GRANTED_WITH_MODS)


@dataclass
class TSAProvider:
    """A timestamp authority as seen by the core."""
    provider_id: str
    name: str
    url: str
    qualified: bool = False
    algorithms: List[str] = field(default_factory=lambda: ["sha256"])
    region: str = "global"

    @classmethod
    def from_config(cls, config: TSAProviderConfig) -> "TSAProvider":
        return cls(
            provider_id=config.provider_id,
            name=config.name,
            url=config.url,
            qualified=config.qualified,
            algorithms=[normalize_hash_name(a) for a in config.algorithms],
            region=config.region,
        )

    def supports(self, hash_algorithm: str) -> bool:
        return normalize_hash_name(hash_algorithm) in self.algorithms


@dataclass
class TimeStampRequest:
    """RFC 3161 TimeStampReq fields."""
    hash_algorithm: str
    hashed_message: bytes
    nonce: bytes
    cert_req: bool = True
    policy: Optional[str] = None
    version: int = 1

    def to_der(self) -> bytes:
        fields = {
            "version": "v1",
            "message_imprint": tsp.MessageImprint({
                "hash_algorithm": algos.DigestAlgorithm({
                    "algorithm": normalize_hash_name(self.hash_algorithm),
                }),
                "hashed_message": self.hashed_message,
            }),
            "nonce": int.from_bytes(self.nonce, "big"),
            "cert_req": self.cert_req,
        }
        if self.policy:
            fields["req_policy"] = self.policy
        return tsp.TimeStampReq(fields).dump()

    @property
    def nonce_int(self) -> int:
        return int.from_bytes(self.nonce, "big")


@dataclass
class TimestampToken:
    """
    A timestamp token with its decoded fields.

    ``signed_content`` is what the authority signed: the canonical TSTInfo
    JSON for local tokens, or the full CMS ContentInfo DER for RFC 3161
    tokens (whose signature lives inside the DER).
    """
    provider_id: str
    token_format: str
    serial_number: str
    gen_time: datetime
    hash_algorithm: str
    hashed_message: bytes
    authority_certificate: bytes
    signed_content: bytes
    signature: bytes = b""
    nonce: Optional[bytes] = None
    policy: Optional[str] = None
    qualified: bool = False
    authority_chain: List[bytes] = field(default_factory=list)
    token_id: str = field(default_factory=lambda: new_id("tst"))

    @property
    def authority_fingerprint(self) -> str:
        return certificate_fingerprint(self.authority_certificate)

    def to_record(self) -> Dict[str, Any]:
        return {
            "token_id": self.token_id,
            "provider_id": self.provider_id,
            "token_format": self.token_format,
            "serial_number": self.serial_number,
            "gen_time": format_datetime(self.gen_time),
            "hash_algorithm": self.hash_algorithm,
            "hashed_message": self.hashed_message.hex(),
            "authority_certificate": b64encode(self.authority_certificate),
            "authority_chain": [b64encode(c) for c in self.authority_chain],
            "signed_content": b64encode(self.signed_content),
            "signature": b64encode(self.signature),
            "nonce": self.nonce.hex() if self.nonce is not None else None,
            "policy": self.policy,
            "qualified": self.qualified,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "TimestampToken":
        return cls(
            token_id=data["token_id"],
            provider_id=data["provider_id"],
            token_format=data["token_format"],
            serial_number=data["serial_number"],
            gen_time=parse_datetime(data["gen_time"]),
            hash_algorithm=data["hash_algorithm"],
            hashed_message=bytes.fromhex(data["hashed_message"]),
            authority_certificate=b64decode(data["authority_certificate"]),
            authority_chain=[b64decode(c) for c in data.get("authority_chain", [])],
            signed_content=b64decode(data["signed_content"]),
            signature=b64decode(data.get("signature") or ""),
            nonce=bytes.fromhex(data["nonce"]) if data.get("nonce") else None,
            policy=data.get("policy"),
            qualified=data.get("qualified", False),
        )

    def encode(self) -> bytes:
        """Canonical bytes of the whole token (input to archive timestamps)."""
        return canonical_json(self.to_record())


@dataclass
class TSAResponse:
    """Parsed TimeStampResp."""
    status: TSAStatus
    provider_id: str
    token: Optional[TimestampToken] = None
    status_text: Optional[str] = None
    failure_info: Optional[str] = None

    @property
    def time(self) -> Optional[datetime]:
        return self.token.gen_time if self.token else None

    @property
    def serial(self) -> Optional[str]:
        return self.token.serial_number if self.token else None

    @property
    def authority_cert(self) -> Optional[bytes]:
        return self.token.authority_certificate if self.token else None


class TimestampAuthorityClient(ABC):
    """TSA client port."""

    def __init__(self, provider: TSAProvider):
        self.provider = provider

    @abstractmethod
    async def request_timestamp(self, request: TimeStampRequest) -> TSAResponse:
        """Submit a request; raise DependencyUnavailableError on transport failure."""

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


# ---------------------------------------------------------------------------
# RFC 3161 over HTTP
# ---------------------------------------------------------------------------

def parse_timestamp_response(data: bytes, provider: TSAProvider) -> TSAResponse:
    """
    Parse a DER TimeStampResp.

    Raises:
        TsaRejectedError: when the bytes are not a well-formed response
    """
    try:
        resp = tsp.TimeStampResp.load(data)
        status_info = resp["status"]
        status = TSAStatus(status_info["status"].native)
        status_text = None
        if status_info["status_string"].native:
            status_text = "; ".join(status_info["status_string"].native)
        failure = status_info["fail_info"].native if status_info["fail_info"].native else None
        if not status.granted:
            return TSAResponse(
                status=status,
                provider_id=provider.provider_id,
                status_text=status_text,
                failure_info=str(failure) if failure else None,
            )
        token_der = resp["time_stamp_token"].dump()
        token = decode_rfc3161_token(token_der, provider)
    except (ValueError, TypeError, KeyError) as e:
        raise TsaRejectedError(
            f"Malformed response from {provider.provider_id}: {e}",
            dependency=provider.provider_id,
        ) from e
    return TSAResponse(status=status, provider_id=provider.provider_id, token=token, status_text=status_text)


def _signer_info(signed_data: cms.SignedData) -> cms.SignerInfo:
    infos = signed_data["signer_infos"]
    if len(infos) != 1:
        raise ValueError(f"expected one signer, found {len(infos)}")
    return infos[0]


def _tst_info(signed_data: cms.SignedData) -> Tuple[tsp.TSTInfo, bytes]:
    encap = signed_data["encap_content_info"]
    if encap["content_type"].native != "tst_info":
        raise ValueError("encapsulated content is not TSTInfo")
    content = encap["content"]
    return content.parsed, content.contents


def _authority_from_signed_data(signed_data: cms.SignedData, signer: cms.SignerInfo) -> Tuple[bytes, List[bytes]]:
    certs = [c.chosen for c in signed_data["certificates"] if c.name == "certificate"]
    if not certs:
        raise ValueError("response carries no certificates")
    sid = signer["sid"]
    chosen = certs[0]
    if sid.name == "issuer_and_serial_number":
        serial = sid.chosen["serial_number"].native
        for cert in certs:
            if cert.serial_number == serial:
                chosen = cert
                break
    others = [c.dump() for c in certs if c is not chosen]
    return chosen.dump(), others


def has_qualified_statement(tst_info: tsp.TSTInfo) -> bool:
    """Whether the TSTInfo carries the ETSI EN 319 422 qualified timestamp statement."""
    extensions = tst_info["extensions"].native or []
    return any(ext["extn_id"] == QUALIFIED_TST_STATEMENT for ext in extensions)


def decode_rfc3161_token(token_der: bytes, provider: TSAProvider) -> TimestampToken:
    content_info = cms.ContentInfo.load(token_der)
    if content_info["content_type"].native != "signed_data":
        raise ValueError("token is not CMS SignedData")
    signed_data = content_info["content"]
    tst_info, _ = _tst_info(signed_data)
    signer = _signer_info(signed_data)
    authority_cert, chain = _authority_from_signed_data(signed_data, signer)
    imprint = tst_info["message_imprint"]
    nonce = tst_info["nonce"].native
    return TimestampToken(
        provider_id=provider.provider_id,
        token_format=TOKEN_FORMAT_RFC3161,
        serial_number=str(tst_info["serial_number"].native),
        gen_time=tst_info["gen_time"].native,
        hash_algorithm=normalize_hash_name(imprint["hash_algorithm"]["algorithm"].native),
        hashed_message=imprint["hashed_message"].native,
        authority_certificate=authority_cert,
        authority_chain=chain,
        signed_content=token_der,
        nonce=nonce.to_bytes((nonce.bit_length() + 7) // 8 or 1, "big") if nonce is not None else None,
        policy=tst_info["policy"].dotted,
        qualified=provider.qualified and has_qualified_statement(tst_info),
    )


class HttpTimestampAuthorityClient(TimestampAuthorityClient):
    """
    RFC 3161 Timestamp Authority client over HTTP.

    HTTP 5xx and connection errors are reported as unavailable; 4xx and
    malformed or non-granted responses are rejections.
    """

    def __init__(self, provider: TSAProvider, timeout: float = 3.0):
        super().__init__(provider)
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def start(self) -> None:
        """Start the TSA client."""
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )

    async def stop(self) -> None:
        """Stop the TSA client."""
        if self._session:
            await self._session.close()
            self._session = None

    async def request_timestamp(self, request: TimeStampRequest) -> TSAResponse:
        await self.start()
        try:
            async with self._session.post(
                self.provider.url,
                data=request.to_der(),
                headers={
                    "Content-Type": "application/timestamp-query",
                    "Accept": "application/timestamp-reply",
                },
            ) as resp:
                body = await resp.read()
                status = resp.status
        except aiohttp.ClientError as e:
            raise TsaUnavailableError(
                f"TSA {self.provider.provider_id} connection error: {e}",
                dependency=self.provider.provider_id,
            ) from e

        if status >= 500:
            raise TsaUnavailableError(
                f"TSA {self.provider.provider_id} returned HTTP {status}",
                dependency=self.provider.provider_id,
                details={"http_status": status},
            )
        if status != 200:
            raise TsaRejectedError(
                f"TSA {self.provider.provider_id} returned HTTP {status}",
                dependency=self.provider.provider_id,
                details={"http_status": status},
            )
        return parse_timestamp_response(body, self.provider)


# ---------------------------------------------------------------------------
# Local authority
# ---------------------------------------------------------------------------

class LocalTimestampAuthority(TimestampAuthorityClient):
    """
    Timestamp authority backed by a local key and certificate.

    Tokens are canonical JSON TSTInfo documents signed with the authority
    key; they verify offline with the authority certificate like RFC 3161
    tokens do.
    """

    def __init__(
        self,
        provider: TSAProvider,
        signer: KeySigner,
        clock: Optional[Clock] = None,
        policy: str = "1.3.6.1.4.1.99999.1.1",
    ):
        super().__init__(provider)
        self.signer = signer
        self.clock = clock or SystemClock()
        self.policy = policy
        self._serials = itertools.count(1)
        self.issued = 0

    async def request_timestamp(self, request: TimeStampRequest) -> TSAResponse:
        if not self.provider.supports(request.hash_algorithm):
            return TSAResponse(
                status=TSAStatus.REJECTION,
                provider_id=self.provider.provider_id,
                status_text=f"unsupported hash algorithm {request.hash_algorithm}",
                failure_info="bad_alg",
            )
        gen_time = self.clock.now()
        serial = f"{next(self._serials)}"
        tst_info = {
            "version": 1,
            "policy": request.policy or self.policy,
            "message_imprint": {
                "hash_algorithm": normalize_hash_name(request.hash_algorithm),
                "hashed_message": request.hashed_message.hex(),
            },
            "serial_number": serial,
            "gen_time": format_datetime(gen_time),
            "nonce": request.nonce.hex(),
            "tsa": certificate_fingerprint(self.signer.certificate),
            "qualified": self.provider.qualified,
        }
        content = canonical_json(tst_info)
        token = TimestampToken(
            provider_id=self.provider.provider_id,
            token_format=TOKEN_FORMAT_JSON,
            serial_number=serial,
            gen_time=gen_time,
            hash_algorithm=normalize_hash_name(request.hash_algorithm),
            hashed_message=request.hashed_message,
            authority_certificate=certificate_der(self.signer.certificate),
            authority_chain=self.signer.chain_der(),
            signed_content=content,
            signature=self.signer.sign(content),
            nonce=request.nonce,
            policy=tst_info["policy"],
            qualified=self.provider.qualified,
        )
        self.issued += 1
        return TSAResponse(status=TSAStatus.GRANTED, provider_id=self.provider.provider_id, token=token)


# ---------------------------------------------------------------------------
# Offline token verification
# ---------------------------------------------------------------------------

def _verify_json_token(token: TimestampToken) -> List[str]:
    reasons = []
    cert = load_certificate(token.authority_certificate)
    ok, error = verify_message(cert.public_key(), token.signature, token.signed_content)
    if not ok:
        reasons.append(f"timestamp signature invalid: {error}")
        return reasons
    try:
        tst_info = json.loads(token.signed_content)
    except ValueError:
        return ["timestamp content is not valid JSON"]
    imprint = tst_info.get("message_imprint", {})
    if tst_info.get("version") != 1:
        reasons.append("unsupported TSTInfo version")
    if imprint.get("hash_algorithm") != token.hash_algorithm:
        reasons.append("hash algorithm differs from signed TSTInfo")
    if imprint.get("hashed_message") != token.hashed_message.hex():
        reasons.append("message imprint differs from signed TSTInfo")
    if tst_info.get("serial_number") != token.serial_number:
        reasons.append("serial number differs from signed TSTInfo")
    if tst_info.get("gen_time") != format_datetime(token.gen_time):
        reasons.append("time differs from signed TSTInfo")
    if token.nonce is not None and tst_info.get("nonce") != token.nonce.hex():
        reasons.append("nonce differs from signed TSTInfo")
    if tst_info.get("tsa") != certificate_fingerprint(token.authority_certificate):
        reasons.append("authority certificate differs from signed TSTInfo")
    if tst_info.get("policy") != token.policy:
        reasons.append("policy differs from signed TSTInfo")
    if tst_info.get("qualified", False) != token.qualified:
        reasons.append("qualified status differs from signed TSTInfo")
    return reasons


def _verify_rfc3161_token(token: TimestampToken) -> List[str]:
    reasons = []
    try:
        content_info = cms.ContentInfo.load(token.signed_content)
        signed_data = content_info["content"]
        tst_info, tst_der = _tst_info(signed_data)
        signer = _signer_info(signed_data)
        digest_name = signer["digest_algorithm"]["algorithm"].native
        signed_attrs = signer["signed_attrs"]
        message_digest = None
        for attr in signed_attrs:
            if attr["type"].native == "message_digest":
                message_digest = attr["values"][0].native
        if message_digest is None:
            return ["signed attributes lack a message digest"]
        if not constant_time_equals(message_digest, digest(tst_der, digest_name)):
            reasons.append("TSTInfo digest does not match signed attributes")
        # Signed attributes are signed with their universal SET tag.
        attrs_der = b"\x31" + signed_attrs.dump()[1:]
        cert = load_certificate(token.authority_certificate)
        ok, error = verify_message(cert.public_key(), signer["signature"].native, attrs_der, digest_name)
        if not ok:
            reasons.append(f"timestamp signature invalid: {error}")
        imprint = tst_info["message_imprint"]
        if not constant_time_equals(imprint["hashed_message"].native, token.hashed_message):
            reasons.append("message imprint differs from signed TSTInfo")
        if str(tst_info["serial_number"].native) != token.serial_number:
            reasons.append("serial number differs from signed TSTInfo")
        if tst_info["gen_time"].native != token.gen_time:
            reasons.append("time differs from signed TSTInfo")
        if tst_info["policy"].dotted != token.policy:
            reasons.append("policy differs from signed TSTInfo")
        if token.qualified and not has_qualified_statement(tst_info):
            reasons.append("qualified status not asserted by signed TSTInfo")
    except (ValueError, TypeError, KeyError) as e:
        reasons.append(f"timestamp token malformed: {e}")
    return reasons


def verify_token(token: TimestampToken) -> Tuple[bool, List[str]]:
    """
    Verify a token's signature and that its decoded fields match the
    signed content.

    Returns:
        Tuple of (valid, reasons)
    """
    try:
        if token.token_format == TOKEN_FORMAT_JSON:
            reasons = _verify_json_token(token)
        elif token.token_format == TOKEN_FORMAT_RFC3161:
            reasons = _verify_rfc3161_token(token)
        else:
            reasons = [f"unknown token format {token.token_format}"]
    except ValueError as e:
        reasons = [f"authority certificate unreadable: {e}"]
    return not reasons, reasons


# ---------------------------------------------------------------------------
# Failover
# ---------------------------------------------------------------------------

@dataclass
class AttemptRecord:
    provider_id: str
    attempt: int
    outcome: str
    elapsed_ms: float
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "attempt": self.attempt,
            "outcome": self.outcome,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "error": self.error,
        }


@dataclass
class TimestampResult:
    """A granted response and how it was obtained."""
    response: TSAResponse
    provider_id: str
    attempts: List[AttemptRecord]
    elapsed_ms: float

    @property
    def token(self) -> TimestampToken:
        return self.response.token


@dataclass
class ProviderStats:
    requests: int = 0
    successes: int = 0
    rejections: int = 0
    timeouts: int = 0
    errors: int = 0
    total_latency_ms: float = 0.0
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requests": self.requests,
            "successes": self.successes,
            "rejections": self.rejections,
            "timeouts": self.timeouts,
            "errors": self.errors,
            "success_rate": self.successes / self.requests if self.requests else 0.0,
            "average_latency_ms": self.total_latency_ms / self.successes if self.successes else 0.0,
            "last_error": self.last_error,
        }


class FailoverTimestampClient:
    """
    Tries providers in declared order.

    A timeout (default 3 s) or a rejection moves on to the next provider;
    transient transport errors are retried within the provider's attempt
    budget (default 2).
    """

    def __init__(
        self,
        clients: Sequence[TimestampAuthorityClient],
        attempt_timeout: float = 3.0,
        attempts_per_provider: int = 2,
    ):
        if not clients:
            raise ValueError("FailoverTimestampClient needs at least one provider")
        self.clients = list(clients)
        self.attempt_timeout = attempt_timeout
        self.attempts_per_provider = attempts_per_provider
        self._stats: Dict[str, ProviderStats] = {
            c.provider.provider_id: ProviderStats() for c in self.clients
        }

    @property
    def providers(self) -> List[TSAProvider]:
        return [c.provider for c in self.clients]

    async def start(self) -> None:
        for client in self.clients:
            await client.start()

    async def stop(self) -> None:
        for client in self.clients:
            await client.stop()

    @staticmethod
    def _check_response(request: TimeStampRequest, response: TSAResponse) -> Optional[str]:
        if not response.status.granted:
            return f"status {response.status.value}: {response.status_text or ''}".strip()
        token = response.token
        if token is None:
            return "granted response without token"
        if normalize_hash_name(token.hash_algorithm) != normalize_hash_name(request.hash_algorithm):
            return "token hash algorithm differs from request"
        if not constant_time_equals(token.hashed_message, request.hashed_message):
            return "token imprint differs from request"
        if token.nonce is not None and int.from_bytes(token.nonce, "big") != request.nonce_int:
            return "token nonce differs from request"
        return None

    async def timestamp(self, request: TimeStampRequest, qualified_only: bool = False) -> TimestampResult:
        """
        Obtain a granted token.

        Args:
            request: The TimeStampReq to submit
            qualified_only: Skip providers that are not qualified trust services

        Raises:
            TsaUnavailableError: every provider failed; ``details['attempts']``
                lists each attempt
        """
        attempts: List[AttemptRecord] = []
        started = time.perf_counter()

        for client in self.clients:
            provider_id = client.provider.provider_id
            stats = self._stats[provider_id]
            if not client.provider.supports(request.hash_algorithm):
                attempts.append(AttemptRecord(provider_id, 0, "skipped", 0.0, "unsupported hash algorithm"))
                continue
            if qualified_only and not client.provider.qualified:
                attempts.append(AttemptRecord(provider_id, 0, "skipped", 0.0, "not qualified"))
                continue

            for attempt in range(1, self.attempts_per_provider + 1):
                stats.requests += 1
                attempt_started = time.perf_counter()
                try:
                    response = await asyncio.wait_for(
                        client.request_timestamp(request), timeout=self.attempt_timeout
                    )
                except asyncio.TimeoutError:
                    elapsed = (time.perf_counter() - attempt_started) * 1000
                    stats.timeouts += 1
                    stats.last_error = "timeout"
                    attempts.append(AttemptRecord(provider_id, attempt, "timeout", elapsed))
                    logger.warning(f"TSA {provider_id} timed out after {self.attempt_timeout}s")
                    break
                except TsaRejectedError as e:
                    elapsed = (time.perf_counter() - attempt_started) * 1000
                    stats.rejections += 1
                    stats.last_error = e.message
                    attempts.append(AttemptRecord(provider_id, attempt, "rejected", elapsed, e.message))
                    logger.warning(f"TSA {provider_id} rejected request: {e.message}")
                    break
                except DependencyUnavailableError as e:
                    elapsed = (time.perf_counter() - attempt_started) * 1000
                    stats.errors += 1
                    stats.last_error = e.message
                    attempts.append(AttemptRecord(provider_id, attempt, "unavailable", elapsed, e.message))
                    logger.warning(f"TSA {provider_id} unavailable (attempt {attempt}): {e.message}")
                    continue

                elapsed = (time.perf_counter() - attempt_started) * 1000
                problem = self._check_response(request, response)
                if problem:
                    stats.rejections += 1
                    stats.last_error = problem
                    attempts.append(AttemptRecord(provider_id, attempt, "rejected", elapsed, problem))
                    logger.warning(f"TSA {provider_id} response not usable: {problem}")
                    break

                stats.successes += 1
                stats.total_latency_ms += elapsed
                attempts.append(AttemptRecord(provider_id, attempt, "granted", elapsed))
                logger.info(f"Timestamp granted by {provider_id} (serial {response.serial})")
                return TimestampResult(
                    response=response,
                    provider_id=provider_id,
                    attempts=attempts,
                    elapsed_ms=(time.perf_counter() - started) * 1000,
                )

        raise TsaUnavailableError(
            "No timestamp authority granted the request",
            dependency="tsa",
            attempts=len(attempts),
            details={"attempt_log": [a.to_dict() for a in attempts]},
        )

    def provider_stats(self) -> Dict[str, Dict[str, Any]]:
        return {provider_id: stats.to_dict() for provider_id, stats in self._stats.items()}

    async def health_check(self, nonce: bytes = b"\x00" * 16) -> List[Dict[str, Any]]:
        """Send one probe request to every provider."""
        probe = TimeStampRequest(
            hash_algorithm="sha256",
            hashed_message=digest(b"countersign-health-probe"),
            nonce=nonce,
        )
        results = []
        for client in self.clients:
            started = time.perf_counter()
            entry = {"provider_id": client.provider.provider_id, "healthy": False, "error": None}
            try:
                response = await asyncio.wait_for(
                    client.request_timestamp(probe), timeout=self.attempt_timeout
                )
                problem = self._check_response(probe, response)
                entry["healthy"] = problem is None
                entry["error"] = problem
            except asyncio.TimeoutError:
                entry["error"] = "timeout"
            except DependencyUnavailableError as e:
                entry["error"] = e.message
            entry["latency_ms"] = round((time.perf_counter() - started) * 1000, 3)
            results.append(entry)
        return results
