"""
Composite timestamped signatures.

A composite bundles the signature bytes, the signer certificate and chain,
the timestamp token over SHA-256(signature) and the authority certificate,
so it can be verified offline given the trust anchors.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..audit import AuditEventKind, AuditLog, document_stream
from ..core.clock import Clock, format_datetime, new_id, new_nonce, parse_datetime
from ..core.config import TimestampConfig
from ..core.exceptions import (
    ConflictError,
    HashMismatchError,
    IntegrityError,
    NotFoundError,
    TsaUnavailableError,
    ValidationError,
)
from ..crypto import (
    KeySigner,
    TrustStore,
    b64decode,
    b64encode,
    canonical_json,
    certificate_der,
    certificate_fingerprint,
    certificate_valid_at,
    constant_time_equals,
    digest,
    load_certificate,
    sha256,
    sha256_hex,
    verify_message,
)
from ..persistence import Collections, Store, retry_unavailable
from ..tsa import FailoverTimestampClient, TimeStampRequest, TimestampResult, TimestampToken, verify_token

logger = logging.getLogger(__name__)


def build_signing_payload(content_hash: str, signer_fingerprint: str, signed_at: datetime) -> bytes:
    """Bytes a signer signs: document hash, certificate fingerprint and signing time."""
    return canonical_json({
        "content_hash": content_hash,
        "signer": signer_fingerprint,
        "signed_at": format_datetime(signed_at),
    })


def check_temporal_consistency(
    signed_at: datetime,
    timestamp_time: datetime,
    max_delay_seconds: int,
    deferred: bool = False,
) -> List[str]:
    """sign_time <= tsa_time <= sign_time + max_delay (upper bound waived when deferred)."""
    reasons = []
    if timestamp_time < signed_at:
        reasons.append("timestamp precedes signing time")
    elif not deferred and timestamp_time > signed_at + timedelta(seconds=max_delay_seconds):
        reasons.append(f"timestamp more than {max_delay_seconds}s after signing time")
    return reasons


class LegalValue(Enum):
    INVALID = "invalid"
    ADVANCED = "advanced_electronic_signature"
    QUALIFIED = "qualified_electronic_signature"


def determine_legal_value(signature_valid: bool, timestamp_valid: bool, qualified: bool) -> LegalValue:
    if not signature_valid or not timestamp_valid:
        return LegalValue.INVALID
    if qualified:
        return LegalValue.QUALIFIED
    return LegalValue.ADVANCED


@dataclass
class SignatureSubmission:
    """
    A signature produced by the signer's key over ``build_signing_payload``.

    ``certificate`` and ``chain`` are DER encoded.
    """
    signer_id: str
    content_hash: str
    signed_at: datetime
    signature: bytes
    certificate: bytes
    chain: List[bytes] = field(default_factory=list)
    hash_algorithm: str = "sha256"
    mfa_evidence: Optional[str] = None
    certificate_level: str = "advanced"

    @classmethod
    def create(
        cls,
        signer: KeySigner,
        signer_id: str,
        content_hash: str,
        signed_at: datetime,
        mfa_evidence: Optional[str] = None,
        certificate_level: str = "advanced",
    ) -> "SignatureSubmission":
        payload = build_signing_payload(content_hash, signer.fingerprint, signed_at)
        return cls(
            signer_id=signer_id,
            content_hash=content_hash,
            signed_at=signed_at,
            signature=signer.sign(payload),
            certificate=certificate_der(signer.certificate),
            chain=signer.chain_der(),
            hash_algorithm=signer.hash_algorithm,
            mfa_evidence=mfa_evidence,
            certificate_level=certificate_level,
        )

    @property
    def signer_fingerprint(self) -> str:
        return certificate_fingerprint(self.certificate)

    def payload(self) -> bytes:
        return build_signing_payload(self.content_hash, self.signer_fingerprint, self.signed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signer_id": self.signer_id,
            "content_hash": self.content_hash,
            "signed_at": format_datetime(self.signed_at),
            "signature": b64encode(self.signature),
            "certificate": b64encode(self.certificate),
            "chain": [b64encode(c) for c in self.chain],
            "hash_algorithm": self.hash_algorithm,
            "mfa_evidence": self.mfa_evidence,
            "certificate_level": self.certificate_level,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignatureSubmission":
        return cls(
            signer_id=data["signer_id"],
            content_hash=data["content_hash"],
            signed_at=parse_datetime(data["signed_at"]),
            signature=b64decode(data["signature"]),
            certificate=b64decode(data["certificate"]),
            chain=[b64decode(c) for c in data.get("chain", [])],
            hash_algorithm=data.get("hash_algorithm", "sha256"),
            mfa_evidence=data.get("mfa_evidence"),
            certificate_level=data.get("certificate_level", "advanced"),
        )


class CompositeStatus(Enum):
    COMPLETE = "complete"
    AWAITING_TIMESTAMP = "awaiting_timestamp"
    UNTIMESTAMPED = "untimestamped"


@dataclass
class CompositeSignature:
    """
    {signature bytes, signer certificate, timestamp token, authority
    certificate, qualified flag} plus the archive chain of earlier tokens.

    ``archive`` holds superseded tokens oldest first. The oldest token
    covers SHA-256(signature); each later token covers the canonical bytes
    of the one before it.
    """
    composite_id: str
    document_id: str
    task_id: Optional[str]
    signer_id: str
    content_hash: str
    signed_at: datetime
    signature: bytes
    signer_certificate: bytes
    signer_chain: List[bytes] = field(default_factory=list)
    hash_algorithm: str = "sha256"
    token: Optional[TimestampToken] = None
    qualified: bool = False
    require_qualified: bool = False
    status: CompositeStatus = CompositeStatus.AWAITING_TIMESTAMP
    deferred: bool = False
    provider_id: Optional[str] = None
    attempt_log: List[Dict[str, Any]] = field(default_factory=list)
    archive: List[TimestampToken] = field(default_factory=list)
    mfa_evidence: Optional[str] = None
    created_at: Optional[datetime] = None
    next_validation_due: Optional[datetime] = None
    version: int = 0

    @property
    def signature_hash(self) -> bytes:
        return sha256(self.signature)

    @property
    def signer_fingerprint(self) -> str:
        return certificate_fingerprint(self.signer_certificate)

    @property
    def authority_certificate(self) -> Optional[bytes]:
        return self.token.authority_certificate if self.token else None

    @property
    def timestamp_time(self) -> Optional[datetime]:
        return self.token.gen_time if self.token else None

    @property
    def tokens(self) -> List[TimestampToken]:
        """Every token, oldest first."""
        return list(self.archive) + ([self.token] if self.token else [])

    def payload(self) -> bytes:
        return build_signing_payload(self.content_hash, self.signer_fingerprint, self.signed_at)

    def to_record(self) -> Dict[str, Any]:
        return {
            "composite_id": self.composite_id,
            "document_id": self.document_id,
            "task_id": self.task_id,
            "signer_id": self.signer_id,
            "content_hash": self.content_hash,
            "signed_at": format_datetime(self.signed_at),
            "signature": b64encode(self.signature),
            "signer_certificate": b64encode(self.signer_certificate),
            "signer_chain": [b64encode(c) for c in self.signer_chain],
            "hash_algorithm": self.hash_algorithm,
            "token": self.token.to_record() if self.token else None,
            "qualified": self.qualified,
            "require_qualified": self.require_qualified,
            "status": self.status.value,
            "deferred": self.deferred,
            "provider_id": self.provider_id,
            "attempt_log": self.attempt_log,
            "archive": [t.to_record() for t in self.archive],
            "mfa_evidence": self.mfa_evidence,
            "created_at": format_datetime(self.created_at),
            "next_validation_due": format_datetime(self.next_validation_due),
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any], version: int = 0) -> "CompositeSignature":
        return cls(
            composite_id=data["composite_id"],
            document_id=data["document_id"],
            task_id=data.get("task_id"),
            signer_id=data["signer_id"],
            content_hash=data["content_hash"],
            signed_at=parse_datetime(data["signed_at"]),
            signature=b64decode(data["signature"]),
            signer_certificate=b64decode(data["signer_certificate"]),
            signer_chain=[b64decode(c) for c in data.get("signer_chain", [])],
            hash_algorithm=data.get("hash_algorithm", "sha256"),
            token=TimestampToken.from_record(data["token"]) if data.get("token") else None,
            qualified=data.get("qualified", False),
            require_qualified=data.get("require_qualified", False),
            status=CompositeStatus(data["status"]),
            deferred=data.get("deferred", False),
            provider_id=data.get("provider_id"),
            attempt_log=data.get("attempt_log", []),
            archive=[TimestampToken.from_record(t) for t in data.get("archive", [])],
            mfa_evidence=data.get("mfa_evidence"),
            created_at=parse_datetime(data.get("created_at")),
            next_validation_due=parse_datetime(data.get("next_validation_due")),
            version=version,
        )


@dataclass
class CompositeVerification:
    """Outcome of verifying a composite; valid iff no reasons."""
    composite_id: str
    valid: bool
    reasons: List[str]
    checks: Dict[str, bool]
    legal_value: LegalValue
    qualified: bool = False
    deferred: bool = False
    notes: List[str] = field(default_factory=list)
    verified_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "composite_id": self.composite_id,
            "valid": self.valid,
            "reasons": self.reasons,
            "checks": self.checks,
            "legal_value": self.legal_value.value,
            "qualified": self.qualified,
            "deferred": self.deferred,
            "notes": self.notes,
            "verified_at": format_datetime(self.verified_at),
        }


@dataclass
class BulkTimestampResult:
    total: int
    successful: int
    failed: int
    results: List[Dict[str, Any]]

    @property
    def success(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "results": self.results,
        }


class CompositeService:
    """
    Creates, completes, verifies and re-timestamps composites.

    Tokens are persisted in ``timestamps`` and embedded in the composite
    record in ``composites``.
    """

    def __init__(
        self,
        store: Store,
        clock: Clock,
        tsa: FailoverTimestampClient,
        trust_store: TrustStore,
        config: Optional[TimestampConfig] = None,
        audit: Optional[AuditLog] = None,
        retry_delays_ms: Optional[List[int]] = None,
    ):
        self.store = store
        self.clock = clock
        self.tsa = tsa
        self.trust_store = trust_store
        self.config = config or TimestampConfig()
        self.audit = audit
        self._delays = retry_delays_ms or [50, 100, 200, 400]

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _request_for(self, data: bytes) -> TimeStampRequest:
        return TimeStampRequest(
            hash_algorithm=self.config.hash_algorithm,
            hashed_message=digest(data, self.config.hash_algorithm),
            nonce=new_nonce(self.config.nonce_bytes),
            policy=self.config.policy_oid,
        )

    def check_submission(self, submission: SignatureSubmission, expected_content_hash: str) -> None:
        """
        Validate a submission before it is timestamped.

        Raises:
            HashMismatchError: signed content differs from the sealed document hash
            ValidationError: signer certificate not valid at signing time
            IntegrityError: bad signature or untrusted signer certificate
        """
        if not constant_time_equals(submission.content_hash, expected_content_hash):
            raise HashMismatchError(
                "Signed content hash does not match the document",
                artifact="document",
                expected_hash=expected_content_hash,
                actual_hash=submission.content_hash,
            )
        try:
            cert = load_certificate(submission.certificate)
        except ValueError as e:
            raise ValidationError(f"Signer certificate unreadable: {e}", code="CERT_UNREADABLE") from e
        if not certificate_valid_at(cert, submission.signed_at):
            raise ValidationError(
                "Signer certificate is not valid at signing time",
                code="CERT_NOT_VALID",
                details={"signed_at": format_datetime(submission.signed_at)},
            )
        ok, error = verify_message(
            cert.public_key(), submission.signature, submission.payload(), submission.hash_algorithm
        )
        if not ok:
            raise IntegrityError(f"Signature does not verify: {error}", artifact="signature", code="SIGNATURE_INVALID")
        chain = self.trust_store.verify_chain(cert, submission.chain, at=submission.signed_at)
        if not chain.valid:
            raise IntegrityError(
                f"Signer certificate not trusted: {'; '.join(chain.reasons)}",
                artifact="signer_certificate",
                code="UNTRUSTED_SIGNER",
            )

    def _attach_token(self, composite: CompositeSignature, result: TimestampResult) -> None:
        token = result.token
        valid, reasons = verify_token(token)
        if not valid:
            raise IntegrityError(
                f"Timestamp token from {result.provider_id} does not verify: {'; '.join(reasons)}",
                artifact="timestamp",
                code="TIMESTAMP_INVALID",
            )
        problems = check_temporal_consistency(
            composite.signed_at,
            token.gen_time,
            self.config.max_sign_to_timestamp_seconds,
            composite.deferred,
        )
        if problems:
            raise IntegrityError(
                f"Timestamp from {result.provider_id} inconsistent: {'; '.join(problems)}",
                artifact="timestamp",
                code="TEMPORAL_INCONSISTENCY",
            )
        composite.token = token
        composite.qualified = token.qualified
        composite.provider_id = result.provider_id
        composite.status = CompositeStatus.COMPLETE
        composite.attempt_log.extend(a.to_dict() for a in result.attempts)

    async def create_composite(
        self,
        document_id: str,
        submission: SignatureSubmission,
        expected_content_hash: str,
        task_id: Optional[str] = None,
        require_timestamp: bool = True,
        require_qualified: bool = False,
        defer_on_unavailable: bool = True,
    ) -> CompositeSignature:
        """
        Produce and persist a composite for ``submission``.

        When no authority grants a token and ``defer_on_unavailable`` is set,
        the composite is stored as awaiting a timestamp and completed later
        by ``complete_pending``.

        Raises:
            HashMismatchError, ValidationError, IntegrityError: see check_submission
            TsaUnavailableError: no token and deferral disabled
        """
        self.check_submission(submission, expected_content_hash)

        composite = CompositeSignature(
            composite_id=new_id("cmp"),
            document_id=document_id,
            task_id=task_id,
            signer_id=submission.signer_id,
            content_hash=submission.content_hash,
            signed_at=submission.signed_at,
            signature=submission.signature,
            signer_certificate=submission.certificate,
            signer_chain=list(submission.chain),
            hash_algorithm=submission.hash_algorithm,
            require_qualified=require_qualified,
            mfa_evidence=submission.mfa_evidence,
            created_at=self.clock.now(),
        )

        if not require_timestamp:
            composite.status = CompositeStatus.UNTIMESTAMPED
            await self._insert(composite)
            return composite

        try:
            result = await self.tsa.timestamp(self._request_for(composite.signature), qualified_only=require_qualified)
        except TsaUnavailableError as e:
            if not defer_on_unavailable:
                raise
            composite.deferred = True
            composite.status = CompositeStatus.AWAITING_TIMESTAMP
            composite.attempt_log.extend(e.details.get("attempt_log", []))
            await self._insert(composite)
            logger.warning(f"Timestamp deferred for composite {composite.composite_id}: {e.message}")
            await self._audit(document_id, submission.signer_id, AuditEventKind.TIMESTAMP_DEFERRED, {
                "composite_id": composite.composite_id,
                "task_id": task_id,
                "attempts": composite.attempt_log,
            })
            return composite

        self._attach_token(composite, result)
        await self._insert(composite)
        await self._audit(document_id, submission.signer_id, AuditEventKind.TIMESTAMPED, {
            "composite_id": composite.composite_id,
            "task_id": task_id,
            "provider": result.provider_id,
            "serial": composite.token.serial_number,
            "timestamp_time": format_datetime(composite.token.gen_time),
            "qualified": composite.qualified,
            "attempts": [a.to_dict() for a in result.attempts],
        })
        return composite

    async def complete_pending(self, composite_id: str) -> CompositeSignature:
        """
        Obtain the missing token for a deferred composite.

        Raises:
            TsaUnavailableError: still no authority available
        """
        composite = await self.get(composite_id)
        if composite.status != CompositeStatus.AWAITING_TIMESTAMP:
            return composite

        result = await self.tsa.timestamp(
            self._request_for(composite.signature), qualified_only=composite.require_qualified
        )
        self._attach_token(composite, result)
        try:
            await self._save(composite)
        except ConflictError:
            # Another worker completed it first.
            current = await self.get(composite_id)
            if current.status == CompositeStatus.COMPLETE:
                return current
            raise
        await self._audit(composite.document_id, "system", AuditEventKind.TIMESTAMPED, {
            "composite_id": composite.composite_id,
            "task_id": composite.task_id,
            "provider": result.provider_id,
            "serial": composite.token.serial_number,
            "timestamp_time": format_datetime(composite.token.gen_time),
            "qualified": composite.qualified,
            "deferred": True,
        })
        logger.info(f"Completed deferred timestamp for composite {composite_id}")
        return composite

    async def list_pending(self, limit: Optional[int] = None) -> List[CompositeSignature]:
        records = await retry_unavailable(
            lambda: self.store.list(
                Collections.COMPOSITES,
                predicate=lambda d: d.get("status") == CompositeStatus.AWAITING_TIMESTAMP.value,
                order="created_at",
                limit=limit,
            ),
            self._delays,
            "composite read",
        )
        return [CompositeSignature.from_record(r.data, r.version) for r in records]

    async def retry_pending(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """Try to complete every composite awaiting a timestamp."""
        completed, still_pending = [], []
        for composite in await self.list_pending(limit):
            try:
                await self.complete_pending(composite.composite_id)
                completed.append(composite.composite_id)
            except TsaUnavailableError as e:
                logger.warning(f"Timestamp still unavailable for {composite.composite_id}: {e.message}")
                still_pending.append(composite.composite_id)
        return {"completed": completed, "pending": still_pending}

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def get(self, composite_id: str) -> CompositeSignature:
        record = await retry_unavailable(
            lambda: self.store.get(Collections.COMPOSITES, composite_id),
            self._delays,
            "composite read",
        )
        if record is None:
            raise NotFoundError(f"Composite {composite_id} not found", Collections.COMPOSITES, composite_id)
        return CompositeSignature.from_record(record.data, record.version)

    async def list_for_document(self, document_id: str) -> List[CompositeSignature]:
        records = await retry_unavailable(
            lambda: self.store.list(
                Collections.COMPOSITES,
                predicate=lambda d: d.get("document_id") == document_id,
                order="created_at",
            ),
            self._delays,
            "composite read",
        )
        return [CompositeSignature.from_record(r.data, r.version) for r in records]

    async def _insert(self, composite: CompositeSignature) -> None:
        if composite.token is not None:
            await self._store_token(composite.token)
        result = await retry_unavailable(
            lambda: self.store.put(Collections.COMPOSITES, composite.composite_id, composite.to_record(), 0),
            self._delays,
            "composite write",
        )
        composite.version = result.raise_for_conflict(Collections.COMPOSITES, composite.composite_id, 0)

    async def _save(self, composite: CompositeSignature) -> None:
        if composite.token is not None:
            await self._store_token(composite.token)
        expected = composite.version
        result = await retry_unavailable(
            lambda: self.store.put(Collections.COMPOSITES, composite.composite_id, composite.to_record(), expected),
            self._delays,
            "composite write",
        )
        composite.version = result.raise_for_conflict(Collections.COMPOSITES, composite.composite_id, expected)

    async def save(self, composite: CompositeSignature) -> CompositeSignature:
        await self._save(composite)
        return composite

    async def _store_token(self, token: TimestampToken) -> None:
        result = await retry_unavailable(
            lambda: self.store.put(Collections.TIMESTAMPS, token.token_id, token.to_record(), 0),
            self._delays,
            "timestamp write",
        )
        if result.conflict:
            logger.debug(f"Timestamp token {token.token_id} already stored")

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_composite(
        self,
        composite: CompositeSignature,
        document_content: Optional[bytes] = None,
        expected_content_hash: Optional[str] = None,
    ) -> CompositeVerification:
        """
        Offline verification.

        Recomputes the document hash (when content or an expected hash is
        given), the signature over the signing payload, every token in the
        archive chain, both certificate chains and temporal consistency.
        """
        reasons: List[str] = []
        notes: List[str] = []
        checks = {
            "content": True,
            "signature": False,
            "signer_chain": False,
            "timestamp": False,
            "authority_chain": False,
            "temporal": False,
            "archive": True,
        }

        if document_content is not None:
            actual = sha256_hex(document_content)
            if not constant_time_equals(actual, composite.content_hash):
                checks["content"] = False
                reasons.append("document content hash mismatch")
        if expected_content_hash is not None and not constant_time_equals(
            expected_content_hash, composite.content_hash
        ):
            checks["content"] = False
            reasons.append("composite content hash differs from sealed document hash")
        if document_content is None and expected_content_hash is None:
            notes.append("document content not supplied; content hash not recomputed")

        try:
            signer_cert = load_certificate(composite.signer_certificate)
        except ValueError as e:
            signer_cert = None
            reasons.append(f"signer certificate unreadable: {e}")

        if signer_cert is not None:
            ok, error = verify_message(
                signer_cert.public_key(), composite.signature, composite.payload(), composite.hash_algorithm
            )
            checks["signature"] = ok
            if not ok:
                reasons.append(f"signature invalid: {error}")
            if not certificate_valid_at(signer_cert, composite.signed_at):
                reasons.append("signer certificate not valid at signing time")
                checks["signature"] = False
            chain = self.trust_store.verify_chain(signer_cert, composite.signer_chain, at=composite.signed_at)
            checks["signer_chain"] = chain.valid
            reasons.extend(f"signer chain: {r}" for r in chain.reasons)

        tokens = composite.tokens
        if not tokens:
            reasons.append(f"timestamp missing (composite {composite.status.value})")
        else:
            timestamp_ok, authority_ok = self._verify_tokens(composite, tokens, reasons)
            checks["timestamp"] = timestamp_ok
            checks["authority_chain"] = authority_ok
            checks["archive"] = timestamp_ok if composite.archive else True
            temporal = check_temporal_consistency(
                composite.signed_at,
                tokens[0].gen_time,
                self.config.max_sign_to_timestamp_seconds,
                composite.deferred,
            )
            checks["temporal"] = not temporal
            reasons.extend(temporal)
            if composite.deferred:
                notes.append("timestamp was deferred; upper temporal bound waived")

        # Qualified status is only trusted once the token that asserts it has verified.
        token_qualified = bool(composite.token and composite.token.qualified)
        if composite.qualified and not token_qualified:
            reasons.append("composite claims a qualified timestamp its token does not carry")

        signature_valid = checks["content"] and checks["signature"] and checks["signer_chain"]
        timestamp_valid = checks["timestamp"] and checks["authority_chain"] and checks["temporal"]
        qualified = timestamp_valid and token_qualified
        return CompositeVerification(
            composite_id=composite.composite_id,
            valid=not reasons,
            reasons=reasons,
            checks=checks,
            legal_value=determine_legal_value(signature_valid, timestamp_valid, qualified),
            qualified=qualified,
            deferred=composite.deferred,
            notes=notes,
            verified_at=self.clock.now(),
        )

    def _verify_tokens(
        self,
        composite: CompositeSignature,
        tokens: Sequence[TimestampToken],
        reasons: List[str],
    ) -> Tuple[bool, bool]:
        timestamp_ok = True
        authority_ok = True
        covered = composite.signature
        previous_time: Optional[datetime] = None

        for index, token in enumerate(tokens):
            label = "timestamp" if index == 0 else f"archive timestamp {index}"
            expected = digest(covered, token.hash_algorithm)
            if not constant_time_equals(expected, token.hashed_message):
                timestamp_ok = False
                reasons.append(f"{label}: message imprint does not cover the signed data")
            valid, token_reasons = verify_token(token)
            if not valid:
                timestamp_ok = False
                reasons.extend(f"{label}: {r}" for r in token_reasons)
            if previous_time is not None and token.gen_time < previous_time:
                timestamp_ok = False
                reasons.append(f"{label}: issued before the token it covers")
            chain = self.trust_store.verify_chain(token.authority_certificate, token.authority_chain, at=token.gen_time)
            if not chain.valid:
                authority_ok = False
                reasons.extend(f"{label} authority chain: {r}" for r in chain.reasons)
            covered = token.encode()
            previous_time = token.gen_time
        return timestamp_ok, authority_ok

    # ------------------------------------------------------------------
    # Re-timestamping and bulk
    # ------------------------------------------------------------------

    async def retimestamp(self, composite_id: str, reason: str = "scheduled") -> CompositeSignature:
        """
        Archive the current token and timestamp its canonical bytes.

        Raises:
            ValidationError: composite has no token yet
            TsaUnavailableError: no authority granted the request
        """
        composite = await self.get(composite_id)
        if composite.token is None:
            raise ValidationError(
                f"Composite {composite_id} has no timestamp to extend",
                code="TIMESTAMP_MISSING",
            )
        previous = composite.token
        result = await self.tsa.timestamp(
            self._request_for(previous.encode()), qualified_only=composite.require_qualified
        )
        token = result.token
        valid, token_reasons = verify_token(token)
        if not valid:
            raise IntegrityError(
                f"Archive timestamp does not verify: {'; '.join(token_reasons)}",
                artifact="timestamp",
                code="TIMESTAMP_INVALID",
            )
        composite.archive.append(previous)
        composite.token = token
        composite.qualified = token.qualified
        composite.provider_id = result.provider_id
        await self._save(composite)
        await self._audit(composite.document_id, "system", AuditEventKind.RETIMESTAMPED, {
            "composite_id": composite.composite_id,
            "provider": result.provider_id,
            "serial": token.serial_number,
            "previous_serial": previous.serial_number,
            "archive_depth": len(composite.archive),
            "reason": reason,
        })
        logger.info(f"Re-timestamped composite {composite_id} via {result.provider_id}")
        return composite

    async def bulk_timestamp(
        self,
        hashes: Sequence[bytes],
        batch_size: Optional[int] = None,
    ) -> BulkTimestampResult:
        """Timestamp precomputed digests in concurrent batches."""
        size = batch_size or self.config.bulk_batch_size
        results: List[Dict[str, Any]] = []

        async def one(hashed: bytes) -> Dict[str, Any]:
            request = TimeStampRequest(
                hash_algorithm=self.config.hash_algorithm,
                hashed_message=hashed,
                nonce=new_nonce(self.config.nonce_bytes),
                policy=self.config.policy_oid,
            )
            try:
                result = await self.tsa.timestamp(request)
            except TsaUnavailableError as e:
                return {"hash": hashed.hex(), "success": False, "error": e.message}
            await self._store_token(result.token)
            return {
                "hash": hashed.hex(),
                "success": True,
                "token_id": result.token.token_id,
                "provider": result.provider_id,
                "serial": result.token.serial_number,
            }

        for start in range(0, len(hashes), size):
            batch = hashes[start:start + size]
            results.extend(await asyncio.gather(*(one(h) for h in batch)))

        successful = sum(1 for r in results if r["success"])
        return BulkTimestampResult(
            total=len(results),
            successful=successful,
            failed=len(results) - successful,
            results=results,
        )

    async def _audit(self, document_id: str, actor: str, kind: AuditEventKind, payload: Dict[str, Any]) -> None:
        if self.audit is None:
            return
        await self.audit.append(document_stream(document_id), actor=actor, kind=kind, payload=payload)
