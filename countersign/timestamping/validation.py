"""
Long-term validation (LTV) of composites.

A periodic scan re-verifies composites whose ``next_validation_due`` has
passed, checks signer and authority certificates for revocation, and
re-timestamps composites whose newest token is old or uses a deprecated
hash algorithm.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from cryptography import x509

from ..audit import AuditEventKind, AuditLog, document_stream
from ..core.clock import Clock, format_datetime, new_id, parse_datetime
from ..core.config import ValidationConfig
from ..core.exceptions import DependencyUnavailableError, IntegrityError, TsaUnavailableError
from ..crypto import TrustStore, is_deprecated_hash, load_certificate
from ..persistence import Collections, Store, retry_unavailable
from .composite import CompositeService, CompositeSignature, CompositeStatus
from .revocation import RevocationChecker, RevocationResult, RevocationStatus

logger = logging.getLogger(__name__)


def archival_recommendation(config: ValidationConfig) -> Dict[str, str]:
    return {
        "format": config.archival_format,
        "retention": config.retention_period,
        "migration": f"recommended_in_{config.retimestamp_after_days // 365}_years",
    }


@dataclass
class ValidationReport:
    """Long-term validation report for one composite."""
    report_id: str
    composite_id: str
    document_id: str
    validated_at: datetime
    valid: bool
    certificate_status: RevocationResult
    authority_status: Optional[RevocationResult]
    re_timestamp_needed: bool
    next_validation_due: datetime
    re_timestamp_reasons: List[str] = field(default_factory=list)
    retimestamped: bool = False
    reasons: List[str] = field(default_factory=list)
    archival_recommendation: Dict[str, str] = field(default_factory=dict)

    def to_record(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "composite_id": self.composite_id,
            "document_id": self.document_id,
            "validated_at": format_datetime(self.validated_at),
            "valid": self.valid,
            "certificate_status": self.certificate_status.to_dict(),
            "authority_status": self.authority_status.to_dict() if self.authority_status else None,
            "re_timestamp_needed": self.re_timestamp_needed,
            "re_timestamp_reasons": self.re_timestamp_reasons,
            "retimestamped": self.retimestamped,
            "next_validation_due": format_datetime(self.next_validation_due),
            "reasons": self.reasons,
            "archival_recommendation": self.archival_recommendation,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "ValidationReport":
        authority = data.get("authority_status")
        return cls(
            report_id=data["report_id"],
            composite_id=data["composite_id"],
            document_id=data["document_id"],
            validated_at=parse_datetime(data["validated_at"]),
            valid=data["valid"],
            certificate_status=RevocationResult.from_dict(data["certificate_status"]),
            authority_status=RevocationResult.from_dict(authority) if authority else None,
            re_timestamp_needed=data["re_timestamp_needed"],
            re_timestamp_reasons=data.get("re_timestamp_reasons", []),
            retimestamped=data.get("retimestamped", False),
            next_validation_due=parse_datetime(data["next_validation_due"]),
            reasons=data.get("reasons", []),
            archival_recommendation=data.get("archival_recommendation", {}),
        )


class LongTermValidator:
    """Runs LTV checks and stores reports in ``validation_reports``."""

    def __init__(
        self,
        store: Store,
        clock: Clock,
        composites: CompositeService,
        revocation: RevocationChecker,
        trust_store: TrustStore,
        config: Optional[ValidationConfig] = None,
        audit: Optional[AuditLog] = None,
        retry_delays_ms: Optional[List[int]] = None,
    ):
        self.store = store
        self.clock = clock
        self.composites = composites
        self.revocation = revocation
        self.trust_store = trust_store
        self.config = config or ValidationConfig()
        self.audit = audit
        self._delays = retry_delays_ms or [50, 100, 200, 400]

    def re_timestamp_reasons(self, composite: CompositeSignature, now: datetime) -> List[str]:
        reasons = []
        token = composite.token
        if token is None:
            return reasons
        if now - token.gen_time > timedelta(days=self.config.retimestamp_after_days):
            reasons.append("timestamp_aging")
        deprecated = set(self.config.deprecated_hash_algorithms)
        for algorithm in (token.hash_algorithm, composite.hash_algorithm):
            if is_deprecated_hash(algorithm) or algorithm in deprecated:
                reasons.append(f"deprecated_hash_algorithm:{algorithm}")
                break
        authority = load_certificate(token.authority_certificate)
        horizon = now + timedelta(hours=self.config.scan_interval_hours)
        if authority.not_valid_after_utc <= horizon:
            reasons.append("authority_certificate_expiring")
        return reasons

    async def _revocation(
        self,
        cert: x509.Certificate,
        chain: List[bytes],
        now: datetime,
    ) -> RevocationResult:
        issuer = self.trust_store.find_issuer(cert, [load_certificate(c) for c in chain])
        try:
            return await self.revocation.check(cert, issuer, now)
        except DependencyUnavailableError as e:
            logger.warning(f"Revocation status unavailable for {cert.subject.rfc4514_string()}: {e.message}")
            return RevocationResult(
                status=RevocationStatus.UNKNOWN,
                method="unavailable",
                checked_at=now,
                reason=e.message,
            )

    async def validate(self, composite_id: str, now: Optional[datetime] = None) -> ValidationReport:
        """Validate one composite as of ``now``, re-timestamping it when due."""
        now = now or self.clock.now()
        composite = await self.composites.get(composite_id)
        verification = self.composites.verify_composite(composite)
        reasons = list(verification.reasons)

        signer_cert = load_certificate(composite.signer_certificate)
        certificate_status = await self._revocation(signer_cert, composite.signer_chain, now)
        if certificate_status.revoked:
            reasons.append("signer certificate revoked")

        authority_status = None
        if composite.token is not None:
            authority_cert = load_certificate(composite.token.authority_certificate)
            authority_status = await self._revocation(authority_cert, composite.token.authority_chain, now)
            if authority_status.revoked:
                reasons.append("timestamp authority certificate revoked")

        retimestamp_reasons = self.re_timestamp_reasons(composite, now)
        retimestamped = False
        if retimestamp_reasons and self.config.auto_retimestamp and not reasons:
            try:
                composite = await self.composites.retimestamp(composite_id, reason=",".join(retimestamp_reasons))
                retimestamped = True
            except (TsaUnavailableError, IntegrityError) as e:
                logger.warning(f"Re-timestamp of {composite_id} failed: {e.message}")

        report = ValidationReport(
            report_id=new_id("ltv"),
            composite_id=composite_id,
            document_id=composite.document_id,
            validated_at=now,
            valid=not reasons,
            certificate_status=certificate_status,
            authority_status=authority_status,
            re_timestamp_needed=bool(retimestamp_reasons) and not retimestamped,
            re_timestamp_reasons=retimestamp_reasons,
            retimestamped=retimestamped,
            next_validation_due=now + timedelta(hours=self.config.scan_interval_hours),
            reasons=reasons,
            archival_recommendation=archival_recommendation(self.config),
        )

        result = await retry_unavailable(
            lambda: self.store.put(Collections.VALIDATION_REPORTS, report.report_id, report.to_record(), 0),
            self._delays,
            "validation report write",
        )
        result.raise_for_conflict(Collections.VALIDATION_REPORTS, report.report_id, 0)

        composite.next_validation_due = report.next_validation_due
        await self.composites.save(composite)

        if self.audit is not None:
            await self.audit.append(
                document_stream(composite.document_id),
                actor="system",
                kind=AuditEventKind.LTV_CHECKED,
                payload={
                    "composite_id": composite_id,
                    "report_id": report.report_id,
                    "valid": report.valid,
                    "certificate_status": certificate_status.status.value,
                    "re_timestamp_needed": report.re_timestamp_needed,
                    "retimestamped": retimestamped,
                },
            )
        if not report.valid:
            logger.error(f"Composite {composite_id} failed long-term validation: {reasons}")
        return report

    async def due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[CompositeSignature]:
        now = now or self.clock.now()
        cutoff = format_datetime(now)

        def is_due(data: Dict[str, Any]) -> bool:
            if data.get("status") != CompositeStatus.COMPLETE.value:
                return False
            due_at = data.get("next_validation_due")
            return due_at is None or parse_datetime(due_at) <= now

        records = await retry_unavailable(
            lambda: self.store.list(Collections.COMPOSITES, predicate=is_due, order="created_at", limit=limit),
            self._delays,
            "composite read",
        )
        logger.debug(f"{len(records)} composites due for validation at {cutoff}")
        return [CompositeSignature.from_record(r.data, r.version) for r in records]

    async def run_due(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> List[ValidationReport]:
        """Validate every composite whose validation is due."""
        reports = []
        for composite in await self.due(now, limit):
            reports.append(await self.validate(composite.composite_id, now))
        logger.info(f"Long-term validation scan checked {len(reports)} composites")
        return reports

    async def reports_for(self, composite_id: str) -> List[ValidationReport]:
        records = await retry_unavailable(
            lambda: self.store.list(
                Collections.VALIDATION_REPORTS,
                predicate=lambda d: d.get("composite_id") == composite_id,
                order="validated_at",
            ),
            self._delays,
            "validation report read",
        )
        return [ValidationReport.from_record(r.data) for r in records]
