"""
Countersign - Trusted Timestamp & Signature Composite

Signature + RFC 3161 timestamp bundles that verify offline:
- CompositeService: create, complete deferred, verify, re-timestamp, bulk
- LongTermValidator: revocation checks, aging and deprecated-hash detection,
  archive re-timestamping, validation reports
- Revocation checkers: OCSP with CRL fallback, static list
"""

from .composite import (
    BulkTimestampResult,
    CompositeService,
    CompositeSignature,
    CompositeStatus,
    CompositeVerification,
    LegalValue,
    SignatureSubmission,
    build_signing_payload,
    check_temporal_consistency,
    determine_legal_value,
)
from .revocation import (
    OcspCrlRevocationChecker,
    RevocationChecker,
    RevocationResult,
    RevocationStatus,
    StaticRevocationChecker,
)
from .validation import LongTermValidator, ValidationReport, archival_recommendation

__all__ = [
    "BulkTimestampResult",
    "CompositeService",
    "CompositeSignature",
    "CompositeStatus",
    "CompositeVerification",
    "LegalValue",
    "LongTermValidator",
    "OcspCrlRevocationChecker",
    "RevocationChecker",
    "RevocationResult",
    "RevocationStatus",
    "SignatureSubmission",
    "StaticRevocationChecker",
    "ValidationReport",
    "archival_recommendation",
    "build_signing_payload",
    "check_temporal_consistency",
    "determine_legal_value",
]
