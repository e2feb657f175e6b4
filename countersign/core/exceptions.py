"""
Countersign Exception Hierarchy

A single error taxonomy shared by every subsystem. Exceptions are raised
inside components and converted to typed results at the command boundary.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(Enum):
    """Stable error kinds exposed to callers."""
    VALIDATION = "validation_error"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"
    INTEGRITY = "integrity_error"
    POLICY = "policy_error"


RETRYABLE_KINDS = {ErrorKind.CONFLICT, ErrorKind.DEPENDENCY_UNAVAILABLE}


class CountersignError(Exception):
    """Base exception for all Countersign errors."""

    kind = ErrorKind.VALIDATION
    default_code = "COUNTERSIGN_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary."""
        return {
            "kind": self.kind.value,
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def user_dict(self) -> Dict[str, Any]:
        """Caller-facing form: stable kind and code, no internal details."""
        return {
            "kind": self.kind.value,
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class ValidationError(CountersignError):
    """Raised for malformed input or an operation invalid in the current state."""

    kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_FAILED"

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        merged["errors"] = errors or []
        super().__init__(message, code=code, details=merged)
        self.errors = errors or []


class InvalidStateError(ValidationError):
    """Raised when a command does not apply to the entity's current state."""

    def __init__(self, message: str, entity: Optional[str] = None, state: Optional[str] = None):
        super().__init__(
            message,
            code="INVALID_STATE",
            details={"entity": entity, "state": state},
        )
        self.entity = entity
        self.state = state


class ConflictError(CountersignError):
    """Raised when an optimistic version check fails."""

    kind = ErrorKind.CONFLICT
    default_code = "VERSION_CONFLICT"

    def __init__(
        self,
        message: str,
        collection: Optional[str] = None,
        entity_id: Optional[str] = None,
        expected_version: Optional[int] = None,
        current_version: Optional[int] = None,
    ):
        super().__init__(
            message,
            details={
                "collection": collection,
                "entity_id": entity_id,
                "expected_version": expected_version,
                "current_version": current_version,
            },
        )
        self.collection = collection
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.current_version = current_version


class NotFoundError(CountersignError):
    """Raised when an entity is missing."""

    kind = ErrorKind.NOT_FOUND
    default_code = "NOT_FOUND"

    def __init__(self, message: str, collection: Optional[str] = None, entity_id: Optional[str] = None):
        super().__init__(
            message,
            details={"collection": collection, "entity_id": entity_id},
        )
        self.collection = collection
        self.entity_id = entity_id


class UnauthorizedError(CountersignError):
    """Raised when an authorization gate returns Deny or Indeterminate."""

    kind = ErrorKind.UNAUTHORIZED
    default_code = "UNAUTHORIZED"

    def __init__(
        self,
        message: str,
        decision: Optional[str] = None,
        reason: Optional[str] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(
            message,
            details={"decision": decision, "reason": reason, "request_id": request_id},
        )
        self.decision = decision
        self.reason = reason
        self.request_id = request_id


class DependencyUnavailableError(CountersignError):
    """Raised when persistence, notifier, TSA or OCSP cannot be reached."""

    kind = ErrorKind.DEPENDENCY_UNAVAILABLE
    default_code = "DEPENDENCY_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        dependency: Optional[str] = None,
        attempts: int = 0,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = {"dependency": dependency, "attempts": attempts}
        merged.update(details or {})
        super().__init__(message, code=code, details=merged)
        self.dependency = dependency
        self.attempts = attempts


class TsaUnavailableError(DependencyUnavailableError):
    """Raised when no timestamp authority produced a token."""

    default_code = "TSA_UNAVAILABLE"


class TsaRejectedError(DependencyUnavailableError):
    """Raised when a timestamp authority answered with a non-granted status."""

    default_code = "TSA_REJECTED"

    @property
    def retryable(self) -> bool:
        return False


class IntegrityError(CountersignError):
    """Raised on hash mismatch, broken audit chain or revoked certificate."""

    kind = ErrorKind.INTEGRITY
    default_code = "INTEGRITY_ERROR"

    def __init__(
        self,
        message: str,
        artifact: Optional[str] = None,
        expected_hash: Optional[str] = None,
        actual_hash: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = {
            "artifact": artifact,
            "expected_hash": expected_hash,
            "actual_hash": actual_hash,
        }
        merged.update(details or {})
        super().__init__(message, code=code, details=merged)
        self.artifact = artifact
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash


class HashMismatchError(IntegrityError):
    """Raised when signed content does not match the document's sealed hash."""

    default_code = "HASH_MISMATCH"


class CertificateRevokedError(IntegrityError):
    """Raised when a certificate used in verification has been revoked."""

    default_code = "CERT_REVOKED"


class AuditChainError(IntegrityError):
    """Raised when an audit stream fails hash-chain verification."""

    default_code = "AUDIT_CHAIN_BROKEN"

    def __init__(self, message: str, stream_id: str, corrupted_from: Optional[int] = None):
        super().__init__(
            message,
            artifact=f"audit:{stream_id}",
            details={"stream_id": stream_id, "corrupted_from": corrupted_from},
        )
        self.stream_id = stream_id
        self.corrupted_from = corrupted_from


class PolicyError(CountersignError):
    """Raised for unknown operators or malformed condition trees."""

    kind = ErrorKind.POLICY
    default_code = "POLICY_ERROR"

    def __init__(
        self,
        message: str,
        policy_id: Optional[str] = None,
        operator: Optional[str] = None,
        violations: Optional[List[str]] = None,
    ):
        super().__init__(
            message,
            details={
                "policy_id": policy_id,
                "operator": operator,
                "violations": violations or [],
            },
        )
        self.policy_id = policy_id
        self.operator = operator
        self.violations = violations or []
