"""
Countersign Core Module

Configuration, error taxonomy, clock and the document model shared by
every subsystem. The engine facade lives in ``countersign.core.engine``.
"""

from .config import Config
from .clock import Clock, ManualClock, SystemClock, new_id, new_nonce
from .exceptions import (
    AuditChainError,
    CertificateRevokedError,
    ConflictError,
    CountersignError,
    DependencyUnavailableError,
    ErrorKind,
    HashMismatchError,
    IntegrityError,
    InvalidStateError,
    NotFoundError,
    PolicyError,
    TsaRejectedError,
    TsaUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from .document import Document, DocumentRepository, DocumentStatus

__all__ = [
    "Config",
    "Clock",
    "ManualClock",
    "SystemClock",
    "new_id",
    "new_nonce",
    "AuditChainError",
    "CertificateRevokedError",
    "ConflictError",
    "CountersignError",
    "DependencyUnavailableError",
    "ErrorKind",
    "HashMismatchError",
    "IntegrityError",
    "InvalidStateError",
    "NotFoundError",
    "PolicyError",
    "TsaRejectedError",
    "TsaUnavailableError",
    "UnauthorizedError",
    "ValidationError",
    "Document",
    "DocumentRepository",
    "DocumentStatus",
]
