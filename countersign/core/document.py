"""
Countersign Document Definition

Document lifecycle and the repository that persists it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..crypto import constant_time_equals, sha256_hex
from ..persistence import Collections, Store, retry_unavailable
from .clock import Clock, format_datetime, new_id, parse_datetime
from .exceptions import ConflictError, HashMismatchError, InvalidStateError, NotFoundError

logger = logging.getLogger(__name__)


class DocumentStatus(Enum):
    """Document lifecycle states."""
    DRAFT = "draft"
    OUT = "out"
    COMPLETED = "completed"
    VOIDED = "voided"
    DECLINED = "declined"
    EXPIRED = "expired"


ALLOWED_TRANSITIONS = {
    DocumentStatus.DRAFT: {DocumentStatus.OUT, DocumentStatus.VOIDED},
    DocumentStatus.OUT: {
        DocumentStatus.COMPLETED,
        DocumentStatus.DECLINED,
        DocumentStatus.EXPIRED,
        DocumentStatus.VOIDED,
    },
}

TERMINAL_STATUSES = {
    DocumentStatus.COMPLETED,
    DocumentStatus.VOIDED,
    DocumentStatus.DECLINED,
    DocumentStatus.EXPIRED,
}


@dataclass
class Document:
    """
    A document routed for signature.

    The content hash may change only while the document is a draft; the
    value at the first transition out of Draft is kept in ``sealed_hash``.
    """
    document_id: str
    title: str
    content_hash: str
    created_by: str
    created_at: datetime
    updated_at: datetime
    status: DocumentStatus = DocumentStatus.DRAFT
    instance_id: Optional[str] = None
    sealed_hash: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    history: List[Dict[str, Any]] = field(default_factory=list)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, new_status: DocumentStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS.get(self.status, set())

    def transition(self, new_status: DocumentStatus, now: datetime, reason: Optional[str] = None) -> None:
        """Move to ``new_status`` or raise InvalidStateError."""
        if not self.can_transition(new_status):
            raise InvalidStateError(
                f"Document {self.document_id} cannot move from {self.status.value} to {new_status.value}",
                entity="document",
                state=self.status.value,
            )
        if self.status == DocumentStatus.DRAFT:
            self.sealed_hash = self.content_hash
        self.history.append({
            "from": self.status.value,
            "to": new_status.value,
            "at": format_datetime(now),
            "reason": reason,
        })
        self.status = new_status
        self.updated_at = now

    def update_content(self, content_hash: str, now: datetime) -> None:
        if self.status != DocumentStatus.DRAFT:
            raise InvalidStateError(
                f"Document {self.document_id} content is sealed",
                entity="document",
                state=self.status.value,
            )
        self.content_hash = content_hash
        self.updated_at = now

    def verify_content_hash(self, content_hash: str) -> None:
        """Raise HashMismatchError unless ``content_hash`` equals the sealed hash."""
        expected = self.sealed_hash or self.content_hash
        if not constant_time_equals(expected, content_hash):
            raise HashMismatchError(
                f"Content hash does not match document {self.document_id}",
                artifact=f"document:{self.document_id}",
                expected_hash=expected,
                actual_hash=content_hash,
            )

    def to_record(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "title": self.title,
            "content_hash": self.content_hash,
            "created_by": self.created_by,
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "status": self.status.value,
            "instance_id": self.instance_id,
            "sealed_hash": self.sealed_hash,
            "attributes": self.attributes,
            "history": self.history,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any], version: int = 0) -> "Document":
        return cls(
            document_id=data["document_id"],
            title=data["title"],
            content_hash=data["content_hash"],
            created_by=data["created_by"],
            created_at=parse_datetime(data["created_at"]),
            updated_at=parse_datetime(data["updated_at"]),
            status=DocumentStatus(data["status"]),
            instance_id=data.get("instance_id"),
            sealed_hash=data.get("sealed_hash"),
            attributes=data.get("attributes") or {},
            history=data.get("history") or [],
            version=version,
        )

    def to_view(self) -> Dict[str, Any]:
        view = self.to_record()
        view["version"] = self.version
        return view


class DocumentRepository:
    """Loads and saves documents with optimistic concurrency."""

    def __init__(self, store: Store, clock: Clock, retry_delays_ms: Optional[List[int]] = None):
        self.store = store
        self.clock = clock
        self._delays = retry_delays_ms or [50, 100, 200, 400]

    async def create(
        self,
        title: str,
        created_by: str,
        content: Optional[bytes] = None,
        content_hash: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
        document_id: Optional[str] = None,
    ) -> Document:
        if content_hash is None:
            if content is None:
                raise ValueError("Either content or content_hash is required")
            content_hash = sha256_hex(content)
        now = self.clock.now()
        document = Document(
            document_id=document_id or new_id("doc"),
            title=title,
            content_hash=content_hash,
            created_by=created_by,
            created_at=now,
            updated_at=now,
            attributes=attributes or {},
        )
        result = await retry_unavailable(
            lambda: self.store.put(Collections.DOCUMENTS, document.document_id, document.to_record(), 0),
            self._delays,
            "document create",
        )
        document.version = result.raise_for_conflict(Collections.DOCUMENTS, document.document_id, 0)
        logger.info(f"Created document {document.document_id}")
        return document

    async def get(self, document_id: str) -> Document:
        record = await retry_unavailable(
            lambda: self.store.get(Collections.DOCUMENTS, document_id),
            self._delays,
            "document read",
        )
        if record is None:
            raise NotFoundError(
                f"Document {document_id} not found",
                collection=Collections.DOCUMENTS,
                entity_id=document_id,
            )
        return Document.from_record(record.data, record.version)

    async def save(self, document: Document) -> Document:
        expected = document.version
        result = await retry_unavailable(
            lambda: self.store.put(Collections.DOCUMENTS, document.document_id, document.to_record(), expected),
            self._delays,
            "document write",
        )
        document.version = result.raise_for_conflict(Collections.DOCUMENTS, document.document_id, expected)
        return document

    async def transition(
        self,
        document_id: str,
        new_status: DocumentStatus,
        reason: Optional[str] = None,
        instance_id: Optional[str] = None,
        attempts: int = 3,
        expected_status: Optional[DocumentStatus] = None,
    ) -> Document:
        """
        Reload-and-retry status change.

        Without ``expected_status`` a document already in ``new_status`` is
        returned unchanged. With it, the change only applies from that
        status and anything else raises InvalidStateError, so two callers
        racing for the same move see exactly one winner.
        """
        last_error: Optional[ConflictError] = None
        for _ in range(attempts):
            document = await self.get(document_id)
            if expected_status is not None:
                if document.status != expected_status:
                    raise InvalidStateError(
                        f"Document {document_id} is {document.status.value}, not {expected_status.value}",
                        entity="document",
                        state=document.status.value,
                    )
            elif document.status == new_status:
                return document
            document.transition(new_status, self.clock.now(), reason)
            if instance_id is not None:
                document.instance_id = instance_id
            try:
                return await self.save(document)
            except ConflictError as e:
                last_error = e
                logger.debug(f"Conflict updating document {document_id}, retrying")
        raise last_error
