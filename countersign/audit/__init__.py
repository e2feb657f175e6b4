"""
Countersign - Audit Log

Append-only, hash-chained event journal:
- One stream per document and one for authorization decisions
- entry_hash = SHA-256(prev_hash | seq | time | actor | kind | canonical(payload))
- Appends are serialized per stream by creating record ``seq`` with
  expected_version 0 (compare-and-set on the last sequence number)
- Optional HMAC seal per entry with a per-stream key derived by HKDF
- Verification recomputes from seq 0 and reports the first corrupted entry
- CEF export for SIEM forwarding
"""

import asyncio
import hashlib
import json
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..core.clock import Clock, format_datetime, parse_datetime
from ..core.exceptions import AuditChainError, ConflictError
from ..crypto import canonical_json, constant_time_equals, hmac_sha256
from ..persistence import Collections, Store, retry_unavailable

logger = logging.getLogger(__name__)

GENESIS_LABEL = "COUNTERSIGN_AUDIT_GENESIS_V1"


class AuditEventKind(Enum):
    """Audit event kinds."""
    DEFINITION_CREATED = "DEFINITION_CREATED"
    CREATED = "CREATED"
    STARTED = "STARTED"
    STAGE_ACTIVATED = "STAGE_ACTIVATED"
    INVITED = "INVITED"
    VIEWED = "VIEWED"
    SIGNED = "SIGNED"
    DECLINED = "DECLINED"
    DELEGATED = "DELEGATED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    REMINDER_SENT = "REMINDER_SENT"
    ESCALATED = "ESCALATED"
    STAGE_DONE = "STAGE_DONE"
    STAGE_FAILED = "STAGE_FAILED"
    STAGE_SKIPPED = "STAGE_SKIPPED"
    COMPLETED = "COMPLETED"
    VOIDED = "VOIDED"
    TIMESTAMPED = "TIMESTAMPED"
    TIMESTAMP_DEFERRED = "TIMESTAMP_DEFERRED"
    NOTIFICATION_FAILED = "NOTIFICATION_FAILED"
    DECISION = "DECISION"
    LTV_CHECKED = "LTV_CHECKED"
    RETIMESTAMPED = "RETIMESTAMPED"


def document_stream(document_id: str) -> str:
    return f"document:{document_id}"


def genesis_hash(stream_id: str, label: str = GENESIS_LABEL) -> str:
    """prev_hash of the entry with seq 0."""
    return hashlib.sha256(f"{label}:{stream_id}".encode("utf-8")).hexdigest()


def compute_entry_hash(
    prev_hash: str,
    seq: int,
    time: str,
    actor: str,
    kind: str,
    payload: Dict[str, Any],
) -> str:
    # Encoded as a canonical JSON array so field boundaries are unambiguous.
    material = canonical_json([prev_hash, seq, time, actor, kind, payload])
    return hashlib.sha256(material).hexdigest()


@dataclass
class AuditEntry:
    """One link of an audit stream."""
    stream_id: str
    seq: int
    prev_hash: str
    time: datetime
    actor: str
    kind: str
    payload: Dict[str, Any]
    entry_hash: str
    seal: Optional[str] = None

    @property
    def record_id(self) -> str:
        return f"{self.seq:012d}"

    def recompute_hash(self) -> str:
        return compute_entry_hash(
            self.prev_hash,
            self.seq,
            format_datetime(self.time),
            self.actor,
            self.kind,
            self.payload,
        )

    def to_record(self) -> Dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "seq": self.seq,
            "prev_hash": self.prev_hash,
            "time": format_datetime(self.time),
            "actor": self.actor,
            "kind": self.kind,
            "payload": self.payload,
            "entry_hash": self.entry_hash,
            "seal": self.seal,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            stream_id=data["stream_id"],
            seq=int(data["seq"]),
            prev_hash=data["prev_hash"],
            time=parse_datetime(data["time"]),
            actor=data["actor"],
            kind=data["kind"],
            payload=data["payload"],
            entry_hash=data["entry_hash"],
            seal=data.get("seal"),
        )

    def to_cef(self) -> str:
        """
        Convert to Common Event Format (CEF) for SIEM integration.

        CEF:Version|Device Vendor|Device Product|Device Version|
        Device Event Class ID|Name|Severity|Extension
        """
        severity = 7 if self.kind in ("DECLINED", "VOIDED", "STAGE_FAILED") else 3
        extensions = [
            f"rt={int(self.time.timestamp() * 1000)}",
            f"suser={self.actor}",
            f"cs1={self.stream_id}",
            "cs1Label=Stream",
            f"cn1={self.seq}",
            "cn1Label=Sequence",
            f"cs2={self.entry_hash}",
            "cs2Label=EntryHash",
        ]
        name = self.kind.replace("_", " ").title()
        return f"CEF:0|Countersign|Core|1.0|{self.kind}|{name}|{severity}|{' '.join(extensions)}"


@dataclass
class ChainVerification:
    """Outcome of verifying one stream."""
    stream_id: str
    valid: bool
    entries_checked: int
    corrupted_from: Optional[int] = None
    reason: Optional[str] = None
    last_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "valid": self.valid,
            "entries_checked": self.entries_checked,
            "corrupted_from": self.corrupted_from,
            "reason": self.reason,
            "last_hash": self.last_hash,
        }

    def raise_if_invalid(self) -> None:
        if not self.valid:
            raise AuditChainError(
                f"Audit stream {self.stream_id} corrupted from seq {self.corrupted_from}: {self.reason}",
                stream_id=self.stream_id,
                corrupted_from=self.corrupted_from,
            )


class AuditLog:
    """
    Hash-chained audit journal over the persistence port.

    Each stream lives in its own collection (``audit_<stream>``) with one
    record per sequence number.
    """

    def __init__(
        self,
        store: Store,
        clock: Clock,
        hmac_key: Optional[bytes] = None,
        genesis_label: str = GENESIS_LABEL,
        retry_limit: int = 16,
        retry_delays_ms: Optional[List[int]] = None,
    ):
        self.store = store
        self.clock = clock
        self._hmac_key = hmac_key
        self._genesis_label = genesis_label
        self._retry_limit = retry_limit
        self._delays = retry_delays_ms or [50, 100, 200, 400]
        # Per-stream append locks live only while an append holds them.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._tails: Dict[str, AuditEntry] = {}
        self._stats = {"appended": 0, "append_conflicts": 0, "verifications": 0}

    def _stream_key(self, stream_id: str) -> bytes:
        """Derive per-stream sealing key using HKDF."""
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"countersign_audit_v1",
            info=stream_id.encode("utf-8"),
        )
        return hkdf.derive(self._hmac_key)

    def _seal(self, entry: AuditEntry) -> Optional[str]:
        if not self._hmac_key:
            return None
        material = f"{entry.entry_hash}:{entry.prev_hash}:{entry.seq}".encode("utf-8")
        return hmac_sha256(self._stream_key(entry.stream_id), material).hex()

    def genesis(self, stream_id: str) -> str:
        return genesis_hash(stream_id, self._genesis_label)

    async def _tail(self, stream_id: str) -> Optional[AuditEntry]:
        cached = self._tails.get(stream_id)
        if cached is not None:
            return cached
        records = await retry_unavailable(
            lambda: self.store.list(Collections.audit(stream_id), order="-seq", limit=1),
            self._delays,
            "audit tail read",
        )
        if not records:
            return None
        entry = AuditEntry.from_record(records[0].data)
        self._tails[stream_id] = entry
        return entry

    async def append(
        self,
        stream_id: str,
        actor: str,
        kind: Any,
        payload: Optional[Dict[str, Any]] = None,
        time: Optional[datetime] = None,
    ) -> AuditEntry:
        """
        Append an entry to ``stream_id``.

        Args:
            stream_id: Stream name, e.g. ``document:<id>`` or ``decisions``
            actor: Subject responsible for the event
            kind: AuditEventKind or string
            payload: JSON-serializable event body

        Returns:
            The stored entry with seq and hash populated
        """
        kind_value = kind.value if isinstance(kind, Enum) else str(kind)
        # Normalise through canonical JSON so the stored body hashes identically
        # after a round-trip through the store.
        body = json.loads(canonical_json(payload or {}))
        collection = Collections.audit(stream_id)
        lock = self._locks.get(stream_id)
        if lock is None:
            lock = self._locks[stream_id] = asyncio.Lock()

        async with lock:
            for _ in range(self._retry_limit):
                tail = await self._tail(stream_id)
                seq = tail.seq + 1 if tail else 0
                prev_hash = tail.entry_hash if tail else self.genesis(stream_id)
                at = time or self.clock.now()
                entry = AuditEntry(
                    stream_id=stream_id,
                    seq=seq,
                    prev_hash=prev_hash,
                    time=at,
                    actor=actor,
                    kind=kind_value,
                    payload=body,
                    entry_hash=compute_entry_hash(
                        prev_hash, seq, format_datetime(at), actor, kind_value, body
                    ),
                )
                entry.seal = self._seal(entry)

                result = await retry_unavailable(
                    lambda: self.store.put(collection, entry.record_id, entry.to_record(), 0),
                    self._delays,
                    "audit append",
                )
                if result.ok:
                    self._tails[stream_id] = entry
                    self._stats["appended"] += 1
                    return entry

                # Another writer took this sequence number.
                self._stats["append_conflicts"] += 1
                self._tails.pop(stream_id, None)

        raise ConflictError(
            f"Could not append to audit stream {stream_id}",
            collection=collection,
        )

    async def entries(self, stream_id: str, since_seq: int = 0) -> List[AuditEntry]:
        records = await retry_unavailable(
            lambda: self.store.list(
                Collections.audit(stream_id),
                predicate=lambda d: int(d.get("seq", -1)) >= since_seq,
                order="seq",
            ),
            self._delays,
            "audit read",
        )
        return [AuditEntry.from_record(r.data) for r in records]

    async def verify(self, stream_id: str) -> ChainVerification:
        """Recompute the chain of ``stream_id`` from seq 0."""
        records = await retry_unavailable(
            lambda: self.store.list(Collections.audit(stream_id), order="id"),
            self._delays,
            "audit read",
        )
        self._stats["verifications"] += 1
        return self.verify_records(stream_id, [r.data for r in records])

    def verify_records(self, stream_id: str, records: List[Dict[str, Any]]) -> ChainVerification:
        expected_prev = self.genesis(stream_id)
        for index, data in enumerate(records):
            try:
                entry = AuditEntry.from_record(data)
            except (KeyError, TypeError, ValueError) as e:
                return self._corrupted(stream_id, index, f"malformed entry: {e}")

            if entry.seq != index:
                return self._corrupted(stream_id, index, f"sequence gap: found {entry.seq}")
            if not constant_time_equals(entry.prev_hash, expected_prev):
                return self._corrupted(stream_id, index, "previous hash mismatch")
            if not constant_time_equals(entry.recompute_hash(), entry.entry_hash):
                return self._corrupted(stream_id, index, "entry hash mismatch")
            if self._hmac_key:
                expected_seal = self._seal(entry)
                if entry.seal is None or not constant_time_equals(entry.seal, expected_seal):
                    return self._corrupted(stream_id, index, "seal mismatch")
            expected_prev = entry.entry_hash

        return ChainVerification(
            stream_id=stream_id,
            valid=True,
            entries_checked=len(records),
            last_hash=expected_prev,
        )

    def _corrupted(self, stream_id: str, seq: int, reason: str) -> ChainVerification:
        logger.error(f"Audit stream {stream_id} corrupted at seq {seq}: {reason}")
        return ChainVerification(
            stream_id=stream_id,
            valid=False,
            entries_checked=seq,
            corrupted_from=seq,
            reason=reason,
        )

    def forget_tail(self, stream_id: Optional[str] = None) -> None:
        """Drop cached tails (after external writes)."""
        if stream_id is None:
            self._tails.clear()
        else:
            self._tails.pop(stream_id, None)

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats, cached_streams=len(self._tails))
