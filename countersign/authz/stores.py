"""
Policy, relationship and identity stores for the FGA evaluator.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..core.clock import Clock, format_datetime
from ..core.exceptions import ConflictError, NotFoundError, PolicyError
from ..persistence import Collections, Store, retry_unavailable
from .models import Policy, Relations, Relationship

logger = logging.getLogger(__name__)

POLICY_SET_ID = "_policy_set"


@dataclass
class PolicySnapshot:
    """Policies as of one policy-set version."""
    version: int
    policies: List[Policy] = field(default_factory=list)
    malformed: List[Tuple[str, str]] = field(default_factory=list)


class PolicyStore:
    """
    Policies in the ``policies`` collection.

    A meta record holds the policy-set version; every write bumps it, and
    snapshots are reloaded only when it changes.
    """

    def __init__(self, store: Store, clock: Clock, retry_delays_ms: Optional[List[int]] = None):
        self.store = store
        self.clock = clock
        self._delays = retry_delays_ms or [50, 100, 200, 400]
        self._snapshot: Optional[PolicySnapshot] = None

    async def version(self) -> int:
        record = await retry_unavailable(
            lambda: self.store.get(Collections.POLICIES, POLICY_SET_ID),
            self._delays,
            "policy version read",
        )
        return record.data["version"] if record else 0

    async def _bump_version(self) -> int:
        for _ in range(8):
            record = await self.store.get(Collections.POLICIES, POLICY_SET_ID)
            current = record.data["version"] if record else 0
            expected = record.version if record else 0
            result = await self.store.put(
                Collections.POLICIES,
                POLICY_SET_ID,
                {"version": current + 1, "updated_at": format_datetime(self.clock.now())},
                expected,
            )
            if result.ok:
                self._snapshot = None
                return current + 1
        raise ConflictError("Could not bump policy-set version", collection=Collections.POLICIES)

    async def snapshot(self) -> PolicySnapshot:
        """Current policy set; malformed records are reported, not raised."""
        version = await self.version()
        if self._snapshot is not None and self._snapshot.version == version:
            return self._snapshot

        records = await retry_unavailable(
            lambda: self.store.list(Collections.POLICIES, predicate=lambda d: "policy_id" in d),
            self._delays,
            "policy read",
        )
        snapshot = PolicySnapshot(version=version)
        for record in records:
            try:
                snapshot.policies.append(Policy.from_dict(record.data))
            except PolicyError as e:
                logger.warning(f"Skipping malformed policy {record.id}: {e.message}")
                snapshot.malformed.append((record.id, e.message))
        self._snapshot = snapshot
        return snapshot

    async def get(self, policy_id: str) -> Policy:
        record = await retry_unavailable(
            lambda: self.store.get(Collections.POLICIES, policy_id),
            self._delays,
            "policy read",
        )
        if record is None or policy_id == POLICY_SET_ID:
            raise NotFoundError(f"Policy {policy_id} not found", Collections.POLICIES, policy_id)
        return Policy.from_dict(record.data)

    async def put(self, policy: Policy) -> Policy:
        """Create or replace a policy, bumping its version and the set version."""
        record = await self.store.get(Collections.POLICIES, policy.policy_id)
        expected = record.version if record else 0
        if record is not None:
            policy.version = record.data.get("version", 1) + 1
            policy.evaluation_count = max(policy.evaluation_count, record.data.get("evaluation_count", 0))
        result = await retry_unavailable(
            lambda: self.store.put(Collections.POLICIES, policy.policy_id, policy.to_record(), expected),
            self._delays,
            "policy write",
        )
        result.raise_for_conflict(Collections.POLICIES, policy.policy_id, expected)
        await self._bump_version()
        return policy

    async def delete(self, policy_id: str) -> bool:
        record = await self.store.get(Collections.POLICIES, policy_id)
        if record is None:
            return False
        result = await self.store.delete(Collections.POLICIES, policy_id, record.version)
        if result.ok:
            await self._bump_version()
        return result.ok

    async def record_evaluations(self, counts: Dict[str, Tuple[int, datetime]]) -> None:
        """Persist evaluation counters without changing the policy-set version."""
        for policy_id, (count, last) in counts.items():
            record = await self.store.get(Collections.POLICIES, policy_id)
            if record is None:
                continue
            data = dict(record.data)
            data["evaluation_count"] = data.get("evaluation_count", 0) + count
            data["last_evaluated"] = format_datetime(last)
            result = await self.store.put(Collections.POLICIES, policy_id, data, record.version)
            if not result.ok:
                logger.debug(f"Evaluation counter update for {policy_id} lost a race")


class RelationshipStore:
    """Relationship tuples in the ``relationships`` collection."""

    def __init__(self, store: Store, clock: Clock, retry_delays_ms: Optional[List[int]] = None):
        self.store = store
        self.clock = clock
        self._delays = retry_delays_ms or [50, 100, 200, 400]

    async def grant(self, relationship: Relationship) -> Relationship:
        if relationship.created_at is None:
            relationship.created_at = self.clock.now()
        for _ in range(3):
            record = await retry_unavailable(
                lambda: self.store.get(Collections.RELATIONSHIPS, relationship.key),
                self._delays,
                "relationship read",
            )
            expected = record.version if record else 0
            result = await retry_unavailable(
                lambda: self.store.put(Collections.RELATIONSHIPS, relationship.key, relationship.to_record(), expected),
                self._delays,
                "relationship write",
            )
            if result.ok:
                return relationship
        raise ConflictError("Relationship write kept conflicting", Collections.RELATIONSHIPS, relationship.key)

    async def revoke(self, subject: str, relation: str, object_id: str) -> bool:
        key = Relationship.key_for(subject, relation, object_id)
        record = await self.store.get(Collections.RELATIONSHIPS, key)
        if record is None:
            return False
        result = await self.store.delete(Collections.RELATIONSHIPS, key, record.version)
        return result.ok

    async def get(self, subject: str, relation: str, object_id: str) -> Optional[Relationship]:
        record = await retry_unavailable(
            lambda: self.store.get(Collections.RELATIONSHIPS, Relationship.key_for(subject, relation, object_id)),
            self._delays,
            "relationship read",
        )
        return Relationship.from_record(record.data) if record else None

    async def exists(self, subject: str, relation: str, object_id: str, now: datetime) -> bool:
        relationship = await self.get(subject, relation, object_id)
        return relationship is not None and relationship.is_active(now)

    async def query(
        self,
        subject: Optional[str] = None,
        relation: Optional[str] = None,
        object_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[Relationship]:
        def predicate(data: Dict[str, Any]) -> bool:
            return (
                (subject is None or data["subject"] == subject)
                and (relation is None or data["relation"] == relation)
                and (object_id is None or data["object_id"] == object_id)
            )

        records = await retry_unavailable(
            lambda: self.store.list(Collections.RELATIONSHIPS, predicate=predicate, order="created_at"),
            self._delays,
            "relationship read",
        )
        relationships = [Relationship.from_record(r.data) for r in records]
        if now is not None:
            relationships = [r for r in relationships if r.is_active(now)]
        return relationships

    async def parents(self, object_id: str, now: datetime) -> List[str]:
        edges = await self.query(relation=Relations.PARENT_OF, object_id=object_id, now=now)
        return [edge.subject for edge in edges]


class IdentityProvider(ABC):
    """Identity provider port."""

    @abstractmethod
    async def get_subject_attributes(self, subject_id: str) -> Dict[str, Any]:
        """Return roles, department, clearance, mfa_level and similar attributes."""


class StaticIdentityProvider(IdentityProvider):
    """In-memory directory."""

    def __init__(self, subjects: Optional[Dict[str, Dict[str, Any]]] = None):
        self._subjects = dict(subjects or {})

    def set_subject(self, subject_id: str, **attributes: Any) -> None:
        self._subjects[subject_id] = attributes

    async def get_subject_attributes(self, subject_id: str) -> Dict[str, Any]:
        return dict(self._subjects.get(subject_id, {}))


class StoreIdentityProvider(IdentityProvider):
    """Directory kept in the ``subjects`` collection."""

    def __init__(self, store: Store):
        self.store = store

    async def put_subject(self, subject_id: str, attributes: Dict[str, Any]) -> None:
        record = await self.store.get(Collections.SUBJECTS, subject_id)
        result = await self.store.put(
            Collections.SUBJECTS, subject_id, attributes, record.version if record else 0
        )
        result.raise_for_conflict(Collections.SUBJECTS, subject_id, record.version if record else 0)

    async def get_subject_attributes(self, subject_id: str) -> Dict[str, Any]:
        record = await self.store.get(Collections.SUBJECTS, subject_id)
        return dict(record.data) if record else {}
