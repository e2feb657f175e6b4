"""
Countersign - Fine-Grained Authorization

Hybrid policy engine combining:
- Role-based permissions (RBAC)
- Relationship tuples with one level of inheritance (ReBAC)
- Attribute conditions with AND/OR/NOT grouping (ABAC)

Prioritized allow/deny resolution, closed-world default, a short-lived
process-local decision cache, and an audit entry for every decision.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..audit import AuditLog
from ..core.clock import Clock
from ..core.config import AuthzConfig
from ..core.exceptions import NotFoundError, PolicyError
from ..persistence import Store
from .cache import DecisionCache
from .conditions import (
    OPERATORS,
    AttributeContext,
    Condition,
    ConditionGroup,
    ConditionNode,
    apply_operator,
    from_legacy_conditions,
    parse_condition,
)
from .defaults import default_policies
from .evaluator import NO_APPLICABLE_POLICY, FGAEvaluator, environment_attributes
from .models import (
    INHERITED_RELATIONS,
    ROLE_PERMISSIONS,
    AuthorizationDecision,
    AuthorizationRequest,
    Decision,
    Permissions,
    Policy,
    PolicyEffect,
    PolicyKind,
    Relations,
    Relationship,
    Roles,
)
from .stores import (
    IdentityProvider,
    PolicySnapshot,
    PolicyStore,
    RelationshipStore,
    StaticIdentityProvider,
    StoreIdentityProvider,
)

logger = logging.getLogger(__name__)


class AuthorizationService:
    """
    Policy administration, relationship management and decisions.

    Writes that change authorization semantics clear the local decision
    cache; other processes pick up policy changes through the policy-set
    version and relationship changes within the cache TTL.
    """

    def __init__(
        self,
        store: Store,
        clock: Clock,
        config: Optional[AuthzConfig] = None,
        identity_provider: Optional[IdentityProvider] = None,
        audit: Optional[AuditLog] = None,
        retry_delays_ms: Optional[List[int]] = None,
    ):
        self.config = config or AuthzConfig()
        self.clock = clock
        self.policy_store = PolicyStore(store, clock, retry_delays_ms)
        self.relationship_store = RelationshipStore(store, clock, retry_delays_ms)
        self.evaluator = FGAEvaluator(
            self.policy_store,
            self.relationship_store,
            clock,
            config=self.config,
            identity_provider=identity_provider,
            audit=audit,
        )

    # Decisions ---------------------------------------------------------

    async def authorize(self, request: AuthorizationRequest) -> AuthorizationDecision:
        return await self.evaluator.authorize(request)

    async def authorize_batch(self, requests: Sequence[AuthorizationRequest]) -> List[AuthorizationDecision]:
        return await self.evaluator.authorize_batch(requests)

    def clear_cache(self) -> int:
        return self.evaluator.clear_cache()

    def cache_stats(self) -> Dict[str, Any]:
        return self.evaluator.cache_stats()

    def statistics(self) -> Dict[str, Any]:
        return self.evaluator.statistics()

    # Policies ----------------------------------------------------------

    @staticmethod
    def validate_policy(policy: Any) -> List[str]:
        """Validate a Policy or a policy document; returns errors."""
        if isinstance(policy, dict):
            try:
                policy = Policy.from_dict(policy)
            except PolicyError as e:
                return [e.message]
        return policy.validate()

    async def create_policy(self, policy: Any) -> Policy:
        if isinstance(policy, dict):
            policy = Policy.from_dict(policy)
        errors = policy.validate()
        if errors:
            raise PolicyError(
                f"Invalid policy {policy.policy_id}",
                policy_id=policy.policy_id,
                violations=errors,
            )
        stored = await self.policy_store.put(policy)
        self.clear_cache()
        logger.info(f"Stored policy {policy.policy_id} v{stored.version}")
        return stored

    async def update_policy(self, policy_id: str, **changes: Any) -> Policy:
        policy = await self.policy_store.get(policy_id)
        record = policy.to_record()
        if "condition" in changes:
            node = changes.pop("condition")
            record["conditions"] = node.to_dict() if node is not None else None
        for key, value in changes.items():
            if isinstance(value, (PolicyKind, PolicyEffect)):
                value = value.value
            record[key] = value
        return await self.create_policy(Policy.from_dict(record))

    async def delete_policy(self, policy_id: str) -> None:
        if not await self.policy_store.delete(policy_id):
            raise NotFoundError(f"Policy {policy_id} not found", "policies", policy_id)
        self.clear_cache()

    async def get_policy(self, policy_id: str) -> Policy:
        return await self.policy_store.get(policy_id)

    async def list_policies(self, include_disabled: bool = True) -> List[Policy]:
        snapshot = await self.policy_store.snapshot()
        policies = sorted(snapshot.policies, key=lambda p: (p.priority, p.policy_id))
        if not include_disabled:
            policies = [p for p in policies if p.enabled]
        return policies

    async def install_default_policies(self) -> List[str]:
        """Store default policies that are not present yet."""
        snapshot = await self.policy_store.snapshot()
        existing = {p.policy_id for p in snapshot.policies}
        installed = []
        for policy in default_policies():
            if policy.policy_id not in existing:
                await self.create_policy(policy)
                installed.append(policy.policy_id)
        if installed:
            logger.info(f"Installed default policies: {installed}")
        return installed

    # Relationships -----------------------------------------------------

    async def grant(
        self,
        subject: str,
        relation: str,
        object_id: str,
        object_type: str = "document",
        expires_at: Optional[datetime] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Relationship:
        relationship = await self.relationship_store.grant(Relationship(
            subject=subject,
            relation=relation,
            object_id=object_id,
            object_type=object_type,
            expires_at=expires_at,
            attributes=attributes or {},
        ))
        self.clear_cache()
        return relationship

    async def revoke(self, subject: str, relation: str, object_id: str) -> bool:
        removed = await self.relationship_store.revoke(subject, relation, object_id)
        if removed:
            self.clear_cache()
        return removed

    async def add_document_owner(self, document_id: str, user_id: str) -> Relationship:
        return await self.grant(user_id, Relations.DOCUMENT_OWNER, document_id)

    async def add_document_signer(
        self,
        document_id: str,
        user_id: str,
        expires_at: Optional[datetime] = None,
    ) -> Relationship:
        return await self.grant(user_id, Relations.DOCUMENT_SIGNER, document_id, expires_at=expires_at)

    async def add_org_member(self, org_id: str, user_id: str, relation: str = Relations.ORG_MEMBER) -> Relationship:
        return await self.grant(user_id, relation, org_id, object_type="org")

    async def set_parent(self, child_id: str, parent_id: str, child_type: str = "document") -> Relationship:
        """Record that ``parent_id`` (e.g. an organization) owns ``child_id``."""
        return await self.grant(parent_id, Relations.PARENT_OF, child_id, object_type=child_type)

    async def list_relationships(
        self,
        subject: Optional[str] = None,
        relation: Optional[str] = None,
        object_id: Optional[str] = None,
        active_only: bool = True,
    ) -> List[Relationship]:
        return await self.relationship_store.query(
            subject=subject,
            relation=relation,
            object_id=object_id,
            now=self.clock.now() if active_only else None,
        )


__all__ = [
    "OPERATORS",
    "AttributeContext",
    "AuthorizationDecision",
    "AuthorizationRequest",
    "AuthorizationService",
    "Condition",
    "ConditionGroup",
    "ConditionNode",
    "Decision",
    "DecisionCache",
    "FGAEvaluator",
    "INHERITED_RELATIONS",
    "IdentityProvider",
    "NO_APPLICABLE_POLICY",
    "Permissions",
    "Policy",
    "PolicyEffect",
    "PolicyKind",
    "PolicySnapshot",
    "PolicyStore",
    "ROLE_PERMISSIONS",
    "Relations",
    "Relationship",
    "RelationshipStore",
    "Roles",
    "StaticIdentityProvider",
    "StoreIdentityProvider",
    "apply_operator",
    "default_policies",
    "environment_attributes",
    "from_legacy_conditions",
    "parse_condition",
]
