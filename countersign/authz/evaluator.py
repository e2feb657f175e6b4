"""
Hybrid RBAC / ReBAC / ABAC decision function.

Policies are selected by action, ordered by priority (lower first) then id,
and grouped into tiers of equal priority. Inside a tier a matching Deny
wins over any Allow; the first tier with a matching policy decides. No
match means Deny (closed world).
"""

import itertools
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..audit import AuditEventKind, AuditLog
from ..core.clock import Clock, format_datetime
from ..core.config import AuthzConfig
from ..core.exceptions import ConflictError, DependencyUnavailableError, PolicyError
from ..crypto import canonical_json, sha256_hex
from .cache import DecisionCache
from .conditions import AttributeContext
from .models import (
    INHERITED_RELATIONS,
    AuthorizationDecision,
    AuthorizationRequest,
    Decision,
    Policy,
    PolicyEffect,
    PolicyKind,
    action_matches,
    role_permissions,
)
from .stores import IdentityProvider, PolicySnapshot, PolicyStore, RelationshipStore

logger = logging.getLogger(__name__)

NO_APPLICABLE_POLICY = "no applicable policy"
WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def environment_attributes(now: datetime) -> Dict[str, Any]:
    """Attributes derived from the evaluation instant."""
    return {
        "time_of_day": now.hour,
        "hour": now.hour,
        "day_of_week": WEEKDAYS[now.weekday()],
        "timestamp": format_datetime(now),
    }


def subject_roles(user_attrs: Dict[str, Any]) -> List[str]:
    roles = list(user_attrs.get("roles") or [])
    if user_attrs.get("role"):
        roles.append(user_attrs["role"])
    return sorted(set(roles))


class FGAEvaluator:
    """Evaluates authorization requests against the current policy set."""

    def __init__(
        self,
        policies: PolicyStore,
        relationships: RelationshipStore,
        clock: Clock,
        config: Optional[AuthzConfig] = None,
        identity_provider: Optional[IdentityProvider] = None,
        audit: Optional[AuditLog] = None,
        cache: Optional[DecisionCache] = None,
    ):
        self.policies = policies
        self.relationships = relationships
        self.clock = clock
        self.config = config or AuthzConfig()
        self.identity_provider = identity_provider
        self.audit = audit
        self.cache = cache if cache is not None else DecisionCache(
            self.config.cache_max_entries, self.config.cache_ttl_seconds
        )
        self._evaluations: Dict[str, Tuple[int, datetime]] = {}
        self._decision_counts = {d.value: 0 for d in Decision}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def authorize(self, request: AuthorizationRequest) -> AuthorizationDecision:
        started = time.perf_counter()
        now = request.now or self.clock.now()

        try:
            decision = await self._decide(request, now)
        except DependencyUnavailableError as e:
            logger.error(f"Authorization {request.request_id} indeterminate: {e.message}")
            decision = AuthorizationDecision(
                decision=Decision.INDETERMINATE,
                reason=f"{e.details.get('dependency') or 'dependency'} unavailable",
            )

        decision.request_id = request.request_id
        decision.evaluated_at = now
        decision.evaluation_ms = (time.perf_counter() - started) * 1000
        self._decision_counts[decision.decision.value] += 1
        await self._audit(request, decision)
        return decision

    async def authorize_batch(self, requests: Sequence[AuthorizationRequest]) -> List[AuthorizationDecision]:
        """Evaluate requests in order against one policy snapshot per request."""
        results = []
        for request in requests:
            results.append(await self.authorize(request))
        return results

    def clear_cache(self) -> int:
        return self.cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self.cache.stats()

    def statistics(self) -> Dict[str, Any]:
        return {
            "decisions": dict(self._decision_counts),
            "policy_evaluations": {
                policy_id: {"count": count, "last_evaluated": format_datetime(last)}
                for policy_id, (count, last) in self._evaluations.items()
            },
            "cache": self.cache.stats(),
        }

    async def flush_statistics(self) -> None:
        """Write pending per-policy evaluation counters to the policy store."""
        pending, self._evaluations = self._evaluations, {}
        await self.policies.record_evaluations(pending)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def _decide(self, request: AuthorizationRequest, now: datetime) -> AuthorizationDecision:
        user_attrs: Dict[str, Any] = {}
        if self.identity_provider is not None:
            user_attrs.update(await self.identity_provider.get_subject_attributes(request.subject))
        user_attrs.update(request.user_attrs)

        derived_env = environment_attributes(now)
        env_attrs = dict(derived_env)
        env_attrs.update(request.env_attrs)

        snapshot = await self.policies.snapshot()

        cache_key = None
        if self.config.cache_enabled:
            cache_key = self._cache_key(request, user_attrs, env_attrs, derived_env)
            hit = self.cache.get(cache_key, snapshot.version, now)
            if hit is not None:
                hit.cached = True
                return hit

        context = AttributeContext(
            {"user": user_attrs, "resource": resource_namespace(request), "env": env_attrs},
            aliases={
                "subject": "user",
                "environment": "env",
                request.resource_type: "resource",
            },
        )
        decision, cacheable = await self._evaluate(snapshot, request, user_attrs, context, now)

        if cache_key is not None and cacheable:
            expires_at = None
            if self._reads_time_of_day(context):
                expires_at = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
            self.cache.put(cache_key, decision, snapshot.version, now, expires_at)
        return decision

    async def _evaluate(
        self,
        snapshot: PolicySnapshot,
        request: AuthorizationRequest,
        user_attrs: Dict[str, Any],
        context: AttributeContext,
        now: datetime,
    ) -> Tuple[AuthorizationDecision, bool]:
        candidates = sorted(
            (p for p in snapshot.policies if p.enabled and p.applies_to(request.action, request.resource_type)),
            key=lambda p: (p.priority, p.policy_id),
        )
        roles = subject_roles(user_attrs)
        unavailable: Optional[str] = None

        for priority, tier in itertools.groupby(candidates, key=lambda p: p.priority):
            allow: Optional[Policy] = None
            for policy in tier:
                try:
                    matched = await self._matches(policy, request, roles, context, now)
                except PolicyError as e:
                    logger.warning(f"Skipping policy {policy.policy_id}: {e.message}")
                    continue
                except DependencyUnavailableError as e:
                    logger.warning(f"Policy {policy.policy_id} not evaluable: {e.message}")
                    unavailable = e.details.get("dependency") or "relationship store"
                    continue
                self._count(policy.policy_id, now)

                if not matched:
                    continue
                if policy.effect == PolicyEffect.DENY:
                    return self._applied(Decision.DENY, policy, f"denied by policy {policy.policy_id}"), True
                if allow is None:
                    allow = policy
            if allow is not None:
                return self._applied(Decision.ALLOW, allow, f"allowed by policy {allow.policy_id}"), True

        if unavailable:
            return AuthorizationDecision(
                decision=Decision.INDETERMINATE,
                reason=f"{unavailable} unavailable",
            ), False
        return AuthorizationDecision(decision=Decision.DENY, reason=NO_APPLICABLE_POLICY), True

    @staticmethod
    def _applied(outcome: Decision, policy: Policy, reason: str) -> AuthorizationDecision:
        return AuthorizationDecision(
            decision=outcome,
            reason=reason,
            applied_policies=[policy.policy_id],
            obligations=list(policy.obligations),
            advice=list(policy.advice),
        )

    async def _matches(
        self,
        policy: Policy,
        request: AuthorizationRequest,
        roles: List[str],
        context: AttributeContext,
        now: datetime,
    ) -> bool:
        kind = policy.kind
        check_roles = kind == PolicyKind.RBAC or (
            kind == PolicyKind.HYBRID and (policy.roles or (policy.permissions and not policy.actions))
        )
        check_relations = kind == PolicyKind.REBAC or (kind == PolicyKind.HYBRID and policy.relationships)
        check_conditions = kind == PolicyKind.ABAC or (kind == PolicyKind.HYBRID and policy.condition is not None)

        if not (check_roles or check_relations or check_conditions):
            raise PolicyError("Policy has no evaluable component", policy_id=policy.policy_id)

        if check_roles and not self._rbac(policy, request.action, roles):
            return False
        if check_conditions:
            if policy.condition is None:
                raise PolicyError("ABAC policy without conditions", policy_id=policy.policy_id)
            if not policy.condition.evaluate(context):
                return False
        if check_relations:
            if not policy.relationships:
                raise PolicyError("ReBAC policy without relationships", policy_id=policy.policy_id)
            if not await self._rebac(policy, request, now):
                return False
        return True

    @staticmethod
    def _rbac(policy: Policy, action: str, roles: List[str]) -> bool:
        if policy.roles:
            return bool(set(roles) & set(policy.roles))
        if policy.permissions:
            granted = role_permissions(roles)
            return any(action_matches(p, action) for p in granted)
        return False

    async def _rebac(self, policy: Policy, request: AuthorizationRequest, now: datetime) -> bool:
        for relation in policy.relationships:
            if await self.has_relation(request.subject, relation, request.resource, now):
                return True
        return False

    async def has_relation(self, subject: str, relation: str, object_id: str, now: datetime) -> bool:
        """Direct tuple, or one level of inheritance through a parent object."""
        if await self.relationships.exists(subject, relation, object_id, now):
            return True
        implying = [relation] + INHERITED_RELATIONS.get(relation, [])
        for parent in await self.relationships.parents(object_id, now):
            for parent_relation in implying:
                if await self.relationships.exists(subject, parent_relation, parent, now):
                    return True
        return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _cache_key(
        self,
        request: AuthorizationRequest,
        user_attrs: Dict[str, Any],
        env_attrs: Dict[str, Any],
        derived_env: Dict[str, Any],
    ) -> str:
        excluded = {path.split(".", 1)[1] for path in self.config.volatile_attributes}
        # Derived time-of-day values are covered by the hourly expiry instead.
        excluded |= {
            path.split(".", 1)[1]
            for path in self.config.time_of_day_attributes
            if path.split(".", 1)[1] not in request.env_attrs
        }
        fingerprint_env = {k: v for k, v in env_attrs.items() if k not in excluded}
        material = canonical_json({
            "subject": request.subject,
            "action": request.action,
            "resource": request.resource,
            "resource_type": request.resource_type,
            "user": user_attrs,
            "resource_attrs": request.resource_attrs,
            "env": fingerprint_env,
        })
        return sha256_hex(material)

    def _reads_time_of_day(self, context: AttributeContext) -> bool:
        watched = set(self.config.time_of_day_attributes)
        for path in context.accessed:
            head, _, rest = path.partition(".")
            if f"env.{rest}" in watched and head in ("env", "environment"):
                return True
        return False

    def _count(self, policy_id: str, now: datetime) -> None:
        count, _ = self._evaluations.get(policy_id, (0, now))
        self._evaluations[policy_id] = (count + 1, now)

    async def _audit(self, request: AuthorizationRequest, decision: AuthorizationDecision) -> None:
        if self.audit is None:
            return
        try:
            await self.audit.append(
                self.config.decision_stream,
                actor=request.subject,
                kind=AuditEventKind.DECISION,
                payload={"request": request.to_dict(), "outcome": decision.to_dict()},
            )
        except (DependencyUnavailableError, ConflictError) as e:
            logger.error(f"Could not audit decision {decision.evaluation_id}: {e.message}")


def resource_namespace(request: AuthorizationRequest) -> Dict[str, Any]:
    attrs = dict(request.resource_attrs)
    attrs.setdefault("id", request.resource)
    attrs.setdefault("type", request.resource_type)
    return attrs
