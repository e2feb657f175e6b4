"""
FGA data model: roles, permissions, relations, policies and decisions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import jsonschema

from ..core.clock import format_datetime, new_id, parse_datetime
from ..core.exceptions import PolicyError
from ..crypto import sha256_hex
from .conditions import ConditionNode, parse_condition


class Roles:
    SUPER_ADMIN = "super_admin"
    ORG_ADMIN = "org_admin"
    MANAGER = "manager"
    USER = "user"
    VIEWER = "viewer"
    EXTERNAL_SIGNER = "external_signer"


class Permissions:
    DOCUMENT_CREATE = "document:create"
    DOCUMENT_READ = "document:read"
    DOCUMENT_UPDATE = "document:update"
    DOCUMENT_DELETE = "document:delete"
    DOCUMENT_SEND = "document:send"
    DOCUMENT_SIGN = "document:sign"
    DOCUMENT_VOID = "document:void"
    DOCUMENT_AUDIT = "document:audit"
    ORG_READ = "org:read"
    ORG_UPDATE = "org:update"
    ORG_MANAGE_USERS = "org:manage_users"
    ORG_BILLING = "org:billing"
    USER_READ = "user:read"
    USER_UPDATE = "user:update"
    USER_DELETE = "user:delete"
    TEMPLATE_CREATE = "template:create"
    TEMPLATE_READ = "template:read"
    TEMPLATE_UPDATE = "template:update"
    TEMPLATE_DELETE = "template:delete"
    SYSTEM_ADMIN = "system:admin"
    SYSTEM_AUDIT = "system:audit"

    @classmethod
    def all(cls) -> List[str]:
        return [v for k, v in vars(cls).items() if k.isupper()]


ROLE_PERMISSIONS: Dict[str, List[str]] = {
    Roles.SUPER_ADMIN: ["*"],
    Roles.ORG_ADMIN: [
        "document:*",
        "template:*",
        Permissions.ORG_READ,
        Permissions.ORG_UPDATE,
        Permissions.ORG_MANAGE_USERS,
        Permissions.USER_READ,
        Permissions.USER_UPDATE,
    ],
    Roles.MANAGER: [
        Permissions.DOCUMENT_CREATE,
        Permissions.DOCUMENT_READ,
        Permissions.DOCUMENT_UPDATE,
        Permissions.DOCUMENT_SEND,
        Permissions.DOCUMENT_AUDIT,
        Permissions.TEMPLATE_CREATE,
        Permissions.TEMPLATE_READ,
        Permissions.TEMPLATE_UPDATE,
        Permissions.USER_READ,
    ],
    Roles.USER: [
        Permissions.DOCUMENT_CREATE,
        Permissions.DOCUMENT_READ,
        Permissions.DOCUMENT_SEND,
        Permissions.DOCUMENT_SIGN,
        Permissions.TEMPLATE_READ,
    ],
    Roles.VIEWER: [Permissions.DOCUMENT_READ, Permissions.TEMPLATE_READ],
    Roles.EXTERNAL_SIGNER: [Permissions.DOCUMENT_READ, Permissions.DOCUMENT_SIGN],
}


class Relations:
    DOCUMENT_OWNER = "document:owner"
    DOCUMENT_CREATOR = "document:creator"
    DOCUMENT_SIGNER = "document:signer"
    DOCUMENT_VIEWER = "document:viewer"
    DOCUMENT_COLLABORATOR = "document:collaborator"
    DOCUMENT_ADMIN = "document:admin"
    ORG_MEMBER = "org:member"
    ORG_ADMIN = "org:admin"
    ORG_OWNER = "org:owner"
    TEAM_MEMBER = "team:member"
    TEAM_LEAD = "team:lead"
    TEMPLATE_OWNER = "template:owner"
    TEMPLATE_EDITOR = "template:editor"
    TEMPLATE_VIEWER = "template:viewer"
    PARENT_OF = "parent_of"


# Relation on a parent object that implies a relation on its children.
INHERITED_RELATIONS: Dict[str, List[str]] = {
    Relations.DOCUMENT_ADMIN: [Relations.ORG_ADMIN, Relations.ORG_OWNER],
    Relations.DOCUMENT_OWNER: [Relations.ORG_OWNER],
    Relations.DOCUMENT_VIEWER: [Relations.ORG_MEMBER, Relations.ORG_ADMIN, Relations.ORG_OWNER],
}


def action_matches(pattern: str, action: str) -> bool:
    """``*`` matches everything, ``document:*`` matches the namespace."""
    if pattern == "*" or pattern == action:
        return True
    if pattern.endswith(":*"):
        return action.startswith(pattern[:-1])
    return False


def role_permissions(roles: List[str]) -> List[str]:
    result: List[str] = []
    for role in roles:
        result.extend(ROLE_PERMISSIONS.get(role, []))
    return result


class PolicyKind(Enum):
    RBAC = "rbac"
    REBAC = "rebac"
    ABAC = "abac"
    HYBRID = "hybrid"


class PolicyEffect(Enum):
    ALLOW = "allow"
    DENY = "deny"


class Decision(Enum):
    ALLOW = "allow"
    DENY = "deny"
    INDETERMINATE = "indeterminate"


POLICY_SCHEMA = {
    "type": "object",
    "required": ["policy_id", "kind", "effect"],
    "properties": {
        "policy_id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "description": {"type": "string"},
        "kind": {"enum": [k.value for k in PolicyKind]},
        "effect": {"enum": [e.value for e in PolicyEffect]},
        "actions": {"type": "array", "items": {"type": "string"}},
        "roles": {"type": "array", "items": {"type": "string"}},
        "permissions": {"type": "array", "items": {"type": "string"}},
        "relationships": {"type": "array", "items": {"type": "string"}},
        "resource_types": {"type": "array", "items": {"type": "string"}},
        "conditions": {"type": ["object", "array", "null"]},
        "priority": {"type": "integer"},
        "enabled": {"type": "boolean"},
        "version": {"type": "integer", "minimum": 1},
        "obligations": {"type": "array", "items": {"type": "string"}},
        "advice": {"type": "array", "items": {"type": "string"}},
    },
}


@dataclass
class Policy:
    """
    A tagged authorization policy.

    ``kind`` decides which components are required: RBAC needs roles or
    permissions, ReBAC needs relationships, ABAC needs conditions, Hybrid
    needs at least one of them. Every present component must pass for the
    policy's effect to apply.
    """
    policy_id: str
    kind: PolicyKind
    effect: PolicyEffect
    name: str = ""
    description: str = ""
    actions: List[str] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    relationships: List[str] = field(default_factory=list)
    resource_types: List[str] = field(default_factory=list)
    condition: Optional[ConditionNode] = None
    priority: int = 100
    enabled: bool = True
    version: int = 1
    obligations: List[str] = field(default_factory=list)
    advice: List[str] = field(default_factory=list)
    evaluation_count: int = 0
    last_evaluated: Optional[datetime] = None

    def applies_to(self, action: str, resource_type: Optional[str] = None) -> bool:
        if self.resource_types and resource_type not in self.resource_types:
            return False
        patterns = list(self.actions) + list(self.permissions)
        return any(action_matches(p, action) for p in patterns)

    def validate(self) -> List[str]:
        errors = []
        if not self.policy_id:
            errors.append("policy_id is required")
        if not self.actions and not self.permissions:
            errors.append("policy needs an action set or a permission set")
        if self.kind == PolicyKind.RBAC and not (self.roles or self.permissions):
            errors.append("RBAC policy requires roles or permissions")
        if self.kind == PolicyKind.REBAC and not self.relationships:
            errors.append("ReBAC policy requires relationships")
        if self.kind == PolicyKind.ABAC and self.condition is None:
            errors.append("ABAC policy requires conditions")
        if self.kind == PolicyKind.HYBRID and not (self.roles or self.relationships or self.condition):
            errors.append("Hybrid policy requires at least one of roles, relationships or conditions")
        for relation in self.relationships:
            if ":" not in relation:
                errors.append(f"relation must be namespaced: {relation}")
        return errors

    def to_record(self) -> Dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "name": self.name,
            "description": self.description,
            "kind": self.kind.value,
            "effect": self.effect.value,
            "actions": self.actions,
            "roles": self.roles,
            "permissions": self.permissions,
            "relationships": self.relationships,
            "resource_types": self.resource_types,
            "conditions": self.condition.to_dict() if self.condition else None,
            "priority": self.priority,
            "enabled": self.enabled,
            "version": self.version,
            "obligations": self.obligations,
            "advice": self.advice,
            "evaluation_count": self.evaluation_count,
            "last_evaluated": format_datetime(self.last_evaluated),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Policy":
        """
        Build a policy from a stored record or an authored document.

        Raises:
            PolicyError: schema violation or malformed condition tree
        """
        try:
            jsonschema.validate(data, POLICY_SCHEMA)
        except jsonschema.ValidationError as e:
            raise PolicyError(
                f"Policy schema violation: {e.message}",
                policy_id=data.get("policy_id") if isinstance(data, dict) else None,
            ) from e

        conditions = data.get("conditions")
        return cls(
            policy_id=data["policy_id"],
            kind=PolicyKind(data["kind"]),
            effect=PolicyEffect(data["effect"]),
            name=data.get("name", ""),
            description=data.get("description", ""),
            actions=list(data.get("actions", [])),
            roles=list(data.get("roles", [])),
            permissions=list(data.get("permissions", [])),
            relationships=list(data.get("relationships", [])),
            resource_types=list(data.get("resource_types", [])),
            condition=parse_condition(conditions, data["policy_id"]) if conditions else None,
            priority=data.get("priority", 100),
            enabled=data.get("enabled", True),
            version=data.get("version", 1),
            obligations=list(data.get("obligations", [])),
            advice=list(data.get("advice", [])),
            evaluation_count=data.get("evaluation_count", 0),
            last_evaluated=parse_datetime(data.get("last_evaluated")),
        )


@dataclass
class Relationship:
    """A (subject, relation, object) edge."""
    subject: str
    relation: str
    object_id: str
    object_type: str = "document"
    expires_at: Optional[datetime] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @staticmethod
    def key_for(subject: str, relation: str, object_id: str) -> str:
        return sha256_hex(f"{subject}\x00{relation}\x00{object_id}".encode("utf-8"))

    @property
    def key(self) -> str:
        return self.key_for(self.subject, self.relation, self.object_id)

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or now < self.expires_at

    def to_record(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "relation": self.relation,
            "object_id": self.object_id,
            "object_type": self.object_type,
            "expires_at": format_datetime(self.expires_at),
            "attributes": self.attributes,
            "created_at": format_datetime(self.created_at),
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Relationship":
        return cls(
            subject=data["subject"],
            relation=data["relation"],
            object_id=data["object_id"],
            object_type=data.get("object_type", "document"),
            expires_at=parse_datetime(data.get("expires_at")),
            attributes=data.get("attributes") or {},
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass
class AuthorizationRequest:
    subject: str
    action: str
    resource: str
    resource_type: str = "document"
    user_attrs: Dict[str, Any] = field(default_factory=dict)
    resource_attrs: Dict[str, Any] = field(default_factory=dict)
    env_attrs: Dict[str, Any] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: new_id("authz"))
    now: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": self.subject,
            "action": self.action,
            "resource": self.resource,
            "resource_type": self.resource_type,
            "user_attrs": self.user_attrs,
            "resource_attrs": self.resource_attrs,
            "env_attrs": self.env_attrs,
            "request_id": self.request_id,
            "now": format_datetime(self.now),
        }


@dataclass
class AuthorizationDecision:
    decision: Decision
    reason: str
    applied_policies: List[str] = field(default_factory=list)
    evaluation_ms: float = 0.0
    obligations: List[str] = field(default_factory=list)
    advice: List[str] = field(default_factory=list)
    request_id: Optional[str] = None
    evaluation_id: str = field(default_factory=lambda: new_id("eval"))
    evaluated_at: Optional[datetime] = None
    cached: bool = False

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decision": self.decision.value,
            "reason": self.reason,
            "applied_policies": self.applied_policies,
            "evaluation_ms": round(self.evaluation_ms, 3),
            "obligations": self.obligations,
            "advice": self.advice,
            "request_id": self.request_id,
            "evaluation_id": self.evaluation_id,
            "evaluated_at": format_datetime(self.evaluated_at),
            "cached": self.cached,
        }
