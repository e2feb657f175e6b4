"""
Default policy set installed on first start.
"""

from typing import List

from .conditions import Condition, ConditionGroup
from .models import Permissions, Policy, PolicyEffect, PolicyKind, Relations, Roles


def default_policies() -> List[Policy]:
    return [
        Policy(
            policy_id="admin-full-access",
            name="Admin Full Access",
            description="Platform and organization administrators may perform any action",
            kind=PolicyKind.RBAC,
            effect=PolicyEffect.ALLOW,
            actions=["*"],
            roles=[Roles.SUPER_ADMIN, Roles.ORG_ADMIN],
            priority=10,
            obligations=["audit:admin-action"],
        ),
        Policy(
            policy_id="sensitive-document-restriction",
            name="Sensitive Document Restriction",
            description="High-sensitivity documents require clearance level 3 or above",
            kind=PolicyKind.ABAC,
            effect=PolicyEffect.DENY,
            actions=[
                Permissions.DOCUMENT_READ,
                Permissions.DOCUMENT_UPDATE,
                Permissions.DOCUMENT_SIGN,
                Permissions.DOCUMENT_SEND,
            ],
            resource_types=["document"],
            condition=ConditionGroup("and", [
                Condition("resource.sensitivity", "eq", "high"),
                Condition("user.clearance_level", "lt", 3),
            ]),
            priority=5,
            advice=["request clearance upgrade"],
        ),
        Policy(
            policy_id="document-owner-access",
            name="Document Owner Access",
            description="Owners manage their documents",
            kind=PolicyKind.REBAC,
            effect=PolicyEffect.ALLOW,
            actions=[
                Permissions.DOCUMENT_READ,
                Permissions.DOCUMENT_UPDATE,
                Permissions.DOCUMENT_DELETE,
                Permissions.DOCUMENT_SEND,
                Permissions.DOCUMENT_VOID,
                Permissions.DOCUMENT_AUDIT,
            ],
            relationships=[Relations.DOCUMENT_OWNER],
            resource_types=["document"],
            priority=100,
        ),
        Policy(
            policy_id="document-signer-access",
            name="Document Signer Access",
            description="Signers may read and sign documents routed to them",
            kind=PolicyKind.REBAC,
            effect=PolicyEffect.ALLOW,
            actions=[Permissions.DOCUMENT_READ, Permissions.DOCUMENT_SIGN],
            relationships=[Relations.DOCUMENT_SIGNER],
            resource_types=["document"],
            priority=100,
        ),
        Policy(
            policy_id="org-member-business-hours",
            name="Organization Member Business Hours",
            description="Organization members may read organization documents during business hours",
            kind=PolicyKind.HYBRID,
            effect=PolicyEffect.ALLOW,
            actions=[Permissions.DOCUMENT_READ],
            relationships=[Relations.DOCUMENT_VIEWER],
            resource_types=["document"],
            condition=ConditionGroup("and", [
                Condition("env.time_of_day", "gte", 9),
                Condition("env.time_of_day", "lt", 17),
            ]),
            priority=200,
        ),
    ]
