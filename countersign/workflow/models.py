"""
Workflow data model: definitions, stages, tasks and instances.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..authz.conditions import ConditionNode, parse_condition
from ..core.clock import format_datetime, parse_datetime


class WorkflowType(Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CUSTOM = "custom"


class TaskKind(Enum):
    SIGN = "sign"
    APPROVE = "approve"
    REVIEW = "review"
    WITNESS = "witness"

    @property
    def needs_signature(self) -> bool:
        return self in (TaskKind.SIGN, TaskKind.WITNESS)


class CertificateLevel(Enum):
    BASIC = "basic"
    ADVANCED = "advanced"
    QUALIFIED = "qualified"


class TaskStatus(Enum):
    """Per-task state; mirrors the participant status."""
    PENDING = "pending"
    INVITED = "invited"
    VIEWED = "viewed"
    SIGNED = "signed"
    DECLINED = "declined"
    DELEGATED = "delegated"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


OPEN_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.INVITED, TaskStatus.VIEWED})
ACTIONABLE_TASK_STATUSES = frozenset({TaskStatus.INVITED, TaskStatus.VIEWED})

TASK_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.INVITED, TaskStatus.DECLINED, TaskStatus.DELEGATED, TaskStatus.CANCELLED},
    TaskStatus.INVITED: {
        TaskStatus.VIEWED, TaskStatus.SIGNED, TaskStatus.DECLINED,
        TaskStatus.DELEGATED, TaskStatus.EXPIRED, TaskStatus.CANCELLED,
    },
    TaskStatus.VIEWED: {
        TaskStatus.SIGNED, TaskStatus.DECLINED, TaskStatus.DELEGATED,
        TaskStatus.EXPIRED, TaskStatus.CANCELLED,
    },
}


class StageStatus(Enum):
    BLOCKED = "blocked"
    READY = "ready"
    ACTIVE = "active"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


SATISFIED_STAGE_STATUSES = frozenset({StageStatus.DONE, StageStatus.SKIPPED})

STAGE_TRANSITIONS = {
    StageStatus.BLOCKED: {StageStatus.READY, StageStatus.FAILED},
    StageStatus.READY: {StageStatus.ACTIVE, StageStatus.SKIPPED, StageStatus.FAILED},
    StageStatus.ACTIVE: {StageStatus.DONE, StageStatus.FAILED, StageStatus.SKIPPED},
}


class InstanceStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    DECLINED = "declined"
    VOIDED = "voided"
    EXPIRED = "expired"


@dataclass
class Participant:
    """A signer. ``subject`` is the identity used for authorization."""
    participant_id: str
    email: str
    name: str = ""
    role: str = "signer"
    task_kind: TaskKind = TaskKind.SIGN
    certificate_level: CertificateLevel = CertificateLevel.ADVANCED
    require_mfa: bool = False
    order: int = 0
    required: bool = True
    subject: Optional[str] = None

    def __post_init__(self):
        if self.subject is None:
            self.subject = self.participant_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "task_kind": self.task_kind.value,
            "certificate_level": self.certificate_level.value,
            "require_mfa": self.require_mfa,
            "order": self.order,
            "required": self.required,
            "subject": self.subject,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Participant":
        return cls(
            participant_id=data["participant_id"],
            email=data["email"],
            name=data.get("name", ""),
            role=data.get("role", "signer"),
            task_kind=TaskKind(data.get("task_kind", "sign")),
            certificate_level=CertificateLevel(data.get("certificate_level", "advanced")),
            require_mfa=data.get("require_mfa", False),
            order=data.get("order", 0),
            required=data.get("required", True),
            subject=data.get("subject"),
        )


@dataclass
class StageDefinition:
    """A node of the stage graph; tasks within a stage run concurrently."""
    stage_id: str
    name: str
    participants: List[str]
    depends_on: List[str] = field(default_factory=list)
    condition: Optional[ConditionNode] = None
    deadline_days: Optional[float] = None
    require_mfa: bool = False
    require_timestamp: bool = True
    allow_delegation: bool = False
    auto_start: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "name": self.name,
            "participants": list(self.participants),
            "depends_on": list(self.depends_on),
            "condition": self.condition.to_dict() if self.condition is not None else None,
            "deadline_days": self.deadline_days,
            "require_mfa": self.require_mfa,
            "require_timestamp": self.require_timestamp,
            "allow_delegation": self.allow_delegation,
            "auto_start": self.auto_start,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageDefinition":
        condition = data.get("condition")
        return cls(
            stage_id=data["stage_id"],
            name=data.get("name") or data["stage_id"],
            participants=list(data.get("participants", [])),
            depends_on=list(data.get("depends_on", [])),
            condition=parse_condition(condition) if condition else None,
            deadline_days=data.get("deadline_days"),
            require_mfa=data.get("require_mfa", False),
            require_timestamp=data.get("require_timestamp", True),
            allow_delegation=data.get("allow_delegation", False),
            auto_start=data.get("auto_start", True),
        )


@dataclass
class WorkflowSettings:
    deadline_days: float = 7
    reminder_interval_hours: float = 24
    escalation_delay_hours: float = 72
    allow_delegation: bool = False
    allow_parallel: bool = False
    require_mfa: bool = False
    require_timestamp: bool = True
    enable_reminders: bool = True
    enable_escalation: bool = True
    enable_deadlines: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deadline_days": self.deadline_days,
            "reminder_interval_hours": self.reminder_interval_hours,
            "escalation_delay_hours": self.escalation_delay_hours,
            "allow_delegation": self.allow_delegation,
            "allow_parallel": self.allow_parallel,
            "require_mfa": self.require_mfa,
            "require_timestamp": self.require_timestamp,
            "enable_reminders": self.enable_reminders,
            "enable_escalation": self.enable_escalation,
            "enable_deadlines": self.enable_deadlines,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "WorkflowSettings":
        known = cls().to_dict()
        return cls(**{k: v for k, v in (data or {}).items() if k in known})


@dataclass
class WorkflowDefinition:
    """
    A validated workflow definition.

    Immutable once ``locked`` (set when the first instance is created);
    revisions are new definitions pointing at ``revision_of``.
    """
    definition_id: str
    name: str
    workflow_type: WorkflowType
    participants: List[Participant]
    stages: List[StageDefinition] = field(default_factory=list)
    settings: WorkflowSettings = field(default_factory=WorkflowSettings)
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    locked: bool = False
    revision_of: Optional[str] = None
    revision: int = 1
    version: int = 0

    def participant(self, participant_id: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.participant_id == participant_id:
                return participant
        return None

    def stage(self, stage_id: str) -> Optional[StageDefinition]:
        for stage in self.stages:
            if stage.stage_id == stage_id:
                return stage
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "definition_id": self.definition_id,
            "name": self.name,
            "type": self.workflow_type.value,
            "participants": [p.to_dict() for p in self.participants],
            "stages": [s.to_dict() for s in self.stages],
            "settings": self.settings.to_dict(),
            "created_by": self.created_by,
            "created_at": format_datetime(self.created_at),
            "locked": self.locked,
            "revision_of": self.revision_of,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], version: int = 0) -> "WorkflowDefinition":
        return cls(
            definition_id=data["definition_id"],
            name=data.get("name", ""),
            workflow_type=WorkflowType(data["type"]),
            participants=[Participant.from_dict(p) for p in data.get("participants", [])],
            stages=[StageDefinition.from_dict(s) for s in data.get("stages", [])],
            settings=WorkflowSettings.from_dict(data.get("settings")),
            created_by=data.get("created_by"),
            created_at=parse_datetime(data.get("created_at")),
            locked=data.get("locked", False),
            revision_of=data.get("revision_of"),
            revision=data.get("revision", 1),
            version=version,
        )


@dataclass
class Task:
    """A single participant's action within a stage."""
    task_id: str
    stage_id: str
    participant_id: str
    subject: str
    email: str
    task_kind: TaskKind = TaskKind.SIGN
    status: TaskStatus = TaskStatus.PENDING
    required: bool = True
    require_mfa: bool = False
    certificate_level: CertificateLevel = CertificateLevel.ADVANCED
    invited_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    deadline: Optional[datetime] = None
    delegated_from: Optional[str] = None
    delegated_to: Optional[str] = None
    reminders_sent: int = 0
    escalated: bool = False
    composite_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_TASK_STATUSES

    @property
    def is_actionable(self) -> bool:
        return self.status in ACTIONABLE_TASK_STATUSES

    def can_transition(self, new_status: TaskStatus) -> bool:
        return new_status in TASK_TRANSITIONS.get(self.status, set())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "stage_id": self.stage_id,
            "participant_id": self.participant_id,
            "subject": self.subject,
            "email": self.email,
            "task_kind": self.task_kind.value,
            "status": self.status.value,
            "required": self.required,
            "require_mfa": self.require_mfa,
            "certificate_level": self.certificate_level.value,
            "invited_at": format_datetime(self.invited_at),
            "viewed_at": format_datetime(self.viewed_at),
            "completed_at": format_datetime(self.completed_at),
            "deadline": format_datetime(self.deadline),
            "delegated_from": self.delegated_from,
            "delegated_to": self.delegated_to,
            "reminders_sent": self.reminders_sent,
            "escalated": self.escalated,
            "composite_id": self.composite_id,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            task_id=data["task_id"],
            stage_id=data["stage_id"],
            participant_id=data["participant_id"],
            subject=data["subject"],
            email=data["email"],
            task_kind=TaskKind(data.get("task_kind", "sign")),
            status=TaskStatus(data["status"]),
            required=data.get("required", True),
            require_mfa=data.get("require_mfa", False),
            certificate_level=CertificateLevel(data.get("certificate_level", "advanced")),
            invited_at=parse_datetime(data.get("invited_at")),
            viewed_at=parse_datetime(data.get("viewed_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            deadline=parse_datetime(data.get("deadline")),
            delegated_from=data.get("delegated_from"),
            delegated_to=data.get("delegated_to"),
            reminders_sent=data.get("reminders_sent", 0),
            escalated=data.get("escalated", False),
            composite_id=data.get("composite_id"),
            reason=data.get("reason"),
        )


@dataclass
class StageState:
    stage_id: str
    status: StageStatus = StageStatus.BLOCKED
    task_ids: List[str] = field(default_factory=list)
    activated_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    deadline: Optional[datetime] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_id": self.stage_id,
            "status": self.status.value,
            "task_ids": list(self.task_ids),
            "activated_at": format_datetime(self.activated_at),
            "finished_at": format_datetime(self.finished_at),
            "deadline": format_datetime(self.deadline),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageState":
        return cls(
            stage_id=data["stage_id"],
            status=StageStatus(data["status"]),
            task_ids=list(data.get("task_ids", [])),
            activated_at=parse_datetime(data.get("activated_at")),
            finished_at=parse_datetime(data.get("finished_at")),
            deadline=parse_datetime(data.get("deadline")),
            reason=data.get("reason"),
        )


@dataclass
class WorkflowInstance:
    """
    A running workflow attached to one document.

    Stages, tasks, the notification outbox and processed command ids are
    kept in one record so every command commits with a single
    compare-and-set on ``version``.
    """
    instance_id: str
    definition_id: str
    document_id: str
    created_by: str
    status: InstanceStatus = InstanceStatus.RUNNING
    stages: Dict[str, StageState] = field(default_factory=dict)
    tasks: Dict[str, Task] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    expected_completion: Optional[datetime] = None
    outbox: List[Dict[str, Any]] = field(default_factory=list)
    pending_audit: List[Dict[str, Any]] = field(default_factory=list)
    processed_commands: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    reason: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status != InstanceStatus.RUNNING

    def tasks_in(self, stage_id: str) -> List[Task]:
        return [self.tasks[t] for t in self.stages[stage_id].task_ids if t in self.tasks]

    def tasks_for(self, subject: str) -> List[Task]:
        return [t for t in self.tasks.values() if t.subject == subject or t.email == subject]

    def stages_with(self, status: StageStatus) -> List[str]:
        return [s.stage_id for s in self.stages.values() if s.status == status]

    def to_record(self) -> Dict[str, Any]:
        return {
            "instance_id": self.instance_id,
            "definition_id": self.definition_id,
            "document_id": self.document_id,
            "created_by": self.created_by,
            "status": self.status.value,
            "stages": {k: v.to_dict() for k, v in self.stages.items()},
            "tasks": {k: v.to_dict() for k, v in self.tasks.items()},
            "created_at": format_datetime(self.created_at),
            "started_at": format_datetime(self.started_at),
            "finished_at": format_datetime(self.finished_at),
            "expected_completion": format_datetime(self.expected_completion),
            "outbox": self.outbox,
            "pending_audit": self.pending_audit,
            "processed_commands": self.processed_commands,
            "reason": self.reason,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any], version: int = 0) -> "WorkflowInstance":
        return cls(
            instance_id=data["instance_id"],
            definition_id=data["definition_id"],
            document_id=data["document_id"],
            created_by=data["created_by"],
            status=InstanceStatus(data["status"]),
            stages={k: StageState.from_dict(v) for k, v in data.get("stages", {}).items()},
            tasks={k: Task.from_dict(v) for k, v in data.get("tasks", {}).items()},
            created_at=parse_datetime(data.get("created_at")),
            started_at=parse_datetime(data.get("started_at")),
            finished_at=parse_datetime(data.get("finished_at")),
            expected_completion=parse_datetime(data.get("expected_completion")),
            outbox=list(data.get("outbox", [])),
            pending_audit=list(data.get("pending_audit", [])),
            processed_commands=dict(data.get("processed_commands", {})),
            reason=data.get("reason"),
            version=version,
        )

    def to_view(self) -> Dict[str, Any]:
        view = self.to_record()
        view.pop("processed_commands")
        view.pop("pending_audit")
        view["version"] = self.version
        view["undelivered_notifications"] = sum(1 for n in self.outbox if n.get("status") != "accepted")
        return view
