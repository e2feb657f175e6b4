"""
Countersign - Signing Workflow Engine

Workflow definitions (sequential, parallel or custom stage graphs),
instance state machines, deadlines, reminders, escalation and delegation.
"""

from .commands import (
    CommandResult,
    CommandType,
    DeclineTask,
    DelegateTask,
    SignTask,
    StartStage,
    TimeTick,
    ViewTask,
    VoidInstance,
    WorkflowCommand,
    parse_command,
)
from .definition import (
    DEFINITION_SCHEMA,
    DefinitionRegistry,
    DefinitionResult,
    DefinitionValidator,
    derive_stages,
)
from .models import (
    CertificateLevel,
    InstanceStatus,
    Participant,
    StageDefinition,
    StageState,
    StageStatus,
    Task,
    TaskKind,
    TaskStatus,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowSettings,
    WorkflowType,
)
from .runtime import WorkflowRuntime

__all__ = [
    "CommandResult",
    "CommandType",
    "DeclineTask",
    "DelegateTask",
    "SignTask",
    "StartStage",
    "TimeTick",
    "ViewTask",
    "VoidInstance",
    "WorkflowCommand",
    "parse_command",
    "DEFINITION_SCHEMA",
    "DefinitionRegistry",
    "DefinitionResult",
    "DefinitionValidator",
    "derive_stages",
    "CertificateLevel",
    "InstanceStatus",
    "Participant",
    "StageDefinition",
    "StageState",
    "StageStatus",
    "Task",
    "TaskKind",
    "TaskStatus",
    "WorkflowDefinition",
    "WorkflowInstance",
    "WorkflowSettings",
    "WorkflowType",
    "WorkflowRuntime",
]
