"""
Workflow commands and the typed result returned at the command boundary.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.clock import format_datetime, parse_datetime
from ..core.exceptions import CountersignError, ErrorKind, ValidationError
from ..timestamping import SignatureSubmission


class CommandType(Enum):
    START = "start"
    VIEW = "view"
    SIGN = "sign"
    DECLINE = "decline"
    DELEGATE = "delegate"
    TIME_TICK = "time_tick"
    VOID = "void"


class WorkflowCommand:
    """Base for commands; subclasses are dataclasses."""

    command_type: CommandType
    actor: str
    command_id: Optional[str]

    def describe(self) -> Dict[str, Any]:
        return {
            "type": self.command_type.value,
            "actor": self.actor,
            "command_id": self.command_id,
        }


@dataclass
class StartStage(WorkflowCommand):
    """Activate a Ready stage, or every Ready auto-start stage."""
    stage_id: Optional[str] = None
    actor: str = "system"
    command_id: Optional[str] = None
    command_type = CommandType.START


@dataclass
class ViewTask(WorkflowCommand):
    task_id: str
    actor: str = "system"
    command_id: Optional[str] = None
    command_type = CommandType.VIEW


@dataclass
class SignTask(WorkflowCommand):
    """
    Complete a task. Sign and witness tasks need a signature submission;
    approve and review tasks are completed without one.
    """
    task_id: str
    submission: Optional[SignatureSubmission] = None
    mfa_evidence: Optional[str] = None
    actor: str = "system"
    command_id: Optional[str] = None
    command_type = CommandType.SIGN

    @property
    def evidence(self) -> Optional[str]:
        if self.mfa_evidence:
            return self.mfa_evidence
        return self.submission.mfa_evidence if self.submission else None


@dataclass
class DeclineTask(WorkflowCommand):
    task_id: str
    reason: str = ""
    actor: str = "system"
    command_id: Optional[str] = None
    command_type = CommandType.DECLINE


@dataclass
class DelegateTask(WorkflowCommand):
    """Hand a task to a new signer; the replacement inherits the deadline."""
    task_id: str
    new_email: str
    new_subject: Optional[str] = None
    new_name: str = ""
    reason: str = ""
    actor: str = "system"
    command_id: Optional[str] = None
    command_type = CommandType.DELEGATE

    @property
    def delegate_subject(self) -> str:
        return self.new_subject or self.new_email


@dataclass
class TimeTick(WorkflowCommand):
    """Evaluate deadlines, reminders and escalations at ``now``."""
    now: Optional[datetime] = None
    actor: str = "system"
    command_id: Optional[str] = None
    command_type = CommandType.TIME_TICK


@dataclass
class VoidInstance(WorkflowCommand):
    reason: str = ""
    actor: str = "system"
    command_id: Optional[str] = None
    command_type = CommandType.VOID


def parse_command(data: Dict[str, Any]) -> WorkflowCommand:
    """
    Build a command from its JSON form, e.g. ``{"type": "sign", "task_id": ...}``.

    Raises:
        ValidationError: unknown type or missing field
    """
    try:
        command_type = CommandType(data.get("type"))
    except ValueError as e:
        raise ValidationError(f"Unknown command type: {data.get('type')!r}", code="UNKNOWN_COMMAND") from e

    common = {"actor": data.get("actor", "system"), "command_id": data.get("command_id")}
    try:
        if command_type == CommandType.START:
            return StartStage(stage_id=data.get("stage_id"), **common)
        if command_type == CommandType.VIEW:
            return ViewTask(task_id=data["task_id"], **common)
        if command_type == CommandType.SIGN:
            submission = data.get("submission")
            return SignTask(
                task_id=data["task_id"],
                submission=SignatureSubmission.from_dict(submission) if submission else None,
                mfa_evidence=data.get("mfa_evidence"),
                **common,
            )
        if command_type == CommandType.DECLINE:
            return DeclineTask(task_id=data["task_id"], reason=data.get("reason", ""), **common)
        if command_type == CommandType.DELEGATE:
            return DelegateTask(
                task_id=data["task_id"],
                new_email=data["new_email"],
                new_subject=data.get("new_subject"),
                new_name=data.get("new_name", ""),
                reason=data.get("reason", ""),
                **common,
            )
        if command_type == CommandType.TIME_TICK:
            return TimeTick(now=parse_datetime(data.get("now")), **common)
        return VoidInstance(reason=data.get("reason", ""), **common)
    except KeyError as e:
        raise ValidationError(
            f"Command {command_type.value} is missing field {e.args[0]}",
            errors=[f"missing field: {e.args[0]}"],
        ) from e


@dataclass
class CommandResult:
    """Typed outcome of a workflow command."""
    ok: bool
    command_id: Optional[str] = None
    instance_id: Optional[str] = None
    state: Optional[str] = None
    version: int = 0
    events: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    replayed: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def conflict(self) -> bool:
        return self.error is not None and self.error.get("kind") == ErrorKind.CONFLICT.value

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.get("kind") if self.error else None

    @classmethod
    def failure(
        cls,
        error: CountersignError,
        command_id: Optional[str] = None,
        instance_id: Optional[str] = None,
    ) -> "CommandResult":
        return cls(ok=False, command_id=command_id, instance_id=instance_id, error=error.user_dict())

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "ok": self.ok,
            "command_id": self.command_id,
            "instance_id": self.instance_id,
            "state": self.state,
            "version": self.version,
            "events": self.events,
            "replayed": self.replayed,
            "data": self.data,
        }
        if self.error:
            result["error"] = self.error
        return result


def record_processed(result: CommandResult, now: datetime) -> Dict[str, Any]:
    """Form kept on the instance so a replayed command returns the same outcome."""
    return {
        "state": result.state,
        "events": list(result.events),
        "data": dict(result.data),
        "at": format_datetime(now),
    }
