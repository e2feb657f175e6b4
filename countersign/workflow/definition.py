"""
Workflow definition validation and registry.

Definitions are validated once, on creation: participant list, stage graph
shape (acyclic, reachable from an auto-start stage) and settings ranges.
A definition is locked when its first instance is created; changes after
that produce a revision.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import jsonschema

from ..audit import AuditEventKind, AuditLog
from ..core.clock import Clock, new_id
from ..core.config import WorkflowConfig
from ..core.exceptions import ConflictError, NotFoundError, PolicyError, ValidationError
from ..persistence import Collections, Store, retry_unavailable
from .models import (
    CertificateLevel,
    Participant,
    StageDefinition,
    TaskKind,
    WorkflowDefinition,
    WorkflowSettings,
    WorkflowType,
)

logger = logging.getLogger(__name__)

DEFINITION_STREAM = "definitions"

_PARTICIPANT_SCHEMA = {
    "type": "object",
    "required": ["email"],
    "properties": {
        "participant_id": {"type": "string", "minLength": 1},
        "email": {"type": "string", "minLength": 3},
        "name": {"type": "string"},
        "role": {"type": "string"},
        "task_kind": {"enum": [k.value for k in TaskKind]},
        "certificate_level": {"enum": [c.value for c in CertificateLevel]},
        "require_mfa": {"type": "boolean"},
        "order": {"type": "integer"},
        "required": {"type": "boolean"},
        "subject": {"type": ["string", "null"]},
    },
}

_STAGE_SCHEMA = {
    "type": "object",
    "required": ["stage_id", "participants"],
    "properties": {
        "stage_id": {"type": "string", "minLength": 1},
        "name": {"type": "string"},
        "participants": {"type": "array", "items": {"type": "string"}},
        "depends_on": {"type": "array", "items": {"type": "string"}},
        "condition": {"type": ["object", "array", "null"]},
        "deadline_days": {"type": ["number", "null"]},
        "require_mfa": {"type": "boolean"},
        "require_timestamp": {"type": "boolean"},
        "allow_delegation": {"type": "boolean"},
        "auto_start": {"type": "boolean"},
    },
}

DEFINITION_SCHEMA = {
    "type": "object",
    "required": ["name", "type", "participants"],
    "properties": {
        "definition_id": {"type": "string", "minLength": 1},
        "name": {"type": "string", "minLength": 1},
        "type": {"enum": [t.value for t in WorkflowType]},
        "participants": {"type": "array", "items": _PARTICIPANT_SCHEMA},
        "stages": {"type": "array", "items": _STAGE_SCHEMA},
        "settings": {"type": "object"},
    },
}


def derive_stages(
    workflow_type: WorkflowType,
    participants: List[Participant],
    settings: WorkflowSettings,
) -> List[StageDefinition]:
    """
    Build the stage graph for Sequential and Parallel definitions.

    Sequential yields one stage per participant in ``order``, each depending
    on the previous; with ``allow_parallel`` participants sharing an order
    value share a stage. Parallel yields a single stage.
    """
    if workflow_type == WorkflowType.CUSTOM:
        raise ValueError("Custom workflows declare their own stages")
    if not participants:
        return []
    if workflow_type == WorkflowType.PARALLEL:
        return [StageDefinition(
            stage_id="stage-1",
            name="Signing",
            participants=[p.participant_id for p in participants],
        )]

    ordered = sorted(enumerate(participants), key=lambda item: (item[1].order, item[0]))
    groups: List[List[Participant]] = []
    for _, participant in ordered:
        if settings.allow_parallel and groups and groups[-1][0].order == participant.order:
            groups[-1].append(participant)
        else:
            groups.append([participant])

    stages = []
    for index, group in enumerate(groups, start=1):
        stages.append(StageDefinition(
            stage_id=f"stage-{index}",
            name=f"Step {index}",
            participants=[p.participant_id for p in group],
            depends_on=[f"stage-{index - 1}"] if index > 1 else [],
        ))
    return stages


class DefinitionValidator:
    """Structural validation of workflow definitions."""

    WHITE, GRAY, BLACK = 0, 1, 2

    def validate(self, definition: WorkflowDefinition) -> List[str]:
        errors = []
        errors.extend(self._check_participants(definition))
        errors.extend(self._check_settings(definition.settings))
        if definition.workflow_type == WorkflowType.CUSTOM and not definition.stages:
            errors.append("custom workflow requires at least one stage")
        if definition.participants and not definition.stages:
            errors.append("workflow has no stages")

        stage_errors = self._check_stages(definition)
        errors.extend(stage_errors)
        if not stage_errors and definition.stages:
            cycle = self.find_cycle(definition.stages)
            if cycle:
                errors.append(f"dependency cycle: {' -> '.join(cycle)}")
            else:
                errors.extend(self._check_reachability(definition.stages))
        return errors

    def _check_participants(self, definition: WorkflowDefinition) -> List[str]:
        errors = []
        if not definition.participants:
            errors.append("workflow requires at least one participant")
        seen_emails = set()
        seen_ids = set()
        for participant in definition.participants:
            email = participant.email.strip().lower()
            if email in seen_emails:
                errors.append(f"duplicate participant email: {participant.email}")
            seen_emails.add(email)
            if participant.participant_id in seen_ids:
                errors.append(f"duplicate participant id: {participant.participant_id}")
            seen_ids.add(participant.participant_id)
        return errors

    def _check_settings(self, settings: WorkflowSettings) -> List[str]:
        errors = []
        if settings.deadline_days <= 0:
            errors.append("deadline_days must be positive")
        if settings.reminder_interval_hours <= 0:
            errors.append("reminder_interval_hours must be positive")
        if settings.escalation_delay_hours < 0:
            errors.append("escalation_delay_hours must not be negative")
        return errors

    def _check_stages(self, definition: WorkflowDefinition) -> List[str]:
        errors = []
        participant_ids = {p.participant_id for p in definition.participants}
        stage_ids = [s.stage_id for s in definition.stages]
        known = set(stage_ids)
        if len(known) != len(stage_ids):
            duplicates = sorted({s for s in stage_ids if stage_ids.count(s) > 1})
            errors.append(f"duplicate stage ids: {duplicates}")

        assigned = set()
        for stage in definition.stages:
            if not stage.participants:
                errors.append(f"stage {stage.stage_id} has no participants")
            for participant_id in stage.participants:
                if participant_id not in participant_ids:
                    errors.append(f"stage {stage.stage_id} references unknown participant {participant_id}")
                assigned.add(participant_id)
            for dependency in stage.depends_on:
                if dependency not in known:
                    errors.append(f"stage {stage.stage_id} depends on unknown stage {dependency}")
            if stage.deadline_days is not None and stage.deadline_days <= 0:
                errors.append(f"stage {stage.stage_id} deadline_days must be positive")

        for participant_id in sorted(participant_ids - assigned):
            errors.append(f"participant {participant_id} is not assigned to any stage")

        if definition.stages and not any(s.auto_start for s in definition.stages):
            errors.append("at least one stage must be auto-start")
        return errors

    def find_cycle(self, stages: List[StageDefinition]) -> Optional[List[str]]:
        """Depth-first search with three colours; returns the first cycle found."""
        edges = {s.stage_id: list(s.depends_on) for s in stages}
        colour = {stage_id: self.WHITE for stage_id in edges}
        path: List[str] = []

        def visit(node: str) -> Optional[List[str]]:
            colour[node] = self.GRAY
            path.append(node)
            for neighbour in edges.get(node, []):
                if colour.get(neighbour) == self.GRAY:
                    start = path.index(neighbour)
                    return path[start:] + [neighbour]
                if colour.get(neighbour) == self.WHITE:
                    found = visit(neighbour)
                    if found:
                        return found
            path.pop()
            colour[node] = self.BLACK
            return None

        for stage_id in edges:
            if colour[stage_id] == self.WHITE:
                found = visit(stage_id)
                if found:
                    return found
        return None

    def _check_reachability(self, stages: List[StageDefinition]) -> List[str]:
        dependents: Dict[str, List[str]] = {s.stage_id: [] for s in stages}
        for stage in stages:
            for dependency in stage.depends_on:
                dependents[dependency].append(stage.stage_id)

        queue = [s.stage_id for s in stages if s.auto_start]
        reached = set(queue)
        while queue:
            current = queue.pop(0)
            for nxt in dependents[current]:
                if nxt not in reached:
                    reached.add(nxt)
                    queue.append(nxt)

        return [
            f"stage {s.stage_id} is not reachable from an auto-start stage"
            for s in stages
            if s.stage_id not in reached
        ]


@dataclass
class DefinitionResult:
    """Outcome of creating or revising a definition."""
    definition_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    definition: Optional[WorkflowDefinition] = None

    @property
    def ok(self) -> bool:
        return not self.errors and self.definition_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "definition_id": self.definition_id,
            "errors": self.errors,
        }


class DefinitionRegistry:
    """Creates, stores, locks and revises workflow definitions."""

    def __init__(
        self,
        store: Store,
        clock: Clock,
        config: Optional[WorkflowConfig] = None,
        audit: Optional[AuditLog] = None,
        retry_delays_ms: Optional[List[int]] = None,
    ):
        self.store = store
        self.clock = clock
        self.config = config or WorkflowConfig()
        self.audit = audit
        self.validator = DefinitionValidator()
        self._delays = retry_delays_ms or [50, 100, 200, 400]

    def parse(self, data: Dict[str, Any], created_by: str = "system") -> WorkflowDefinition:
        """
        Turn an authored definition document into a WorkflowDefinition.

        Participants without an id get ``p<n>``; Sequential and Parallel
        definitions without stages get derived ones.

        Raises:
            ValidationError: schema violation or malformed stage condition
        """
        try:
            jsonschema.validate(data, DEFINITION_SCHEMA)
        except jsonschema.ValidationError as e:
            path = "/".join(str(p) for p in e.absolute_path)
            raise ValidationError(
                "Workflow definition schema violation",
                errors=[f"{path}: {e.message}" if path else e.message],
                code="DEFINITION_SCHEMA",
            ) from e

        participants = []
        for index, item in enumerate(data.get("participants", []), start=1):
            item = dict(item)
            item.setdefault("participant_id", f"p{index}")
            item.setdefault("order", index)
            participants.append(Participant.from_dict(item))

        try:
            stages = [StageDefinition.from_dict(s) for s in data.get("stages", [])]
        except PolicyError as e:
            raise ValidationError(
                "Invalid stage condition",
                errors=[e.message],
                code="DEFINITION_SCHEMA",
            ) from e

        workflow_type = WorkflowType(data["type"])
        settings = WorkflowSettings.from_dict(data.get("settings"))
        if "settings" not in data or "deadline_days" not in data["settings"]:
            settings.deadline_days = self.config.default_deadline_days
        if not stages and workflow_type != WorkflowType.CUSTOM:
            stages = derive_stages(workflow_type, participants, settings)

        return WorkflowDefinition(
            definition_id=data.get("definition_id") or new_id("def"),
            name=data["name"],
            workflow_type=workflow_type,
            participants=participants,
            stages=stages,
            settings=settings,
            created_by=created_by,
            created_at=self.clock.now(),
        )

    def validate(self, definition: Union[Dict[str, Any], WorkflowDefinition]) -> List[str]:
        if isinstance(definition, dict):
            try:
                definition = self.parse(definition)
            except ValidationError as e:
                return e.errors
        return self.validator.validate(definition)

    async def create(
        self,
        definition: Union[Dict[str, Any], WorkflowDefinition],
        created_by: str = "system",
    ) -> DefinitionResult:
        """
        Validate and store a definition.

        Returns:
            DefinitionResult with the new id, or the validation errors
        """
        if isinstance(definition, dict):
            try:
                definition = self.parse(definition, created_by)
            except ValidationError as e:
                return DefinitionResult(errors=e.errors)

        errors = self.validator.validate(definition)
        if errors:
            logger.info(f"Rejected workflow definition {definition.name!r}: {errors}")
            return DefinitionResult(errors=errors)

        result = await retry_unavailable(
            lambda: self.store.put(
                Collections.WORKFLOW_DEFINITIONS, definition.definition_id, definition.to_dict(), 0
            ),
            self._delays,
            "definition write",
        )
        if result.conflict:
            return DefinitionResult(errors=[f"definition {definition.definition_id} already exists"])
        definition.version = result.new_version

        if self.audit is not None:
            await self.audit.append(
                DEFINITION_STREAM,
                actor=created_by,
                kind=AuditEventKind.DEFINITION_CREATED,
                payload={
                    "definition_id": definition.definition_id,
                    "name": definition.name,
                    "type": definition.workflow_type.value,
                    "participants": len(definition.participants),
                    "stages": len(definition.stages),
                    "revision_of": definition.revision_of,
                },
            )
        logger.info(
            f"Created {definition.workflow_type.value} workflow definition "
            f"{definition.definition_id} with {len(definition.stages)} stages"
        )
        return DefinitionResult(definition_id=definition.definition_id, definition=definition)

    async def get(self, definition_id: str) -> WorkflowDefinition:
        record = await retry_unavailable(
            lambda: self.store.get(Collections.WORKFLOW_DEFINITIONS, definition_id),
            self._delays,
            "definition read",
        )
        if record is None:
            raise NotFoundError(
                f"Workflow definition {definition_id} not found",
                collection=Collections.WORKFLOW_DEFINITIONS,
                entity_id=definition_id,
            )
        return WorkflowDefinition.from_dict(record.data, record.version)

    async def lock(self, definition_id: str, attempts: int = 3) -> WorkflowDefinition:
        """Mark a definition immutable; no-op when already locked."""
        last_error: Optional[ConflictError] = None
        for _ in range(attempts):
            definition = await self.get(definition_id)
            if definition.locked:
                return definition
            definition.locked = True
            expected = definition.version
            result = await retry_unavailable(
                lambda: self.store.put(
                    Collections.WORKFLOW_DEFINITIONS, definition_id, definition.to_dict(), expected
                ),
                self._delays,
                "definition write",
            )
            try:
                definition.version = result.raise_for_conflict(
                    Collections.WORKFLOW_DEFINITIONS, definition_id, expected
                )
                return definition
            except ConflictError as e:
                last_error = e
        raise last_error

    async def revise(
        self,
        definition_id: str,
        changes: Dict[str, Any],
        created_by: str = "system",
    ) -> DefinitionResult:
        """
        Create a new definition derived from ``definition_id``.

        ``changes`` uses the authored document shape (``participants``,
        ``stages``, ``settings``, ``name``). Derived stages are rebuilt
        when participants change and no stages are supplied.
        """
        base = await self.get(definition_id)
        document = base.to_dict()
        for key in ("definition_id", "created_by", "created_at", "locked", "revision_of", "revision"):
            document.pop(key, None)
        if "settings" in changes:
            document["settings"] = {**document["settings"], **changes["settings"]}
        for key in ("name", "participants", "stages"):
            if key in changes:
                document[key] = changes[key]
        if "participants" in changes and "stages" not in changes and base.workflow_type != WorkflowType.CUSTOM:
            document.pop("stages")

        try:
            revised = self.parse(document, created_by)
        except ValidationError as e:
            return DefinitionResult(errors=e.errors)
        revised.revision_of = base.definition_id
        revised.revision = base.revision + 1
        return await self.create(revised, created_by)

    async def list_definitions(self, created_by: Optional[str] = None) -> List[WorkflowDefinition]:
        records = await retry_unavailable(
            lambda: self.store.list(
                Collections.WORKFLOW_DEFINITIONS,
                predicate=(lambda d: d.get("created_by") == created_by) if created_by else None,
                order="created_at",
            ),
            self._delays,
            "definition read",
        )
        return [WorkflowDefinition.from_dict(r.data, r.version) for r in records]

    def estimate_completion(self, definition: WorkflowDefinition) -> int:
        """Estimated days to completion, rounded up."""
        days = len(definition.participants) * self.config.estimated_days_per_participant
        if definition.workflow_type == WorkflowType.CUSTOM:
            days *= self.config.custom_workflow_factor
        return math.ceil(days)
