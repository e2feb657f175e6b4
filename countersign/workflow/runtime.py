"""
Workflow runtime: executes commands against workflow instances.

Each command runs as load, apply, compare-and-set. State changes, the
notification outbox and the processed command id are written in one
record; audit entries, notifications and document status changes follow
only after that write succeeds. A conflicting write reloads the instance
and applies the command again, up to ``command_retry_limit`` times.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..audit import AuditEventKind, AuditLog, document_stream
from ..authz.conditions import AttributeContext
from ..core.clock import Clock, format_datetime, new_id, parse_datetime
from ..core.config import WorkflowConfig
from ..core.document import Document, DocumentRepository, DocumentStatus
from ..core.exceptions import (
    ConflictError,
    CountersignError,
    DependencyUnavailableError,
    InvalidStateError,
    NotFoundError,
    TsaUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from ..notifier import DeliveryStatus, Notification, NotificationKind, Notifier
from ..persistence import Collections, Store, retry_unavailable
from ..timestamping import CompositeService, CompositeSignature, CompositeStatus
from .commands import (
    CommandResult,
    DeclineTask,
    DelegateTask,
    SignTask,
    StartStage,
    TimeTick,
    ViewTask,
    VoidInstance,
    WorkflowCommand,
    record_processed,
)
from .definition import DefinitionRegistry
from .models import (
    SATISFIED_STAGE_STATUSES,
    CertificateLevel,
    InstanceStatus,
    StageState,
    StageStatus,
    Task,
    TaskStatus,
    WorkflowDefinition,
    WorkflowInstance,
)

logger = logging.getLogger(__name__)

MAX_DELIVERY_ATTEMPTS = 5
PROCESSED_COMMANDS_KEPT = 200


class _Step:
    """Mutations and side effects collected while applying one command."""

    def __init__(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        document: Document,
        command: WorkflowCommand,
        now: datetime,
    ):
        self.instance = instance
        self.definition = definition
        self.document = document
        self.command = command
        self.now = now
        self.events: List[Dict[str, Any]] = []
        self.notifications: List[Notification] = []
        self.document_status: Optional[DocumentStatus] = None
        self.composite: Optional[CompositeSignature] = None
        self.data: Dict[str, Any] = {}

    @property
    def changed(self) -> bool:
        return bool(self.events or self.notifications)

    def emit(self, kind: AuditEventKind, actor: Optional[str] = None, **payload: Any) -> None:
        payload["instance_id"] = self.instance.instance_id
        self.events.append({
            "kind": kind.value,
            "actor": actor or self.command.actor,
            "payload": payload,
            "time": format_datetime(self.now),
        })

    def notify(
        self,
        recipient: str,
        kind: NotificationKind,
        stage_id: Optional[str] = None,
        task_id: Optional[str] = None,
        cycle_no: int = 0,
        **context: Any,
    ) -> None:
        context.setdefault("document_id", self.document.document_id)
        context.setdefault("document_title", self.document.title)
        self.notifications.append(Notification(
            recipient=recipient,
            kind=kind,
            instance_id=self.instance.instance_id,
            stage_id=stage_id,
            task_id=task_id,
            command_id=self.command.command_id,
            cycle_no=cycle_no,
            context=context,
        ))


class WorkflowRuntime:
    """
    Runs workflow instances.

    Commands never raise: every CountersignError is converted into a
    failed CommandResult carrying the caller-facing error.
    """

    def __init__(
        self,
        store: Store,
        clock: Clock,
        registry: DefinitionRegistry,
        documents: DocumentRepository,
        notifier: Notifier,
        audit: Optional[AuditLog] = None,
        composites: Optional[CompositeService] = None,
        config: Optional[WorkflowConfig] = None,
        retry_delays_ms: Optional[List[int]] = None,
    ):
        self.store = store
        self.clock = clock
        self.registry = registry
        self.documents = documents
        self.notifier = notifier
        self.audit = audit
        self.composites = composites
        self.config = config or WorkflowConfig()
        self._delays = retry_delays_ms or [50, 100, 200, 400]
        self._handlers: Dict[type, Callable[[_Step, Dict[str, Any]], None]] = {
            StartStage: self._start,
            ViewTask: self._view,
            SignTask: self._sign,
            DeclineTask: self._decline,
            DelegateTask: self._delegate,
            TimeTick: self._tick,
            VoidInstance: self._void,
        }

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        record = await retry_unavailable(
            lambda: self.store.get(Collections.WORKFLOW_INSTANCES, instance_id),
            self._delays,
            "instance read",
        )
        if record is None:
            raise NotFoundError(
                f"Workflow instance {instance_id} not found",
                collection=Collections.WORKFLOW_INSTANCES,
                entity_id=instance_id,
            )
        return WorkflowInstance.from_record(record.data, record.version)

    async def _save(self, instance: WorkflowInstance) -> int:
        expected = instance.version
        result = await retry_unavailable(
            lambda: self.store.put(
                Collections.WORKFLOW_INSTANCES, instance.instance_id, instance.to_record(), expected
            ),
            self._delays,
            "instance write",
        )
        instance.version = result.raise_for_conflict(
            Collections.WORKFLOW_INSTANCES, instance.instance_id, expected
        )
        return instance.version

    async def _update(
        self,
        instance_id: str,
        mutate: Callable[[WorkflowInstance], bool],
    ) -> Optional[WorkflowInstance]:
        """Reload-mutate-save for bookkeeping writes; ``mutate`` returns False to skip."""
        for _ in range(self.config.command_retry_limit):
            instance = await self.get_instance(instance_id)
            if not mutate(instance):
                return instance
            try:
                await self._save(instance)
                return instance
            except ConflictError:
                logger.debug(f"Conflict updating bookkeeping of {instance_id}, retrying")
        logger.warning(f"Gave up updating bookkeeping of instance {instance_id}")
        return None

    # ------------------------------------------------------------------
    # Instance creation
    # ------------------------------------------------------------------

    async def create_instance(
        self,
        definition_id: str,
        document_id: str,
        created_by: str = "system",
        instance_id: Optional[str] = None,
    ) -> CommandResult:
        """
        Create an instance for a Draft document and move the document Out.

        Root stages start Ready and every task Pending; nothing is sent
        until the first Start command. The instance is stored before the
        document is claimed, and removed again if the claim fails.
        """
        command_id = new_id("cmd")
        try:
            definition = await self.registry.get(definition_id)
            document = await self.documents.get(document_id)
            if document.status != DocumentStatus.DRAFT:
                raise InvalidStateError(
                    f"Document {document_id} is {document.status.value}, not draft",
                    entity="document",
                    state=document.status.value,
                )
            now = self.clock.now()
            instance = self._build_instance(definition, document, created_by, now, instance_id)

            await self.registry.lock(definition_id)
            await self._save(instance)
            try:
                await self.documents.transition(
                    document_id,
                    DocumentStatus.OUT,
                    reason=f"workflow {instance.instance_id} created",
                    instance_id=instance.instance_id,
                    attempts=self.config.command_retry_limit,
                    expected_status=DocumentStatus.DRAFT,
                )
            except CountersignError:
                await self._discard(instance)
                raise
        except CountersignError as e:
            logger.warning(f"Instance creation for document {document_id} failed: {e.message}")
            return CommandResult.failure(e, command_id=command_id)

        event = {
            "kind": AuditEventKind.CREATED.value,
            "actor": created_by,
            "payload": {
                "instance_id": instance.instance_id,
                "definition_id": definition_id,
                "content_hash": document.content_hash,
                "stages": list(instance.stages),
                "tasks": len(instance.tasks),
                "expected_completion": format_datetime(instance.expected_completion),
            },
            "time": format_datetime(now),
        }
        await self._append_audit(instance, [event])
        logger.info(f"Created workflow instance {instance.instance_id} for document {document_id}")
        return CommandResult(
            ok=True,
            command_id=command_id,
            instance_id=instance.instance_id,
            state=instance.status.value,
            version=instance.version,
            events=[AuditEventKind.CREATED.value],
            data={"instance_id": instance.instance_id},
        )

    async def _discard(self, instance: WorkflowInstance) -> None:
        """Remove an instance whose document could not be claimed."""
        try:
            result = await retry_unavailable(
                lambda: self.store.delete(
                    Collections.WORKFLOW_INSTANCES, instance.instance_id, instance.version
                ),
                self._delays,
                "instance delete",
            )
        except DependencyUnavailableError as e:
            logger.error(f"Could not discard unclaimed instance {instance.instance_id}: {e.message}")
            return
        if not result.ok:
            logger.error(f"Unclaimed instance {instance.instance_id} changed before it could be discarded")

    def _build_instance(
        self,
        definition: WorkflowDefinition,
        document: Document,
        created_by: str,
        now: datetime,
        instance_id: Optional[str],
    ) -> WorkflowInstance:
        instance = WorkflowInstance(
            instance_id=instance_id or new_id("wf"),
            definition_id=definition.definition_id,
            document_id=document.document_id,
            created_by=created_by,
            created_at=now,
            expected_completion=now + timedelta(days=self.registry.estimate_completion(definition)),
        )
        for stage in definition.stages:
            state = StageState(
                stage_id=stage.stage_id,
                status=StageStatus.READY if not stage.depends_on else StageStatus.BLOCKED,
            )
            for participant_id in stage.participants:
                participant = definition.participant(participant_id)
                task = Task(
                    task_id=f"{stage.stage_id}:{participant_id}",
                    stage_id=stage.stage_id,
                    participant_id=participant_id,
                    subject=participant.subject,
                    email=participant.email,
                    task_kind=participant.task_kind,
                    required=participant.required,
                    require_mfa=(
                        participant.require_mfa or stage.require_mfa or definition.settings.require_mfa
                    ),
                    certificate_level=participant.certificate_level,
                )
                instance.tasks[task.task_id] = task
                state.task_ids.append(task.task_id)
            instance.stages[stage.stage_id] = state
        return instance

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    async def submit_command(self, instance_id: str, command: WorkflowCommand) -> CommandResult:
        """
        Apply ``command`` to an instance.

        Returns:
            CommandResult; ``conflict`` is set when the instance kept
            changing underneath the command after every retry
        """
        if not command.command_id:
            command.command_id = new_id("cmd")
        try:
            return await self._execute(instance_id, command)
        except CountersignError as e:
            log = logger.warning if e.retryable else logger.info
            log(f"Command {command.command_type.value} on {instance_id} failed: {e.code} {e.message}")
            return CommandResult.failure(e, command_id=command.command_id, instance_id=instance_id)

    def _replay(self, instance: WorkflowInstance, command: WorkflowCommand) -> CommandResult:
        stored = instance.processed_commands[command.command_id]
        logger.debug(f"Command {command.command_id} already applied to {instance.instance_id}")
        return CommandResult(
            ok=True,
            command_id=command.command_id,
            instance_id=instance.instance_id,
            state=stored["state"],
            version=instance.version,
            events=list(stored["events"]),
            replayed=True,
            data=dict(stored["data"]),
        )

    async def _execute(self, instance_id: str, command: WorkflowCommand) -> CommandResult:
        handler = self._handlers.get(type(command))
        if handler is None:
            raise ValidationError(f"Unsupported command {type(command).__name__}", code="UNKNOWN_COMMAND")

        instance = await self.get_instance(instance_id)
        if command.command_id in instance.processed_commands:
            return self._replay(instance, command)
        definition = await self.registry.get(instance.definition_id)
        prepared = await self._prepare(instance, definition, command)

        for attempt in range(self.config.command_retry_limit):
            if attempt:
                instance = await self.get_instance(instance_id)
                if command.command_id in instance.processed_commands:
                    return self._replay(instance, command)
            document = await self.documents.get(instance.document_id)
            now = command.now if isinstance(command, TimeTick) and command.now else self.clock.now()
            step = _Step(instance, definition, document, command, now)
            handler(step, prepared)

            if isinstance(command, TimeTick) and not step.changed:
                await self._after_tick(instance)
                return self._result(step)

            result = self._result(step)
            instance.processed_commands[command.command_id] = record_processed(result, now)
            while len(instance.processed_commands) > PROCESSED_COMMANDS_KEPT:
                instance.processed_commands.pop(next(iter(instance.processed_commands)))
            instance.outbox.extend(self._outbox_entry(n) for n in step.notifications)

            try:
                await self._save(instance)
            except ConflictError:
                logger.info(
                    f"Version conflict applying {command.command_type.value} to {instance_id} "
                    f"(attempt {attempt + 1}/{self.config.command_retry_limit})"
                )
                continue

            result.version = instance.version
            await self._after_commit(step)
            if isinstance(command, TimeTick):
                await self._after_tick(instance)
            return result

        raise ConflictError(
            f"Instance {instance_id} changed concurrently; command not applied",
            collection=Collections.WORKFLOW_INSTANCES,
            entity_id=instance_id,
        )

    def _result(self, step: _Step) -> CommandResult:
        return CommandResult(
            ok=True,
            command_id=step.command.command_id,
            instance_id=step.instance.instance_id,
            state=step.instance.status.value,
            version=step.instance.version,
            events=[e["kind"] for e in step.events],
            data=dict(step.data),
        )

    async def _prepare(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        command: WorkflowCommand,
    ) -> Dict[str, Any]:
        """Side effects that must happen once per command, before the state write."""
        if not isinstance(command, SignTask):
            return {}

        task = self._task(instance, command.task_id)
        self._check_sign(instance, definition, task, command)
        if not task.task_kind.needs_signature:
            return {}
        if command.submission is None:
            raise ValidationError(
                f"Task {task.task_id} requires a signature",
                code="SIGNATURE_REQUIRED",
            )
        if command.submission.signer_id not in (task.subject, task.email):
            raise ValidationError(
                f"Signature was produced for {command.submission.signer_id}, not {task.subject}",
                code="SIGNER_MISMATCH",
            )
        if self.composites is None:
            raise DependencyUnavailableError("No signature service configured", dependency="composites")

        document = await self.documents.get(instance.document_id)
        stage = definition.stage(task.stage_id)
        composite = await self.composites.create_composite(
            document.document_id,
            command.submission,
            expected_content_hash=document.sealed_hash or document.content_hash,
            task_id=task.task_id,
            require_timestamp=stage.require_timestamp and definition.settings.require_timestamp,
            require_qualified=task.certificate_level == CertificateLevel.QUALIFIED,
        )
        return {"composite": composite}

    # ------------------------------------------------------------------
    # After commit
    # ------------------------------------------------------------------

    async def _after_commit(self, step: _Step) -> None:
        instance = step.instance
        if step.document_status is not None:
            await self._sync_document(instance.document_id, step.document_status, instance)
        if step.composite is not None:
            await self._record_signature(step, step.composite)
        await self._append_audit(instance, step.events)
        if step.notifications:
            await self._deliver(instance.instance_id, [self._outbox_entry(n) for n in step.notifications])

    async def _after_tick(self, instance: WorkflowInstance) -> None:
        """Redeliver the outbox, flush stashed audit entries, retry timestamps."""
        if instance.outbox:
            await self._deliver(instance.instance_id, list(instance.outbox))
        if instance.pending_audit:
            await self._flush_pending_audit(instance.instance_id)
        if instance.is_terminal:
            await self._sync_document(instance.document_id, _DOCUMENT_STATUS[instance.status], instance)
        if self.composites is not None:
            await self._retry_document_timestamps(instance.document_id)

    async def _sync_document(
        self,
        document_id: str,
        status: DocumentStatus,
        instance: WorkflowInstance,
    ) -> None:
        try:
            await self.documents.transition(
                document_id,
                status,
                reason=instance.reason or f"workflow {instance.status.value}",
                instance_id=instance.instance_id,
                attempts=self.config.command_retry_limit,
            )
        except InvalidStateError as e:
            logger.error(f"Document {document_id} cannot follow instance {instance.instance_id}: {e.message}")
        except (ConflictError, DependencyUnavailableError) as e:
            logger.warning(f"Document {document_id} status update deferred: {e.message}")

    async def _record_signature(self, step: _Step, composite: CompositeSignature) -> None:
        task = step.instance.tasks[step.command.task_id]
        record = {
            "signature_id": f"sig_{composite.composite_id}",
            "task_id": task.task_id,
            "instance_id": step.instance.instance_id,
            "document_id": composite.document_id,
            "signer": task.subject,
            "signed_at": format_datetime(composite.signed_at),
            "certificate_fingerprint": composite.signer_fingerprint,
            "mfa_evidence": composite.mfa_evidence,
            "content_hash": composite.content_hash,
            "composite_id": composite.composite_id,
            "created_at": format_datetime(step.now),
        }
        result = await retry_unavailable(
            lambda: self.store.put(Collections.SIGNATURES, record["signature_id"], record, 0),
            self._delays,
            "signature write",
        )
        if result.conflict:
            logger.debug(f"Signature event {record['signature_id']} already recorded")

    async def _append_audit(self, instance: WorkflowInstance, events: List[Dict[str, Any]]) -> None:
        if self.audit is None or not events:
            return
        stream = document_stream(instance.document_id)
        for index, event in enumerate(events):
            try:
                await self.audit.append(
                    stream,
                    actor=event["actor"],
                    kind=event["kind"],
                    payload=event["payload"],
                    time=parse_datetime(event["time"]),
                )
            except (DependencyUnavailableError, ConflictError) as e:
                remaining = events[index:]
                logger.error(
                    f"Audit append for {instance.instance_id} failed, stashing {len(remaining)} entries: {e.message}"
                )

                def stash(current: WorkflowInstance) -> bool:
                    current.pending_audit.extend(remaining)
                    return True

                await self._update(instance.instance_id, stash)
                return

    async def _flush_pending_audit(self, instance_id: str) -> None:
        flushed: List[Dict[str, Any]] = []

        def take(current: WorkflowInstance) -> bool:
            flushed.clear()
            flushed.extend(current.pending_audit)
            current.pending_audit = []
            return bool(flushed)

        instance = await self._update(instance_id, take)
        if instance is not None and flushed:
            logger.info(f"Flushing {len(flushed)} stashed audit entries for {instance_id}")
            await self._append_audit(instance, flushed)

    @staticmethod
    def _outbox_entry(notification: Notification) -> Dict[str, Any]:
        entry = notification.to_dict()
        entry["attempts"] = 0
        return entry

    async def _deliver(self, instance_id: str, entries: List[Dict[str, Any]]) -> int:
        """Hand notifications to the notifier; accepted ones leave the outbox."""
        accepted, attempted = set(), set()
        for entry in entries:
            notification = Notification.from_dict(entry)
            try:
                status = await self.notifier.notify(notification)
            except DependencyUnavailableError as e:
                logger.warning(f"Notifier unavailable for {notification.recipient}: {e.message}")
                status = DeliveryStatus.DEFERRED
            attempted.add(notification.dedupe_key)
            if status == DeliveryStatus.ACCEPTED:
                accepted.add(notification.dedupe_key)
            else:
                logger.warning(
                    f"Notification {notification.kind.value} to {notification.recipient} "
                    f"{status.value}; will retry"
                )

        abandoned: List[Dict[str, Any]] = []

        def settle(current: WorkflowInstance) -> bool:
            abandoned.clear()
            remaining = []
            for entry in current.outbox:
                key = entry["dedupe_key"]
                if key in accepted:
                    continue
                if key in attempted:
                    entry["attempts"] = entry.get("attempts", 0) + 1
                    if entry["attempts"] >= MAX_DELIVERY_ATTEMPTS:
                        abandoned.append(entry)
                        continue
                remaining.append(entry)
            changed = remaining != current.outbox or bool(attempted - accepted)
            current.outbox = remaining
            return changed

        instance = await self._update(instance_id, settle)
        if instance is not None and abandoned:
            await self._append_audit(instance, [{
                "kind": AuditEventKind.NOTIFICATION_FAILED.value,
                "actor": "system",
                "payload": {
                    "instance_id": instance_id,
                    "recipient": entry["recipient"],
                    "notification": entry["kind"],
                    "task_id": entry.get("task_id"),
                    "attempts": entry["attempts"],
                },
                "time": format_datetime(self.clock.now()),
            } for entry in abandoned])
        return len(accepted)

    async def _retry_document_timestamps(self, document_id: str) -> None:
        for composite in await self.composites.list_for_document(document_id):
            if composite.status != CompositeStatus.AWAITING_TIMESTAMP:
                continue
            try:
                await self.composites.complete_pending(composite.composite_id)
            except TsaUnavailableError as e:
                logger.info(f"Composite {composite.composite_id} still awaiting a timestamp: {e.message}")

    # ------------------------------------------------------------------
    # Helpers shared by handlers
    # ------------------------------------------------------------------

    @staticmethod
    def _task(instance: WorkflowInstance, task_id: str) -> Task:
        task = instance.tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found", collection=Collections.WORKFLOW_INSTANCES, entity_id=task_id)
        return task

    @staticmethod
    def _require_running(instance: WorkflowInstance) -> None:
        if instance.status != InstanceStatus.RUNNING:
            raise InvalidStateError(
                f"Instance {instance.instance_id} is {instance.status.value}",
                entity="instance",
                state=instance.status.value,
            )

    def _check_task_action(self, instance: WorkflowInstance, task: Task, actor: str) -> None:
        self._require_running(instance)
        if actor not in (task.subject, task.email):
            raise UnauthorizedError(
                f"Task {task.task_id} is assigned to another participant",
                decision="deny",
                reason="not task assignee",
            )
        if not task.is_actionable or instance.stages[task.stage_id].status != StageStatus.ACTIVE:
            raise InvalidStateError(
                f"Task {task.task_id} is {task.status.value}",
                entity="task",
                state=task.status.value,
            )

    def _check_sign(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        task: Task,
        command: SignTask,
    ) -> None:
        self._check_task_action(instance, task, command.actor)
        stage = definition.stage(task.stage_id)
        mfa_required = task.require_mfa or (stage is not None and stage.require_mfa) or definition.settings.require_mfa
        if mfa_required and not command.evidence:
            raise ValidationError(
                f"Task {task.task_id} requires multi-factor authentication",
                code="MFA_REQUIRED",
            )

    def _predicate_holds(self, step: _Step, stage_id: str) -> bool:
        stage = step.definition.stage(stage_id)
        if stage is None or stage.condition is None:
            return True
        document = dict(step.document.attributes)
        document.update({
            "document_id": step.document.document_id,
            "title": step.document.title,
            "status": step.document.status.value,
        })
        context = AttributeContext({
            "document": document,
            "workflow": {
                "instance_id": step.instance.instance_id,
                "definition_id": step.definition.definition_id,
                "type": step.definition.workflow_type.value,
                "participants": len(step.definition.participants),
                "created_by": step.instance.created_by,
            },
            "stages": {s.stage_id: s.status.value for s in step.instance.stages.values()},
        })
        return stage.condition.evaluate(context)

    def _invite(self, step: _Step, task: Task, deadline: Optional[datetime]) -> None:
        task.status = TaskStatus.INVITED
        task.invited_at = step.now
        task.deadline = deadline
        step.emit(
            AuditEventKind.INVITED,
            actor="system",
            task_id=task.task_id,
            stage_id=task.stage_id,
            participant=task.subject,
            deadline=format_datetime(deadline),
        )
        step.notify(
            task.email,
            NotificationKind.INVITATION,
            stage_id=task.stage_id,
            task_id=task.task_id,
            task_kind=task.task_kind.value,
            deadline=format_datetime(deadline),
        )

    def _activate(self, step: _Step, stage_id: str) -> None:
        state = step.instance.stages[stage_id]
        if not self._predicate_holds(step, stage_id):
            state.status = StageStatus.SKIPPED
            state.finished_at = step.now
            state.reason = "condition not met"
            for task in step.instance.tasks_in(stage_id):
                if task.is_open:
                    task.status = TaskStatus.CANCELLED
                    task.reason = "stage skipped"
            step.emit(AuditEventKind.STAGE_SKIPPED, actor="system", stage_id=stage_id)
            return

        stage = step.definition.stage(stage_id)
        days = stage.deadline_days if stage.deadline_days is not None else step.definition.settings.deadline_days
        state.status = StageStatus.ACTIVE
        state.activated_at = step.now
        state.deadline = step.now + timedelta(days=days)
        step.emit(
            AuditEventKind.STAGE_ACTIVATED,
            actor="system",
            stage_id=stage_id,
            deadline=format_datetime(state.deadline),
        )
        for task in step.instance.tasks_in(stage_id):
            if task.status == TaskStatus.PENDING:
                self._invite(step, task, state.deadline)

    @staticmethod
    def _failing_task(instance: WorkflowInstance, stage_id: str) -> Optional[Task]:
        """A required task that declined or expired, if any."""
        for task in instance.tasks_in(stage_id):
            if task.required and task.status in (TaskStatus.DECLINED, TaskStatus.EXPIRED):
                return task
        return None

    @staticmethod
    def _stage_done(instance: WorkflowInstance, stage_id: str) -> bool:
        tasks = [t for t in instance.tasks_in(stage_id) if t.status != TaskStatus.DELEGATED]
        required = [t for t in tasks if t.required]
        if required:
            return all(t.status == TaskStatus.SIGNED for t in required)
        return all(not t.is_open for t in tasks)

    def _advance(self, step: _Step) -> None:
        """Propagate stage completion through the graph until nothing changes."""
        instance = step.instance
        changed = True
        while changed and instance.status == InstanceStatus.RUNNING:
            changed = False
            for stage in step.definition.stages:
                state = instance.stages[stage.stage_id]
                if state.status != StageStatus.ACTIVE:
                    continue
                failed_by = self._failing_task(instance, stage.stage_id)
                if failed_by is not None:
                    status = (
                        InstanceStatus.DECLINED
                        if failed_by.status == TaskStatus.DECLINED
                        else InstanceStatus.EXPIRED
                    )
                    self._terminate(step, status, failed_by.reason or status.value, failed_stage=stage.stage_id)
                    return
                if self._stage_done(instance, stage.stage_id):
                    state.status = StageStatus.DONE
                    state.finished_at = step.now
                    for task in instance.tasks_in(stage.stage_id):
                        if task.is_open:
                            task.status = TaskStatus.CANCELLED
                            task.reason = "stage completed"
                    step.emit(AuditEventKind.STAGE_DONE, actor="system", stage_id=stage.stage_id)
                    changed = True

            for stage in step.definition.stages:
                state = instance.stages[stage.stage_id]
                if state.status == StageStatus.BLOCKED and all(
                    instance.stages[d].status in SATISFIED_STAGE_STATUSES for d in stage.depends_on
                ):
                    state.status = StageStatus.READY
                    changed = True
                if state.status == StageStatus.READY and stage.auto_start and instance.started_at:
                    self._activate(step, stage.stage_id)
                    changed = True

        if instance.status == InstanceStatus.RUNNING and all(
            s.status in SATISFIED_STAGE_STATUSES for s in instance.stages.values()
        ):
            self._complete(step)

    def _complete(self, step: _Step) -> None:
        instance = step.instance
        instance.status = InstanceStatus.COMPLETED
        instance.finished_at = step.now
        step.document_status = DocumentStatus.COMPLETED
        step.emit(
            AuditEventKind.COMPLETED,
            actor="system",
            signed_tasks=sorted(t.task_id for t in instance.tasks.values() if t.status == TaskStatus.SIGNED),
        )
        recipients = {instance.created_by}
        recipients.update(t.email for t in instance.tasks.values() if t.status == TaskStatus.SIGNED)
        for recipient in sorted(recipients):
            step.notify(recipient, NotificationKind.COMPLETION)
        logger.info(f"Workflow instance {instance.instance_id} completed")

    def _terminate(
        self,
        step: _Step,
        status: InstanceStatus,
        reason: str,
        failed_stage: Optional[str] = None,
    ) -> None:
        """Close the instance: fail active stages and cancel open tasks."""
        instance = step.instance
        for state in instance.stages.values():
            if state.status == StageStatus.ACTIVE or state.stage_id == failed_stage:
                state.status = StageStatus.FAILED
                state.finished_at = step.now
                state.reason = reason if state.stage_id == failed_stage else f"instance {status.value}"
                step.emit(AuditEventKind.STAGE_FAILED, actor="system", stage_id=state.stage_id, reason=state.reason)

        notify_kind = {
            InstanceStatus.DECLINED: NotificationKind.DECLINE,
            InstanceStatus.VOIDED: NotificationKind.VOID,
        }.get(status)
        recipients = set()
        for task in instance.tasks.values():
            if task.status in (TaskStatus.INVITED, TaskStatus.VIEWED, TaskStatus.SIGNED):
                recipients.add(task.email)
            if task.is_open:
                task.status = TaskStatus.CANCELLED
                task.reason = f"instance {status.value}"
                step.emit(AuditEventKind.CANCELLED, actor="system", task_id=task.task_id)

        instance.status = status
        instance.finished_at = step.now
        instance.reason = reason
        step.document_status = _DOCUMENT_STATUS[status]
        if notify_kind is not None:
            recipients.add(instance.created_by)
            for recipient in sorted(recipients):
                step.notify(recipient, notify_kind, reason=reason)
        logger.info(f"Workflow instance {instance.instance_id} {status.value}: {reason}")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _start(self, step: _Step, prepared: Dict[str, Any]) -> None:
        instance = step.instance
        command: StartStage = step.command
        self._require_running(instance)
        if command.stage_id is not None:
            state = instance.stages.get(command.stage_id)
            if state is None:
                raise NotFoundError(f"Stage {command.stage_id} not found", entity_id=command.stage_id)
            if state.status != StageStatus.READY:
                raise InvalidStateError(
                    f"Stage {command.stage_id} is {state.status.value}",
                    entity="stage",
                    state=state.status.value,
                )
            targets = [command.stage_id]
        else:
            targets = [
                s.stage_id for s in step.definition.stages
                if s.auto_start and instance.stages[s.stage_id].status == StageStatus.READY
            ]
            if not targets:
                raise InvalidStateError(
                    f"Instance {instance.instance_id} has no stage ready to start",
                    entity="instance",
                    state=instance.status.value,
                )

        if instance.started_at is None:
            instance.started_at = step.now
            step.emit(AuditEventKind.STARTED, stages=targets)
        for stage_id in targets:
            self._activate(step, stage_id)
        step.data["activated"] = [s for s in targets if instance.stages[s].status == StageStatus.ACTIVE]
        self._advance(step)

    def _view(self, step: _Step, prepared: Dict[str, Any]) -> None:
        task = self._task(step.instance, step.command.task_id)
        self._check_task_action(step.instance, task, step.command.actor)
        if task.status == TaskStatus.VIEWED:
            return
        task.status = TaskStatus.VIEWED
        task.viewed_at = step.now
        step.emit(AuditEventKind.VIEWED, task_id=task.task_id, stage_id=task.stage_id)

    def _sign(self, step: _Step, prepared: Dict[str, Any]) -> None:
        command: SignTask = step.command
        task = self._task(step.instance, command.task_id)
        self._check_sign(step.instance, step.definition, task, command)

        composite: Optional[CompositeSignature] = prepared.get("composite")
        task.status = TaskStatus.SIGNED
        task.completed_at = step.now
        payload: Dict[str, Any] = {
            "task_id": task.task_id,
            "stage_id": task.stage_id,
            "task_kind": task.task_kind.value,
            "mfa": bool(command.evidence),
        }
        if composite is not None:
            task.composite_id = composite.composite_id
            payload.update({
                "composite_id": composite.composite_id,
                "composite_status": composite.status.value,
                "content_hash": composite.content_hash,
                "provider": composite.provider_id,
                "qualified": composite.qualified,
            })
            step.data.update({
                "composite_id": composite.composite_id,
                "composite_status": composite.status.value,
            })
            step.composite = composite
        step.emit(AuditEventKind.SIGNED, **payload)
        step.data["task_id"] = task.task_id
        self._advance(step)

    def _decline(self, step: _Step, prepared: Dict[str, Any]) -> None:
        command: DeclineTask = step.command
        task = self._task(step.instance, command.task_id)
        self._check_task_action(step.instance, task, command.actor)
        task.status = TaskStatus.DECLINED
        task.completed_at = step.now
        task.reason = command.reason or "declined"
        step.emit(AuditEventKind.DECLINED, task_id=task.task_id, stage_id=task.stage_id, reason=task.reason)
        self._advance(step)

    def _delegate(self, step: _Step, prepared: Dict[str, Any]) -> None:
        command: DelegateTask = step.command
        instance = step.instance
        task = self._task(instance, command.task_id)
        self._check_task_action(instance, task, command.actor)
        stage = step.definition.stage(task.stage_id)
        if not (stage.allow_delegation or step.definition.settings.allow_delegation):
            raise ValidationError(
                f"Delegation is not allowed in stage {task.stage_id}",
                code="DELEGATION_NOT_ALLOWED",
            )
        email = command.new_email.strip().lower()
        for other in instance.tasks_in(task.stage_id):
            if other.email.lower() == email and other.status != TaskStatus.DELEGATED:
                raise ValidationError(
                    f"{command.new_email} already has a task in stage {task.stage_id}",
                    code="DUPLICATE_PARTICIPANT",
                )

        subject = command.delegate_subject
        new_task_id = f"{task.stage_id}:{subject}"
        suffix = 1
        while new_task_id in instance.tasks:
            suffix += 1
            new_task_id = f"{task.stage_id}:{subject}#{suffix}"
        replacement = Task(
            task_id=new_task_id,
            stage_id=task.stage_id,
            participant_id=subject,
            subject=subject,
            email=command.new_email,
            task_kind=task.task_kind,
            required=task.required,
            require_mfa=task.require_mfa,
            certificate_level=task.certificate_level,
            delegated_from=task.task_id,
        )

        task.status = TaskStatus.DELEGATED
        task.delegated_to = new_task_id
        task.completed_at = step.now
        task.reason = command.reason or None
        instance.tasks[new_task_id] = replacement
        instance.stages[task.stage_id].task_ids.append(new_task_id)
        step.emit(
            AuditEventKind.DELEGATED,
            task_id=task.task_id,
            new_task_id=new_task_id,
            delegate=subject,
            reason=command.reason,
        )
        self._invite(step, replacement, task.deadline)
        step.data.update({"task_id": new_task_id, "delegate": subject})

    def _void(self, step: _Step, prepared: Dict[str, Any]) -> None:
        command: VoidInstance = step.command
        self._require_running(step.instance)
        reason = command.reason or "voided"
        self._terminate(step, InstanceStatus.VOIDED, reason)
        step.emit(AuditEventKind.VOIDED, reason=reason)

    def _tick(self, step: _Step, prepared: Dict[str, Any]) -> None:
        """
        Deadline, reminder and escalation pass.

        Everything it does is recorded on the tasks (status, reminder cycle,
        escalation flag), so the same tick delivered twice acts once.

        Expiry is checked first: with ``enable_deadlines`` an overdue task
        expires as soon as its deadline passes, so escalation at
        ``deadline + escalation_delay_hours`` only fires for definitions
        that disable deadlines.
        """
        instance = step.instance
        if instance.status != InstanceStatus.RUNNING:
            return
        settings = step.definition.settings
        interval = timedelta(hours=settings.reminder_interval_hours)
        escalation_delay = timedelta(hours=settings.escalation_delay_hours)
        expired = False

        for state in instance.stages.values():
            if state.status != StageStatus.ACTIVE:
                continue
            for task in instance.tasks_in(state.stage_id):
                if not task.is_actionable:
                    continue
                if settings.enable_deadlines and task.deadline is not None and step.now > task.deadline:
                    task.status = TaskStatus.EXPIRED
                    task.completed_at = step.now
                    task.reason = "deadline elapsed"
                    step.emit(
                        AuditEventKind.EXPIRED,
                        actor="system",
                        task_id=task.task_id,
                        deadline=format_datetime(task.deadline),
                    )
                    expired = True
                    continue

                if settings.enable_reminders and task.invited_at is not None:
                    cycle = math.floor((step.now - task.invited_at) / interval)
                    if cycle >= 1 and cycle > task.reminders_sent:
                        task.reminders_sent = cycle
                        step.notify(
                            task.email,
                            NotificationKind.REMINDER,
                            stage_id=task.stage_id,
                            task_id=task.task_id,
                            cycle_no=cycle,
                            deadline=format_datetime(task.deadline),
                        )
                        step.emit(AuditEventKind.REMINDER_SENT, actor="system", task_id=task.task_id, cycle=cycle)

                if (
                    settings.enable_escalation
                    and not task.escalated
                    and task.deadline is not None
                    and step.now >= task.deadline + escalation_delay
                ):
                    task.escalated = True
                    step.notify(
                        instance.created_by,
                        NotificationKind.ESCALATION,
                        stage_id=task.stage_id,
                        task_id=task.task_id,
                        participant=task.subject,
                        deadline=format_datetime(task.deadline),
                    )
                    step.emit(
                        AuditEventKind.ESCALATED,
                        actor="system",
                        task_id=task.task_id,
                        escalated_to=instance.created_by,
                    )

        if expired:
            self._advance(step)

    # ------------------------------------------------------------------
    # Queries and background passes
    # ------------------------------------------------------------------

    async def query_instance(self, instance_id: str) -> Dict[str, Any]:
        return (await self.get_instance(instance_id)).to_view()

    async def list_instances(
        self,
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
        order: str = "-created_at",
        limit: Optional[int] = None,
    ) -> List[WorkflowInstance]:
        records = await retry_unavailable(
            lambda: self.store.list(Collections.WORKFLOW_INSTANCES, predicate=predicate, order=order, limit=limit),
            self._delays,
            "instance read",
        )
        return [WorkflowInstance.from_record(r.data, r.version) for r in records]

    async def list_user_workflows(
        self,
        subject: str,
        status: Optional[InstanceStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Instances the subject created or takes part in, newest first."""

        def involves(data: Dict[str, Any]) -> bool:
            if status is not None and data.get("status") != status.value:
                return False
            if data.get("created_by") == subject:
                return True
            return any(
                t.get("subject") == subject or t.get("email") == subject
                for t in data.get("tasks", {}).values()
            )

        instances = await self.list_instances(involves, limit=limit)
        return [
            {
                "instance_id": i.instance_id,
                "document_id": i.document_id,
                "definition_id": i.definition_id,
                "status": i.status.value,
                "role": "creator" if i.created_by == subject else "participant",
                "created_at": format_datetime(i.created_at),
                "expected_completion": format_datetime(i.expected_completion),
            }
            for i in instances
        ]

    async def list_pending_tasks(self, subject: str) -> List[Dict[str, Any]]:
        """Invited or viewed tasks awaiting ``subject``, earliest deadline first."""
        instances = await self.list_instances(
            lambda d: d.get("status") == InstanceStatus.RUNNING.value, order="created_at"
        )
        pending = []
        for instance in instances:
            for task in instance.tasks_for(subject):
                if task.is_actionable and instance.stages[task.stage_id].status == StageStatus.ACTIVE:
                    pending.append({
                        "instance_id": instance.instance_id,
                        "document_id": instance.document_id,
                        "task_id": task.task_id,
                        "stage_id": task.stage_id,
                        "task_kind": task.task_kind.value,
                        "status": task.status.value,
                        "deadline": task.deadline,
                        "invited_at": task.invited_at,
                    })
        pending.sort(key=lambda p: (p["deadline"] is None, p["deadline"] or p["invited_at"]))
        for item in pending:
            item["deadline"] = format_datetime(item["deadline"])
            item["invited_at"] = format_datetime(item["invited_at"])
        return pending

    async def tick_all(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Send a TimeTick to every instance that still has work to do."""
        now = now or self.clock.now()

        def has_work(data: Dict[str, Any]) -> bool:
            return (
                data.get("status") == InstanceStatus.RUNNING.value
                or bool(data.get("outbox"))
                or bool(data.get("pending_audit"))
            )

        instances = await self.list_instances(has_work, order="created_at")
        summary: Dict[str, Any] = {"instances": len(instances), "events": 0, "failures": []}
        for instance in instances:
            result = await self.submit_command(
                instance.instance_id,
                TimeTick(now=now, command_id=f"tick:{format_datetime(now)}"),
            )
            if result.ok:
                summary["events"] += len(result.events)
            else:
                summary["failures"].append({"instance_id": instance.instance_id, "error": result.error})
        if self.composites is not None:
            summary["timestamps"] = await self.retry_pending_timestamps()
        logger.info(f"Tick at {format_datetime(now)}: {summary['instances']} instances, {summary['events']} events")
        return summary

    async def retry_pending_timestamps(self, limit: Optional[int] = None) -> Dict[str, Any]:
        if self.composites is None:
            return {"completed": [], "pending": []}
        return await self.composites.retry_pending(limit)


_DOCUMENT_STATUS = {
    InstanceStatus.COMPLETED: DocumentStatus.COMPLETED,
    InstanceStatus.DECLINED: DocumentStatus.DECLINED,
    InstanceStatus.VOIDED: DocumentStatus.VOIDED,
    InstanceStatus.EXPIRED: DocumentStatus.EXPIRED,
}
