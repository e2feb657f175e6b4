"""
Countersign Core Engine

Facade wiring the ports and services together and exposing the workflow
command API. Every caller-initiated command passes an authorization gate
before it reaches the workflow runtime.
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from ..audit import AuditEntry, AuditEventKind, AuditLog, ChainVerification, document_stream
from ..authz import (
    AuthorizationDecision,
    AuthorizationRequest,
    AuthorizationService,
    IdentityProvider,
    Permissions,
    StoreIdentityProvider,
)
from ..crypto import TrustStore, sha256_hex
from ..notifier import LoggingNotifier, Notifier
from ..persistence import Store, create_store
from ..timestamping import (
    CompositeService,
    CompositeSignature,
    CompositeVerification,
    LongTermValidator,
    OcspCrlRevocationChecker,
    RevocationChecker,
    ValidationReport,
)
from ..tsa import (
    FailoverTimestampClient,
    HttpTimestampAuthorityClient,
    TimestampAuthorityClient,
    TSAProvider,
)
from ..workflow import (
    CommandResult,
    CommandType,
    DefinitionRegistry,
    DefinitionResult,
    InstanceStatus,
    WorkflowCommand,
    WorkflowRuntime,
    parse_command,
)
from .clock import Clock, SystemClock
from .config import Config, TimestampConfig
from .document import Document, DocumentRepository, DocumentStatus
from .exceptions import CountersignError, InvalidStateError, UnauthorizedError, ValidationError

logger = logging.getLogger(__name__)


# Permission checked before a command reaches the runtime; ticks are internal.
COMMAND_PERMISSIONS = {
    CommandType.START: Permissions.DOCUMENT_SEND,
    CommandType.VIEW: Permissions.DOCUMENT_READ,
    CommandType.SIGN: Permissions.DOCUMENT_SIGN,
    CommandType.DECLINE: Permissions.DOCUMENT_SIGN,
    CommandType.DELEGATE: Permissions.DOCUMENT_SIGN,
    CommandType.VOID: Permissions.DOCUMENT_VOID,
}


class EngineState(Enum):
    """Engine operational states."""
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class EngineMetrics:
    """Engine counters."""
    documents_created: int = 0
    instances_created: int = 0
    commands_submitted: int = 0
    commands_failed: int = 0
    conflicts: int = 0
    authorization_denials: int = 0
    ticks: int = 0
    uptime_seconds: float = 0.0


def build_tsa_clients(config: TimestampConfig) -> List[TimestampAuthorityClient]:
    """One HTTP client per enabled provider, in declared order."""
    return [
        HttpTimestampAuthorityClient(
            TSAProvider.from_config(provider),
            timeout=config.attempt_timeout_seconds,
        )
        for provider in config.providers
        if provider.enabled
    ]


class Countersign:
    """
    Main Countersign engine.

    Coordinates:
    - Persistence and the hash-chained audit log
    - Fine-grained authorization
    - Workflow definitions and the instance runtime
    - Signature composites, TSA failover and long-term validation

    Ports not supplied to the constructor are built from ``config`` in
    :meth:`start`.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[Store] = None,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        tsa_clients: Optional[Sequence[TimestampAuthorityClient]] = None,
        trust_store: Optional[TrustStore] = None,
        revocation: Optional[RevocationChecker] = None,
        identity_provider: Optional[IdentityProvider] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Configuration object. Uses defaults if not provided.
            store: Persistence port; built from ``config.persistence`` if omitted
            clock: Time source; the system clock if omitted
            notifier: Notification port; logs notifications if omitted
            tsa_clients: Timestamp authorities in failover order
            trust_store: Trust anchors for chain validation
            revocation: OCSP/CRL checker for long-term validation
            identity_provider: Subject attribute directory for authorization
        """
        self.config = config or Config()
        self.clock = clock or SystemClock()
        self.state = EngineState.INITIALIZING
        self.start_time: Optional[datetime] = None
        self.metrics = EngineMetrics()

        self._store = store
        self._notifier = notifier or LoggingNotifier()
        self._tsa_clients = list(tsa_clients) if tsa_clients else None
        self._trust_store = trust_store
        self._revocation = revocation
        self._identity_provider = identity_provider

        # Subsystem references (initialized in start())
        self.store: Optional[Store] = None
        self.audit: Optional[AuditLog] = None
        self.documents: Optional[DocumentRepository] = None
        self.authz: Optional[AuthorizationService] = None
        self.tsa: Optional[FailoverTimestampClient] = None
        self.trust_store: Optional[TrustStore] = None
        self.composites: Optional[CompositeService] = None
        self.revocation: Optional[RevocationChecker] = None
        self.validator: Optional[LongTermValidator] = None
        self.registry: Optional[DefinitionRegistry] = None
        self.runtime: Optional[WorkflowRuntime] = None

        logger.info("Countersign engine initialized")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the engine and all subsystems."""
        logger.info("Starting Countersign engine...")

        try:
            await self._initialize_subsystems()
            self.state = EngineState.READY
            self.start_time = self.clock.now()
            logger.info("Countersign engine started successfully")

        except Exception as e:
            self.state = EngineState.ERROR
            logger.error(f"Failed to start engine: {e}")
            raise CountersignError(f"Engine start failed: {e}", code="ENGINE_START_FAILED") from e

    async def stop(self) -> None:
        """Stop the engine gracefully."""
        logger.info("Stopping Countersign engine...")
        self.state = EngineState.SHUTTING_DOWN
        await self._shutdown_subsystems()
        self.state = EngineState.STOPPED
        logger.info("Countersign engine stopped")

    async def __aenter__(self) -> "Countersign":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def _initialize_subsystems(self) -> None:
        """Build subsystems in dependency order."""
        errors = self.config.validate()
        if errors:
            raise ValidationError("Invalid configuration", errors=errors, code="INVALID_CONFIG")

        delays = self.config.persistence.retry_delays_ms
        self.store = self._store or create_store(self.config.persistence, self.clock)
        self.audit = AuditLog(
            self.store,
            self.clock,
            hmac_key=self.config.audit.resolve_key(),
            genesis_label=self.config.audit.genesis_label,
            retry_limit=self.config.audit.append_retry_limit,
            retry_delays_ms=delays,
        )
        self.documents = DocumentRepository(self.store, self.clock, delays)

        self.authz = AuthorizationService(
            self.store,
            self.clock,
            config=self.config.authz,
            identity_provider=self._identity_provider or StoreIdentityProvider(self.store),
            audit=self.audit,
            retry_delays_ms=delays,
        )
        if self.config.authz.install_default_policies:
            await self.authz.install_default_policies()

        self.trust_store = self._trust_store or TrustStore()
        for path in self.config.validation.trust_anchor_paths:
            self.trust_store.load_pem_file(path)

        self.tsa = FailoverTimestampClient(
            self._tsa_clients or build_tsa_clients(self.config.timestamp),
            attempt_timeout=self.config.timestamp.attempt_timeout_seconds,
            attempts_per_provider=self.config.timestamp.attempts_per_provider,
        )
        await self.tsa.start()
        self.composites = CompositeService(
            self.store,
            self.clock,
            self.tsa,
            self.trust_store,
            config=self.config.timestamp,
            audit=self.audit,
            retry_delays_ms=delays,
        )

        self.revocation = self._revocation or OcspCrlRevocationChecker(
            ocsp_timeout=self.config.validation.ocsp_timeout_seconds,
            crl_timeout=self.config.validation.crl_timeout_seconds,
        )
        if hasattr(self.revocation, "start"):
            await self.revocation.start()
        self.validator = LongTermValidator(
            self.store,
            self.clock,
            self.composites,
            self.revocation,
            self.trust_store,
            config=self.config.validation,
            audit=self.audit,
            retry_delays_ms=delays,
        )

        self.registry = DefinitionRegistry(
            self.store,
            self.clock,
            config=self.config.workflow,
            audit=self.audit,
            retry_delays_ms=delays,
        )
        if hasattr(self._notifier, "start"):
            await self._notifier.start()
        self.runtime = WorkflowRuntime(
            self.store,
            self.clock,
            self.registry,
            self.documents,
            self._notifier,
            audit=self.audit,
            composites=self.composites,
            config=self.config.workflow,
            retry_delays_ms=delays,
        )

    async def _shutdown_subsystems(self) -> None:
        """Shutdown all subsystems gracefully."""
        subsystems = [self.tsa, self.revocation, self._notifier]

        for subsystem in subsystems:
            if subsystem is not None and hasattr(subsystem, "stop"):
                try:
                    await subsystem.stop()
                except Exception as e:
                    logger.error(f"Error stopping subsystem {type(subsystem).__name__}: {e}")

        if self.store is not None:
            await self.store.close()

    def _require_ready(self) -> None:
        if self.state != EngineState.READY:
            raise InvalidStateError(
                f"Engine is {self.state.value}, not ready",
                entity="engine",
                state=self.state.value,
            )

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def authorize(self, request: AuthorizationRequest) -> AuthorizationDecision:
        """Evaluate one request against the current policy set."""
        self._require_ready()
        return await self.authz.authorize(request)

    async def _require(
        self,
        subject: str,
        action: str,
        document: Document,
        env_attrs: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuthorizationDecision]:
        """
        Gate ``action`` on ``document``.

        Raises:
            UnauthorizedError: Deny or Indeterminate while enforcement is on
        """
        if not self.config.authz.enforce:
            return None
        decision = await self.authz.authorize(AuthorizationRequest(
            subject=subject,
            action=action,
            resource=document.document_id,
            resource_attrs=dict(document.attributes),
            env_attrs=env_attrs or {},
        ))
        if not decision.allowed:
            self.metrics.authorization_denials += 1
            raise UnauthorizedError(
                f"{subject} may not {action} on {document.document_id}",
                decision=decision.decision.value,
                reason=decision.reason,
                request_id=decision.request_id,
            )
        return decision

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def create_document(
        self,
        title: str,
        created_by: str,
        content: Optional[bytes] = None,
        content_hash: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Document:
        """
        Create a Draft document and make ``created_by`` its owner.

        Args:
            title: Display title
            created_by: Subject creating the document
            content: Raw content; hashed with SHA-256 when given
            content_hash: Precomputed hash when content is held elsewhere
            attributes: Resource attributes used by ABAC policies

        Returns:
            The stored Document
        """
        self._require_ready()
        document = await self.documents.create(
            title,
            created_by,
            content=content,
            content_hash=content_hash,
            attributes=attributes,
        )
        await self.authz.add_document_owner(document.document_id, created_by)
        self.metrics.documents_created += 1
        return document

    async def get_document(self, document_id: str, actor: Optional[str] = None) -> Document:
        self._require_ready()
        document = await self.documents.get(document_id)
        if actor is not None:
            await self._require(actor, Permissions.DOCUMENT_READ, document)
        return document

    async def update_document(self, document_id: str, actor: str, content: bytes) -> Document:
        """Replace the content of a Draft document; content is sealed once it goes out."""
        self._require_ready()
        document = await self.documents.get(document_id)
        await self._require(actor, Permissions.DOCUMENT_UPDATE, document)
        document.update_content(sha256_hex(content), self.clock.now())
        return await self.documents.save(document)

    async def void_document(self, document_id: str, actor: str, reason: str = "") -> Document:
        """
        Void a Draft document. Documents already out for signature are
        voided through their workflow instance instead.

        Raises:
            UnauthorizedError: actor lacks document:void
            InvalidStateError: document is not a Draft
        """
        self._require_ready()
        document = await self.documents.get(document_id)
        await self._require(actor, Permissions.DOCUMENT_VOID, document)
        if document.status != DocumentStatus.DRAFT:
            raise InvalidStateError(
                f"Document {document_id} is {document.status.value}; void its workflow instead",
                entity="document",
                state=document.status.value,
            )
        document = await self.documents.transition(document_id, DocumentStatus.VOIDED, reason=reason or "voided")
        await self.audit.append(
            document_stream(document_id),
            actor,
            AuditEventKind.VOIDED,
            {"document_id": document_id, "reason": reason},
        )
        return document

    async def audit_trail(self, document_id: str, actor: Optional[str] = None) -> List[AuditEntry]:
        """Audit entries of one document, oldest first."""
        self._require_ready()
        if actor is not None:
            await self._require(actor, Permissions.DOCUMENT_AUDIT, await self.documents.get(document_id))
        return await self.audit.entries(document_stream(document_id))

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def create_definition(self, definition: Any, created_by: str = "system") -> DefinitionResult:
        """Validate and store a workflow definition; errors are returned, not raised."""
        self._require_ready()
        return await self.registry.create(definition, created_by)

    async def revise_definition(
        self,
        definition_id: str,
        changes: Dict[str, Any],
        created_by: str = "system",
    ) -> DefinitionResult:
        """New definition derived from ``definition_id``; running instances keep the old one."""
        self._require_ready()
        return await self.registry.revise(definition_id, changes, created_by)

    async def create_instance(
        self,
        definition_id: str,
        document_id: str,
        actor: str = "system",
    ) -> CommandResult:
        """
        Create a workflow instance for a Draft document.

        Participants receive the signer relation on the document so that
        the authorization gate admits their task commands.
        """
        self._require_ready()
        try:
            document = await self.documents.get(document_id)
            await self._require(actor, Permissions.DOCUMENT_SEND, document)
        except CountersignError as e:
            return self._failed(CommandResult.failure(e))

        result = await self.runtime.create_instance(definition_id, document_id, created_by=actor)
        if not result.ok:
            return self._failed(result)

        instance = await self.runtime.get_instance(result.instance_id)
        for subject in sorted({task.subject for task in instance.tasks.values()}):
            await self.authz.add_document_signer(document_id, subject)
        self.metrics.instances_created += 1
        return result

    async def submit_command(
        self,
        instance_id: str,
        command: Union[WorkflowCommand, Dict[str, Any]],
    ) -> CommandResult:
        """
        Authorize and apply one command to an instance.

        Args:
            instance_id: Target instance
            command: A WorkflowCommand or its JSON form

        Returns:
            CommandResult; failures carry the user-facing error dict
        """
        self._require_ready()
        self.metrics.commands_submitted += 1
        try:
            if isinstance(command, dict):
                command = parse_command(command)
            instance = await self.runtime.get_instance(instance_id)
            action = COMMAND_PERMISSIONS.get(command.command_type)
            if action is not None:
                document = await self.documents.get(instance.document_id)
                await self._require(command.actor, action, document)
        except CountersignError as e:
            return self._failed(CommandResult.failure(
                e,
                command_id=getattr(command, "command_id", None),
                instance_id=instance_id,
            ))

        result = await self.runtime.submit_command(instance_id, command)
        if not result.ok:
            return self._failed(result)

        if command.command_type == CommandType.DELEGATE and result.data.get("delegate"):
            await self.authz.add_document_signer(instance.document_id, result.data["delegate"])
        return result

    async def query_instance(self, instance_id: str, actor: Optional[str] = None) -> Dict[str, Any]:
        """Read-only view of an instance."""
        self._require_ready()
        if actor is not None:
            instance = await self.runtime.get_instance(instance_id)
            await self._require(actor, Permissions.DOCUMENT_READ, await self.documents.get(instance.document_id))
        return await self.runtime.query_instance(instance_id)

    async def list_user_workflows(
        self,
        subject: str,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        self._require_ready()
        return await self.runtime.list_user_workflows(
            subject,
            status=InstanceStatus(status) if status else None,
            limit=limit,
        )

    async def list_pending_tasks(self, subject: str) -> List[Dict[str, Any]]:
        self._require_ready()
        return await self.runtime.list_pending_tasks(subject)

    async def tick(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Evaluate deadlines, reminders and deferred work across instances."""
        self._require_ready()
        self.metrics.ticks += 1
        return await self.runtime.tick_all(now)

    def _failed(self, result: CommandResult) -> CommandResult:
        self.metrics.commands_failed += 1
        if result.conflict:
            self.metrics.conflicts += 1
        return result

    # ------------------------------------------------------------------
    # Composites & validation
    # ------------------------------------------------------------------

    async def get_composite(self, composite_id: str) -> CompositeSignature:
        self._require_ready()
        return await self.composites.get(composite_id)

    async def verify_composite(
        self,
        composite: Union[str, CompositeSignature],
        document_content: Optional[bytes] = None,
    ) -> CompositeVerification:
        """Offline verification of a composite against document content."""
        self._require_ready()
        if isinstance(composite, str):
            composite = await self.composites.get(composite)
        return self.composites.verify_composite(composite, document_content=document_content)

    async def run_long_term_validation(self, now: Optional[datetime] = None) -> List[ValidationReport]:
        """Validate every composite whose scan is due."""
        self._require_ready()
        reports = await self.validator.run_due(now)
        logger.info(f"Long-term validation produced {len(reports)} reports")
        return reports

    async def verify_audit(self, stream_id: str) -> ChainVerification:
        self._require_ready()
        return await self.audit.verify(stream_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        if self.start_time is not None:
            self.metrics.uptime_seconds = (self.clock.now() - self.start_time).total_seconds()
        return asdict(self.metrics)

    def get_status(self) -> Dict[str, Any]:
        status = {
            "state": self.state.value,
            "metrics": self.get_metrics(),
        }
        if self.tsa is not None:
            status["tsa"] = self.tsa.provider_stats()
        if self.authz is not None:
            status["authz"] = self.authz.statistics()
        return status
