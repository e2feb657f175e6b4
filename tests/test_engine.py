"""
Tests for the Countersign engine facade
"""

import pytest

from countersign.authz import AuthorizationRequest, Permissions
from countersign.core import Config
from countersign.core.document import DocumentStatus
from countersign.core.engine import EngineState, build_tsa_clients
from countersign.core.exceptions import CountersignError, InvalidStateError, UnauthorizedError
from countersign.crypto import sha256_hex
from countersign.tsa import HttpTimestampAuthorityClient
from countersign.workflow import StartStage

from conftest import CONTENT


class TestLifecycle:
    """Tests for starting and stopping the engine."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_engine):
        """The engine moves through its states."""
        engine = make_engine()
        assert engine.state == EngineState.INITIALIZING

        async with engine:
            assert engine.state == EngineState.READY
            assert engine.get_status()["state"] == "ready"

        assert engine.state == EngineState.STOPPED

    @pytest.mark.asyncio
    async def test_not_ready(self, make_engine):
        """Operations before start are refused."""
        engine = make_engine()

        with pytest.raises(InvalidStateError):
            await engine.create_document("Draft", "alice", content=CONTENT)

    @pytest.mark.asyncio
    async def test_invalid_config(self, make_engine):
        """Configuration errors fail the start."""
        engine = make_engine(config=Config.from_dict({"workflow": {"default_deadline_days": 0}}))

        with pytest.raises(CountersignError) as exc_info:
            await engine.start()

        assert exc_info.value.code == "ENGINE_START_FAILED"
        assert engine.state == EngineState.ERROR

    @pytest.mark.asyncio
    async def test_default_policies_installed(self, make_engine):
        """A fresh engine carries the default policy set."""
        async with make_engine() as engine:
            policies = await engine.authz.list_policies()

        assert "document-owner-access" in {p.policy_id for p in policies}

    def test_build_tsa_clients(self):
        """One HTTP client per enabled provider."""
        config = Config.from_dict({
            "timestamp": {
                "providers": [
                    {"provider_id": "a", "name": "A", "url": "https://a.example/tsr"},
                    {"provider_id": "b", "name": "B", "url": "https://b.example/tsr", "enabled": False},
                    {"provider_id": "c", "name": "C", "url": "https://c.example/tsr"},
                ],
            },
        })

        clients = build_tsa_clients(config.timestamp)

        assert [c.provider.provider_id for c in clients] == ["a", "c"]
        assert all(isinstance(c, HttpTimestampAuthorityClient) for c in clients)


class TestDocuments:
    """Tests for document operations behind the authorization gate."""

    @pytest.mark.asyncio
    async def test_creator_owns_document(self, make_engine):
        """The creator may read; strangers may not."""
        async with make_engine() as engine:
            document = await engine.create_document("MSA", "alice", content=CONTENT)

            assert document.status == DocumentStatus.DRAFT
            assert document.content_hash == sha256_hex(CONTENT)
            assert (await engine.get_document(document.document_id, actor="alice")).title == "MSA"
            with pytest.raises(UnauthorizedError):
                await engine.get_document(document.document_id, actor="mallory")

            decision = await engine.authorize(AuthorizationRequest(
                subject="alice", action=Permissions.DOCUMENT_VOID, resource=document.document_id,
            ))
            assert decision.allowed
            assert engine.get_metrics()["authorization_denials"] == 1

    @pytest.mark.asyncio
    async def test_update_draft(self, make_engine):
        """Owners replace the content of a draft."""
        async with make_engine() as engine:
            document = await engine.create_document("MSA", "alice", content=CONTENT)

            updated = await engine.update_document(document.document_id, "alice", b"revision 5")

            assert updated.content_hash == sha256_hex(b"revision 5")
            with pytest.raises(UnauthorizedError):
                await engine.update_document(document.document_id, "mallory", b"mine now")

    @pytest.mark.asyncio
    async def test_content_sealed_once_out(self, make_engine, desk, sequential_definition):
        """Documents out for signature keep their content."""
        async with make_engine() as engine:
            document_id, _ = await desk.prepare(engine, sequential_definition)

            assert (await engine.get_document(document_id)).status == DocumentStatus.OUT
            with pytest.raises(InvalidStateError):
                await engine.update_document(document_id, "alice", b"late edit")

    @pytest.mark.asyncio
    async def test_void_draft(self, make_engine):
        """Owners void drafts and the void is audited."""
        async with make_engine() as engine:
            document = await engine.create_document("MSA", "alice", content=CONTENT)

            voided = await engine.void_document(document.document_id, "alice", reason="superseded")

            assert voided.status == DocumentStatus.VOIDED
            trail = await engine.audit_trail(document.document_id, actor="alice")
            assert trail[-1].kind == "VOIDED"
            assert trail[-1].payload["reason"] == "superseded"

    @pytest.mark.asyncio
    async def test_void_requires_permission(self, make_engine):
        """Strangers cannot void."""
        async with make_engine() as engine:
            document = await engine.create_document("MSA", "alice", content=CONTENT)

            with pytest.raises(UnauthorizedError):
                await engine.void_document(document.document_id, "mallory")

    @pytest.mark.asyncio
    async def test_void_out_document_refused(self, make_engine, desk, sequential_definition):
        """Documents with a workflow are voided through the instance."""
        async with make_engine() as engine:
            document_id, _ = await desk.prepare(engine, sequential_definition)

            with pytest.raises(InvalidStateError):
                await engine.void_document(document_id, "alice")

    @pytest.mark.asyncio
    async def test_admin_voids_any_draft(self, make_engine, identity):
        """Administrators hold every permission."""
        identity.set_subject("root", roles=["super_admin"])
        async with make_engine() as engine:
            document = await engine.create_document("MSA", "alice", content=CONTENT)

            voided = await engine.void_document(document.document_id, "root")

            assert voided.status == DocumentStatus.VOIDED


class TestCommandGate:
    """Tests for authorization of workflow commands."""

    @pytest.mark.asyncio
    async def test_stranger_cannot_start(self, make_engine, desk, sequential_definition):
        """Start needs document:send."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)

            result = await engine.submit_command(instance_id, StartStage(actor="mallory"))

            assert not result.ok
            assert result.error["kind"] == "unauthorized"
            assert result.instance_id == instance_id
            metrics = engine.get_metrics()
            assert metrics["commands_failed"] == 1
            assert metrics["authorization_denials"] == 1

    @pytest.mark.asyncio
    async def test_stranger_cannot_create_instance(self, make_engine, sequential_definition):
        """Instances are created by the document owner."""
        async with make_engine() as engine:
            document = await engine.create_document("MSA", "alice", content=CONTENT)
            created = await engine.create_definition(sequential_definition, created_by="alice")

            result = await engine.create_instance(created.definition_id, document.document_id, actor="mallory")

            assert not result.ok
            assert result.error["error"] == "UNAUTHORIZED"
            assert (await engine.get_document(document.document_id)).status == DocumentStatus.DRAFT

    @pytest.mark.asyncio
    async def test_participants_become_signers(self, make_engine, desk, sequential_definition):
        """Participants may read the document once the instance exists."""
        async with make_engine() as engine:
            document_id, _ = await desk.prepare(engine, sequential_definition)

            document = await engine.get_document(document_id, actor="carol")

            assert document.document_id == document_id

    @pytest.mark.asyncio
    async def test_json_commands(self, make_engine, desk, sequential_definition):
        """Commands may be submitted in their JSON form."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)
            await engine.submit_command(instance_id, {"type": "start", "actor": "alice"})

            result = await engine.submit_command(
                instance_id, {"type": "view", "task_id": "stage-1:p1", "actor": "bob"}
            )

            assert result.ok
            assert result.events == ["VIEWED"]

    @pytest.mark.asyncio
    async def test_enforcement_disabled(self, make_engine, desk, sequential_definition):
        """With enforcement off only the runtime's own checks apply."""
        config = Config.from_dict({
            "persistence": {"retry_delays_ms": [1, 1, 1]},
            "timestamp": {"attempt_timeout_seconds": 0.2},
            "authz": {"enforce": False},
        })
        async with make_engine(config=config) as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)

            result = await engine.submit_command(instance_id, StartStage(actor="mallory"))

            assert result.ok
            assert engine.get_metrics()["authorization_denials"] == 0


class TestDefinitions:
    """Tests for definition management through the engine."""

    @pytest.mark.asyncio
    async def test_revise_locked_definition(self, make_engine, desk, sequential_definition):
        """A definition in use is revised into a new one."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)
            instance = await engine.runtime.get_instance(instance_id)

            revised = await engine.revise_definition(
                instance.definition_id, {"settings": {"deadline_days": 2}}, created_by="alice"
            )

            assert revised.ok, revised.errors
            assert revised.definition.revision_of == instance.definition_id
            assert revised.definition.settings.deadline_days == 2
            assert (await engine.registry.get(instance.definition_id)).locked


class TestQueries:
    """Tests for read-only views."""

    @pytest.mark.asyncio
    async def test_pending_tasks(self, make_engine, desk, sequential_definition):
        """Only tasks in active stages are pending."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            bob = await engine.list_pending_tasks("bob")
            carol = await engine.list_pending_tasks("carol")

            assert [t["task_id"] for t in bob] == ["stage-1:p1"]
            assert bob[0]["instance_id"] == instance_id
            assert carol == []

    @pytest.mark.asyncio
    async def test_user_workflows(self, make_engine, desk, sequential_definition):
        """Creators and participants both see the instance."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)

            created = await engine.list_user_workflows("alice")
            joined = await engine.list_user_workflows("carol")

            assert [(w["instance_id"], w["role"]) for w in created] == [(instance_id, "creator")]
            assert [(w["instance_id"], w["role"]) for w in joined] == [(instance_id, "participant")]
            assert await engine.list_user_workflows("alice", status="completed") == []

    @pytest.mark.asyncio
    async def test_query_requires_read(self, make_engine, desk, sequential_definition):
        """Instance views are gated on document:read."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)

            with pytest.raises(UnauthorizedError):
                await engine.query_instance(instance_id, actor="mallory")
            view = await engine.query_instance(instance_id, actor="bob")

            assert view["instance_id"] == instance_id

    @pytest.mark.asyncio
    async def test_status(self, make_engine, desk, sequential_definition):
        """Status carries metrics, TSA and authorization statistics."""
        async with make_engine() as engine:
            await desk.prepare(engine, sequential_definition)

            status = engine.get_status()

        assert status["metrics"]["documents_created"] == 1
        assert status["metrics"]["instances_created"] == 1
        assert set(status["tsa"]) == {"tsa-a", "tsa-b"}
        assert "decisions" in status["authz"]
