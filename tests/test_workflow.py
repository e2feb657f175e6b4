"""
Tests for the Countersign workflow runtime
"""

import asyncio
from datetime import timedelta

import pytest

from countersign.core.document import DocumentStatus
from countersign.notifier import NotificationKind
from countersign.persistence import Collections, InMemoryStore, PutResult
from countersign.workflow import (
    DeclineTask,
    DelegateTask,
    InstanceStatus,
    SignTask,
    StageStatus,
    StartStage,
    TaskStatus,
    ViewTask,
    VoidInstance,
)

from conftest import CONTENT, START


def single_signer(**settings):
    definition = {
        "name": "Single signature",
        "type": "sequential",
        "participants": [{"email": "bob@example.com", "subject": "bob"}],
    }
    if settings:
        definition["settings"] = settings
    return definition


class YieldingStore(InMemoryStore):
    """Hands control back to the loop on every read, like a networked backend."""

    async def get(self, collection, record_id):
        await asyncio.sleep(0)
        return await super().get(collection, record_id)


class ContendedStore(InMemoryStore):
    """Rejects instance updates as stale while ``contended`` is set."""

    def __init__(self, clock):
        super().__init__(clock)
        self.contended = False
        self.rejected = 0

    async def put(self, collection, record_id, data, expected_version):
        if self.contended and collection == Collections.WORKFLOW_INSTANCES and expected_version:
            self.rejected += 1
            return PutResult(ok=False, current_version=expected_version + 1)
        return await super().put(collection, record_id, data, expected_version)


class TestSequentialWorkflow:
    """Tests for sequential signing."""

    @pytest.mark.asyncio
    async def test_two_signers_complete_in_order(self, make_engine, desk, sequential_definition, notifier):
        """Both signers sign in order and the document completes."""
        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, sequential_definition)

            started = await engine.submit_command(instance_id, StartStage(actor="alice"))
            assert started.ok
            assert started.events == ["STARTED", "STAGE_ACTIVATED", "INVITED"]
            assert started.data["activated"] == ["stage-1"]

            first = await desk.sign(engine, instance_id, "stage-1:p1", "bob")
            assert first.ok
            assert first.state == "running"
            assert first.events == ["SIGNED", "STAGE_DONE", "STAGE_ACTIVATED", "INVITED"]

            second = await desk.sign(engine, instance_id, "stage-2:p2", "carol")
            assert second.ok
            assert second.state == "completed"
            assert second.events[-1] == "COMPLETED"

            document = await engine.get_document(document_id)
            assert document.status == DocumentStatus.COMPLETED

            for result in (first, second):
                verification = await engine.verify_composite(result.data["composite_id"], document_content=CONTENT)
                assert verification.valid, verification.reasons

            kinds = [e.kind for e in await engine.audit_trail(document_id)]
            assert kinds == [
                "CREATED",
                "STARTED", "STAGE_ACTIVATED", "INVITED",
                "TIMESTAMPED", "SIGNED", "STAGE_DONE", "STAGE_ACTIVATED", "INVITED",
                "TIMESTAMPED", "SIGNED", "STAGE_DONE", "COMPLETED",
            ]
            chain = await engine.verify_audit(f"document:{document_id}")
            assert chain.valid
            assert chain.entries_checked == len(kinds)

        invited = [n.recipient for n in notifier.of_kind(NotificationKind.INVITATION)]
        assert invited == ["bob@example.com", "carol@example.com"]
        completion = {n.recipient for n in notifier.of_kind(NotificationKind.COMPLETION)}
        assert completion == {"alice", "bob@example.com", "carol@example.com"}

    @pytest.mark.asyncio
    async def test_second_stage_waits_for_first(self, make_engine, desk, sequential_definition):
        """A task in a blocked stage cannot be signed."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            result = await desk.sign(engine, instance_id, "stage-2:p2", "carol")

            assert not result.ok
            assert result.error["error"] == "INVALID_STATE"
            instance = await engine.runtime.get_instance(instance_id)
            assert instance.stages["stage-2"].status == StageStatus.BLOCKED
            assert instance.tasks["stage-2:p2"].status == TaskStatus.PENDING

    @pytest.mark.asyncio
    async def test_signature_records_written(self, make_engine, desk, store):
        """Each signature leaves a signature event next to the composite."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, single_signer())
            await engine.submit_command(instance_id, StartStage(actor="alice"))
            result = await desk.sign(engine, instance_id, "stage-1:p1", "bob")

        composite_id = result.data["composite_id"]
        record = await store.get("signatures", f"sig_{composite_id}")
        assert record is not None
        assert record.data["signer"] == "bob"
        assert record.data["task_id"] == "stage-1:p1"

    @pytest.mark.asyncio
    async def test_view_marks_task_viewed(self, make_engine, desk):
        """Viewing records the first open of a task."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, single_signer())
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            result = await engine.submit_command(instance_id, ViewTask(task_id="stage-1:p1", actor="bob"))

            assert result.ok
            assert result.events == ["VIEWED"]
            instance = await engine.runtime.get_instance(instance_id)
            assert instance.tasks["stage-1:p1"].status == TaskStatus.VIEWED


class TestParallelWorkflow:
    """Tests for parallel signing."""

    @pytest.mark.asyncio
    async def test_decline_terminates_instance(self, make_engine, desk, parallel_definition, notifier):
        """One decline fails the stage and cancels the remaining tasks."""
        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, parallel_definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            signed = await desk.sign(engine, instance_id, "stage-1:p1", "bob")
            assert signed.ok
            assert signed.state == "running"

            declined = await engine.submit_command(
                instance_id, DeclineTask(task_id="stage-1:p2", reason="refuse", actor="carol")
            )

            assert declined.ok
            assert declined.state == "declined"
            assert declined.events == ["DECLINED", "STAGE_FAILED", "CANCELLED"]

            instance = await engine.runtime.get_instance(instance_id)
            assert instance.status == InstanceStatus.DECLINED
            assert instance.tasks["stage-1:p1"].status == TaskStatus.SIGNED
            assert instance.tasks["stage-1:p2"].status == TaskStatus.DECLINED
            assert instance.tasks["stage-1:p3"].status == TaskStatus.CANCELLED
            assert instance.stages["stage-1"].status == StageStatus.FAILED

            document = await engine.get_document(document_id)
            assert document.status == DocumentStatus.DECLINED

        recipients = {n.recipient for n in notifier.of_kind(NotificationKind.DECLINE)}
        assert recipients == {"alice", "bob@example.com", "dave@example.com"}

    @pytest.mark.asyncio
    async def test_commands_after_termination_rejected(self, make_engine, desk, parallel_definition):
        """A terminated instance accepts no further task actions."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, parallel_definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))
            await engine.submit_command(instance_id, DeclineTask(task_id="stage-1:p2", actor="carol"))

            result = await desk.sign(engine, instance_id, "stage-1:p3", "dave")

            assert not result.ok
            assert result.error["error"] == "INVALID_STATE"


class TestCustomWorkflow:
    """Tests for custom stage graphs."""

    @pytest.mark.asyncio
    async def test_diamond_graph_with_delegation(self, make_engine, desk):
        """S1 fans out to S2 and S3, which join at S4; S2 is delegated."""
        definition = {
            "name": "Procurement approval",
            "type": "custom",
            "participants": [
                {"participant_id": "p1", "email": "bob@example.com", "subject": "bob"},
                {"participant_id": "p2a", "email": "carol@example.com", "subject": "carol"},
                {"participant_id": "p3", "email": "dave@example.com", "subject": "dave"},
                {"participant_id": "p4", "email": "erin@example.com", "subject": "erin"},
            ],
            "stages": [
                {"stage_id": "S1", "participants": ["p1"]},
                {"stage_id": "S2", "participants": ["p2a"], "depends_on": ["S1"], "allow_delegation": True},
                {"stage_id": "S3", "participants": ["p3"], "depends_on": ["S1"]},
                {"stage_id": "S4", "participants": ["p4"], "depends_on": ["S2", "S3"]},
            ],
        }

        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, definition)
            started = await engine.submit_command(instance_id, StartStage(actor="alice"))
            assert started.data["activated"] == ["S1"]

            result = await desk.sign(engine, instance_id, "S1:p1", "bob")
            assert result.ok
            instance = await engine.runtime.get_instance(instance_id)
            assert instance.stages["S2"].status == StageStatus.ACTIVE
            assert instance.stages["S3"].status == StageStatus.ACTIVE
            assert instance.stages["S4"].status == StageStatus.BLOCKED

            delegated = await engine.submit_command(instance_id, DelegateTask(
                task_id="S2:p2a",
                new_email="frank@example.com",
                new_subject="frank",
                reason="on leave",
                actor="carol",
            ))
            assert delegated.ok
            assert delegated.data == {"task_id": "S2:frank", "delegate": "frank"}

            instance = await engine.runtime.get_instance(instance_id)
            original = instance.tasks["S2:p2a"]
            replacement = instance.tasks["S2:frank"]
            assert original.status == TaskStatus.DELEGATED
            assert replacement.status == TaskStatus.INVITED
            assert replacement.deadline == original.deadline
            assert replacement.delegated_from == "S2:p2a"

            assert (await desk.sign(engine, instance_id, "S2:frank", "frank")).ok
            assert (await desk.sign(engine, instance_id, "S3:p3", "dave")).ok

            instance = await engine.runtime.get_instance(instance_id)
            assert instance.stages["S4"].status == StageStatus.ACTIVE

            final = await desk.sign(engine, instance_id, "S4:p4", "erin")
            assert final.state == "completed"

            document = await engine.get_document(document_id)
            assert document.status == DocumentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_delegated_task_cannot_be_signed(self, make_engine, desk):
        """The original assignee loses the task after delegating it."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, single_signer(allow_delegation=True))
            await engine.submit_command(instance_id, StartStage(actor="alice"))
            await engine.submit_command(instance_id, DelegateTask(
                task_id="stage-1:p1", new_email="frank@example.com", new_subject="frank", actor="bob"
            ))

            result = await desk.sign(engine, instance_id, "stage-1:p1", "bob")

            assert not result.ok
            assert result.error["error"] == "INVALID_STATE"


class TestCommandErrors:
    """Tests for rejected commands."""

    @pytest.mark.asyncio
    async def test_mfa_required(self, make_engine, desk):
        """A task requiring MFA rejects a signature without evidence."""
        definition = {
            "name": "Wire transfer",
            "type": "sequential",
            "participants": [{"email": "bob@example.com", "subject": "bob", "require_mfa": True}],
        }
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            missing = await desk.sign(engine, instance_id, "stage-1:p1", "bob")
            assert not missing.ok
            assert missing.error["error"] == "MFA_REQUIRED"
            assert missing.error["kind"] == "validation_error"

            signed = await desk.sign(engine, instance_id, "stage-1:p1", "bob", mfa_evidence="totp:492011")
            assert signed.ok
            assert signed.state == "completed"

    @pytest.mark.asyncio
    async def test_delegation_not_allowed(self, make_engine, desk, sequential_definition):
        """Delegation is refused unless the stage or definition allows it."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            result = await engine.submit_command(instance_id, DelegateTask(
                task_id="stage-1:p1", new_email="frank@example.com", actor="bob"
            ))

            assert not result.ok
            assert result.error["error"] == "DELEGATION_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_delegation_to_existing_participant(self, make_engine, desk):
        """A stage cannot hold two live tasks for the same email."""
        definition = {
            "name": "Joint signature",
            "type": "parallel",
            "participants": [
                {"email": "bob@example.com", "subject": "bob"},
                {"email": "carol@example.com", "subject": "carol"},
            ],
            "settings": {"allow_delegation": True},
        }
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            result = await engine.submit_command(instance_id, DelegateTask(
                task_id="stage-1:p1", new_email="Carol@example.com", new_subject="carol", actor="bob"
            ))

            assert not result.ok
            assert result.error["error"] == "DUPLICATE_PARTICIPANT"

    @pytest.mark.asyncio
    async def test_other_participant_cannot_sign(self, make_engine, desk, sequential_definition):
        """A participant may only act on their own tasks."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            result = await desk.sign(engine, instance_id, "stage-1:p1", "carol")

            assert not result.ok
            assert result.error["kind"] == "unauthorized"

    @pytest.mark.asyncio
    async def test_signer_mismatch(self, make_engine, desk, sequential_definition, make_submission):
        """A signature produced for another subject is rejected."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            result = await engine.submit_command(instance_id, SignTask(
                task_id="stage-1:p1", submission=make_submission("carol"), actor="bob"
            ))

            assert not result.ok
            assert result.error["error"] == "SIGNER_MISMATCH"

    @pytest.mark.asyncio
    async def test_signature_required(self, make_engine, desk, sequential_definition):
        """Sign tasks need a signature submission."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            result = await engine.submit_command(instance_id, SignTask(task_id="stage-1:p1", actor="bob"))

            assert not result.ok
            assert result.error["error"] == "SIGNATURE_REQUIRED"

    @pytest.mark.asyncio
    async def test_signature_over_other_content(self, make_engine, desk, sequential_definition, make_submission):
        """A signature over different content is an integrity failure."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            result = await engine.submit_command(instance_id, SignTask(
                task_id="stage-1:p1",
                submission=make_submission("bob", content=b"a different contract"),
                actor="bob",
            ))

            assert not result.ok
            assert result.error["kind"] == "integrity_error"
            assert result.error["error"] == "HASH_MISMATCH"

    @pytest.mark.asyncio
    async def test_unknown_command_type(self, make_engine, desk, sequential_definition):
        """JSON commands with an unknown type are rejected."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)

            result = await engine.submit_command(instance_id, {"type": "shred", "actor": "alice"})

            assert not result.ok
            assert result.error["error"] == "UNKNOWN_COMMAND"


class TestIdempotency:
    """Tests for command replay."""

    @pytest.mark.asyncio
    async def test_replayed_sign_applies_once(self, make_engine, desk, sequential_definition):
        """Resubmitting a command id returns the stored outcome."""
        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, sequential_definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            first = await desk.sign(engine, instance_id, "stage-1:p1", "bob", command_id="cmd-sign-bob")
            trail_before = await engine.audit_trail(document_id)
            composites_before = await engine.composites.list_for_document(document_id)

            again = await desk.sign(engine, instance_id, "stage-1:p1", "bob", command_id="cmd-sign-bob")

            assert first.ok and again.ok
            assert again.replayed
            assert not first.replayed
            assert again.events == first.events
            assert again.data == first.data
            assert len(await engine.audit_trail(document_id)) == len(trail_before)
            assert len(await engine.composites.list_for_document(document_id)) == len(composites_before)

    @pytest.mark.asyncio
    async def test_replayed_tick_is_noop(self, make_engine, desk):
        """The same tick delivered twice acts once."""
        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, single_signer())
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            now = START + timedelta(hours=30)
            first = await engine.tick(now)
            trail = await engine.audit_trail(document_id)
            second = await engine.tick(now)

            assert first["events"] == 1
            assert second["events"] == 1
            assert len(await engine.audit_trail(document_id)) == len(trail)


class TestTimeDrivenBehaviour:
    """Tests for deadlines, reminders and escalation."""

    @pytest.mark.asyncio
    async def test_deadline_boundary(self, make_engine, desk):
        """A task expires only once the deadline has passed."""
        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, single_signer())
            await engine.submit_command(instance_id, StartStage(actor="alice"))
            instance = await engine.runtime.get_instance(instance_id)
            deadline = instance.tasks["stage-1:p1"].deadline
            assert deadline == START + timedelta(days=7)

            await engine.tick(deadline)
            instance = await engine.runtime.get_instance(instance_id)
            assert instance.status == InstanceStatus.RUNNING
            assert instance.tasks["stage-1:p1"].status == TaskStatus.INVITED

            await engine.tick(deadline + timedelta(milliseconds=1))
            instance = await engine.runtime.get_instance(instance_id)
            assert instance.status == InstanceStatus.EXPIRED
            assert instance.tasks["stage-1:p1"].status == TaskStatus.EXPIRED

            document = await engine.get_document(document_id)
            assert document.status == DocumentStatus.EXPIRED
            kinds = [e.kind for e in await engine.audit_trail(document_id)]
            assert "EXPIRED" in kinds
            assert "STAGE_FAILED" in kinds

    @pytest.mark.asyncio
    async def test_reminder_sent_once_per_cycle(self, make_engine, desk, notifier):
        """Reminders go out once per elapsed interval."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, single_signer())
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            await engine.tick(START + timedelta(hours=23))
            assert notifier.of_kind(NotificationKind.REMINDER) == []

            await engine.tick(START + timedelta(hours=25))
            await engine.tick(START + timedelta(hours=26))
            reminders = notifier.of_kind(NotificationKind.REMINDER)
            assert len(reminders) == 1
            assert reminders[0].recipient == "bob@example.com"
            assert reminders[0].cycle_no == 1

            await engine.tick(START + timedelta(hours=49))
            assert [n.cycle_no for n in notifier.of_kind(NotificationKind.REMINDER)] == [1, 2]

    @pytest.mark.asyncio
    async def test_escalation_after_deadline(self, make_engine, desk, notifier):
        """An overdue task is escalated to the creator once."""
        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, single_signer(enable_deadlines=False))
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            escalate_at = START + timedelta(days=7, hours=72)
            await engine.tick(escalate_at - timedelta(minutes=1))
            assert notifier.of_kind(NotificationKind.ESCALATION) == []

            await engine.tick(escalate_at)
            await engine.tick(escalate_at + timedelta(hours=1))

            escalations = notifier.of_kind(NotificationKind.ESCALATION)
            assert [n.recipient for n in escalations] == ["alice"]
            instance = await engine.runtime.get_instance(instance_id)
            assert instance.tasks["stage-1:p1"].escalated
            assert instance.status == InstanceStatus.RUNNING
            kinds = [e.kind for e in await engine.audit_trail(document_id)]
            assert kinds.count("ESCALATED") == 1

    @pytest.mark.asyncio
    async def test_expiry_precedes_escalation(self, make_engine, desk, notifier):
        """With deadlines enforced an overdue task expires and is never escalated."""
        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, single_signer())
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            await engine.tick(START + timedelta(days=7, hours=1))
            await engine.tick(START + timedelta(days=7, hours=72))

            instance = await engine.runtime.get_instance(instance_id)
            assert instance.status == InstanceStatus.EXPIRED
            assert not instance.tasks["stage-1:p1"].escalated
            assert notifier.of_kind(NotificationKind.ESCALATION) == []


class TestVoid:
    """Tests for voiding instances."""

    @pytest.mark.asyncio
    async def test_void_running_instance(self, make_engine, desk, sequential_definition, notifier):
        """Voiding cancels open tasks and voids the document."""
        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, sequential_definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            result = await engine.submit_command(instance_id, VoidInstance(reason="superseded", actor="alice"))

            assert result.ok
            assert result.state == "voided"
            assert result.events[-1] == "VOIDED"
            instance = await engine.runtime.get_instance(instance_id)
            assert instance.tasks["stage-1:p1"].status == TaskStatus.CANCELLED
            assert instance.tasks["stage-2:p2"].status == TaskStatus.CANCELLED
            document = await engine.get_document(document_id)
            assert document.status == DocumentStatus.VOIDED

        recipients = {n.recipient for n in notifier.of_kind(NotificationKind.VOID)}
        assert recipients == {"alice", "bob@example.com"}

    @pytest.mark.asyncio
    async def test_signer_cannot_void(self, make_engine, desk, sequential_definition):
        """Only subjects holding document:void may void."""
        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)

            result = await engine.submit_command(instance_id, VoidInstance(actor="bob"))

            assert not result.ok
            assert result.error["kind"] == "unauthorized"


class TestTimestampAvailability:
    """Tests for signing while timestamp authorities fail."""

    @pytest.mark.asyncio
    async def test_failover_to_third_authority(self, make_engine, desk, make_authority):
        """Unavailable and slow authorities are skipped in order."""
        clients = [
            make_authority("tsa-primary", script=["unavailable", "unavailable"]),
            make_authority("tsa-secondary", script=["timeout"]),
            make_authority("tsa-tertiary"),
        ]
        async with make_engine(tsa_clients=clients) as engine:
            document_id, instance_id = await desk.prepare(engine, single_signer())
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            result = await desk.sign(engine, instance_id, "stage-1:p1", "bob")

            assert result.ok
            assert result.data["composite_status"] == "complete"
            composite = await engine.get_composite(result.data["composite_id"])
            assert composite.provider_id == "tsa-tertiary"
            assert [a["outcome"] for a in composite.attempt_log] == [
                "unavailable", "unavailable", "timeout", "granted",
            ]

            stamped = [e for e in await engine.audit_trail(document_id) if e.kind == "TIMESTAMPED"]
            assert stamped[0].payload["provider"] == "tsa-tertiary"
            assert len(stamped[0].payload["attempts"]) == 4

    @pytest.mark.asyncio
    async def test_outage_defers_timestamp(self, make_engine, desk, tsa_clients):
        """Signing proceeds during an outage; the token is obtained later."""
        for client in tsa_clients:
            client.down = True

        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, single_signer())
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            result = await desk.sign(engine, instance_id, "stage-1:p1", "bob")
            assert result.ok
            assert result.state == "completed"
            assert result.data["composite_status"] == "awaiting_timestamp"
            composite_id = result.data["composite_id"]

            pending = await engine.verify_composite(composite_id, document_content=CONTENT)
            assert not pending.valid
            assert "timestamp missing (composite awaiting_timestamp)" in pending.reasons

            engine.clock.advance(hours=2)
            for client in tsa_clients:
                client.down = False
            summary = await engine.tick()

            assert summary["timestamps"]["completed"] == [composite_id]
            verification = await engine.verify_composite(composite_id, document_content=CONTENT)
            assert verification.valid, verification.reasons
            assert verification.deferred
            kinds = [e.kind for e in await engine.audit_trail(document_id)]
            assert "TIMESTAMP_DEFERRED" in kinds
            assert "TIMESTAMPED" in kinds


class TestInstanceCreation:
    """Tests for claiming a draft document with a new instance."""

    @pytest.mark.asyncio
    async def test_concurrent_creation_claims_document_once(self, make_engine, clock, sequential_definition):
        """Two instances racing for one draft leave exactly one behind."""
        store = YieldingStore(clock)
        async with make_engine(store=store) as engine:
            document = await engine.create_document("MSA", "alice", content=CONTENT)
            created = await engine.create_definition(sequential_definition, created_by="alice")

            results = await asyncio.gather(
                engine.create_instance(created.definition_id, document.document_id, actor="alice"),
                engine.create_instance(created.definition_id, document.document_id, actor="alice"),
            )

            winners = [r for r in results if r.ok]
            losers = [r for r in results if not r.ok]
            assert len(winners) == 1
            assert losers[0].error["error"] == "INVALID_STATE"

            document = await engine.get_document(document.document_id)
            assert document.status == DocumentStatus.OUT
            assert document.instance_id == winners[0].instance_id
            instances = await engine.runtime.list_instances()
            assert [i.instance_id for i in instances] == [winners[0].instance_id]

    @pytest.mark.asyncio
    async def test_failed_instance_write_keeps_draft(self, make_engine, store, sequential_definition):
        """A document stays Draft when its instance cannot be stored."""
        async with make_engine() as engine:
            document = await engine.create_document("MSA", "alice", content=CONTENT)
            created = await engine.create_definition(sequential_definition, created_by="alice")

            store.unavailable = {Collections.WORKFLOW_INSTANCES}
            failed = await engine.create_instance(created.definition_id, document.document_id, actor="alice")

            assert not failed.ok
            assert failed.error["kind"] == "dependency_unavailable"
            unchanged = await engine.get_document(document.document_id)
            assert unchanged.status == DocumentStatus.DRAFT
            assert unchanged.instance_id is None

            store.unavailable = set()
            retried = await engine.create_instance(created.definition_id, document.document_id, actor="alice")

            assert retried.ok
            assert (await engine.get_document(document.document_id)).instance_id == retried.instance_id

    @pytest.mark.asyncio
    async def test_document_already_out(self, make_engine, desk, sequential_definition):
        """A second instance for a document out for signature is refused."""
        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, sequential_definition)
            instance = await engine.runtime.get_instance(instance_id)

            result = await engine.create_instance(instance.definition_id, document_id, actor="alice")

            assert not result.ok
            assert result.error["error"] == "INVALID_STATE"
            assert len(await engine.runtime.list_instances()) == 1


class TestConcurrentCommands:
    """Tests for commands racing on one instance."""

    @pytest.mark.asyncio
    async def test_parallel_signers_finish_stage_once(self, make_engine, desk, parallel_definition):
        """The last two signers commit independently and the stage is done once."""
        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, parallel_definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))
            assert (await desk.sign(engine, instance_id, "stage-1:p1", "bob")).ok

            results = await asyncio.gather(
                desk.sign(engine, instance_id, "stage-1:p2", "carol"),
                desk.sign(engine, instance_id, "stage-1:p3", "dave"),
            )

            assert all(r.ok for r in results)
            assert sum(r.events.count("STAGE_DONE") for r in results) == 1
            instance = await engine.runtime.get_instance(instance_id)
            assert instance.status == InstanceStatus.COMPLETED
            assert {t.status for t in instance.tasks.values()} == {TaskStatus.SIGNED}
            kinds = [e.kind for e in await engine.audit_trail(document_id)]
            assert kinds.count("STAGE_DONE") == 1
            assert kinds.count("COMPLETED") == 1
            assert kinds.count("SIGNED") == 3

    @pytest.mark.asyncio
    async def test_conflict_after_retry_limit(self, make_engine, desk, clock, config, sequential_definition):
        """A command that never wins the version check reports a conflict."""
        store = ContendedStore(clock)
        async with make_engine(store=store) as engine:
            _, instance_id = await desk.prepare(engine, sequential_definition)
            before = await engine.runtime.get_instance(instance_id)

            store.contended = True
            result = await engine.submit_command(instance_id, StartStage(actor="alice"))

            assert not result.ok
            assert result.conflict
            assert result.error["error"] == "VERSION_CONFLICT"
            assert result.error["retryable"] is True
            assert store.rejected == config.workflow.command_retry_limit
            assert engine.get_metrics()["conflicts"] == 1

            store.contended = False
            after = await engine.runtime.get_instance(instance_id)
            assert after.version == before.version
            assert after.status == before.status


class TestStageRules:
    """Tests for stage conditions and optional participants."""

    @pytest.mark.asyncio
    async def test_unmet_condition_skips_stage(self, make_engine, desk):
        """A stage whose condition fails is skipped and its dependants proceed."""
        definition = {
            "name": "Spend approval",
            "type": "custom",
            "participants": [
                {"participant_id": "p1", "email": "bob@example.com", "subject": "bob"},
                {"participant_id": "p2", "email": "carol@example.com", "subject": "carol"},
                {"participant_id": "p3", "email": "dave@example.com", "subject": "dave"},
            ],
            "stages": [
                {"stage_id": "manager", "participants": ["p1"]},
                {
                    "stage_id": "finance",
                    "participants": ["p2"],
                    "depends_on": ["manager"],
                    "condition": {"attribute": "document.amount", "operator": "gt", "value": 10000},
                },
                {"stage_id": "legal", "participants": ["p3"], "depends_on": ["finance"]},
            ],
        }

        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, definition, attributes={"amount": 2500})
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            result = await desk.sign(engine, instance_id, "manager:p1", "bob")

            assert "STAGE_SKIPPED" in result.events
            instance = await engine.runtime.get_instance(instance_id)
            assert instance.stages["finance"].status == StageStatus.SKIPPED
            assert instance.stages["finance"].reason == "condition not met"
            assert instance.tasks["finance:p2"].status == TaskStatus.CANCELLED
            assert instance.stages["legal"].status == StageStatus.ACTIVE

            final = await desk.sign(engine, instance_id, "legal:p3", "dave")
            assert final.state == "completed"

    @pytest.mark.asyncio
    async def test_optional_participant_does_not_block(self, make_engine, desk, notifier):
        """A stage is done once its required signers have signed."""
        definition = {
            "name": "Acknowledged approval",
            "type": "parallel",
            "participants": [
                {"email": "bob@example.com", "subject": "bob"},
                {"email": "carol@example.com", "subject": "carol", "required": False},
            ],
        }

        async with make_engine() as engine:
            document_id, instance_id = await desk.prepare(engine, definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            result = await desk.sign(engine, instance_id, "stage-1:p1", "bob")

            assert result.state == "completed"
            instance = await engine.runtime.get_instance(instance_id)
            optional = instance.tasks["stage-1:p2"]
            assert not optional.required
            assert optional.status == TaskStatus.CANCELLED
            assert optional.reason == "stage completed"
            assert (await engine.get_document(document_id)).status == DocumentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_optional_decline_does_not_fail(self, make_engine, desk):
        """Declining an optional task leaves the instance running."""
        definition = {
            "name": "Acknowledged approval",
            "type": "parallel",
            "participants": [
                {"email": "bob@example.com", "subject": "bob"},
                {"email": "carol@example.com", "subject": "carol", "required": False},
            ],
        }

        async with make_engine() as engine:
            _, instance_id = await desk.prepare(engine, definition)
            await engine.submit_command(instance_id, StartStage(actor="alice"))

            declined = await engine.submit_command(
                instance_id, DeclineTask(task_id="stage-1:p2", reason="not my area", actor="carol")
            )

            assert declined.ok
            assert declined.state == "running"
            final = await desk.sign(engine, instance_id, "stage-1:p1", "bob")
            assert final.state == "completed"
