"""
Tests for signature composites
"""

from datetime import datetime, timedelta, timezone

import pytest

from countersign.core.exceptions import (
    HashMismatchError,
    IntegrityError,
    TsaUnavailableError,
    ValidationError,
)
from countersign.crypto import sha256, sha256_hex
from countersign.timestamping import (
    CompositeStatus,
    LegalValue,
    SignatureSubmission,
    check_temporal_consistency,
    determine_legal_value,
)

from conftest import CONTENT, START

CONTENT_HASH = sha256_hex(CONTENT)


class TestCompositeCreation:
    """Tests for creating composites."""

    @pytest.mark.asyncio
    async def test_timestamped_composite(self, composite_service, make_submission, audit_log):
        """A valid submission yields a complete, verifiable composite."""
        composite = await composite_service.create_composite(
            "doc-1", make_submission("bob"), CONTENT_HASH, task_id="stage-1:p1"
        )

        assert composite.status == CompositeStatus.COMPLETE
        assert composite.provider_id == "tsa-a"
        assert composite.token.gen_time == START
        assert not composite.qualified

        verification = composite_service.verify_composite(composite, document_content=CONTENT)
        assert verification.valid, verification.reasons
        assert verification.legal_value == LegalValue.ADVANCED
        assert all(verification.checks.values())

        entries = await audit_log.entries("document:doc-1")
        assert [e.kind for e in entries] == ["TIMESTAMPED"]
        assert entries[0].payload["provider"] == "tsa-a"

    @pytest.mark.asyncio
    async def test_qualified_composite(self, composite_service, make_submission):
        """Qualified requests skip non-qualified authorities."""
        composite = await composite_service.create_composite(
            "doc-1", make_submission("bob"), CONTENT_HASH, require_qualified=True
        )

        assert composite.provider_id == "tsa-b"
        assert composite.qualified
        assert composite.attempt_log[0]["outcome"] == "skipped"
        verification = composite_service.verify_composite(composite, document_content=CONTENT)
        assert verification.legal_value == LegalValue.QUALIFIED

    @pytest.mark.asyncio
    async def test_untimestamped_composite(self, composite_service, make_submission):
        """Stages that waive timestamps store the signature alone."""
        composite = await composite_service.create_composite(
            "doc-1", make_submission("bob"), CONTENT_HASH, require_timestamp=False
        )

        assert composite.status == CompositeStatus.UNTIMESTAMPED
        assert composite.token is None
        verification = composite_service.verify_composite(composite)
        assert not verification.valid
        assert verification.checks["signature"]

    @pytest.mark.asyncio
    async def test_persisted_and_listed(self, composite_service, make_submission):
        """Composites are stored and listed per document."""
        created = await composite_service.create_composite("doc-1", make_submission("bob"), CONTENT_HASH)
        await composite_service.create_composite("doc-2", make_submission("carol"), CONTENT_HASH)

        loaded = await composite_service.get(created.composite_id)
        listed = await composite_service.list_for_document("doc-1")

        assert loaded.signature == created.signature
        assert loaded.token.serial_number == created.token.serial_number
        assert [c.composite_id for c in listed] == [created.composite_id]


class TestSubmissionChecks:
    """Tests for submission validation."""

    @pytest.mark.asyncio
    async def test_hash_mismatch(self, composite_service, make_submission):
        """The signed hash must match the sealed document hash."""
        submission = make_submission("bob", content=b"another document")

        with pytest.raises(HashMismatchError):
            await composite_service.create_composite("doc-1", submission, CONTENT_HASH)

    @pytest.mark.asyncio
    async def test_untrusted_signer(self, composite_service, pki, clock):
        """Certificates not chaining to a trust anchor are rejected."""
        submission = SignatureSubmission.create(pki.untrusted_signer("mallory"), "mallory", CONTENT_HASH, clock.now())

        with pytest.raises(IntegrityError) as exc_info:
            await composite_service.create_composite("doc-1", submission, CONTENT_HASH)

        assert exc_info.value.code == "UNTRUSTED_SIGNER"

    @pytest.mark.asyncio
    async def test_certificate_not_yet_valid(self, composite_service, make_submission):
        """The signer certificate must be valid at signing time."""
        submission = make_submission("bob", signed_at=datetime(2019, 6, 1, tzinfo=timezone.utc))

        with pytest.raises(ValidationError) as exc_info:
            await composite_service.create_composite("doc-1", submission, CONTENT_HASH)

        assert exc_info.value.code == "CERT_NOT_VALID"

    @pytest.mark.asyncio
    async def test_forged_signature(self, composite_service, make_submission):
        """A signature that does not verify is rejected."""
        submission = make_submission("bob")
        submission.signature = submission.signature[:-1] + bytes([submission.signature[-1] ^ 0x01])

        with pytest.raises(IntegrityError) as exc_info:
            await composite_service.create_composite("doc-1", submission, CONTENT_HASH)

        assert exc_info.value.code == "SIGNATURE_INVALID"

    @pytest.mark.asyncio
    async def test_late_timestamp_rejected(self, composite_service, make_submission, clock):
        """A token more than the allowed window after signing is refused."""
        submission = make_submission("bob", signed_at=clock.now() - timedelta(seconds=301))

        with pytest.raises(IntegrityError) as exc_info:
            await composite_service.create_composite("doc-1", submission, CONTENT_HASH)

        assert exc_info.value.code == "TEMPORAL_INCONSISTENCY"


class TestTamperDetection:
    """Tests for offline verification of altered composites."""

    @pytest.mark.asyncio
    async def test_altered_content(self, composite_service, make_submission):
        """Content that no longer hashes to the signed value is detected."""
        composite = await composite_service.create_composite("doc-1", make_submission("bob"), CONTENT_HASH)

        verification = composite_service.verify_composite(composite, document_content=CONTENT + b" ")

        assert not verification.valid
        assert "document content hash mismatch" in verification.reasons
        assert verification.legal_value == LegalValue.INVALID

    @pytest.mark.asyncio
    async def test_altered_signature(self, composite_service, make_submission):
        """A flipped signature byte breaks the signature and the imprint."""
        composite = await composite_service.create_composite("doc-1", make_submission("bob"), CONTENT_HASH)
        composite.signature = composite.signature[:-1] + bytes([composite.signature[-1] ^ 0x01])

        verification = composite_service.verify_composite(composite, document_content=CONTENT)

        assert not verification.valid
        assert not verification.checks["signature"]
        assert any(r.startswith("signature invalid") for r in verification.reasons)
        assert "timestamp: message imprint does not cover the signed data" in verification.reasons

    @pytest.mark.asyncio
    async def test_altered_token(self, composite_service, make_submission):
        """A token whose imprint was rewritten no longer verifies."""
        composite = await composite_service.create_composite("doc-1", make_submission("bob"), CONTENT_HASH)
        composite.token.hashed_message = bytes(32)

        verification = composite_service.verify_composite(composite, document_content=CONTENT)

        assert not verification.valid
        assert not verification.checks["timestamp"]
        assert "timestamp: message imprint does not cover the signed data" in verification.reasons

    @pytest.mark.asyncio
    async def test_upgraded_qualified_flag(self, composite_service, make_submission):
        """Flipping the stored qualified flags does not raise the legal value."""
        composite = await composite_service.create_composite("doc-1", make_submission("bob"), CONTENT_HASH)
        assert composite.provider_id == "tsa-a"
        composite.token.qualified = True
        composite.qualified = True

        verification = composite_service.verify_composite(composite, document_content=CONTENT)

        assert not verification.valid
        assert not verification.checks["timestamp"]
        assert "timestamp: qualified status differs from signed TSTInfo" in verification.reasons
        assert not verification.qualified
        assert verification.legal_value == LegalValue.INVALID

    @pytest.mark.asyncio
    async def test_composite_flag_without_token_support(self, composite_service, make_submission):
        """A composite cannot claim more than its token asserts."""
        composite = await composite_service.create_composite("doc-1", make_submission("bob"), CONTENT_HASH)
        composite.qualified = True

        verification = composite_service.verify_composite(composite, document_content=CONTENT)

        assert not verification.valid
        assert "composite claims a qualified timestamp its token does not carry" in verification.reasons
        assert verification.legal_value == LegalValue.ADVANCED

    @pytest.mark.asyncio
    async def test_untrusted_authority(self, composite_service, make_submission, trust_store, pki):
        """Removing the anchor invalidates both certificate chains."""
        composite = await composite_service.create_composite("doc-1", make_submission("bob"), CONTENT_HASH)
        trust_store.remove_anchor(trust_store.add_anchor(pki.ca_cert))

        verification = composite_service.verify_composite(composite, document_content=CONTENT)

        assert not verification.valid
        assert not verification.checks["signer_chain"]
        assert not verification.checks["authority_chain"]


class TestDeferredTimestamps:
    """Tests for composites created during an authority outage."""

    @pytest.mark.asyncio
    async def test_deferred_then_completed(self, composite_service, make_submission, tsa_clients, clock, audit_log):
        """An outage defers the token; it is completed once authorities return."""
        for client in tsa_clients:
            client.down = True

        composite = await composite_service.create_composite("doc-1", make_submission("bob"), CONTENT_HASH)

        assert composite.status == CompositeStatus.AWAITING_TIMESTAMP
        assert composite.deferred
        assert {a["outcome"] for a in composite.attempt_log} == {"unavailable"}
        assert len(composite.attempt_log) == 4

        still_down = await composite_service.retry_pending()
        assert still_down == {"completed": [], "pending": [composite.composite_id]}

        clock.advance(hours=6)
        for client in tsa_clients:
            client.down = False
        retried = await composite_service.retry_pending()
        assert retried == {"completed": [composite.composite_id], "pending": []}

        completed = await composite_service.get(composite.composite_id)
        assert completed.status == CompositeStatus.COMPLETE
        verification = composite_service.verify_composite(completed, document_content=CONTENT)
        assert verification.valid, verification.reasons
        assert verification.checks["temporal"]
        assert verification.notes

        kinds = [e.kind for e in await audit_log.entries("document:doc-1")]
        assert kinds == ["TIMESTAMP_DEFERRED", "TIMESTAMPED"]

    @pytest.mark.asyncio
    async def test_no_deferral_raises(self, composite_service, make_submission, tsa_clients):
        """Without deferral an outage surfaces as TsaUnavailableError."""
        for client in tsa_clients:
            client.down = True

        with pytest.raises(TsaUnavailableError) as exc_info:
            await composite_service.create_composite(
                "doc-1", make_submission("bob"), CONTENT_HASH, defer_on_unavailable=False
            )

        assert len(exc_info.value.details["attempt_log"]) == 4


class TestRetimestamp:
    """Tests for archive timestamps."""

    @pytest.mark.asyncio
    async def test_retimestamp_extends_archive(self, composite_service, make_submission, clock, audit_log):
        """The previous token moves to the archive and the chain still verifies."""
        composite = await composite_service.create_composite("doc-1", make_submission("bob"), CONTENT_HASH)
        first_serial = composite.token.serial_number

        clock.advance(days=400)
        extended = await composite_service.retimestamp(composite.composite_id, reason="timestamp_aging")

        assert [t.serial_number for t in extended.archive] == [first_serial]
        assert extended.token.serial_number != first_serial
        assert extended.token.gen_time == START + timedelta(days=400)
        verification = composite_service.verify_composite(extended, document_content=CONTENT)
        assert verification.valid, verification.reasons

        entries = await audit_log.entries("document:doc-1")
        assert entries[-1].kind == "RETIMESTAMPED"
        assert entries[-1].payload["archive_depth"] == 1

    @pytest.mark.asyncio
    async def test_retimestamp_without_token(self, composite_service, make_submission):
        """A composite without a token has nothing to extend."""
        composite = await composite_service.create_composite(
            "doc-1", make_submission("bob"), CONTENT_HASH, require_timestamp=False
        )

        with pytest.raises(ValidationError) as exc_info:
            await composite_service.retimestamp(composite.composite_id)

        assert exc_info.value.code == "TIMESTAMP_MISSING"


class TestBulkTimestamp:
    """Tests for bulk timestamping."""

    @pytest.mark.asyncio
    async def test_bulk_batches(self, composite_service):
        """Every digest gets a token."""
        hashes = [sha256(f"document {i}".encode()) for i in range(5)]

        result = await composite_service.bulk_timestamp(hashes, batch_size=2)

        assert result.success
        assert result.total == 5
        assert result.successful == 5
        assert {r["hash"] for r in result.results} == {h.hex() for h in hashes}

    @pytest.mark.asyncio
    async def test_bulk_reports_failures(self, composite_service, tsa_clients):
        """Failures are reported per digest."""
        for client in tsa_clients:
            client.down = True

        result = await composite_service.bulk_timestamp([sha256(b"x")])

        assert not result.success
        assert result.failed == 1


class TestHelpers:
    """Tests for temporal and legal value rules."""

    def test_temporal_window(self):
        """Tokens must fall within the window after signing."""
        assert check_temporal_consistency(START, START + timedelta(seconds=300), 300) == []
        assert check_temporal_consistency(START, START + timedelta(seconds=301), 300)
        assert check_temporal_consistency(START, START + timedelta(days=2), 300, deferred=True) == []
        assert check_temporal_consistency(START, START - timedelta(seconds=1), 300, deferred=True)

    def test_legal_value(self):
        """Legal value needs both a valid signature and a valid timestamp."""
        assert determine_legal_value(True, True, True) == LegalValue.QUALIFIED
        assert determine_legal_value(True, True, False) == LegalValue.ADVANCED
        assert determine_legal_value(True, False, True) == LegalValue.INVALID
        assert determine_legal_value(False, True, False) == LegalValue.INVALID
