"""
Tests for long-term validation
"""

from datetime import timedelta

import pytest

from countersign.crypto import sha256_hex
from countersign.timestamping import RevocationStatus

from conftest import CONTENT, START

CONTENT_HASH = sha256_hex(CONTENT)


@pytest.fixture
def signed(composite_service, make_submission):
    """Factory for a timestamped composite signed by ``signer``."""

    async def factory(signer: str = "bob", document_id: str = "doc-1"):
        return await composite_service.create_composite(document_id, make_submission(signer), CONTENT_HASH)

    return factory


class TestValidate:
    """Tests for validating a single composite."""

    @pytest.mark.asyncio
    async def test_fresh_composite(self, validator, signed, composite_service, audit_log):
        """A recent composite with good certificates validates cleanly."""
        composite = await signed()

        report = await validator.validate(composite.composite_id)

        assert report.valid, report.reasons
        assert report.certificate_status.status == RevocationStatus.GOOD
        assert report.authority_status.status == RevocationStatus.GOOD
        assert not report.re_timestamp_needed
        assert not report.retimestamped
        assert report.next_validation_due == START + timedelta(hours=24)
        assert report.archival_recommendation["migration"] == "recommended_in_5_years"

        stored = await composite_service.get(composite.composite_id)
        assert stored.next_validation_due == START + timedelta(hours=24)

        entries = await audit_log.entries("document:doc-1")
        assert entries[-1].kind == "LTV_CHECKED"
        assert entries[-1].payload["valid"] is True

    @pytest.mark.asyncio
    async def test_aging_timestamp_is_extended(self, validator, signed, composite_service, clock):
        """Tokens older than the horizon get an archive timestamp."""
        composite = await signed()
        clock.advance(days=1826)

        report = await validator.validate(composite.composite_id)

        assert report.valid, report.reasons
        assert report.re_timestamp_reasons == ["timestamp_aging"]
        assert report.retimestamped
        assert not report.re_timestamp_needed

        extended = await composite_service.get(composite.composite_id)
        assert len(extended.archive) == 1
        assert extended.token.gen_time == START + timedelta(days=1826)
        assert composite_service.verify_composite(extended, document_content=CONTENT).valid

    @pytest.mark.asyncio
    async def test_aging_without_authority(self, validator, signed, composite_service, clock, tsa_clients):
        """A failed re-timestamp leaves the need flagged for the next scan."""
        composite = await signed()
        clock.advance(days=1826)
        for client in tsa_clients:
            client.down = True

        report = await validator.validate(composite.composite_id)

        assert report.valid
        assert not report.retimestamped
        assert report.re_timestamp_needed
        assert (await composite_service.get(composite.composite_id)).archive == []

    @pytest.mark.asyncio
    async def test_revoked_signer(self, validator, signed, revocation, pki):
        """A revoked signer certificate invalidates the composite."""
        composite = await signed("bob")
        revocation.revoke(pki.signer("bob").certificate)

        report = await validator.validate(composite.composite_id)

        assert not report.valid
        assert "signer certificate revoked" in report.reasons
        assert report.certificate_status.status == RevocationStatus.REVOKED

    @pytest.mark.asyncio
    async def test_revoked_signer_is_not_retimestamped(self, validator, signed, revocation, pki, clock):
        """Invalid composites are not extended."""
        composite = await signed("bob")
        revocation.revoke(pki.signer("bob").certificate)
        clock.advance(days=1826)

        report = await validator.validate(composite.composite_id)

        assert not report.retimestamped
        assert report.re_timestamp_needed

    @pytest.mark.asyncio
    async def test_revocation_unavailable(self, validator, signed, revocation):
        """An unreachable revocation source yields UNKNOWN, not a failure."""
        composite = await signed()
        revocation.unavailable = True

        report = await validator.validate(composite.composite_id)

        assert report.valid
        assert report.certificate_status.status == RevocationStatus.UNKNOWN
        assert report.certificate_status.method == "unavailable"


class TestScan:
    """Tests for the periodic scan."""

    @pytest.mark.asyncio
    async def test_due_and_run_due(self, validator, signed, clock, composite_service, make_submission):
        """Only complete composites whose validation is due are scanned."""
        first = await signed("bob", "doc-1")
        second = await signed("carol", "doc-2")
        await composite_service.create_composite(
            "doc-3", make_submission("dave"), CONTENT_HASH, require_timestamp=False
        )

        due = await validator.due()
        assert {c.composite_id for c in due} == {first.composite_id, second.composite_id}

        reports = await validator.run_due()
        assert len(reports) == 2
        assert await validator.due() == []

        clock.advance(hours=25)
        assert len(await validator.due()) == 2

    @pytest.mark.asyncio
    async def test_run_due_at_given_time(self, validator, signed, composite_service, tsa_clients):
        """A scan run for a later time validates as of that time."""
        composite = await signed()
        scan_at = START + timedelta(days=1900)
        for client in tsa_clients:
            client.down = True

        reports = await validator.run_due(scan_at)

        assert len(reports) == 1
        report = reports[0]
        assert report.validated_at == scan_at
        assert report.re_timestamp_reasons == ["timestamp_aging"]
        assert report.re_timestamp_needed
        assert report.next_validation_due == scan_at + timedelta(hours=24)
        stored = await composite_service.get(composite.composite_id)
        assert stored.next_validation_due == scan_at + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_reports_for(self, validator, signed, clock):
        """Reports accumulate per composite in time order."""
        composite = await signed()

        await validator.validate(composite.composite_id)
        clock.advance(hours=25)
        await validator.validate(composite.composite_id)

        reports = await validator.reports_for(composite.composite_id)
        assert [r.validated_at for r in reports] == [START, START + timedelta(hours=25)]
        assert all(r.valid for r in reports)
