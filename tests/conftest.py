"""
Countersign - Test Configuration

Shared fixtures: a manual clock, an in-memory store, a throwaway PKI,
scriptable timestamp authorities and an engine factory.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from countersign.audit import AuditLog
from countersign.authz import StaticIdentityProvider
from countersign.core import Config
from countersign.core.clock import ManualClock
from countersign.core.engine import Countersign
from countersign.core.exceptions import TsaUnavailableError
from countersign.crypto import KeySigner, TrustStore, sha256_hex
from countersign.notifier import RecordingNotifier
from countersign.persistence import InMemoryStore
from countersign.timestamping import (
    CompositeService,
    LongTermValidator,
    SignatureSubmission,
    StaticRevocationChecker,
)
from countersign.tsa import (
    FailoverTimestampClient,
    LocalTimestampAuthority,
    TimestampAuthorityClient,
    TimeStampRequest,
    TSAProvider,
    TSAResponse,
    TSAStatus,
)
from countersign.workflow import SignTask


START = datetime(2025, 3, 3, 10, 0, tzinfo=timezone.utc)  # a Monday
CONTENT = b"Master services agreement, revision 4\n"

CERT_NOT_BEFORE = datetime(2020, 1, 1, tzinfo=timezone.utc)
CERT_NOT_AFTER = datetime(2045, 1, 1, tzinfo=timezone.utc)


def issue_certificate(
    common_name: str,
    key: ec.EllipticCurvePrivateKey,
    issuer_name: Optional[x509.Name] = None,
    issuer_key: Optional[ec.EllipticCurvePrivateKey] = None,
    ca: bool = False,
) -> x509.Certificate:
    """Self-signed when no issuer is given."""
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name or subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(CERT_NOT_BEFORE)
        .not_valid_after(CERT_NOT_AFTER)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    return builder.sign(issuer_key or key, hashes.SHA256())


class LocalPKI:
    """A root CA issuing signer and TSA certificates."""

    def __init__(self):
        self.ca_key = ec.generate_private_key(ec.SECP256R1())
        self.ca_cert = issue_certificate("Countersign Test Root", self.ca_key, ca=True)

        tsa_key = ec.generate_private_key(ec.SECP256R1())
        tsa_cert = issue_certificate("Countersign Test TSA", tsa_key, self.ca_cert.subject, self.ca_key)
        self.tsa_signer = KeySigner(tsa_key, tsa_cert, chain=[self.ca_cert])

        self._signers: Dict[str, KeySigner] = {}
        self._rogue_key = ec.generate_private_key(ec.SECP256R1())
        self._rogue_cert = issue_certificate("Rogue Root", self._rogue_key, ca=True)

    def signer(self, name: str) -> KeySigner:
        if name not in self._signers:
            key = ec.generate_private_key(ec.SECP256R1())
            cert = issue_certificate(name, key, self.ca_cert.subject, self.ca_key)
            self._signers[name] = KeySigner(key, cert, chain=[self.ca_cert])
        return self._signers[name]

    def untrusted_signer(self, name: str) -> KeySigner:
        key = ec.generate_private_key(ec.SECP256R1())
        cert = issue_certificate(name, key, self._rogue_cert.subject, self._rogue_key)
        return KeySigner(key, cert, chain=[self._rogue_cert])


class ScriptedTimestampAuthority(TimestampAuthorityClient):
    """
    Local authority whose next answers follow a script of outcomes:
    ``grant``, ``unavailable``, ``timeout`` or ``reject``. Once the script
    runs out every request is granted, unless ``down`` is set.
    """

    def __init__(self, authority: LocalTimestampAuthority, script: Optional[List[str]] = None):
        super().__init__(authority.provider)
        self.authority = authority
        self.script = list(script or [])
        self.down = False
        self.calls = 0

    async def request_timestamp(self, request: TimeStampRequest) -> TSAResponse:
        self.calls += 1
        provider_id = self.provider.provider_id
        outcome = "unavailable" if self.down else (self.script.pop(0) if self.script else "grant")

        if outcome == "timeout":
            await asyncio.sleep(60)
        if outcome == "unavailable":
            raise TsaUnavailableError(f"{provider_id} unreachable", dependency=provider_id)
        if outcome == "reject":
            return TSAResponse(status=TSAStatus.REJECTION, provider_id=provider_id, status_text="rejected")
        return await self.authority.request_timestamp(request)


@pytest.fixture(scope="session")
def pki():
    return LocalPKI()


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def store(clock):
    return InMemoryStore(clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_authority(pki, clock):
    """Factory for scripted authorities sharing the test TSA key."""

    def factory(provider_id: str, qualified: bool = False, script: Optional[List[str]] = None):
        provider = TSAProvider(
            provider_id=provider_id,
            name=provider_id.upper(),
            url=f"https://{provider_id}.example/tsr",
            qualified=qualified,
        )
        return ScriptedTimestampAuthority(LocalTimestampAuthority(provider, pki.tsa_signer, clock), script)

    return factory


@pytest.fixture
def tsa_clients(make_authority):
    return [make_authority("tsa-a"), make_authority("tsa-b", qualified=True)]


@pytest.fixture
def trust_store(pki):
    return TrustStore([pki.ca_cert])


@pytest.fixture
def revocation():
    return StaticRevocationChecker()


@pytest.fixture
def identity():
    return StaticIdentityProvider()


@pytest.fixture
def config():
    return Config.from_dict({
        "environment": "test",
        "persistence": {"retry_delays_ms": [1, 1, 1]},
        "timestamp": {"attempt_timeout_seconds": 0.2},
    })


@pytest.fixture
def audit_log(store, clock):
    return AuditLog(store, clock, retry_delays_ms=[1, 1])


@pytest.fixture
def composite_service(store, clock, tsa_clients, trust_store, config, audit_log):
    return CompositeService(
        store,
        clock,
        FailoverTimestampClient(tsa_clients, attempt_timeout=0.2),
        trust_store,
        config=config.timestamp,
        audit=audit_log,
        retry_delays_ms=[1, 1],
    )


@pytest.fixture
def validator(store, clock, composite_service, revocation, trust_store, config, audit_log):
    return LongTermValidator(
        store,
        clock,
        composite_service,
        revocation,
        trust_store,
        config=config.validation,
        audit=audit_log,
        retry_delays_ms=[1, 1],
    )


@pytest.fixture
def make_submission(pki, clock):
    """Signature over CONTENT (or ``content``) by the named signer."""

    def factory(signer_id: str, content: bytes = CONTENT, signed_at: Optional[datetime] = None, **kwargs):
        return SignatureSubmission.create(
            pki.signer(signer_id),
            signer_id,
            sha256_hex(content),
            signed_at or clock.now(),
            **kwargs,
        )

    return factory


@pytest.fixture
def make_engine(config, store, clock, notifier, tsa_clients, trust_store, revocation, identity):
    """Engine factory; use as ``async with make_engine() as engine``."""

    def factory(**overrides) -> Countersign:
        kwargs = {
            "config": config,
            "store": store,
            "clock": clock,
            "notifier": notifier,
            "tsa_clients": tsa_clients,
            "trust_store": trust_store,
            "revocation": revocation,
            "identity_provider": identity,
        }
        kwargs.update(overrides)
        return Countersign(**kwargs)

    return factory


class SigningDesk:
    """Walks an engine through document, definition and instance setup."""

    def __init__(self, make_submission):
        self.make_submission = make_submission

    async def prepare(self, engine: Countersign, definition: dict, owner: str = "alice", attributes=None):
        document = await engine.create_document(
            "Master services agreement",
            owner,
            content=CONTENT,
            attributes=attributes,
        )
        created = await engine.create_definition(definition, created_by=owner)
        assert created.ok, created.errors
        result = await engine.create_instance(created.definition_id, document.document_id, actor=owner)
        assert result.ok, result.error
        return document.document_id, result.instance_id

    async def sign(self, engine: Countersign, instance_id: str, task_id: str, signer_id: str, **kwargs):
        return await engine.submit_command(instance_id, SignTask(
            task_id=task_id,
            submission=self.make_submission(signer_id),
            actor=signer_id,
            **kwargs,
        ))


@pytest.fixture
def desk(make_submission):
    return SigningDesk(make_submission)


@pytest.fixture
def sequential_definition():
    return {
        "name": "Two-step approval",
        "type": "sequential",
        "participants": [
            {"email": "bob@example.com", "subject": "bob", "name": "Bob"},
            {"email": "carol@example.com", "subject": "carol", "name": "Carol"},
        ],
    }


@pytest.fixture
def parallel_definition():
    return {
        "name": "Board resolution",
        "type": "parallel",
        "participants": [
            {"email": "bob@example.com", "subject": "bob"},
            {"email": "carol@example.com", "subject": "carol"},
            {"email": "dave@example.com", "subject": "dave"},
        ],
    }
