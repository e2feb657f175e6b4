"""
Tests for configuration and clock utilities
"""

from datetime import datetime, timedelta, timezone

import pytest
import yaml

from countersign.core import Config, ManualClock
from countersign.core.clock import format_datetime, new_id, parse_datetime
from countersign.core.config import Environment, PersistenceBackend

from conftest import START


class TestConfig:
    """Tests for Config loading and validation."""

    def test_defaults_are_valid(self):
        """The default configuration passes validation."""
        config = Config()

        assert config.validate() == []
        assert config.environment == Environment.DEVELOPMENT
        assert config.workflow.default_deadline_days == 7
        assert config.timestamp.attempt_timeout_seconds == 3.0
        assert config.validation.retimestamp_after_days == 1825
        assert [p.provider_id for p in config.timestamp.providers][:2] == ["digicert", "globalsign"]

    def test_from_dict(self):
        """Nested sections are parsed into their dataclasses."""
        config = Config.from_dict({
            "environment": "production",
            "persistence": {"backend": "sqlite", "sqlite_path": "/var/lib/countersign.db"},
            "workflow": {"default_deadline_days": 14},
            "timestamp": {
                "providers": [{"provider_id": "local", "name": "Local", "url": "https://tsa.local/tsr"}],
            },
            "log_level": "DEBUG",
        })

        assert config.environment == Environment.PRODUCTION
        assert config.persistence.backend == PersistenceBackend.SQLITE
        assert config.workflow.default_deadline_days == 14
        assert config.timestamp.providers[0].algorithms == ["sha256"]
        assert config.validate() == []

    def test_from_file(self, tmp_path):
        """YAML files load through from_dict."""
        path = tmp_path / "countersign.yaml"
        path.write_text(yaml.safe_dump({"environment": "staging", "authz": {"cache_ttl_seconds": 30}}))

        config = Config.from_file(str(path))

        assert config.environment == Environment.STAGING
        assert config.authz.cache_ttl_seconds == 30

    def test_missing_file(self, tmp_path):
        """A missing file is reported."""
        with pytest.raises(FileNotFoundError):
            Config.from_file(str(tmp_path / "absent.yaml"))

    def test_validation_errors(self):
        """Invalid settings are all reported."""
        config = Config.from_dict({
            "workflow": {"default_deadline_days": 0},
            "timestamp": {
                "providers": [
                    {"provider_id": "a", "name": "A", "url": "https://a/tsr", "enabled": False},
                    {"provider_id": "a", "name": "A2", "url": "https://a2/tsr", "enabled": False},
                ],
                "nonce_bytes": 4,
            },
            "log_level": "LOUD",
        })

        errors = config.validate()

        assert "Default deadline must be at least one day" in errors
        assert "At least one timestamp authority must be enabled" in errors
        assert "Duplicate timestamp provider: a" in errors
        assert "TSA nonce must be at least 8 bytes" in errors
        assert "Unknown log level: LOUD" in errors

    def test_to_dict_hides_key(self):
        """The audit HMAC key is never exported."""
        config = Config.from_dict({"audit": {"hmac_key": "secret"}})

        exported = config.to_dict()

        assert "hmac_key" not in exported["audit"]
        assert exported["persistence"]["backend"] == "memory"
        assert config.audit.resolve_key() == b"secret"

    def test_key_from_environment(self, monkeypatch):
        """The environment variable overrides the configured key."""
        monkeypatch.setenv("COUNTERSIGN_AUDIT_KEY", "from-env")
        config = Config.from_dict({"audit": {"hmac_key": "secret"}})

        assert config.audit.resolve_key() == b"from-env"


class TestClock:
    """Tests for the manual clock and time helpers."""

    def test_advance_fires_callbacks_in_order(self):
        """Scheduled callbacks fire in time order and see their own instant."""
        clock = ManualClock(START)
        seen = []
        clock.schedule(START + timedelta(hours=2), lambda: seen.append(("b", clock.now())))
        clock.schedule(START + timedelta(hours=1), lambda: seen.append(("a", clock.now())))
        clock.schedule(START + timedelta(days=2), lambda: seen.append(("c", clock.now())))

        clock.advance(hours=3)

        assert seen == [("a", START + timedelta(hours=1)), ("b", START + timedelta(hours=2))]
        assert clock.now() == START + timedelta(hours=3)
        assert clock.pending == 1

    def test_cancel(self):
        """Cancelled callbacks never fire."""
        clock = ManualClock(START)
        fired = []
        handle = clock.schedule(START + timedelta(minutes=5), lambda: fired.append(True))

        clock.cancel(handle)
        clock.advance(hours=1)

        assert fired == []

    def test_no_backwards(self):
        """The manual clock refuses to move backwards."""
        clock = ManualClock(START)

        with pytest.raises(ValueError):
            clock.set(START - timedelta(seconds=1))

    def test_datetime_helpers(self):
        """Naive values are treated as UTC; formatting round-trips."""
        naive = datetime(2025, 3, 3, 10, 0)

        assert parse_datetime(format_datetime(naive)) == START
        assert format_datetime(None) is None
        assert parse_datetime("2025-03-03T11:00:00+01:00") == START
        assert parse_datetime("2025-03-03T10:00:00+00:00").tzinfo == timezone.utc

    def test_new_id(self):
        """Identifiers carry their prefix and are unique."""
        first, second = new_id("doc"), new_id("doc")

        assert first.startswith("doc_")
        assert first != second
