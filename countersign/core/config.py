"""
Countersign Configuration Management

Centralized configuration for all subsystems.
"""

import os
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


class Environment(Enum):
    """Deployment environments."""
    DEVELOPMENT = "development"
    TEST = "test"
    STAGING = "staging"
    PRODUCTION = "production"


class PersistenceBackend(Enum):
    """Supported persistence port implementations."""
    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass
class PersistenceConfig:
    """Persistence port configuration."""
    backend: PersistenceBackend = PersistenceBackend.MEMORY
    sqlite_path: str = "countersign.db"
    retry_delays_ms: List[int] = field(default_factory=lambda: [50, 100, 200, 400])
    max_batch_writes: int = 500


@dataclass
class AuthzConfig:
    """Fine-grained authorization configuration."""
    enforce: bool = True
    cache_enabled: bool = True
    cache_ttl_seconds: float = 60.0
    cache_max_entries: int = 10000
    install_default_policies: bool = True
    volatile_attributes: List[str] = field(default_factory=lambda: [
        "env.timestamp",
        "env.request_time",
    ])
    time_of_day_attributes: List[str] = field(default_factory=lambda: [
        "env.time_of_day",
        "env.day_of_week",
        "env.hour",
    ])
    decision_stream: str = "decisions"


@dataclass
class WorkflowConfig:
    """Workflow runtime defaults."""
    default_deadline_days: int = 7
    reminder_interval_hours: float = 24.0
    escalation_delay_hours: float = 72.0
    command_retry_limit: int = 3
    estimated_days_per_participant: float = 2.0
    custom_workflow_factor: float = 1.5


@dataclass
class TSAProviderConfig:
    """A configured RFC 3161 timestamp authority."""
    provider_id: str
    name: str
    url: str
    qualified: bool = False
    algorithms: List[str] = field(default_factory=lambda: ["sha256"])
    region: str = "global"
    enabled: bool = True


DEFAULT_TSA_PROVIDERS = [
    TSAProviderConfig(
        provider_id="digicert",
        name="DigiCert Timestamp Authority",
        url="http://timestamp.digicert.com",
        qualified=False,
        algorithms=["sha256", "sha384", "sha512"],
        region="global",
    ),
    TSAProviderConfig(
        provider_id="globalsign",
        name="GlobalSign Timestamp Authority",
        url="http://timestamp.globalsign.com/tsa/r6advanced1",
        qualified=True,
        algorithms=["sha256", "sha384", "sha512"],
        region="global",
    ),
    TSAProviderConfig(
        provider_id="sectigo",
        name="Sectigo Timestamp Authority",
        url="http://timestamp.sectigo.com",
        qualified=False,
        algorithms=["sha256", "sha384"],
        region="global",
    ),
    TSAProviderConfig(
        provider_id="eu_qtsp",
        name="EU Qualified Trust Service Provider",
        url="https://freetsa.org/tsr",
        qualified=True,
        algorithms=["sha256", "sha512"],
        region="eu",
    ),
]


@dataclass
class TimestampConfig:
    """Trusted timestamping configuration."""
    providers: List[TSAProviderConfig] = field(
        default_factory=lambda: [TSAProviderConfig(**asdict(p)) for p in DEFAULT_TSA_PROVIDERS]
    )
    attempt_timeout_seconds: float = 3.0
    attempts_per_provider: int = 2
    max_sign_to_timestamp_seconds: int = 300
    nonce_bytes: int = 16
    hash_algorithm: str = "sha256"
    policy_oid: Optional[str] = None
    bulk_batch_size: int = 10


@dataclass
class ValidationConfig:
    """Long-term validation configuration."""
    scan_interval_hours: float = 24.0
    retimestamp_after_days: int = 1825
    deprecated_hash_algorithms: List[str] = field(default_factory=lambda: ["sha1", "md5"])
    ocsp_timeout_seconds: float = 2.0
    crl_timeout_seconds: float = 10.0
    auto_retimestamp: bool = True
    trust_anchor_paths: List[str] = field(default_factory=list)
    archival_format: str = "PAdES-LTV"
    retention_period: str = "7_years"


@dataclass
class AuditConfig:
    """Audit log configuration."""
    hmac_key: Optional[str] = None
    hmac_key_env: str = "COUNTERSIGN_AUDIT_KEY"
    genesis_label: str = "COUNTERSIGN_AUDIT_GENESIS_V1"
    append_retry_limit: int = 16

    def resolve_key(self) -> Optional[bytes]:
        """Return the HMAC sealing key, preferring the environment."""
        value = os.environ.get(self.hmac_key_env) or self.hmac_key
        return value.encode("utf-8") if value else None


@dataclass
class Config:
    """
    Main configuration class for Countersign.

    Aggregates all subsystem configurations.
    """
    # Core settings
    environment: Environment = Environment.DEVELOPMENT
    base_path: str = field(default_factory=lambda: os.getcwd())

    # Subsystem configs
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    authz: AuthzConfig = field(default_factory=AuthzConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    timestamp: TimestampConfig = field(default_factory=TimestampConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)

    # Operational settings
    log_level: str = "INFO"

    @classmethod
    def from_file(cls, config_path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to configuration YAML file

        Returns:
            Populated Config object
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """
        Create configuration from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Populated Config object
        """
        config = cls()

        if "environment" in data:
            config.environment = Environment(data["environment"])
        if "base_path" in data:
            config.base_path = data["base_path"]

        if "persistence" in data:
            persistence_data = data["persistence"].copy()
            if "backend" in persistence_data:
                persistence_data["backend"] = PersistenceBackend(persistence_data["backend"])
            config.persistence = PersistenceConfig(**persistence_data)
        if "authz" in data:
            config.authz = AuthzConfig(**data["authz"])
        if "workflow" in data:
            config.workflow = WorkflowConfig(**data["workflow"])
        if "timestamp" in data:
            timestamp_data = data["timestamp"].copy()
            if "providers" in timestamp_data:
                timestamp_data["providers"] = [
                    TSAProviderConfig(**p) for p in timestamp_data["providers"]
                ]
            config.timestamp = TimestampConfig(**timestamp_data)
        if "validation" in data:
            config.validation = ValidationConfig(**data["validation"])
        if "audit" in data:
            config.audit = AuditConfig(**data["audit"])

        if "log_level" in data:
            config.log_level = data["log_level"]

        return config

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        persistence = asdict(self.persistence)
        persistence["backend"] = self.persistence.backend.value
        audit = asdict(self.audit)
        audit.pop("hmac_key")
        return {
            "environment": self.environment.value,
            "base_path": self.base_path,
            "persistence": persistence,
            "authz": asdict(self.authz),
            "workflow": asdict(self.workflow),
            "timestamp": asdict(self.timestamp),
            "validation": asdict(self.validation),
            "audit": audit,
            "log_level": self.log_level,
        }

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.persistence.retry_delays_ms:
            errors.append("Persistence retry delays must not be empty")
        if self.persistence.backend == PersistenceBackend.SQLITE and not self.persistence.sqlite_path:
            errors.append("SQLite backend requires sqlite_path")

        if self.authz.cache_ttl_seconds <= 0:
            errors.append("Decision cache TTL must be positive")
        if self.authz.cache_max_entries < 1:
            errors.append("Decision cache must hold at least one entry")

        if self.workflow.default_deadline_days < 1:
            errors.append("Default deadline must be at least one day")
        if self.workflow.reminder_interval_hours <= 0:
            errors.append("Reminder interval must be positive")
        if self.workflow.escalation_delay_hours < 0:
            errors.append("Escalation delay must be non-negative")
        if self.workflow.command_retry_limit < 1:
            errors.append("Command retry limit must be at least 1")

        enabled = [p for p in self.timestamp.providers if p.enabled]
        if not enabled:
            errors.append("At least one timestamp authority must be enabled")
        seen = set()
        for provider in self.timestamp.providers:
            if provider.provider_id in seen:
                errors.append(f"Duplicate timestamp provider: {provider.provider_id}")
            seen.add(provider.provider_id)
        if self.timestamp.attempt_timeout_seconds <= 0:
            errors.append("TSA attempt timeout must be positive")
        if self.timestamp.attempts_per_provider < 1:
            errors.append("TSA attempts per provider must be at least 1")
        if self.timestamp.nonce_bytes < 8:
            errors.append("TSA nonce must be at least 8 bytes")

        if self.validation.retimestamp_after_days < 1:
            errors.append("Re-timestamp threshold must be at least one day")
        for anchor in self.validation.trust_anchor_paths:
            if not Path(anchor).exists():
                errors.append(f"Trust anchor not found: {anchor}")

        if self.log_level.upper() not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            errors.append(f"Unknown log level: {self.log_level}")

        return errors
