from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from core.config_defaults import (
    DEFAULT_DISPATCHER_AGENTS_FILE,
    DEFAULT_DISPATCHER_DEAD_LETTER,
    DEFAULT_DISPATCHER_ENGINE,
    DEFAULT_HITL_APPROVAL_TIMEOUT_MS,
    DEFAULT_HITL_ON_TIMEOUT,
    DEFAULT_HITL_POLL_INITIAL_SECONDS,
    DEFAULT_HITL_POLL_MAX_SECONDS,
    DEFAULT_HITL_POLL_MULTIPLIER,
    DEFAULT_NATS_CERT_DIR,
    DEFAULT_NATS_ENABLED,
    DEFAULT_NATS_JETSTREAM,
    DEFAULT_NATS_REPLY_STREAM,
    DEFAULT_NATS_REPLY_SUBJECTS,
    DEFAULT_NATS_SERVERS,
    DEFAULT_NATS_TLS_ENABLED,
    DEFAULT_OBS_OTEL_ENABLED,
    DEFAULT_OBS_OTEL_OTLP_ENDPOINT,
    DEFAULT_OBS_OTEL_SAMPLER_RATIO,
    DEFAULT_OBS_OTEL_SERVICE_NAME,
    DEFAULT_OBS_OTEL_SERVICE_NAMESPACE,
    DEFAULT_OBS_OTEL_SERVICE_VERSION,
    DEFAULT_QUEUE_ARCHIVE_COMPLETED_AFTER_SECONDS,
    DEFAULT_QUEUE_DELETE_AFTER_SECONDS,
    DEFAULT_QUEUE_DSN,
    DEFAULT_QUEUE_EXPIRE_IN_SECONDS,
    DEFAULT_QUEUE_MAINTENANCE_INTERVAL_SECONDS,
    DEFAULT_QUEUE_POLL_INTERVAL_SECONDS,
    DEFAULT_QUEUE_POOL_MAX_SIZE,
    DEFAULT_QUEUE_POOL_MIN_SIZE,
    DEFAULT_QUEUE_RETRY_BACKOFF,
    DEFAULT_QUEUE_RETRY_DELAY_SECONDS,
    DEFAULT_QUEUE_RETRY_LIMIT,
    DEFAULT_QUEUE_SCHEMA,
    DEFAULT_QUEUE_SHUTDOWN_TIMEOUT_SECONDS,
    DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
    default_config,
)
from core.config_loader import (
    _load_raw_config,
    apply_defaults,
    apply_env_overrides,
    apply_legacy_env_overrides,
)

_SCHEMA_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

TimeoutBehavior = Literal["deny", "abort"]


class QueueConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    postgres_dsn: str = DEFAULT_QUEUE_DSN
    schema_name: str = Field(
        default=DEFAULT_QUEUE_SCHEMA,
        validation_alias=AliasChoices("schema", "schema_name"),
        serialization_alias="schema",
    )
    pool_min_size: int = DEFAULT_QUEUE_POOL_MIN_SIZE
    pool_max_size: int = DEFAULT_QUEUE_POOL_MAX_SIZE
    poll_interval_seconds: float = DEFAULT_QUEUE_POLL_INTERVAL_SECONDS
    retry_limit: int = DEFAULT_QUEUE_RETRY_LIMIT
    retry_delay_seconds: int = DEFAULT_QUEUE_RETRY_DELAY_SECONDS
    retry_backoff: bool = DEFAULT_QUEUE_RETRY_BACKOFF
    expire_in_seconds: int = DEFAULT_QUEUE_EXPIRE_IN_SECONDS
    archive_completed_after_seconds: int = DEFAULT_QUEUE_ARCHIVE_COMPLETED_AFTER_SECONDS
    delete_after_seconds: int = DEFAULT_QUEUE_DELETE_AFTER_SECONDS
    maintenance_interval_seconds: float = DEFAULT_QUEUE_MAINTENANCE_INTERVAL_SECONDS
    shutdown_timeout_seconds: float = DEFAULT_QUEUE_SHUTDOWN_TIMEOUT_SECONDS

    @field_validator("schema_name")
    @classmethod
    def _check_schema_name(cls, v: str) -> str:
        if not _SCHEMA_NAME_RE.match(v or ""):
            raise ValueError(f"queue.schema must be a lowercase SQL identifier, got {v!r}")
        return v


class HITLDefaults(BaseModel):
    """Module-wide approval defaults applied when an agent's policy leaves them unset."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)
    approval_timeout_ms: int = Field(
        default=DEFAULT_HITL_APPROVAL_TIMEOUT_MS,
        validation_alias=AliasChoices("approval_timeout_ms", "approvalTimeoutMs"),
    )
    on_timeout: TimeoutBehavior = Field(
        default=DEFAULT_HITL_ON_TIMEOUT,
        validation_alias=AliasChoices("on_timeout", "onTimeout"),
    )
    poll_initial_seconds: float = DEFAULT_HITL_POLL_INITIAL_SECONDS
    poll_max_seconds: float = DEFAULT_HITL_POLL_MAX_SECONDS
    poll_multiplier: float = DEFAULT_HITL_POLL_MULTIPLIER


class HITLPolicy(BaseModel):
    """Per-agent tool approval policy.

    Semantics:
    - auto_approve wins over require_approval when a tool matches both.
    - tools matching neither list are allowed.
    - unset timeout fields fall back to HITLDefaults.
    """

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    require_approval: Optional[List[str]] = Field(
        default=None,
        validation_alias=AliasChoices("require_approval", "requireApproval"),
    )
    auto_approve: Optional[List[str]] = Field(
        default=None,
        validation_alias=AliasChoices("auto_approve", "autoApprove"),
    )
    approval_timeout_ms: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("approval_timeout_ms", "approvalTimeoutMs"),
    )
    on_timeout: Optional[TimeoutBehavior] = Field(
        default=None,
        validation_alias=AliasChoices("on_timeout", "onTimeout"),
    )

    @field_validator("require_approval", "auto_approve", mode="before")
    @classmethod
    def _normalize_patterns(cls, v: Any) -> Any:
        if v is None:
            return None
        if isinstance(v, str):
            v = [v]
        if not isinstance(v, list):
            raise ValueError("hitl patterns must be a list of strings")
        return [item.strip() for item in v if isinstance(item, str) and item.strip()]


class AgentSpec(BaseModel):
    """A registered agent: opaque engine options plus an optional approval policy."""

    model_config = ConfigDict(extra="allow")
    hitl: Optional[HITLPolicy] = None

    def engine_options(self) -> Dict[str, Any]:
        options = dict(self.model_extra or {})
        options.pop("request_schema", None)
        options.pop("requestSchema", None)
        return options


class WebhookConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS
    headers: Dict[str, str] = Field(default_factory=dict)


class NatsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    enabled: bool = DEFAULT_NATS_ENABLED
    servers: list[str] = Field(default_factory=lambda: list(DEFAULT_NATS_SERVERS))
    tls_enabled: bool = DEFAULT_NATS_TLS_ENABLED
    cert_dir: str = DEFAULT_NATS_CERT_DIR
    jetstream: bool = DEFAULT_NATS_JETSTREAM
    reply_stream: str = DEFAULT_NATS_REPLY_STREAM
    reply_subjects: list[str] = Field(default_factory=lambda: list(DEFAULT_NATS_REPLY_SUBJECTS))


class DispatcherConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    engine: str = DEFAULT_DISPATCHER_ENGINE
    dead_letter: bool = DEFAULT_DISPATCHER_DEAD_LETTER
    agents_file: str = DEFAULT_DISPATCHER_AGENTS_FILE


class ObservabilityOTelConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    enabled: bool = DEFAULT_OBS_OTEL_ENABLED
    service_namespace: str = DEFAULT_OBS_OTEL_SERVICE_NAMESPACE
    service_name: str = DEFAULT_OBS_OTEL_SERVICE_NAME
    service_version: str = DEFAULT_OBS_OTEL_SERVICE_VERSION
    otlp_endpoint: str = DEFAULT_OBS_OTEL_OTLP_ENDPOINT
    sampler_ratio: float = DEFAULT_OBS_OTEL_SAMPLER_RATIO


class ObservabilityConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    otel: ObservabilityOTelConfig = Field(default_factory=ObservabilityOTelConfig)


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    queue: QueueConfig = Field(default_factory=QueueConfig)
    hitl: HITLDefaults = Field(default_factory=HITLDefaults)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    nats: NatsConfig = Field(default_factory=NatsConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)
    agents: Dict[str, AgentSpec] = Field(default_factory=dict)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def load_app_config(path: Optional[Path] = None) -> AppConfig:
    raw = _load_raw_config(path=path)
    return AppConfig.model_validate(raw)


def normalize_config(config: Optional[AppConfig | Dict[str, Any]]) -> AppConfig:
    if config is None:
        return load_app_config()
    if isinstance(config, AppConfig):
        return config
    if isinstance(config, dict):
        raw = apply_legacy_env_overrides(dict(config))
        raw = apply_env_overrides(raw)
        raw = apply_defaults(raw, default_config())
        return AppConfig.model_validate(raw)
    raise TypeError("config must be AppConfig, dict, or None")
