import pytest
from pydantic import ValidationError

from core.app_config import AppConfig, normalize_config
from core.config_loader import (
    _load_raw_config,
    apply_defaults,
    apply_env_overrides,
    apply_legacy_env_overrides,
    merge_agents_file,
)


def test_apply_env_overrides_parses_json_and_fallback(monkeypatch):
    cfg = {}
    monkeypatch.setenv("AQ__NATS__SERVERS", '["nats://a","nats://b"]')
    monkeypatch.setenv("AQ__QUEUE__RETRY_LIMIT", "5")
    monkeypatch.setenv("AQ__WEBHOOK__HEADERS__AUTHORIZATION", "Bearer abc")

    apply_env_overrides(cfg)

    assert cfg["nats"]["servers"] == ["nats://a", "nats://b"]
    assert cfg["queue"]["retry_limit"] == 5
    assert cfg["webhook"]["headers"]["authorization"] == "Bearer abc"


def test_env_overrides_override_legacy(monkeypatch):
    cfg = {}
    monkeypatch.setenv("NATS_SERVERS", "nats://legacy")
    monkeypatch.setenv("AQ__NATS__SERVERS", '["nats://new"]')

    apply_legacy_env_overrides(cfg)
    apply_env_overrides(cfg)

    assert cfg["nats"]["servers"] == ["nats://new"]


def test_legacy_database_url_sets_queue_dsn(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/jobs")

    cfg = apply_legacy_env_overrides({})

    assert cfg["queue"]["postgres_dsn"] == "postgresql://u:p@db:5432/jobs"


def test_apply_defaults_keeps_explicit_values():
    cfg = {"queue": {"retry_limit": 0}, "hitl": None}

    apply_defaults(cfg, {"queue": {"retry_limit": 2, "schema": "agent_queue"}, "hitl": {"on_timeout": "deny"}})

    assert cfg["queue"] == {"retry_limit": 0, "schema": "agent_queue"}
    assert cfg["hitl"] == {"on_timeout": "deny"}


def test_load_raw_config_reads_toml_then_env(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text(
        """
[queue]
schema = "jobs"

[agents.echo-agent]
model = "small"

[agents.deploy-bot.hitl]
requireApproval = ["Bash"]
approvalTimeoutMs = 50
onTimeout = "deny"
""",
        encoding="utf-8",
    )
    monkeypatch.setenv("AQ__QUEUE__POLL_INTERVAL_SECONDS", "0.5")

    cfg = AppConfig.model_validate(_load_raw_config(path=path))

    assert cfg.queue.schema_name == "jobs"
    assert cfg.queue.poll_interval_seconds == 0.5
    assert cfg.queue.retry_limit == 2
    assert cfg.agents["echo-agent"].engine_options() == {"model": "small"}
    policy = cfg.agents["deploy-bot"].hitl
    assert policy.require_approval == ["Bash"]
    assert policy.approval_timeout_ms == 50
    assert policy.on_timeout == "deny"
    assert policy.auto_approve is None


def test_normalize_config_rejects_bad_schema_name():
    with pytest.raises(ValidationError, match="queue.schema"):
        normalize_config({"queue": {"schema": "Bad-Name"}})


def test_agent_names_keep_case_in_env_overrides(monkeypatch):
    monkeypatch.setenv("AQ__AGENTS__DeployBot__MODEL", "large")
    monkeypatch.setenv("AQ__AGENTS__DeployBot__HITL__ONTIMEOUT", "abort")

    cfg = apply_env_overrides({})

    assert cfg["agents"]["DeployBot"] == {"model": "large", "hitl": {"ontimeout": "abort"}}


def test_merge_agents_file_keeps_inline_agents(tmp_path):
    path = tmp_path / "agents.toml"
    path.write_text(
        """
[echo-agent]
model = "from-file"

[review-bot]
max_turns = 3
""",
        encoding="utf-8",
    )
    cfg = {"agents": {"echo-agent": {"model": "inline"}}}

    merge_agents_file(cfg, path)

    assert cfg["agents"]["echo-agent"] == {"model": "inline"}
    assert cfg["agents"]["review-bot"] == {"max_turns": 3}
    assert merge_agents_file({}, tmp_path / "missing.toml") == {}


def test_merge_agents_file_rejects_non_table(tmp_path):
    path = tmp_path / "agents.toml"
    path.write_text('echo-agent = "oops"\n', encoding="utf-8")

    with pytest.raises(ValueError, match="must be a table"):
        merge_agents_file({}, path)


def test_agents_file_is_resolved_next_to_config(tmp_path, monkeypatch):
    monkeypatch.delenv("AQ_AGENTS_TOML", raising=False)
    (tmp_path / "agents.toml").write_text('[echo-agent]\nmodel = "small"\n', encoding="utf-8")
    path = tmp_path / "config.toml"
    path.write_text('[dispatcher]\nagents_file = "agents.toml"\n', encoding="utf-8")

    cfg = AppConfig.model_validate(_load_raw_config(path=path))

    assert cfg.agents["echo-agent"].engine_options() == {"model": "small"}
    assert cfg.dispatcher.agents_file == "agents.toml"


def test_agents_file_env_var_wins_over_config(tmp_path, monkeypatch):
    other = tmp_path / "other.toml"
    other.write_text('[triage]\nmodel = "tiny"\n', encoding="utf-8")
    monkeypatch.setenv("AQ_AGENTS_TOML", str(other))

    cfg = _load_raw_config(path=tmp_path / "absent.toml")

    assert cfg["agents"] == {"triage": {"model": "tiny"}}
