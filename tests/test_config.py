import tomllib
from pathlib import Path

import pytest

from koboldlair import __version__
from koboldlair.config import (
    AgentConfig,
    LairConfig,
    ProjectOverride,
    apply_env_overrides,
    dumps_toml,
    load_config,
    save_config,
)


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "lair.toml"
    config = LairConfig.default()
    config.default_provider = "codex"
    config.limits.max_parallel_kobolds = 4
    config.limits.max_parallel_drakes = 2
    config.supervisor.max_task_retries = 5
    config.supervisor.strict_level_barrier = True
    config.supervisor.retry_backoff_seconds = [0.25, 90.0]
    config.worker.command = ["agent", "--print"]
    config.worker.fallback_command = ["backup-agent"]
    config.worker.retry_backoff_seconds = 0.0005
    config.worker.model_flag = "-m"
    config.worker.provider_commands = {"codex": ["codex", "exec"]}
    config.agents.wyvern.provider = "markdown"
    config.agents.kobold_types["python"] = AgentConfig(model="big-model")
    config.projects["demo"] = ProjectOverride(
        max_parallel_kobolds=8, agents={"drake": {"enabled": False}}
    )

    save_config(config_path, config)
    loaded = load_config(config_path, environ={})

    assert loaded.default_provider == "codex"
    assert loaded.limits.max_parallel_kobolds == 4
    assert loaded.limits.max_parallel_drakes == 2
    assert loaded.supervisor.max_task_retries == 5
    assert loaded.supervisor.strict_level_barrier is True
    assert loaded.worker.command == ["agent", "--print"]
    assert loaded.worker.fallback_command == ["backup-agent"]
    assert loaded.worker.retry_backoff_seconds == 0.0005
    assert loaded.supervisor.retry_backoff_seconds == [0.25, 90.0]
    assert loaded.worker.command_for("codex", "gpt-5") == ["codex", "exec", "-m", "gpt-5"]
    assert loaded.worker.command_for("claude") == ["agent", "--print"]
    assert loaded.agents.wyvern.provider == "markdown"
    assert loaded.agents.kobold_types["python"].model == "big-model"
    assert loaded.projects["demo"].max_parallel_kobolds == 8
    assert loaded.projects["demo"].agents == {"drake": {"enabled": False}}


def test_toml_dump_contains_sections() -> None:
    rendered = dumps_toml(LairConfig.default())

    assert "[general]" in rendered
    assert "[limits]" in rendered
    assert "[supervisor]" in rendered
    assert "[worker]" in rendered
    assert "[agents.wyvern]" in rendered
    assert "max_parallel_kobolds = 1" in rendered
    assert "strict_level_barrier = false" in rendered


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml", environ={})

    assert loaded == LairConfig.default()


def test_resolve_cascades_project_overrides() -> None:
    config = LairConfig.default()
    config.limits.max_parallel_kobolds = 2
    config.agents.kobold.provider = "claude"
    config.agents.kobold_types["python"] = AgentConfig(provider="codex", model="py-model")
    config.projects["demo"] = ProjectOverride(max_parallel_kobolds=5, max_task_retries=7)

    file_level = config.resolve("demo")
    stored = config.resolve(
        "demo", {"max_parallel_kobolds": 9, "agents": {"wyvern": {"enabled": False}}}
    )
    other = config.resolve("other")

    assert file_level.max_parallel_kobolds == 5
    assert file_level.supervisor.max_task_retries == 7
    assert stored.max_parallel_kobolds == 9
    assert stored.supervisor.max_task_retries == 7
    assert stored.is_enabled("wyvern") is False
    assert other.max_parallel_kobolds == 2
    assert other.supervisor.max_task_retries == 3
    assert other.provider_for("kobold") == "claude"
    assert other.provider_for("kobold", "python") == "codex"
    assert other.model_for("kobold", "python") == "py-model"
    assert other.provider_for("drake") == "claude"
    assert other.timeout_for("kobold", "python") == 0.0
    assert config.supervisor.max_task_retries == 3


def test_resolve_rejects_unknown_override_keys() -> None:
    with pytest.raises(ValueError, match="Unknown project override keys"):
        LairConfig.default().resolve("demo", {"max_parallel_goblins": 3})


def test_env_overrides_apply_to_limits() -> None:
    config = apply_env_overrides(
        LairConfig.default(),
        {"LAIR_MAX_PARALLEL_KOBOLDS": "6", "LAIR_DEFAULT_PROVIDER": "codex"},
    )

    assert config.limits.max_parallel_kobolds == 6
    assert config.default_provider == "codex"

    with pytest.raises(ValueError):
        apply_env_overrides(LairConfig.default(), {"LAIR_MAX_PARALLEL_DRAKES": "many"})


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]


def test_floats_are_written_without_losing_precision() -> None:
    config = LairConfig.default()
    config.limits.monitoring_interval_seconds = 0.0005
    config.worker.timeout_seconds = 1234.56789

    parsed = tomllib.loads(dumps_toml(config))

    assert parsed["limits"]["monitoring_interval_seconds"] == 0.0005
    assert parsed["worker"]["timeout_seconds"] == 1234.56789
    assert parsed["supervisor"]["retry_backoff_seconds"] == [60.0, 120.0, 300.0, 900.0, 1800.0]


def test_agent_timeouts_and_disabled_kobold_types() -> None:
    config = LairConfig.default()
    config.agents.kobold.timeout_seconds = 600.0
    config.agents.kobold_types["python"] = AgentConfig(timeout_seconds=120.0)
    config.agents.kobold_types["cobol"] = AgentConfig(enabled=False)

    resolved = config.resolve("demo")

    assert resolved.timeout_for("kobold") == 600.0
    assert resolved.timeout_for("kobold", "python") == 120.0
    assert resolved.timeout_for("kobold", "cobol") == 600.0
    assert resolved.timeout_for("drake") == 0.0
    assert resolved.disabled_kobold_types() == {"cobol"}
