from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Literal

AgentRole = Literal["wyrm", "wyvern", "drake", "kobold"]
AGENT_ROLES: tuple[AgentRole, ...] = ("wyrm", "wyvern", "drake", "kobold")
ENV_PREFIX = "LAIR_"


@dataclass(slots=True)
class AgentConfig:
    enabled: bool = True
    provider: str | None = None
    model: str | None = None
    timeout_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "enabled": self.enabled,
            "timeout_seconds": self.timeout_seconds,
        }
        if self.provider is not None:
            payload["provider"] = self.provider
        if self.model is not None:
            payload["model"] = self.model
        return payload


@dataclass(slots=True)
class LimitsConfig:
    max_parallel_kobolds: int = 1
    max_parallel_drakes: int = 1
    max_parallel_wyrms: int = 1
    max_parallel_wyverns: int = 1
    monitoring_interval_seconds: float = 60.0
    stuck_kobold_timeout_minutes: float = 30.0


@dataclass(slots=True)
class SupervisorConfig:
    max_task_retries: int = 3
    task_timeout_seconds: float = 1800.0
    idle_interval_seconds: float = 5.0
    strict_level_barrier: bool = False
    retry_backoff_seconds: list[float] = field(
        default_factory=lambda: [60.0, 120.0, 300.0, 900.0, 1800.0]
    )


@dataclass(slots=True)
class WorkerConfig:
    command: list[str] = field(default_factory=lambda: ["claude", "-p"])
    fallback_command: list[str] = field(default_factory=list)
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0
    model_flag: str = "--model"
    provider_commands: dict[str, list[str]] = field(default_factory=dict)

    def command_for(self, provider: str, model: str | None = None) -> list[str]:
        command = list(self.provider_commands.get(provider, self.command))
        if model and self.model_flag:
            command.extend([self.model_flag, model])
        return command


@dataclass(slots=True)
class AgentsConfig:
    wyrm: AgentConfig = field(default_factory=AgentConfig)
    wyvern: AgentConfig = field(default_factory=AgentConfig)
    drake: AgentConfig = field(default_factory=AgentConfig)
    kobold: AgentConfig = field(default_factory=AgentConfig)
    kobold_types: dict[str, AgentConfig] = field(default_factory=dict)

    def role(self, role: AgentRole) -> AgentConfig:
        if role not in AGENT_ROLES:
            raise ValueError(f"Unknown agent role: {role}")
        return getattr(self, role)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AgentsConfig:
        agents = cls()
        for role in AGENT_ROLES:
            if role in data:
                setattr(agents, role, AgentConfig(**data[role]))
        agents.kobold_types = {
            name: AgentConfig(**values) for name, values in data.get("kobold_types", {}).items()
        }
        return agents

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {role: self.role(role).to_dict() for role in AGENT_ROLES}
        if self.kobold_types:
            payload["kobold_types"] = {
                name: agent.to_dict() for name, agent in self.kobold_types.items()
            }
        return payload


@dataclass(slots=True)
class ProjectOverride:
    max_parallel_kobolds: int | None = None
    max_parallel_drakes: int | None = None
    max_parallel_wyrms: int | None = None
    max_parallel_wyverns: int | None = None
    max_task_retries: int | None = None
    task_timeout_seconds: float | None = None
    agents: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ProjectOverride:
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown project override keys: {', '.join(unknown)}")
        values = dict(data)
        values["agents"] = {str(k): dict(v) for k, v in values.get("agents", {}).items()}
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if item.name == "agents":
                if value:
                    payload["agents"] = {name: dict(agent) for name, agent in value.items()}
            elif value is not None:
                payload[item.name] = value
        return payload


@dataclass(slots=True)
class ProjectConfig:
    """Effective settings for one project after applying its overrides."""

    project_id: str
    max_parallel_kobolds: int
    max_parallel_drakes: int
    max_parallel_wyrms: int
    max_parallel_wyverns: int
    supervisor: SupervisorConfig
    agents: dict[str, AgentConfig]
    kobold_types: dict[str, AgentConfig]
    default_provider: str

    def agent(self, role: AgentRole) -> AgentConfig:
        return self.agents[role]

    def is_enabled(self, role: AgentRole) -> bool:
        return self.agents[role].enabled

    def provider_for(self, role: AgentRole, agent_type: str | None = None) -> str:
        if role == "kobold" and agent_type and agent_type in self.kobold_types:
            provider = self.kobold_types[agent_type].provider
            if provider:
                return provider
        return self.agents[role].provider or self.default_provider

    def model_for(self, role: AgentRole, agent_type: str | None = None) -> str | None:
        if role == "kobold" and agent_type and agent_type in self.kobold_types:
            model = self.kobold_types[agent_type].model
            if model:
                return model
        return self.agents[role].model

    def timeout_for(self, role: AgentRole, agent_type: str | None = None) -> float:
        """Agent-level timeout in seconds; 0 means the worker default applies."""
        if role == "kobold" and agent_type and agent_type in self.kobold_types:
            timeout = self.kobold_types[agent_type].timeout_seconds
            if timeout > 0:
                return timeout
        return self.agents[role].timeout_seconds

    def disabled_kobold_types(self) -> set[str]:
        return {name for name, agent in self.kobold_types.items() if not agent.enabled}


@dataclass(slots=True)
class LairConfig:
    default_provider: str = "claude"
    projects_path: str = "projects"
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    projects: dict[str, ProjectOverride] = field(default_factory=dict)

    @classmethod
    def default(cls) -> LairConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> LairConfig:
        general = data.get("general", {})
        return cls(
            default_provider=str(general.get("default_provider", "claude")),
            projects_path=str(general.get("projects_path", "projects")),
            limits=LimitsConfig(**data.get("limits", {})),
            supervisor=SupervisorConfig(**data.get("supervisor", {})),
            worker=WorkerConfig(**data.get("worker", {})),
            agents=AgentsConfig.from_dict(data.get("agents", {})),
            projects={
                str(project_id): ProjectOverride.from_dict(values)
                for project_id, values in data.get("projects", {}).items()
            },
        )

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {
            "general": {
                "default_provider": self.default_provider,
                "projects_path": self.projects_path,
            },
            "limits": {
                "max_parallel_kobolds": self.limits.max_parallel_kobolds,
                "max_parallel_drakes": self.limits.max_parallel_drakes,
                "max_parallel_wyrms": self.limits.max_parallel_wyrms,
                "max_parallel_wyverns": self.limits.max_parallel_wyverns,
                "monitoring_interval_seconds": self.limits.monitoring_interval_seconds,
                "stuck_kobold_timeout_minutes": self.limits.stuck_kobold_timeout_minutes,
            },
            "supervisor": {
                "max_task_retries": self.supervisor.max_task_retries,
                "task_timeout_seconds": self.supervisor.task_timeout_seconds,
                "idle_interval_seconds": self.supervisor.idle_interval_seconds,
                "strict_level_barrier": self.supervisor.strict_level_barrier,
                "retry_backoff_seconds": list(self.supervisor.retry_backoff_seconds),
            },
            "worker": {
                "command": list(self.worker.command),
                "fallback_command": list(self.worker.fallback_command),
                "max_retries": self.worker.max_retries,
                "retry_backoff_seconds": self.worker.retry_backoff_seconds,
                "timeout_seconds": self.worker.timeout_seconds,
                "model_flag": self.worker.model_flag,
                "provider_commands": {
                    provider: list(command)
                    for provider, command in self.worker.provider_commands.items()
                },
            },
            "agents": self.agents.to_dict(),
        }
        if self.projects:
            payload["projects"] = {
                project_id: override.to_dict() for project_id, override in self.projects.items()
            }
        return payload

    def resolve(
        self, project_id: str, overrides: Mapping[str, Any] | None = None
    ) -> ProjectConfig:
        """Cascade project-level values over the global ones.

        ``overrides`` are the values stored on the project itself; they win over
        the ``[projects.<id>]`` table of the configuration file.
        """
        override = self.projects.get(project_id, ProjectOverride())
        if overrides:
            stored = ProjectOverride.from_dict(overrides)
            merged_agents = {**override.agents}
            for role, values in stored.agents.items():
                merged_agents[role] = {**merged_agents.get(role, {}), **values}
            override = ProjectOverride(
                **{
                    item.name: _first_set(getattr(stored, item.name), getattr(override, item.name))
                    for item in fields(ProjectOverride)
                    if item.name != "agents"
                },
                agents=merged_agents,
            )

        agents: dict[str, AgentConfig] = {}
        for role in AGENT_ROLES:
            base = self.agents.role(role)
            agents[role] = replace(base, **override.agents.get(role, {}))

        supervisor = replace(self.supervisor)
        if override.max_task_retries is not None:
            supervisor.max_task_retries = override.max_task_retries
        if override.task_timeout_seconds is not None:
            supervisor.task_timeout_seconds = override.task_timeout_seconds

        return ProjectConfig(
            project_id=project_id,
            max_parallel_kobolds=_first_set(
                override.max_parallel_kobolds, self.limits.max_parallel_kobolds
            ),
            max_parallel_drakes=_first_set(
                override.max_parallel_drakes, self.limits.max_parallel_drakes
            ),
            max_parallel_wyrms=_first_set(
                override.max_parallel_wyrms, self.limits.max_parallel_wyrms
            ),
            max_parallel_wyverns=_first_set(
                override.max_parallel_wyverns, self.limits.max_parallel_wyverns
            ),
            supervisor=supervisor,
            agents=agents,
            kobold_types=dict(self.agents.kobold_types),
            default_provider=self.default_provider,
        )


def _first_set(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def apply_env_overrides(config: LairConfig, environ: Mapping[str, str] | None = None) -> LairConfig:
    """Apply ``LAIR_*`` variables (e.g. ``LAIR_MAX_PARALLEL_KOBOLDS``) to global limits."""
    env = os.environ if environ is None else environ
    for item in fields(LimitsConfig):
        raw = env.get(f"{ENV_PREFIX}{item.name.upper()}")
        if raw is None:
            continue
        current = getattr(config.limits, item.name)
        try:
            value: int | float = type(current)(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid value for {ENV_PREFIX}{item.name.upper()}: {raw}") from exc
        setattr(config.limits, item.name, value)
    provider = env.get(f"{ENV_PREFIX}DEFAULT_PROVIDER")
    if provider:
        config.default_provider = provider
    return config


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: str) -> str:
    if key and all(char.isalnum() or char in "-_" for char in key):
        return key
    return json.dumps(key, ensure_ascii=False)


def _dump_table(prefix: list[str], table: Mapping[str, Any], lines: list[str]) -> None:
    scalars = {key: value for key, value in table.items() if not isinstance(value, Mapping)}
    nested = {key: value for key, value in table.items() if isinstance(value, Mapping)}
    if prefix and (scalars or not nested):
        lines.append("[" + ".".join(_toml_key(part) for part in prefix) + "]")
        for key, value in scalars.items():
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        lines.append("")
    for key, value in nested.items():
        _dump_table([*prefix, key], value, lines)


def dumps_toml(config: LairConfig) -> str:
    lines: list[str] = []
    _dump_table([], config.to_dict(), lines)
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path, *, environ: Mapping[str, str] | None = None) -> LairConfig:
    if not path.exists():
        config = LairConfig.default()
    else:
        config = LairConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
    return apply_env_overrides(config, environ)


def save_config(path: Path, config: LairConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
