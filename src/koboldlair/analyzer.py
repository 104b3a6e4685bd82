from __future__ import annotations

import copy
import hashlib
import json
import logging
import re
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable, Collection, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from koboldlair.errors import AnalysisError, InvalidDependencyGraphError
from koboldlair.models import (
    Feature,
    FeatureStatus,
    ImplementationStep,
    Specification,
    TaskPriority,
    TaskRecord,
    TaskStatus,
    WorkArea,
    WyvernAnalysis,
    WyvernTask,
    derive_feature_status,
    slugify,
    utcnow,
)

logger = logging.getLogger(__name__)

HEADING_PATTERN = re.compile(r"^(?P<marks>#{1,6})\s+(?P<title>.+?)\s*#*\s*$")
TASK_PATTERN = re.compile(r"^[-*]\s+(?:\[(?P<id>[^\]]*)\]\s*)?(?P<title>\S.*?)\s*$")
DEPENDS_SUFFIX_PATTERN = re.compile(
    r"\s*\((?:depends on|requires|after):\s*(?P<deps>[^)]*)\)\s*$", re.IGNORECASE
)
ATTRIBUTE_PATTERN = re.compile(r"^\s+[-*]\s+(?P<key>[A-Za-z][A-Za-z _]*?)\s*:\s*(?P<value>.*)$")
JSON_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(?P<body>.*?)```", re.DOTALL)
AREA_PREFIX_PATTERN = re.compile(r"^area\s*:\s*", re.IGNORECASE)

IGNORED_SECTIONS = frozenset(
    {"overview", "features", "notes", "non-goals", "non goals", "glossary", "summary"}
)
ATTRIBUTE_ALIASES = {
    "agent": "agent_type",
    "agent type": "agent_type",
    "agent_type": "agent_type",
    "priority": "priority",
    "feature": "feature",
    "depends on": "dependencies",
    "dependencies": "dependencies",
    "requires": "dependencies",
    "creates": "files_to_create",
    "create": "files_to_create",
    "modifies": "files_to_modify",
    "modify": "files_to_modify",
    "expects": "expected_content",
    "expect": "expected_content",
}

TextGenerator = Callable[[str], Awaitable[str]]


def content_hash(text: str) -> str:
    return hashlib.sha256(text.strip().encode("utf-8")).hexdigest()


def derive_task_id(area: str, name: str) -> str:
    return f"{slugify(area, max_length=24)}-{slugify(name)}"


def _split_list(value: str) -> list[str]:
    return [item.strip().strip("`") for item in value.split(",") if item.strip().strip("`")]


def _strip_quotes(value: str) -> str:
    value = value.strip()
    for quote in ("`", '"', "'"):
        if len(value) >= 2 and value.startswith(quote) and value.endswith(quote):
            return value[1:-1]
    return value


@dataclass(slots=True)
class _Section:
    title: str
    lines: list[str] = field(default_factory=list)


def split_sections(content: str) -> list[_Section]:
    """Split markdown into level-two sections; deeper headings stay in their section."""
    sections: list[_Section] = []
    current: _Section | None = None
    for line in content.splitlines():
        match = HEADING_PATTERN.match(line)
        if match and len(match.group("marks")) <= 2:
            current = None
            if len(match.group("marks")) == 2:
                current = _Section(title=AREA_PREFIX_PATTERN.sub("", match.group("title")).strip())
                sections.append(current)
            continue
        if current is not None:
            current.lines.append(line)
    return [
        section for section in sections if section.title.strip().lower() not in IGNORED_SECTIONS
    ]


def section_hashes(content: str) -> dict[str, str]:
    return {section.title: content_hash("\n".join(section.lines)) for section in split_sections(content)}


def compute_dependency_levels(tasks: Iterable[WyvernTask]) -> dict[str, int]:
    """Layer tasks so each sits one level above its deepest dependency.

    Uses Kahn's algorithm; the result is deterministic for a given input order.
    """
    ordered = list(tasks)
    by_id: dict[str, WyvernTask] = {}
    for task in ordered:
        if task.id in by_id:
            raise InvalidDependencyGraphError(f"Duplicate task id: {task.id}", tasks=[task.id])
        by_id[task.id] = task

    dependents: dict[str, list[str]] = {task.id: [] for task in ordered}
    indegree: dict[str, int] = {}
    for task in ordered:
        unique_deps = list(dict.fromkeys(task.dependencies))
        for dep_id in unique_deps:
            if dep_id == task.id:
                raise InvalidDependencyGraphError(
                    f"Task {task.id} depends on itself.", tasks=[task.id]
                )
            if dep_id not in by_id:
                raise InvalidDependencyGraphError(
                    f"Task {task.id} depends on unknown task {dep_id}.", tasks=[task.id, dep_id]
                )
            dependents[dep_id].append(task.id)
        indegree[task.id] = len(unique_deps)

    levels: dict[str, int] = {}
    queue = deque(task.id for task in ordered if indegree[task.id] == 0)
    for task_id in queue:
        levels[task_id] = 0
    while queue:
        current = queue.popleft()
        for dependent in dependents[current]:
            levels[dependent] = max(levels.get(dependent, 0), levels[current] + 1)
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                queue.append(dependent)

    if len(levels) < len(ordered) or any(indegree[task_id] for task_id in indegree):
        unresolved = [task.id for task in ordered if indegree[task.id] > 0]
        raise InvalidDependencyGraphError(
            f"Dependency cycle among: {', '.join(unresolved)}", tasks=unresolved
        )
    return levels


def _apply_levels(areas: list[WorkArea]) -> None:
    all_tasks = [task for area in areas for task in area.tasks]
    levels = compute_dependency_levels(all_tasks)
    for area in areas:
        source_order = {task.id: index for index, task in enumerate(area.tasks)}
        for task in area.tasks:
            task.dependency_level = levels[task.id]
        area.tasks.sort(
            key=lambda task: (task.dependency_level, -int(task.priority), source_order[task.id])
        )


class SpecificationDecomposer(ABC):
    @abstractmethod
    async def decompose(
        self, specification: Specification, areas: Collection[str] | None = None
    ) -> list[WorkArea]:
        """Turn a specification into work areas, optionally only the named ones."""

    def fingerprint(self, specification: Specification) -> dict[str, str]:
        return section_hashes(specification.content)


@dataclass(slots=True)
class _DraftTask:
    explicit_id: str | None
    name: str
    dependencies: list[str] = field(default_factory=list)
    description: list[str] = field(default_factory=list)
    agent_type: str | None = None
    priority: str | None = None
    feature: str | None = None
    files_to_create: list[str] = field(default_factory=list)
    files_to_modify: list[str] = field(default_factory=list)
    expected_content: list[str] = field(default_factory=list)


class MarkdownDecomposer(SpecificationDecomposer):
    """Reads task bullets straight out of the specification markdown.

    Each ``## Area`` section holds bullets like::

        - [be-models] Create user model (depends on: be-schema)
          - agent: python
          - creates: src/models.py
          - expects: class User
          Free-form description lines.
    """

    def __init__(self, default_agent_type: str = "coding") -> None:
        self.default_agent_type = default_agent_type

    def _parse_section(self, section: _Section) -> list[_DraftTask]:
        drafts: list[_DraftTask] = []
        current: _DraftTask | None = None
        for line in section.lines:
            if not line.strip():
                continue
            if not line[0].isspace():
                match = TASK_PATTERN.match(line)
                if match is None:
                    current = None
                    continue
                title = match.group("title")
                dependencies: list[str] = []
                suffix = DEPENDS_SUFFIX_PATTERN.search(title)
                if suffix:
                    dependencies = _split_list(suffix.group("deps"))
                    title = title[: suffix.start()].strip()
                explicit_id = (match.group("id") or "").strip()
                if explicit_id.lower() in {"", "x"}:
                    explicit_id = ""
                current = _DraftTask(
                    explicit_id=explicit_id or None, name=title, dependencies=dependencies
                )
                drafts.append(current)
                continue
            if current is None:
                continue
            attribute = ATTRIBUTE_PATTERN.match(line)
            key = ATTRIBUTE_ALIASES.get(attribute.group("key").strip().lower()) if attribute else None
            if attribute is None or key is None:
                current.description.append(line.strip().lstrip("-* ").strip())
                continue
            value = attribute.group("value").strip()
            if key == "dependencies":
                current.dependencies.extend(_split_list(value))
            elif key in {"files_to_create", "files_to_modify"}:
                getattr(current, key).extend(_split_list(value))
            elif key == "expected_content":
                current.expected_content.append(_strip_quotes(value))
            else:
                setattr(current, key, value)
        return drafts

    def _parse(self, content: str) -> list[WorkArea]:
        parsed: list[tuple[_Section, list[_DraftTask]]] = []
        for section in split_sections(content):
            drafts = self._parse_section(section)
            if drafts:
                parsed.append((section, drafts))

        lookup: dict[str, str] = {}
        built: list[tuple[_Section, list[tuple[WyvernTask, _DraftTask]]]] = []
        taken: set[str] = set()
        for section, drafts in parsed:
            tasks: list[tuple[WyvernTask, _DraftTask]] = []
            for draft in drafts:
                task_id = draft.explicit_id or derive_task_id(section.title, draft.name)
                if not draft.explicit_id and task_id in taken:
                    raise AnalysisError(
                        f"Task '{draft.name}' in '{section.title}' derives the id '{task_id}', "
                        "which is already taken; give it an explicit [id]."
                    )
                taken.add(task_id)
                lookup.setdefault(task_id, task_id)
                lookup.setdefault(draft.name.lower(), task_id)
                lookup.setdefault(slugify(draft.name), task_id)
                steps: list[ImplementationStep] = []
                if draft.files_to_create or draft.files_to_modify or draft.expected_content:
                    steps.append(
                        ImplementationStep(
                            index=1,
                            description=draft.name,
                            files_to_create=list(draft.files_to_create),
                            files_to_modify=list(draft.files_to_modify),
                            expected_content=list(draft.expected_content),
                        )
                    )
                task = WyvernTask(
                    id=task_id,
                    name=draft.name,
                    description=" ".join(draft.description).strip(),
                    agent_type=draft.agent_type or self.default_agent_type,
                    priority=TaskPriority.parse(draft.priority),
                    feature_id=draft.feature,
                    steps=steps,
                )
                tasks.append((task, draft))
            built.append((section, tasks))

        areas: list[WorkArea] = []
        for section, tasks in built:
            area = WorkArea(name=section.title, content_hash=content_hash("\n".join(section.lines)))
            for task, draft in tasks:
                task.dependencies = [
                    lookup.get(dep, lookup.get(dep.lower(), lookup.get(slugify(dep), dep)))
                    for dep in draft.dependencies
                ]
                area.tasks.append(task)
            areas.append(area)
        return areas

    async def decompose(
        self, specification: Specification, areas: Collection[str] | None = None
    ) -> list[WorkArea]:
        parsed = self._parse(specification.content)
        if areas is None:
            return parsed
        wanted = {name.lower() for name in areas}
        return [area for area in parsed if area.name.lower() in wanted]

    def fingerprint(self, specification: Specification) -> dict[str, str]:
        return {area.name: area.content_hash for area in self._parse(specification.content)}


def parse_analysis_payload(raw: str) -> dict:
    """Extract the JSON analysis object from an agent's reply."""
    text = raw.strip()
    fenced = JSON_FENCE_PATTERN.search(text)
    if fenced:
        text = fenced.group("body").strip()
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        raise AnalysisError("Analysis reply does not contain a JSON object.")
    try:
        payload = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise AnalysisError(f"Analysis reply is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("areas"), list):
        raise AnalysisError("Analysis JSON must contain an 'areas' list.")
    return payload


class AgentDecomposer(SpecificationDecomposer):
    """Delegates decomposition to an external text generator returning JSON."""

    def __init__(self, generate: TextGenerator, *, default_agent_type: str = "coding") -> None:
        self.generate = generate
        self.default_agent_type = default_agent_type

    @staticmethod
    def build_prompt(specification: Specification, areas: Collection[str] | None = None) -> str:
        lines = [
            "Break the following specification into work areas and tasks.",
            'Reply with JSON: {"areas": [{"name": str, "tasks": [{"id": str, "name": str, '
            '"description": str, "agent_type": str, "priority": str, "dependencies": [str], '
            '"feature": str, "files_to_create": [str], "files_to_modify": [str], '
            '"expected_content": [str]}]}]}',
        ]
        if areas:
            lines.append(f"Only produce these areas: {', '.join(sorted(areas))}")
        new_features = [
            feature for feature in specification.features if feature.status == FeatureStatus.NEW
        ]
        if new_features:
            lines.append("New features:")
            lines.extend(f"- {feature.name}: {feature.description}" for feature in new_features)
        lines.extend(["", "Specification:", specification.content])
        return "\n".join(lines)

    def _task_from_payload(self, area_name: str, item: Mapping) -> WyvernTask:
        if not isinstance(item, Mapping) or not item.get("name"):
            raise AnalysisError(f"Task entries in area {area_name} need a name.")
        name = str(item["name"])
        files_to_create = [str(path) for path in item.get("files_to_create", [])]
        files_to_modify = [str(path) for path in item.get("files_to_modify", [])]
        expected = [str(value) for value in item.get("expected_content", [])]
        steps = []
        if files_to_create or files_to_modify or expected:
            steps.append(
                ImplementationStep(
                    index=1,
                    description=name,
                    files_to_create=files_to_create,
                    files_to_modify=files_to_modify,
                    expected_content=expected,
                )
            )
        return WyvernTask(
            id=str(item.get("id") or derive_task_id(area_name, name)),
            name=name,
            description=str(item.get("description", "")),
            agent_type=str(item.get("agent_type") or self.default_agent_type),
            dependencies=[str(dep) for dep in item.get("dependencies", [])],
            priority=TaskPriority.parse(item.get("priority")),
            feature_id=item.get("feature") or item.get("feature_id"),
            steps=steps,
        )

    async def decompose(
        self, specification: Specification, areas: Collection[str] | None = None
    ) -> list[WorkArea]:
        payload = parse_analysis_payload(await self.generate(self.build_prompt(specification, areas)))
        hashes = section_hashes(specification.content)
        wanted = {name.lower() for name in areas} if areas is not None else None
        result: list[WorkArea] = []
        for raw_area in payload["areas"]:
            name = str(raw_area.get("name") or "").strip()
            if not name:
                raise AnalysisError("Every analysis area needs a name.")
            if wanted is not None and name.lower() not in wanted:
                continue
            tasks = [self._task_from_payload(name, item) for item in raw_area.get("tasks", [])]
            fallback_hash = content_hash(json.dumps(raw_area, sort_keys=True))
            result.append(
                WorkArea(name=name, tasks=tasks, content_hash=hashes.get(name, fallback_hash))
            )
        return result


class Analyzer:
    """Wyvern: turns a specification into leveled work areas."""

    def __init__(self, decomposer: SpecificationDecomposer) -> None:
        self.decomposer = decomposer

    async def analyze(self, project_name: str, specification: Specification) -> WyvernAnalysis:
        areas = await self.decomposer.decompose(specification)
        _apply_levels(areas)
        analysis = WyvernAnalysis(
            project_name=project_name,
            areas=areas,
            analyzed_at=utcnow(),
            specification_version=specification.version,
            processed_features=[feature.id for feature in specification.features],
            reprocessed_areas=[area.name for area in areas],
        )
        logger.info(
            "Analyzed %s: %d area(s), %d task(s)", project_name, len(areas), analysis.total_tasks
        )
        return analysis

    def changed_areas(self, previous: WyvernAnalysis, specification: Specification) -> list[str]:
        current = self.decomposer.fingerprint(specification)
        known = {area.name: area.content_hash for area in previous.areas}
        changed = [name for name, digest in current.items() if known.get(name) != digest]
        changed.extend(name for name in known if name not in current)
        return changed

    async def reanalyze(
        self,
        previous: WyvernAnalysis,
        specification: Specification,
        changed: Collection[str] | None = None,
    ) -> WyvernAnalysis:
        """Re-decompose only changed areas; untouched areas are kept as they were."""
        targets = list(changed) if changed is not None else self.changed_areas(previous, specification)
        fresh = await self.decomposer.decompose(specification, areas=targets) if targets else []
        fresh_by_name = {area.name: area for area in fresh}
        target_names = {name.lower() for name in targets}

        merged: list[WorkArea] = []
        for area in previous.areas:
            if area.name in fresh_by_name:
                merged.append(fresh_by_name.pop(area.name))
            elif area.name.lower() not in target_names:
                merged.append(copy.deepcopy(area))
        merged.extend(fresh_by_name.values())
        _apply_levels(merged)

        known_features = set(previous.processed_features)
        analysis = WyvernAnalysis(
            project_name=previous.project_name,
            areas=merged,
            analyzed_at=utcnow(),
            specification_version=specification.version,
            processed_features=[
                *previous.processed_features,
                *(f.id for f in specification.features if f.id not in known_features),
            ],
            reprocessed_areas=sorted(targets),
        )
        logger.info(
            "Reanalyzed %s: %d changed area(s) of %d",
            previous.project_name,
            len(targets),
            len(merged),
        )
        return analysis

    @staticmethod
    def assign_features(features: Iterable[Feature]) -> list[Feature]:
        assigned: list[Feature] = []
        for feature in features:
            if feature.status == FeatureStatus.NEW:
                feature.status = FeatureStatus.ASSIGNED_TO_ANALYZER
                feature.updated_at = utcnow()
                assigned.append(feature)
        return assigned

    @staticmethod
    def link_tasks_to_features(analysis: WyvernAnalysis, features: Iterable[Feature]) -> None:
        """Attach tasks to features by explicit reference or by name mention."""
        features = list(features)
        for feature in features:
            feature.task_ids = []
        for area in analysis.areas:
            for task in area.tasks:
                haystack = f"{task.name} {task.description}".lower()
                for feature in features:
                    explicit = task.feature_id is not None and task.feature_id.lower() in {
                        feature.id.lower(),
                        feature.name.lower(),
                        slugify(feature.name),
                    }
                    mentioned = task.feature_id is None and feature.name.lower() in haystack
                    if explicit or mentioned:
                        task.feature_id = feature.id
                        feature.task_ids.append(task.id)
                        break

    @staticmethod
    def update_feature_status(
        features: Iterable[Feature], statuses: Mapping[str, TaskStatus]
    ) -> list[Feature]:
        changed: list[Feature] = []
        for feature in features:
            new_status = derive_feature_status(
                feature.status, (statuses.get(task_id) for task_id in feature.task_ids)
            )
            if new_status != feature.status:
                feature.status = new_status
                feature.updated_at = utcnow()
                changed.append(feature)
        return changed

    @staticmethod
    def build_task_records(
        analysis: WyvernAnalysis,
        project_id: str,
        working_directory: Path | None = None,
    ) -> list[TaskRecord]:
        created_at = utcnow()
        records: list[TaskRecord] = []
        for area in analysis.areas:
            for task in area.tasks:
                description = task.name
                if task.description:
                    description = f"{task.name}: {task.description}"
                records.append(
                    TaskRecord(
                        id=task.id,
                        description=description,
                        area=area.name,
                        agent_type=task.agent_type,
                        dependencies=list(task.dependencies),
                        dependency_level=task.dependency_level,
                        priority=task.priority,
                        feature_id=task.feature_id,
                        project_id=project_id,
                        working_directory=str(working_directory) if working_directory else None,
                        steps=copy.deepcopy(task.steps),
                        created_at=created_at,
                        updated_at=created_at,
                    )
                )
        return records

    @staticmethod
    def generate_report(analysis: WyvernAnalysis) -> str:
        lines = [
            f"# Wyvern Analysis: {analysis.project_name}",
            f"Analyzed: {analysis.analyzed_at.replace(microsecond=0).isoformat()}",
            f"Specification version: {analysis.specification_version}",
            f"Total Tasks: {analysis.total_tasks}",
        ]
        for area in analysis.areas:
            lines.extend(["", f"## {area.name}"])
            for task in sorted(area.tasks, key=lambda item: item.dependency_level):
                line = f"- [{task.id}] {task.name} (Level {task.dependency_level})"
                if task.dependencies:
                    line += f" after {', '.join(task.dependencies)}"
                lines.append(line)
        return "\n".join(lines) + "\n"
