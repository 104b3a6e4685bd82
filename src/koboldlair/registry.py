from __future__ import annotations

import json
import logging
import os
import shutil
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from koboldlair.errors import NotFoundError, RegistryError
from koboldlair.models import Feature, Project, WyvernAnalysis, slugify
from koboldlair.tracker import TaskTracker

logger = logging.getLogger(__name__)

PROJECT_FILE = "project.json"
TASKS_FILE = "tasks.json"
ANALYSIS_FILE = "analysis.json"
ANALYSIS_REPORT = "analysis.md"
SPECIFICATION_FILE = "specification.md"
FEATURES_FILE = "specification.features.json"


class ProjectRegistry:
    """File-backed project store, one directory per project.

    JSON documents are wrapped in an envelope whose revision grows with every
    write. Writes are serialized through a lock file and land atomically.
    """

    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RegistryError(f"Cannot create registry root {self.root}: {exc}") from exc
        self.lock_file = self.root / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def project_dir(self, project_id: str) -> Path:
        safe_id = slugify(project_id, max_length=64)
        if safe_id != project_id:
            raise RegistryError(f"Invalid project id: {project_id}")
        return self.root / project_id

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise RegistryError("Timed out waiting for registry lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise RegistryError(f"Cannot read {path}: {exc}") from exc

    def _write_text(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = path.with_suffix(path.suffix + ".tmp")
            temp_path.write_text(content, encoding="utf-8")
            os.replace(temp_path, path)
        except OSError as exc:
            raise RegistryError(f"Cannot write {path}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0 if raw_payload is None else 1,
            "updated_at": self._utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, path: Path, default: Any | None = None) -> dict[str, Any]:
        return self._normalize_envelope(self._read_raw_json(path), {} if default is None else default)

    def set_json(self, path: Path, data: Any) -> int:
        """Write ``data`` under a fresh envelope and return the new revision."""
        with self._state_lock():
            revision = int(self.get_envelope(path).get("revision", 0)) + 1
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            self._write_text(path, json.dumps(envelope, ensure_ascii=False, indent=2))
            return revision

    def exists(self, project_id: str) -> bool:
        return (self.project_dir(project_id) / PROJECT_FILE).exists()

    def list_projects(self) -> list[str]:
        return sorted(
            path.parent.name for path in self.root.glob(f"*/{PROJECT_FILE}") if path.is_file()
        )

    def save_project(self, project: Project) -> int:
        directory = self.project_dir(project.id)
        self._write_text(directory / SPECIFICATION_FILE, project.specification.content)
        self._write_text(
            directory / FEATURES_FILE,
            json.dumps(
                [feature.to_dict() for feature in project.specification.features],
                ensure_ascii=False,
                indent=2,
            ),
        )
        return self.set_json(directory / PROJECT_FILE, project.to_dict())

    def save_tasks(self, project_id: str, tracker: TaskTracker) -> None:
        directory = self.project_dir(project_id)
        self.set_json(directory / TASKS_FILE, tracker.to_dict())
        for area in tracker.areas():
            report = tracker.generate_markdown(area)
            self._write_text(directory / f"{slugify(area)}-tasks.md", report)

    def save_analysis(self, project_id: str, analysis: WyvernAnalysis, report: str) -> None:
        directory = self.project_dir(project_id)
        self.set_json(directory / ANALYSIS_FILE, analysis.to_dict())
        self._write_text(directory / ANALYSIS_REPORT, report)

    def load_project(self, project_id: str) -> Project:
        directory = self.project_dir(project_id)
        raw = self._read_raw_json(directory / PROJECT_FILE)
        if raw is None:
            raise NotFoundError(f"Unknown project: {project_id}")
        data = self._normalize_envelope(raw, {})["data"]
        spec_path = directory / SPECIFICATION_FILE
        try:
            content = spec_path.read_text(encoding="utf-8") if spec_path.exists() else ""
        except OSError as exc:
            raise RegistryError(f"Cannot read {spec_path}: {exc}") from exc
        try:
            project = Project.from_dict(data, content)
        except (KeyError, ValueError) as exc:
            raise RegistryError(f"Corrupt project document for {project_id}: {exc}") from exc
        features = self._read_raw_json(directory / FEATURES_FILE)
        if isinstance(features, list):
            project.specification.features = [Feature.from_dict(item) for item in features]
        return project

    def load_tasks(self, project_id: str, *, max_retries: int | None = None) -> TaskTracker | None:
        raw = self._read_raw_json(self.project_dir(project_id) / TASKS_FILE)
        if raw is None:
            return None
        data = self._normalize_envelope(raw, {})["data"]
        try:
            return TaskTracker.from_dict(data, max_retries=max_retries)
        except (KeyError, ValueError) as exc:
            raise RegistryError(f"Corrupt task document for {project_id}: {exc}") from exc

    def load_analysis(self, project_id: str) -> WyvernAnalysis | None:
        raw = self._read_raw_json(self.project_dir(project_id) / ANALYSIS_FILE)
        if raw is None:
            return None
        data = self._normalize_envelope(raw, {})["data"]
        try:
            return WyvernAnalysis.from_dict(data)
        except (KeyError, ValueError) as exc:
            raise RegistryError(f"Corrupt analysis document for {project_id}: {exc}") from exc

    def remove_project(self, project_id: str) -> None:
        directory = self.project_dir(project_id)
        if not directory.exists():
            raise NotFoundError(f"Unknown project: {project_id}")
        with self._state_lock():
            try:
                shutil.rmtree(directory)
            except OSError as exc:
                raise RegistryError(f"Cannot remove {directory}: {exc}") from exc
        logger.info("Removed project %s from registry", project_id)
