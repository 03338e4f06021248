"""
Project store interface plus in-memory and YAML-file implementations.

The stage runner treats the store as authoritative: it re-reads the project
before each stage instead of caching it between stages.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Protocol

import yaml

from bookstudio.common.errors import NotFoundError, StorageError
from bookstudio.common.retry import SleepFn, backoff_delay
from bookstudio.common.stages import ProjectStage
from bookstudio.story_generation.context import select_project_characters
from bookstudio.story_generation.project import Character, KnowledgeBaseSummary, Project

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectPatch:
    """Partial update: an optional new stage pointer and artifacts to merge."""

    current_stage: ProjectStage | None = None
    artifacts: Mapping[str, Any] = field(default_factory=dict)


class ProjectStore(Protocol):
    async def get_project(self, project_id: str) -> Project: ...

    async def update_project(self, project_id: str, patch: ProjectPatch) -> Project: ...

    async def get_artifact_content(self, project_id: str, stage: ProjectStage | str) -> Any: ...

    async def get_characters(self, project_id: str) -> list[Character]: ...

    async def get_kb_summary(self, project_id: str) -> KnowledgeBaseSummary | None: ...


class InMemoryProjectStore:
    """
    Dict-backed store used by tests and short-lived scripts.

    Parameters
    ----------
    projects:
        Initial projects.
    characters:
        Character library shared by every project; each project sees only its
        selected ids.
    kb_summaries:
        Knowledge-base summary per project id.
    """

    def __init__(
        self,
        projects: Iterable[Project] = (),
        *,
        characters: Iterable[Character] = (),
        kb_summaries: Mapping[str, KnowledgeBaseSummary] | None = None,
    ) -> None:
        self._projects: dict[str, Project] = {project.id: project for project in projects}
        self._characters: list[Character] = list(characters)
        self._kb_summaries: dict[str, KnowledgeBaseSummary] = dict(kb_summaries or {})
        self.update_count = 0

    def add_project(self, project: Project) -> None:
        self._projects[project.id] = project

    async def get_project(self, project_id: str) -> Project:
        try:
            return self._projects[project_id]
        except KeyError:
            raise NotFoundError(f"Project {project_id!r} not found.") from None

    async def update_project(self, project_id: str, patch: ProjectPatch) -> Project:
        project = await self.get_project(project_id)
        updated = project.with_updates(current_stage=patch.current_stage, artifacts=patch.artifacts)
        self._projects[project_id] = updated
        self.update_count += 1
        return updated

    async def get_artifact_content(self, project_id: str, stage: ProjectStage | str) -> Any:
        project = await self.get_project(project_id)
        return project.artifact(stage)

    async def get_characters(self, project_id: str) -> list[Character]:
        project = await self.get_project(project_id)
        return select_project_characters(project, self._characters)

    async def get_kb_summary(self, project_id: str) -> KnowledgeBaseSummary | None:
        return self._kb_summaries.get(project_id)


class YamlProjectStore:
    """
    One ``<project_id>.yaml`` file per project inside ``directory``.

    Each file holds the project mapping and may also carry ``characters``
    (list of character mappings) and ``knowledge_base`` (mapping); those extra
    keys are preserved on every write.
    """

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)

    def path_for(self, project_id: str) -> Path:
        return self._directory / f"{project_id}.yaml"

    def _read(self, project_id: str) -> dict[str, Any]:
        path = self.path_for(project_id)
        if not path.exists():
            raise NotFoundError(f"Project {project_id!r} not found in {self._directory}.")
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise StorageError(f"Could not read {path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise StorageError(f"Project file {path} must deserialize to a mapping.")
        return dict(data)

    def _write(self, project_id: str, data: Mapping[str, Any]) -> None:
        path = self.path_for(project_id)
        tmp_path = path.with_suffix(".yaml.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(
                yaml.safe_dump(dict(data), sort_keys=False, allow_unicode=True),
                encoding="utf-8",
            )
            tmp_path.replace(path)
        except (OSError, yaml.YAMLError) as exc:
            raise StorageError(f"Could not write {path}: {exc}") from exc

    def save_project(self, project: Project, **extra: Any) -> Path:
        """Write ``project`` (plus optional extra top-level keys) to its file."""
        payload = project.to_dict()
        payload.update(extra)
        self._write(project.id, payload)
        return self.path_for(project.id)

    async def get_project(self, project_id: str) -> Project:
        data = await asyncio.to_thread(self._read, project_id)
        return Project.from_mapping(data)

    async def update_project(self, project_id: str, patch: ProjectPatch) -> Project:
        def _update() -> Project:
            raw = self._read(project_id)
            project = Project.from_mapping(raw)
            updated = project.with_updates(current_stage=patch.current_stage, artifacts=patch.artifacts)
            raw.update(updated.to_dict())
            self._write(project_id, raw)
            return updated

        return await asyncio.to_thread(_update)

    async def get_artifact_content(self, project_id: str, stage: ProjectStage | str) -> Any:
        project = await self.get_project(project_id)
        return project.artifact(stage)

    async def get_characters(self, project_id: str) -> list[Character]:
        raw = await asyncio.to_thread(self._read, project_id)
        project = Project.from_mapping(raw)
        characters = [Character.from_mapping(entry) for entry in raw.get("characters") or []]
        return select_project_characters(project, characters)

    async def get_kb_summary(self, project_id: str) -> KnowledgeBaseSummary | None:
        raw = await asyncio.to_thread(self._read, project_id)
        kb = raw.get("knowledge_base")
        return KnowledgeBaseSummary.from_mapping(kb) if kb else None


async def persist_with_retry(
    store: ProjectStore,
    project_id: str,
    patch: ProjectPatch,
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    sleep: SleepFn = asyncio.sleep,
) -> Project:
    """
    Apply ``patch`` with up to ``attempts`` tries.

    Raises :class:`StorageError` once every attempt has failed.
    """
    last_error: Exception | None = None
    for attempt in range(max(attempts, 1)):
        try:
            return await store.update_project(project_id, patch)
        except (StorageError, OSError) as exc:
            last_error = exc
            logger.warning(
                "Persisting project %s failed (attempt %s/%s): %s",
                project_id,
                attempt + 1,
                attempts,
                exc,
            )
            if attempt + 1 < attempts:
                await sleep(backoff_delay(base_delay, attempt))

    raise StorageError(
        f"Could not persist project {project_id} after {attempts} attempts: {last_error}",
        details={"project_id": project_id, "attempts": attempts},
    ) from last_error
