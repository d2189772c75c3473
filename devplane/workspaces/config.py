"""Workspace build configuration and its resolution from repositories."""

from __future__ import annotations

import enum
import logging
from typing import TYPE_CHECKING, Any, Iterable, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from devplane.errors import ApplicationError, ErrorCode
from devplane.telemetry import trace_span
from devplane.workspaces.context import CommitContext

if TYPE_CHECKING:
    from api_service.db.models import User
    from devplane.hosts.base import HostContextProvider
    from devplane.projects.repositories import ProjectRepository

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".gitpod.yml"
PREBUILD_TASK_KEYS = ("before", "init", "prebuild")


class ConfigOrigin(str, enum.Enum):
    REPO = "repo"
    DERIVED = "derived"
    DEFAULT = "default"
    DEFINITELY_GP = "definitely-gp"


class WorkspaceConfig(BaseModel):
    """Parsed ``.gitpod.yml`` plus where it came from.

    Unknown keys are kept so the stored config round-trips.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    origin: Optional[ConfigOrigin] = Field(None, alias="_origin")
    image: Optional[Union[str, dict[str, Any]]] = Field(None, alias="image")
    tasks: tuple[dict[str, Any], ...] = Field((), alias="tasks")
    checkout_location: Optional[str] = Field(None, alias="checkoutLocation")
    workspace_location: Optional[str] = Field(None, alias="workspaceLocation")
    additional_repositories: tuple[dict[str, Any], ...] = Field(
        (), alias="additionalRepositories"
    )

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_storage(cls, data: Optional[dict[str, Any]]) -> Optional["WorkspaceConfig"]:
        if not data:
            return None
        try:
            return cls.model_validate(data)
        except ValidationError:
            logger.warning("Ignoring unreadable stored workspace config")
            return None


def filter_prebuild_tasks(tasks: Optional[Iterable[dict[str, Any]]]) -> list[dict[str, Any]]:
    """Reduce tasks to their prebuild-relevant keys, dropping tasks left empty."""

    filtered: list[dict[str, Any]] = []
    for task in tasks or ():
        reduced = {key: task[key] for key in task if key in PREBUILD_TASK_KEYS}
        if reduced:
            filtered.append(reduced)
    return filtered


def has_prebuild_task(config: WorkspaceConfig) -> bool:
    return any(
        any(task.get(key) for key in PREBUILD_TASK_KEYS) for task in config.tasks
    )


def resolve_image_source(
    context: CommitContext,
    config: Optional[WorkspaceConfig],
    *,
    default_image: str,
) -> dict[str, Any]:
    """Describe which image a workspace for ``(context, config)`` is built from."""

    image = config.image if config is not None else None
    if isinstance(image, str) and image.strip():
        return {"baseImageResolved": image.strip()}
    if isinstance(image, dict) and image.get("file"):
        return {
            "dockerFilePath": str(image["file"]),
            "dockerContext": str(image.get("context") or "."),
            "dockerFileSource": {"cloneUrl": context.repository.clone_url},
        }
    return {"baseImageResolved": default_image}


class ConfigParseError(ApplicationError):
    """Raised when a repository's configuration file is not valid YAML."""

    def __init__(self, source: str, detail: str) -> None:
        super().__init__(
            ErrorCode.BAD_REQUEST,
            f"Invalid {CONFIG_FILE_NAME} in {source}: {detail}",
            {"source": source},
        )


def parse_config(content: str, *, origin: ConfigOrigin, source: str) -> WorkspaceConfig:
    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ConfigParseError(source, str(exc)) from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigParseError(source, "top level must be a mapping")
    raw = dict(raw)
    raw["_origin"] = origin.value
    tasks = raw.get("tasks")
    if tasks is None:
        raw["tasks"] = []
    elif not isinstance(tasks, list) or not all(isinstance(t, dict) for t in tasks):
        raise ConfigParseError(source, "tasks must be a list of mappings")
    try:
        return WorkspaceConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigParseError(source, str(exc)) from exc


class ConfigResolver:
    """Fetch the configuration a workspace for a commit context would use.

    Lookup order: the repository's own file at the revision, the project's
    stored configuration, then an empty default.
    """

    def __init__(
        self,
        hosts: "HostContextProvider",
        *,
        projects: Optional["ProjectRepository"] = None,
        default_image: str,
    ) -> None:
        self._hosts = hosts
        self._projects = projects
        self._default_image = default_image

    async def fetch_config(
        self,
        user: "User",
        context: CommitContext,
        organization_id: Any = None,
    ) -> WorkspaceConfig:
        repository = context.repository
        with trace_span("fetch_config", clone_url=repository.clone_url) as span:
            provider = self._hosts.get_repository_provider(repository.host)
            if provider is not None:
                content = await provider.get_file_content(
                    user,
                    repository.owner,
                    repository.name,
                    context.revision,
                    CONFIG_FILE_NAME,
                )
                if content is not None:
                    span.set_tag("origin", ConfigOrigin.REPO.value)
                    return parse_config(
                        content,
                        origin=ConfigOrigin.REPO,
                        source=repository.clone_url,
                    )

            if self._projects is not None:
                projects = await self._projects.find_projects_by_clone_url(
                    repository.clone_url, team_id=organization_id
                )
                for project in projects:
                    stored = (project.config or {}).get(CONFIG_FILE_NAME)
                    if isinstance(stored, str) and stored.strip():
                        span.set_tag("origin", ConfigOrigin.DERIVED.value)
                        return parse_config(
                            stored,
                            origin=ConfigOrigin.DERIVED,
                            source=f"project {project.id}",
                        )

            span.set_tag("origin", ConfigOrigin.DEFAULT.value)
            return WorkspaceConfig(
                origin=ConfigOrigin.DEFAULT, image=self._default_image
            )


__all__ = [
    "CONFIG_FILE_NAME",
    "ConfigOrigin",
    "ConfigParseError",
    "ConfigResolver",
    "WorkspaceConfig",
    "filter_prebuild_tasks",
    "has_prebuild_task",
    "parse_config",
    "resolve_image_source",
]
