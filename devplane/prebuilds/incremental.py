"""Select an earlier prebuild to use as the base of an incremental build."""

from __future__ import annotations

import enum
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Optional
from uuid import UUID

from devplane.prebuilds.models import PrebuildState, PrebuiltWorkspace
from devplane.telemetry import trace_span
from devplane.workspaces.config import (
    WorkspaceConfig,
    filter_prebuild_tasks,
    resolve_image_source,
)
from devplane.workspaces.context import CommitContext, CommitHistory
from devplane.workspaces.repositories import PrebuildWithWorkspace, WorkspaceRepository

if TYPE_CHECKING:
    from api_service.db.models import User

logger = logging.getLogger(__name__)


class Match(enum.IntEnum):
    NONE = 0
    LOOSE = 1
    EXACT = 2


def _accepted_states(include_unfinished_prebuilds: bool) -> frozenset[PrebuildState]:
    if include_unfinished_prebuilds:
        return frozenset(
            {PrebuildState.AVAILABLE, PrebuildState.BUILDING, PrebuildState.QUEUED}
        )
    return frozenset({PrebuildState.AVAILABLE})


def classify_candidate(
    candidate: PrebuildWithWorkspace,
    candidate_context: Optional[CommitContext],
    *,
    history: CommitHistory,
    image_source: dict[str, Any],
    config: Optional[WorkspaceConfig],
    accepted_states: frozenset[PrebuildState],
) -> Match:
    """Grade how well ``candidate`` serves as a base for ``history[0]``."""

    commit_history = history.commit_history or ()
    if PrebuildState(candidate.prebuild.state) not in accepted_states:
        return Match.NONE
    if candidate_context is None:
        return Match.NONE
    # Incremental prebuilds are never bases themselves.
    if candidate.workspace.based_on_prebuild_id is not None:
        return Match.NONE
    if len(candidate_context.additional_repository_checkout_info) != len(
        history.additional_repository_commit_histories
    ):
        return Match.NONE
    if candidate_context.revision not in commit_history:
        return Match.NONE
    for info in candidate_context.additional_repository_checkout_info:
        repository_history = history.for_clone_url(info.repository.clone_url)
        if repository_history is None or info.revision not in repository_history:
            return Match.NONE
    if dict(candidate.workspace.image_source or {}) != image_source:
        return Match.NONE
    candidate_tasks = filter_prebuild_tasks((candidate.workspace.config or {}).get("tasks"))
    requested_tasks = filter_prebuild_tasks(config.tasks if config else ())
    if candidate_tasks != requested_tasks:
        return Match.NONE
    if candidate_context.revision == commit_history[0]:
        return Match.EXACT
    return Match.LOOSE


class IncrementalMatchService:
    def __init__(self, workspaces: WorkspaceRepository, *, default_image: str) -> None:
        self._workspaces = workspaces
        self._default_image = default_image

    async def find_base_for_incremental_workspace(
        self,
        context: CommitContext,
        config: Optional[WorkspaceConfig],
        history: CommitHistory,
        user: Optional["User"],
        project_id: Optional[UUID],
        *,
        include_unfinished_prebuilds: bool = False,
    ) -> Optional[PrebuiltWorkspace]:
        """Return the prebuild closest to the tip of ``history`` that can be reused.

        Candidates are visited in commit-history order, so the nearest ancestor
        wins regardless of when its prebuild was created.
        """

        if not history.commit_history or project_id is None:
            return None

        with trace_span(
            "find_base_for_incremental_workspace",
            project_id=str(project_id),
            include_unfinished=include_unfinished_prebuilds,
        ) as span:
            image_source = resolve_image_source(
                context, config, default_image=self._default_image
            )
            accepted_states = _accepted_states(include_unfinished_prebuilds)

            by_revision: dict[str, list[tuple[PrebuildWithWorkspace, CommitContext]]] = (
                defaultdict(list)
            )
            for candidate in await self._workspaces.find_prebuilds_with_workspace(project_id):
                candidate_context = CommitContext.from_storage(candidate.workspace.context)
                if candidate_context is None:
                    continue
                by_revision[candidate_context.revision].append(
                    (candidate, candidate_context)
                )

            for commit in history.commit_history:
                for candidate, candidate_context in by_revision.get(commit, ()):
                    match = classify_candidate(
                        candidate,
                        candidate_context,
                        history=history,
                        image_source=image_source,
                        config=config,
                        accepted_states=accepted_states,
                    )
                    logger.debug(
                        "Incremental candidate %s for %s: %s",
                        candidate.prebuild.id,
                        commit,
                        match.name,
                    )
                    if match > Match.NONE:
                        span.set_tag("match", match.name)
                        span.set_tag("base_prebuild_id", str(candidate.prebuild.id))
                        return candidate.prebuild
            span.set_tag("match", Match.NONE.name)
            return None

    async def find_good_base_for_incremental_build(
        self,
        context: CommitContext,
        config: Optional[WorkspaceConfig],
        history: CommitHistory,
        user: Optional["User"],
        project_id: Optional[UUID],
        *,
        include_unfinished_prebuilds: bool = False,
    ) -> Optional[PrebuiltWorkspace]:
        return await self.find_base_for_incremental_workspace(
            context,
            config,
            history,
            user,
            project_id,
            include_unfinished_prebuilds=include_unfinished_prebuilds,
        )


__all__ = ["IncrementalMatchService", "Match", "classify_candidate"]
