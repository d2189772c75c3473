"""Commit history lookup for the repositories of a commit context."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from devplane.hosts.base import HostContextProvider
from devplane.telemetry import trace_span
from devplane.workspaces.context import (
    CommitContext,
    CommitHistory,
    RepositoryCommitHistory,
)

if TYPE_CHECKING:
    from api_service.db.models import User

logger = logging.getLogger(__name__)

MAX_HISTORY_DEPTH = 100


def _with_tip(revision: str, ancestors: list[str], depth: int) -> tuple[str, ...]:
    if ancestors and ancestors[0] == revision:
        ancestors = ancestors[1:]
    return tuple([revision, *ancestors][:depth])


class CommitHistoryService:
    """Fetch newest-first history, tip included, for every involved repository."""

    def __init__(
        self,
        hosts: HostContextProvider,
        *,
        max_depth: int = MAX_HISTORY_DEPTH,
    ) -> None:
        self._hosts = hosts
        self._max_depth = max(1, int(max_depth))

    async def get_commit_history_for_context(
        self, context: CommitContext, user: Optional["User"]
    ) -> CommitHistory:
        repository = context.repository
        with trace_span(
            "get_commit_history_for_context", clone_url=repository.clone_url
        ) as span:
            provider = self._hosts.get_repository_provider(repository.host)
            if provider is None:
                logger.debug(
                    "No repository provider for %s; skipping commit history",
                    repository.host,
                )
                span.set_tag("provider", "missing")
                return CommitHistory()

            ancestors = await provider.get_commit_history(
                user,
                repository.owner,
                repository.name,
                context.revision,
                self._max_depth,
            )
            commit_history = _with_tip(context.revision, list(ancestors), self._max_depth)

            additional: list[RepositoryCommitHistory] = []
            for info in context.additional_repository_checkout_info:
                additional_provider = self._hosts.get_repository_provider(
                    info.repository.host
                )
                if additional_provider is None:
                    continue
                additional_ancestors = await additional_provider.get_commit_history(
                    user,
                    info.repository.owner,
                    info.repository.name,
                    info.revision,
                    self._max_depth,
                )
                additional.append(
                    RepositoryCommitHistory(
                        clone_url=info.repository.clone_url,
                        commit_history=_with_tip(
                            info.revision, list(additional_ancestors), self._max_depth
                        ),
                    )
                )
            span.set_tag("depth", len(commit_history))
            return CommitHistory(
                commit_history=commit_history,
                additional_repository_commit_histories=tuple(additional),
            )


__all__ = ["CommitHistoryService", "MAX_HISTORY_DEPTH"]
