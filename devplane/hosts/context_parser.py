"""Turn git host web URLs into commit contexts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import parse_qs, unquote, urlsplit

from devplane.errors import ApplicationError, ErrorCode
from devplane.hosts.base import HostContextProvider, HostKind, RepositoryProvider
from devplane.telemetry import trace_span
from devplane.workspaces.context import (
    AdditionalRepositoryCheckoutInfo,
    CommitContext,
    RefType,
)

if TYPE_CHECKING:
    from api_service.db.models import User
    from devplane.workspaces.config import WorkspaceConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ParsedContextUrl:
    host: str
    owner: str
    repo: str
    ref: Optional[str] = None
    revision: Optional[str] = None


def _segments(path: str) -> list[str]:
    return [unquote(segment) for segment in path.split("/") if segment]


def _strip_git(name: str) -> str:
    return name[:-4] if name.endswith(".git") else name


def _strip_heads(ref: Optional[str]) -> Optional[str]:
    if ref and ref.startswith("refs/heads/"):
        return ref[len("refs/heads/"):]
    return ref


def _parse_github(host: str, segments: list[str], query: dict[str, list[str]]) -> ParsedContextUrl:
    owner, repo, rest = segments[0], _strip_git(segments[1]), segments[2:]
    if len(rest) >= 2 and rest[0] == "tree":
        return ParsedContextUrl(host, owner, repo, ref="/".join(rest[1:]))
    if len(rest) >= 2 and rest[0] == "commit":
        return ParsedContextUrl(host, owner, repo, revision=rest[1])
    return ParsedContextUrl(host, owner, repo)


def _parse_gitlab(host: str, segments: list[str], query: dict[str, list[str]]) -> ParsedContextUrl:
    if "-" in segments:
        index = segments.index("-")
        repo_segments, rest = segments[:index], segments[index + 1:]
    else:
        repo_segments, rest = segments, []
    if len(repo_segments) < 2:
        raise ValueError("missing GitLab namespace")
    owner = "/".join(repo_segments[:-1])
    repo = _strip_git(repo_segments[-1])
    if len(rest) >= 2 and rest[0] == "tree":
        return ParsedContextUrl(host, owner, repo, ref="/".join(rest[1:]))
    if len(rest) >= 2 and rest[0] == "commit":
        return ParsedContextUrl(host, owner, repo, revision=rest[1])
    return ParsedContextUrl(host, owner, repo)


def _parse_bitbucket(host: str, segments: list[str], query: dict[str, list[str]]) -> ParsedContextUrl:
    owner, repo, rest = segments[0], _strip_git(segments[1]), segments[2:]
    at = _strip_heads((query.get("at") or [None])[0])
    if len(rest) >= 2 and rest[0] == "src":
        if at:
            return ParsedContextUrl(host, owner, repo, ref=at, revision=rest[1])
        return ParsedContextUrl(host, owner, repo, revision=rest[1])
    if len(rest) >= 2 and rest[0] == "branch":
        return ParsedContextUrl(host, owner, repo, ref="/".join(rest[1:]))
    if len(rest) >= 2 and rest[0] in ("commits", "commit"):
        return ParsedContextUrl(host, owner, repo, revision=rest[1])
    return ParsedContextUrl(host, owner, repo, ref=at)


def _parse_bitbucket_server(host: str, segments: list[str], query: dict[str, list[str]]) -> ParsedContextUrl:
    if len(segments) < 4 or segments[0] not in ("projects", "users") or segments[2] != "repos":
        raise ValueError("expected /projects/<key>/repos/<name>")
    owner = segments[1] if segments[0] == "projects" else f"~{segments[1]}"
    repo, rest = _strip_git(segments[3]), segments[4:]
    at = _strip_heads((query.get("at") or [None])[0])
    if len(rest) >= 2 and rest[0] == "commits":
        return ParsedContextUrl(host, owner, repo, revision=rest[1], ref=at)
    return ParsedContextUrl(host, owner, repo, ref=at)


_PARSERS = {
    HostKind.GITHUB: _parse_github,
    HostKind.GITLAB: _parse_gitlab,
    HostKind.BITBUCKET: _parse_bitbucket,
    HostKind.BITBUCKET_SERVER: _parse_bitbucket_server,
}


class ContextParser:
    """Resolve a context URL to a ``CommitContext`` through the host's API."""

    def __init__(self, hosts: HostContextProvider) -> None:
        self._hosts = hosts

    def parse_url(self, context_url: str) -> tuple[ParsedContextUrl, RepositoryProvider]:
        parts = urlsplit((context_url or "").strip())
        host = (parts.hostname or "").lower()
        if parts.port:
            host = f"{host}:{parts.port}"
        host_context = self._hosts.get(host)
        if host_context is None:
            raise ApplicationError(
                ErrorCode.NOT_FOUND,
                f"No repository provider configured for host '{host or context_url}'",
            )
        segments = _segments(parts.path)
        if len(segments) < 2:
            raise ApplicationError(
                ErrorCode.BAD_REQUEST, f"Cannot parse context URL '{context_url}'"
            )
        try:
            parsed = _PARSERS[host_context.kind](host, segments, parse_qs(parts.query))
        except ValueError as exc:
            raise ApplicationError(
                ErrorCode.BAD_REQUEST, f"Cannot parse context URL '{context_url}': {exc}"
            ) from exc
        return parsed, host_context.provider

    async def handle(self, user: Optional["User"], context_url: str) -> CommitContext:
        with trace_span("context_parser.handle", context_url=context_url):
            parsed, provider = self.parse_url(context_url)
            repository = await provider.get_repo(user, parsed.owner, parsed.repo)

            ref = parsed.ref
            revision = parsed.revision
            if revision is None:
                ref = ref or repository.default_branch
                if not ref:
                    raise ApplicationError(
                        ErrorCode.NOT_FOUND,
                        f"Repository {parsed.owner}/{parsed.repo} has no default branch",
                    )
                branch = await provider.get_branch(user, parsed.owner, parsed.repo, ref)
                if branch is None:
                    raise ApplicationError(
                        ErrorCode.NOT_FOUND,
                        f"Branch '{ref}' not found in {parsed.owner}/{parsed.repo}",
                    )
                revision = branch.head_commit.sha

            return CommitContext(
                title=f"{parsed.owner}/{parsed.repo} - {ref or revision}",
                repository=repository,
                revision=revision,
                ref=ref,
                ref_type=RefType.BRANCH if ref else RefType.REVISION,
                normalized_context_url=context_url.strip(),
            )

    async def with_additional_repositories(
        self,
        user: Optional["User"],
        context: CommitContext,
        config: Optional["WorkspaceConfig"],
    ) -> CommitContext:
        """Attach checkouts for the config's ``additionalRepositories``."""

        entries: tuple[dict[str, Any], ...] = config.additional_repositories if config else ()
        if not entries:
            return context
        infos = []
        for entry in entries:
            url = str(entry.get("url") or "").strip()
            if not url:
                continue
            additional = await self.handle(user, url)
            infos.append(
                AdditionalRepositoryCheckoutInfo(
                    repository=additional.repository,
                    revision=additional.revision,
                    ref=additional.ref,
                    ref_type=additional.ref_type,
                    checkout_location=entry.get("checkoutLocation")
                    or additional.repository.name,
                )
            )
        return context.model_copy(
            update={"additional_repository_checkout_info": tuple(infos)}
        )


__all__ = ["ContextParser", "ParsedContextUrl"]
