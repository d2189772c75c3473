"""Helpers for splitting git clone and web URLs into host, owner and name."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit


@dataclass(frozen=True, slots=True)
class RepoUrl:
    host: str
    owner: str
    repo: str


def _strip_git_suffix(name: str) -> str:
    return name[:-4] if name.endswith(".git") else name


def parse_repo_url(url: str) -> Optional[RepoUrl]:
    """Return ``RepoUrl`` for ``https://host/owner[/group...]/repo[.git]``.

    Bitbucket Server ``/scm/<project>/<repo>.git`` clone URLs resolve to the
    project key as owner. Returns ``None`` for anything without an owner and a
    repository name.
    """

    candidate = (url or "").strip()
    if not candidate:
        return None
    parts = urlsplit(candidate)
    host = (parts.hostname or "").lower()
    if not host:
        return None
    if parts.port:
        host = f"{host}:{parts.port}"
    segments = [segment for segment in parts.path.split("/") if segment]
    if segments and segments[0] == "scm":
        segments = segments[1:]
    if len(segments) < 2:
        return None
    repo = _strip_git_suffix(segments[-1])
    owner = "/".join(segments[:-1])
    if not repo or not owner:
        return None
    return RepoUrl(host=host, owner=owner, repo=repo)


def trim_repo_url(url: str) -> str:
    """Normalize a clone URL for comparisons: no trailing slash, no ``.git``."""

    trimmed = (url or "").strip().rstrip("/")
    return _strip_git_suffix(trimmed)


__all__ = ["RepoUrl", "parse_repo_url", "trim_repo_url"]
