"""Bitbucket Server (Data Center) REST 1.0 repository provider."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Mapping, Optional
from urllib.parse import quote

from devplane.hosts.base import HostKind, RestRepositoryProvider, history_page_size
from devplane.workspaces.context import Branch, CommitInfo, Repository

if TYPE_CHECKING:
    from api_service.db.models import User


def _commit_info(payload: Mapping[str, Any]) -> CommitInfo:
    author = payload.get("author") or {}
    timestamp = payload.get("authorTimestamp")
    author_date = None
    if isinstance(timestamp, (int, float)):
        author_date = datetime.fromtimestamp(timestamp / 1000, tz=UTC).isoformat()
    return CommitInfo(
        sha=str(payload.get("id") or ""),
        author=author.get("displayName") or author.get("name") or "unknown",
        author_email=author.get("emailAddress"),
        author_avatar_url=author.get("avatarUrl"),
        author_date=author_date,
        commit_message=payload.get("message") or "unknown",
    )


def _strip_ref(ref: str) -> str:
    return ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref


class BitbucketServerProvider(RestRepositoryProvider):
    """Owners are project keys, or ``~user`` for personal repositories."""

    kind = HostKind.BITBUCKET_SERVER

    def _repo_path(self, owner: str, repo: str) -> str:
        if owner.startswith("~"):
            return f"users/{quote(owner[1:])}/repos/{quote(repo)}"
        return f"projects/{quote(owner)}/repos/{quote(repo)}"

    async def get_repo(self, user: Optional["User"], owner: str, repo: str) -> Repository:
        path = self._repo_path(owner, repo)
        payload = await self._get_json(user, path)
        links = payload.get("links") or {}
        clone_url = next(
            (
                item.get("href")
                for item in links.get("clone") or []
                if item.get("name") == "http"
            ),
            None,
        )
        web_url = next(
            (item.get("href") for item in links.get("self") or [] if item.get("href")),
            None,
        )
        default_branch = await self._get_json(
            user, f"{path}/default-branch", allow_missing=True
        )
        return Repository(
            host=self.host,
            owner=owner,
            name=repo,
            clone_url=clone_url or f"https://{self.host}/scm/{owner.lower()}/{repo}.git",
            default_branch=(default_branch or {}).get("displayId"),
            private=not payload.get("public", False),
            web_url=web_url,
        )

    async def get_branch(
        self, user: Optional["User"], owner: str, repo: str, branch: str
    ) -> Optional[Branch]:
        name = _strip_ref(branch)
        payload = await self._get_json(
            user,
            f"{self._repo_path(owner, repo)}/branches",
            params={"filterText": name, "limit": 100},
        )
        for item in (payload or {}).get("values") or []:
            if item.get("displayId") != name:
                continue
            head = item.get("latestCommit") or ""
            info = await self.get_commit_info(user, owner, repo, head) if head else None
            return Branch(
                name=name,
                head_commit=info or CommitInfo.unknown(head),
                html_url=f"https://{self.host}/{self._repo_path(owner, repo)}/browse?at={quote(item.get('id') or name, safe='')}",
            )
        return None

    async def get_branches(
        self, user: Optional["User"], owner: str, repo: str
    ) -> list[Branch]:
        payload = await self._get_json(
            user,
            f"{self._repo_path(owner, repo)}/branches",
            params={"limit": 100},
        )
        return [
            Branch(
                name=item.get("displayId") or "",
                head_commit=CommitInfo.unknown(item.get("latestCommit") or ""),
            )
            for item in (payload or {}).get("values") or []
        ]

    async def get_commit_info(
        self, user: Optional["User"], owner: str, repo: str, ref: str
    ) -> Optional[CommitInfo]:
        payload = await self._get_json(
            user,
            f"{self._repo_path(owner, repo)}/commits/{quote(ref, safe='')}",
            allow_missing=True,
        )
        if payload is None:
            return None
        return _commit_info(payload)

    async def get_commit_history(
        self,
        user: Optional["User"],
        owner: str,
        repo: str,
        ref: str,
        max_depth: int = 100,
    ) -> list[str]:
        payload = await self._get_json(
            user,
            f"{self._repo_path(owner, repo)}/commits",
            params={"until": ref, "limit": history_page_size(max_depth)},
        )
        values = (payload or {}).get("values") or []
        shas = [str(item.get("id")) for item in values if item.get("id")]
        return shas[1:]

    async def get_file_content(
        self, user: Optional["User"], owner: str, repo: str, ref: str, path: str
    ) -> Optional[str]:
        return await self._get_text(
            user,
            f"{self._repo_path(owner, repo)}/raw/{quote(path)}",
            params={"at": ref},
            headers={"Accept": "text/plain"},
        )


__all__ = ["BitbucketServerProvider"]
