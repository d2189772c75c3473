"""Bitbucket Cloud API 2.0 repository provider."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Optional
from urllib.parse import quote

from devplane.hosts.base import HostKind, RestRepositoryProvider, history_page_size
from devplane.workspaces.context import Branch, CommitInfo, Repository

if TYPE_CHECKING:
    from api_service.db.models import User


def _commit_info(payload: Mapping[str, Any]) -> CommitInfo:
    author = payload.get("author") or {}
    account = author.get("user") or {}
    avatar = ((account.get("links") or {}).get("avatar") or {}).get("href")
    return CommitInfo(
        sha=str(payload.get("hash") or ""),
        author=account.get("display_name") or author.get("raw") or "unknown",
        author_avatar_url=avatar,
        author_date=payload.get("date"),
        commit_message=payload.get("message") or "unknown",
    )


class BitbucketProvider(RestRepositoryProvider):
    kind = HostKind.BITBUCKET

    def _repo_path(self, owner: str, repo: str) -> str:
        return f"repositories/{quote(owner)}/{quote(repo)}"

    async def get_repo(self, user: Optional["User"], owner: str, repo: str) -> Repository:
        payload = await self._get_json(user, self._repo_path(owner, repo))
        html_url = ((payload.get("links") or {}).get("html") or {}).get("href")
        web_url = html_url or f"https://{self.host}/{owner}/{repo}"
        return Repository(
            host=self.host,
            owner=owner,
            name=repo,
            clone_url=f"{web_url}.git",
            default_branch=(payload.get("mainbranch") or {}).get("name"),
            private=bool(payload.get("is_private")),
            web_url=web_url,
        )

    async def get_branch(
        self, user: Optional["User"], owner: str, repo: str, branch: str
    ) -> Optional[Branch]:
        payload = await self._get_json(
            user,
            f"{self._repo_path(owner, repo)}/refs/branches/{quote(branch, safe='')}",
            allow_missing=True,
        )
        if payload is None:
            return None
        return self._branch(payload, fallback_name=branch)

    def _branch(self, payload: Mapping[str, Any], *, fallback_name: str = "") -> Branch:
        links = payload.get("links") or {}
        return Branch(
            name=payload.get("name") or fallback_name,
            head_commit=_commit_info(payload.get("target") or {}),
            html_url=(links.get("html") or {}).get("href"),
        )

    async def get_branches(
        self, user: Optional["User"], owner: str, repo: str
    ) -> list[Branch]:
        payload = await self._get_json(
            user,
            f"{self._repo_path(owner, repo)}/refs/branches",
            params={"pagelen": 100},
        )
        return [self._branch(item) for item in (payload or {}).get("values") or []]

    async def get_commit_info(
        self, user: Optional["User"], owner: str, repo: str, ref: str
    ) -> Optional[CommitInfo]:
        payload = await self._get_json(
            user,
            f"{self._repo_path(owner, repo)}/commit/{quote(ref, safe='')}",
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
            f"{self._repo_path(owner, repo)}/commits/{quote(ref, safe='')}",
            params={"pagelen": history_page_size(max_depth)},
        )
        values = (payload or {}).get("values") or []
        shas = [str(item.get("hash")) for item in values if item.get("hash")]
        return shas[1:]

    async def get_file_content(
        self, user: Optional["User"], owner: str, repo: str, ref: str, path: str
    ) -> Optional[str]:
        return await self._get_text(
            user,
            f"{self._repo_path(owner, repo)}/src/{quote(ref, safe='')}/{quote(path)}",
            headers={"Accept": "text/plain"},
        )


__all__ = ["BitbucketProvider"]
