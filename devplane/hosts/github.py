"""GitHub REST v3 repository provider."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Optional
from urllib.parse import quote

from devplane.hosts.base import HostKind, RestRepositoryProvider, history_page_size
from devplane.workspaces.context import Branch, CommitInfo, Repository

if TYPE_CHECKING:
    from api_service.db.models import User


def _commit_info(payload: Mapping[str, Any]) -> CommitInfo:
    commit = payload.get("commit") or {}
    git_author = commit.get("author") or {}
    author = payload.get("author") or {}
    return CommitInfo(
        sha=str(payload.get("sha") or ""),
        author=git_author.get("name") or author.get("login") or "unknown",
        author_email=git_author.get("email"),
        author_avatar_url=author.get("avatar_url"),
        author_date=git_author.get("date"),
        commit_message=commit.get("message") or "unknown",
    )


class GitHubProvider(RestRepositoryProvider):
    kind = HostKind.GITHUB

    def _repo_path(self, owner: str, repo: str) -> str:
        return f"repos/{quote(owner)}/{quote(repo)}"

    async def get_repo(self, user: Optional["User"], owner: str, repo: str) -> Repository:
        payload = await self._get_json(user, self._repo_path(owner, repo))
        return Repository(
            host=self.host,
            owner=owner,
            name=repo,
            clone_url=payload.get("clone_url") or f"https://{self.host}/{owner}/{repo}.git",
            default_branch=payload.get("default_branch"),
            private=bool(payload.get("private")),
            web_url=payload.get("html_url"),
        )

    async def get_branch(
        self, user: Optional["User"], owner: str, repo: str, branch: str
    ) -> Optional[Branch]:
        payload = await self._get_json(
            user,
            f"{self._repo_path(owner, repo)}/branches/{quote(branch, safe='')}",
            allow_missing=True,
        )
        if payload is None:
            return None
        links = payload.get("_links") or {}
        return Branch(
            name=payload.get("name") or branch,
            head_commit=_commit_info(payload.get("commit") or {}),
            html_url=links.get("html"),
        )

    async def get_branches(
        self, user: Optional["User"], owner: str, repo: str
    ) -> list[Branch]:
        payload = await self._get_json(
            user,
            f"{self._repo_path(owner, repo)}/branches",
            params={"per_page": 100},
        )
        branches = []
        for item in payload or []:
            sha = (item.get("commit") or {}).get("sha") or ""
            branches.append(
                Branch(
                    name=item.get("name") or "",
                    head_commit=CommitInfo.unknown(sha),
                    html_url=f"https://{self.host}/{owner}/{repo}/tree/{item.get('name')}",
                )
            )
        return branches

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
            params={"sha": ref, "per_page": history_page_size(max_depth)},
        )
        shas = [str(item.get("sha")) for item in payload or [] if item.get("sha")]
        return shas[1:]

    async def get_file_content(
        self, user: Optional["User"], owner: str, repo: str, ref: str, path: str
    ) -> Optional[str]:
        return await self._get_text(
            user,
            f"{self._repo_path(owner, repo)}/contents/{quote(path)}",
            params={"ref": ref},
            headers={"Accept": "application/vnd.github.raw"},
        )


__all__ = ["GitHubProvider"]
