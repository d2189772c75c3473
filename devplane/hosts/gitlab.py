"""GitLab API v4 repository provider."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Optional
from urllib.parse import quote

from devplane.hosts.base import HostKind, RestRepositoryProvider, history_page_size
from devplane.workspaces.context import Branch, CommitInfo, Repository

if TYPE_CHECKING:
    from api_service.db.models import User


def _commit_info(payload: Mapping[str, Any]) -> CommitInfo:
    return CommitInfo(
        sha=str(payload.get("id") or ""),
        author=payload.get("author_name") or "unknown",
        author_email=payload.get("author_email"),
        author_date=payload.get("authored_date"),
        commit_message=payload.get("message") or payload.get("title") or "unknown",
    )


class GitLabProvider(RestRepositoryProvider):
    kind = HostKind.GITLAB

    def _project_path(self, owner: str, repo: str) -> str:
        return f"projects/{quote(f'{owner}/{repo}', safe='')}"

    async def get_repo(self, user: Optional["User"], owner: str, repo: str) -> Repository:
        payload = await self._get_json(user, self._project_path(owner, repo))
        return Repository(
            host=self.host,
            owner=owner,
            name=repo,
            clone_url=payload.get("http_url_to_repo")
            or f"https://{self.host}/{owner}/{repo}.git",
            default_branch=payload.get("default_branch"),
            private=payload.get("visibility", "private") != "public",
            web_url=payload.get("web_url"),
        )

    async def get_branch(
        self, user: Optional["User"], owner: str, repo: str, branch: str
    ) -> Optional[Branch]:
        payload = await self._get_json(
            user,
            f"{self._project_path(owner, repo)}/repository/branches/{quote(branch, safe='')}",
            allow_missing=True,
        )
        if payload is None:
            return None
        return Branch(
            name=payload.get("name") or branch,
            head_commit=_commit_info(payload.get("commit") or {}),
            html_url=payload.get("web_url"),
        )

    async def get_branches(
        self, user: Optional["User"], owner: str, repo: str
    ) -> list[Branch]:
        payload = await self._get_json(
            user,
            f"{self._project_path(owner, repo)}/repository/branches",
            params={"per_page": 100},
        )
        return [
            Branch(
                name=item.get("name") or "",
                head_commit=_commit_info(item.get("commit") or {}),
                html_url=item.get("web_url"),
            )
            for item in payload or []
        ]

    async def get_commit_info(
        self, user: Optional["User"], owner: str, repo: str, ref: str
    ) -> Optional[CommitInfo]:
        payload = await self._get_json(
            user,
            f"{self._project_path(owner, repo)}/repository/commits/{quote(ref, safe='')}",
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
            f"{self._project_path(owner, repo)}/repository/commits",
            params={"ref_name": ref, "per_page": history_page_size(max_depth)},
        )
        shas = [str(item.get("id")) for item in payload or [] if item.get("id")]
        return shas[1:]

    async def get_file_content(
        self, user: Optional["User"], owner: str, repo: str, ref: str, path: str
    ) -> Optional[str]:
        return await self._get_text(
            user,
            f"{self._project_path(owner, repo)}/repository/files/{quote(path, safe='')}/raw",
            params={"ref": ref},
        )


__all__ = ["GitLabProvider"]
