"""Shared plumbing for git host REST clients and host lookup."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional, Protocol

import httpx

from devplane.workspaces.context import Branch, CommitInfo, Repository

if TYPE_CHECKING:
    from api_service.db.models import User
    from devplane.config.settings import HostSettings
    from devplane.users.repositories import UserRepository

logger = logging.getLogger(__name__)


class RepositoryProviderError(RuntimeError):
    """Raised when a git host API call fails."""

    def __init__(self, host: str, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(f"{host}: {message}")
        self.host = host
        self.status_code = status_code


class HostKind(str, enum.Enum):
    GITHUB = "github"
    GITLAB = "gitlab"
    BITBUCKET = "bitbucket"
    BITBUCKET_SERVER = "bitbucket_server"


class RepositoryProvider(Protocol):
    """Read-only view of a git host used by the prebuild services."""

    async def get_repo(self, user: Optional["User"], owner: str, repo: str) -> Repository:
        ...

    async def get_branch(
        self, user: Optional["User"], owner: str, repo: str, branch: str
    ) -> Optional[Branch]:
        ...

    async def get_branches(
        self, user: Optional["User"], owner: str, repo: str
    ) -> list[Branch]:
        ...

    async def get_commit_info(
        self, user: Optional["User"], owner: str, repo: str, ref: str
    ) -> Optional[CommitInfo]:
        ...

    async def get_commit_history(
        self,
        user: Optional["User"],
        owner: str,
        repo: str,
        ref: str,
        max_depth: int = 100,
    ) -> list[str]:
        """Return ancestors of ``ref`` newest first, excluding ``ref`` itself."""
        ...

    async def get_file_content(
        self, user: Optional["User"], owner: str, repo: str, ref: str, path: str
    ) -> Optional[str]:
        ...


class HostTokenResolver:
    """Pick the API token for a request: the user's host identity, else a static one."""

    def __init__(
        self,
        *,
        auth_provider_id: Optional[str],
        static_token: Optional[str] = None,
        users: Optional["UserRepository"] = None,
    ) -> None:
        self._auth_provider_id = auth_provider_id
        self._static_token = (static_token or "").strip() or None
        self._users = users

    async def resolve(self, user: Optional["User"]) -> Optional[str]:
        if user is not None and self._users is not None and self._auth_provider_id:
            for identity in getattr(user, "identities", None) or ():
                if identity.deleted or identity.auth_provider_id != self._auth_provider_id:
                    continue
                tokens = await self._users.find_tokens_for_identity(
                    identity.auth_provider_id, identity.auth_id
                )
                now = datetime.now(UTC)
                for token in tokens:
                    expiry = token.expiry_date
                    if expiry is not None and expiry.tzinfo is None:
                        expiry = expiry.replace(tzinfo=UTC)
                    if expiry is None or expiry > now:
                        return token.value
        return self._static_token


class RestRepositoryProvider:
    """Base class for JSON REST clients of a single git host."""

    kind: HostKind

    def __init__(
        self,
        *,
        host: str,
        api_url: str,
        tokens: Optional[HostTokenResolver] = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.host = host
        self._api_url = api_url.rstrip("/")
        self._tokens = tokens or HostTokenResolver(auth_provider_id=None)
        self._timeout_seconds = max(1.0, float(timeout_seconds))
        self._client = client
        self._owns_client = client is None

    async def aclose(self) -> None:
        """Close owned async client resources."""

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout_seconds)
            self._owns_client = True
        return self._client

    def _auth_headers(self, token: Optional[str]) -> dict[str, str]:
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def _request(
        self,
        user: Optional["User"],
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        allow_missing: bool = False,
    ) -> Optional[httpx.Response]:
        token = await self._tokens.resolve(user)
        request_headers = {"Accept": "application/json", **self._auth_headers(token)}
        if headers:
            request_headers.update(headers)
        url = f"{self._api_url}/{path.lstrip('/')}"
        try:
            response = await self._get_client().get(
                url, params=params, headers=request_headers
            )
        except httpx.HTTPError as exc:
            raise RepositoryProviderError(
                self.host, f"request to {path} failed: {exc}"
            ) from exc
        if allow_missing and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise RepositoryProviderError(
                self.host,
                f"request to {path} returned {response.status_code}",
                status_code=response.status_code,
            )
        return response

    async def _get_json(
        self,
        user: Optional["User"],
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        allow_missing: bool = False,
    ) -> Any:
        response = await self._request(
            user, path, params=params, allow_missing=allow_missing
        )
        if response is None:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RepositoryProviderError(
                self.host, f"response from {path} is not JSON"
            ) from exc

    async def _get_text(
        self,
        user: Optional["User"],
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[str]:
        response = await self._request(
            user, path, params=params, headers=headers, allow_missing=True
        )
        if response is None:
            return None
        return response.text


def history_page_size(max_depth: int) -> int:
    """Commits to request so that ``max_depth`` ancestors survive dropping the tip."""

    return max(1, min(int(max_depth) + 1, 100))


@dataclass(frozen=True, slots=True)
class HostContext:
    host: str
    kind: HostKind
    auth_provider_id: str
    provider: RepositoryProvider


class HostContextProvider:
    """Look up the provider and auth provider configured for a host name."""

    def __init__(self, contexts: Iterable[HostContext] = ()) -> None:
        self._contexts: dict[str, HostContext] = {}
        for context in contexts:
            self._contexts[context.host.lower()] = context

    def get(self, host: Optional[str]) -> Optional[HostContext]:
        if not host:
            return None
        return self._contexts.get(host.lower())

    def get_repository_provider(self, host: Optional[str]) -> Optional[RepositoryProvider]:
        context = self.get(host)
        return context.provider if context is not None else None

    def hosts(self) -> list[str]:
        return sorted(self._contexts)

    async def aclose(self) -> None:
        for context in self._contexts.values():
            closer = getattr(context.provider, "aclose", None)
            if closer is not None:
                await closer()

    @classmethod
    def from_settings(
        cls,
        host_settings: "HostSettings",
        *,
        users: Optional["UserRepository"] = None,
        client: httpx.AsyncClient | None = None,
    ) -> "HostContextProvider":
        from devplane.hosts.bitbucket import BitbucketProvider
        from devplane.hosts.bitbucket_server import BitbucketServerProvider
        from devplane.hosts.github import GitHubProvider
        from devplane.hosts.gitlab import GitLabProvider

        timeout = host_settings.repository_api_timeout_seconds
        contexts = [
            HostContext(
                host=host_settings.github_host,
                kind=HostKind.GITHUB,
                auth_provider_id=host_settings.github_auth_provider_id,
                provider=GitHubProvider(
                    host=host_settings.github_host,
                    api_url=host_settings.github_api_url,
                    tokens=HostTokenResolver(
                        auth_provider_id=host_settings.github_auth_provider_id,
                        static_token=host_settings.github_token,
                        users=users,
                    ),
                    timeout_seconds=timeout,
                    client=client,
                ),
            ),
            HostContext(
                host=host_settings.gitlab_host,
                kind=HostKind.GITLAB,
                auth_provider_id=host_settings.gitlab_auth_provider_id,
                provider=GitLabProvider(
                    host=host_settings.gitlab_host,
                    api_url=host_settings.gitlab_api_url,
                    tokens=HostTokenResolver(
                        auth_provider_id=host_settings.gitlab_auth_provider_id,
                        static_token=host_settings.gitlab_token,
                        users=users,
                    ),
                    timeout_seconds=timeout,
                    client=client,
                ),
            ),
            HostContext(
                host=host_settings.bitbucket_host,
                kind=HostKind.BITBUCKET,
                auth_provider_id=host_settings.bitbucket_auth_provider_id,
                provider=BitbucketProvider(
                    host=host_settings.bitbucket_host,
                    api_url=host_settings.bitbucket_api_url,
                    tokens=HostTokenResolver(
                        auth_provider_id=host_settings.bitbucket_auth_provider_id,
                        static_token=host_settings.bitbucket_token,
                        users=users,
                    ),
                    timeout_seconds=timeout,
                    client=client,
                ),
            ),
        ]
        for server_host in host_settings.bitbucket_server_hosts:
            auth_provider_id = f"Bitbucket-Server-{server_host}"
            contexts.append(
                HostContext(
                    host=server_host,
                    kind=HostKind.BITBUCKET_SERVER,
                    auth_provider_id=auth_provider_id,
                    provider=BitbucketServerProvider(
                        host=server_host,
                        api_url=f"https://{server_host}/rest/api/1.0",
                        tokens=HostTokenResolver(
                            auth_provider_id=auth_provider_id,
                            static_token=host_settings.bitbucket_server_token,
                            users=users,
                        ),
                        timeout_seconds=timeout,
                        client=client,
                    ),
                )
            )
        return cls(contexts)


__all__ = [
    "HostContext",
    "HostContextProvider",
    "HostKind",
    "HostTokenResolver",
    "RepositoryProvider",
    "RepositoryProviderError",
    "RestRepositoryProvider",
    "history_page_size",
]
