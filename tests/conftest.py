import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

import devplane.prebuilds.models  # noqa: F401
import devplane.projects.models  # noqa: F401
import devplane.webhooks.models  # noqa: F401
import devplane.workspaces.models  # noqa: F401
from api_service.db.models import Base
from devplane.hosts.base import (
    HostContext,
    HostContextProvider,
    HostKind,
    RepositoryProviderError,
)
from devplane.workspaces.context import Branch, CommitInfo, Repository


class FakeRepositoryProvider:
    """In-memory git host keyed by ``owner/repo``."""

    def __init__(self, host: str = "github.com") -> None:
        self.host = host
        self.repos: dict[tuple[str, str], Repository] = {}
        self.branches: dict[tuple[str, str], dict[str, str]] = {}
        # sha -> ancestors, newest first
        self.parents: dict[str, list[str]] = {}
        self.files: dict[tuple[str, str, str], str] = {}
        self.commit_infos: dict[str, CommitInfo] = {}
        self.history_calls: list[tuple[str, str, str, int]] = []

    def add_repo(
        self,
        owner: str,
        name: str,
        *,
        default_branch: str = "main",
        branches: Optional[dict[str, str]] = None,
        config: Optional[str] = None,
    ) -> Repository:
        repository = Repository(
            host=self.host,
            owner=owner,
            name=name,
            clone_url=f"https://{self.host}/{owner}/{name}.git",
            default_branch=default_branch,
            web_url=f"https://{self.host}/{owner}/{name}",
        )
        self.repos[(owner, name)] = repository
        self.branches[(owner, name)] = dict(branches or {})
        if config is not None:
            self.files[(owner, name, ".gitpod.yml")] = config
        return repository

    def set_history(self, *shas: str) -> None:
        """Record a linear history given newest first."""

        for index, sha in enumerate(shas):
            self.parents[sha] = list(shas[index + 1:])

    async def get_repo(self, user, owner, repo):
        try:
            return self.repos[(owner, repo)]
        except KeyError:
            raise RepositoryProviderError(self.host, f"{owner}/{repo} not found", status_code=404)

    def _branch(self, owner: str, repo: str, name: str, sha: str) -> Branch:
        return Branch(
            name=name,
            head_commit=self.commit_infos.get(sha) or CommitInfo(sha=sha, author="dev", commit_message=f"commit {sha}"),
            html_url=f"https://{self.host}/{owner}/{repo}/tree/{name}",
        )

    async def get_branch(self, user, owner, repo, branch):
        sha = self.branches.get((owner, repo), {}).get(branch)
        if sha is None:
            return None
        return self._branch(owner, repo, branch, sha)

    async def get_branches(self, user, owner, repo):
        return [
            self._branch(owner, repo, name, sha)
            for name, sha in self.branches.get((owner, repo), {}).items()
        ]

    async def get_commit_info(self, user, owner, repo, ref):
        return self.commit_infos.get(ref) or CommitInfo(
            sha=ref, author="dev", commit_message=f"commit {ref}"
        )

    async def get_commit_history(self, user, owner, repo, ref, max_depth=100):
        self.history_calls.append((owner, repo, ref, max_depth))
        return list(self.parents.get(ref, []))[:max_depth]

    async def get_file_content(self, user, owner, repo, ref, path):
        return self.files.get((owner, repo, path))


class RecordingRuntime:
    """Workspace runtime double that remembers start and stop calls."""

    def __init__(self, *, fail_start: bool = False) -> None:
        self.started = []
        self.stopped = []
        self.fail_start = fail_start
        self.fail_stop_for = set()

    async def start_workspace(self, request) -> None:
        if self.fail_start:
            raise RuntimeError("runtime unavailable")
        self.started.append(request)

    async def stop_workspace(self, instance_id, *, region, reason, policy) -> None:
        if instance_id in self.fail_stop_for:
            raise RuntimeError("runtime unavailable")
        self.stopped.append((instance_id, region, reason, policy))


@pytest.fixture
def fake_provider() -> FakeRepositoryProvider:
    return FakeRepositoryProvider()


@pytest.fixture
def fake_hosts(fake_provider: FakeRepositoryProvider) -> HostContextProvider:
    return HostContextProvider(
        [
            HostContext(
                host=fake_provider.host,
                kind=HostKind.GITHUB,
                auth_provider_id="Public-GitHub",
                provider=fake_provider,
            )
        ]
    )


@pytest.fixture
def runtime() -> RecordingRuntime:
    return RecordingRuntime()


@pytest.fixture
def sqlite_db(tmp_path):
    """Return a factory for an isolated async sqlite database with all tables."""

    @asynccontextmanager
    async def _db():
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/devplane.db", future=True)
        session_maker = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        try:
            yield session_maker
        finally:
            await engine.dispose()

    return _db


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "asyncio: mark a test as requiring an asyncio event loop",
    )


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute `@pytest.mark.asyncio` tests without requiring pytest-asyncio."""

    if "asyncio" not in pyfuncitem.keywords:
        return None

    test_function = pyfuncitem.obj
    if not inspect.iscoroutinefunction(test_function):
        return None

    signature = inspect.signature(test_function)
    bound_args = {
        name: pyfuncitem.funcargs[name]
        for name in signature.parameters
        if name in pyfuncitem.funcargs
    }

    asyncio.run(test_function(**bound_args))
    return True
