"""Immutable commit-context value types shared by prebuild components."""

from __future__ import annotations

import enum
import hashlib
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class RefType(str, enum.Enum):
    BRANCH = "branch"
    TAG = "tag"
    REVISION = "revision"


class Repository(BaseModel):
    """A repository on a git host."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    host: str = Field(..., alias="host")
    owner: str = Field(..., alias="owner")
    name: str = Field(..., alias="name")
    clone_url: str = Field(..., alias="cloneUrl")
    default_branch: Optional[str] = Field(None, alias="defaultBranch")
    private: bool = Field(False, alias="private")
    web_url: Optional[str] = Field(None, alias="webUrl")


class AdditionalRepositoryCheckoutInfo(BaseModel):
    """A further repository checked out next to the primary one."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    repository: Repository = Field(..., alias="repository")
    revision: str = Field(..., alias="revision")
    ref: Optional[str] = Field(None, alias="ref")
    ref_type: Optional[RefType] = Field(None, alias="refType")
    checkout_location: Optional[str] = Field(None, alias="checkoutLocation")


class RepositoryCommitHistory(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    clone_url: str = Field(..., alias="cloneUrl")
    commit_history: tuple[str, ...] = Field((), alias="commitHistory")


class CommitHistory(BaseModel):
    """Newest-first commit SHAs for the primary and additional repositories.

    ``commit_history`` is ``None`` when no repository provider could be asked.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    commit_history: Optional[tuple[str, ...]] = Field(None, alias="commitHistory")
    additional_repository_commit_histories: tuple[RepositoryCommitHistory, ...] = Field(
        (), alias="additionalRepositoryCommitHistories"
    )

    def truncated(self, depth: int) -> "CommitHistory":
        return CommitHistory(
            commit_history=(
                self.commit_history[:depth] if self.commit_history is not None else None
            ),
            additional_repository_commit_histories=tuple(
                RepositoryCommitHistory(
                    clone_url=item.clone_url,
                    commit_history=item.commit_history[:depth],
                )
                for item in self.additional_repository_commit_histories
            ),
        )

    def for_clone_url(self, clone_url: str) -> Optional[tuple[str, ...]]:
        for item in self.additional_repository_commit_histories:
            if item.clone_url == clone_url:
                return item.commit_history
        return None


class CommitContext(BaseModel):
    """A repository at a revision, optionally with a ref and extra checkouts."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    title: str = Field("", alias="title")
    repository: Repository = Field(..., alias="repository")
    revision: str = Field(..., alias="revision")
    ref: Optional[str] = Field(None, alias="ref")
    ref_type: Optional[RefType] = Field(None, alias="refType")
    normalized_context_url: Optional[str] = Field(None, alias="normalizedContextURL")
    additional_repository_checkout_info: tuple[AdditionalRepositoryCheckoutInfo, ...] = (
        Field((), alias="additionalRepositoryCheckoutInfo")
    )
    # Attached on the prebuild start path to drive incremental base selection.
    commit_history: Optional[tuple[str, ...]] = Field(None, alias="commitHistory")
    additional_repository_commit_histories: Optional[
        tuple[RepositoryCommitHistory, ...]
    ] = Field(None, alias="additionalRepositoryCommitHistories")

    def with_commit_history(self, history: CommitHistory) -> "CommitContext":
        update: dict[str, Any] = {}
        if history.commit_history is not None:
            update["commit_history"] = history.commit_history
        if history.additional_repository_commit_histories:
            update["additional_repository_commit_histories"] = (
                history.additional_repository_commit_histories
            )
        return self.model_copy(update=update)

    def attached_history(self) -> Optional[CommitHistory]:
        if self.commit_history is None:
            return None
        return CommitHistory(
            commit_history=self.commit_history,
            additional_repository_commit_histories=(
                self.additional_repository_commit_histories or ()
            ),
        )

    def to_storage(self) -> dict[str, Any]:
        """Serialize for the workspace ``context`` column, without history hints."""

        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={"commit_history", "additional_repository_commit_histories"},
        )

    @classmethod
    def from_storage(cls, data: Optional[dict[str, Any]]) -> Optional["CommitContext"]:
        """Return the stored context, or ``None`` when it is not a commit context."""

        if not data or "repository" not in data or "revision" not in data:
            return None
        try:
            return cls.model_validate(data)
        except ValidationError:
            return None


def compute_hash(context: CommitContext) -> str:
    """Dedup key of a context: the revision, or a digest over all revisions."""

    if not context.additional_repository_checkout_info:
        return context.revision
    digest = hashlib.sha256()
    digest.update(context.revision.encode("utf-8"))
    for info in context.additional_repository_checkout_info:
        digest.update(info.revision.encode("utf-8"))
    return digest.hexdigest()


class CommitInfo(BaseModel):
    """Author and message metadata for a single commit."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    sha: str = Field(..., alias="sha")
    author: str = Field("unknown", alias="author")
    author_email: Optional[str] = Field(None, alias="authorEmail")
    author_avatar_url: Optional[str] = Field(None, alias="authorAvatarUrl")
    author_date: Optional[str] = Field(None, alias="authorDate")
    commit_message: str = Field("unknown", alias="commitMessage")

    @classmethod
    def unknown(cls, sha: str) -> "CommitInfo":
        return cls(sha=sha, author="unknown", commit_message="unknown")


class Branch(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., alias="name")
    head_commit: CommitInfo = Field(..., alias="headCommit")
    html_url: Optional[str] = Field(None, alias="htmlUrl")


__all__ = [
    "AdditionalRepositoryCheckoutInfo",
    "Branch",
    "CommitContext",
    "CommitHistory",
    "CommitInfo",
    "RefType",
    "Repository",
    "RepositoryCommitHistory",
    "compute_hash",
]
