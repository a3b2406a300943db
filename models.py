"""Pydantic models for GitPilot API responses and in-process state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class BuildStatus(str, Enum):
    """Closed set of build states shown on the dashboard."""

    QUEUED = "Queued"
    IN_PROGRESS = "In Progress"
    SUCCESS = "Success"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildStatus.SUCCESS, BuildStatus.FAILED, BuildStatus.CANCELLED)


class Owner(BaseModel):
    login: str
    avatar_url: str | None = None


class Build(BaseModel):
    """One GitHub Actions workflow run snapshot."""

    model_config = ConfigDict(frozen=True)

    id: str
    branch: str | None = None
    commit: str
    status: BuildStatus
    timestamp: datetime
    error: str | None = None
    duration: str | None = None
    name: str | None = None
    repo: str | None = None
    pr_number: int | None = None
    url: str | None = None


class Repository(BaseModel):
    """A GitHub repository the user can access."""

    id: str
    name: str
    full_name: str
    owner: Owner
    html_url: str
    description: str | None = None
    private: bool = False
    language: str | None = None
    stargazers_count: int = 0
    forks_count: int = 0
    open_issues_count: int = 0
    updated_at: str | None = None
    pushed_at: str | None = None
    tags: list[str] = Field(default_factory=list)
    recent_builds: list[Build] = Field(default_factory=list)
    branches: list[str] = Field(default_factory=list)


class PullRequest(BaseModel):
    """A pull request as mirrored from GitHub."""

    id: int
    number: int
    title: str
    url: str
    repo_full_name: str
    source_branch: str
    target_branch: str
    state: str = "open"
    merged: bool = False
    mergeable_state: str | None = None
    head_sha: str
    created_at: str | None = None


class BulkBuildRepo(BaseModel):
    """Status of one repository inside a bulk build."""

    model_config = ConfigDict(frozen=True)

    repo: str
    pr_number: int
    status: BuildStatus = BuildStatus.QUEUED
    commit: str = "......."
    branch: str | None = None
    duration: str | None = None
    build_id: str | None = None
    error: str | None = None


class BulkBuild(BaseModel):
    """A merge of one branch into another across many repositories."""

    model_config = ConfigDict(frozen=True)

    id: str
    source_branch: str
    target_branch: str
    user: str | None = None
    status: BuildStatus = BuildStatus.IN_PROGRESS
    timestamp: datetime
    repos: tuple[BulkBuildRepo, ...] = ()


class ActionResult(BaseModel):
    """Outcome of a user-triggered GitHub action (rerun, cancel, merge...)."""

    success: bool
    message: str | None = None
    data: dict | None = None


class CompareResult(BaseModel):
    status: Literal["can-merge", "no-changes", "has-conflicts"]
    error: str | None = None


class BulkComparison(BaseModel):
    """Per-repository outcome of a bulk compare-and-open-PR run."""

    repo: str
    status: Literal["can-merge", "no-changes", "has-conflicts"]
    pr_number: int | None = None
    pr_url: str | None = None
    error: str | None = None


class Notification(BaseModel):
    """A toast shown to the user."""

    id: str
    type: Literal["repo", "build", "pr", "error"]
    message: str
    timestamp: datetime
    repo_full_name: str = ""
    url: str | None = None


# --- Request bodies ---


class PullRequestCreate(BaseModel):
    source: str
    target: str


class TagsUpdate(BaseModel):
    tags: list[str]


class SelectionUpdate(BaseModel):
    repo_ids: list[str]


class BulkCompareRequest(BaseModel):
    repos: list[str]
    source: str
    target: str


class BulkMergeTarget(BaseModel):
    repo: str
    pr_number: int


class BulkMergeRequest(BaseModel):
    source: str
    target: str
    user: str | None = None
    prs: list[BulkMergeTarget]
