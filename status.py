"""Build status mapping: turns raw GitHub payloads into BuildStatus values."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from models import Build, BuildStatus, PullRequest

# Raw workflow-run states that mean "not finished yet"
_ACTIVE_RUN_STATES = {"queued", "in_progress", "requested", "waiting", "pending"}


def map_run_status(status: str | None, conclusion: str | None) -> BuildStatus:
    """Map a workflow run's (status, conclusion) pair onto a BuildStatus.

    Anything other than a successful completion is reported as Failed,
    including cancelled and timed-out runs.
    """
    if status in _ACTIVE_RUN_STATES:
        return BuildStatus.IN_PROGRESS
    if status == "completed" and conclusion == "success":
        return BuildStatus.SUCCESS
    return BuildStatus.FAILED


def map_pull_request_status(pr: PullRequest, current: BuildStatus) -> BuildStatus:
    """Derive a status from pull request state when no workflow run exists.

    Returns ``current`` unchanged while GitHub is still computing mergeability.
    """
    if pr.merged:
        return BuildStatus.SUCCESS
    if pr.state == "closed":
        return BuildStatus.CANCELLED
    if pr.mergeable_state == "dirty":
        return BuildStatus.FAILED
    if pr.mergeable_state != "unknown":
        return BuildStatus.IN_PROGRESS
    return current


def aggregate_status(statuses: Iterable[BuildStatus]) -> BuildStatus:
    """Success once every member is terminal, otherwise In Progress."""
    if all(status.is_terminal for status in statuses):
        return BuildStatus.SUCCESS
    return BuildStatus.IN_PROGRESS


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def format_duration(seconds: float) -> str:
    """Render a duration like the dashboard does: '45s', '3m 12s', '1h 5m'."""
    seconds = max(int(seconds), 0)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def build_from_run(run: dict, repo: str | None = None) -> Build:
    """Convert a workflow-run payload into a Build snapshot."""
    status = map_run_status(run.get("status"), run.get("conclusion"))
    created = _parse_timestamp(run.get("created_at")) or datetime.now().astimezone()

    duration = None
    started = _parse_timestamp(run.get("run_started_at"))
    finished = _parse_timestamp(run.get("updated_at"))
    if run.get("status") == "completed" and started and finished:
        duration = format_duration((finished - started).total_seconds())

    pull_requests = run.get("pull_requests") or []
    pr_number = pull_requests[0].get("number") if pull_requests else None

    return Build(
        id=str(run["id"]),
        branch=run.get("head_branch"),
        commit=(run.get("head_sha") or "")[:7],
        status=status,
        timestamp=created,
        error="Build failed" if run.get("conclusion") == "failure" else None,
        duration=duration,
        name=run.get("name"),
        repo=repo,
        pr_number=pr_number,
        url=run.get("html_url"),
    )
