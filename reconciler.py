"""Bulk build reconciliation: refreshes every member of a bulk merge from GitHub."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import httpx

from gh_client import GitHubClient, GitHubError
from models import Build, BuildStatus, BulkBuild, BulkBuildRepo, PullRequest
from state import AppState
from status import aggregate_status, map_pull_request_status

logger = logging.getLogger(__name__)


def parse_pr_identifiers(prs: str | None) -> list[tuple[str, int]]:
    """Parse 'owner/repo:12,owner/other:7' into (full_name, number) pairs."""
    pairs: list[tuple[str, int]] = []
    if not prs:
        return pairs
    for item in prs.split(","):
        item = item.strip()
        if not item:
            continue
        repo, sep, number = item.rpartition(":")
        if not sep or "/" not in repo or not number.isdigit():
            raise ValueError(f"Invalid pull request identifier: {item!r}")
        pairs.append((repo, int(number)))
    return pairs


def _timestamp_from_id(bulk_id: str) -> datetime:
    """Bulk ids are epoch milliseconds when created by GitPilot."""
    if bulk_id.isdigit():
        try:
            return datetime.fromtimestamp(int(bulk_id) / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            pass
    return datetime.now(timezone.utc)


def bulk_build_from_query(
    bulk_id: str,
    source: str | None,
    target: str | None,
    user: str | None,
    prs: str | None,
) -> BulkBuild:
    """Rebuild a BulkBuild from the bulk build page's query parameters."""
    source = source or ""
    repos = tuple(
        BulkBuildRepo(repo=repo, pr_number=number, branch=source)
        for repo, number in parse_pr_identifiers(prs)
    )
    return BulkBuild(
        id=bulk_id,
        source_branch=source,
        target_branch=target or "",
        user=user or None,
        status=BuildStatus.IN_PROGRESS,
        timestamp=_timestamp_from_id(bulk_id),
        repos=repos,
    )


def _merge_member(member: BulkBuildRepo, pr: PullRequest | None, build: Build | None) -> BulkBuildRepo:
    # A workflow run beats anything derived from the PR
    if build is not None:
        return member.model_copy(
            update={
                "status": build.status,
                "commit": build.commit,
                "branch": build.branch or member.branch,
                "duration": build.duration,
                "build_id": build.id,
                "error": build.error,
            }
        )
    if pr is not None:
        return member.model_copy(
            update={
                "status": map_pull_request_status(pr, member.status),
                "commit": pr.head_sha[:7] or member.commit,
            }
        )
    return member


async def fetch_bulk_status(client: GitHubClient, bulk: BulkBuild) -> BulkBuild:
    """Fetch live PR and workflow-run state for every member and merge it.

    Both fan-outs must succeed; any error propagates and nothing is merged.
    """
    members = bulk.repos
    pr_fanout = asyncio.gather(*(client.find_pull_request(m.repo, m.pr_number) for m in members))
    build_fanout = asyncio.gather(*(client.find_build_for_pull_request(m.repo, m.pr_number) for m in members))
    prs, builds = await asyncio.gather(pr_fanout, build_fanout)

    repos = tuple(_merge_member(m, pr, build) for m, pr, build in zip(members, prs, builds))
    return bulk.model_copy(
        update={
            "repos": repos,
            "status": aggregate_status(r.status for r in repos),
        }
    )


class BulkStatusReconciler:
    """Runs reconciliation passes against the session's current bulk build."""

    def __init__(self, client: GitHubClient, state: AppState):
        self.client = client
        self.state = state

    async def run_pass(self) -> bool:
        """Refresh the bulk build once. Returns False if the pass failed."""
        current = self.state.bulk_build
        if current is None:
            return False

        try:
            updated = await fetch_bulk_status(self.client, current)
        except (GitHubError, httpx.HTTPError) as e:
            logger.warning("Error fetching bulk build status for %s: %s", current.id, e)
            self.state.add_notification("error", f"Could not refresh build status: {e}")
            return False
        except Exception as e:
            # Malformed payloads must not kill the polling task
            logger.exception("Unexpected error refreshing bulk build %s", current.id)
            self.state.add_notification("error", f"Could not refresh build status: {e}")
            return False

        # The user may have navigated away while the pass was in flight
        if self.state.bulk_build is None or self.state.bulk_build.id != current.id:
            logger.debug("Discarding reconciliation result for stale bulk build %s", current.id)
            return False

        self.state.set_bulk_build(updated)
        return True
