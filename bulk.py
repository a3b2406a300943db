"""Bulk merge workflow: compare many repos, open PRs for the clean ones, merge them."""

from __future__ import annotations

import asyncio
import logging
import time

from gh_client import GitHubClient
from models import ActionResult, BulkBuild, BulkComparison
from reconciler import bulk_build_from_query

logger = logging.getLogger(__name__)


async def _compare_and_open_one(client: GitHubClient, repo: str, source: str, target: str) -> BulkComparison:
    comparison = await client.compare_branches(repo, source, target)
    if comparison.status != "can-merge":
        return BulkComparison(repo=repo, status=comparison.status, error=comparison.error)

    created = await client.create_pull_request(repo, source, target)
    if not created.success:
        # Could not open a PR, so the repo cannot take part in the merge
        return BulkComparison(repo=repo, status="has-conflicts", error=created.message)

    data = created.data or {}
    return BulkComparison(
        repo=repo,
        status="can-merge",
        pr_number=data.get("number"),
        pr_url=data.get("html_url"),
    )


async def compare_and_open(
    client: GitHubClient, repos: list[str], source: str, target: str
) -> list[BulkComparison]:
    """Compare ``source`` against ``target`` in every repo and open PRs where clean.

    Args:
        client: Authenticated GitHub client.
        repos: Repository full names ("owner/name").
        source: Branch to merge from.
        target: Branch to merge into.

    Returns:
        One BulkComparison per repo, in input order.
    """
    results = await asyncio.gather(*(_compare_and_open_one(client, r, source, target) for r in repos))
    opened = sum(1 for r in results if r.pr_number is not None)
    conflicts = sum(1 for r in results if r.status == "has-conflicts")
    logger.info("Bulk comparison: created %d pull requests, %d repos with conflicts", opened, conflicts)
    return list(results)


def clean_pull_requests(results: list[BulkComparison]) -> list[tuple[str, int]]:
    """(repo, PR number) for every comparison that produced a mergeable PR."""
    return [(r.repo, r.pr_number) for r in results if r.status == "can-merge" and r.pr_number is not None]


def start_bulk_build(
    prs: list[tuple[str, int]], source: str, target: str, user: str | None = None
) -> BulkBuild:
    """Build the BulkBuild that tracks the given pull requests."""
    bulk_id = str(int(time.time() * 1000))
    query = ",".join(f"{repo}:{number}" for repo, number in prs)
    return bulk_build_from_query(bulk_id, source, target, user, query)


async def merge_clean(client: GitHubClient, prs: list[tuple[str, int]]) -> list[ActionResult]:
    """Merge every (repo, number) pull request concurrently."""
    return list(await asyncio.gather(*(client.merge_pull_request(repo, number) for repo, number in prs)))
