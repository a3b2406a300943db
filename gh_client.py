"""GitHub REST client: authenticated calls, Link-header pagination, typed errors."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from config import DEFAULT_API_URL, DEFAULT_REPO_CACHE_TTL_SECONDS
from models import ActionResult, Build, CompareResult, Owner, PullRequest, Repository
from status import build_from_run

logger = logging.getLogger(__name__)

_ACCEPT_JSON = "application/vnd.github+json"
_ACCEPT_DIFF = "application/vnd.github.diff"


class GitHubError(Exception):
    """Base class for failures talking to GitHub."""


class AuthenticationError(GitHubError):
    """No usable credential; raised before any request is sent."""


class GitHubAPIError(GitHubError):
    """GitHub answered with a non-2xx status."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"GitHub API error {status_code}: {message}")


class RateLimitError(GitHubAPIError):
    """GitHub rejected the request because the rate limit is exhausted."""


@dataclass
class GitHubResponse:
    data: Any
    next_url: str | None
    status_code: int


def parse_next_link(header: str | None) -> str | None:
    """Extract the rel="next" URL from a Link header.

    Args:
        header: Raw header value, e.g. '<https://...&page=2>; rel="next", <...>; rel="last"'.

    Returns:
        The next-page URL, or None when there is no next page.
    """
    if not header:
        return None
    for entry in header.split(","):
        parts = [p.strip() for p in entry.split(";")]
        if len(parts) < 2:
            continue
        url = parts[0]
        if not (url.startswith("<") and url.endswith(">")):
            continue
        if any(p.replace(" ", "") == 'rel="next"' for p in parts[1:]):
            return url[1:-1]
    return None


def _error_message(response: httpx.Response) -> str:
    """Best-effort message from a GitHub error body."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        # 422s carry the useful text in errors[0], the top level just says "Validation Failed"
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            detail = first.get("message") if isinstance(first, dict) else first
            if detail:
                return str(detail)
        if body.get("message"):
            return str(body["message"])
    return f"GitHub request failed with status {response.status_code}"


def _repository_from_payload(repo: dict) -> Repository:
    owner = repo.get("owner") or {}
    return Repository(
        id=str(repo["id"]),
        name=repo["name"],
        full_name=repo["full_name"],
        owner=Owner(login=owner.get("login", ""), avatar_url=owner.get("avatar_url")),
        html_url=repo["html_url"],
        description=repo.get("description"),
        private=repo.get("private", False),
        language=repo.get("language"),
        stargazers_count=repo.get("stargazers_count", 0),
        forks_count=repo.get("forks_count", 0),
        open_issues_count=repo.get("open_issues_count", 0),
        updated_at=repo.get("updated_at"),
        pushed_at=repo.get("pushed_at"),
    )


def pull_request_from_payload(pr: dict, repo_full_name: str | None = None) -> PullRequest:
    """Convert a REST pull request payload into a PullRequest model."""
    head = pr.get("head") or {}
    base = pr.get("base") or {}
    head_repo = head.get("repo") or {}
    return PullRequest(
        id=pr["id"],
        number=pr["number"],
        title=pr.get("title", ""),
        url=pr.get("html_url", ""),
        repo_full_name=repo_full_name or head_repo.get("full_name", ""),
        source_branch=head.get("ref", ""),
        target_branch=base.get("ref", ""),
        state=pr.get("state", "open"),
        merged=bool(pr.get("merged")),
        mergeable_state=pr.get("mergeable_state"),
        head_sha=head.get("sha", ""),
        created_at=pr.get("created_at"),
    )


class GitHubClient:
    """Async client for the GitHub REST endpoints the dashboard needs."""

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        repo_cache_ttl: float = DEFAULT_REPO_CACHE_TTL_SECONDS,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self._http = httpx.AsyncClient(transport=transport, timeout=None)
        self._repo_cache: list[Repository] = []
        self._repo_cache_time: float = 0
        self._repo_cache_ttl = repo_cache_ttl

    async def aclose(self) -> None:
        await self._http.aclose()

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return f"{self.base_url}/{path_or_url.lstrip('/')}"

    async def request(
        self,
        method: str,
        url: str,
        json: dict | None = None,
        *,
        allow_not_found: bool = False,
        text: bool = False,
    ) -> GitHubResponse:
        """Perform one authenticated call.

        Args:
            method: HTTP verb.
            url: Absolute URL or path relative to the API root.
            json: Optional request body.
            allow_not_found: Treat 404 as an empty collection instead of an error.
            text: Return the raw body (diffs, logs) instead of parsed JSON.

        Raises:
            AuthenticationError: If no token is configured.
            RateLimitError: On a 403 caused by rate limiting.
            GitHubAPIError: On any other non-2xx status.
        """
        if not self.token:
            raise AuthenticationError("Not authenticated: no GitHub token configured")

        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": _ACCEPT_DIFF if text else _ACCEPT_JSON,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        response = await self._http.request(method, self._url(url), headers=headers, json=json)

        if response.is_success:
            if text:
                return GitHubResponse(response.text, None, response.status_code)
            data = response.json() if response.content else None
            next_url = parse_next_link(response.headers.get("Link"))
            return GitHubResponse(data, next_url, response.status_code)

        message = _error_message(response)
        if response.status_code == 404 and allow_not_found:
            logger.debug("GitHub 404 on %s treated as empty", url)
            return GitHubResponse(None, None, response.status_code)

        logger.warning("GitHub API error for %s %s: %s %s", method, url, response.status_code, message)
        if response.status_code == 403 and "rate limit" in message.lower():
            raise RateLimitError(403, "GitHub API rate limit exceeded. Please try again later.")
        raise GitHubAPIError(response.status_code, message)

    async def paginate(self, url: str, key: str | None = None, *, allow_not_found: bool = False) -> list:
        """Follow Link rel="next" pages and concatenate their items."""
        items: list = []
        current: str | None = url
        while current:
            page = await self.request("GET", current, allow_not_found=allow_not_found)
            data = page.data
            if key and isinstance(data, dict):
                data = data.get(key)
            if data:
                items.extend(data)
            current = page.next_url
        return items

    # --- Repositories ---

    async def list_repositories(self) -> list[Repository]:
        """All repositories visible to the user. Cached for the configured TTL."""
        if self._repo_cache and (time.monotonic() - self._repo_cache_time) < self._repo_cache_ttl:
            return self._repo_cache

        payloads = await self.paginate("/user/repos?type=all&per_page=100")
        repos = [_repository_from_payload(p) for p in payloads]

        self._repo_cache = repos
        self._repo_cache_time = time.monotonic()
        return repos

    async def list_branches(self, full_name: str) -> list[str]:
        """Branch names for a repo. Empty repos report a lone 'main'."""
        try:
            branches = await self.paginate(f"/repos/{full_name}/branches?per_page=100")
        except GitHubAPIError as e:
            logger.warning("Failed to fetch branches for %s: %s", full_name, e)
            return ["main"]
        return [b["name"] for b in branches]

    # --- Builds ---

    async def list_workflow_runs(self, full_name: str, per_page: int = 100, all_pages: bool = True) -> list[Build]:
        """Workflow runs for a repo, newest first. A missing run list is empty."""
        url = f"/repos/{full_name}/actions/runs?per_page={per_page}"
        if all_pages:
            runs = await self.paginate(url, key="workflow_runs", allow_not_found=True)
        else:
            page = await self.request("GET", url, allow_not_found=True)
            runs = (page.data or {}).get("workflow_runs") or []
        return [build_from_run(run, repo=full_name) for run in runs]

    async def list_builds_or_empty(self, full_name: str) -> list[Build]:
        """list_workflow_runs for listings that span many repos.

        One inaccessible repo yields no builds instead of failing the listing.
        Rate limiting still propagates.
        """
        try:
            return await self.list_workflow_runs(full_name)
        except RateLimitError:
            raise
        except GitHubAPIError as e:
            logger.warning("Failed to fetch builds for %s: %s", full_name, e)
            return []

    async def list_recent_builds(self, days: int = 7) -> list[Build]:
        """Builds from every repo pushed to in the last ``days`` days, newest first."""
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        repos = await self.list_repositories()

        recent = []
        for repo in repos:
            pushed = repo.pushed_at and datetime.fromisoformat(repo.pushed_at.replace("Z", "+00:00"))
            if pushed and pushed > cutoff:
                recent.append(repo)

        nested = await asyncio.gather(*(self.list_builds_or_empty(r.full_name) for r in recent))
        builds = [b for runs in nested for b in runs if b.timestamp > cutoff]
        builds.sort(key=lambda b: b.timestamp, reverse=True)
        return builds

    async def get_build_logs(self, full_name: str, run_id: str) -> dict[str, str]:
        """Log text per job name for one workflow run."""
        jobs_page = await self.request("GET", f"/repos/{full_name}/actions/runs/{run_id}/jobs")
        jobs = (jobs_page.data or {}).get("jobs") or []
        if not jobs:
            return {"info": "No jobs found for this build run."}

        async def fetch_job_log(job: dict) -> tuple[str, str]:
            try:
                log = await self.request("GET", f"/repos/{full_name}/actions/jobs/{job['id']}/logs", text=True)
            except GitHubAPIError as e:
                logger.warning("Could not fetch logs for job %r (%s): %s", job.get("name"), job["id"], e)
                return job["name"], f"Could not retrieve logs for this job. Status: {e.status_code}"
            return job["name"], log.data

        return dict(await asyncio.gather(*(fetch_job_log(job) for job in jobs)))

    async def _run_action(self, full_name: str, run_id: str, action: str, done: str) -> ActionResult:
        try:
            await self.request("POST", f"/repos/{full_name}/actions/runs/{run_id}/{action}")
        except GitHubError as e:
            logger.warning("Workflow %s failed for %s run %s: %s", action, full_name, run_id, e)
            return ActionResult(success=False, message=getattr(e, "message", str(e)))
        return ActionResult(success=True, message=done)

    async def rerun_all_jobs(self, full_name: str, run_id: str) -> ActionResult:
        return await self._run_action(full_name, run_id, "rerun", "Build rerun has been triggered.")

    async def rerun_failed_jobs(self, full_name: str, run_id: str) -> ActionResult:
        return await self._run_action(
            full_name, run_id, "rerun-failed-jobs", "Rerun of failed jobs has been triggered."
        )

    async def cancel_workflow_run(self, full_name: str, run_id: str) -> ActionResult:
        return await self._run_action(full_name, run_id, "cancel", "Build cancellation has been requested.")

    # --- Pull requests ---

    async def get_pull_request(self, full_name: str, number: int) -> PullRequest:
        page = await self.request("GET", f"/repos/{full_name}/pulls/{number}")
        if not page.data:
            raise GitHubAPIError(502, f"Empty response for pull request {full_name}#{number}")
        return pull_request_from_payload(page.data, full_name)

    async def find_pull_request(self, full_name: str, number: int) -> PullRequest | None:
        """Like get_pull_request, but a missing PR yields None."""
        page = await self.request("GET", f"/repos/{full_name}/pulls/{number}", allow_not_found=True)
        if not page.data:
            return None
        return pull_request_from_payload(page.data, full_name)

    async def find_build_for_pull_request(self, full_name: str, number: int) -> Build | None:
        """Most recent workflow run triggered for the given pull request."""
        for build in await self.list_workflow_runs(full_name, all_pages=False):
            if build.pr_number == number:
                return build
        return None

    async def get_pull_request_diff(self, full_name: str, number: int) -> str:
        page = await self.request("GET", f"/repos/{full_name}/pulls/{number}", text=True)
        return page.data

    async def list_open_pull_requests(self, full_name: str) -> list[dict]:
        return await self.paginate(f"/repos/{full_name}/pulls?state=open&per_page=100", allow_not_found=True)

    async def list_conflicting_pull_requests(self) -> list[PullRequest]:
        """Open pull requests in every repo whose mergeable_state is 'dirty'."""
        repos = await self.list_repositories()
        nested = await asyncio.gather(*(self.list_open_pull_requests(r.full_name) for r in repos))
        summaries = [pr for prs in nested for pr in prs]
        if not summaries:
            return []

        # mergeable_state is only present on the single-PR endpoint
        detailed = await asyncio.gather(*(self.request("GET", pr["url"]) for pr in summaries))
        return [
            pull_request_from_payload(page.data)
            for page in detailed
            if page.data and page.data.get("mergeable_state") == "dirty"
        ]

    async def create_pull_request(self, full_name: str, source: str, target: str) -> ActionResult:
        body = {
            "title": f"Merge {source} into {target}",
            "head": source,
            "base": target,
            "body": f"Automated PR created by GitPilot to merge {source} into {target}.",
        }
        try:
            page = await self.request("POST", f"/repos/{full_name}/pulls", json=body)
        except GitHubAPIError as e:
            if e.status_code == 422:
                if "A pull request already exists" in e.message:
                    return ActionResult(success=False, message="A pull request for these branches already exists.")
                if "No commits between" in e.message:
                    return ActionResult(
                        success=False,
                        message="The source and target branches are identical. There is nothing to merge.",
                    )
                return ActionResult(success=False, message=f"Could not create PR: {e.message}")
            return ActionResult(success=False, message=e.message)
        except GitHubError as e:
            return ActionResult(success=False, message=f"Failed to create pull request: {e}")
        return ActionResult(success=True, data=page.data)

    async def merge_pull_request(self, full_name: str, number: int) -> ActionResult:
        body = {
            "commit_title": f"Merge PR #{number} via GitPilot",
            "commit_message": "Merged by GitPilot.",
            "merge_method": "merge",
        }
        try:
            await self.request("PUT", f"/repos/{full_name}/pulls/{number}/merge", json=body)
        except GitHubAPIError as e:
            if e.status_code == 405:
                return ActionResult(
                    success=False,
                    message="Pull request is not mergeable. It may have conflicts or require checks to pass.",
                )
            if e.status_code == 409:
                return ActionResult(
                    success=False,
                    message="Could not merge due to a conflict. Please resolve conflicts on GitHub.",
                )
            return ActionResult(success=False, message=e.message)
        except GitHubError as e:
            return ActionResult(success=False, message=f"Failed to merge pull request: {e}")
        return ActionResult(success=True)

    async def compare_branches(self, full_name: str, source: str, target: str) -> CompareResult:
        """Optimistic mergeability check; PR creation is the definitive test."""
        try:
            page = await self.request("GET", f"/repos/{full_name}/compare/{target}...{source}")
        except GitHubAPIError as e:
            if "No common ancestor" in e.message:
                return CompareResult(
                    status="has-conflicts", error="Branches have no common history and cannot be compared."
                )
            if e.status_code == 404:
                return CompareResult(
                    status="has-conflicts",
                    error="One of the branches was not found. It may not exist in this repository.",
                )
            return CompareResult(status="has-conflicts", error=f"Failed to compare branches: {e.message}")

        status = (page.data or {}).get("status")
        if status == "identical":
            return CompareResult(status="no-changes")
        if status in ("diverged", "ahead", "behind"):
            return CompareResult(status="can-merge")
        error = f"Unknown branch status: {status}" if status else "Could not determine mergeability."
        return CompareResult(status="has-conflicts", error=error)
