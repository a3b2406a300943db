"""FastAPI app for GitPilot: multi-repo GitHub merge and build dashboard."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

import httpx
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from bulk import clean_pull_requests, compare_and_open, merge_clean, start_bulk_build
from config import Settings, load_settings
from gh_client import AuthenticationError, GitHubAPIError, GitHubClient, RateLimitError
from models import (
    ActionResult,
    Build,
    BulkBuild,
    BulkCompareRequest,
    BulkComparison,
    BulkMergeRequest,
    CompareResult,
    Notification,
    PullRequest,
    PullRequestCreate,
    Repository,
    SelectionUpdate,
    TagsUpdate,
)
from poller import PollingController
from reconciler import BulkStatusReconciler, bulk_build_from_query
from state import AppState
from tags import TagStore

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Everything one dashboard session owns."""

    settings: Settings
    client: GitHubClient
    state: AppState
    tags: TagStore
    reconciler: BulkStatusReconciler
    poller: PollingController


def create_session(settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> Session:
    client = GitHubClient(
        settings.github_token,
        base_url=settings.api_url,
        transport=transport,
        repo_cache_ttl=settings.repo_cache_ttl,
    )
    state = AppState()
    reconciler = BulkStatusReconciler(client, state)
    poller = PollingController(state, reconciler.run_pass, interval=settings.poll_interval)
    return Session(settings, client, state, TagStore(), reconciler, poller)


def _session(request: Request) -> Session:
    return request.app.state.session


async def _auth_error(request: Request, exc: AuthenticationError):
    return JSONResponse(status_code=401, content={"detail": str(exc)})


async def _rate_limit_error(request: Request, exc: RateLimitError):
    return JSONResponse(status_code=429, content={"detail": exc.message})


async def _github_error(request: Request, exc: GitHubAPIError):
    logger.warning("Upstream error for %s %s: %s", request.method, request.url.path, exc)
    status_code = exc.status_code if 400 <= exc.status_code < 600 else 502
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


def create_app(settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """Build the app. ``transport`` lets tests stand in for api.github.com."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup: build the session. Shutdown: stop polling, close the HTTP client."""
        session = create_session(settings or load_settings(), transport)
        if not session.settings.github_token:
            logger.warning("No GitHub token configured; API calls will fail with 401")
        app.state.session = session
        yield
        await session.poller.shutdown()
        await session.client.aclose()

    app = FastAPI(
        title="GitPilot",
        description="Multi-repo GitHub merge and build dashboard",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(AuthenticationError, _auth_error)
    app.add_exception_handler(RateLimitError, _rate_limit_error)
    app.add_exception_handler(GitHubAPIError, _github_error)
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    # --- Repositories & builds ---

    @app.get("/api/repos", response_model=list[Repository])
    async def list_repos(request: Request):
        """All repositories with recent builds, branches and tags."""
        session = _session(request)
        repos = await session.client.list_repositories()

        async def with_details(repo: Repository) -> Repository:
            builds, branches = await asyncio.gather(
                session.client.list_builds_or_empty(repo.full_name),
                session.client.list_branches(repo.full_name),
            )
            return repo.model_copy(update={"recent_builds": builds, "branches": branches})

        detailed = await asyncio.gather(*(with_details(r) for r in repos))
        return session.tags.apply(list(detailed))

    @app.get("/api/repos/{owner}/{name}/builds", response_model=list[Build])
    async def repo_builds(owner: str, name: str, request: Request):
        return await _session(request).client.list_workflow_runs(f"{owner}/{name}", per_page=20, all_pages=False)

    @app.get("/api/builds/recent", response_model=list[Build])
    async def recent_builds(request: Request):
        """Builds from the last 7 days across all recently pushed repos."""
        return await _session(request).client.list_recent_builds()

    @app.put("/api/repos/{repo_id}/tags", response_model=list[str])
    async def update_tags(repo_id: str, body: TagsUpdate, request: Request):
        return _session(request).tags.set(repo_id, body.tags)

    # --- Branches & pull requests ---

    @app.get("/api/repos/{owner}/{name}/compare", response_model=CompareResult)
    async def compare(owner: str, name: str, source: str, target: str, request: Request):
        return await _session(request).client.compare_branches(f"{owner}/{name}", source, target)

    @app.post("/api/repos/{owner}/{name}/pulls", response_model=ActionResult)
    async def create_pull(owner: str, name: str, body: PullRequestCreate, request: Request):
        return await _session(request).client.create_pull_request(f"{owner}/{name}", body.source, body.target)

    @app.get("/api/repos/{owner}/{name}/pulls/{number}", response_model=PullRequest)
    async def get_pull(owner: str, name: str, number: int, request: Request):
        return await _session(request).client.get_pull_request(f"{owner}/{name}", number)

    @app.get("/api/repos/{owner}/{name}/pulls/{number}/diff", response_class=PlainTextResponse)
    async def get_pull_diff(owner: str, name: str, number: int, request: Request):
        return await _session(request).client.get_pull_request_diff(f"{owner}/{name}", number)

    @app.put("/api/repos/{owner}/{name}/pulls/{number}/merge", response_model=ActionResult)
    async def merge_pull(owner: str, name: str, number: int, request: Request):
        return await _session(request).client.merge_pull_request(f"{owner}/{name}", number)

    @app.get("/api/pulls/conflicting", response_model=list[PullRequest])
    async def conflicting_pulls(request: Request):
        return await _session(request).client.list_conflicting_pull_requests()

    # --- Workflow runs ---

    @app.post("/api/repos/{owner}/{name}/runs/{run_id}/rerun", response_model=ActionResult)
    async def rerun(owner: str, name: str, run_id: str, request: Request):
        return await _session(request).client.rerun_all_jobs(f"{owner}/{name}", run_id)

    @app.post("/api/repos/{owner}/{name}/runs/{run_id}/rerun-failed", response_model=ActionResult)
    async def rerun_failed(owner: str, name: str, run_id: str, request: Request):
        return await _session(request).client.rerun_failed_jobs(f"{owner}/{name}", run_id)

    @app.post("/api/repos/{owner}/{name}/runs/{run_id}/cancel", response_model=ActionResult)
    async def cancel(owner: str, name: str, run_id: str, request: Request):
        return await _session(request).client.cancel_workflow_run(f"{owner}/{name}", run_id)

    @app.get("/api/repos/{owner}/{name}/runs/{run_id}/logs", response_model=dict[str, str])
    async def logs(owner: str, name: str, run_id: str, request: Request):
        return await _session(request).client.get_build_logs(f"{owner}/{name}", run_id)

    # --- Selection ---

    @app.get("/api/selection", response_model=list[Repository])
    async def get_selection(request: Request):
        return _session(request).state.selected_repos

    @app.put("/api/selection", response_model=list[Repository])
    async def set_selection(body: SelectionUpdate, request: Request):
        """Select repositories by id; unknown ids are rejected."""
        session = _session(request)
        repos = {r.id: r for r in await session.client.list_repositories()}
        missing = [repo_id for repo_id in body.repo_ids if repo_id not in repos]
        if missing:
            raise HTTPException(status_code=404, detail=f"Unknown repositories: {', '.join(missing)}")
        session.state.set_repos(session.tags.apply([repos[repo_id] for repo_id in body.repo_ids]))
        return session.state.selected_repos

    @app.delete("/api/selection", status_code=204)
    async def clear_selection(request: Request):
        _session(request).state.clear_repos()

    # --- Bulk merge ---

    @app.post("/api/bulk/compare", response_model=list[BulkComparison])
    async def bulk_compare(body: BulkCompareRequest, request: Request):
        session = _session(request)
        results = await compare_and_open(session.client, body.repos, body.source, body.target)
        opened = len(clean_pull_requests(results))
        conflicts = sum(1 for r in results if r.status == "has-conflicts")
        session.state.add_notification(
            "pr", f"Created {opened} pull requests. Found {conflicts} repositories with conflicts."
        )
        return results

    @app.post("/api/bulk/merge", response_model=BulkBuild)
    async def bulk_merge(body: BulkMergeRequest, request: Request, background: BackgroundTasks):
        """Start tracking a bulk build, then merge its PRs after responding."""
        session = _session(request)
        prs = [(p.repo, p.pr_number) for p in body.prs]
        if not prs:
            raise HTTPException(status_code=400, detail="No pull requests to merge")

        session.state.set_bulk_build(start_bulk_build(prs, body.source, body.target, body.user))

        async def merge_in_background() -> None:
            results = await merge_clean(session.client, prs)
            for (repo, number), result in zip(prs, results):
                if not result.success:
                    session.state.add_notification("pr", f"#{number}: {result.message}", repo_full_name=repo)

        background.add_task(merge_in_background)
        return session.state.bulk_build

    @app.get("/api/bulk-builds/{bulk_id}", response_model=BulkBuild)
    async def get_bulk_build(
        bulk_id: str,
        request: Request,
        source: str | None = None,
        target: str | None = None,
        user: str | None = None,
        prs: str | None = None,
    ):
        """Current bulk build; rebuilt from the query string after a reload."""
        state = _session(request).state
        if state.bulk_build is None or state.bulk_build.id != bulk_id:
            if prs is None:
                raise HTTPException(status_code=404, detail=f"Bulk build '{bulk_id}' not found")
            try:
                bulk = bulk_build_from_query(bulk_id, source, target, user, prs)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))
            state.set_bulk_build(bulk)
        return state.bulk_build

    @app.post("/api/bulk-builds/{bulk_id}/refresh", response_model=BulkBuild)
    async def refresh_bulk_build(bulk_id: str, request: Request):
        """Reconcile immediately, outside the polling schedule."""
        session = _session(request)
        if session.state.bulk_build is None or session.state.bulk_build.id != bulk_id:
            raise HTTPException(status_code=404, detail=f"Bulk build '{bulk_id}' not found")
        await session.poller.refresh_now()
        return session.state.bulk_build

    @app.delete("/api/bulk-builds/current", status_code=204)
    async def leave_bulk_build(request: Request):
        """Navigating away drops the bulk build and stops polling."""
        _session(request).state.clear_bulk_build()

    # --- Notifications ---

    @app.get("/api/notifications", response_model=list[Notification])
    async def list_notifications(request: Request):
        return _session(request).state.notifications

    @app.delete("/api/notifications", status_code=204)
    async def clear_notifications(request: Request):
        _session(request).state.clear_notifications()

    @app.get("/health")
    async def health(request: Request):
        """Health check."""
        session = _session(request)
        bulk = session.state.bulk_build
        return {
            "status": "ok",
            "authenticated": bool(session.settings.github_token),
            "polling": session.poller.status.value,
            "bulk_build": bulk.id if bulk else None,
            "time": datetime.now().isoformat(),
        }


app = create_app()
