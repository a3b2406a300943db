"""Shared fixtures: an in-memory stand-in for api.github.com."""

from __future__ import annotations

import httpx
import pytest

from gh_client import GitHubClient

API = "https://api.github.test"


class FakeGitHub:
    """Routes requests to canned responses and records what was called."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], httpx.Response | Exception] = {}
        self.calls: list[httpx.Request] = []

    def add(
        self,
        method: str,
        target: str,
        json=None,
        status: int = 200,
        headers: dict | None = None,
        text: str | None = None,
    ) -> None:
        """Register a response for ``target`` (a path, optionally with a query string)."""
        if text is not None:
            response = httpx.Response(status, text=text, headers=headers)
        elif json is None:
            response = httpx.Response(status, headers=headers)
        else:
            response = httpx.Response(status, json=json, headers=headers)
        self.routes[(method, target)] = response

    def fail(self, method: str, target: str, exc: Exception) -> None:
        self.routes[(method, target)] = exc

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path
        query = request.url.query.decode()
        for key in ((request.method, f"{path}?{query}"), (request.method, path)):
            if key in self.routes:
                result = self.routes[key]
                if isinstance(result, Exception):
                    raise result
                return result
        return httpx.Response(404, json={"message": "Not Found"})

    def called(self, method: str, path: str) -> int:
        return sum(1 for r in self.calls if r.method == method and r.url.path == path)


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def transport(github: FakeGitHub) -> httpx.MockTransport:
    return httpx.MockTransport(github.handler)


@pytest.fixture
async def client(transport):
    gh = GitHubClient("test-token", base_url=API, transport=transport)
    yield gh
    await gh.aclose()


def run_payload(run_id: int, status: str, conclusion: str | None = None, pr_number: int | None = None, **extra) -> dict:
    """Minimal workflow-run payload."""
    payload = {
        "id": run_id,
        "name": "CI",
        "head_branch": "feature",
        "head_sha": "abcdef1234567890",
        "status": status,
        "conclusion": conclusion,
        "created_at": "2026-10-01T12:00:00Z",
        "pull_requests": [{"number": pr_number}] if pr_number is not None else [],
    }
    payload.update(extra)
    return payload


def pr_payload(number: int, repo: str = "acme/widgets", **extra) -> dict:
    """Minimal pull request payload."""
    payload = {
        "id": 1000 + number,
        "number": number,
        "title": f"Merge feature into main (#{number})",
        "html_url": f"https://github.com/{repo}/pull/{number}",
        "url": f"{API}/repos/{repo}/pulls/{number}",
        "state": "open",
        "merged": False,
        "mergeable_state": "clean",
        "head": {"ref": "feature", "sha": "1234567abcdef", "repo": {"full_name": repo}},
        "base": {"ref": "main"},
        "created_at": "2026-10-01T12:00:00Z",
    }
    payload.update(extra)
    return payload
