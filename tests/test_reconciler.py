"""Tests for bulk build bootstrap and reconciliation."""

import asyncio

import pytest

from conftest import pr_payload, run_payload
from models import BuildStatus, BulkBuild, BulkBuildRepo
from poller import PollingController, PollState
from reconciler import BulkStatusReconciler, bulk_build_from_query, fetch_bulk_status, parse_pr_identifiers
from state import AppState


def _bulk(*members: BulkBuildRepo) -> BulkBuild:
    return bulk_build_from_query("1760000000000", "feature", "main", "octocat", None).model_copy(
        update={"repos": members}
    )


def test_parse_pr_identifiers() -> None:
    assert parse_pr_identifiers("acme/widgets:42, acme/gadgets:7") == [("acme/widgets", 42), ("acme/gadgets", 7)]


@pytest.mark.parametrize("bad", ["acme/widgets", "widgets:4", "acme/widgets:four"])
def test_parse_pr_identifiers_rejects_malformed(bad) -> None:
    with pytest.raises(ValueError):
        parse_pr_identifiers(bad)


def test_bulk_build_from_query() -> None:
    bulk = bulk_build_from_query("1760000000000", "feature", "main", "octocat", "acme/widgets:42,acme/gadgets:7")

    assert bulk.id == "1760000000000"
    assert bulk.source_branch == "feature"
    assert bulk.target_branch == "main"
    assert bulk.user == "octocat"
    assert bulk.status is BuildStatus.IN_PROGRESS
    assert bulk.timestamp.year == 2025
    assert [(r.repo, r.pr_number, r.status) for r in bulk.repos] == [
        ("acme/widgets", 42, BuildStatus.QUEUED),
        ("acme/gadgets", 7, BuildStatus.QUEUED),
    ]
    assert bulk.repos[0].commit == "......."


async def test_merged_pr_without_run_is_success(github, client) -> None:
    github.add("GET", "/repos/acme/widgets/pulls/42", json=pr_payload(42, merged=True, state="closed"))
    github.add("GET", "/repos/acme/widgets/actions/runs", json={"workflow_runs": []})

    updated = await fetch_bulk_status(client, _bulk(BulkBuildRepo(repo="acme/widgets", pr_number=42)))

    assert updated.repos[0].status is BuildStatus.SUCCESS
    assert updated.repos[0].commit == "1234567"
    assert updated.status is BuildStatus.SUCCESS


async def test_workflow_run_wins_over_dirty_pr(github, client) -> None:
    github.add("GET", "/repos/acme/widgets/pulls/42", json=pr_payload(42, mergeable_state="dirty"))
    github.add(
        "GET",
        "/repos/acme/widgets/actions/runs",
        json={"workflow_runs": [run_payload(900, "in_progress", pr_number=42)]},
    )

    updated = await fetch_bulk_status(client, _bulk(BulkBuildRepo(repo="acme/widgets", pr_number=42)))

    member = updated.repos[0]
    assert member.status is BuildStatus.IN_PROGRESS
    assert member.build_id == "900"
    assert member.commit == "abcdef1"
    assert updated.status is BuildStatus.IN_PROGRESS


async def test_run_for_another_pr_is_ignored(github, client) -> None:
    github.add("GET", "/repos/acme/widgets/pulls/42", json=pr_payload(42, mergeable_state="dirty"))
    github.add(
        "GET",
        "/repos/acme/widgets/actions/runs",
        json={"workflow_runs": [run_payload(900, "completed", "success", pr_number=41)]},
    )

    updated = await fetch_bulk_status(client, _bulk(BulkBuildRepo(repo="acme/widgets", pr_number=42)))

    assert updated.repos[0].status is BuildStatus.FAILED


async def test_missing_pr_and_run_keeps_previous_status(github, client) -> None:
    member = BulkBuildRepo(repo="acme/widgets", pr_number=42, status=BuildStatus.IN_PROGRESS, commit="0000000")

    updated = await fetch_bulk_status(client, _bulk(member))

    assert updated.repos[0] == member
    assert updated.status is BuildStatus.IN_PROGRESS


async def test_unknown_mergeable_state_keeps_status(github, client) -> None:
    github.add("GET", "/repos/acme/widgets/pulls/42", json=pr_payload(42, mergeable_state="unknown"))
    member = BulkBuildRepo(repo="acme/widgets", pr_number=42)

    updated = await fetch_bulk_status(client, _bulk(member))

    assert updated.repos[0].status is BuildStatus.QUEUED


async def test_aggregate_waits_for_every_member(github, client) -> None:
    github.add("GET", "/repos/acme/widgets/pulls/1", json=pr_payload(1, merged=True, state="closed"))
    github.add("GET", "/repos/acme/gadgets/pulls/2", json=pr_payload(2, "acme/gadgets", mergeable_state="clean"))

    updated = await fetch_bulk_status(
        client,
        _bulk(BulkBuildRepo(repo="acme/widgets", pr_number=1), BulkBuildRepo(repo="acme/gadgets", pr_number=2)),
    )

    assert [r.status for r in updated.repos] == [BuildStatus.SUCCESS, BuildStatus.IN_PROGRESS]
    assert updated.status is BuildStatus.IN_PROGRESS


async def test_fetch_does_not_mutate_input(github, client) -> None:
    github.add("GET", "/repos/acme/widgets/pulls/42", json=pr_payload(42, merged=True, state="closed"))
    original = _bulk(BulkBuildRepo(repo="acme/widgets", pr_number=42))

    updated = await fetch_bulk_status(client, original)

    assert updated is not original
    assert original.repos[0].status is BuildStatus.QUEUED


async def test_failed_pass_keeps_state_and_notifies(github, client) -> None:
    github.add("GET", "/repos/acme/widgets/pulls/42", json={"message": "Server Error"}, status=500)
    state = AppState()
    bulk = _bulk(BulkBuildRepo(repo="acme/widgets", pr_number=42))
    state.set_bulk_build(bulk)

    ok = await BulkStatusReconciler(client, state).run_pass()

    assert ok is False
    assert state.bulk_build is bulk
    assert len(state.notifications) == 1
    assert state.notifications[0].type == "error"
    assert "Server Error" in state.notifications[0].message


async def test_successful_pass_replaces_bulk_build(github, client) -> None:
    github.add("GET", "/repos/acme/widgets/pulls/42", json=pr_payload(42, merged=True, state="closed"))
    state = AppState()
    bulk = _bulk(BulkBuildRepo(repo="acme/widgets", pr_number=42))
    state.set_bulk_build(bulk)

    ok = await BulkStatusReconciler(client, state).run_pass()

    assert ok is True
    assert state.bulk_build is not bulk
    assert state.bulk_build.status is BuildStatus.SUCCESS


async def test_pass_without_bulk_build_does_nothing(github, client) -> None:
    assert await BulkStatusReconciler(client, AppState()).run_pass() is False
    assert github.calls == []


async def test_malformed_payload_keeps_state_and_notifies(github, client) -> None:
    github.add("GET", "/repos/acme/widgets/pulls/42", text="<html>maintenance</html>")
    state = AppState()
    bulk = _bulk(BulkBuildRepo(repo="acme/widgets", pr_number=42))
    state.set_bulk_build(bulk)

    ok = await BulkStatusReconciler(client, state).run_pass()

    assert ok is False
    assert state.bulk_build is bulk
    assert state.notifications[0].type == "error"


async def test_polling_survives_malformed_payload(github, client) -> None:
    github.add("GET", "/repos/acme/widgets/pulls/42", text="<html>maintenance</html>")
    state = AppState()
    reconciler = BulkStatusReconciler(client, state)
    ticks = 0

    async def sleep(seconds: float) -> None:
        nonlocal ticks
        ticks += 1
        if ticks == 3:
            # GitHub recovers before the third pass
            github.add("GET", "/repos/acme/widgets/pulls/42", json=pr_payload(42, merged=True, state="closed"))
        await asyncio.sleep(0)

    controller = PollingController(state, reconciler.run_pass, sleep=sleep)
    state.set_bulk_build(_bulk(BulkBuildRepo(repo="acme/widgets", pr_number=42)))
    await controller._task

    assert ticks == 3
    assert len(state.notifications) == 2
    assert state.bulk_build.status is BuildStatus.SUCCESS
    assert controller.status is PollState.IDLE
