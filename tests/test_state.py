"""Tests for session state actions."""

from datetime import datetime, timezone

from models import Notification, Owner, Repository
from state import AppState


def _repo(repo_id: str) -> Repository:
    return Repository(
        id=repo_id,
        name=f"repo-{repo_id}",
        full_name=f"acme/repo-{repo_id}",
        owner=Owner(login="acme"),
        html_url=f"https://github.com/acme/repo-{repo_id}",
    )


def test_add_and_remove_repo() -> None:
    state = AppState()
    state.add_repo(_repo("1"))
    state.add_repo(_repo("2"))
    state.add_repo(_repo("1"))
    assert [r.id for r in state.selected_repos] == ["1", "2"]

    state.remove_repo("1")
    assert [r.id for r in state.selected_repos] == ["2"]

    state.clear_repos()
    assert state.selected_repos == []


def test_listeners_see_every_change_until_unsubscribed() -> None:
    state = AppState()
    seen: list[str] = []
    unsubscribe = state.subscribe(lambda s: seen.append(s.search_query))

    state.set_search_query("widgets")
    state.set_loading(True)
    unsubscribe()
    state.set_search_query("gadgets")

    assert seen == ["widgets", "widgets"]


def test_notifications_newest_first() -> None:
    state = AppState()
    first = state.add_notification("build", "Build rerun has been triggered.", repo_full_name="acme/widgets")
    second = state.add_notification("error", "Could not refresh build status")

    assert state.notifications == [second, first]
    assert first.id.startswith("acme/widgets-build-")

    state.clear_notifications()
    assert state.notifications == []


def test_add_notifications_get_unique_ids() -> None:
    state = AppState()
    now = datetime(2026, 10, 1, tzinfo=timezone.utc)
    batch = [
        Notification(id="", type="pr", message="one", timestamp=now, repo_full_name="acme/widgets"),
        Notification(id="", type="pr", message="two", timestamp=now, repo_full_name="acme/widgets"),
    ]

    state.add_notifications(batch)

    ids = [n.id for n in state.notifications]
    assert len(set(ids)) == 2
    assert all(i.startswith("acme/widgets-pr-") for i in ids)
