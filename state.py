"""Application state for one dashboard session.

All mutation goes through the action methods below so that subscribers
(the polling controller, mainly) see every change.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Literal

from models import BulkBuild, Notification, Repository

logger = logging.getLogger(__name__)

Listener = Callable[["AppState"], None]


def _notification_id(repo_full_name: str, kind: str, timestamp: datetime) -> str:
    return f"{repo_full_name}-{kind}-{int(timestamp.timestamp() * 1000)}"


class AppState:
    """Selection, bulk build and notifications for the current session."""

    def __init__(self) -> None:
        self.search_query: str = ""
        self.selected_repos: list[Repository] = []
        self.is_loading: bool = False
        self.bulk_build: BulkBuild | None = None
        self.notifications: list[Notification] = []
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    # --- Search & selection ---

    def set_search_query(self, query: str) -> None:
        self.search_query = query
        self._notify()

    def add_repo(self, repo: Repository) -> None:
        if any(r.id == repo.id for r in self.selected_repos):
            return
        self.selected_repos = [*self.selected_repos, repo]
        self._notify()

    def remove_repo(self, repo_id: str) -> None:
        self.selected_repos = [r for r in self.selected_repos if r.id != repo_id]
        self._notify()

    def set_repos(self, repos: list[Repository]) -> None:
        self.selected_repos = list(repos)
        self._notify()

    def clear_repos(self) -> None:
        self.selected_repos = []
        self._notify()

    def set_loading(self, is_loading: bool) -> None:
        self.is_loading = is_loading
        self._notify()

    # --- Bulk build ---

    def set_bulk_build(self, build: BulkBuild | None) -> None:
        """Replace the bulk build snapshot wholesale."""
        self.bulk_build = build
        self._notify()

    def clear_bulk_build(self) -> None:
        self.set_bulk_build(None)

    # --- Notifications ---

    def add_notification(
        self,
        kind: Literal["repo", "build", "pr", "error"],
        message: str,
        repo_full_name: str = "",
        url: str | None = None,
    ) -> Notification:
        """Push a notification to the front of the list."""
        now = datetime.now().astimezone()
        notification = Notification(
            id=_notification_id(repo_full_name, kind, now),
            type=kind,
            message=message,
            timestamp=now,
            repo_full_name=repo_full_name,
            url=url,
        )
        self.notifications = [notification, *self.notifications]
        self._notify()
        return notification

    def add_notifications(self, notifications: list[Notification]) -> None:
        """Push several notifications at once; ids get a random suffix to stay unique."""
        fresh = [
            n.model_copy(update={"id": f"{_notification_id(n.repo_full_name, n.type, n.timestamp)}-{uuid.uuid4().hex[:8]}"})
            for n in notifications
        ]
        self.notifications = [*fresh, *self.notifications]
        self._notify()

    def clear_notifications(self) -> None:
        self.notifications = []
        self._notify()
