"""User-defined repository tags, keyed by GitHub repository id."""

from __future__ import annotations

import logging

from models import Repository

logger = logging.getLogger(__name__)


def normalize_tags(tags: list[str]) -> list[str]:
    """Strip whitespace, drop empties and duplicates, keep first-seen order."""
    seen: dict[str, None] = {}
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen[tag] = None
    return list(seen)


class TagStore:
    """In-process tag storage."""

    def __init__(self) -> None:
        self._tags: dict[str, list[str]] = {}

    def get(self, repo_id: str) -> list[str]:
        return list(self._tags.get(repo_id, []))

    def set(self, repo_id: str, tags: list[str]) -> list[str]:
        cleaned = normalize_tags(tags)
        if cleaned:
            self._tags[repo_id] = cleaned
        else:
            self._tags.pop(repo_id, None)
        logger.info("Updated tags for repo %s: %s", repo_id, cleaned)
        return cleaned

    def apply(self, repos: list[Repository]) -> list[Repository]:
        """Return copies of ``repos`` with their stored tags attached."""
        return [repo.model_copy(update={"tags": self.get(repo.id)}) for repo in repos]
