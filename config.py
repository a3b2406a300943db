"""Runtime configuration: resolved from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_POLL_INTERVAL_SECONDS = 15.0
DEFAULT_REPO_CACHE_TTL_SECONDS = 300.0


@dataclass
class Settings:
    """Resolved settings for one GitPilot process."""

    github_token: str
    api_url: str = DEFAULT_API_URL
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS
    repo_cache_ttl: float = DEFAULT_REPO_CACHE_TTL_SECONDS
    # Read for the OAuth / Firestore / Sheets collaborators, unused by the core
    oauth_client_id: str | None = None
    oauth_client_secret: str | None = None
    session_secret: str | None = None
    release_sheet_id: str | None = None
    firestore: dict[str, str] = field(default_factory=dict)


def get_github_token(override: str | None = None) -> str:
    """Get the GitHub token used for API calls.

    Priority: override > GITPILOT_GITHUB_TOKEN > GITHUB_TOKEN > ""
    """
    if override:
        return override
    return os.getenv("GITPILOT_GITHUB_TOKEN") or os.getenv("GITHUB_TOKEN") or ""


def _float_env(name: str, default: float) -> float:
    """Read a positive float from the environment, falling back on bad values."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def load_settings(token: str | None = None) -> Settings:
    """Build Settings from the current environment."""
    firestore = {
        key: os.getenv(env_name, "")
        for key, env_name in (
            ("project_id", "FIRESTORE_PROJECT_ID"),
            ("client_email", "FIRESTORE_CLIENT_EMAIL"),
            ("private_key", "FIRESTORE_PRIVATE_KEY"),
        )
        if os.getenv(env_name)
    }
    return Settings(
        github_token=get_github_token(token),
        api_url=os.getenv("GITPILOT_GITHUB_API_URL") or DEFAULT_API_URL,
        poll_interval=_float_env("GITPILOT_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
        repo_cache_ttl=_float_env("GITPILOT_REPO_CACHE_TTL", DEFAULT_REPO_CACHE_TTL_SECONDS),
        oauth_client_id=os.getenv("GITHUB_CLIENT_ID"),
        oauth_client_secret=os.getenv("GITHUB_CLIENT_SECRET"),
        session_secret=os.getenv("NEXTAUTH_SECRET") or os.getenv("GITPILOT_SESSION_SECRET"),
        release_sheet_id=os.getenv("GOOGLE_SHEET_ID"),
        firestore=firestore,
    )
