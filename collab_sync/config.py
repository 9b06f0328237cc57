"""
Configuration for the sync client.

Timing values mirror the cadence rules of the polling backend and are
kept in milliseconds. Configuration can come from code, environment
variables, or the ``sync`` section of a YAML settings file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError

ENV_PREFIX = "COLLAB_SYNC_"


@dataclass
class SyncConfig:
    """Timing configuration for the sync service and polling backend.

    Attributes:
        fetch_interval_ms: Base cadence used while steps keep arriving
        fetch_interval_max_ms: Upper bound of the doubling backoff with several editors
        fetch_interval_single_editor_ms: Cadence when fewer than two collaborators are alive
        fetch_interval_invisible_ms: Cadence while the host reports the editor hidden
        autosave_interval_ms: Maximum age of the last save before content is attached
        max_retry_fetch_count: Network failures tolerated before CONNECTION_FAILED
        tick_interval_ms: Granularity of the fetch driver
        idle_timeout_minutes: Inactivity after which the document is considered idle
        close_timeout_ms: Upper bound for waiting on a save acknowledgment in close()
    """

    fetch_interval_ms: int = 300
    fetch_interval_max_ms: int = 5000
    fetch_interval_single_editor_ms: int = 5000
    fetch_interval_invisible_ms: int = 60000
    autosave_interval_ms: int = 30000
    max_retry_fetch_count: int = 5
    tick_interval_ms: int = 50
    idle_timeout_minutes: int = 1440
    close_timeout_ms: int = 2000

    @property
    def collaborator_disconnect_time_ms(self) -> float:
        """Silence after which a collaborator no longer counts as alive.

        Must stay above every fetch interval, hence derived from the
        invisible cadence.
        """
        return self.fetch_interval_invisible_ms * 1.5

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Create config from ``COLLAB_SYNC_*`` environment variables.

        Each field maps to the upper-cased field name with the prefix,
        e.g. ``COLLAB_SYNC_FETCH_INTERVAL_MS``. Unset variables keep defaults.

        Raises:
            ConfigurationError: If a variable is not a valid integer
        """
        values: dict[str, int] = {}
        for f in fields(cls):
            env_name = f"{ENV_PREFIX}{f.name.upper()}"
            raw = os.environ.get(env_name)
            if raw is None or raw == "":
                continue
            values[f.name] = _parse_int(env_name, raw)
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: Path) -> SyncConfig:
        """Create config from the ``sync`` section of a YAML settings file.

        ```yaml
        sync:
          fetch_interval_ms: 300
          autosave_interval_ms: 30000
        ```

        A missing file or section yields the defaults.
        """
        if not path.exists():
            return cls()

        with open(path) as f:
            settings = yaml.safe_load(f) or {}

        section = settings.get("sync") or {}
        if not isinstance(section, dict):
            raise ConfigurationError("sync", "section must be a mapping")

        known = {f.name for f in fields(cls)}
        values: dict[str, int] = {}
        for key, raw in section.items():
            if key not in known:
                raise ConfigurationError(key, "unknown sync setting")
            values[key] = _parse_int(key, raw)
        return cls(**values)


@dataclass
class SessionApiConfig:
    """Configuration for the HTTP session endpoint.

    Attributes:
        base_url: Base URL of the session API, e.g. ``https://cloud.example.com/apps/text``
        share_token: Share token for public (link-shared) documents
        request_timeout: Per-request timeout in seconds
    """

    base_url: str
    share_token: str | None = None
    request_timeout: float = 30.0

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")

    @classmethod
    def from_env(cls) -> SessionApiConfig:
        """Create config from environment variables.

        Expected environment variables:
        - COLLAB_SYNC_BASE_URL: Base URL of the session API (required)
        - COLLAB_SYNC_SHARE_TOKEN: Optional share token
        - COLLAB_SYNC_REQUEST_TIMEOUT: Optional timeout in seconds

        Raises:
            ConfigurationError: If the base URL is missing or the timeout is invalid
        """
        base_url = os.environ.get(f"{ENV_PREFIX}BASE_URL")
        if not base_url:
            raise ConfigurationError(f"{ENV_PREFIX}BASE_URL", "environment variable not set")

        timeout_raw = os.environ.get(f"{ENV_PREFIX}REQUEST_TIMEOUT", "30")
        try:
            timeout = float(timeout_raw)
        except ValueError as e:
            raise ConfigurationError(f"{ENV_PREFIX}REQUEST_TIMEOUT", f"not a number: {timeout_raw!r}") from e

        return cls(
            base_url=base_url,
            share_token=os.environ.get(f"{ENV_PREFIX}SHARE_TOKEN") or None,
            request_timeout=timeout,
        )


def _parse_int(name: str, raw: Any) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(name, f"not an integer: {raw!r}") from e
    if value < 0:
        raise ConfigurationError(name, "must not be negative")
    return value
