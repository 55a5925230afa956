"""Settings — env-driven via pydantic-settings.

Every setting can be overridden with a ``DOCKHAND_*`` environment variable
or a ``.env`` file in the working directory.

Examples
--------
Override via environment::

    export DOCKHAND_STATE_DIR=/var/lib/dockhand
    export DOCKHAND_LOG_LEVEL=DEBUG
    export DOCKHAND_RUN_AS_USER=nobody
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from dockhand.models.deploy import RolloutPolicy


class DockhandSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DOCKHAND_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "INFO"

    # Storage; relative paths are resolved against state_dir
    state_dir: Path = Path(".dockhand")
    cache_path: Path = Path("cache")
    ledger_path: Path = Path("ledger.db")
    registry_path: Path = Path("registry")
    runtime_store_path: Path = Path("runtime")
    cluster_state_path: Path = Path("cluster.json")
    mount_path: Path = Path("mounts")  # persistent step cache dirs
    work_dir: Path | None = None

    # Stage execution
    run_as_user: str | None = None
    run_as_group: str | None = None
    step_timeout_seconds: float | None = None

    default_repository: str = "app"
    pipeline_file: Path = Path("dockhand.yaml")

    # Rollout
    rollout_timeout_seconds: float = 120.0
    rollout_initial_delay: float = 0.5
    rollout_max_delay: float = 10.0
    rollout_backoff_factor: float = 2.0
    rollout_retry_budget: int = 3

    def resolve(self, path: Path) -> Path:
        """*path* under ``state_dir`` unless it is absolute."""
        return path if path.is_absolute() else self.state_dir / path

    def rollout_policy(self) -> RolloutPolicy:
        return RolloutPolicy(
            timeout_seconds=self.rollout_timeout_seconds,
            initial_delay=self.rollout_initial_delay,
            max_delay=self.rollout_max_delay,
            backoff_factor=self.rollout_backoff_factor,
            retry_budget=self.rollout_retry_budget,
        )


# Module-level singleton: import as `from dockhand.config import settings`
settings = DockhandSettings()
