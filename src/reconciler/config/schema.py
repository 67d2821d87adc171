"""Workspace settings models."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Engine settings.

    Fields can be set via ``reconcile.yaml`` (constructor kwargs) or
    environment variables with the ``RECONCILE_`` prefix. Constructor kwargs
    take precedence.
    """

    model_config = SettingsConfigDict(env_prefix="RECONCILE_")

    state_path: Path = Path(".reconcile-state.json")
    parallelism: int = Field(default=10, ge=1)
    operation_timeout: float | None = Field(default=300.0, gt=0)
    refresh: bool = True


class Workspace(BaseModel):
    """Explicit configuration root handed to every engine entry point."""

    model_config = ConfigDict(frozen=True)

    root: Path
    settings: EngineSettings = Field(default_factory=EngineSettings)

    @property
    def state_path(self) -> Path:
        """State file location; relative paths resolve against the root."""
        if self.settings.state_path.is_absolute():
            return self.settings.state_path
        return self.root / self.settings.state_path
