"""
Settings — runtime configuration from config.yml and the environment.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from provisioner.core.models.state import InstallMode
from provisioner.core.persistence.atomic import MIN_FREE_BYTES
from provisioner.core.persistence.state_file import default_state_dir

LEDGER_DIR = "ledger"


class Settings(BaseModel):
    """Top-level settings. Every field has a working default."""

    model_config = ConfigDict(extra="forbid")

    # ── Locations ────────────────────────────────────────────────
    state_dir: Path = Field(default_factory=default_state_dir)
    manifest: Path | None = None      # None = packaged default manifest
    log_file: Path | None = None

    # ── Install defaults ─────────────────────────────────────────
    mode: InstallMode = InstallMode.VIBE
    target_user: str = ""

    # ── Execution ────────────────────────────────────────────────
    retry_delays: list[float] = Field(default_factory=lambda: [0, 5, 15])
    command_timeout: float | None = None
    error_output_max_length: int = 2000

    # ── Persistence ──────────────────────────────────────────────
    min_free_bytes: int = MIN_FREE_BYTES
    backup_retention_days: int = 30

    @field_validator("state_dir", "manifest", "log_file", mode="after")
    @classmethod
    def _expand(cls, value: Path | None) -> Path | None:
        return value.expanduser() if value is not None else None

    @field_validator("retry_delays")
    @classmethod
    def _non_empty(cls, value: list[float]) -> list[float]:
        if not value or any(d < 0 for d in value):
            raise ValueError("retry_delays must be a non-empty list of non-negative seconds")
        return value

    @property
    def ledger_dir(self) -> Path:
        return self.state_dir / LEDGER_DIR
