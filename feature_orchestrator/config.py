"""Configuration loading: defaults → orchestrator.toml → CLI flags."""

from __future__ import annotations

import sys

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from .errors import ConfigurationError


class OrchestratorConfig(BaseModel):
    """All orchestrator settings. Loaded from defaults, then orchestrator.toml, then CLI flags."""

    # Repository layout
    project_dir: Path = Field(default_factory=lambda: Path.cwd())
    base_worktree_path: Path | None = None
    project_name: str | None = None
    base_branch: str = "main"
    remote: str | None = "origin"
    push_branches: bool = True

    # Scheduling and review
    max_concurrent_tasks: int = Field(default=2, ge=1, le=5)
    required_approvals: int = Field(default=2, ge=1, le=5)
    reviewer_profiles: list[str] = Field(
        default_factory=lambda: ["frontend", "backend", "devops"], min_length=1,
    )
    max_attempts: int = Field(default=3, ge=1)
    merge_conflict_policy: Literal["ours", "theirs", "manual"] = "manual"

    # Agents
    agent_timeout_seconds: float = Field(default=3600.0, gt=0)
    planning_timeout_seconds: float = Field(default=3600.0, gt=0)
    model: str = "sonnet"
    planning_model: str = "opus"
    permission_mode: Literal["default", "acceptEdits", "bypassPermissions"] = "acceptEdits"
    allowed_tools: list[str] = Field(default_factory=lambda: [
        "Read", "Write", "Edit", "Bash", "Glob", "Grep", "WebFetch", "WebSearch",
    ])
    cli_path: Path | None = None
    profiles_dir: Path | None = None

    # State and logging
    state_dir: Path = Path(".orchestrator")
    log_level: str = "INFO"
    log_dir: Path = Path(".orchestrator/logs")
    structured_log: bool = True
    event_log: Path | None = Path(".orchestrator/events.jsonl")

    @model_validator(mode="after")
    def _check_profiles(self) -> OrchestratorConfig:
        if any(not p.strip() for p in self.reviewer_profiles):
            raise ValueError("reviewer_profiles must not contain empty names")
        if self.required_approvals > len(self.reviewer_profiles):
            raise ConfigurationError(
                f"required_approvals ({self.required_approvals}) exceeds the number of "
                f"reviewer_profiles ({len(self.reviewer_profiles)})"
            )
        return self

    @property
    def worktree_root(self) -> Path:
        return self.base_worktree_path or self.project_dir.parent

    @property
    def resolved_project_name(self) -> str:
        return self.project_name or self.project_dir.name

    def resolve(self, path: Path) -> Path:
        """Resolve a config path relative to the project directory."""
        return path if path.is_absolute() else self.project_dir / path


def load_config(cli_args: dict[str, Any]) -> OrchestratorConfig:
    """Load config from defaults → orchestrator.toml → CLI args."""
    project_dir = Path(cli_args.get("project", ".")).resolve()
    toml_path = project_dir / "orchestrator.toml"

    # Start with defaults
    config_data: dict[str, Any] = {"project_dir": project_dir}

    # Layer in TOML if present
    if toml_path.exists():
        with open(toml_path, "rb") as f:
            toml_data = tomllib.load(f)
        config_data.update(toml_data)

    # Layer in CLI overrides (only non-None values)
    for key, value in cli_args.items():
        if value is not None and key != "project":
            config_data[key] = value

    # Ensure project_dir is always set
    config_data["project_dir"] = project_dir

    return OrchestratorConfig(**config_data)
