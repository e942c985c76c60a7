"""Configuration models for the visual regression engine."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from visreg.models.baseline import Viewport


def _resolve_env(v):
    if isinstance(v, str) and v.startswith("env:"):
        env_var = v[4:]
        resolved = os.environ.get(env_var)
        if resolved is None:
            raise ValueError(f"Environment variable '{env_var}' not set")
        return resolved
    return v


class AuthConfig(BaseModel):
    """Credentials plus optional explicit login selectors.

    Selectors given here take precedence over a login flow inferred by the
    classifier. ``username`` and ``password`` accept ``env:VAR`` references.
    """

    username: str
    password: str
    login_url: str = ""
    username_selector: str = ""
    password_selector: str = ""
    submit_selector: str = ""
    success_indicator: str = ""
    success_url: Optional[str] = None

    # Source files the login flow can be inferred from when no selectors are given
    login_page_file: Optional[str] = None
    layout_file: Optional[str] = None

    @field_validator("username", "password", mode="before")
    @classmethod
    def resolve_env_credentials(cls, v: str) -> str:
        return _resolve_env(v)

    def has_explicit_flow(self) -> bool:
        return all([
            self.login_url, self.username_selector, self.password_selector,
            self.submit_selector, self.success_indicator,
        ])


class FrameworkConfig(BaseModel):
    # Target
    target_url: str

    # Authentication
    auth: Optional[AuthConfig] = None

    # Capture
    viewport: Viewport = Field(default_factory=Viewport)
    max_parallel_sessions: int = 3
    route_timeout_seconds: float = 30.0
    login_timeout_seconds: float = 60.0
    schedule_by_priority: bool = False

    # Comparison
    diff_threshold: float = 0.01
    update_baselines: bool = False

    # Storage
    baselines_dir: str = "./baselines"
    report_output_dir: str = "./output"

    # AI settings
    ai_model: str = "claude-sonnet-4-20250514"
    ai_max_tokens: int = 4000
    ai_max_retries: int = 3
    max_diff_chars: int = 15000
    project_context: Optional[str] = None

    @field_validator("diff_threshold")
    @classmethod
    def threshold_in_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"diff_threshold must be within [0, 1], got {v}")
        return v

    @field_validator(
        "max_parallel_sessions", "route_timeout_seconds", "login_timeout_seconds",
        "ai_max_tokens", "ai_max_retries", "max_diff_chars",
    )
    @classmethod
    def positive_limits(cls, v):
        if v <= 0:
            raise ValueError("limits must be positive")
        return v

    @classmethod
    def load(cls, path: str | Path) -> "FrameworkConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = json.load(f)
        return cls(**data)

    def save(self, path: str | Path) -> None:
        """Save config to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(), f, indent=2)
