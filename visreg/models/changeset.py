"""Changeset input and route classification data structures."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ChangeCategory = Literal["component", "store", "util", "route", "layout", "style", "other"]
Priority = Literal["high", "medium", "low"]
WaitStrategy = Literal["networkidle", "domcontentloaded", "load", "custom"]

PRIORITY_RANK: dict[str, int] = {"high": 0, "medium": 1, "low": 2}


class KnownRoute(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str  # e.g. "/", "/login", "/portal/dashboard"
    auth_protected: bool = False
    dynamic: bool = False
    source_dir: Optional[str] = None  # e.g. "src/routes/login"


class ChangesetContext(BaseModel):
    """The change under test. Built once per run and never mutated."""

    model_config = ConfigDict(frozen=True)

    changeset_id: int
    diff: str = ""
    changed_files: tuple[str, ...] = ()
    known_routes: tuple[KnownRoute, ...] = ()
    project_context: Optional[str] = None

    @classmethod
    def load(cls, path: str | Path) -> "ChangesetContext":
        """Load a changeset description from a JSON file.

        A ``diff_file`` key is read relative to the JSON file and used as
        the diff body when ``diff`` is absent.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Changeset file not found: {path}")
        with open(path) as f:
            data = json.load(f)
        diff_file = data.pop("diff_file", None)
        if diff_file and not data.get("diff"):
            data["diff"] = (path.parent / diff_file).read_text(encoding="utf-8")
        return cls(**data)


class VisualChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    file: str
    category: ChangeCategory = "other"
    has_visual_impact: bool = False
    description: str = ""
    affected_elements: Optional[list[str]] = None


class RouteRecommendation(BaseModel):
    model_config = ConfigDict(frozen=True)

    route: str
    reason: str = ""
    priority: Priority = "medium"
    auth_required: bool = False
    wait_strategy: WaitStrategy = "networkidle"
    custom_wait: Optional[str] = None  # JS expression, only with wait_strategy="custom"


class LoginFlowDescriptor(BaseModel):
    login_url: str
    username_selector: str
    password_selector: str
    submit_selector: str
    success_indicator: str
    success_url: Optional[str] = None

    def missing_fields(self) -> list[str]:
        return [
            name for name in (
                "login_url", "username_selector", "password_selector",
                "submit_selector", "success_indicator",
            )
            if not (getattr(self, name) or "").strip()
        ]

    def is_complete(self) -> bool:
        return not self.missing_fields()


class ClassificationResult(BaseModel):
    changes: list[VisualChange] = Field(default_factory=list)
    routes: list[RouteRecommendation] = Field(default_factory=list)
    login_flow: Optional[LoginFlowDescriptor] = None
    confidence: float = 0.0
    reasoning: str = ""
    dropped_routes: list[str] = Field(default_factory=list)

    @property
    def requires_auth(self) -> bool:
        return any(r.auth_required for r in self.routes)
