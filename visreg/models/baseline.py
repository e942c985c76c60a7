"""Baseline store data structures."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Viewport(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int = 1920
    height: int = 1080

    @field_validator("width", "height")
    @classmethod
    def positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("viewport dimensions must be positive")
        return v

    @property
    def label(self) -> str:
        return f"{self.width}x{self.height}"

    def as_dict(self) -> dict:
        return {"width": self.width, "height": self.height}


class BaselineRecord(BaseModel):
    changeset_id: int
    route: str
    screenshot_name: str
    file_path: str  # relative to the changeset directory
    captured_at: str  # ISO timestamp, UTC
    viewport: Viewport
    image_hash: str  # SHA-256 hex digest

    @property
    def key(self) -> str:
        return baseline_key(self.route, self.screenshot_name, self.viewport)


class ManifestRoute(BaseModel):
    path: str
    screenshot_name: str


class BaselineManifest(BaseModel):
    changeset_id: int
    test_url: str = ""
    captured_at: str = ""
    routes: list[ManifestRoute] = Field(default_factory=list)
    records: dict[str, BaselineRecord] = Field(default_factory=dict)
    # key format: "{route}::{screenshot_name}::{width}x{height}"


def baseline_key(route: str, screenshot_name: str, viewport: Viewport) -> str:
    return f"{route}::{screenshot_name}::{viewport.label}"
