"""Error taxonomy for the visual regression engine.

Every failure the engine raises is a ``VisualRegressionError`` tagged with an
``ErrorKind``. Callers branch on ``error.kind`` (or ``is_run_level``) rather
than on exception subclasses.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    CLASSIFICATION = "classification"
    LOGIN = "login"
    NAVIGATION = "navigation"
    CAPTURE = "capture"
    TIMEOUT = "timeout"
    BASELINE_STORE = "baseline_store"
    MANIFEST_CORRUPT = "manifest_corrupt"
    COMPARISON = "comparison"
    CANCELLED = "cancelled"
    CONFIG = "config"


# Kinds that abort the whole run instead of failing a single route
RUN_LEVEL_KINDS = frozenset({
    ErrorKind.CLASSIFICATION,
    ErrorKind.MANIFEST_CORRUPT,
    ErrorKind.CANCELLED,
    ErrorKind.CONFIG,
})


class VisualRegressionError(Exception):
    """Single engine error type carrying an explicit kind discriminator."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        route: Optional[str] = None,
        partial_result: Any = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.route = route
        # Set for cancelled runs so callers can inspect what finished
        self.partial_result = partial_result

    @property
    def code(self) -> str:
        return f"{self.kind.value.upper()}_ERROR"

    @property
    def is_run_level(self) -> bool:
        return self.kind in RUN_LEVEL_KINDS

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"VisualRegressionError(kind={self.kind.value!r}, message={self.message!r})"


def ClassificationError(message: str) -> VisualRegressionError:
    return VisualRegressionError(ErrorKind.CLASSIFICATION, message)


def LoginError(message: str) -> VisualRegressionError:
    return VisualRegressionError(ErrorKind.LOGIN, message)


def NavigationError(message: str, route: str | None = None) -> VisualRegressionError:
    return VisualRegressionError(ErrorKind.NAVIGATION, message, route=route)


def CaptureError(message: str, route: str | None = None) -> VisualRegressionError:
    return VisualRegressionError(ErrorKind.CAPTURE, message, route=route)


def RouteTimeoutError(message: str, route: str | None = None) -> VisualRegressionError:
    return VisualRegressionError(ErrorKind.TIMEOUT, message, route=route)


def BaselineStoreError(message: str, route: str | None = None) -> VisualRegressionError:
    return VisualRegressionError(ErrorKind.BASELINE_STORE, message, route=route)


def ManifestCorruptError(message: str) -> VisualRegressionError:
    return VisualRegressionError(ErrorKind.MANIFEST_CORRUPT, message)


def ComparisonError(message: str, route: str | None = None) -> VisualRegressionError:
    return VisualRegressionError(ErrorKind.COMPARISON, message, route=route)


def CancelledRunError(message: str, partial_result: Any = None) -> VisualRegressionError:
    return VisualRegressionError(ErrorKind.CANCELLED, message, partial_result=partial_result)


def ConfigError(message: str) -> VisualRegressionError:
    return VisualRegressionError(ErrorKind.CONFIG, message)
