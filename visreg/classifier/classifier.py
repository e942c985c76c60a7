"""Route classifier — turns a changeset into a validated list of routes to test.

The semantic judgment (does this file change affect that route?) comes from an
external ``ChangeClassifier`` capability, usually Claude. This module owns
everything around that call: bounding and deduplicating the input, rejecting
malformed output, dropping routes that are not in the known inventory, and
filling defaults. Given the same capability output, post-processing is
deterministic and keeps the capability's ordering.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from visreg.errors import ClassificationError
from visreg.models.changeset import (
    PRIORITY_RANK,
    ChangesetContext,
    ClassificationResult,
    KnownRoute,
    LoginFlowDescriptor,
    RouteRecommendation,
    VisualChange,
)
from visreg.url_utils import normalize_route

from .schema_validator import (
    VALID_CATEGORIES,
    VALID_PRIORITIES,
    VALID_WAIT_STRATEGIES,
    missing_login_flow_fields,
    validate_analysis_payload,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIFF_CHARS = 15000


class ChangeClassifier(Protocol):
    def infer_visual_impact(
        self,
        diff_text: str,
        changed_files: list[str],
        known_routes: list[dict],
        project_context: str | None = None,
        truncated: bool = False,
    ) -> dict[str, Any]: ...


def normalize_file_path(path: str) -> str:
    path = (path or "").strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def dedupe_files(files) -> list[str]:
    """Normalize file paths and drop duplicates, keeping first-seen order."""
    seen: set[str] = set()
    result = []
    for f in files:
        norm = normalize_file_path(f)
        if norm and norm not in seen:
            seen.add(norm)
            result.append(norm)
    return result


def _touches(route: KnownRoute, changed_files: list[str]) -> bool:
    if not route.source_dir:
        return False
    prefix = normalize_file_path(route.source_dir).rstrip("/")
    return any(f == prefix or f.startswith(prefix + "/") for f in changed_files)


class RouteClassifier:
    """Validates and default-fills change-classification output."""

    def __init__(self, capability: ChangeClassifier, max_diff_chars: int = DEFAULT_MAX_DIFF_CHARS):
        self.capability = capability
        self.max_diff_chars = max_diff_chars

    def classify(self, context: ChangesetContext) -> ClassificationResult:
        """Classify a changeset into routes to test.

        Raises a CLASSIFICATION error if the capability fails or returns a
        payload without the expected shape.
        """
        diff, truncated = self._bound_diff(context.diff)
        changed_files = dedupe_files(context.changed_files)
        inventory = self._inventory(context.known_routes)
        route_payload = [
            {
                "path": path,
                "auth_protected": route.auth_protected,
                "dynamic": route.dynamic,
                "touched": _touches(route, changed_files),
            }
            for path, route in inventory.items()
        ]
        logger.info("Classifying changeset #%d: %d changed files, %d known routes",
                    context.changeset_id, len(changed_files), len(inventory))

        try:
            raw = self.capability.infer_visual_impact(
                diff, changed_files, route_payload,
                project_context=context.project_context,
                truncated=truncated,
            )
        except Exception as e:
            logger.error("Change classification failed: %s", e)
            raise ClassificationError(f"Change classification unavailable: {e}") from e

        errors = validate_analysis_payload(raw)
        if errors:
            logger.error("Malformed classification output: %s", "; ".join(errors))
            raise ClassificationError("Malformed classification output: " + "; ".join(errors))

        changes = self._parse_changes(raw["changes"], changed_files)
        routes, dropped = self._parse_routes(raw["routesToTest"], inventory)
        login_flow = self._parse_login_flow(raw.get("loginFlow"))

        confidence = float(raw["confidence"])
        if not 0.0 <= confidence <= 1.0:
            logger.warning("Classifier confidence %.3f out of range, clamping", confidence)
            confidence = min(1.0, max(0.0, confidence))

        result = ClassificationResult(
            changes=changes,
            routes=routes,
            login_flow=login_flow,
            confidence=confidence,
            reasoning=raw["reasoning"],
            dropped_routes=dropped,
        )
        logger.info(
            "Classification complete: %d routes to test, %d dropped, confidence %.2f",
            len(routes), len(dropped), confidence,
        )
        return result

    def derive_login_flow(
        self,
        login_page_source: str,
        layout_source: str | None = None,
    ) -> LoginFlowDescriptor:
        """Infer login selectors from the login page's source."""
        infer = getattr(self.capability, "infer_login_flow", None)
        if infer is None:
            raise ClassificationError("Classification capability cannot infer login flows")
        try:
            raw = infer(login_page_source, layout_source)
        except Exception as e:
            raise ClassificationError(f"Login flow inference unavailable: {e}") from e

        missing = missing_login_flow_fields(raw)
        if missing:
            raise ClassificationError(
                f"Inferred login flow is missing required fields: {', '.join(missing)}"
            )
        return self._build_login_flow(raw)

    # ------------------------------------------------------------------
    # Input shaping
    # ------------------------------------------------------------------

    def _bound_diff(self, diff: str) -> tuple[str, bool]:
        if len(diff) <= self.max_diff_chars:
            return diff, False
        logger.warning(
            "Diff truncated from %d to %d characters. Some changes may not be analyzed.",
            len(diff), self.max_diff_chars,
        )
        return diff[:self.max_diff_chars], True

    @staticmethod
    def _inventory(known_routes) -> dict[str, KnownRoute]:
        inventory: dict[str, KnownRoute] = {}
        for route in known_routes:
            path = normalize_route(route.path)
            if path not in inventory:
                inventory[path] = route
        return inventory

    # ------------------------------------------------------------------
    # Output validation and default filling
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_changes(raw_changes: list, changed_files: list[str]) -> list[VisualChange]:
        known_files = set(changed_files)
        seen: set[str] = set()
        changes = []
        for item in raw_changes:
            if not isinstance(item, dict) or not isinstance(item.get("file"), str):
                logger.warning("Skipping malformed change entry: %r", item)
                continue
            file = normalize_file_path(item["file"])
            if not file or file in seen:
                continue
            seen.add(file)
            if file not in known_files:
                logger.debug("Classifier described a file outside the changeset: %s", file)

            category = str(item.get("type") or item.get("category") or "other").lower()
            if category not in VALID_CATEGORIES:
                category = "other"

            elements = item.get("affectedElements")
            if isinstance(elements, list):
                elements = [str(e) for e in elements]
            else:
                elements = None

            changes.append(VisualChange(
                file=file,
                category=category,
                has_visual_impact=bool(item.get("hasVisualImpact", False)),
                description=str(item.get("description") or ""),
                affected_elements=elements,
            ))
        return changes

    @staticmethod
    def _parse_routes(
        raw_routes: list, inventory: dict[str, KnownRoute],
    ) -> tuple[list[RouteRecommendation], list[str]]:
        merged: dict[str, dict] = {}
        dropped: list[str] = []

        for item in raw_routes:
            if not isinstance(item, dict) or not isinstance(item.get("route"), str):
                logger.warning("Skipping malformed route recommendation: %r", item)
                continue
            path = normalize_route(item["route"])
            known = inventory.get(path)
            if known is None:
                logger.warning("Dropping recommended route %s: not in the known route inventory",
                               item["route"])
                dropped.append(item["route"])
                continue

            priority = str(item.get("priority") or "").lower()
            if priority not in VALID_PRIORITIES:
                if priority:
                    logger.debug("Route %s: unknown priority %r, using medium", path, priority)
                priority = "medium"

            wait = str(item.get("waitStrategy") or "").lower()
            if wait not in VALID_WAIT_STRATEGIES:
                wait = "networkidle"
            custom_wait = item.get("customWait")
            custom_wait = custom_wait.strip() if isinstance(custom_wait, str) else ""
            if wait == "custom" and not custom_wait:
                logger.warning("Route %s: custom wait without an expression, using networkidle", path)
                wait = "networkidle"

            auth = item.get("authRequired")
            auth_required = (auth if isinstance(auth, bool) else known.auth_protected) or known.auth_protected

            if path in merged:
                existing = merged[path]
                if PRIORITY_RANK[priority] < PRIORITY_RANK[existing["priority"]]:
                    existing["priority"] = priority
                existing["auth_required"] = existing["auth_required"] or auth_required
                logger.debug("Merged duplicate recommendation for %s", path)
                continue

            merged[path] = {
                "route": path,
                "reason": str(item.get("reason") or ""),
                "priority": priority,
                "auth_required": auth_required,
                "wait_strategy": wait,
                "custom_wait": custom_wait if wait == "custom" else None,
            }

        return [RouteRecommendation(**r) for r in merged.values()], dropped

    def _parse_login_flow(self, raw: Any) -> LoginFlowDescriptor | None:
        if raw is None:
            return None
        missing = missing_login_flow_fields(raw)
        if missing:
            logger.warning("Discarding incomplete login flow from classifier (missing: %s)",
                           ", ".join(missing))
            return None
        return self._build_login_flow(raw)

    @staticmethod
    def _build_login_flow(raw: dict) -> LoginFlowDescriptor:
        success_url = raw.get("successUrl")
        return LoginFlowDescriptor(
            login_url=raw["loginUrl"].strip(),
            username_selector=raw["usernameSelector"].strip(),
            password_selector=raw["passwordSelector"].strip(),
            submit_selector=raw["submitSelector"].strip(),
            success_indicator=raw["successIndicator"].strip(),
            success_url=success_url.strip() if isinstance(success_url, str) and success_url.strip() else None,
        )
