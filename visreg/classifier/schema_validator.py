"""Shape validation for raw change-classification payloads."""

from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)

VALID_CATEGORIES = {"component", "store", "util", "route", "layout", "style", "other"}
VALID_PRIORITIES = {"high", "medium", "low"}
VALID_WAIT_STRATEGIES = {"networkidle", "domcontentloaded", "load", "custom"}
LOGIN_FLOW_FIELDS = (
    "loginUrl", "usernameSelector", "passwordSelector",
    "submitSelector", "successIndicator",
)


def validate_analysis_payload(data: Any) -> list[str]:
    """Validate the top-level shape of a classification payload.

    Returns a list of error messages; an empty list means the payload can be
    post-processed. Individual entries are checked later and dropped or
    default-filled rather than rejected here.
    """
    if not isinstance(data, dict):
        return [f"payload must be a JSON object, got {type(data).__name__}"]

    errors = []
    if not isinstance(data.get("changes"), list):
        errors.append("'changes' must be a list")
    if not isinstance(data.get("routesToTest"), list):
        errors.append("'routesToTest' must be a list")

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        errors.append("'confidence' must be a number")

    if not isinstance(data.get("reasoning"), str):
        errors.append("'reasoning' must be a string")

    login_flow = data.get("loginFlow")
    if login_flow is not None and not isinstance(login_flow, dict):
        errors.append("'loginFlow' must be an object when present")

    return errors


def missing_login_flow_fields(data: Any) -> list[str]:
    """Return the required login-flow keys that are absent or blank."""
    if not isinstance(data, dict):
        return list(LOGIN_FLOW_FIELDS)
    return [
        key for key in LOGIN_FLOW_FIELDS
        if not isinstance(data.get(key), str) or not data[key].strip()
    ]
