"""System prompts and prompt builders for change classification."""

from __future__ import annotations

CLASSIFICATION_SYSTEM_PROMPT = """You are an expert frontend developer and QA engineer.
You analyze code changes to determine visual regression testing needs.
Always respond with valid JSON matching the requested format.
Be conservative - it's better to test more routes than miss a visual regression.
Only recommend routes from the provided route list."""

LOGIN_FLOW_SYSTEM_PROMPT = """You are an expert at analyzing web application login forms.
You extract CSS selectors and data-testid attributes for browser automation.
Always respond with valid JSON.
Prefer data-testid attributes when available, then id, then name, then type-based selectors."""

MAX_LOGIN_PAGE_CHARS = 8000
MAX_LAYOUT_CHARS = 4000


def _format_route(route: dict) -> str:
    flags = ["auth required" if route.get("auth_protected") else "public"]
    if route.get("dynamic"):
        flags.append("dynamic")
    if route.get("touched"):
        flags.append("source changed")
    return f"- {route['path']} ({', '.join(flags)})"


def build_classification_prompt(
    diff: str,
    changed_files: list[str],
    known_routes: list[dict],
    project_context: str | None = None,
    truncated: bool = False,
) -> str:
    """Build the user message asking which routes a diff visually affects.

    ``diff`` is expected to be already bounded by the caller; ``truncated``
    adds a note so the model knows part of the diff is missing.
    """
    files = "\n".join(f"- {f}" for f in changed_files) or "(none)"
    routes = "\n".join(_format_route(r) for r in known_routes) or "(none)"
    context = f"## Project Context\n{project_context}\n\n" if project_context else ""
    note = "\n[Diff truncated due to length - some changes may not be visible]\n" if truncated else ""

    return (
        "You are analyzing a pull request diff for a web application to determine "
        "visual regression testing needs.\n\n"
        f"{context}"
        f"## Changed Files\n{files}\n\n"
        f"## Available Routes\n{routes}\n\n"
        f"## Diff Content\n```diff\n{diff}\n```\n{note}\n"
        "## Your Task\n"
        "Analyze the changes and determine:\n"
        "1. Which changes could affect visual appearance (styling, layout, component structure, content)\n"
        "2. Which routes need visual regression testing based on the changes\n"
        "3. Priority of each route (high = direct visual changes, medium = indirect via "
        "components, low = uncertain impact)\n\n"
        "## Response Format\n"
        "Respond with valid JSON only (no markdown, no explanation):\n"
        "{\n"
        '  "changes": [\n'
        "    {\n"
        '      "file": "path/to/file",\n'
        '      "type": "component|store|util|route|layout|style|other",\n'
        '      "hasVisualImpact": true,\n'
        '      "description": "brief description of change",\n'
        '      "affectedElements": ["list", "of", "affected", "ui", "elements"]\n'
        "    }\n"
        "  ],\n"
        '  "routesToTest": [\n'
        "    {\n"
        '      "route": "/path",\n'
        '      "reason": "why this route needs testing",\n'
        '      "priority": "high|medium|low",\n'
        '      "authRequired": false,\n'
        '      "waitStrategy": "networkidle|domcontentloaded|load|custom",\n'
        '      "customWait": "optional JS expression, only for custom"\n'
        "    }\n"
        "  ],\n"
        '  "confidence": 0.0,\n'
        '  "reasoning": "overall reasoning for the analysis"\n'
        "}"
    )


def build_login_flow_prompt(login_page_content: str, layout_content: str | None = None) -> str:
    """Build the user message asking for login form selectors."""
    layout = ""
    if layout_content:
        layout = f"## Layout Content\n```\n{layout_content[:MAX_LAYOUT_CHARS]}\n```\n\n"
    return (
        "Analyze this login page to extract the login flow selectors for browser automation.\n\n"
        f"## Login Page Content\n```\n{login_page_content[:MAX_LOGIN_PAGE_CHARS]}\n```\n\n"
        f"{layout}"
        "## Your Task\n"
        "Extract the CSS selectors for:\n"
        "1. Username/email input field\n"
        "2. Password input field\n"
        "3. Submit/login button\n"
        "4. Success indicator (an element that appears after successful login)\n"
        "5. Expected URL after successful login\n\n"
        "## Response Format\n"
        "Respond with valid JSON only:\n"
        "{\n"
        '  "loginUrl": "/login",\n'
        '  "usernameSelector": "#email",\n'
        '  "passwordSelector": "#password",\n'
        '  "submitSelector": "button[type=\'submit\']",\n'
        '  "successIndicator": "[data-testid=\'dashboard\']",\n'
        '  "successUrl": "/dashboard"\n'
        "}"
    )
