"""Route and URL helpers."""

from __future__ import annotations

import re
from urllib.parse import urljoin, urlparse


def normalize_route(route: str) -> str:
    """Normalize a route path: leading slash, no trailing slash, no query or fragment."""
    route = (route or "").strip()
    if route.startswith(("http://", "https://")):
        route = urlparse(route).path
    route = route.split("?", 1)[0].split("#", 1)[0]
    if not route.startswith("/"):
        route = "/" + route
    if len(route) > 1:
        route = route.rstrip("/") or "/"
    return route


def route_to_screenshot_name(route: str) -> str:
    """Convert a route path to a file-safe screenshot name.

    "/" -> "home", "/users/[id]" -> "users-id", "/blog/[...slug]" -> "blog-restslug"
    """
    if route == "/":
        return "home"
    name = route.lstrip("/")
    name = name.replace("/", "-")
    name = name.replace("...", "rest")
    name = re.sub(r"\[([^\]]+)\]", r"\1", name)
    name = re.sub(r"[^a-zA-Z0-9-]", "-", name)
    name = re.sub(r"-+", "-", name)
    return name.strip("-") or "home"


def build_route_url(target_url: str, route: str) -> str:
    """Join a route onto the target base URL, keeping any base path prefix."""
    base = target_url if target_url.endswith("/") else target_url + "/"
    return urljoin(base, route.lstrip("/"))
