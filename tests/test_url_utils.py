"""Tests for route and URL helpers."""

import pytest

from visreg.url_utils import build_route_url, normalize_route, route_to_screenshot_name


class TestNormalizeRoute:
    @pytest.mark.parametrize("raw, expected", [
        ("/", "/"),
        ("", "/"),
        ("about", "/about"),
        ("/about/", "/about"),
        ("/search?q=shoes#results", "/search"),
        ("https://example.com/portal/dashboard/", "/portal/dashboard"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_route(raw) == expected


class TestRouteToScreenshotName:
    @pytest.mark.parametrize("route, expected", [
        ("/", "home"),
        ("/about", "about"),
        ("/portal/dashboard", "portal-dashboard"),
        ("/users/[id]", "users-id"),
        ("/blog/[...slug]", "blog-restslug"),
        ("/a b/c", "a-b-c"),
    ])
    def test_names_are_file_safe(self, route, expected):
        assert route_to_screenshot_name(route) == expected


class TestBuildRouteUrl:
    def test_joins_onto_host(self):
        assert build_route_url("https://example.com", "/about") == "https://example.com/about"

    def test_keeps_base_path(self):
        """Test a deployment under a sub-path keeps its prefix."""
        assert build_route_url("https://example.com/preview/pr-12", "/about") == \
            "https://example.com/preview/pr-12/about"

    def test_root_route(self):
        assert build_route_url("https://example.com/", "/") == "https://example.com/"
