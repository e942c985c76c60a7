"""Tests for JSON report generation."""

import json
from pathlib import Path

from visreg.models.test_result import ComparisonOutcome, Dimensions, RouteTestOutcome, RunResult
from visreg.reporter.json_report import build_report_data, generate_json_report


def _run_result() -> RunResult:
    return RunResult(
        changeset_id=42,
        passed=False,
        total_tests=2,
        passed_tests=1,
        failed_tests=1,
        baselines_created=1,
        duration_seconds=12.5,
        results=[
            RouteTestOutcome(route="/", screenshot_name="home", passed=True, baseline_created=True),
            RouteTestOutcome(
                route="/about",
                screenshot_name="about",
                passed=False,
                comparison=ComparisonOutcome(
                    match=False, diff_pixels=50, diff_percentage=5.0, threshold=0.01,
                    dimensions=Dimensions(width=40, height=25),
                ),
                diff_path="output/pr-42/diffs/about-diff.png",
            ),
        ],
    )


class TestBuildReportData:
    def test_copies_run_totals(self):
        report = build_report_data(_run_result(), "https://preview.example.com")

        assert report.changeset_id == 42
        assert report.test_url == "https://preview.example.com"
        assert report.total_tests == 2
        assert report.failed_tests == 1
        assert report.duration_seconds == 12.5
        assert report.run_at.endswith("+00:00")


class TestGenerateJsonReport:
    """Tests for generate_json_report function."""

    def test_generate_report(self, tmp_path: Path):
        """Test the report file holds totals and per-route results."""
        output_file = tmp_path / "pr-42" / "report_pr-42.json"
        generate_json_report(_run_result(), "https://example.com", output_file)

        with open(output_file) as f:
            data = json.load(f)

        assert data["changeset_id"] == 42
        assert data["passed"] is False
        assert data["baselines_created"] == 1
        assert [r["route"] for r in data["results"]] == ["/", "/about"]
        assert data["results"][0]["state"] == "pending"
        assert data["results"][1]["comparison"]["diff_percentage"] == 5.0
        assert data["results"][1]["diff_path"] == "output/pr-42/diffs/about-diff.png"
