"""JSON report output."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from visreg.models.test_result import ReportData, RunResult


def build_report_data(run_result: RunResult, test_url: str) -> ReportData:
    return ReportData(
        changeset_id=run_result.changeset_id,
        test_url=test_url,
        run_at=datetime.now(timezone.utc).isoformat(),
        duration_seconds=run_result.duration_seconds,
        passed=run_result.passed,
        total_tests=run_result.total_tests,
        passed_tests=run_result.passed_tests,
        failed_tests=run_result.failed_tests,
        results=run_result.results,
    )


def generate_json_report(
    run_result: RunResult,
    test_url: str,
    output_path: Path,
) -> ReportData:
    """Write a machine-readable JSON report."""
    report = build_report_data(run_result, test_url)
    data = report.model_dump(mode="json")
    data["baselines_created"] = run_result.baselines_created

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(data, f, indent=2, default=str)
    return report
