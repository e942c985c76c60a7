"""Run aggregation — reduces per-route outcomes into a run result."""

from __future__ import annotations

from typing import Optional, Sequence

from visreg.models.test_result import RouteTestOutcome, RunResult


def run_span_seconds(outcomes: Sequence[RouteTestOutcome]) -> float:
    """Wall-clock span from the first route start to the last completion.

    Routes overlap when run concurrently, so this is not the sum of
    per-route durations.
    """
    starts = [o.started_at for o in outcomes if o.started_at is not None]
    ends = [o.completed_at for o in outcomes if o.completed_at is not None]
    if not starts or not ends:
        return 0.0
    return max(0.0, max(ends) - min(starts))


def aggregate(
    changeset_id: int,
    outcomes: Sequence[RouteTestOutcome],
    report_path: Optional[str] = None,
) -> RunResult:
    """Combine route outcomes, kept in the given order.

    A run with no outcomes is a failure: nothing was tested.
    """
    passed_tests = sum(1 for o in outcomes if o.passed)
    return RunResult(
        changeset_id=changeset_id,
        passed=bool(outcomes) and passed_tests == len(outcomes),
        total_tests=len(outcomes),
        passed_tests=passed_tests,
        failed_tests=len(outcomes) - passed_tests,
        baselines_created=sum(1 for o in outcomes if o.baseline_created),
        results=list(outcomes),
        duration_seconds=round(run_span_seconds(outcomes), 3),
        report_path=report_path,
    )
