"""Execution coordinator — runs route captures concurrently and compares them.

Each route walks a small state machine::

    PENDING -> (LOGGING_IN -> LOGGED_IN) -> NAVIGATING -> WAITING
            -> CAPTURING -> COMPARING -> PASSED | FAILED

Login happens at most once per run. Authenticated routes wait for it; public
routes never do. Every route writes its outcome into its own pre-allocated
slot, so results come back in the order the routes were given no matter how
the workers interleave.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
import time
from collections import Counter
from pathlib import Path
from typing import Any, Optional

from visreg.baseline.store import BaselineStore
from visreg.comparator.comparator import ScreenshotComparator
from visreg.errors import (
    CancelledRunError,
    CaptureError,
    ConfigError,
    ErrorKind,
    LoginError,
    NavigationError,
    RouteTimeoutError,
    VisualRegressionError,
)
from visreg.models.config import AuthConfig, FrameworkConfig
from visreg.models.changeset import PRIORITY_RANK, LoginFlowDescriptor, RouteRecommendation
from visreg.models.test_result import RouteState, RouteTestOutcome, RunResult
from visreg.reporter.aggregator import aggregate
from visreg.url_utils import build_route_url, route_to_screenshot_name

from .capture import CaptureDriver

logger = logging.getLogger(__name__)

# Error kind for unexpected exceptions, by the state the route was in
_KIND_BY_STATE = {
    RouteState.PENDING: ErrorKind.CAPTURE,
    RouteState.LOGGING_IN: ErrorKind.LOGIN,
    RouteState.LOGGED_IN: ErrorKind.NAVIGATION,
    RouteState.NAVIGATING: ErrorKind.NAVIGATION,
    RouteState.WAITING: ErrorKind.NAVIGATION,
    RouteState.CAPTURING: ErrorKind.CAPTURE,
    RouteState.COMPARING: ErrorKind.COMPARISON,
}


class ExecutionCoordinator:
    """Drives capture, baseline resolution and comparison for one run."""

    def __init__(
        self,
        config: FrameworkConfig,
        store: BaselineStore,
        comparator: ScreenshotComparator,
        driver: CaptureDriver,
        artifacts_dir: Path | str,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config
        self.store = store
        self.comparator = comparator
        self.driver = driver
        self.artifacts_dir = Path(artifacts_dir)
        self._cancel_event = cancel_event if cancel_event is not None else threading.Event()

    def cancel(self) -> None:
        """Stop starting new routes; in-flight routes stop at their next checkpoint."""
        if not self._cancel_event.is_set():
            logger.warning("Run cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def execute(
        self,
        changeset_id: int,
        routes: list[RouteRecommendation],
        test_url: str,
        login_flow: Optional[LoginFlowDescriptor] = None,
        credentials: Optional[AuthConfig] = None,
    ) -> RunResult:
        """Run every route and return the aggregated result.

        Raises a run-level error (config, manifest corruption, cancellation)
        instead of returning a result when the run cannot complete. A
        cancellation applies to the run in progress, or to the next one if
        none is running, and is cleared once that run ends.
        """
        try:
            return await self._execute(changeset_id, routes, test_url, login_flow, credentials)
        finally:
            self._cancel_event.clear()

    async def _execute(
        self,
        changeset_id: int,
        routes: list[RouteRecommendation],
        test_url: str,
        login_flow: Optional[LoginFlowDescriptor],
        credentials: Optional[AuthConfig],
    ) -> RunResult:
        auth_routes = [r for r in routes if r.auth_required]
        if auth_routes:
            login_flow = self._resolve_login_flow(login_flow, credentials, test_url, len(auth_routes))

        logger.info("Executing %d routes for changeset #%d (max %d concurrent sessions)",
                    len(routes), changeset_id, self.config.max_parallel_sessions)

        slots: list[Optional[RouteTestOutcome]] = [None] * len(routes)
        artifact_names = self._artifact_names(routes)
        semaphore = asyncio.Semaphore(self.config.max_parallel_sessions)
        login_task = None
        if auth_routes:
            login_task = asyncio.create_task(self._login(login_flow, credentials, len(auth_routes)))

        tasks = [
            asyncio.create_task(self._run_slot(
                slots, index, routes[index], artifact_names[index], changeset_id, test_url,
                semaphore, login_task,
            ))
            for index in self._schedule(routes)
        ]
        try:
            await self._wait_all(tasks)
        finally:
            if login_task is not None and not login_task.done():
                login_task.cancel()
            if login_task is not None:
                await asyncio.gather(login_task, return_exceptions=True)

        result = aggregate(changeset_id, [s for s in slots if s is not None])

        if self.cancelled:
            logger.warning("Run for changeset #%d cancelled: %d of %d routes completed",
                           changeset_id,
                           sum(1 for o in result.results if o.error_kind != ErrorKind.CANCELLED.value),
                           len(routes))
            raise CancelledRunError(f"Run for changeset #{changeset_id} was cancelled",
                                    partial_result=result)

        logger.info(
            "Execution complete: %d passed, %d failed, %d new baselines (%.1fs)",
            result.passed_tests, result.failed_tests, result.baselines_created,
            result.duration_seconds,
        )
        return result

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule(self, routes: list[RouteRecommendation]) -> list[int]:
        order = list(range(len(routes)))
        if self.config.schedule_by_priority:
            order.sort(key=lambda i: PRIORITY_RANK[routes[i].priority])
        return order

    @staticmethod
    def _artifact_names(routes: list[RouteRecommendation]) -> list[str]:
        """File stem for each route's artifacts.

        Distinct routes can map to the same screenshot name; those get a
        route digest suffix so their actual and diff images stay apart.
        """
        names = [route_to_screenshot_name(r.route) for r in routes]
        counts = Counter(names)
        return [
            f"{name}-{hashlib.sha1(rec.route.encode('utf-8')).hexdigest()[:8]}" if counts[name] > 1 else name
            for name, rec in zip(names, routes)
        ]

    @staticmethod
    async def _wait_all(tasks: list[asyncio.Task]) -> None:
        """Wait for all route tasks; a run-level error cancels the rest and propagates."""
        if not tasks:
            return
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        failed = next((t for t in done if not t.cancelled() and t.exception() is not None), None)
        if failed is None:
            return
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        raise failed.exception()

    def _checkpoint(self, route: str) -> None:
        if self._cancel_event.is_set():
            raise VisualRegressionError(ErrorKind.CANCELLED, f"Run cancelled while testing {route}",
                                        route=route)

    # ------------------------------------------------------------------
    # Login barrier
    # ------------------------------------------------------------------

    def _resolve_login_flow(
        self,
        login_flow: Optional[LoginFlowDescriptor],
        credentials: Optional[AuthConfig],
        test_url: str,
        auth_count: int,
    ) -> LoginFlowDescriptor:
        if login_flow is None:
            raise ConfigError(f"{auth_count} routes require authentication but no login flow is available")
        missing = login_flow.missing_fields()
        if missing:
            raise ConfigError(f"Login flow is missing required fields: {', '.join(missing)}")
        if credentials is None or not credentials.username or not credentials.password:
            raise ConfigError(f"{auth_count} routes require authentication but no credentials are configured")

        update = {}
        if not login_flow.login_url.startswith(("http://", "https://")):
            update["login_url"] = build_route_url(test_url, login_flow.login_url)
        if login_flow.success_url and not login_flow.success_url.startswith(("http://", "https://")):
            update["success_url"] = build_route_url(test_url, login_flow.success_url)
        return login_flow.model_copy(update=update) if update else login_flow

    async def _login(self, flow: LoginFlowDescriptor, credentials: AuthConfig, auth_count: int) -> Any:
        logger.info("Logging in once for %d authenticated routes via %s", auth_count, flow.login_url)
        try:
            session = await asyncio.wait_for(
                self.driver.login(flow, credentials.username, credentials.password, self.config.viewport),
                timeout=self.config.login_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error("Login timed out after %.0fs", self.config.login_timeout_seconds)
            raise LoginError(f"Login timed out after {self.config.login_timeout_seconds:.0f}s") from e
        except VisualRegressionError as e:
            if e.kind == ErrorKind.LOGIN:
                raise
            raise LoginError(f"Login failed: {e}") from e
        except Exception as e:
            logger.error("Login failed: %s", e)
            raise LoginError(f"Login failed: {e}") from e
        logger.info("Login succeeded; session shared with authenticated routes")
        return session

    # ------------------------------------------------------------------
    # Per-route execution
    # ------------------------------------------------------------------

    async def _run_slot(
        self,
        slots: list[Optional[RouteTestOutcome]],
        index: int,
        rec: RouteRecommendation,
        artifact_name: str,
        changeset_id: int,
        test_url: str,
        semaphore: asyncio.Semaphore,
        login_task: Optional[asyncio.Task],
    ) -> None:
        """Run one route and write its outcome into ``slots[index]``.

        Route-level errors end here; only run-level errors propagate.
        """
        outcome = RouteTestOutcome(
            route=rec.route,
            screenshot_name=route_to_screenshot_name(rec.route),
            priority=rec.priority,
        )
        try:
            session = None
            if rec.auth_required:
                self._checkpoint(rec.route)
                outcome.state = RouteState.LOGGING_IN
                session = await asyncio.shield(login_task)
                outcome.state = RouteState.LOGGED_IN

            async with semaphore:
                self._checkpoint(rec.route)
                outcome.started_at = time.time()
                logger.info("Testing route %s [%d/%d] (priority=%s, wait=%s, auth=%s)",
                            rec.route, index + 1, len(slots), rec.priority,
                            rec.wait_strategy, rec.auth_required)
                await asyncio.wait_for(
                    self._run_route(rec, outcome, session, artifact_name, changeset_id, test_url),
                    timeout=self.config.route_timeout_seconds,
                )
        except asyncio.TimeoutError:
            err = RouteTimeoutError(
                f"Route {rec.route} timed out after {self.config.route_timeout_seconds:.0f}s "
                f"while {outcome.state.value}",
                route=rec.route,
            )
            self._fail(outcome, err.kind, str(err))
        except VisualRegressionError as e:
            if e.is_run_level and e.kind != ErrorKind.CANCELLED:
                self._fail(outcome, e.kind, str(e))
                raise
            self._fail(outcome, e.kind, str(e))
        except Exception as e:
            self._fail(outcome, _KIND_BY_STATE.get(outcome.state, ErrorKind.CAPTURE), str(e))
        finally:
            now = time.time()
            if outcome.started_at is None:
                outcome.started_at = now
            outcome.completed_at = now
            outcome.duration_seconds = round(now - outcome.started_at, 3)
            slots[index] = outcome
            logger.info("[%s] %s%s", "PASS" if outcome.passed else "FAIL", rec.route,
                        f": {outcome.error}" if outcome.error else "")

    @staticmethod
    def _fail(outcome: RouteTestOutcome, kind: ErrorKind, message: str) -> None:
        outcome.passed = False
        outcome.state = RouteState.FAILED
        outcome.error = message
        outcome.error_kind = kind.value
        if kind in (ErrorKind.TIMEOUT, ErrorKind.CANCELLED, ErrorKind.LOGIN):
            logger.warning("Route %s failed (%s): %s", outcome.route, kind.value, message)
        else:
            logger.error("Route %s failed (%s): %s", outcome.route, kind.value, message)

    async def _driver_step(self, coro, error_factory, what: str, route: str):
        try:
            return await coro
        except VisualRegressionError:
            raise
        except Exception as e:
            raise error_factory(f"{what} failed for {route}: {e}", route=route) from e

    async def _run_route(
        self,
        rec: RouteRecommendation,
        outcome: RouteTestOutcome,
        session: Any,
        artifact_name: str,
        changeset_id: int,
        test_url: str,
    ) -> None:
        url = build_route_url(test_url, rec.route)
        viewport = self.config.viewport

        outcome.state = RouteState.NAVIGATING
        page = await self._driver_step(
            self.driver.new_page(viewport, session), NavigationError, "Opening page", rec.route,
        )
        try:
            await self._driver_step(self.driver.navigate(page, url), NavigationError,
                                    f"Navigation to {url}", rec.route)
            self._checkpoint(rec.route)

            outcome.state = RouteState.WAITING
            await self._driver_step(self.driver.wait(page, rec.wait_strategy, rec.custom_wait),
                                    NavigationError, f"Waiting for {rec.wait_strategy}", rec.route)
            self._checkpoint(rec.route)

            outcome.state = RouteState.CAPTURING
            image = await self._driver_step(self.driver.screenshot(page), CaptureError,
                                            "Screenshot", rec.route)
            if not image:
                raise CaptureError(f"Screenshot for {rec.route} was empty", route=rec.route)
            self._checkpoint(rec.route)
        finally:
            try:
                await self.driver.close_page(page)
            except Exception as e:
                logger.debug("Closing page for %s failed: %s", rec.route, e)

        outcome.state = RouteState.COMPARING
        await self._evaluate(rec, outcome, image, artifact_name, changeset_id, test_url)

    async def _evaluate(
        self,
        rec: RouteRecommendation,
        outcome: RouteTestOutcome,
        image: bytes,
        artifact_name: str,
        changeset_id: int,
        test_url: str,
    ) -> None:
        viewport = self.config.viewport
        name = outcome.screenshot_name
        outcome.actual_path = await self._save_artifact(changeset_id, "actual", f"{artifact_name}.png", image)

        baseline = await asyncio.to_thread(
            self.store.lookup_prior_changeset, rec.route, name, viewport, changeset_id,
        )
        if baseline is None:
            record = await asyncio.to_thread(
                self.store.capture, changeset_id, rec.route, name, viewport, image, test_url,
            )
            outcome.baseline_created = True
            outcome.baseline_changeset_id = changeset_id
            outcome.baseline_path = self.store.image_path(record)
            outcome.passed = True
            outcome.state = RouteState.PASSED
            logger.info("No baseline for %s (%s); stored this capture as the baseline for changeset #%d",
                        rec.route, viewport.label, changeset_id)
            return

        outcome.baseline_changeset_id = baseline.changeset_id
        outcome.baseline_path = self.store.image_path(baseline)
        baseline_bytes = await asyncio.to_thread(self.store.read_image, baseline)
        comparison = await asyncio.to_thread(
            self.comparator.compare, baseline_bytes, image, self.config.diff_threshold,
        )
        outcome.comparison = comparison
        outcome.passed = comparison.match
        logger.debug("%s vs changeset #%d baseline: %.4f%% differ (threshold %.2f%%)",
                     rec.route, baseline.changeset_id, comparison.diff_percentage,
                     comparison.threshold * 100)

        if not comparison.match:
            try:
                diff = await asyncio.to_thread(self.comparator.generate_diff_image, baseline_bytes, image)
                outcome.diff_path = await self._save_artifact(changeset_id, "diffs", f"{artifact_name}-diff.png", diff)
            except Exception as e:
                outcome.diff_error = f"Diff image generation failed: {e}"
                logger.warning("Could not generate diff image for %s: %s", rec.route, e)

        if self.config.update_baselines:
            await asyncio.to_thread(
                self.store.capture, changeset_id, rec.route, name, viewport, image, test_url,
            )
            logger.info("Updated baseline for %s in changeset #%d", rec.route, changeset_id)

        outcome.state = RouteState.PASSED if outcome.passed else RouteState.FAILED

    async def _save_artifact(self, changeset_id: int, kind: str, filename: str, data: bytes) -> Optional[str]:
        path = self.artifacts_dir / f"pr-{changeset_id}" / kind / filename

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            logger.warning("Could not save %s artifact %s: %s", kind, path, e)
            return None
        return str(path)
