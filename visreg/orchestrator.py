"""Run orchestrator — coordinates classify, execute, and report stages."""

from __future__ import annotations

import asyncio
import logging
import signal
import threading
import time
from pathlib import Path
from typing import Optional, Sequence

from visreg.ai.client import AIClient, set_debug_dir
from visreg.baseline.store import BaselineStore
from visreg.classifier.ai_classifier import AIChangeClassifier
from visreg.classifier.classifier import RouteClassifier
from visreg.comparator.comparator import ScreenshotComparator
from visreg.errors import CancelledRunError, ConfigError, ErrorKind, VisualRegressionError
from visreg.executor.capture import CaptureDriver, PlaywrightCaptureDriver
from visreg.executor.coordinator import ExecutionCoordinator
from visreg.models.baseline import BaselineRecord
from visreg.models.changeset import (
    ChangesetContext,
    ClassificationResult,
    LoginFlowDescriptor,
    RouteRecommendation,
)
from visreg.models.config import FrameworkConfig
from visreg.models.test_result import RouteState, RouteTestOutcome, RunResult
from visreg.reporter.aggregator import aggregate
from visreg.reporter.json_report import generate_json_report
from visreg.url_utils import route_to_screenshot_name

logger = logging.getLogger(__name__)


class Orchestrator:
    """Coordinates one visual regression run for a changeset."""

    def __init__(
        self,
        config: FrameworkConfig,
        classifier: Optional[RouteClassifier] = None,
        driver: Optional[CaptureDriver] = None,
        framework_dir: Path | str = ".visreg",
    ):
        self.config = config
        self.framework_dir = Path(framework_dir)
        self.report_dir = Path(config.report_output_dir)

        # Set up AI debug logging directory
        set_debug_dir(self.framework_dir / "debug")

        self._classifier = classifier
        self._driver = driver
        self.store = BaselineStore(config.baselines_dir)
        self.comparator = ScreenshotComparator()
        self._cancel_event = threading.Event()

    @property
    def classifier(self) -> RouteClassifier:
        """The route classifier, built on first use from the AI settings."""
        if self._classifier is None:
            try:
                ai_client = AIClient(
                    model=self.config.ai_model,
                    max_tokens=self.config.ai_max_tokens,
                    max_retries=self.config.ai_max_retries,
                )
            except EnvironmentError as e:
                raise ConfigError(f"AI client unavailable: {e}") from e
            self._classifier = RouteClassifier(
                AIChangeClassifier(ai_client), max_diff_chars=self.config.max_diff_chars,
            )
        return self._classifier

    def report_path(self, changeset_id: int) -> Path:
        return self.report_dir / f"pr-{changeset_id}" / f"report_pr-{changeset_id}.json"

    def run(self, context: ChangesetContext, handle_interrupts: bool = False) -> RunResult:
        """Execute the complete classify → execute → report pipeline.

        With ``handle_interrupts`` a SIGINT cancels the run cooperatively, so
        finished routes still reach the partial report.
        """
        if handle_interrupts:
            return asyncio.run(self._run_interruptible(context))
        return asyncio.run(self.run_async(context))

    def cancel(self) -> None:
        """Request cancellation of the current run. Safe to call from any thread."""
        if not self._cancel_event.is_set():
            logger.warning("Run cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def _run_interruptible(self, context: ChangesetContext) -> RunResult:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.cancel)
        except (NotImplementedError, RuntimeError, ValueError):
            # No loop signal support here (Windows, or not the main thread)
            logger.debug("SIGINT handler not installed; Ctrl-C aborts the run")
            return await self.run_async(context)
        try:
            return await self.run_async(context)
        finally:
            loop.remove_signal_handler(signal.SIGINT)

    async def run_async(self, context: ChangesetContext) -> RunResult:
        """Run all stages. A pending cancellation is cleared once the run ends."""
        try:
            return await self._run_stages(context)
        finally:
            self._cancel_event.clear()

    async def _run_stages(self, context: ChangesetContext) -> RunResult:
        start = time.time()
        if context.project_context is None and self.config.project_context:
            context = context.model_copy(update={"project_context": self.config.project_context})
        logger.info("=== Visual regression run for changeset #%d against %s ===",
                    context.changeset_id, self.config.target_url)

        # Stage 1: Classify
        self._checkpoint(context.changeset_id, "before classification")
        logger.info("--- Stage 1: Classify ---")
        stage_start = time.time()
        classification = await asyncio.to_thread(self.classifier.classify, context)
        logger.info("--- Stage 1 complete: %d routes selected in %.1fs ---",
                    len(classification.routes), time.time() - stage_start)
        if not classification.routes:
            logger.warning("No routes to test for changeset #%d", context.changeset_id)

        login_flow = None
        if classification.requires_auth:
            self._checkpoint(context.changeset_id, "after classification", classification.routes)
            login_flow = await asyncio.to_thread(self._resolve_login_flow, classification)

        # Stage 2: Execute
        self._checkpoint(context.changeset_id, "before execution", classification.routes)
        logger.info("--- Stage 2: Execute (%d routes) ---", len(classification.routes))
        stage_start = time.time()
        try:
            run_result = await self._execute(context.changeset_id, classification, login_flow)
        except VisualRegressionError as e:
            if e.partial_result is not None:
                self._report(e.partial_result)
            raise
        logger.info("--- Stage 2 complete: %d passed, %d failed in %.1fs ---",
                    run_result.passed_tests, run_result.failed_tests, time.time() - stage_start)

        # Stage 3: Report
        logger.info("--- Stage 3: Report ---")
        self._report(run_result)

        logger.info("=== Run complete in %.1fs: %s ===", time.time() - start,
                    "PASSED" if run_result.passed else "FAILED")
        return run_result

    def _resolve_login_flow(self, classification: ClassificationResult) -> Optional[LoginFlowDescriptor]:
        """Pick the login flow: explicit config selectors, then the classifier's, then inference."""
        auth = self.config.auth
        if auth is not None and auth.has_explicit_flow():
            logger.debug("Using login selectors from config")
            return LoginFlowDescriptor(
                login_url=auth.login_url,
                username_selector=auth.username_selector,
                password_selector=auth.password_selector,
                submit_selector=auth.submit_selector,
                success_indicator=auth.success_indicator,
                success_url=auth.success_url,
            )
        if classification.login_flow is not None:
            return classification.login_flow
        if auth is not None and auth.login_page_file:
            logger.info("Inferring login flow from %s", auth.login_page_file)
            try:
                page_source = Path(auth.login_page_file).read_text(encoding="utf-8")
                layout_source = (
                    Path(auth.layout_file).read_text(encoding="utf-8") if auth.layout_file else None
                )
            except OSError as e:
                raise ConfigError(f"Cannot read login page source: {e}") from e
            return self.classifier.derive_login_flow(page_source, layout_source)
        return None

    async def _execute(
        self,
        changeset_id: int,
        classification: ClassificationResult,
        login_flow: Optional[LoginFlowDescriptor],
    ) -> RunResult:
        driver = self._driver
        own_driver = driver is None
        if own_driver:
            driver = PlaywrightCaptureDriver(timeout_ms=int(self.config.route_timeout_seconds * 1000))
            await driver.start()
        coordinator = ExecutionCoordinator(
            self.config, self.store, self.comparator, driver, self.report_dir,
            cancel_event=self._cancel_event,
        )
        try:
            return await coordinator.execute(
                changeset_id,
                classification.routes,
                self.config.target_url,
                login_flow=login_flow,
                credentials=self.config.auth,
            )
        finally:
            if own_driver:
                await driver.stop()

    def _checkpoint(
        self,
        changeset_id: int,
        stage: str,
        routes: Sequence[RouteRecommendation] = (),
    ) -> None:
        """Abort between stages once cancellation is requested.

        Routes selected so far are reported as cancelled in the partial result.
        """
        if not self._cancel_event.is_set():
            return
        message = f"Run for changeset #{changeset_id} cancelled {stage}"
        partial = aggregate(changeset_id, [
            RouteTestOutcome(
                route=r.route,
                screenshot_name=route_to_screenshot_name(r.route),
                priority=r.priority,
                state=RouteState.FAILED,
                error=message,
                error_kind=ErrorKind.CANCELLED.value,
            )
            for r in routes
        ])
        logger.warning(message)
        self._report(partial)
        raise CancelledRunError(message, partial_result=partial)

    def _report(self, run_result: RunResult) -> None:
        path = self.report_path(run_result.changeset_id)
        generate_json_report(run_result, self.config.target_url, path)
        run_result.report_path = str(path)
        logger.info("JSON report written to %s", path)

    # ------------------------------------------------------------------
    # Baseline maintenance
    # ------------------------------------------------------------------

    def list_baselines(self, changeset_id: Optional[int] = None) -> dict[int, list[BaselineRecord]]:
        ids = [changeset_id] if changeset_id is not None else self.store.list_changesets()
        return {cid: self.store.list_baselines(cid) for cid in ids}

    def delete_baselines(self, changeset_id: int) -> int:
        return self.store.delete_changeset(changeset_id)

    def baseline_storage_size(self) -> int:
        return self.store.storage_size()
