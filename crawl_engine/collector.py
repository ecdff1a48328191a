"""
Crawl orchestrator.

Runs search tasks through a fixed pool of worker threads. Each worker owns
its own Playwright browser and walks whole per-term chains (page 0, 1, 2 ...)
because a results page is only reachable from the view of the one before it.
Per task:

    PENDING -> INTERACTING -> CHALLENGE_CHECK -> EXTRACTING -> DONE|SKIPPED|FAILED

Challenge timeouts and task deadline overruns are retried on another session;
everything else is resolved for the task without retry. No exception escapes
run(): the caller always gets the partial CrawlResult.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from queue import Empty, Queue
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from crawl_engine.browser import BrowserFactory, BrowserView
from crawl_engine.challenge import ChallengeResolver
from crawl_engine.config_loader import MAX_CONCURRENCY
from crawl_engine.extractor import JobExtractor
from crawl_engine.filters import RecordFilter, filters_from_config
from crawl_engine.interaction import ChallengeTimeout, InteractionDriver
from crawl_engine.models import (
    ChallengeState,
    CrawlResult,
    PageAdvance,
    RawJobRecord,
    SearchTask,
    TaskReport,
    TaskStatus,
)
from crawl_engine.pacing import Pacing
from crawl_engine.proxy_manager import ProxyManager
from crawl_engine.run_metrics import RunMetrics
from crawl_engine.session_pool import PoolExhausted, Session, SessionOutcome, SessionPool
from crawl_engine.tasks import group_by_term

logger = logging.getLogger(__name__)


class TaskTimeout(RuntimeError):
    """Raised when a task overruns its handler ceiling."""


RETRYABLE_ERRORS = (ChallengeTimeout, TaskTimeout)


@dataclass
class _ChainCursor:
    """Where a term's pagination has got to"""

    results_url: Optional[str] = None
    page_index: int = -1
    session_id: Optional[str] = None
    exhausted: bool = False
    broken: bool = False


class _Worker:
    def __init__(self, worker_id: int, browser: Any):
        self.worker_id = worker_id
        self.browser = browser
        self.views: Dict[str, BrowserView] = {}


class CrawlOrchestrator:
    """Schedules tasks over sessions, applies the retry policy, aggregates results"""

    def __init__(
        self,
        session_pool: SessionPool,
        driver: InteractionDriver,
        resolver: ChallengeResolver,
        extractor: JobExtractor,
        browser_factory: Callable[[], Any],
        pacing: Optional[Pacing] = None,
        record_filters: Sequence[RecordFilter] = (),
        concurrency: int = 1,
        max_retries: int = 2,
        task_timeout: float = 120.0,
        warmup: bool = True,
        metrics: Optional[RunMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if concurrency < 1 or concurrency > MAX_CONCURRENCY:
            raise ValueError(f"concurrency must be between 1 and {MAX_CONCURRENCY}")
        if concurrency > session_pool.max_pool_size:
            raise ValueError("concurrency must not exceed the session pool size")
        self.session_pool = session_pool
        self.driver = driver
        self.resolver = resolver
        self.extractor = extractor
        self.browser_factory = browser_factory
        self.pacing = pacing or Pacing()
        self.record_filters = list(record_filters)
        self.concurrency = concurrency
        self.max_retries = max(int(max_retries), 0)
        self.task_timeout = task_timeout
        self.warmup = warmup
        self.metrics = metrics or RunMetrics(target="indeed")
        self.clock = clock

    @classmethod
    def from_config(cls, config: Any, metrics: Optional[RunMetrics] = None) -> "CrawlOrchestrator":
        metrics = metrics or RunMetrics(target=config.get_source_label())
        pacing = Pacing.from_config(config)
        resolver = ChallengeResolver.from_config(config, metrics=metrics)
        proxy_manager = ProxyManager.from_config(config)
        return cls(
            session_pool=SessionPool.from_config(config, proxy_manager),
            driver=InteractionDriver.from_config(config, pacing, resolver),
            resolver=resolver,
            extractor=JobExtractor.from_config(config),
            browser_factory=lambda: BrowserFactory.from_config(config),
            pacing=pacing,
            record_filters=filters_from_config(config),
            concurrency=config.get_concurrency(),
            max_retries=config.get_max_retries(),
            task_timeout=config.get_task_timeout(),
            warmup=config.is_warmup_enabled(),
            metrics=metrics,
        )

    # --- run ----------------------------------------------------------------

    def run(self, tasks: Sequence[SearchTask]) -> CrawlResult:
        result = CrawlResult()
        chains = group_by_term(tasks)
        if not chains:
            logger.info("No tasks to run")
            return result

        queue: "Queue[List[SearchTask]]" = Queue()
        for chain in chains:
            queue.put(chain)

        workers = min(self.concurrency, len(chains))
        logger.info(
            "Starting crawl: %d tasks in %d chains, %d worker(s)",
            len(tasks),
            len(chains),
            workers,
        )
        self.metrics.set_gauge("tasks_total", len(tasks))
        self.metrics.set_gauge("workers", workers)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="crawl-worker") as executor:
            futures = [
                executor.submit(self._worker_loop, worker_id, queue, result)
                for worker_id in range(1, workers + 1)
            ]
            for future in as_completed(futures):
                try:
                    future.result()
                except Exception as exc:
                    logger.error("Crawl worker stopped: %s", exc)
                    self.metrics.inc("worker_failures")

        self._fail_unclaimed(queue, result)

        self.metrics.set_gauge("session_pool", self.session_pool.stats())
        self.metrics.set_gauges(result.summary())
        self.metrics.finish()
        logger.info(
            "Crawl finished: %d records, %d processed, %d failed, %d skipped",
            len(result.records),
            result.tasks_processed,
            result.tasks_failed,
            result.tasks_skipped,
        )
        return result

    def _fail_unclaimed(self, queue: "Queue[List[SearchTask]]", result: CrawlResult) -> None:
        """Chains left behind when every worker died still get a report each"""
        while True:
            try:
                chain = queue.get_nowait()
            except Empty:
                return
            for task in chain:
                report = TaskReport(task=task, status=TaskStatus.FAILED, reason="no crawl worker available")
                result.record_task(report)

    def _worker_loop(self, worker_id: int, queue: "Queue[List[SearchTask]]", result: CrawlResult) -> None:
        browser = self.browser_factory()
        browser.start()
        worker = _Worker(worker_id, browser)
        logger.info("Worker %d ready", worker_id)
        try:
            while True:
                try:
                    chain = queue.get_nowait()
                except Empty:
                    break
                self._run_chain(worker, chain, result)
        finally:
            for session_id in list(worker.views):
                self._close_view(worker, session_id)
            browser.stop()
            logger.info("Worker %d finished", worker_id)

    def _run_chain(self, worker: _Worker, chain: Sequence[SearchTask], result: CrawlResult) -> None:
        cursor = _ChainCursor()
        for task in chain:
            report, records = self._process_task(worker, task, cursor)
            report.records_extracted = len(records)
            result.record_task(report, records)
            self.metrics.inc(f"tasks_{report.status.value}")
            if report.status == TaskStatus.DONE:
                print(f"   ✓ {task}: {len(records)} jobs")
            elif report.status == TaskStatus.SKIPPED:
                print(f"   ⚠️  {task}: skipped ({report.reason})")
            else:
                print(f"   ✗ {task}: failed ({report.reason})")

    # --- task lifecycle -----------------------------------------------------

    def _process_task(self, worker: _Worker, task: SearchTask, cursor: _ChainCursor) -> Tuple[TaskReport, List[RawJobRecord]]:
        report = TaskReport(task=task)

        if not task.is_first_page:
            if cursor.exhausted:
                report.status = TaskStatus.DONE
                report.reason = "no more pages"
                return report, []
            if cursor.broken or cursor.results_url is None:
                report.status = TaskStatus.SKIPPED
                report.reason = "no results view to paginate from"
                return report, []

        excluded: List[str] = []
        while True:
            report.attempts += 1
            try:
                session = self.session_pool.acquire(prefer=cursor.session_id, exclude=excluded)
            except PoolExhausted as exc:
                report.status = TaskStatus.FAILED
                report.reason = str(exc)
                cursor.broken = True
                return report, []
            report.session_ids.append(session.session_id)
            deadline = self.clock() + self.task_timeout

            try:
                view = self._view_for(worker, session)
                records = self._attempt(view, task, cursor, report, deadline)
            except RETRYABLE_ERRORS as exc:
                logger.warning("Task %s attempt %d failed: %s", task, report.attempts, exc)
                self._discard(worker, session)
                excluded.append(session.session_id)
                if report.attempts > self.max_retries:
                    report.status = TaskStatus.FAILED
                    report.reason = f"retries exhausted: {exc}"
                    cursor.broken = True
                    cursor.session_id = None
                    self.metrics.inc("tasks_retries_exhausted")
                    return report, []
                self.metrics.inc("task_retries")
                self.metrics.inc("session_replacements")
                logger.info(
                    "Retrying %s on a new session (attempt %d/%d)",
                    task,
                    report.attempts + 1,
                    self.max_retries + 1,
                )
                continue
            except Exception as exc:
                logger.error("Task %s failed: %s", task, exc)
                self._discard(worker, session)
                report.status = TaskStatus.FAILED
                report.reason = str(exc) or exc.__class__.__name__
                cursor.broken = True
                cursor.session_id = None
                return report, []

            outcome = SessionOutcome.ERROR if report.status == TaskStatus.FAILED else SessionOutcome.SUCCESS
            self._release(worker, session, outcome)
            cursor.session_id = None if session.retired else session.session_id
            return report, records

    def _attempt(
        self,
        view: BrowserView,
        task: SearchTask,
        cursor: _ChainCursor,
        report: TaskReport,
        deadline: float,
    ) -> List[RawJobRecord]:
        """One attempt at a task on one view. Sets report.status before returning."""
        page = view.page
        position = (task.search_term, task.location)

        report.status = TaskStatus.INTERACTING
        if task.is_first_page:
            view.position = None
            if not self.driver.perform_initial_search(page, task):
                report.status = TaskStatus.SKIPPED
                report.reason = "search controls not found"
                cursor.broken = True
                return []
        else:
            if view.position != position + (task.page_index - 1,) or page.url != cursor.results_url:
                self.driver.resume_results(page, cursor.results_url)
                view.position = position + (cursor.page_index,)
            self._check_deadline(deadline, task)
            advance = self.driver.advance_page(page, task)
            if advance == PageAdvance.NO_MORE_PAGES:
                report.status = TaskStatus.DONE
                report.reason = "no more pages"
                cursor.exhausted = True
                return []
            if advance == PageAdvance.ERROR:
                report.status = TaskStatus.FAILED
                report.reason = "pagination error"
                cursor.broken = True
                view.position = None
                return []
        self._check_deadline(deadline, task)

        report.status = TaskStatus.CHALLENGE_CHECK
        state = self.resolver.resolve(page)
        if state == ChallengeState.TIMED_OUT:
            raise ChallengeTimeout(f"Challenge did not clear for {task}")
        self._check_deadline(deadline, task)

        report.status = TaskStatus.EXTRACTING
        cards = self.extractor.find_job_cards(page)
        cursor.results_url = page.url
        cursor.page_index = task.page_index
        view.position = position + (task.page_index,)
        if not cards:
            logger.warning("No job cards found for %s", task)
            report.status = TaskStatus.SKIPPED
            report.reason = "no job cards found"
            cursor.exhausted = True
            return []

        records, discarded = self.extractor.extract_all(cards, search_term=task.search_term)
        accepted = [record for record in records if all(f(record) for f in self.record_filters)]
        self.metrics.inc("records_extracted", len(records))
        self.metrics.inc("records_discarded", discarded)
        self.metrics.inc("records_filtered", len(records) - len(accepted))
        logger.info("Extracted %d jobs for %s (%d discarded)", len(accepted), task, discarded)

        report.status = TaskStatus.DONE
        self.pacing.between_tasks.pause()
        return accepted

    def _check_deadline(self, deadline: float, task: SearchTask) -> None:
        if self.clock() > deadline:
            self.metrics.inc("task_timeouts")
            raise TaskTimeout(f"{task} exceeded {self.task_timeout}s")

    # --- sessions and views -------------------------------------------------

    def _view_for(self, worker: _Worker, session: Session) -> BrowserView:
        # views of sessions retired elsewhere are dead weight
        for session_id in list(worker.views):
            if session_id != session.session_id and not self.session_pool.is_active(session_id):
                self._close_view(worker, session_id)

        view = worker.views.get(session.session_id)
        if view is not None and not view.is_stale():
            return view
        if view is not None:
            logger.debug("Reopening %s with cookies saved by another worker", session)
            self._close_view(worker, session.session_id)

        view = worker.browser.open_view(session)
        worker.views[session.session_id] = view
        self.metrics.inc("browser_views_opened")
        if self.warmup and not session.warmed_up:
            logger.info("Warming up %s", session)
            self.driver.warm_up(view.page)
            session.warmed_up = True
            self.metrics.inc("session_warmups")
        return view

    def _close_view(self, worker: _Worker, session_id: str) -> None:
        view = worker.views.pop(session_id, None)
        if view is not None:
            # a stale view must not overwrite newer cookies
            worker.browser.close_view(view, save=not view.is_stale())

    def _release(self, worker: _Worker, session: Session, outcome: SessionOutcome) -> None:
        # cookies must be on the session before another worker can acquire it
        view = worker.views.get(session.session_id)
        if view is not None:
            worker.browser.save_state(view)
        retired = self.session_pool.release(session, outcome)
        if retired:
            self.metrics.inc("sessions_retired")
            self.metrics.record_event("session_retired", session_id=session.session_id, reason=session.retire_reason)
            self._close_view(worker, session.session_id)

    def _discard(self, worker: _Worker, session: Session) -> None:
        """Drop the session's view and charge it an error"""
        self._close_view(worker, session.session_id)
        self._release(worker, session, SessionOutcome.ERROR)
