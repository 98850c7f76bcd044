"""Run many backup jobs concurrently and report on them together."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Sequence

from remote_backup.models import BackupJobConfig, BackupResult, BulkResult, JobReport, StepStatus
from remote_backup.notify import Notifier, NullNotifier
from remote_backup.utils.policy import best_effort

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 5

JobRunner = Callable[[BackupJobConfig], BackupResult]


class BatchOrchestrator:
    """Fans out one job per config on a bounded thread pool.

    A job that raises is recorded as a failed result; it never cancels its
    siblings.  Results come back in input order, whatever the completion order.
    """

    def __init__(
        self,
        run_job: JobRunner,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._run_job = run_job
        self.max_concurrent = max_concurrent
        self._notifier = notifier or NullNotifier()
        self._clock = clock

    def run_batch(self, configs: Sequence[BackupJobConfig]) -> BulkResult:
        start = self._clock()
        total = len(configs)
        if total == 0:
            return BulkResult(total_servers=0, success_count=0, failure_count=0, total_wall_seconds=0.0)

        workers = min(self.max_concurrent, total)
        logger.info("Starting batch of %d backup(s) with %d worker(s)", total, workers)

        reports: list[JobReport | None] = [None] * total
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="backup") as pool:
            futures = {pool.submit(self._run_isolated, cfg): index for index, cfg in enumerate(configs)}
            for future in as_completed(futures):
                index = futures[future]
                reports[index] = future.result()
                result = reports[index].result
                logger.info("[%s] %s (%d/%d settled)", result.server_name,
                            "succeeded" if result.success else "failed",
                            sum(r is not None for r in reports), total)

        ordered = tuple(r for r in reports if r is not None)
        success_count = sum(1 for r in ordered if r.result.success)
        bulk = BulkResult(
            total_servers=total,
            success_count=success_count,
            failure_count=total - success_count,
            total_wall_seconds=self._clock() - start,
            results=ordered,
        )
        logger.info("Batch finished: %d succeeded, %d failed in %.1fs",
                    bulk.success_count, bulk.failure_count, bulk.total_wall_seconds)
        best_effort("Bulk summary notification", self._notifier.notify_bulk_summary, bulk)
        return bulk

    def _run_isolated(self, config: BackupJobConfig) -> JobReport:
        start = self._clock()
        try:
            result = self._run_job(config)
        except Exception as exc:
            logger.exception("[%s] Job raised unexpectedly", config.server_name)
            result = BackupResult(
                success=False,
                server_name=config.server_name,
                steps=StepStatus(),
                error_message=str(exc) or type(exc).__name__,
            )
        return JobReport(result=result, duration_seconds=self._clock() - start)
