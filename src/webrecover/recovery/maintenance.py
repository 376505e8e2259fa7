"""Background maintenance for a running recovery engine.

Each job runs on its own fixed interval as an asyncio task. Store work is
pushed to a worker thread so foreground recoveries never wait on it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..config import RecoveryConfig
from ..generator.client import SolutionGeneratorClient
from ..solutions.library import SolutionLibrary

logger = logging.getLogger(__name__)

HOUR = 3600.0
DAY = 24 * HOUR
SEARCH_CACHE_SWEEP_SECONDS = 300.0


@dataclass
class MaintenanceJob:
    name: str
    interval_seconds: float
    action: Callable[[], Awaitable[Any]]
    runs: int = 0
    failures: int = 0


class MaintenanceScheduler:
    """Runs cache sweeps, audit trims, store cleanup and backups.

    Example:
        scheduler = MaintenanceScheduler(config, generator=client, library=library)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        config: RecoveryConfig,
        generator: SolutionGeneratorClient | None = None,
        library: SolutionLibrary | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.generator = generator
        self.library = library
        self._sleep = sleep
        self._tasks: list[asyncio.Task[None]] = []
        self.jobs = self._build_jobs()

    def _build_jobs(self) -> list[MaintenanceJob]:
        jobs: list[MaintenanceJob] = []
        if self.generator is not None:
            jobs.append(MaintenanceJob("cache_sweep", HOUR, self.sweep_cache))
            jobs.append(MaintenanceJob("audit_trim", DAY, self.trim_audit))
        if self.library is not None:
            jobs.append(MaintenanceJob("search_cache_sweep", SEARCH_CACHE_SWEEP_SECONDS, self.sweep_search_cache))
            jobs.append(MaintenanceJob("usage_cleanup", DAY, self.cleanup_usage))
            if self.config.library.backup_interval_hours > 0:
                jobs.append(
                    MaintenanceJob("backup", self.config.library.backup_interval_hours * HOUR, self.backup)
                )
        return jobs

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Schedule every job on the running event loop."""
        if self.running:
            return
        self._tasks = [asyncio.create_task(self._loop(job), name=f"maintenance-{job.name}") for job in self.jobs]
        logger.debug(f"Started {len(self._tasks)} maintenance jobs")

    async def stop(self) -> None:
        """Cancel every job and wait for them to finish."""
        # Tasks from an event loop that has since closed are already done
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []

    async def _loop(self, job: MaintenanceJob) -> None:
        while True:
            await self._sleep(job.interval_seconds)
            await self.run_job(job)

    async def run_job(self, job: MaintenanceJob) -> None:
        """Run one job now; failures are logged and counted."""
        try:
            await job.action()
            job.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.failures += 1
            logger.warning(f"Maintenance job {job.name} failed: {e}")

    # =========================================================================
    # Jobs
    # =========================================================================

    def _require_generator(self) -> SolutionGeneratorClient:
        if self.generator is None:
            raise RuntimeError("Maintenance job needs a generator client")
        return self.generator

    def _require_library(self) -> SolutionLibrary:
        if self.library is None:
            raise RuntimeError("Maintenance job needs a solution library")
        return self.library

    async def sweep_cache(self) -> int:
        return self._require_generator().sweep_cache()

    async def trim_audit(self) -> int:
        return await asyncio.to_thread(self._require_generator().trim_audit)

    async def sweep_search_cache(self) -> int:
        return self._require_library().sweep_search_cache()

    async def cleanup_usage(self) -> int:
        days = self.config.library.usage_retention_days
        removed = await asyncio.to_thread(self._require_library().store.cleanup_old_usage, days)
        if removed:
            logger.info(f"Removed {removed} usage records older than {days} days")
        return removed

    async def backup(self) -> str:
        path = await asyncio.to_thread(self._require_library().store.create_backup)
        return str(path)

    def status(self) -> list[dict[str, Any]]:
        return [
            {"name": j.name, "interval_seconds": j.interval_seconds, "runs": j.runs, "failures": j.failures}
            for j in self.jobs
        ]
