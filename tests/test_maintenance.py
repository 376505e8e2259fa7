"""Tests for background maintenance jobs."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from webrecover.config import RecoveryConfig
from webrecover.generator.client import SolutionGeneratorClient
from webrecover.observability import AuditLog
from webrecover.recovery.maintenance import DAY, HOUR, MaintenanceScheduler
from webrecover.solutions.library import SolutionLibrary
from webrecover.solutions.store import SolutionStore

from conftest import FakeBackend


def make_scheduler(tmp_path, **kwargs) -> MaintenanceScheduler:
    config = RecoveryConfig()
    generator = SolutionGeneratorClient(config, backend=FakeBackend(), audit=AuditLog())
    library = SolutionLibrary(config.library, store=SolutionStore(backup_dir=tmp_path))
    return MaintenanceScheduler(config, generator=generator, library=library, **kwargs)


class TestJobs:
    def test_job_intervals(self, tmp_path):
        scheduler = make_scheduler(tmp_path)
        intervals = {job.name: job.interval_seconds for job in scheduler.jobs}
        assert intervals == {
            "cache_sweep": HOUR,
            "audit_trim": DAY,
            "search_cache_sweep": 300.0,
            "usage_cleanup": DAY,
            "backup": 24 * HOUR,
        }

    def test_jobs_without_components(self):
        assert MaintenanceScheduler(RecoveryConfig()).jobs == []

    def test_backup_job(self, tmp_path):
        scheduler = make_scheduler(tmp_path)
        [job] = [j for j in scheduler.jobs if j.name == "backup"]

        asyncio.run(scheduler.run_job(job))

        assert job.runs == 1
        assert len(scheduler.library.store.list_backups()) == 1

    def test_failures_are_counted_not_raised(self, tmp_path):
        scheduler = make_scheduler(tmp_path)
        [job] = [j for j in scheduler.jobs if j.name == "cache_sweep"]
        scheduler.generator.sweep_cache = MagicMock(side_effect=RuntimeError("disk full"))

        asyncio.run(scheduler.run_job(job))

        assert job.failures == 1
        assert scheduler.status()[0] == {
            "name": "cache_sweep",
            "interval_seconds": HOUR,
            "runs": 0,
            "failures": 1,
        }


class TestScheduling:
    def test_start_runs_jobs_until_stopped(self, tmp_path):
        async def run():
            ticks = asyncio.Event()

            async def fast_sleep(seconds):
                await asyncio.sleep(0)
                ticks.set()

            scheduler = make_scheduler(tmp_path, sleep=fast_sleep)
            scheduler.start()
            assert scheduler.running
            await ticks.wait()
            for _ in range(10):
                await asyncio.sleep(0)
            await scheduler.stop()
            return scheduler

        scheduler = asyncio.run(run())
        assert not scheduler.running
        assert all(job.runs >= 1 for job in scheduler.jobs if job.name in ("cache_sweep", "search_cache_sweep"))

    def test_stop_after_loop_closed(self, tmp_path):
        scheduler = make_scheduler(tmp_path)

        async def start():
            scheduler.start()

        asyncio.run(start())
        assert not scheduler.running

        asyncio.run(scheduler.stop())
        assert scheduler.running is False


class TestMissingComponents:
    def test_jobs_need_their_component(self):
        scheduler = MaintenanceScheduler(RecoveryConfig())
        with pytest.raises(RuntimeError, match="needs a generator client"):
            asyncio.run(scheduler.sweep_cache())
        with pytest.raises(RuntimeError, match="needs a solution library"):
            asyncio.run(scheduler.backup())
