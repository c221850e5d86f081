"""Artifact retention: periodic sweeps and grace-delayed deletions."""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import uuid4

from apscheduler.jobstores.base import JobLookupError
from apscheduler.triggers.date import DateTrigger

from engine.registry import ArtifactRegistry

logger = logging.getLogger(__name__)

SWEEPER_STATE_IDLE = "idle"
SWEEPER_STATE_SCANNING = "scanning"

DELETE_JOB_PREFIX = "artifact_delete"


@dataclass
class SweepReport:
    scanned: int = 0
    deleted: list[str] = field(default_factory=list)
    skipped_in_use: int = 0
    failed: list[str] = field(default_factory=list)
    skipped_busy: bool = False


def delete_artifact(path: str, registry: ArtifactRegistry) -> bool:
    """Delete ``path`` unless a consumer holds it. Missing files count as gone."""
    if registry.is_in_use(path):
        logger.info("Deletion skipped; artifact in use: %s", path)
        return False
    try:
        os.remove(path)
    except FileNotFoundError:
        return True
    except OSError:
        logger.warning("Cleanup failed for %s", path)
        return False
    logger.info("Deleted artifact %s", os.path.basename(path))
    return True


class RetentionSweeper:
    def __init__(
        self,
        downloads_dir: str,
        registry: ArtifactRegistry,
        retention_seconds: float,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.downloads_dir = str(downloads_dir)
        self.registry = registry
        self.retention_seconds = float(retention_seconds)
        self._clock = clock
        self._state = SWEEPER_STATE_IDLE
        self._state_lock = threading.Lock()
        self.last_report: Optional[SweepReport] = None

    @property
    def state(self) -> str:
        return self._state

    def sweep(self, now: Optional[float] = None) -> SweepReport:
        with self._state_lock:
            if self._state == SWEEPER_STATE_SCANNING:
                logger.info("Sweep skipped; previous sweep still running")
                return SweepReport(skipped_busy=True)
            self._state = SWEEPER_STATE_SCANNING
        try:
            report = self._scan(self._clock() if now is None else now)
        finally:
            with self._state_lock:
                self._state = SWEEPER_STATE_IDLE
        self.last_report = report
        if report.deleted or report.failed:
            logger.info(
                "Retention sweep scanned=%d deleted=%d in_use=%d failed=%d",
                report.scanned,
                len(report.deleted),
                report.skipped_in_use,
                len(report.failed),
            )
        return report

    def _scan(self, now: float) -> SweepReport:
        report = SweepReport()
        try:
            entries = list(os.scandir(self.downloads_dir))
        except FileNotFoundError:
            return report
        except OSError:
            logger.exception("Retention sweep cannot list %s", self.downloads_dir)
            return report
        for entry in entries:
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                report.scanned += 1
                path = entry.path
                if self.registry.is_in_use(path):
                    report.skipped_in_use += 1
                    continue
                age = now - entry.stat(follow_symlinks=False).st_mtime
                if age <= self.retention_seconds:
                    continue
                os.remove(path)
                report.deleted.append(path)
            except FileNotFoundError:
                continue
            except OSError:
                logger.warning("Retention sweep failed to delete %s", entry.path, exc_info=True)
                report.failed.append(entry.path)
        return report


class DeferredDeleter:
    """Schedules artifact deletion a grace period after delivery.

    Pending deletions are scheduler jobs, so ``flush`` can run them all at
    shutdown instead of leaking timers.
    """

    def __init__(self, scheduler, registry: ArtifactRegistry, grace_seconds: float) -> None:
        self.scheduler = scheduler
        self.registry = registry
        self.grace_seconds = float(grace_seconds)
        self._pending: dict[str, str] = {}
        self._lock = threading.Lock()

    def schedule(self, path: str) -> str:
        job_id = f"{DELETE_JOB_PREFIX}_{uuid4().hex}"
        run_date = datetime.now(timezone.utc) + timedelta(seconds=self.grace_seconds)
        with self._lock:
            self._pending[job_id] = path
        self.scheduler.add_job(
            self._run,
            trigger=DateTrigger(run_date=run_date),
            args=[job_id],
            id=job_id,
            replace_existing=False,
            max_instances=1,
            misfire_grace_time=None,
        )
        logger.debug("Deletion of %s scheduled at %s", path, run_date.isoformat())
        return job_id

    def _run(self, job_id: str) -> bool:
        with self._lock:
            path = self._pending.pop(job_id, None)
        if path is None:
            return False
        return delete_artifact(path, self.registry)

    def pending(self) -> list[str]:
        with self._lock:
            return list(self._pending.values())

    def flush(self) -> int:
        """Run every pending deletion now and drop its scheduler job."""
        with self._lock:
            job_ids = list(self._pending)
        deleted = 0
        for job_id in job_ids:
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                # Already fired; _run is a no-op for it.
                pass
            if self._run(job_id):
                deleted += 1
        return deleted
