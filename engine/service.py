"""Download orchestration: admission, extraction, delivery and retention wiring."""

from __future__ import annotations

import logging
import os
import shutil
import time
from typing import Optional

from apscheduler.triggers.interval import IntervalTrigger

from config.settings import Settings
from engine.delivery import Delivery, DeliveryStreamer
from engine.errors import (
    ArtifactNotFound,
    DownloadError,
    ExtractionFailed,
    ExtractionTimedOut,
    InvalidRequest,
    NoArtifact,
    RateLimited,
)
from engine.gate import REASON_RATE_LIMITED, RateLimiter, RequestGate
from engine.invoker import CAUSE_NO_ARTIFACT, ExtractorBinding, ExtractorInvoker, InvocationOutcome
from engine.jobs import JOB_STATE_TIMED_OUT, Job, JobSlots
from engine.paths import ensure_dir, resolve_artifact
from engine.registry import ArtifactRegistry
from engine.runtime import get_runtime_info
from engine.sweeper import DeferredDeleter, RetentionSweeper, delete_artifact

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "retention_sweep"
RATE_LIMIT_PURGE_JOB_ID = "rate_limit_purge"

_REJECTION_DETAILS = {
    "invalid_url": "URL must be a valid http(s) URL",
    "unsupported_domain": "URL host is not a supported site",
}


class DownloadService:
    """Owns every piece of shared state: rate-limit table, registry and timers."""

    def __init__(self, settings: Settings, binding: ExtractorBinding, scheduler) -> None:
        self.settings = settings
        self.binding = binding
        self.scheduler = scheduler
        self.started_at = time.monotonic()
        self.registry = ArtifactRegistry()
        self.limiter = RateLimiter(settings.rate_limit_max, settings.rate_limit_window_seconds)
        self.gate = RequestGate(
            self.limiter,
            settings.allowed_domains,
            max_url_length=settings.max_url_length,
        )
        self.invoker = ExtractorInvoker(
            binding,
            cookies_file=settings.cookies_file,
            platform_headers=settings.platform_headers,
        )
        self.slots = JobSlots(settings.max_concurrent_jobs, settings.max_queued_jobs)
        self.deleter = DeferredDeleter(scheduler, self.registry, settings.delete_grace_seconds)
        self.streamer = DeliveryStreamer(self.registry, self.deleter.schedule)
        self.sweeper = RetentionSweeper(
            settings.downloads_dir,
            self.registry,
            settings.file_retention_seconds,
        )

    def start(self) -> None:
        ensure_dir(self.settings.downloads_dir)
        self.scheduler.add_job(
            self.sweeper.sweep,
            trigger=IntervalTrigger(seconds=self.settings.cleanup_interval_seconds),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )
        self.scheduler.add_job(
            self.limiter.purge_expired,
            trigger=IntervalTrigger(seconds=self.settings.rate_limit_window_seconds),
            id=RATE_LIMIT_PURGE_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        self.sweeper.sweep()
        logger.info(
            "Download service ready dir=%s retention=%ss timeout=%ss",
            self.settings.downloads_dir,
            int(self.settings.file_retention_seconds),
            int(self.settings.download_timeout_seconds),
        )

    def shutdown(self) -> None:
        flushed = self.deleter.flush()
        if flushed:
            logger.info("Flushed %d pending artifact deletion(s)", flushed)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def admit(self, client_id: str, raw_url) -> str:
        admission = self.gate.admit(client_id, raw_url)
        if admission.accepted:
            return admission.sanitized_url
        if admission.reason == REASON_RATE_LIMITED:
            raise RateLimited()
        raise InvalidRequest(_REJECTION_DETAILS.get(admission.reason), kind=admission.reason)

    async def _produce(self, url: str) -> tuple[Job, InvocationOutcome]:
        job = Job.create(url, self.settings.downloads_dir, self.settings.download_timeout_seconds)
        # Registered before the process starts so the sweeper never sees an
        # unregistered, incomplete file.
        self.registry.mark_in_use(job.output_path)
        try:
            outcome = await self.invoker.run(job)
        except BaseException:
            self.registry.release(job.output_path)
            raise
        if not outcome.succeeded:
            self.registry.release(job.output_path)
            if outcome.state == JOB_STATE_TIMED_OUT:
                raise ExtractionTimedOut()
            if outcome.cause == CAUSE_NO_ARTIFACT:
                raise NoArtifact()
            raise ExtractionFailed()
        return job, outcome

    async def download(self, client_id: str, raw_url) -> Delivery:
        """Admit, extract and open the artifact for streaming back to the caller."""
        url = self.admit(client_id, raw_url)
        async with self.slots:
            job, outcome = await self._produce(url)
        released = False
        try:
            # The stream takes its own reference before the producer lets go.
            return await self.streamer.open(outcome.file_path)
        except DownloadError:
            self.registry.release(job.output_path)
            released = True
            delete_artifact(job.output_path, self.registry)
            raise
        finally:
            if not released:
                self.registry.release(job.output_path)

    async def download_link(self, client_id: str, raw_url) -> dict:
        """Admit and extract, leaving the artifact for a later ``GET /downloads/{name}``."""
        url = self.admit(client_id, raw_url)
        async with self.slots:
            job, outcome = await self._produce(url)
        self.registry.release(job.output_path)
        filename = os.path.basename(outcome.file_path)
        return {
            "downloadUrl": f"/downloads/{filename}",
            "filename": filename,
            "size": outcome.size,
        }

    async def open_named(self, name: str) -> Delivery:
        path = resolve_artifact(self.settings.downloads_dir, name)
        if path is None:
            raise ArtifactNotFound()
        return await self.streamer.open(path)

    def health(self) -> dict:
        free_bytes: Optional[int]
        try:
            free_bytes = shutil.disk_usage(self.settings.downloads_dir).free
        except OSError:
            free_bytes = None
        info = get_runtime_info(self.binding)
        report = self.sweeper.last_report
        last_sweep = None
        if report is not None:
            last_sweep = {
                "scanned": report.scanned,
                "deleted": len(report.deleted),
                "skipped_in_use": report.skipped_in_use,
                "failed": len(report.failed),
            }
        return {
            "status": "healthy",
            "uptime_seconds": round(time.monotonic() - self.started_at, 1),
            "downloads_dir": self.settings.downloads_dir,
            "free_bytes": free_bytes,
            "active_artifacts": self.registry.active_count(),
            "active_jobs": self.slots.active,
            "queued_jobs": self.slots.waiting,
            "extractor_version": info["extractor_version"],
            "extractor_command": info["extractor_command"],
            "yt_dlp_module_version": info["yt_dlp_module_version"],
            "last_sweep": last_sweep,
            "app_version": info["app_version"],
            "python_version": info["python_version"],
        }
