"""yt-dlp invocation: binding probe, argv construction and supervised runs."""

from __future__ import annotations

import asyncio
import glob
import logging
import os
import shlex
import signal
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional, Sequence
from urllib.parse import urlsplit

from engine.errors import ExtractorUnavailable
from engine.gate import host_matches
from engine.jobs import (
    JOB_STATE_FAILED,
    JOB_STATE_RUNNING,
    JOB_STATE_SUCCEEDED,
    JOB_STATE_TIMED_OUT,
    Job,
)
from engine.log_utils import log_event
from engine.paths import artifact_stem

logger = logging.getLogger(__name__)

# Prefer a pre-muxed or mergeable mp4+m4a pair; fall back to any best mp4, then best.
# Passed as a single argv element (we do NOT use shell=True).
FORMAT_VIDEO = "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"
MERGE_OUTPUT_FORMAT = "mp4"

CAUSE_EXIT_STATUS = "exit_status"
CAUSE_NO_ARTIFACT = "no_artifact"
CAUSE_ERROR_MARKER = "error_marker"
CAUSE_LAUNCH_ERROR = "launch_error"
CAUSE_CANCELLED = "cancelled"

_ERROR_MARKER = "ERROR:"
_PROBE_TIMEOUT_SECONDS = 30
_KILL_WAIT_SECONDS = 10
_STDERR_TAIL_LINES = 20

_DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
_MOBILE_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1"
)

# Known special cases, matched against the URL host (domain or subdomain).
DEFAULT_PLATFORM_HEADERS: dict[str, dict[str, str]] = {
    "instagram.com": {
        "User-Agent": _MOBILE_USER_AGENT,
        "Referer": "https://www.instagram.com/",
    },
    "tiktok.com": {
        "User-Agent": _DESKTOP_USER_AGENT,
        "Referer": "https://www.tiktok.com/",
    },
    "twitter.com": {
        "User-Agent": _DESKTOP_USER_AGENT,
        "Referer": "https://twitter.com/",
    },
    "x.com": {
        "User-Agent": _DESKTOP_USER_AGENT,
        "Referer": "https://x.com/",
    },
    "facebook.com": {
        "User-Agent": _DESKTOP_USER_AGENT,
        "Referer": "https://www.facebook.com/",
    },
    "reddit.com": {
        "User-Agent": _DESKTOP_USER_AGENT,
        "Referer": "https://www.reddit.com/",
    },
}


@dataclass(frozen=True)
class ExtractorBinding:
    """An invocation form of yt-dlp that answered ``--version`` at startup."""

    argv: tuple[str, ...]
    version: str


@dataclass(frozen=True)
class InvocationOutcome:
    state: str
    file_path: Optional[str] = None
    size: Optional[int] = None
    cause: Optional[str] = None
    returncode: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.state == JOB_STATE_SUCCEEDED


def default_candidates(configured_binary: str | None = None) -> list[tuple[str, ...]]:
    candidates: list[tuple[str, ...]] = []
    if configured_binary:
        candidates.append(tuple(shlex.split(configured_binary)))
    candidates.append(("yt-dlp",))
    candidates.append((sys.executable, "-m", "yt_dlp"))
    return candidates


def probe_extractor(candidates: Iterable[Sequence[str]]) -> ExtractorBinding:
    """Return the first candidate invocation form that runs ``--version`` cleanly."""
    tried = []
    for candidate in candidates:
        argv = tuple(str(part) for part in candidate)
        if not argv:
            continue
        tried.append(shlex.join(argv))
        try:
            proc = subprocess.run(
                [*argv, "--version"],
                capture_output=True,
                text=True,
                timeout=_PROBE_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.info("yt-dlp probe failed for %s: %s", shlex.join(argv), exc)
            continue
        if proc.returncode != 0:
            logger.info("yt-dlp probe exited %s for %s", proc.returncode, shlex.join(argv))
            continue
        version = (proc.stdout or "").strip().splitlines()
        binding = ExtractorBinding(argv=argv, version=version[0] if version else "unknown")
        logger.info("Using yt-dlp %s via %s", binding.version, shlex.join(argv))
        return binding
    raise ExtractorUnavailable(f"yt-dlp not found; tried: {', '.join(tried) or 'nothing'}")


def resolve_cookie_file(cookies_file):
    if not cookies_file:
        return None
    if not os.path.isfile(cookies_file):
        logger.warning("yt-dlp cookies file not found: %s", cookies_file)
        return None
    return cookies_file


def select_platform_headers(url: str, platform_headers: Mapping[str, Mapping[str, str]]) -> dict[str, str]:
    host = urlsplit(url).hostname or ""
    # Longest domain first so "m.example.com" rules beat "example.com" ones.
    for domain in sorted(platform_headers, key=len, reverse=True):
        if host_matches(host, (domain,)):
            return dict(platform_headers[domain])
    return {}


def build_ytdlp_argv(
    binding: ExtractorBinding,
    url: str,
    output_path: str,
    *,
    cookie_file: str | None = None,
    headers: Mapping[str, str] | None = None,
) -> list[str]:
    """Return a yt-dlp argv list suitable for exec without a shell."""
    argv = list(binding.argv)
    argv.extend(
        [
            "--no-playlist",
            "--no-warnings",
            "--ignore-errors",
            "--no-progress",
            "--newline",
            "-f",
            FORMAT_VIDEO,
            "--merge-output-format",
            MERGE_OUTPUT_FORMAT,
        ]
    )
    if cookie_file:
        argv.extend(["--cookies", str(cookie_file)])
    for name, value in (headers or {}).items():
        argv.extend(["--add-header", f"{name}:{value}"])
    argv.extend(["-o", str(output_path)])
    # "--" keeps a URL that starts with "-" from being read as an option.
    argv.extend(["--", str(url)])
    return argv


def argv_to_redacted_cli(argv):
    """Render argv as a single command string with shell-escaping, redacting sensitive values."""
    redacted = []
    i = 0
    while i < len(argv):
        tok = argv[i]
        if tok in {"--cookies", "--add-header"} and i + 1 < len(argv):
            redacted.extend([tok, "<redacted>"])
            i += 2
            continue
        redacted.append(tok)
        i += 1
    return shlex.join(redacted)


def find_error_marker(stderr_text: str) -> Optional[str]:
    for line in (stderr_text or "").splitlines():
        if line.strip().startswith(_ERROR_MARKER):
            return line.strip()
    return None


def remove_partials(output_path: str) -> list[str]:
    """Delete the artifact and every intermediate sharing its ``dl_<id>`` stem."""
    directory = os.path.dirname(output_path)
    stem = artifact_stem(output_path)
    removed = []
    for candidate in glob.glob(os.path.join(glob.escape(directory), glob.escape(stem) + ".*")):
        try:
            os.remove(candidate)
            removed.append(candidate)
        except FileNotFoundError:
            continue
        except OSError:
            logger.warning("Failed to remove partial file %s", candidate)
    return removed


def _readable_size(path: str) -> Optional[int]:
    try:
        if not os.path.isfile(path) or not os.access(path, os.R_OK):
            return None
        size = os.path.getsize(path)
    except OSError:
        return None
    return size if size > 0 else None


def _stderr_tail(stderr_text: str) -> str:
    lines = [line for line in (stderr_text or "").splitlines() if line.strip()]
    return "\n".join(lines[-_STDERR_TAIL_LINES:])


async def _kill_process(proc) -> None:
    """SIGKILL the process (and its group on POSIX) and reap it."""
    try:
        if os.name != "nt":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass
    except OSError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    try:
        await asyncio.wait_for(proc.wait(), timeout=_KILL_WAIT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("yt-dlp pid=%s did not exit after SIGKILL", proc.pid)


class ExtractorInvoker:
    def __init__(
        self,
        binding: ExtractorBinding,
        *,
        cookies_file: str | None = None,
        platform_headers: Mapping[str, Mapping[str, str]] | None = None,
    ) -> None:
        self.binding = binding
        self.cookies_file = cookies_file
        headers = dict(DEFAULT_PLATFORM_HEADERS)
        headers.update(platform_headers or {})
        self.platform_headers = headers

    def build_argv(self, job: Job) -> list[str]:
        return build_ytdlp_argv(
            self.binding,
            job.source_url,
            job.output_path,
            cookie_file=resolve_cookie_file(self.cookies_file),
            headers=select_platform_headers(job.source_url, self.platform_headers),
        )

    def _finish(self, job: Job, state: str, **kwargs) -> InvocationOutcome:
        job.transition(state)
        outcome = InvocationOutcome(state=state, **kwargs)
        if not outcome.succeeded:
            removed = remove_partials(job.output_path)
            if removed:
                logger.info("Removed %d partial file(s) for job %s", len(removed), job.id)
        log_event(
            logging.INFO if outcome.succeeded else logging.WARNING,
            "extraction_finished",
            job_id=job.id,
            state=state,
            cause=outcome.cause,
            returncode=outcome.returncode,
            size=outcome.size,
            elapsed_seconds=job.elapsed_seconds(),
        )
        return outcome

    async def run(self, job: Job) -> InvocationOutcome:
        argv = self.build_argv(job)
        job.transition(JOB_STATE_RUNNING)
        log_event(
            logging.INFO,
            "extraction_started",
            job_id=job.id,
            host=urlsplit(job.source_url).hostname,
            deadline=job.deadline.isoformat() if job.deadline else None,
        )
        logger.debug("yt-dlp argv job=%s: %s", job.id, argv_to_redacted_cli(argv))

        kwargs = {}
        if os.name != "nt":
            kwargs["start_new_session"] = True
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                **kwargs,
            )
        except OSError as exc:
            logger.error("Failed to launch yt-dlp for job %s: %s", job.id, exc)
            return self._finish(job, JOB_STATE_FAILED, cause=CAUSE_LAUNCH_ERROR)

        remaining = (job.deadline - datetime.now(timezone.utc)).total_seconds()
        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=max(remaining, 0.0))
        except asyncio.TimeoutError:
            logger.warning("yt-dlp exceeded %.0fs for job %s; killing", job.timeout_seconds, job.id)
            await _kill_process(proc)
            return self._finish(job, JOB_STATE_TIMED_OUT, returncode=proc.returncode)
        except asyncio.CancelledError:
            await _kill_process(proc)
            self._finish(job, JOB_STATE_FAILED, cause=CAUSE_CANCELLED, returncode=proc.returncode)
            raise

        stderr_text = (stderr or b"").decode("utf-8", errors="replace")
        returncode = proc.returncode
        if returncode != 0:
            logger.warning(
                "yt-dlp exited %s for job %s:\n%s", returncode, job.id, _stderr_tail(stderr_text)
            )
            return self._finish(job, JOB_STATE_FAILED, cause=CAUSE_EXIT_STATUS, returncode=returncode)

        marker = find_error_marker(stderr_text)
        if marker:
            logger.warning("yt-dlp reported a fatal error for job %s: %s", job.id, marker)
            return self._finish(job, JOB_STATE_FAILED, cause=CAUSE_ERROR_MARKER, returncode=returncode)

        size = _readable_size(job.output_path)
        if size is None:
            logger.warning("yt-dlp exited 0 but produced no file for job %s", job.id)
            return self._finish(job, JOB_STATE_FAILED, cause=CAUSE_NO_ARTIFACT, returncode=returncode)

        return self._finish(
            job,
            JOB_STATE_SUCCEEDED,
            file_path=job.output_path,
            size=size,
            returncode=returncode,
        )
