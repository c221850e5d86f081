from __future__ import annotations

import asyncio
import json
import os
import sys

import pytest

from engine.errors import ExtractorUnavailable
from engine.invoker import (
    CAUSE_ERROR_MARKER,
    CAUSE_EXIT_STATUS,
    CAUSE_LAUNCH_ERROR,
    CAUSE_NO_ARTIFACT,
    FORMAT_VIDEO,
    ExtractorBinding,
    ExtractorInvoker,
    argv_to_redacted_cli,
    build_ytdlp_argv,
    find_error_marker,
    probe_extractor,
    select_platform_headers,
)
from engine.jobs import (
    JOB_STATE_FAILED,
    JOB_STATE_SUCCEEDED,
    JOB_STATE_TIMED_OUT,
    Job,
)


def _job(tmp_path, url="https://www.youtube.com/watch?v=abc", timeout=30.0) -> Job:
    downloads = tmp_path / "downloads"
    downloads.mkdir(exist_ok=True)
    return Job.create(url, str(downloads), timeout)


def _run(invoker, job):
    return asyncio.run(invoker.run(job))


def test_argv_is_a_vector_with_output_and_url_last(tmp_path) -> None:
    binding = ExtractorBinding(argv=("yt-dlp",), version="x")
    argv = build_ytdlp_argv(
        binding,
        "https://youtu.be/abc?x=1&y=2",
        "/downloads/dl_1.mp4",
        cookie_file="/secrets/cookies.txt",
        headers={"User-Agent": "UA", "Referer": "https://ref/"},
    )

    assert argv[0] == "yt-dlp"
    for flag in ("--no-playlist", "--no-warnings", "--ignore-errors"):
        assert flag in argv
    assert argv[argv.index("-f") + 1] == FORMAT_VIDEO
    assert argv[argv.index("--cookies") + 1] == "/secrets/cookies.txt"
    assert "User-Agent:UA" in argv
    assert "Referer:https://ref/" in argv
    assert argv[-4:] == ["-o", "/downloads/dl_1.mp4", "--", "https://youtu.be/abc?x=1&y=2"]


def test_redacted_cli_hides_cookies_and_headers() -> None:
    binding = ExtractorBinding(argv=("yt-dlp",), version="x")
    argv = build_ytdlp_argv(
        binding,
        "https://youtu.be/abc",
        "/d/dl_1.mp4",
        cookie_file="/secrets/cookies.txt",
        headers={"User-Agent": "UA"},
    )
    rendered = argv_to_redacted_cli(argv)

    assert "/secrets/cookies.txt" not in rendered
    assert "User-Agent" not in rendered
    assert "<redacted>" in rendered


def test_platform_headers_match_subdomains_only() -> None:
    headers = {"instagram.com": {"Referer": "https://www.instagram.com/"}}

    assert select_platform_headers("https://www.instagram.com/reel/x", headers) == {
        "Referer": "https://www.instagram.com/"
    }
    assert select_platform_headers("https://www.youtube.com/watch?v=x", headers) == {}


def test_missing_cookie_file_is_skipped(tmp_path, make_binding) -> None:
    dump = tmp_path / "argv.json"
    invoker = ExtractorInvoker(
        make_binding("ok", argv_dump=dump),
        cookies_file=str(tmp_path / "absent.txt"),
    )
    job = _job(tmp_path)

    outcome = _run(invoker, job)

    assert outcome.succeeded
    assert "--cookies" not in json.loads(dump.read_text())


def test_existing_cookie_file_is_passed(tmp_path, make_binding) -> None:
    dump = tmp_path / "argv.json"
    cookies = tmp_path / "cookies.txt"
    cookies.write_text("# Netscape HTTP Cookie File\n")
    invoker = ExtractorInvoker(make_binding("ok", argv_dump=dump), cookies_file=str(cookies))

    _run(invoker, _job(tmp_path))

    args = json.loads(dump.read_text())
    assert args[args.index("--cookies") + 1] == str(cookies)


def test_successful_run_reports_file_and_size(tmp_path, make_binding) -> None:
    invoker = ExtractorInvoker(make_binding("ok", size=12345))
    job = _job(tmp_path)

    outcome = _run(invoker, job)

    assert outcome.state == JOB_STATE_SUCCEEDED
    assert outcome.file_path == job.output_path
    assert outcome.size == 12345 == os.path.getsize(job.output_path)
    assert job.state == JOB_STATE_SUCCEEDED
    assert os.path.basename(job.output_path) == f"dl_{job.id}.mp4"


def test_exit_zero_without_file_is_a_failure(tmp_path, make_binding) -> None:
    job = _job(tmp_path)

    outcome = _run(ExtractorInvoker(make_binding("no_file")), job)

    assert outcome.state == JOB_STATE_FAILED
    assert outcome.cause == CAUSE_NO_ARTIFACT
    assert job.state == JOB_STATE_FAILED


def test_exit_zero_with_empty_file_is_a_failure(tmp_path, make_binding) -> None:
    job = _job(tmp_path)

    outcome = _run(ExtractorInvoker(make_binding("empty_file")), job)

    assert outcome.cause == CAUSE_NO_ARTIFACT
    assert not os.path.exists(job.output_path)


def test_non_zero_exit_is_a_failure(tmp_path, make_binding) -> None:
    outcome = _run(ExtractorInvoker(make_binding("exit_1")), _job(tmp_path))

    assert outcome.state == JOB_STATE_FAILED
    assert outcome.cause == CAUSE_EXIT_STATUS
    assert outcome.returncode == 1


def test_error_marker_fails_even_on_exit_zero(tmp_path, make_binding) -> None:
    job = _job(tmp_path)

    outcome = _run(ExtractorInvoker(make_binding("error_marker")), job)

    assert outcome.state == JOB_STATE_FAILED
    assert outcome.cause == CAUSE_ERROR_MARKER
    assert not os.path.exists(job.output_path)


def test_find_error_marker_ignores_warnings() -> None:
    assert find_error_marker("WARNING: slow\n[info] ok\n") is None
    assert find_error_marker("[info] x\nERROR: boom\n") == "ERROR: boom"


def test_deadline_kills_process_and_removes_partials(tmp_path, make_binding) -> None:
    pid_file = tmp_path / "hang.pid"
    job = _job(tmp_path, timeout=2.0)

    outcome = _run(ExtractorInvoker(make_binding("hang", pid_file=pid_file)), job)

    assert outcome.state == JOB_STATE_TIMED_OUT
    assert job.state == JOB_STATE_TIMED_OUT
    assert os.listdir(os.path.dirname(job.output_path)) == []
    pid = int(pid_file.read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_launch_error_is_a_failure(tmp_path) -> None:
    binding = ExtractorBinding(argv=(str(tmp_path / "no-such-binary"),), version="x")

    outcome = _run(ExtractorInvoker(binding), _job(tmp_path))

    assert outcome.state == JOB_STATE_FAILED
    assert outcome.cause == CAUSE_LAUNCH_ERROR


def test_probe_returns_first_working_invocation(tmp_path, make_binding) -> None:
    working = make_binding("ok")
    binding = probe_extractor(
        [
            (str(tmp_path / "missing-yt-dlp"),),
            (sys.executable, "-c", "import sys; sys.exit(2)"),
            working.argv,
        ]
    )

    assert binding.argv == working.argv
    assert binding.version == working.version


def test_probe_raises_when_nothing_works(tmp_path) -> None:
    with pytest.raises(ExtractorUnavailable):
        probe_extractor([(str(tmp_path / "missing-yt-dlp"),)])
