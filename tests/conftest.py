import sys
from pathlib import Path

import pytest


# Ensure tests can import project packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from engine.invoker import ExtractorBinding  # noqa: E402

FAKE_VERSION = "2024.01.01"

# Stand-in for yt-dlp: same CLI shape (-o <path> -- <url>), behavior picked per script.
_FAKE_YTDLP = '''
import json
import os
import sys
import time

MODE = "__MODE__"
SIZE = __SIZE__
ARGV_DUMP = r"__ARGV_DUMP__"
PID_FILE = r"__PID_FILE__"

args = sys.argv[1:]
if "--version" in args:
    print("__VERSION__")
    sys.exit(0)

out = args[args.index("-o") + 1]
if ARGV_DUMP:
    with open(ARGV_DUMP, "w") as fh:
        json.dump(args, fh)

if MODE == "ok":
    with open(out, "wb") as fh:
        fh.write(bytes(i % 251 for i in range(SIZE)))
    sys.stderr.write("[download] 100% of file\\n")
    sys.exit(0)
if MODE == "no_file":
    sys.exit(0)
if MODE == "empty_file":
    open(out, "wb").close()
    sys.exit(0)
if MODE == "exit_1":
    sys.stderr.write("ERROR: [generic] Unsupported URL\\n")
    sys.exit(1)
if MODE == "error_marker":
    with open(out, "wb") as fh:
        fh.write(b"broken")
    sys.stderr.write("WARNING: retrying\\nERROR: Postprocessing: merge failed\\n")
    sys.exit(0)
if MODE == "hang":
    with open(out + ".part", "wb") as fh:
        fh.write(b"partial")
    with open(PID_FILE, "w") as fh:
        fh.write(str(os.getpid()))
    time.sleep(60)
    sys.exit(0)
sys.exit(3)
'''


@pytest.fixture()
def make_binding(tmp_path):
    """Build an ``ExtractorBinding`` that runs a fake yt-dlp in the given mode."""

    def _make(mode="ok", *, size=4096, argv_dump=None, pid_file=None):
        script = tmp_path / f"fake_ytdlp_{mode}.py"
        source = (
            _FAKE_YTDLP.replace("__MODE__", mode)
            .replace("__SIZE__", str(int(size)))
            .replace("__ARGV_DUMP__", str(argv_dump or ""))
            .replace("__PID_FILE__", str(pid_file or ""))
            .replace("__VERSION__", FAKE_VERSION)
        )
        script.write_text(source)
        return ExtractorBinding(argv=(sys.executable, str(script)), version=FAKE_VERSION)

    return _make
