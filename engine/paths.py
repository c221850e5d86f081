import os
import re
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

ARTIFACT_PREFIX = "dl_"
ARTIFACT_EXT = "mp4"

_ARTIFACT_NAME_RE = re.compile(r"^dl_[0-9a-f]{32}\.[A-Za-z0-9]{1,8}$")


def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        return {
            "downloads": Path("/tmp/downloads"),
            "logs": Path("/logs"),
        }
    base = PROJECT_ROOT / "data"
    return {
        "downloads": base / "downloads",
        "logs": base / "logs",
    }


_DEFAULTS = _default_root_paths()

DOWNLOADS_DIR = Path(os.environ.get("VIDRELAY_DOWNLOADS_DIR", _DEFAULTS["downloads"])).resolve()
LOG_DIR = Path(os.environ.get("VIDRELAY_LOG_DIR", _DEFAULTS["logs"])).resolve()


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def artifact_path(downloads_dir, job_id, ext=ARTIFACT_EXT):
    return os.path.join(str(downloads_dir), f"{ARTIFACT_PREFIX}{job_id}.{ext}")


def artifact_stem(path):
    """Return the ``dl_<id>`` stem shared by an artifact and its intermediates."""
    name = os.path.basename(str(path))
    return name.split(".", 1)[0]


def is_artifact_name(name):
    return bool(name) and bool(_ARTIFACT_NAME_RE.match(name))


def resolve_artifact(downloads_dir, name):
    """Resolve a client-supplied artifact name to a path inside ``downloads_dir``.

    Returns ``None`` for anything that is not a plain ``dl_<hex>.<ext>`` name
    or that would resolve outside the downloads directory.
    """
    if not is_artifact_name(name):
        return None
    candidate = os.path.abspath(os.path.join(str(downloads_dir), name))
    if not _is_within_base(candidate, downloads_dir):
        return None
    return candidate
