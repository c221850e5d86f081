import os
import shlex
import sys

from yt_dlp.version import __version__ as ytdlp_module_version

APP_VERSION_ENV = "VIDRELAY_VERSION"


def get_runtime_info(binding=None):
    """Versions reported by /health.

    ``extractor_version`` is what the probed yt-dlp binary answered at startup;
    ``yt_dlp_module_version`` is the library installed alongside the service.
    They differ when a standalone yt-dlp binary is configured.
    """
    info = {
        "app_version": os.environ.get(APP_VERSION_ENV, "0.0.0"),
        "python_version": sys.version.split()[0],
        "yt_dlp_module_version": ytdlp_module_version,
        "extractor_version": None,
        "extractor_command": None,
    }
    if binding is not None:
        info["extractor_version"] = binding.version
        info["extractor_command"] = shlex.join(binding.argv)
    return info
