from .errors import DownloadError
from .invoker import ExtractorBinding, ExtractorInvoker, probe_extractor
from .jobs import Job
from .registry import ArtifactRegistry
from .runtime import get_runtime_info

__all__ = [
    "ArtifactRegistry",
    "DownloadError",
    "ExtractorBinding",
    "ExtractorInvoker",
    "Job",
    "get_runtime_info",
    "probe_extractor",
]
