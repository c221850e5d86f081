"""Error kinds surfaced by the download pipeline."""

from __future__ import annotations


class DownloadError(Exception):
    """Base class for failures that map onto a client-visible error kind."""

    kind = "internal_error"
    status_code = 500
    default_detail = "Internal error"

    def __init__(self, detail: str | None = None, *, kind: str | None = None) -> None:
        self.detail = detail or self.default_detail
        if kind:
            self.kind = kind
        super().__init__(self.detail)

    def to_payload(self) -> dict[str, str]:
        return {"error": self.kind, "detail": self.detail}


class InvalidRequest(DownloadError):
    kind = "invalid_url"
    status_code = 400
    default_detail = "Invalid URL"


class RateLimited(DownloadError):
    kind = "rate_limited"
    status_code = 429
    default_detail = "Too many requests"


class ExtractionFailed(DownloadError):
    kind = "extraction_failed"
    status_code = 500
    default_detail = "Download failed"


class NoArtifact(ExtractionFailed):
    kind = "no_artifact"
    status_code = 404
    default_detail = "No file was produced for this URL"


class ExtractionTimedOut(DownloadError):
    kind = "timed_out"
    status_code = 408
    default_detail = "Download timed out"


class DeliveryFailed(DownloadError):
    kind = "delivery_failed"
    status_code = 500
    default_detail = "Failed to send file"


class ArtifactNotFound(DownloadError):
    kind = "not_found"
    status_code = 404
    default_detail = "File not found"


class ServiceBusy(DownloadError):
    kind = "busy"
    status_code = 503
    default_detail = "Too many downloads in progress, try again later"


class ExtractorUnavailable(RuntimeError):
    """Raised at startup when no working yt-dlp invocation form is found."""
