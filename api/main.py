#!/usr/bin/env python3
import logging
import os
import sys

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from config.settings import load_settings
from engine.errors import ArtifactNotFound, DownloadError, ExtractorUnavailable, RateLimited
from engine.invoker import default_candidates, probe_extractor
from engine.paths import ensure_dir
from engine.service import DownloadService

APP_NAME = "vidrelay"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"

SETTINGS = load_settings()


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "vidrelay.log")
    root.setLevel(logging.INFO)
    has_file = False
    has_console = False
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                has_file = True
        elif isinstance(handler, logging.StreamHandler):
            has_console = True
    if not has_file:
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(logging.INFO)
        root.addHandler(file_handler)
    if not has_console:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(logging.Formatter(LOG_FORMAT))
        console.setLevel(logging.INFO)
        root.addHandler(console)


def _client_id(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _read_url(request: Request):
    try:
        body = await request.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    return body.get("url")


def _service() -> DownloadService:
    return app.state.service


app = FastAPI(
    title=APP_NAME,
    description="Downloads media through yt-dlp and streams the result back to the caller.",
)

if SETTINGS.trust_proxy:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(SETTINGS.allowed_origins),
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
    expose_headers=["Content-Disposition", "Content-Length"],
)


@app.exception_handler(DownloadError)
async def download_error_handler(request: Request, exc: DownloadError):
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(int(_service().settings.rate_limit_window_seconds))}
    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=headers)


@app.on_event("startup")
async def startup():
    settings = getattr(app.state, "settings", None) or SETTINGS
    app.state.settings = settings
    _setup_logging(settings.log_dir)
    try:
        binding = probe_extractor(default_candidates(settings.extractor_binary))
    except ExtractorUnavailable as exc:
        logging.error("%s. Please install it.", exc)
        raise
    app.state.service = DownloadService(settings, binding, BackgroundScheduler(timezone="UTC"))
    app.state.service.start()
    logging.info("%s listening on %s:%s", APP_NAME, settings.host, settings.port)


@app.on_event("shutdown")
async def shutdown():
    service = getattr(app.state, "service", None)
    if service is not None:
        service.shutdown()
    logging.shutdown()


@app.post("/download")
async def api_download(request: Request):
    service = _service()
    client_id = _client_id(request)
    raw_url = await _read_url(request)
    try:
        if service.settings.delivery_mode == "link":
            return JSONResponse(await service.download_link(client_id, raw_url))
        delivery = await service.download(client_id, raw_url)
    except DownloadError:
        raise
    except Exception as exc:
        logging.exception("Download request failed client=%s", client_id)
        raise DownloadError() from exc
    return delivery.response()


@app.get("/downloads/{name}")
async def api_download_file(name: str):
    service = _service()
    if service.settings.delivery_mode != "link":
        raise ArtifactNotFound()
    try:
        delivery = await service.open_named(name)
    except DownloadError:
        raise
    except Exception as exc:
        logging.exception("Artifact request failed name=%s", name)
        raise DownloadError() from exc
    return delivery.response()


@app.get("/health")
async def api_health():
    return _service().health()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=SETTINGS.host, port=SETTINGS.port, reload=False)
