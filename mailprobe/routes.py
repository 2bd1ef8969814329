import os
import time
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST

from .auth import require_api_key, require_metrics_basic_auth
from .config import APP_VERSION, BUILD_DATE, GIT_SHA
from .session import ProbeClass

router = APIRouter()


@router.get("/health", response_class=PlainTextResponse)
async def health():
    return "ok"


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics(request: Request, _=Depends(require_metrics_basic_auth)):
    output = request.app.state.metrics.generate_latest()
    return PlainTextResponse(content=output, media_type=CONTENT_TYPE_LATEST)


@router.get("/info", response_class=JSONResponse)
async def info(request: Request, _=Depends(require_api_key)):
    cfg = request.app.state.config
    path = cfg.source_path
    try:
        st = os.stat(path) if path else None
    except FileNotFoundError:
        st = None
    return {
        "project": "mailprobe-exporter",
        "version": {
            "app": APP_VERSION,
            "revision": GIT_SHA,
            "build_date": BUILD_DATE,
        },
        "config": {
            "path": path,
            "has_config": st is not None,
            "mtime_ns": st.st_mtime_ns if st else None,
            "test_interval_seconds": cfg.metrics.test_interval,
            "round_timeout_seconds": cfg.round_timeout,
            "imap_servers": [s.name for s in cfg.imap_servers],
            "webmail_servers": [{"name": s.name, "type": s.type} for s in cfg.webmail_servers],
        },
    }


@router.get("/version", response_class=PlainTextResponse)
async def version_endpoint(_=Depends(require_api_key)):
    return APP_VERSION


@router.get("/status", response_class=JSONResponse)
async def status_endpoint(request: Request, _=Depends(require_api_key)):
    """Per probe class: is a round in flight, and what did the last round report."""
    scheduler = request.app.state.scheduler
    classes: Dict[str, Any] = {}
    for probe in ProbeClass:
        if probe not in scheduler.rounds:
            continue
        report = scheduler.last_reports.get(probe)
        classes[probe.value] = {
            "servers": [s.name for s in scheduler.rounds[probe]],
            "in_flight": scheduler.in_flight(probe),
            "last_round": report.as_dict() if report else None,
        }
    return {"ticks": scheduler.ticks, "timestamp": int(time.time()), "classes": classes}
