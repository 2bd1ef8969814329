from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import APP_VERSION, BUILD_DATE, GIT_SHA, ProbeConfig, load_config
from .logging_setup import DEBUG, logger
from .metrics import ProbeMetrics
from .registry import build_rounds
from .routes import router
from .runner import ProbeScheduler


def create_app(config: Optional[ProbeConfig] = None, start_scheduler: bool = True) -> FastAPI:
    """Build the exporter: metrics, one session per server, scheduler, HTTP routes.

    With ``start_scheduler`` false the probe loop is not started on app
    startup (used by tests and for serving metrics only).
    """
    cfg = config or load_config()

    metrics = ProbeMetrics(prefix=cfg.metrics.prefix)
    metrics.set_build_info(APP_VERSION, GIT_SHA, BUILD_DATE)
    rounds = build_rounds(cfg, metrics)
    for probe, sessions in rounds.items():
        for session in sessions:
            metrics.declare_server(probe, session.name, session.failure_operations())
    scheduler = ProbeScheduler.from_config(cfg, rounds, metrics)

    app = FastAPI(title="Mail Probe Exporter", version=APP_VERSION)
    app.state.config = cfg
    app.state.metrics = metrics
    app.state.scheduler = scheduler
    app.include_router(router)

    @app.on_event("startup")
    def on_startup():
        logger.info(f"Starting Mail Probe Exporter v{APP_VERSION} rev={GIT_SHA or 'n/a'} build_date={BUILD_DATE or 'n/a'} DEBUG={DEBUG}")
        if start_scheduler:
            scheduler.start_background()

    @app.on_event("shutdown")
    def on_shutdown():
        scheduler.stop_background()

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        detail = exc.detail if isinstance(exc.detail, dict) else {"error": str(exc.detail)}
        return JSONResponse(status_code=exc.status_code, content=detail, headers=exc.headers)

    return app
