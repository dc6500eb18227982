from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import router as v1_router
from .errors import (
    BacktestRunNotFoundError,
    QueueFullError,
    RiskRejection,
    SimulationDataError,
    StrategyConflictError,
    StrategyNotActiveError,
    StrategyNotFoundError,
    StrategyValidationError,
    TaskNotFoundError,
    TaskStateError,
)
from .events import event_channel
from .logging_config import configure_logging
from .runtime_paths import ensure_runtime_dirs
from .store import strategy_store
from .worker import worker_engine


def _error(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def _install_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(StrategyNotFoundError)
    @app.exception_handler(TaskNotFoundError)
    @app.exception_handler(BacktestRunNotFoundError)
    def not_found(request: Request, exc: Exception) -> JSONResponse:
        return _error(404, exc)

    @app.exception_handler(StrategyConflictError)
    @app.exception_handler(StrategyNotActiveError)
    @app.exception_handler(TaskStateError)
    def conflict(request: Request, exc: Exception) -> JSONResponse:
        return _error(409, exc)

    @app.exception_handler(StrategyValidationError)
    @app.exception_handler(SimulationDataError)
    def unprocessable(request: Request, exc: Exception) -> JSONResponse:
        return _error(422, exc)

    @app.exception_handler(RiskRejection)
    def risk_rejected(request: Request, exc: RiskRejection) -> JSONResponse:
        content = {"detail": exc.reason, "reason_code": exc.reason_code}
        if exc.task is not None:
            content["task"] = exc.task.to_record()
        return JSONResponse(status_code=409, content=content)

    @app.exception_handler(QueueFullError)
    def queue_full(request: Request, exc: Exception) -> JSONResponse:
        return _error(503, exc)


def create_app() -> FastAPI:
    ensure_runtime_dirs()
    log_path = configure_logging()

    app = FastAPI(
        title="VPPX Trading Strategy API",
        version="0.1.0",
        description="Rule engine, risk-gated execution queue and backtest simulator for VPP trading strategies.",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_exception_handlers(app)
    app.include_router(v1_router)

    unsubscribers = []

    @app.on_event("startup")
    def on_startup() -> None:
        unsubscribers.append(event_channel.subscribe(strategy_store.append_event))
        worker_engine.start_if_enabled()
        logging.getLogger("").info("VPPX API startup complete; logs=%s", log_path)

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        worker_engine.stop()
        while unsubscribers:
            unsubscribers.pop()()

    return app


app = create_app()
