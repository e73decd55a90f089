from __future__ import annotations

from uuid import uuid4

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from flowdesk.core.env import env_float, is_on, is_test_mode
from flowdesk.core.errors import FlowdeskError
from flowdesk.core.logging import configure_logging
from flowdesk.core.logging.context import log_context

from .deps import get_runtime, get_scheduler_service
from .routes_approvals import router as approvals_router
from .routes_jobs import router as jobs_router

app = FastAPI(title="Flowdesk API")
app.include_router(approvals_router, prefix="/approvals", tags=["approvals"])
app.include_router(jobs_router, prefix="/jobs", tags=["jobs"])


@app.exception_handler(FlowdeskError)
async def flowdesk_error_handler(request: Request, exc: FlowdeskError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc)})


@app.middleware("http")
async def request_context_middleware(request, call_next):
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid4())
    with log_context(correlation_id=correlation_id, organization_id=request.headers.get("X-Organization-Id")):
        response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id
    return response


def _embedded_worker_enabled() -> bool:
    return is_on("FLOWDESK_API_EMBEDDED_WORKER", "on") and not is_test_mode()


@app.on_event("startup")
def startup() -> None:
    runtime = get_runtime()
    configure_logging(runtime.state_dir, component="api")
    scheduler = get_scheduler_service()
    if _embedded_worker_enabled():
        runtime.worker.start()
        scheduler.add_interval(
            "maintenance:reconcile",
            env_float("FLOWDESK_RECONCILE_INTERVAL_S", 60.0),
            runtime.queue.reconcile,
        )
        scheduler.add_interval(
            "maintenance:approval_sweep",
            env_float("FLOWDESK_RECONCILE_INTERVAL_S", 60.0),
            runtime.trigger.sweep,
            kwargs={"service": runtime.approvals},
        )
    scheduler.start()


@app.on_event("shutdown")
def shutdown() -> None:
    get_scheduler_service().shutdown()
    if _embedded_worker_enabled():
        get_runtime().worker.stop()


@app.get("/healthz")
def healthz() -> dict:
    runtime = get_runtime()
    breakers = runtime.breakers.snapshot()
    return {
        "ok": all(item["state"] != "open" for item in breakers.values()),
        "breakers": breakers,
        "queue_depth": runtime.broker.size(),
        "jobs": runtime.ledger.stats().model_dump(),
    }


def run() -> None:
    uvicorn.run("flowdesk.apps.api.main:app", host="127.0.0.1", port=8000)
