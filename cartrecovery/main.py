import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from cartrecovery.config import settings
from cartrecovery.container import ServiceContainer
from cartrecovery.logging_config import get_logger, reset_trace_id, set_trace_id, setup_logging
from cartrecovery.routers import admin, webhook

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Cart Recovery API",
    description="WhatsApp agent that follows up on abandoned carts",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(admin.router)


@app.middleware("http")
async def trace_id_middleware(request: Request, call_next):
    trace_id = request.headers.get("X-Trace-Id") or str(uuid.uuid4())
    request.state.trace_id = trace_id
    token = set_trace_id(trace_id)
    try:
        response = await call_next(request)
    finally:
        reset_trace_id(token)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.on_event("startup")
async def start_services() -> None:
    if getattr(app.state, "container", None) is not None:
        return
    container = ServiceContainer(settings)
    await container.open()
    app.state.container = container
    if settings.worker_enabled:
        await container.worker.start()


@app.on_event("shutdown")
async def stop_services() -> None:
    container = getattr(app.state, "container", None)
    if container is None:
        return
    await container.close()
    app.state.container = None


@app.get("/health")
async def health():
    return {"status": "ok"}
