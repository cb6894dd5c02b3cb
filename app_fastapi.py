import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from core.engine import build_engine
from core.settings import load_settings
from core.sync_service import ServiceResult, SyncService


settings = load_settings()
engine = build_engine(settings)
service = SyncService(engine)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if engine.token_manager.load_session() and settings.autostart_driver:
        engine.driver.start()
    yield
    engine.driver.stop()


app = FastAPI(title="OpenProject Notification Sync", lifespan=lifespan)


def _respond(result: ServiceResult, correlation_id: str):
    headers = {"X-Correlation-ID": correlation_id}
    if isinstance(result.body, str):
        return PlainTextResponse(result.body, status_code=result.status_code, headers=headers)
    return JSONResponse(result.body, status_code=result.status_code, headers=headers)


@app.get("/notifications")
def list_notifications(request: Request):
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    result = service.list_notifications(dict(request.headers), correlation_id=correlation_id)
    return _respond(result, correlation_id)


@app.post("/sync")
def sync(request: Request):
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    result = service.sync(dict(request.headers), correlation_id=correlation_id)
    return _respond(result, correlation_id)


@app.post("/notifications/{notification_id}/read")
def mark_read(notification_id: int, request: Request):
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    result = service.mark_read(dict(request.headers), notification_id, correlation_id=correlation_id)
    return _respond(result, correlation_id)


@app.get("/health")
async def health() -> dict[str, str]:
    return service.health()
