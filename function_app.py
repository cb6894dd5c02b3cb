import json
import logging
import uuid

import azure.functions as func

from core.engine import build_engine
from core.settings import load_settings
from core.sync_service import ServiceResult, SyncService


logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)
app = func.FunctionApp(http_auth_level=func.AuthLevel.ANONYMOUS)

settings = load_settings()
engine = build_engine(settings)
service = SyncService(engine)


def _respond(result: ServiceResult, correlation_id: str) -> func.HttpResponse:
    headers = {"X-Correlation-ID": correlation_id}
    if isinstance(result.body, str):
        return func.HttpResponse(result.body, status_code=result.status_code, headers=headers)
    return func.HttpResponse(
        json.dumps(result.body, separators=(",", ":")),
        status_code=result.status_code,
        mimetype="application/json",
        headers=headers,
    )


def _correlation_id(req: func.HttpRequest) -> str:
    return req.headers.get("X-Correlation-ID") or str(uuid.uuid4())


@app.timer_trigger(schedule="0 */5 * * * *", arg_name="timer", run_on_startup=False)
def notification_poll(timer: func.TimerRequest) -> None:
    if timer.past_due:
        logger.info("event=timer_past_due")
    # Each invocation may land on a fresh worker, so rehydrate first.
    if engine.token_manager.session is None and engine.token_manager.load_session() is None:
        logger.info("event=timer_skipped reason=no_session")
        return
    engine.driver.tick()


@app.route(route="notifications", methods=["GET"])
def list_notifications(req: func.HttpRequest) -> func.HttpResponse:
    cid = _correlation_id(req)
    return _respond(service.list_notifications(dict(req.headers), correlation_id=cid), cid)


@app.route(route="sync", methods=["POST"])
def sync(req: func.HttpRequest) -> func.HttpResponse:
    cid = _correlation_id(req)
    return _respond(service.sync(dict(req.headers), correlation_id=cid), cid)


@app.route(route="notifications/{notification_id:int}/read", methods=["POST"])
def mark_read(req: func.HttpRequest) -> func.HttpResponse:
    cid = _correlation_id(req)
    try:
        notification_id = int(req.route_params.get("notification_id", ""))
    except ValueError:
        return func.HttpResponse("Invalid notification id", status_code=400, headers={"X-Correlation-ID": cid})
    return _respond(service.mark_read(dict(req.headers), notification_id, correlation_id=cid), cid)


@app.route(route="health", methods=["GET"])
def health(req: func.HttpRequest) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps(service.health(), separators=(",", ":")),
        status_code=200,
        mimetype="application/json",
    )
