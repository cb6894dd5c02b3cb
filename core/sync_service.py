from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from core.engine import SyncEngine
from core.errors import DecodeError, FetchError, UnauthenticatedError
from core.models import NotificationRecord


logger = logging.getLogger(__name__)


@dataclass
class ServiceResult:
    status_code: int
    body: Any


def record_to_dict(record: NotificationRecord) -> dict[str, Any]:
    resource = None
    if record.resource is not None:
        resource = {"type": record.resource.type, "id": record.resource.id, "name": record.resource.name}
    return {
        "id": record.id,
        "reason": record.reason.value,
        "read": record.read,
        "message": record.message,
        "resource": resource,
        "createdAt": record.created_at,
        "updatedAt": record.updated_at,
    }


class SyncService:
    """HTTP-facing operations shared by the FastAPI and Azure Functions adapters."""

    def __init__(self, engine: SyncEngine):
        self.engine = engine
        self.settings = engine.settings

    def _authorized(self, headers: dict[str, str], cid: str) -> bool:
        provided = headers.get("X-Sync-Secret") or headers.get("x-sync-secret")
        expected = self.settings.sync_secret
        if not provided or not expected or not secrets.compare_digest(provided, expected):
            logger.warning("event=sync_unauthorized cid=%s", cid)
            return False
        return True

    def health(self) -> dict[str, str]:
        return {"status": "ok", "session": self.engine.token_manager.state.value}

    def list_notifications(self, headers: dict[str, str], correlation_id: Optional[str] = None) -> ServiceResult:
        cid = correlation_id or str(uuid.uuid4())
        if not self._authorized(headers, cid):
            return ServiceResult(401, "Unauthorized")
        snapshot = self.engine.synchronizer.snapshot
        return ServiceResult(
            200,
            {
                "unreadCount": snapshot.unread_count,
                "notifications": [record_to_dict(record) for record in snapshot.records],
            },
        )

    def sync(self, headers: dict[str, str], correlation_id: Optional[str] = None) -> ServiceResult:
        cid = correlation_id or str(uuid.uuid4())
        if not self._authorized(headers, cid):
            return ServiceResult(401, "Unauthorized")

        if self.engine.token_manager.session is None:
            self.engine.token_manager.load_session()
        refresh = self.engine.token_manager.check()
        if refresh is not None and refresh.exception() is not None:
            logger.warning("event=sync_refresh_failed cid=%s error=%s", cid, refresh.exception())

        try:
            snapshot = self.engine.synchronizer.poll(correlation_id=cid).result()
        except UnauthenticatedError:
            return ServiceResult(401, "Session expired")
        except DecodeError as exc:
            logger.error("event=sync_decode_failed cid=%s error=%s", cid, exc)
            return ServiceResult(502, "Invalid notification payload")
        except FetchError as exc:
            logger.error("event=sync_failed cid=%s error=%s", cid, exc)
            return ServiceResult(503, "Notification server unavailable")
        return ServiceResult(200, {"unreadCount": snapshot.unread_count, "total": len(snapshot.records)})

    def mark_read(self, headers: dict[str, str], notification_id: int, correlation_id: Optional[str] = None) -> ServiceResult:
        cid = correlation_id or str(uuid.uuid4())
        if not self._authorized(headers, cid):
            return ServiceResult(401, "Unauthorized")
        if self.engine.synchronizer.snapshot.get(notification_id) is None:
            return ServiceResult(404, "Unknown notification")

        self.engine.synchronizer.mark_read(notification_id)
        logger.info("event=mark_read_requested cid=%s id=%s", cid, notification_id)
        return ServiceResult(200, {"unreadCount": self.engine.synchronizer.unread_count})
