from __future__ import annotations

import logging
import threading
from typing import Any, Iterable, Optional

from core.errors import AlertSchedulingError
from core.models import AlertContent, AlertRoute, AlertTrigger, NotificationRecord, Reason, ScheduledAlert
from core.platform import AlertScheduler
from core.settings import DEFAULT_ALERTABLE_REASONS


logger = logging.getLogger(__name__)

IDENTIFIER_PREFIX = "openproject-notification-"
DEFAULT_BODY = "New notification from OpenProject"

_TITLES = {
    Reason.MENTIONED: "You were mentioned",
    Reason.ASSIGNED: "Assignment notification",
    Reason.RESPONSIBLE: "You are now responsible",
    Reason.WATCHED: "Watched item updated",
    Reason.COMMENTED: "New comment",
}

_CATEGORIES = {
    Reason.MENTIONED: "MENTION_CATEGORY",
    Reason.WATCHED: "WATCHED_CATEGORY",
}

MARK_READ_ACTION = "MARK_READ"
DEFAULT_ACTION = "DEFAULT"
DISMISS_ACTION = "DISMISS"

# Actions offered on each alert category.
CATEGORY_ACTIONS = {
    "MENTION_CATEGORY": ("VIEW_MENTION", MARK_READ_ACTION),
    "WATCHED_CATEGORY": ("VIEW_UPDATE", MARK_READ_ACTION),
    "DEFAULT_CATEGORY": ("VIEW_NOTIFICATION", MARK_READ_ACTION),
}
VIEW_ACTIONS = frozenset(actions[0] for actions in CATEGORY_ACTIONS.values()) | {DEFAULT_ACTION}


def alert_identifier(notification_id: int) -> str:
    return f"{IDENTIFIER_PREFIX}{notification_id}"


def normalize_resource_type(resource_type: Optional[str]) -> str:
    value = (resource_type or "").lower()
    if "workpackage" in value or "work_package" in value:
        return "workPackage"
    if "project" in value:
        return "project"
    return "other"


def build_payload(record: NotificationRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {"notificationId": record.id}
    resource = record.resource
    if resource is None or resource.id is None:
        return payload

    resource_type = normalize_resource_type(resource.type)
    payload["resourceType"] = resource_type
    payload["resourceId"] = resource.id
    if resource_type == "workPackage":
        payload["workPackageId"] = resource.id
    elif resource_type == "project":
        payload["projectId"] = resource.id
    return payload


def build_content(record: NotificationRecord, badge: Optional[int] = None) -> AlertContent:
    resource_name = record.resource.name if record.resource else None
    title = _TITLES.get(record.reason)
    if title is None:
        if record.resource and record.resource.type and resource_name:
            title = f"{record.resource.type.replace('_', ' ').title()}: {resource_name}"
        else:
            title = "OpenProject Notification"

    subtitle = None
    if resource_name and record.reason is Reason.MENTIONED:
        subtitle = f"in {resource_name}"
    elif resource_name and record.reason is Reason.WATCHED:
        subtitle = resource_name

    return AlertContent(
        title=title,
        subtitle=subtitle,
        body=record.message or DEFAULT_BODY,
        category=_CATEGORIES.get(record.reason, "DEFAULT_CATEGORY"),
        badge=badge,
    )


class AlertDispatcher:
    def __init__(self, scheduler: AlertScheduler, alertable_reasons: Iterable[str] = DEFAULT_ALERTABLE_REASONS):
        self.scheduler = scheduler
        names = {str(getattr(reason, "value", reason)).lower() for reason in alertable_reasons}
        self.alertable_reasons = frozenset(reason for reason in Reason if reason.value in names)
        self._issued: set[str] = set()
        self._lock = threading.Lock()

    @property
    def issued_identifiers(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._issued)

    def is_alertable(self, record: NotificationRecord) -> bool:
        return record.reason in self.alertable_reasons

    def dispatch(
        self,
        newly_unread: Iterable[NotificationRecord],
        unread_count: Optional[int] = None,
        correlation_id: Optional[str] = None,
    ) -> list[ScheduledAlert]:
        scheduled = []
        for record in newly_unread:
            if record.read or not self.is_alertable(record):
                continue
            alert = ScheduledAlert(
                identifier=alert_identifier(record.id),
                payload=build_payload(record),
                content=build_content(record, badge=unread_count),
                trigger=AlertTrigger(),
            )
            try:
                self._schedule(alert)
            except AlertSchedulingError as exc:
                logger.error("event=alert_schedule_failed cid=%s id=%s error=%s", correlation_id, record.id, exc)
                continue
            scheduled.append(alert)
            logger.info("event=alert_dispatched cid=%s id=%s reason=%s", correlation_id, record.id, record.reason.value)

        if unread_count is not None:
            self.update_badge(unread_count)
        return scheduled

    def _schedule(self, alert: ScheduledAlert) -> None:
        try:
            self.scheduler.schedule(alert.identifier, alert.payload, alert.trigger, content=alert.content)
        except Exception as exc:
            raise AlertSchedulingError(str(exc)) from exc
        with self._lock:
            self._issued.add(alert.identifier)

    def update_badge(self, count: int) -> None:
        try:
            self.scheduler.set_badge_count(max(0, count))
        except Exception as exc:
            logger.warning("event=badge_update_failed count=%s error=%s", count, exc)


def _payload_id(payload: dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def route_for_payload(payload: dict[str, Any]) -> Optional[AlertRoute]:
    """Most specific destination first: work package, project, notification."""
    for key, kind in (("workPackageId", "workPackage"), ("projectId", "project"), ("notificationId", "notification")):
        target = _payload_id(payload, key)
        if target is not None:
            return AlertRoute(kind=kind, id=target)
    return None
