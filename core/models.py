from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from core.errors import DecodeError


logger = logging.getLogger(__name__)

_RESOURCE_HREF = re.compile(r"/([A-Za-z_]+)/(\d+)/?$")


class Reason(str, Enum):
    MENTIONED = "mentioned"
    ASSIGNED = "assigned"
    RESPONSIBLE = "responsible"
    WATCHED = "watched"
    COMMENTED = "commented"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "Reason":
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.OTHER


@dataclass(frozen=True)
class Session:
    access_token: str
    refresh_token: Optional[str]
    expires_at: float
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at

    def __repr__(self) -> str:
        return f"Session(expires_at={self.expires_at!r}, has_refresh_token={self.refresh_token is not None})"


@dataclass(frozen=True)
class ResourceRef:
    type: Optional[str]
    id: Optional[int]
    name: Optional[str] = None


@dataclass(frozen=True)
class ActionLinks:
    read_href: Optional[str] = None
    unread_href: Optional[str] = None
    others: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class NotificationRecord:
    id: int
    reason: Reason
    read: bool = False
    message: Optional[str] = None
    resource: Optional[ResourceRef] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    links: ActionLinks = field(default_factory=ActionLinks)


@dataclass(frozen=True)
class NotificationSnapshot:
    records: tuple[NotificationRecord, ...] = ()

    @property
    def unread_count(self) -> int:
        return sum(1 for record in self.records if not record.read)

    @property
    def ids(self) -> frozenset[int]:
        return frozenset(record.id for record in self.records)

    def get(self, notification_id: int) -> Optional[NotificationRecord]:
        for record in self.records:
            if record.id == notification_id:
                return record
        return None


@dataclass(frozen=True)
class AlertTrigger:
    delay_seconds: float = 1.0
    repeats: bool = False


@dataclass(frozen=True)
class AlertContent:
    title: str
    body: str
    subtitle: Optional[str] = None
    category: str = "DEFAULT_CATEGORY"
    badge: Optional[int] = None


@dataclass(frozen=True)
class ScheduledAlert:
    identifier: str
    payload: dict[str, Any]
    content: AlertContent
    trigger: AlertTrigger = field(default_factory=AlertTrigger)


@dataclass(frozen=True)
class AlertRoute:
    """Where a tapped alert should take the user."""

    kind: str
    id: int


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _optional_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def _href(links: dict[str, Any], key: str) -> Optional[str]:
    link = links.get(key)
    if isinstance(link, dict):
        href = link.get("href")
        if isinstance(href, str) and href:
            return href
    return None


def _decode_resource(element: dict[str, Any], links: dict[str, Any]) -> Optional[ResourceRef]:
    resource_type = _optional_str(element.get("resourceType"))
    resource_id = _optional_int(element.get("resourceId"))
    resource_name = _optional_str(element.get("resourceName"))
    if resource_type or resource_id is not None:
        return ResourceRef(type=resource_type, id=resource_id, name=resource_name)

    href = _href(links, "resource")
    if not href:
        return None
    match = _RESOURCE_HREF.search(href)
    if not match:
        return None
    title = links["resource"].get("title")
    return ResourceRef(type=match.group(1), id=int(match.group(2)), name=_optional_str(title))


def decode_notification(element: Any) -> NotificationRecord:
    """Map one collection element to a record.

    Raises DecodeError when the element has no integer ``id``. Every other
    field falls back to its default.
    """
    if not isinstance(element, dict):
        raise DecodeError("notification element is not an object")

    notification_id = element.get("id")
    if isinstance(notification_id, bool) or not isinstance(notification_id, int):
        raise DecodeError("notification element has no integer id")

    links = element.get("_links")
    if not isinstance(links, dict):
        links = {}

    others = {}
    for key in links:
        if key in ("readIAN", "unreadIAN"):
            continue
        href = _href(links, key)
        if href:
            others[key] = href

    read = element.get("readIAN")
    return NotificationRecord(
        id=notification_id,
        reason=Reason.parse(element.get("reason")),
        read=read if isinstance(read, bool) else False,
        message=_optional_str(element.get("message")),
        resource=_decode_resource(element, links),
        created_at=_optional_str(element.get("createdAt")),
        updated_at=_optional_str(element.get("updatedAt")),
        links=ActionLinks(
            read_href=_href(links, "readIAN"),
            unread_href=_href(links, "unreadIAN"),
            others=others,
        ),
    )


def decode_collection(body: Any) -> list[NotificationRecord]:
    """Decode a notification collection, skipping malformed elements."""
    if not isinstance(body, dict):
        raise DecodeError("collection body is not an object")
    embedded = body.get("_embedded")
    if not isinstance(embedded, dict):
        raise DecodeError("collection body has no _embedded object")
    elements = embedded.get("elements")
    if not isinstance(elements, list):
        raise DecodeError("collection body has no elements list")

    records: dict[int, NotificationRecord] = {}
    for index, element in enumerate(elements):
        try:
            record = decode_notification(element)
        except DecodeError as exc:
            logger.warning("event=notification_element_skipped index=%s error=%s", index, exc)
            continue
        records[record.id] = record

    return [records[key] for key in sorted(records)]
