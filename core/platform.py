from __future__ import annotations

import itertools
import logging
import threading
from typing import Any, Optional, Protocol

from core.models import AlertContent, AlertTrigger


logger = logging.getLogger(__name__)


class AlertScheduler(Protocol):
    def schedule(
        self,
        identifier: str,
        payload: dict[str, Any],
        trigger: AlertTrigger,
        content: Optional[AlertContent] = None,
    ) -> None:
        ...

    def cancel(self, identifier: str) -> None:
        ...

    def set_badge_count(self, count: int) -> None:
        ...


class HostPlatform(Protocol):
    def begin_background_task(self, name: str) -> int:
        ...

    def end_background_task(self, task_id: int) -> None:
        ...


class MemoryAlertScheduler:
    """Keeps live alerts keyed by identifier; scheduling an identifier again replaces it."""

    def __init__(self):
        self.alerts: dict[str, dict[str, Any]] = {}
        self.badge_count = 0
        self.schedule_calls = 0
        self._lock = threading.Lock()

    def schedule(
        self,
        identifier: str,
        payload: dict[str, Any],
        trigger: AlertTrigger,
        content: Optional[AlertContent] = None,
    ) -> None:
        with self._lock:
            self.schedule_calls += 1
            self.alerts[identifier] = {"payload": dict(payload), "trigger": trigger, "content": content}
        logger.info("event=alert_scheduled identifier=%s delay=%s", identifier, trigger.delay_seconds)

    def cancel(self, identifier: str) -> None:
        with self._lock:
            self.alerts.pop(identifier, None)

    def set_badge_count(self, count: int) -> None:
        with self._lock:
            self.badge_count = count


class MemoryHostPlatform:
    """Tracks background execution windows for hosts without an OS budget."""

    def __init__(self):
        self._ids = itertools.count(1)
        self._open: set[int] = set()
        self._lock = threading.Lock()
        self.begun = 0

    @property
    def open_tasks(self) -> int:
        with self._lock:
            return len(self._open)

    def begin_background_task(self, name: str) -> int:
        with self._lock:
            task_id = next(self._ids)
            self._open.add(task_id)
            self.begun += 1
        logger.debug("event=background_task_begin task=%s id=%s", name, task_id)
        return task_id

    def end_background_task(self, task_id: int) -> None:
        with self._lock:
            self._open.discard(task_id)
        logger.debug("event=background_task_end id=%s", task_id)
