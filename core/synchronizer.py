from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Executor, Future
from dataclasses import replace
from typing import Callable, Optional

import requests

from core.alerts import AlertDispatcher
from core.errors import DecodeError, NetworkError, UnauthenticatedError
from core.models import NotificationRecord, NotificationSnapshot, decode_collection
from core.openproject_client import OpenProjectClient
from core.token_manager import TokenManager


logger = logging.getLogger(__name__)


def _merge(previous: Optional[NotificationRecord], incoming: NotificationRecord) -> NotificationRecord:
    # Read is sticky: a record known to be read never goes back to unread.
    if previous is not None and previous.read and not incoming.read:
        return replace(incoming, read=True)
    return incoming


class NotificationSynchronizer:
    """Keeps the local notification snapshot in step with the server.

    The snapshot is replaced as a whole after each successful poll. A failed
    poll leaves it exactly as it was. Newly arrived unread records (ids not in
    the previous snapshot) are handed to the alert dispatcher.
    """

    def __init__(
        self,
        client: OpenProjectClient,
        token_manager: TokenManager,
        dispatcher: AlertDispatcher,
        executor: Executor,
    ):
        self.client = client
        self.token_manager = token_manager
        self.dispatcher = dispatcher
        self.executor = executor
        self._lock = threading.RLock()
        self._snapshot = NotificationSnapshot()
        self._poll_future: Optional[Future] = None
        self._listeners: list[Callable[[int], None]] = []

    @property
    def snapshot(self) -> NotificationSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def unread_count(self) -> int:
        return self.snapshot.unread_count

    @property
    def polling(self) -> bool:
        with self._lock:
            return self._poll_future is not None

    def add_listener(self, callback: Callable[[int], None]) -> None:
        self._listeners.append(callback)

    def poll(self, correlation_id: Optional[str] = None) -> Future:
        with self._lock:
            if self._poll_future is not None:
                logger.debug("event=poll_joined cid=%s", correlation_id)
                return self._poll_future
            future = self.executor.submit(self._poll, correlation_id or str(uuid.uuid4()))
            self._poll_future = future
        future.add_done_callback(self._poll_finished)
        return future

    def _poll_finished(self, future: Future) -> None:
        with self._lock:
            if self._poll_future is future:
                self._poll_future = None

    def _poll(self, cid: str) -> NotificationSnapshot:
        session, generation = self.token_manager.current_session()
        if not self.token_manager.is_valid(session, self.token_manager.clock()):
            raise UnauthenticatedError("No valid session for notification poll")

        try:
            resp = self.client.get_notifications(session.access_token)
        except requests.RequestException as exc:
            logger.warning("event=poll_network_error cid=%s error=%s", cid, exc)
            raise NetworkError(f"Notification poll failed: {exc}") from exc

        if resp.status_code == 401:
            logger.warning("event=poll_unauthenticated cid=%s", cid)
            raise UnauthenticatedError("Notification poll rejected with HTTP 401")
        if not 200 <= resp.status_code < 300:
            logger.warning("event=poll_http_error cid=%s status=%s", cid, resp.status_code)
            raise NetworkError(f"Notification poll returned HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as exc:
            logger.warning("event=poll_decode_error cid=%s error=%s", cid, exc)
            raise DecodeError("Notification collection is not valid JSON") from exc
        records = decode_collection(body)

        with self._lock:
            if self.token_manager.generation != generation:
                logger.info("event=poll_stale cid=%s", cid)
                raise UnauthenticatedError("Session changed while the poll was in flight")

            previous = {record.id: record for record in self._snapshot.records}
            merged = tuple(_merge(previous.get(record.id), record) for record in records)
            newly_unread = [record for record in merged if record.id not in previous and not record.read]
            self._snapshot = NotificationSnapshot(merged)
            unread_count = self._snapshot.unread_count

            logger.info(
                "event=poll_succeeded cid=%s total=%s unread=%s new_unread=%s",
                cid,
                len(merged),
                unread_count,
                len(newly_unread),
            )
            self.dispatcher.dispatch(newly_unread, unread_count, correlation_id=cid)
            self._notify(unread_count)
            return self._snapshot

    def mark_read(self, notification_id: int) -> Optional[Future]:
        with self._lock:
            record = self._snapshot.get(notification_id)
            if record is None:
                logger.info("event=mark_read_unknown id=%s", notification_id)
                return None
            if record.read:
                return None

            records = tuple(
                replace(item, read=True) if item.id == notification_id else item for item in self._snapshot.records
            )
            self._snapshot = NotificationSnapshot(records)
            unread_count = self._snapshot.unread_count
            self.dispatcher.update_badge(unread_count)
            self._notify(unread_count)

        read_href = record.links.read_href
        if not read_href:
            logger.info("event=mark_read_no_link id=%s", notification_id)
            return None
        return self.executor.submit(self._mark_read_on_server, notification_id, read_href)

    def _mark_read_on_server(self, notification_id: int, read_href: str) -> bool:
        session = self.token_manager.valid_session()
        if session is None:
            logger.warning("event=mark_read_unauthenticated id=%s", notification_id)
            return False
        try:
            resp = self.client.mark_read(session.access_token, read_href)
        except requests.RequestException as exc:
            logger.error("event=mark_read_request_failed id=%s error=%s", notification_id, exc)
            return False

        if 200 <= resp.status_code < 300:
            logger.info("event=mark_read_synced id=%s", notification_id)
            return True
        logger.warning("event=mark_read_rejected id=%s status=%s", notification_id, resp.status_code)
        return False

    def reset(self) -> None:
        with self._lock:
            self._poll_future = None
            self._snapshot = NotificationSnapshot()
            self.dispatcher.update_badge(0)
            self._notify(0)

    def _notify(self, unread_count: int) -> None:
        for callback in list(self._listeners):
            try:
                callback(unread_count)
            except Exception as exc:
                logger.error("event=unread_listener_failed error=%s", exc)
