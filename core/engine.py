from __future__ import annotations

import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Optional

from core.alerts import DISMISS_ACTION, MARK_READ_ACTION, VIEW_ACTIONS, AlertDispatcher, route_for_payload
from core.models import AlertRoute
from core.openproject_client import OpenProjectClient, build_session
from core.platform import AlertScheduler, HostPlatform, MemoryAlertScheduler, MemoryHostPlatform
from core.scheduler import SyncDriver
from core.settings import Settings
from core.synchronizer import NotificationSynchronizer
from core.token_manager import TokenManager
from stores.factory import build_credential_store


logger = logging.getLogger(__name__)


@dataclass
class SyncEngine:
    settings: Settings
    client: OpenProjectClient
    store: object
    token_manager: TokenManager
    dispatcher: AlertDispatcher
    synchronizer: NotificationSynchronizer
    driver: SyncDriver
    executor: Executor

    def handle_alert_response(self, action: str, payload: dict[str, Any]) -> Optional[AlertRoute]:
        """Act on the user's response to a delivered alert.

        View actions return the route to open. MARK_READ marks the notification
        read locally and on the server and returns None.
        """
        if action == MARK_READ_ACTION:
            notification_id = payload.get("notificationId")
            if isinstance(notification_id, bool) or not isinstance(notification_id, int):
                logger.warning("event=alert_response_invalid action=%s payload=%s", action, payload)
                return None
            self.synchronizer.mark_read(notification_id)
            logger.info("event=alert_marked_read id=%s", notification_id)
            return None
        if action in VIEW_ACTIONS:
            route = route_for_payload(payload)
            if route is None:
                logger.warning("event=alert_response_invalid action=%s payload=%s", action, payload)
            return route
        if action == DISMISS_ACTION:
            logger.info("event=alert_dismissed id=%s", payload.get("notificationId"))
            return None
        logger.warning("event=alert_response_unknown action=%s", action)
        return None


def build_engine(
    settings: Settings,
    client: Optional[OpenProjectClient] = None,
    store=None,
    alert_scheduler: Optional[AlertScheduler] = None,
    host: Optional[HostPlatform] = None,
    executor: Optional[Executor] = None,
) -> SyncEngine:
    client = client or OpenProjectClient(
        build_session(),
        settings.api_base_url,
        settings.oauth_base_url,
        settings.request_timeout,
    )
    store = store if store is not None else build_credential_store(settings)
    executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="openproject-sync")

    token_manager = TokenManager(settings, client, store, executor)
    dispatcher = AlertDispatcher(alert_scheduler or MemoryAlertScheduler(), settings.alertable_reasons)
    synchronizer = NotificationSynchronizer(client, token_manager, dispatcher, executor)
    driver = SyncDriver(settings, token_manager, synchronizer, host or MemoryHostPlatform())

    token_manager.add_session_ended_listener(synchronizer.reset)
    token_manager.add_session_ended_listener(driver.stop)

    return SyncEngine(
        settings=settings,
        client=client,
        store=store,
        token_manager=token_manager,
        dispatcher=dispatcher,
        synchronizer=synchronizer,
        driver=driver,
        executor=executor,
    )
