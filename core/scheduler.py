from __future__ import annotations

import logging
import threading
import uuid
from enum import Enum
from typing import Optional

from core.errors import FetchError, TransientAuthError, UnauthenticatedError, UnauthorizedError
from core.platform import HostPlatform
from core.settings import Settings
from core.synchronizer import NotificationSynchronizer
from core.token_manager import TokenManager


logger = logging.getLogger(__name__)


class Mode(str, Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


class SyncDriver:
    """Runs token checks and notification polls on a timer.

    Foreground and background use different cadences. A background cycle
    holds an execution window from the host for exactly as long as it runs.
    In-flight requests are never cancelled; stopping only prevents new
    cycles from being scheduled.
    """

    def __init__(
        self,
        settings: Settings,
        token_manager: TokenManager,
        synchronizer: NotificationSynchronizer,
        host: HostPlatform,
    ):
        self.settings = settings
        self.token_manager = token_manager
        self.synchronizer = synchronizer
        self.host = host
        self._mode = Mode.FOREGROUND
        self._stopped = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def mode(self) -> Mode:
        with self._lock:
            return self._mode

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def interval(self) -> int:
        if self.mode is Mode.BACKGROUND:
            return self.settings.background_interval
        return self.settings.foreground_interval

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stopped.clear()
            # First cycle runs immediately.
            self._wake.set()
            self._thread = threading.Thread(target=self._run, name="openproject-sync-driver", daemon=True)
            self._thread.start()
        logger.info("event=driver_started mode=%s", self.mode.value)

    def stop(self) -> None:
        self._stopped.set()
        self._wake.set()
        logger.info("event=driver_stopped")

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def enter_background(self) -> None:
        with self._lock:
            self._mode = Mode.BACKGROUND
        logger.info("event=driver_mode mode=background interval=%s", self.settings.background_interval)
        self._wake.set()

    def enter_foreground(self) -> None:
        with self._lock:
            self._mode = Mode.FOREGROUND
        logger.info("event=driver_mode mode=foreground interval=%s", self.settings.foreground_interval)
        self._wake.set()

    def _run(self) -> None:
        while not self._stopped.is_set():
            self._wake.wait(self.interval())
            self._wake.clear()
            if self._stopped.is_set():
                break
            try:
                keep_running = self.tick()
            except Exception as exc:
                logger.exception("event=cycle_crashed error=%s", exc)
                continue
            if not keep_running:
                logger.info("event=driver_halted reason=session_ended")
                self._stopped.set()

    def tick(self) -> bool:
        """Run one cycle. Returns False once there is no session to sync for."""
        cid = str(uuid.uuid4())
        task_id = None
        if self.mode is Mode.BACKGROUND:
            task_id = self.host.begin_background_task("notification-poll")
        try:
            return self._cycle(cid)
        finally:
            if task_id is not None:
                self.host.end_background_task(task_id)

    def sync_now(self) -> bool:
        return self.tick()

    def _cycle(self, cid: str) -> bool:
        if self.token_manager.session is None:
            return False

        refresh = self.token_manager.check()
        if refresh is not None:
            try:
                refresh.result()
            except UnauthorizedError as exc:
                logger.warning("event=cycle_session_ended cid=%s error=%s", cid, exc)
                return False
            except TransientAuthError as exc:
                logger.warning("event=cycle_refresh_deferred cid=%s error=%s", cid, exc)

        if self.token_manager.session is None:
            return False

        try:
            self.synchronizer.poll(correlation_id=cid).result()
        except UnauthenticatedError as exc:
            logger.warning("event=cycle_poll_unauthenticated cid=%s error=%s", cid, exc)
        except FetchError as exc:
            logger.warning("event=cycle_poll_failed cid=%s error=%s", cid, exc)
        return self.token_manager.session is not None
