from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, Future
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

import requests

from core.errors import TransientAuthError, UnauthorizedError
from core.models import Session
from core.openproject_client import OpenProjectClient, TransportPolicy
from core.settings import Settings


logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
EXPIRATION_KEY = "tokenExpiration"
SESSION_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, EXPIRATION_KEY)

DEFAULT_EXPIRES_IN = 7200


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"


def _pick(data: dict[str, Any], *keys: str):
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _to_timestamp(value: Any) -> Optional[float]:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


class TokenManager:
    """Owns the OAuth2 session for one OpenProject server.

    Refreshes are asynchronous and coalesced: while one refresh is in flight
    every caller receives the same Future. A refresh rejected with 401/403
    ends the session; any other failure leaves it untouched. A refresh that
    outlives its session (logout or a new login) changes nothing.
    """

    def __init__(
        self,
        settings: Settings,
        client: OpenProjectClient,
        store,
        executor: Executor,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.client = client
        self.store = store
        self.executor = executor
        self.clock = clock
        self.transport = TransportPolicy.for_ca_bundle(settings.token_ca_bundle)
        self._lock = threading.RLock()
        self._session: Optional[Session] = None
        self._refresh_future: Optional[Future] = None
        self._generation = 0
        self._session_ended_listeners: list[Callable[[], None]] = []

    @property
    def session(self) -> Optional[Session]:
        with self._lock:
            return self._session

    @property
    def state(self) -> SessionState:
        with self._lock:
            if self._session is None:
                return SessionState.UNAUTHENTICATED
            if self._refresh_future is not None:
                return SessionState.REFRESHING
            return SessionState.AUTHENTICATED

    @property
    def generation(self) -> int:
        """Bumped on every login, rehydration and logout."""
        with self._lock:
            return self._generation

    def current_session(self) -> tuple[Optional[Session], int]:
        with self._lock:
            return self._session, self._generation

    @staticmethod
    def is_valid(session: Optional[Session], now: float) -> bool:
        return session is not None and session.is_valid(now)

    def valid_session(self) -> Optional[Session]:
        session = self.session
        return session if self.is_valid(session, self.clock()) else None

    def add_session_ended_listener(self, callback: Callable[[], None]) -> None:
        self._session_ended_listeners.append(callback)

    def load_session(self) -> Optional[Session]:
        try:
            access_token = self.store.read(ACCESS_TOKEN_KEY)
            refresh_token = self.store.read(REFRESH_TOKEN_KEY)
            expiration = self.store.read(EXPIRATION_KEY)
        except Exception as exc:
            logger.warning("event=session_load_failed error=%s", exc)
            return None

        if not isinstance(access_token, str) or not access_token:
            logger.info("event=session_load_missing field=%s", ACCESS_TOKEN_KEY)
            return None
        expires_at = _to_timestamp(expiration)
        if expires_at is None:
            logger.info("event=session_load_missing field=%s", EXPIRATION_KEY)
            return None
        if not isinstance(refresh_token, str) or not refresh_token:
            refresh_token = None

        session = Session(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            client_id=self.settings.client_id,
            client_secret=self.settings.client_secret,
        )
        with self._lock:
            self._session = session
            self._refresh_future = None
            self._generation += 1
        logger.info("event=session_loaded expires_at=%s", int(expires_at))
        return session

    def authorization_url(self, state: str) -> str:
        if not self.settings.client_id:
            raise ValueError("Missing OpenProject client id in environment.")
        return self.client.authorization_url(
            self.settings.client_id,
            self.settings.redirect_uri,
            self.settings.oauth_scope,
            state,
        )

    def exchange_code(self, code: str) -> Session:
        if not self.settings.client_id or not self.settings.client_secret:
            raise ValueError("Missing OpenProject client credentials in environment.")

        try:
            resp = self.client.exchange_code(
                self.settings.client_id,
                self.settings.client_secret,
                code,
                self.settings.redirect_uri,
                transport=self.transport,
            )
        except requests.RequestException as exc:
            logger.warning("event=code_exchange_network_error error=%s", exc)
            raise TransientAuthError(f"Code exchange failed: {exc}") from exc

        if resp.status_code in (400, 401, 403):
            logger.warning("event=code_exchange_rejected status=%s", resp.status_code)
            raise UnauthorizedError(f"Authorization code rejected with HTTP {resp.status_code}")
        if resp.status_code != 200:
            raise TransientAuthError(f"Code exchange returned HTTP {resp.status_code}")

        try:
            session = self._session_from_token_response(resp.json(), fallback_refresh_token=None)
        except (ValueError, TypeError) as exc:
            raise TransientAuthError("Malformed token response") from exc

        with self._lock:
            self._session = session
            self._refresh_future = None
            self._generation += 1
        self._persist(session)
        logger.info("event=session_created expires_at=%s", int(session.expires_at))
        return session

    def check(self, now: Optional[float] = None) -> Optional[Future]:
        """Start (or join) a refresh when the token is close to expiry."""
        now = self.clock() if now is None else now
        session = self.session
        if session is None:
            return None
        seconds_left = session.expires_at - now
        if seconds_left >= self.settings.refresh_threshold:
            return None
        logger.info("event=token_expiring seconds_left=%s", int(seconds_left))
        return self.refresh(session)

    def refresh(self, session: Optional[Session] = None) -> Future:
        with self._lock:
            if self._refresh_future is not None:
                logger.debug("event=token_refresh_joined")
                return self._refresh_future
            # The stored session carries the latest rotated refresh token.
            future = self.executor.submit(self._refresh, self._session or session, self._generation)
            self._refresh_future = future
        future.add_done_callback(self._refresh_finished)
        return future

    def _refresh_finished(self, future: Future) -> None:
        with self._lock:
            if self._refresh_future is future:
                self._refresh_future = None

    def _refresh(self, session: Optional[Session], generation: int) -> Session:
        if session is None:
            raise UnauthorizedError("No session to refresh")
        if not session.refresh_token:
            logger.warning("event=token_refresh_no_refresh_token")
            self._end_session(generation)
            raise UnauthorizedError("No refresh token available")

        client_id = session.client_id or self.settings.client_id
        client_secret = session.client_secret or self.settings.client_secret
        if not client_id or not client_secret:
            raise TransientAuthError("Missing OpenProject client credentials in environment.")

        try:
            resp = self.client.refresh_token(
                client_id,
                client_secret,
                session.refresh_token,
                transport=self.transport,
            )
        except requests.RequestException as exc:
            logger.warning("event=token_refresh_network_error error=%s", exc)
            raise TransientAuthError(f"Token refresh failed: {exc}") from exc

        if resp.status_code in (401, 403):
            logger.warning("event=token_refresh_rejected status=%s", resp.status_code)
            if not self._end_session(generation):
                logger.info("event=token_refresh_stale status=%s", resp.status_code)
            raise UnauthorizedError(f"Refresh token rejected with HTTP {resp.status_code}")
        if resp.status_code != 200:
            logger.warning("event=token_refresh_failed status=%s", resp.status_code)
            raise TransientAuthError(f"Token refresh returned HTTP {resp.status_code}")

        try:
            new_session = self._session_from_token_response(resp.json(), session.refresh_token)
        except (ValueError, TypeError) as exc:
            logger.warning("event=token_refresh_malformed error=%s", exc)
            raise TransientAuthError("Malformed token response") from exc

        with self._lock:
            if self._generation != generation:
                logger.info("event=token_refresh_stale status=%s", resp.status_code)
                raise UnauthorizedError("Session changed while the refresh was in flight")
            self._session = new_session
        self._persist(new_session)
        logger.info("event=token_refreshed expires_at=%s", int(new_session.expires_at))
        return new_session

    def _session_from_token_response(self, data: Any, fallback_refresh_token: Optional[str]) -> Session:
        if not isinstance(data, dict):
            raise ValueError("token response is not an object")
        access_token = _pick(data, "access_token", "accessToken")
        if not isinstance(access_token, str):
            raise ValueError("token response has no access token")
        refresh_token = _pick(data, "refresh_token", "refreshToken") or fallback_refresh_token
        expires_in = float(_pick(data, "expires_in", "expiresIn") or DEFAULT_EXPIRES_IN)
        return Session(
            access_token=access_token,
            refresh_token=refresh_token if isinstance(refresh_token, str) else None,
            expires_at=self.clock() + expires_in,
            client_id=self.settings.client_id,
            client_secret=self.settings.client_secret,
        )

    def _persist(self, session: Session) -> None:
        try:
            self.store.save(ACCESS_TOKEN_KEY, session.access_token)
            if session.refresh_token:
                self.store.save(REFRESH_TOKEN_KEY, session.refresh_token)
            else:
                self.store.delete(REFRESH_TOKEN_KEY)
            self.store.save(EXPIRATION_KEY, datetime.fromtimestamp(session.expires_at, tz=timezone.utc))
        except Exception as exc:
            logger.error("event=session_persist_failed error=%s", exc)

    def logout(self) -> None:
        self._end_session()

    def _end_session(self, generation: Optional[int] = None) -> bool:
        """End the session, or only the one from `generation` when given."""
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            had_session = self._session is not None
            self._session = None
            self._refresh_future = None
            self._generation += 1

        for key in SESSION_KEYS:
            try:
                self.store.delete(key)
            except Exception as exc:
                logger.warning("event=session_delete_failed key=%s error=%s", key, exc)

        if not had_session:
            return True
        logger.info("event=session_ended")
        for callback in list(self._session_ended_listeners):
            try:
                callback()
            except Exception as exc:
                logger.error("event=session_ended_listener_failed error=%s", exc)
        return True
