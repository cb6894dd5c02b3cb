import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from core.errors import TransientAuthError, UnauthorizedError
from core.models import Session
from core.openproject_client import TransportPolicy
from core.token_manager import (
    ACCESS_TOKEN_KEY,
    EXPIRATION_KEY,
    REFRESH_TOKEN_KEY,
    SessionState,
    TokenManager,
)
from stores.memory_store import MemoryStore
from tests.fakes import (
    FakeClock,
    FakeOpenProjectClient,
    FakeResponse,
    ImmediateExecutor,
    make_settings,
    network_error,
    token_response,
)


class _BrokenStore:
    namespace = "openproject"

    def read(self, key):
        raise RuntimeError("keychain locked")

    def save(self, key, value):
        raise RuntimeError("keychain locked")

    def delete(self, key):
        raise RuntimeError("keychain locked")


class TokenManagerTests(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings()
        self.clock = FakeClock()
        self.client = FakeOpenProjectClient()
        self.store = MemoryStore()
        self.manager = TokenManager(self.settings, self.client, self.store, ImmediateExecutor(), clock=self.clock)

    def _store_session(self, expires_in=3600, refresh="refresh_1"):
        self.store.save(ACCESS_TOKEN_KEY, "access_1")
        if refresh:
            self.store.save(REFRESH_TOKEN_KEY, refresh)
        self.store.save(EXPIRATION_KEY, datetime.fromtimestamp(self.clock.now + expires_in, tz=timezone.utc))

    def test_load_session_rehydrates_from_store(self):
        self._store_session()
        session = self.manager.load_session()
        self.assertEqual(session.access_token, "access_1")
        self.assertEqual(session.refresh_token, "refresh_1")
        self.assertAlmostEqual(session.expires_at, self.clock.now + 3600)
        self.assertEqual(self.manager.state, SessionState.AUTHENTICATED)

    def test_load_session_returns_none_when_expiry_missing(self):
        self.store.save(ACCESS_TOKEN_KEY, "access_1")
        self.assertIsNone(self.manager.load_session())
        self.assertEqual(self.manager.state, SessionState.UNAUTHENTICATED)

    def test_load_session_returns_none_when_expiry_corrupt(self):
        self.store.save(ACCESS_TOKEN_KEY, "access_1")
        self.store.save(EXPIRATION_KEY, "not a date")
        self.assertIsNone(self.manager.load_session())

    def test_load_session_never_raises_on_store_failure(self):
        manager = TokenManager(self.settings, self.client, _BrokenStore(), ImmediateExecutor(), clock=self.clock)
        self.assertIsNone(manager.load_session())

    def test_is_valid(self):
        session = Session("a", "r", expires_at=100.0)
        self.assertTrue(TokenManager.is_valid(session, 99.9))
        self.assertFalse(TokenManager.is_valid(session, 100.0))
        self.assertFalse(TokenManager.is_valid(None, 0))

    def test_refresh_success_persists_new_session(self):
        self._store_session()
        self.manager.load_session()
        session = self.manager.refresh().result()

        self.assertEqual(session.access_token, "access_2")
        self.assertEqual(session.refresh_token, "refresh_2")
        self.assertAlmostEqual(session.expires_at, self.clock.now + 3600)
        self.assertEqual(self.store.read(ACCESS_TOKEN_KEY), "access_2")
        self.assertEqual(self.store.read(REFRESH_TOKEN_KEY), "refresh_2")
        self.assertEqual(self.manager.session, session)
        client_id, client_secret, refresh_token, transport = self.client.refresh_calls[0]
        self.assertEqual((client_id, client_secret, refresh_token), ("client_id", "client_secret", "refresh_1"))
        self.assertEqual(transport, TransportPolicy(verify=True))

    def test_refresh_keeps_old_refresh_token_when_not_rotated(self):
        self._store_session()
        self.manager.load_session()
        self.client.refresh_responses.append(FakeResponse(200, {"access_token": "access_2", "expires_in": 60}))
        session = self.manager.refresh().result()
        self.assertEqual(session.refresh_token, "refresh_1")

    def test_refresh_rejected_with_403_clears_session(self):
        ended = []
        self.manager.add_session_ended_listener(lambda: ended.append(True))
        self._store_session()
        self.manager.load_session()
        self.client.refresh_responses.append(FakeResponse(403, text="invalid_grant"))

        future = self.manager.refresh()

        self.assertIsInstance(future.exception(), UnauthorizedError)
        self.assertIsNone(self.manager.session)
        self.assertIsNone(self.store.read(ACCESS_TOKEN_KEY))
        self.assertIsNone(self.store.read(REFRESH_TOKEN_KEY))
        self.assertEqual(ended, [True])
        self.assertEqual(self.manager.state, SessionState.UNAUTHENTICATED)
        self.assertIsNone(self.manager.check())
        self.assertEqual(len(self.client.refresh_calls), 1)

    def test_refresh_rejected_with_401_is_unauthorized(self):
        self._store_session()
        self.manager.load_session()
        self.client.refresh_responses.append(FakeResponse(401))
        self.assertIsInstance(self.manager.refresh().exception(), UnauthorizedError)

    def test_refresh_server_error_is_transient_and_keeps_session(self):
        self._store_session()
        original = self.manager.load_session()
        self.client.refresh_responses.append(FakeResponse(502))

        self.assertIsInstance(self.manager.refresh().exception(), TransientAuthError)
        self.assertEqual(self.manager.session, original)
        self.assertEqual(self.store.read(ACCESS_TOKEN_KEY), "access_1")

    def test_refresh_network_error_is_transient(self):
        self._store_session()
        self.manager.load_session()
        self.client.refresh_responses.append(network_error())
        self.assertIsInstance(self.manager.refresh().exception(), TransientAuthError)
        self.assertIsNotNone(self.manager.session)

    def test_refresh_malformed_body_is_transient(self):
        self._store_session()
        self.manager.load_session()
        self.client.refresh_responses.append(FakeResponse(200, invalid_json=True))
        self.assertIsInstance(self.manager.refresh().exception(), TransientAuthError)

    def test_refresh_without_refresh_token_forces_logout(self):
        self._store_session(refresh=None)
        self.manager.load_session()
        self.assertIsInstance(self.manager.refresh().exception(), UnauthorizedError)
        self.assertIsNone(self.manager.session)
        self.assertEqual(self.client.refresh_calls, [])

    def test_refresh_uses_ca_bundle_transport_policy(self):
        manager = TokenManager(
            make_settings(token_ca_bundle="/etc/ssl/openproject.pem"),
            self.client,
            self.store,
            ImmediateExecutor(),
            clock=self.clock,
        )
        self._store_session()
        manager.load_session()
        manager.refresh().result()
        self.assertEqual(self.client.refresh_calls[0][3], TransportPolicy(verify="/etc/ssl/openproject.pem"))

    def test_check_refreshes_only_inside_threshold(self):
        self._store_session(expires_in=3600)
        self.manager.load_session()
        self.assertIsNone(self.manager.check())

        self.clock.advance(3600 - 299)
        future = self.manager.check()
        self.assertIsNotNone(future)
        self.assertEqual(future.result().access_token, "access_2")

    def test_concurrent_refreshes_share_one_request(self):
        executor = ThreadPoolExecutor(max_workers=4)
        self.addCleanup(executor.shutdown)
        manager = TokenManager(self.settings, self.client, self.store, executor, clock=self.clock)
        self._store_session()
        manager.load_session()
        self.client.refresh_gate = threading.Event()

        first = manager.refresh()
        self.assertTrue(self.client.refresh_started.wait(5))
        second = manager.refresh()
        self.assertEqual(manager.state, SessionState.REFRESHING)
        self.client.refresh_gate.set()

        self.assertIs(first, second)
        self.assertEqual(first.result(5).access_token, "access_2")
        self.assertEqual(len(self.client.refresh_calls), 1)

    def test_logout_is_idempotent(self):
        ended = []
        self.manager.add_session_ended_listener(lambda: ended.append(True))
        self._store_session()
        self.manager.load_session()

        self.manager.logout()
        self.manager.logout()

        self.assertIsNone(self.manager.session)
        self.assertIsNone(self.store.read(EXPIRATION_KEY))
        self.assertEqual(ended, [True])

    def test_exchange_code_creates_and_persists_session(self):
        session = self.manager.exchange_code("auth_code")
        self.assertEqual(session.access_token, "access_1")
        self.assertEqual(self.store.read(REFRESH_TOKEN_KEY), "refresh_1")
        self.assertEqual(self.client.exchange_calls[0][2:], ("auth_code", "http://localhost:8080/callback"))
        self.assertEqual(self.manager.load_session().access_token, "access_1")

    def test_exchange_code_rejected(self):
        self.client.exchange_responses.append(FakeResponse(400, {"error": "invalid_grant"}))
        with self.assertRaises(UnauthorizedError):
            self.manager.exchange_code("stale_code")
        self.assertIsNone(self.manager.session)

    def test_refresh_finishing_after_logout_does_not_restore_session(self):
        executor = ThreadPoolExecutor(max_workers=2)
        self.addCleanup(executor.shutdown)
        manager = TokenManager(self.settings, self.client, self.store, executor, clock=self.clock)
        self._store_session()
        manager.load_session()
        self.client.refresh_gate = threading.Event()

        future = manager.refresh()
        self.assertTrue(self.client.refresh_started.wait(5))
        manager.logout()
        self.client.refresh_gate.set()

        self.assertIsInstance(future.exception(5), UnauthorizedError)
        self.assertIsNone(manager.session)
        self.assertIsNone(self.store.read(ACCESS_TOKEN_KEY))

    def _relogin_during_refresh(self, refresh_response):
        executor = ThreadPoolExecutor(max_workers=2)
        self.addCleanup(executor.shutdown)
        manager = TokenManager(self.settings, self.client, self.store, executor, clock=self.clock)
        self._store_session()
        manager.load_session()
        ended = []
        manager.add_session_ended_listener(lambda: ended.append(True))
        self.client.refresh_gate = threading.Event()
        self.client.refresh_responses.append(refresh_response)

        stale = manager.refresh()
        self.assertTrue(self.client.refresh_started.wait(5))
        manager.logout()
        self.assertEqual(manager.state, SessionState.UNAUTHENTICATED)
        self.client.exchange_responses.append(token_response("access_new", "refresh_new"))
        fresh = manager.exchange_code("fresh_code")
        self.client.refresh_gate.set()

        self.assertIsInstance(stale.exception(5), UnauthorizedError)
        return manager, fresh, ended

    def test_rejected_refresh_from_previous_login_keeps_new_session(self):
        manager, fresh, ended = self._relogin_during_refresh(FakeResponse(403, {"error": "invalid_grant"}))

        self.assertIs(manager.session, fresh)
        self.assertEqual(self.store.read(ACCESS_TOKEN_KEY), "access_new")
        self.assertEqual(ended, [True])

    def test_successful_refresh_from_previous_login_is_discarded(self):
        manager, fresh, _ = self._relogin_during_refresh(token_response("stale_refreshed", "stale_refresh"))

        self.assertIs(manager.session, fresh)
        self.assertEqual(self.store.read(ACCESS_TOKEN_KEY), "access_new")
        self.assertEqual(self.store.read(REFRESH_TOKEN_KEY), "refresh_new")

    def test_check_after_relogin_does_not_join_previous_refresh(self):
        executor = ThreadPoolExecutor(max_workers=2)
        self.addCleanup(executor.shutdown)
        manager = TokenManager(self.settings, self.client, self.store, executor, clock=self.clock)
        self._store_session()
        manager.load_session()
        self.client.refresh_gate = threading.Event()

        stale = manager.refresh()
        self.assertTrue(self.client.refresh_started.wait(5))
        manager.logout()
        manager.exchange_code("fresh_code")
        self.clock.advance(3600 - 10)
        current = manager.check()
        self.client.refresh_gate.set()

        self.assertIsNot(current, stale)
        self.assertEqual(current.result(5).access_token, "access_2")
        self.assertEqual(manager.session.access_token, "access_2")
        self.assertIsInstance(stale.exception(5), UnauthorizedError)

    def test_token_response_default_expiry(self):
        self.client.exchange_responses.append(token_response(expires_in=None))
        session = self.manager.exchange_code("code")
        self.assertAlmostEqual(session.expires_at, self.clock.now + 7200)


if __name__ == "__main__":
    unittest.main()
