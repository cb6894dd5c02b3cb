import unittest

from core.engine import build_engine
from core.platform import MemoryAlertScheduler, MemoryHostPlatform
from core.sync_service import SyncService
from stores.memory_store import MemoryStore
from tests.fakes import FakeOpenProjectClient, FakeResponse, ImmediateExecutor, collection, element, make_settings


class SyncServiceTests(unittest.TestCase):
    def setUp(self):
        self.client = FakeOpenProjectClient()
        self.scheduler = MemoryAlertScheduler()
        self.engine = build_engine(
            make_settings(),
            client=self.client,
            store=MemoryStore(),
            alert_scheduler=self.scheduler,
            host=MemoryHostPlatform(),
            executor=ImmediateExecutor(),
        )
        self.service = SyncService(self.engine)
        self.headers = {"x-sync-secret": "sync_secret"}

    def test_rejects_missing_or_wrong_secret(self):
        self.assertEqual(self.service.sync({}).status_code, 401)
        self.assertEqual(self.service.list_notifications({"X-Sync-Secret": "nope"}).status_code, 401)
        self.assertEqual(self.service.mark_read({}, 1).status_code, 401)

    def test_sync_without_session(self):
        result = self.service.sync(self.headers)
        self.assertEqual(result.status_code, 401)

    def test_sync_then_list_then_mark_read(self):
        self.engine.token_manager.exchange_code("code")
        self.client.notification_responses.append(collection(element(1, "mentioned"), element(2, "commented")))

        result = self.service.sync(self.headers, correlation_id="cid-1")
        self.assertEqual(result.status_code, 200)
        self.assertEqual(result.body, {"unreadCount": 2, "total": 2})
        self.assertEqual(list(self.scheduler.alerts), ["openproject-notification-1"])

        listing = self.service.list_notifications(self.headers)
        self.assertEqual([n["id"] for n in listing.body["notifications"]], [1, 2])
        self.assertEqual(listing.body["notifications"][0]["resource"]["type"], "WorkPackage")

        self.assertEqual(self.service.mark_read(self.headers, 2).body, {"unreadCount": 1})
        self.assertEqual(self.service.mark_read(self.headers, 99).status_code, 404)

    def test_sync_maps_fetch_errors(self):
        self.engine.token_manager.exchange_code("code")
        self.client.notification_responses.append(FakeResponse(503))
        self.assertEqual(self.service.sync(self.headers).status_code, 503)
        self.client.notification_responses.append(FakeResponse(200, {"oops": True}))
        self.assertEqual(self.service.sync(self.headers).status_code, 502)

    def test_logout_resets_snapshot_and_badge(self):
        self.engine.token_manager.exchange_code("code")
        self.client.notification_responses.append(collection(element(1)))
        self.service.sync(self.headers)

        self.engine.token_manager.logout()

        self.assertEqual(self.engine.synchronizer.unread_count, 0)
        self.assertEqual(self.scheduler.badge_count, 0)

    def test_health_reports_session_state(self):
        self.assertEqual(self.service.health(), {"status": "ok", "session": "unauthenticated"})


if __name__ == "__main__":
    unittest.main()
