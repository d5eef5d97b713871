import json
import unittest
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient
from svix.webhooks import Webhook

from legacy_pages.app import create_app
from legacy_pages.config import get_settings
from legacy_pages.db import InMemoryDbClient
from legacy_pages.dependencies import get_db_client, get_storage_client
from legacy_pages.schemas import IdentityEvent
from legacy_pages.service import PageService
from legacy_pages.storage import InMemoryStorageClient
from legacy_pages.tests.support import (
    WEBHOOK_SECRET,
    auth_headers,
    make_settings,
    page_form,
)
from legacy_pages.tests.test_service import submission
from legacy_pages.webhooks import (
    WebhookVerificationError,
    handle_identity_event,
    parse_identity_event,
    verify_webhook,
)


def signed_headers(body: bytes, msg_id="msg_1", timestamp=None, secret=WEBHOOK_SECRET):
    timestamp = timestamp or datetime.now(timezone.utc)
    return {
        "svix-id": msg_id,
        "svix-timestamp": str(int(timestamp.timestamp())),
        "svix-signature": Webhook(secret).sign(msg_id, timestamp, body.decode()),
    }


def user_event(event_type, external_id="user_1", email="jane@example.com", first_name="Jane"):
    return {
        "type": event_type,
        "data": {
            "id": external_id,
            "email_addresses": [{"email_address": email}],
            "first_name": first_name,
        },
    }


class VerifyWebhookTests(unittest.TestCase):
    def test_valid_signature(self):
        body = json.dumps(user_event("user.created")).encode()
        payload = verify_webhook(WEBHOOK_SECRET, signed_headers(body), body)
        self.assertEqual(payload["type"], "user.created")

    def test_accepts_any_matching_signature(self):
        body = b'{"type": "session.created", "data": {}}'
        headers = signed_headers(body)
        headers["svix-signature"] = "v1,bm90LWl0 " + headers["svix-signature"]
        self.assertEqual(verify_webhook(WEBHOOK_SECRET, headers, body)["type"], "session.created")

    def test_rejects_tampered_body(self):
        body = json.dumps(user_event("user.created")).encode()
        headers = signed_headers(body)
        with self.assertRaises(WebhookVerificationError):
            verify_webhook(WEBHOOK_SECRET, headers, body.replace(b"Jane", b"Mallory"))

    def test_rejects_stale_timestamp(self):
        body = b"{}"
        headers = signed_headers(body, timestamp=datetime.now(timezone.utc) - timedelta(hours=1))
        with self.assertRaises(WebhookVerificationError):
            verify_webhook(WEBHOOK_SECRET, headers, body)

    def test_rejects_missing_headers_or_secret(self):
        body = b"{}"
        with self.assertRaises(WebhookVerificationError):
            verify_webhook(WEBHOOK_SECRET, {}, body)
        with self.assertRaises(WebhookVerificationError):
            verify_webhook(None, signed_headers(body), body)

    def test_rejects_signed_body_that_is_not_json(self):
        body = b"not json"
        with self.assertRaises(WebhookVerificationError):
            verify_webhook(WEBHOOK_SECRET, signed_headers(body), body)


class ParseIdentityEventTests(unittest.TestCase):
    def test_user_events_need_user_data(self):
        with self.assertRaises(WebhookVerificationError):
            parse_identity_event({"type": "user.created", "data": {"email_addresses": []}})
        with self.assertRaises(WebhookVerificationError):
            parse_identity_event({"type": "user.updated", "data": {"id": "user_1", "email_addresses": "x"}})
        with self.assertRaises(WebhookVerificationError):
            parse_identity_event(["not", "an", "event"])

    def test_other_events_are_passed_through(self):
        event = parse_identity_event({"type": "session.created", "data": {"id": "sess_1"}})
        self.assertEqual(event.type, "session.created")


class HandleIdentityEventTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.storage = InMemoryStorageClient()
        self.pages = PageService(self.db, self.storage)

    def handle(self, payload):
        return handle_identity_event(IdentityEvent.model_validate(payload), self.db, self.pages)

    def test_user_created_and_updated(self):
        status, content = self.handle(user_event("user.created"))
        self.assertEqual(status, 201)
        self.assertEqual(content["name"], "Jane")
        self.assertEqual(content["email"], "jane@example.com")

        status, content = self.handle(user_event("user.updated", email="j@example.com", first_name=None))
        self.assertEqual(status, 200)
        self.assertEqual(content["name"], "j")
        self.assertEqual(len(self.db.users), 1)

    def test_user_deleted_removes_their_page(self):
        self.handle(user_event("user.created"))
        page_id = self.pages.create_page("user_1", submission())

        status, content = self.handle({"type": "user.deleted", "data": {"id": "user_1"}})

        self.assertEqual((status, content), (200, {"message": "User deleted"}))
        self.assertIsNone(self.db.get_user_by_external_id("user_1"))
        self.assertIsNone(self.db.get_page(page_id))

    def test_other_events_are_acknowledged(self):
        status, content = self.handle({"type": "session.created", "data": {}})
        self.assertEqual((status, content), (200, {"message": "Webhook received"}))


class IdentityWebhookRouteTests(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient()
        self.storage = InMemoryStorageClient()
        settings = make_settings()
        app = create_app()
        app.dependency_overrides[get_db_client] = lambda: self.db
        app.dependency_overrides[get_storage_client] = lambda: self.storage
        app.dependency_overrides[get_settings] = lambda: settings
        self.client = TestClient(app)

    def post(self, body, headers):
        headers = dict(headers, **{"content-type": "application/json"})
        return self.client.post("/api/webhooks/identity", content=body, headers=headers)

    def test_signed_user_created(self):
        body = json.dumps(user_event("user.created")).encode()
        response = self.post(body, signed_headers(body))
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["email"], "jane@example.com")
        self.assertIsNotNone(self.db.get_user_by_external_id("user_1"))

    def test_bad_signature_is_rejected(self):
        body = json.dumps(user_event("user.created")).encode()
        headers = signed_headers(body)
        headers["svix-signature"] = "v1,invalid"
        response = self.post(body, headers)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.text, "Error verifying webhook")
        self.assertEqual(self.db.users, {})

    def test_signed_user_created_without_id_is_rejected(self):
        body = json.dumps({"type": "user.created", "data": {"email_addresses": []}}).encode()
        response = self.post(body, signed_headers(body))
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.text, "Error verifying webhook")
        self.assertEqual(self.db.users, {})

    def test_user_can_create_page_after_sync(self):
        body = json.dumps(user_event("user.created")).encode()
        self.assertEqual(self.post(body, signed_headers(body)).status_code, 201)

        response = self.client.post(
            "/api/pages", data=page_form(), headers=auth_headers("user_1")
        )
        self.assertEqual(response.status_code, 201)


if __name__ == "__main__":
    unittest.main()
