from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

from flask import Flask

from chatwith_backend.ai import gemini
from chatwith_backend.chats.routes import chats_bp
from chatwith_backend.files.routes import files_bp
from chatwith_backend.store.chats import CHATS_COLLECTION, FILES_COLLECTION
from fakes import FakeFirestore, FakeGenaiClient


class ChatsApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        uploads = Path(self._tmp.name)
        (uploads / "user123").mkdir()
        (uploads / "user123" / "f1_manual.txt").write_text("Press the red button to start.", encoding="utf-8")

        app = Flask(__name__)
        app.config.update(
            TESTING=True,
            UPLOADS_DIR=str(uploads),
            GEMINI_API_KEY="test-key",
            LOGIN_URL="/login",
            QUERY_RETRY_COUNT=0,
        )
        app.register_blueprint(chats_bp)
        app.register_blueprint(files_bp)
        self.app = app
        self.client = app.test_client()

        stamp = datetime(2024, 5, 1, tzinfo=timezone.utc)
        self.db = FakeFirestore()
        self.db.seed(FILES_COLLECTION, "f1", {
            "uid": "user123",
            "fileName": "manual.txt",
            "fileType": "text",
            "mimeType": "text/plain",
            "storagePath": "user123/f1_manual.txt",
            "createdAt": stamp,
        })
        self.db.seed(FILES_COLLECTION, "f-other", {"uid": "someone-else", "fileName": "x.txt", "fileType": "text", "createdAt": stamp})
        self.db.seed(CHATS_COLLECTION, "c-other", {"uid": "someone-else", "title": "Theirs", "messages": [], "createdAt": stamp})

        self.db_patcher = patch("chatwith_backend.chats.routes.get_firestore_client", return_value=self.db)
        self.db_patcher.start()
        self.verify_patcher = patch("chatwith_backend.auth.utils.firebase_auth.verify_id_token")
        self.mock_verify = self.verify_patcher.start()
        self.mock_verify.return_value = {"uid": "user123"}

        self.genai = FakeGenaiClient()
        gemini._client_cache["test-key"] = self.genai

    def tearDown(self) -> None:
        gemini._client_cache.pop("test-key", None)
        self.verify_patcher.stop()
        self.db_patcher.stop()
        self._tmp.cleanup()

    def _auth(self) -> dict[str, str]:
        return {"Authorization": "Bearer valid-token"}

    def _start_chat(self) -> dict:
        response = self.client.post("/chats/from-file", json={"fileId": "f1"}, headers=self._auth())
        self.assertEqual(response.status_code, 201)
        return response.get_json()

    def test_list_chats_requires_authorization(self) -> None:
        response = self.client.get("/chats")
        self.assertEqual(response.status_code, 401)
        payload = response.get_json()
        self.assertEqual(payload["error"], "AUTH_EXPIRED")
        self.assertEqual(payload["redirect"], "/login")
        self.assertEqual(response.headers["Location"], "/login")

    def test_expired_token_redirects_to_login(self) -> None:
        from chatwith_backend.auth import utils

        self.mock_verify.side_effect = utils.firebase_auth.ExpiredIdTokenError("expired", None)

        response = self.client.get("/chats", headers=self._auth())

        self.assertEqual(response.status_code, 401)
        payload = response.get_json()
        self.assertEqual(payload["error"], "AUTH_EXPIRED")
        self.assertEqual(payload["message"], "Authentication expired. Please log in again.")
        self.assertEqual(payload["redirect"], "/login")
        self.assertEqual(response.headers["Location"], "/login")

    def test_malformed_token_is_not_a_session_expiry(self) -> None:
        from chatwith_backend.auth import utils

        self.mock_verify.side_effect = utils.firebase_auth.InvalidIdTokenError("bad token")

        response = self.client.get("/chats", headers=self._auth())

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()["error"], "invalid_token")
        self.assertNotIn("Location", response.headers)

    def test_start_chat_and_list(self) -> None:
        chat = self._start_chat()
        self.assertEqual(chat["title"], "manual.txt")
        self.assertEqual(chat["files"]["id"], "f1")

        response = self.client.get("/chats", headers=self._auth())
        self.assertEqual(response.status_code, 200)
        items = response.get_json()["items"]
        self.assertEqual([item["id"] for item in items], [chat["id"]])

    def test_start_chat_with_foreign_file_is_forbidden(self) -> None:
        response = self.client.post("/chats/from-file", json={"fileId": "f-other"}, headers=self._auth())

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.get_json()["error"], "FILE_ACCESS_DENIED")
        owned = [c for c in self.db.collections[CHATS_COLLECTION].values() if c["uid"] == "user123"]
        self.assertEqual(owned, [])

    def test_create_plain_chat(self) -> None:
        response = self.client.post("/chats", json={"title": "  Scratchpad  "}, headers=self._auth())

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["title"], "Scratchpad")

    def test_create_chat_without_fields_is_invalid(self) -> None:
        response = self.client.post("/chats", json={}, headers=self._auth())

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"], "INVALID_DATA")

    def test_get_foreign_chat_is_not_found(self) -> None:
        response = self.client.get("/chats/c-other", headers=self._auth())

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"], "CHAT_NOT_FOUND")

    def test_rename_chat(self) -> None:
        chat = self._start_chat()

        response = self.client.patch(f"/chats/{chat['id']}", json={"title": "Manual Q&A"}, headers=self._auth())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["title"], "Manual Q&A")
        fetched = self.client.get(f"/chats/{chat['id']}", headers=self._auth()).get_json()
        self.assertEqual(fetched["title"], "Manual Q&A")

    def test_rename_foreign_chat_is_not_found(self) -> None:
        response = self.client.patch("/chats/c-other", json={"title": "Mine"}, headers=self._auth())

        self.assertEqual(response.status_code, 404)
        self.assertEqual(self.db.collections[CHATS_COLLECTION]["c-other"]["title"], "Theirs")

    def test_rename_rejects_blank_titles(self) -> None:
        chat = self._start_chat()

        for title in ("", "   ", None, 7):
            response = self.client.patch(f"/chats/{chat['id']}", json={"title": title}, headers=self._auth())
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.get_json()["error"], "INVALID_DATA")

        self.assertEqual(self.db.collections[CHATS_COLLECTION][chat["id"]]["title"], "manual.txt")

    def test_status_reports_query_and_mutation_states(self) -> None:
        initial = self.client.get("/chats/status", headers=self._auth())
        self.assertEqual(initial.status_code, 200)
        self.assertEqual(initial.get_json()["chats"]["status"], "idle")
        self.assertIsNone(initial.get_json()["deletingId"])

        chat = self._start_chat()
        self.client.get("/chats", headers=self._auth())
        self.client.post("/chats", json={}, headers=self._auth())

        status = self.client.get("/chats/status", headers=self._auth()).get_json()
        self.assertEqual(status["chats"]["status"], "success")
        self.assertEqual(status["mutations"]["startChatWithFile"]["status"], "success")
        self.assertEqual(status["mutations"]["createChat"]["status"], "error")
        self.assertEqual(status["mutations"]["createChat"]["error"], "Invalid chat data provided")
        self.assertNotIn(chat["id"], status["chat"])
        self.assertIsNone(status["deletingId"])

    def test_status_requires_authorization(self) -> None:
        response = self.client.get("/chats/status")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.get_json()["error"], "AUTH_EXPIRED")

    def test_delete_chat(self) -> None:
        chat = self._start_chat()

        response = self.client.delete(f"/chats/{chat['id']}", headers=self._auth())
        self.assertEqual(response.status_code, 204)

        self.assertEqual(self.client.get(f"/chats/{chat['id']}", headers=self._auth()).status_code, 404)
        self.assertEqual(self.client.get("/chats", headers=self._auth()).get_json()["items"], [])

    def test_send_message_persists_both_turns(self) -> None:
        chat = self._start_chat()
        self.genai.replies.extend(["ack", "Press the red button."])

        response = self.client.post(
            f"/chats/{chat['id']}/messages",
            json={"content": "How do I start it?"},
            headers=self._auth(),
        )

        self.assertEqual(response.status_code, 201)
        payload = response.get_json()
        self.assertEqual(payload["reply"], "Press the red button.")
        self.assertEqual(
            [m["role"] for m in payload["chat"]["messages"]],
            ["user", "model"],
        )
        stored = self.db.collections[CHATS_COLLECTION][chat["id"]]["messages"]
        self.assertEqual(stored[0]["content"], "How do I start it?")
        self.assertIn("Press the red button to start.", self.genai.sent_texts()[0])

    def test_send_message_without_api_key_is_unavailable(self) -> None:
        chat = self._start_chat()
        self.app.config["GEMINI_API_KEY"] = None

        response = self.client.post(
            f"/chats/{chat['id']}/messages",
            json={"content": "Hello?"},
            headers=self._auth(),
        )

        self.assertEqual(response.status_code, 503)
        payload = response.get_json()
        self.assertEqual(payload["error"], "not_configured")
        self.assertTrue(payload["message"].startswith("I'm sorry"))
        self.assertEqual(self.db.collections[CHATS_COLLECTION][chat["id"]]["messages"], [])
        self.assertEqual(self.genai.sent, [])

    def test_send_message_requires_content(self) -> None:
        chat = self._start_chat()

        response = self.client.post(f"/chats/{chat['id']}/messages", json={"content": "  "}, headers=self._auth())

        self.assertEqual(response.status_code, 400)

    def test_missing_database_reports_unavailable_store(self) -> None:
        with patch("chatwith_backend.chats.routes.get_firestore_client", side_effect=RuntimeError("no db")):
            response = self.client.get("/chats", headers=self._auth())

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json()["error"], "NO_SUPABASE")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
