from __future__ import annotations

import io
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from flask import Flask

from chatwith_backend.chats.routes import chats_bp
from chatwith_backend.files.routes import files_bp
from chatwith_backend.store.chats import FILES_COLLECTION
from fakes import FakeFirestore


class FilesApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.uploads = Path(self._tmp.name)
        app = Flask(__name__)
        app.config["TESTING"] = True
        app.config["UPLOADS_DIR"] = str(self.uploads)
        app.config["MAX_UPLOAD_SIZE"] = 1024
        app.register_blueprint(chats_bp)
        app.register_blueprint(files_bp)
        self.app = app
        self.client = app.test_client()

        self.db = FakeFirestore()
        self.db_patcher = patch("chatwith_backend.files.routes.get_firestore_client", return_value=self.db)
        self.db_patcher.start()
        self.verify_patcher = patch("chatwith_backend.auth.utils.firebase_auth.verify_id_token")
        self.mock_verify = self.verify_patcher.start()
        self.mock_verify.return_value = {"uid": "user123"}

    def tearDown(self) -> None:
        self.verify_patcher.stop()
        self.db_patcher.stop()
        self._tmp.cleanup()

    def _auth(self) -> dict[str, str]:
        return {"Authorization": "Bearer valid-token"}

    def _upload(self, file_type: str, name: str, data: bytes):
        return self.client.post(
            "/files",
            data={"fileType": file_type, "file": (io.BytesIO(data), name)},
            content_type="multipart/form-data",
            headers=self._auth(),
        )

    def test_file_types_are_public(self) -> None:
        response = self.client.get("/files/types")

        self.assertEqual(response.status_code, 200)
        items = response.get_json()["items"]
        youtube = next(item for item in items if item["type"] == "youtube")
        self.assertFalse(youtube["comingSoon"])
        self.assertTrue(next(item for item in items if item["type"] == "audio")["comingSoon"])

    def test_list_files_requires_authorization(self) -> None:
        response = self.client.get("/files")
        self.assertEqual(response.status_code, 401)
        payload = response.get_json()
        self.assertIsNotNone(payload)
        self.assertEqual(payload["error"], "unauthorized")

    def test_upload_text_file_is_stored_and_listed(self) -> None:
        response = self._upload("text", "notes.txt", b"remember the milk")

        self.assertEqual(response.status_code, 201)
        row = response.get_json()["file"]
        self.assertEqual(row["fileName"], "notes.txt")
        self.assertEqual(row["fileType"], "text")
        self.assertEqual(row["size"], len(b"remember the milk"))
        self.assertTrue((self.uploads / row["storagePath"]).exists())
        self.assertTrue(row["storagePath"].startswith("user123/"))

        listed = self.client.get("/files", headers=self._auth()).get_json()["items"]
        self.assertEqual([item["id"] for item in listed], [row["id"]])

    def test_upload_rejects_mismatched_type(self) -> None:
        response = self._upload("pdf", "notes.txt", b"plain text")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.db.collections.get(FILES_COLLECTION, {}), {})

    def test_upload_rejects_coming_soon_types(self) -> None:
        response = self._upload("audio", "song.mp3", b"ID3")

        self.assertEqual(response.status_code, 400)

    def test_upload_rejects_empty_and_oversized_files(self) -> None:
        self.assertEqual(self._upload("text", "empty.txt", b"").status_code, 400)
        self.assertEqual(self._upload("text", "big.txt", b"x" * 4096).status_code, 400)
        self.assertEqual(list(self.uploads.rglob("*.txt")), [])

    def test_upload_accepts_file_of_exactly_max_size(self) -> None:
        response = self._upload("text", "limit.txt", b"a" * 1024)

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.get_json()["file"]["size"], 1024)
        self.assertEqual(self._upload("text", "over.txt", b"a" * 1025).status_code, 400)

    def test_youtube_link_is_stored_with_transcript(self) -> None:
        response = self.client.post(
            "/files",
            json={"fileType": "youtube", "url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ", "transcript": "never gonna"},
            headers=self._auth(),
        )

        self.assertEqual(response.status_code, 201)
        row = response.get_json()["file"]
        self.assertEqual(row["fileType"], "youtube")
        self.assertEqual(row["transcript"], "never gonna")
        self.assertIsNone(row["storagePath"])

    def test_youtube_link_must_be_valid(self) -> None:
        response = self.client.post(
            "/files",
            json={"fileType": "youtube", "url": "https://example.com/video"},
            headers=self._auth(),
        )

        self.assertEqual(response.status_code, 400)

    def test_json_upload_only_for_youtube(self) -> None:
        response = self.client.post("/files", json={"fileType": "text"}, headers=self._auth())

        self.assertEqual(response.status_code, 400)

    def test_foreign_file_is_not_found(self) -> None:
        self.db.seed(FILES_COLLECTION, "theirs", {"uid": "someone-else", "fileName": "x.txt", "fileType": "text"})

        response = self.client.get("/files/theirs", headers=self._auth())

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"], "NOT_FOUND")

    def test_download_returns_stored_bytes(self) -> None:
        row = self._upload("text", "notes.txt", b"remember the milk").get_json()["file"]

        response = self.client.get(f"/files/{row['id']}/download", headers=self._auth())
        try:
            self.assertEqual(response.status_code, 200)
            self.assertEqual(response.data, b"remember the milk")
            self.assertIn("attachment", response.headers["Content-Disposition"])
        finally:
            response.close()


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
