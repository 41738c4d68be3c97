import importlib
import io
import os
import sys
import tempfile
import time
import unittest
from pathlib import Path

from moto import mock_aws

ENV_KEYS = [
    "SHARESPACE_STORAGE_ROOT",
    "SHARESPACE_DATA_DIR",
    "SHARESPACE_LOGS_DIR",
    "SHARESPACE_S3_BUCKET",
    "SHARESPACE_DISABLE_SCHEDULER",
    "SECRET_KEY",
    "REDIS_URL",
]


def _drop_modules():
    for name in list(sys.modules):
        if name == "sharespace" or name.startswith("sharespace."):
            del sys.modules[name]


class ChatRoutesTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        root = Path(self.storage_dir.name)
        for key in ENV_KEYS:
            os.environ.pop(key, None)
        os.environ["SHARESPACE_STORAGE_ROOT"] = str(root)
        os.environ["SHARESPACE_DATA_DIR"] = str(root / "data")
        os.environ["SHARESPACE_LOGS_DIR"] = str(root / "logs")
        os.environ["SHARESPACE_S3_BUCKET"] = "sharespace-chat-test"
        os.environ["SHARESPACE_DISABLE_SCHEDULER"] = "1"
        os.environ["SECRET_KEY"] = "test-secret"
        os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
        os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
        os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

        self.aws = mock_aws()
        self.aws.start()
        _drop_modules()
        self.app_module = importlib.import_module("sharespace.app")
        self.storage = importlib.import_module("sharespace.storage")
        self.extensions = importlib.import_module("sharespace.extensions")
        self.app = self.app_module.app
        self.app.config.update(TESTING=True)
        self.app_module.object_store.ensure_bucket()
        self.client = self.app.test_client()

    def tearDown(self):
        self.aws.stop()
        self.storage_dir.cleanup()
        for key in ENV_KEYS:
            os.environ.pop(key, None)
        _drop_modules()

    def _create_room(self, **fields):
        response = self.client.post("/api/chat/rooms", json=fields)
        self.assertEqual(response.status_code, 201, response.get_json())
        return response.get_json()["room"]

    def _join(self, room_id, username, **fields):
        payload = {"roomId": room_id, "username": username}
        payload.update(fields)
        return self.client.post("/api/chat/participants", json=payload)

    def test_create_room_defaults(self):
        before = time.time()
        room = self._create_room(name="Standup")
        self.assertEqual(room["name"], "Standup")
        self.assertEqual(len(room["roomId"]), 8)
        self.assertFalse(room["isPasswordProtected"])
        self.assertTrue(room["isActive"])

        stored = self.storage.get_room(room["roomId"])
        self.assertAlmostEqual(stored["expires_at"], before + 24 * 3600, delta=60)

        fetched = self.client.get(f"/api/chat/rooms/{room['roomId']}")
        self.assertEqual(fetched.status_code, 200)
        self.assertEqual(fetched.get_json()["room"]["roomId"], room["roomId"])

    def test_room_tied_to_file_inherits_expiry(self):
        upload = self.client.post(
            "/api/files/upload",
            data={"file": (io.BytesIO(b"data"), "a.txt", "text/plain"), "expiresIn": "2"},
            content_type="multipart/form-data",
        ).get_json()
        token = upload["downloadUrl"].rsplit("/", 1)[-1]

        room = self._create_room(name="File chat", fileToken=token)
        self.assertEqual(room["fileId"], upload["fileId"])
        file_record = self.storage.get_file(upload["fileId"])
        stored = self.storage.get_room(room["roomId"])
        self.assertEqual(stored["expires_at"], file_record["expires_at"])

        longer = self._create_room(name="Longer", fileToken=token, expiryTime="48")
        self.assertEqual(
            self.storage.get_room(longer["roomId"])["expires_at"], file_record["expires_at"]
        )

    def test_unknown_room_returns_error_envelope(self):
        response = self.client.get("/api/chat/rooms/NOPE1234")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json(), {"success": False, "error": "Room not found"})

    def test_password_protected_room(self):
        room = self._create_room(name="Private", password="letmein")
        self.assertTrue(room["isPasswordProtected"])

        wrong = self.client.post(f"/api/chat/rooms/{room['roomId']}/verify", json={"password": "no"})
        self.assertEqual(wrong.status_code, 403)
        ok = self.client.post(f"/api/chat/rooms/{room['roomId']}/verify", json={"password": "letmein"})
        self.assertEqual(ok.status_code, 200)
        self.assertTrue(ok.get_json()["grant"])

        self.assertEqual(self._join(room["roomId"], "alice").status_code, 401)
        self.assertEqual(self._join(room["roomId"], "alice", password="nope").status_code, 403)
        self.assertEqual(self._join(room["roomId"], "alice", password="letmein").status_code, 201)

    def test_protected_room_reads_require_grant(self):
        room_id = self._create_room(name="Private", password="letmein")["roomId"]
        joined = self._join(room_id, "alice", password="letmein")
        grant = joined.get_json()["grant"]
        headers = {"X-Room-Grant": grant}
        sent = self.client.post(
            "/api/chat/messages",
            json={"roomId": room_id, "username": "alice", "message": "secret"},
            headers=headers,
        )
        self.assertEqual(sent.status_code, 201)

        for path in (f"/api/chat/messages?roomId={room_id}", f"/api/chat/participants?roomId={room_id}"):
            with self.subTest(path=path):
                denied = self.client.get(path)
                self.assertEqual(denied.status_code, 401)
                self.assertEqual(denied.get_json()["error"], "Room password required")
                forged = self.client.get(path, headers={"X-Room-Grant": "forged"})
                self.assertEqual(forged.status_code, 401)
                self.assertEqual(self.client.get(path, headers=headers).status_code, 200)

        listed = self.client.get(f"/api/chat/messages?roomId={room_id}&grant={grant}").get_json()
        self.assertEqual([item["message"] for item in listed["messages"]], ["secret"])

        other_id = self._create_room(name="Other", password="letmein")["roomId"]
        reused = self.client.get(f"/api/chat/messages?roomId={other_id}", headers=headers)
        self.assertEqual(reused.status_code, 401)

        no_grant = self.client.put(
            "/api/chat/participants", json={"roomId": room_id, "username": "alice", "isOnline": False}
        )
        self.assertEqual(no_grant.status_code, 401)

    def test_join_send_and_list_messages(self):
        room = self._create_room(name="Room")
        room_id = room["roomId"]

        not_joined = self.client.post(
            "/api/chat/messages", json={"roomId": room_id, "username": "bob", "message": "hi"}
        )
        self.assertEqual(not_joined.status_code, 403)

        joined = self._join(room_id, "bob")
        self.assertEqual(joined.status_code, 201)
        rejoined = self._join(room_id, "bob")
        self.assertEqual(rejoined.status_code, 200)
        self.assertEqual(joined.get_json()["participant"]["id"], rejoined.get_json()["participant"]["id"])

        for text in ("first", "second", "third"):
            response = self.client.post(
                "/api/chat/messages", json={"roomId": room_id, "username": "bob", "message": text}
            )
            self.assertEqual(response.status_code, 201)

        listed = self.client.get(f"/api/chat/messages?roomId={room_id}&limit=2").get_json()
        self.assertEqual([item["message"] for item in listed["messages"]], ["second", "third"])

        participants = self.client.get(f"/api/chat/participants?roomId={room_id}").get_json()
        self.assertEqual([item["username"] for item in participants["participants"]], ["bob"])

    def test_message_validation(self):
        room_id = self._create_room(name="Room")["roomId"]
        self._join(room_id, "bob")
        empty = self.client.post(
            "/api/chat/messages", json={"roomId": room_id, "username": "bob", "message": "   "}
        )
        self.assertEqual(empty.status_code, 400)
        too_long = self.client.post(
            "/api/chat/messages",
            json={"roomId": room_id, "username": "bob", "message": "x" * 2001},
        )
        self.assertEqual(too_long.status_code, 400)
        bad_type = self.client.post(
            "/api/chat/messages",
            json={"roomId": room_id, "username": "bob", "message": "hi", "messageType": "video"},
        )
        self.assertEqual(bad_type.status_code, 400)
        missing_room = self.client.get("/api/chat/messages")
        self.assertEqual(missing_room.status_code, 400)

    def test_expired_room_rejects_writes(self):
        room_id = self._create_room(name="Old")["roomId"]
        self._join(room_id, "bob")
        with self.storage.get_db() as conn:
            conn.execute(
                "UPDATE chat_rooms SET expires_at = ? WHERE room_id = ?", (time.time() - 5, room_id)
            )
        response = self.client.post(
            "/api/chat/messages", json={"roomId": room_id, "username": "bob", "message": "late"}
        )
        self.assertEqual(response.status_code, 410)

        self.assertEqual(self.storage.expire_chat_rooms(), 1)
        participant = self.storage.get_participant(room_id, "bob")
        self.assertEqual(participant["is_online"], 0)

    def test_update_participant_status(self):
        room_id = self._create_room(name="Room")["roomId"]
        self._join(room_id, "carol")
        response = self.client.put(
            "/api/chat/participants", json={"roomId": room_id, "username": "carol", "isOnline": False}
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.get_json()["participant"]["isOnline"])

        unknown = self.client.put(
            "/api/chat/participants", json={"roomId": room_id, "username": "dave", "isOnline": True}
        )
        self.assertEqual(unknown.status_code, 404)

    def test_realtime_events_reach_subscribers(self):
        room_id = self._create_room(name="Live")["roomId"]
        sio_client = self.extensions.socketio.test_client(self.app, flask_test_client=self.client)
        self.assertTrue(sio_client.is_connected())

        sio_client.emit("subscribe", {"roomId": room_id})
        received = sio_client.get_received()
        self.assertEqual(received[0]["name"], "subscribed")
        self.assertEqual(received[0]["args"][0], {"roomId": room_id})

        self._join(room_id, "erin")
        self.client.post(
            "/api/chat/messages", json={"roomId": room_id, "username": "erin", "message": "hello"}
        )
        self.client.put(
            "/api/chat/participants", json={"roomId": room_id, "username": "erin", "isOnline": False}
        )
        names = [event["name"] for event in sio_client.get_received()]
        self.assertEqual(names, ["participant_joined", "message_created", "participant_updated"])

        sio_client.emit("unsubscribe", {"roomId": room_id})
        self.assertEqual(sio_client.get_received()[0]["name"], "unsubscribed")
        self.client.post(
            "/api/chat/messages", json={"roomId": room_id, "username": "erin", "message": "again"}
        )
        self.assertEqual(sio_client.get_received(), [])
        sio_client.disconnect()

    def test_subscribe_to_unknown_room_is_rejected(self):
        sio_client = self.extensions.socketio.test_client(self.app, flask_test_client=self.client)
        sio_client.emit("subscribe", {"roomId": "MISSING1"})
        received = sio_client.get_received()
        self.assertEqual(received[0]["name"], "subscription_error")
        sio_client.disconnect()

    def test_subscribe_to_protected_room_needs_grant(self):
        room_id = self._create_room(name="Private", password="letmein")["roomId"]
        grant = self.client.post(
            f"/api/chat/rooms/{room_id}/verify", json={"password": "letmein"}
        ).get_json()["grant"]
        sio_client = self.extensions.socketio.test_client(self.app, flask_test_client=self.client)

        sio_client.emit("subscribe", {"roomId": room_id})
        denied = sio_client.get_received()
        self.assertEqual(denied[0]["name"], "subscription_error")
        self.assertEqual(denied[0]["args"][0]["error"], "Room password required")

        sio_client.emit("subscribe", {"roomId": room_id, "grant": grant})
        self.assertEqual(sio_client.get_received()[0]["name"], "subscribed")
        sio_client.disconnect()


if __name__ == "__main__":
    unittest.main()
