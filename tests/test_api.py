"""HTTP tests for the FastAPI server, with the controller wired to a scripted oracle."""

import base64
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

from talky.api import server
from talky.api.server import app, get_controller
from talky.config.settings import Settings
from talky.core.training import WELCOME_BLOCK, TrainingController
from talky.memory.repository import StoreError

from fakes import FakeOracle, make_wav, modification_json


class ApiTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        settings = Settings(
            openai_api_key="sk-test",
            db_path=str(Path(self._tmp.name) / "talky.db"),
            default_user_id="default",
        )
        self.oracle = FakeOracle(classifications=[modification_json("hours", "Closed Mondays")])
        self.controller = TrainingController.from_settings(settings, oracle=self.oracle)
        app.dependency_overrides[get_controller] = lambda: self.controller
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        self._tmp.cleanup()


class TestMessageEndpoint(ApiTestCase):

    def test_voice_note_cut_mid_sample(self):
        self.oracle.transcripts = ["hola"]
        self.client.post("/message", json={"session_id": "s1", "text": "entrenar"})
        audio = base64.b64encode(make_wav()[:-1]).decode("ascii")

        resp = self.client.post(
            "/message", json={"session_id": "s1", "audio_base64": audio, "mime_type": "audio/wav"}
        )

        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["handled"])

    def test_entrenar(self):
        resp = self.client.post("/message", json={"session_id": "s1", "text": "entrenar"})

        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertTrue(data["handled"])
        self.assertEqual(data["mode"], "training")
        self.assertEqual(data["messages"][0]["lines"], WELCOME_BLOCK)
        self.assertEqual(data["messages"][0]["text"], "\n".join(WELCOME_BLOCK))

    def test_idle_message_not_handled(self):
        resp = self.client.post("/message", json={"session_id": "s1", "text": "hola"})

        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.json()["handled"])
        self.assertEqual(resp.json()["mode"], "idle")
        self.assertEqual(resp.json()["messages"], [])

    def test_modification_round(self):
        self.client.post("/message", json={"session_id": "s1", "text": "entrenar"})
        resp = self.client.post("/message", json={"session_id": "s1", "text": "We close on Mondays"})

        self.assertIn("**Tipo:** hours", resp.json()["messages"][0]["text"])
        record = self.client.get("/records/default").json()
        self.assertEqual(len(record["pending_modifications"]), 1)
        self.assertEqual(record["pending_modifications"][0]["description"], "Closed Mondays")

    def test_voice_note(self):
        self.oracle.transcripts = ["entrenar"]
        payload = {
            "session_id": "s1",
            "audio_base64": base64.b64encode(make_wav()).decode("ascii"),
            "mime_type": "audio/wav",
        }

        resp = self.client.post("/message", json=payload)

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["mode"], "training")

    def test_missing_body(self):
        resp = self.client.post("/message", json={"session_id": "s1", "text": "  "})
        self.assertEqual(resp.status_code, 400)

    def test_invalid_base64(self):
        resp = self.client.post("/message", json={"session_id": "s1", "audio_base64": "not base64!!"})
        self.assertEqual(resp.status_code, 400)

    def test_empty_session_id(self):
        resp = self.client.post("/message", json={"session_id": "", "text": "entrenar"})
        self.assertEqual(resp.status_code, 422)


class TestRecordEndpoints(ApiTestCase):

    def test_put_prompt(self):
        resp = self.client.put("/records/rest-42/prompt", json={"prompt": "Eres el asistente."})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["prompt"], "Eres el asistente.")
        self.assertEqual(self.client.get("/records/rest-42").json()["prompt"], "Eres el asistente.")

    def test_fresh_record(self):
        data = self.client.get("/records/nobody").json()
        self.assertEqual(data["prompt"], "")
        self.assertEqual(data["history"], [])
        self.assertEqual(data["flush_failures"], 0)

    def test_store_unavailable(self):
        with patch.object(self.controller.repository, "get_record", side_effect=StoreError("locked")):
            resp = self.client.get("/records/default")
        self.assertEqual(resp.status_code, 503)


class TestHealth(ApiTestCase):

    def test_health_counts_sessions(self):
        self.assertEqual(self.client.get("/health").json(), {"status": "ok", "active_sessions": 0})
        self.client.post("/message", json={"session_id": "s1", "text": "entrenar"})
        self.assertEqual(self.client.get("/health").json()["active_sessions"], 1)


class TestRun(unittest.TestCase):

    def test_run_serves_app_on_configured_address(self):
        settings = Settings(openai_api_key="sk-test", api_host="0.0.0.0", api_port=9000)
        with patch("talky.api.server.load_settings", return_value=settings), \
                patch("talky.api.server.uvicorn.run") as serve:
            server.run()
        serve.assert_called_once_with(app, host="0.0.0.0", port=9000)


if __name__ == "__main__":
    unittest.main()
