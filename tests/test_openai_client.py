"""Tests for the OpenAI-backed oracle, with the SDK client mocked out."""

import unittest
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from talky.clients.openai_client import (
    OpenAIOracle,
    OracleCallError,
    classify_openai_error,
    normalize_api_base,
)
from talky.config.settings import Settings


def chat_response(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class TransientError(Exception):

    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class TestNormalizeApiBase(unittest.TestCase):

    def test_default(self):
        self.assertEqual(normalize_api_base(None), "https://api.openai.com/v1")

    def test_appends_v1(self):
        self.assertEqual(normalize_api_base("http://localhost:8080/"), "http://localhost:8080/v1")

    def test_trims_endpoint(self):
        self.assertEqual(
            normalize_api_base('"https://proxy.example/v1/audio/transcriptions"'),
            "https://proxy.example/v1",
        )

    def test_missing_scheme(self):
        with self.assertRaises(RuntimeError):
            normalize_api_base("api.openai.com")


class TestClassifyError(unittest.TestCase):

    def test_codes(self):
        self.assertEqual(classify_openai_error(Exception("Error code: 429 rate limit")), "openai_rate_limit")
        self.assertEqual(classify_openai_error(Exception("Request timed out.")), "openai_timeout")
        self.assertEqual(classify_openai_error(Exception("401 Incorrect API key")), "openai_auth")
        self.assertEqual(classify_openai_error(Exception("weird")), "openai_unknown")


class OracleTestCase(unittest.TestCase):

    def setUp(self):
        self.client = MagicMock()
        self.oracle = OpenAIOracle(Settings(openai_api_key="sk-test", openai_model="gpt-4"), client=self.client)


class TestComplete(OracleTestCase):

    def test_success(self):
        self.client.chat.completions.create.return_value = chat_response("  Hola  ")

        reply = self.oracle.complete("sys", [{"role": "user", "content": "hi"}], temperature=0.3)

        self.assertEqual(reply, "Hola")
        kwargs = self.client.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs["model"], "gpt-4")
        self.assertEqual(kwargs["temperature"], 0.3)
        self.assertEqual(kwargs["messages"][0], {"role": "system", "content": "sys"})
        self.assertEqual(kwargs["messages"][1], {"role": "user", "content": "hi"})

    def test_single_attempt_on_failure(self):
        self.client.chat.completions.create.side_effect = Exception("Request timed out.")

        with self.assertRaises(OracleCallError) as ctx:
            self.oracle.complete("sys", [{"role": "user", "content": "hi"}])

        self.assertEqual(ctx.exception.code, "openai_timeout")
        self.assertEqual(self.client.chat.completions.create.call_count, 1)

    def test_empty_reply(self):
        self.client.chat.completions.create.return_value = chat_response(None)
        with self.assertRaises(OracleCallError) as ctx:
            self.oracle.complete("sys", [{"role": "user", "content": "hi"}])
        self.assertEqual(ctx.exception.code, "empty_reply")

    def test_invalid_message(self):
        with self.assertRaises(OracleCallError):
            self.oracle.complete("sys", [{"content": "no role"}])
        self.client.chat.completions.create.assert_not_called()


class TestTranscribe(OracleTestCase):

    @patch("talky.clients.openai_client.time.sleep")
    def test_retries_transient_errors(self, sleep):
        self.client.audio.transcriptions.create.side_effect = [
            TransientError("service unavailable", 503),
            SimpleNamespace(text=" hola "),
        ]

        text = self.oracle.transcribe(b"\x01" * 2048, mime_type="audio/ogg", language="es")

        self.assertEqual(text, "hola")
        self.assertEqual(self.client.audio.transcriptions.create.call_count, 2)
        kwargs = self.client.audio.transcriptions.create.call_args.kwargs
        self.assertEqual(kwargs["language"], "es")
        self.assertEqual(kwargs["file"].name, "voice_note.ogg")
        sleep.assert_called_once()

    @patch("talky.clients.openai_client.time.sleep")
    def test_permanent_error_not_retried(self, sleep):
        self.client.audio.transcriptions.create.side_effect = TransientError("bad request", 400)

        with self.assertRaises(OracleCallError):
            self.oracle.transcribe(b"\x01" * 2048)

        self.assertEqual(self.client.audio.transcriptions.create.call_count, 1)
        sleep.assert_not_called()

    def test_empty_transcript(self):
        self.client.audio.transcriptions.create.return_value = SimpleNamespace(text="")
        with self.assertRaises(OracleCallError) as ctx:
            self.oracle.transcribe(b"\x01" * 2048)
        self.assertEqual(ctx.exception.code, "empty_reply")

    def test_empty_payload(self):
        with self.assertRaises(OracleCallError):
            self.oracle.transcribe(b"")


if __name__ == "__main__":
    unittest.main()
