"""Tests for prompt regeneration and the flush policy."""

import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from talky.core.synthesizer import (
    SYNTHESIS_TEMPERATURE,
    TRAILER_SENTENCE,
    PromptSynthesizer,
    ensure_trailer,
    flush_due,
    render_modifications,
)
from talky.memory.models import Modification
from talky.memory.repository import PromptRepository, StoreError

from fakes import FakeOracle


class TestFlushDue(unittest.TestCase):

    def test_below_threshold(self):
        self.assertFalse(flush_due(2, failures=0, last_attempt_size=0, threshold=3))

    def test_at_threshold(self):
        self.assertTrue(flush_due(3, failures=0, last_attempt_size=0, threshold=3))

    def test_first_retry_on_next_save(self):
        self.assertFalse(flush_due(3, failures=1, last_attempt_size=3))
        self.assertTrue(flush_due(4, failures=1, last_attempt_size=3))

    def test_backoff_doubles(self):
        self.assertFalse(flush_due(5, failures=2, last_attempt_size=4))
        self.assertTrue(flush_due(6, failures=2, last_attempt_size=4))
        self.assertFalse(flush_due(9, failures=3, last_attempt_size=6))
        self.assertTrue(flush_due(10, failures=3, last_attempt_size=6))

    def test_backoff_is_capped(self):
        self.assertTrue(flush_due(28, failures=10, last_attempt_size=20, max_backoff=8))
        self.assertFalse(flush_due(27, failures=10, last_attempt_size=20, max_backoff=8))


class TestRendering(unittest.TestCase):

    def test_render_modifications(self):
        text = render_modifications([Modification("hours", "Closed Mondays"), Modification("menu", "Vegan")])
        self.assertEqual(text, "Tipo: hours\nDescripción: Closed Mondays\n\nTipo: menu\nDescripción: Vegan")

    def test_trailer_appended_once(self):
        once = ensure_trailer("Eres un asistente.")
        self.assertTrue(once.endswith(TRAILER_SENTENCE))
        self.assertEqual(ensure_trailer(once), once)


class SynthesizerTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.repo = PromptRepository(Path(self._tmp.name) / "talky.db")
        self.repo.update_prompt("u1", "Prompt base del restaurante.")

    def tearDown(self):
        self._tmp.cleanup()

    def make(self, oracle, **kwargs):
        return PromptSynthesizer(oracle, self.repo, **kwargs)


class TestSynthesize(SynthesizerTestCase):

    def test_request_embeds_prompt_and_batch(self):
        oracle = FakeOracle(syntheses=["Prompt revisado"])
        result = self.make(oracle).synthesize("Prompt actual X", [Modification("hours", "Closed Mondays")])

        self.assertTrue(result.ok)
        self.assertEqual(result.value, ensure_trailer("Prompt revisado"))
        call = oracle.calls_of("synthesize")[0]
        content = call["messages"][0]["content"]
        self.assertIn("Prompt actual X", content)
        self.assertIn("Tipo: hours\nDescripción: Closed Mondays", content)
        self.assertIn(TRAILER_SENTENCE, content)
        self.assertEqual(call["temperature"], SYNTHESIS_TEMPERATURE)

    def test_oracle_failure_is_a_result(self):
        oracle = FakeOracle(syntheses=[RuntimeError("timeout")])
        result = self.make(oracle).synthesize("p", [Modification("a", "b")])
        self.assertFalse(result.ok)
        self.assertIn("timeout", result.error)

    def test_empty_reply_is_a_failure(self):
        oracle = FakeOracle(syntheses=["   "])
        self.assertFalse(self.make(oracle).synthesize("p", [Modification("a", "b")]).ok)

    def test_synthesize_does_not_touch_store(self):
        oracle = FakeOracle(syntheses=["otro"])
        self.make(oracle).synthesize("p", [Modification("a", "b")])
        self.assertEqual(self.repo.get_prompt("u1"), "Prompt base del restaurante.")


class TestSaveAndFlush(SynthesizerTestCase):

    def test_three_saves_trigger_one_regeneration(self):
        oracle = FakeOracle(syntheses=["Prompt mejorado"])
        synth = self.make(oracle)

        results = [synth.save_and_flush("u1", Modification("t", f"d{i}")) for i in range(3)]

        self.assertIsNone(results[0])
        self.assertIsNone(results[1])
        self.assertTrue(results[2].ok)
        calls = oracle.calls_of("synthesize")
        self.assertEqual(len(calls), 1)
        content = calls[0]["messages"][0]["content"]
        self.assertIn("Prompt base del restaurante.", content)
        for i in range(3):
            self.assertIn(f"Descripción: d{i}", content)

        record = self.repo.get_record("u1")
        self.assertEqual(record.prompt, ensure_trailer("Prompt mejorado"))
        self.assertEqual(record.pending_modifications, [])
        self.assertEqual(len(record.history), 3)

    def test_batch_is_sent_oldest_first(self):
        oracle = FakeOracle()
        synth = self.make(oracle)
        for i in range(3):
            synth.save_and_flush("u1", Modification("t", f"d{i}"))

        content = oracle.calls_of("synthesize")[0]["messages"][0]["content"]
        self.assertLess(content.index("d0"), content.index("d1"))
        self.assertLess(content.index("d1"), content.index("d2"))

    def test_failed_regeneration_keeps_batch_and_retries(self):
        oracle = FakeOracle(syntheses=[RuntimeError("oracle down"), "Prompt con cuatro cambios"])
        synth = self.make(oracle)

        for i in range(3):
            last = synth.save_and_flush("u1", Modification("t", f"d{i}"))

        self.assertFalse(last.ok)
        record = self.repo.get_record("u1")
        self.assertEqual(len(record.pending_modifications), 3)
        self.assertEqual(record.prompt, "Prompt base del restaurante.")
        self.assertEqual(record.flush_failures, 1)

        fourth = synth.save_and_flush("u1", Modification("t", "d3"))

        self.assertTrue(fourth.ok)
        calls = oracle.calls_of("synthesize")
        self.assertEqual(len(calls), 2)
        for i in range(4):
            self.assertIn(f"Descripción: d{i}", calls[1]["messages"][0]["content"])
        record = self.repo.get_record("u1")
        self.assertEqual(record.pending_modifications, [])
        self.assertEqual(len(record.history), 4)
        self.assertEqual(record.flush_failures, 0)

    def test_repeated_failures_back_off(self):
        oracle = FakeOracle(syntheses=[RuntimeError("down")] * 10)
        synth = self.make(oracle)

        attempted = []
        for i in range(6):
            result = synth.save_and_flush("u1", Modification("t", f"d{i}"))
            attempted.append(result is not None)

        # saves 3 and 4 attempt; after two failures the next attempt waits two saves
        self.assertEqual(attempted, [False, False, True, True, False, True])
        self.assertEqual(len(self.repo.get_pending_modifications("u1")), 6)

    def test_store_error_during_flush_keeps_modification(self):
        oracle = FakeOracle()
        synth = self.make(oracle)
        for i in range(2):
            synth.save_and_flush("u1", Modification("t", f"d{i}"))

        with patch.object(self.repo, "commit_regeneration", side_effect=StoreError("locked")):
            result = synth.save_and_flush("u1", Modification("t", "d2"))

        self.assertFalse(result.ok)
        self.assertEqual(len(self.repo.get_pending_modifications("u1")), 3)
        self.assertEqual(len(self.repo.get_history("u1")), 3)

    def test_store_error_on_save_propagates(self):
        synth = self.make(FakeOracle())
        with patch.object(self.repo, "save_modification", side_effect=StoreError("disk full")):
            with self.assertRaises(StoreError):
                synth.save_and_flush("u1", Modification("t", "d"))

    def test_custom_threshold(self):
        oracle = FakeOracle()
        synth = self.make(oracle, threshold=1)
        self.assertTrue(synth.save_and_flush("u1", Modification("t", "d")).ok)
        self.assertEqual(len(oracle.calls_of("synthesize")), 1)


if __name__ == "__main__":
    unittest.main()
