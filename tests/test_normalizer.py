# /tests/test_normalizer.py

import json
import threading
import unittest
from unittest.mock import MagicMock
import sys
import os

# Add root directory to path to allow imports from 'core'
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from core.dictionary import PromptDictionary
from core.errors import NormalizationCancelled, PromptNormalizationError
from core.llm import TextResponse
from core.normalizer import PromptSchemaNormalizer, clean_json, extract_json_payload

DICTIONARY = PromptDictionary(
    actions=["search"],
    entities=["sale", "product"],
    fields=["region", "date"],
    operators=["equals"],
    aggregates=["sum"],
)

VALID = '```json\n{"workflow_type": "sequential", "steps": [{"ps": {"action": "search", "entities": ["sale"], "params": {"region": "EMEA"}}}]}\n```'
INVALID_ENTITY = '{"workflow_type": "sequential", "steps": [{"ps": {"action": "search", "entities": ["customer"]}}]}'


def scripted_client(*texts):
    client = MagicMock()
    client.chat.side_effect = [TextResponse(text=t) for t in texts]
    return client


class TestJsonCleaning(unittest.TestCase):

    def test_fences_are_stripped(self):
        payload = extract_json_payload('Here you go:\n```json\n{"a": 1}\n```')

        self.assertTrue(payload.startswith("{"))
        self.assertEqual(json.loads(clean_json(payload)), {"a": 1})

    def test_no_json_content(self):
        self.assertIsNone(extract_json_payload(""))
        self.assertIsNone(extract_json_payload("   "))
        self.assertIsNone(extract_json_payload("I cannot help with that."))

    def test_trailing_commas_are_removed(self):
        self.assertEqual(json.loads(clean_json('{"a": [1, 2,], "b": {"c": 3,},}')), {"a": [1, 2], "b": {"c": 3}})

    def test_extra_closing_brackets_and_prose_are_trimmed(self):
        self.assertEqual(json.loads(clean_json('{"a": {"b": 1}}}]')), {"a": {"b": 1}})
        self.assertEqual(json.loads(clean_json('{"a": 1} hope this helps {"b": 2}')), {"a": 1})

    def test_string_content_is_untouched(self):
        self.assertEqual(json.loads(clean_json('{"a": ",}", "b": "x]"}')), {"a": ",}", "b": "x]"})


class TestPromptSchemaNormalizer(unittest.TestCase):

    def test_valid_payload_on_first_attempt(self):
        # --- Arrange ---
        client = scripted_client(VALID)
        normalizer = PromptSchemaNormalizer(client)

        # --- Act ---
        workflow = normalizer.normalize("show me EMEA sales", DICTIONARY)

        # --- Assert ---
        self.assertEqual(client.chat.call_count, 1)
        self.assertEqual(workflow.steps[0].ps.cache_key, "search-sale-region")
        system_prompt = client.chat.call_args[0][0][0].content
        self.assertIn('"entities"', system_prompt)

    def test_validation_errors_are_fed_back(self):
        client = scripted_client(INVALID_ENTITY, VALID)
        normalizer = PromptSchemaNormalizer(client)

        result = normalizer.normalize_with_diagnostics("customers in EMEA", DICTIONARY)

        self.assertEqual(client.chat.call_count, 2)
        self.assertEqual(result.attempts, 2)
        self.assertTrue(result.is_valid)
        feedback = client.chat.call_args_list[1][0][0][-1].content
        self.assertIn("Step 1: Entity 'customer' is not in dictionary", feedback)
        self.assertIn('"workflow_type": "sequential"', feedback)

    def test_parse_failure_is_fatal_after_three_attempts(self):
        client = scripted_client('{"steps": [', '{"steps": [', '{"workflow_type": "sequential", "steps": [{"ps": ')
        normalizer = PromptSchemaNormalizer(client, max_attempts=3)

        with self.assertRaises(PromptNormalizationError) as cm:
            normalizer.normalize("anything", DICTIONARY)

        self.assertEqual(client.chat.call_count, 3)
        self.assertIn('"workflow_type"', cm.exception.raw_payload)

    def test_missing_json_is_retried_then_fatal(self):
        client = scripted_client("no idea", "", "still no idea")
        normalizer = PromptSchemaNormalizer(client, max_attempts=3)

        with self.assertRaises(PromptNormalizationError) as cm:
            normalizer.normalize("anything", DICTIONARY)

        self.assertEqual(client.chat.call_count, 3)
        self.assertIn("No JSON content found", str(cm.exception))
        self.assertEqual(cm.exception.raw_payload, "still no idea")

    def test_validation_failure_returns_best_effort_schema(self):
        client = scripted_client(INVALID_ENTITY, INVALID_ENTITY, INVALID_ENTITY)
        normalizer = PromptSchemaNormalizer(client, max_attempts=3)

        result = normalizer.normalize_with_diagnostics("customers", DICTIONARY)

        self.assertEqual(client.chat.call_count, 3)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.workflow.steps[0].ps.entities, ["customer"])
        self.assertEqual(result.workflow.steps[0].ps.cache_key, "search-customer")

    def test_empty_dictionary_fails_on_action(self):
        text = '{"workflow_type": "sequential", "steps": [{"ps": {"action": "search"}}]}'
        client = scripted_client(text, text, text)

        result = PromptSchemaNormalizer(client).normalize_with_diagnostics("search", PromptDictionary())

        self.assertEqual(result.validation_errors, ["Step 1: Action 'search' is not in dictionary"])

    def test_empty_prompt_is_rejected(self):
        client = MagicMock()

        with self.assertRaises(ValueError):
            PromptSchemaNormalizer(client).normalize("  ", DICTIONARY)
        client.chat.assert_not_called()

    def test_cancellation_stops_before_calling_the_model(self):
        client = MagicMock()
        cancel = threading.Event()
        cancel.set()

        with self.assertRaises(NormalizationCancelled):
            PromptSchemaNormalizer(client).normalize("sales", DICTIONARY, cancel_event=cancel)
        client.chat.assert_not_called()


if __name__ == '__main__':
    unittest.main()
