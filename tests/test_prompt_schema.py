# /tests/test_prompt_schema.py

import hashlib
import unittest
import sys
import os

# Add root directory to path to allow imports from 'core'
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from core.dictionary import PromptDictionary
from core.prompt_schema import PromptSchema, PromptSchemaKey, PromptSchemaStep, PromptSchemaWorkflow

DICTIONARY = PromptDictionary(
    actions=["search", "summarize"],
    entities=["sale", "product"],
    fields=["region", "amount", "date"],
    operators=["equals"],
    aggregates=["sum"],
)


class TestPromptSchemaKey(unittest.TestCase):

    def test_string_key_layout(self):
        schema = PromptSchema(
            action="search",
            entities=["sale", "product"],
            params={"region": "EMEA", "amount": 10},
            group_by=["region", "date"],
        )

        self.assertEqual(schema.generate_cache_key(), "search-product_sale-amount_region-group_region_date")
        self.assertEqual(schema.cache_key, "search-product_sale-amount_region-group_region_date")

    def test_key_ignores_param_values_and_ordering(self):
        first = PromptSchema(action="search", entities=["sale", "product"], params={"region": "EMEA", "amount": 5})
        second = PromptSchema(action="search", entities=["product", "sale"], params={"amount": 999, "region": "APAC"})

        self.assertEqual(first.key(), second.key())
        self.assertEqual(first.generate_cache_key(), second.generate_cache_key())

    def test_group_by_order_is_significant(self):
        first = PromptSchema(action="search", group_by=["region", "date"])
        second = PromptSchema(action="search", group_by=["date", "region"])

        self.assertNotEqual(first.generate_cache_key(), second.generate_cache_key())

    def test_empty_parts_are_omitted(self):
        self.assertEqual(PromptSchema(action="search").generate_cache_key(), "search")
        self.assertEqual(PromptSchema(action="search", group_by=["region"]).generate_cache_key(), "search-group_region")

    def test_hash_key_is_sha256_of_string_key(self):
        key = PromptSchemaKey.of(PromptSchema(action="summarize", entities=["sale"]))

        self.assertEqual(key.hash_key, hashlib.sha256(b"summarize-sale").hexdigest())
        self.assertEqual(len(key.hash_key), 64)

    def test_entities_are_an_ordered_set(self):
        schema = PromptSchema(action="search", entities=["sale", "product", "sale"])

        self.assertEqual(schema.entities, ["sale", "product"])

    def test_json_field_names(self):
        schema = PromptSchema.model_validate({
            "action": "search", "entities": ["sale"], "group_by": ["region"],
            "params": {"date": "2024-01-01"}, "unexpected": True,
        })

        self.assertEqual(schema.group_by, ["region"])
        self.assertEqual(
            set(schema.model_dump().keys()), {"action", "entities", "group_by", "params", "cache_key"}
        )


class TestPromptSchemaValidation(unittest.TestCase):

    def test_valid_schema_has_no_errors(self):
        schema = PromptSchema(action="search", entities=["sale"], params={"region": "EMEA"}, group_by=["date"])

        self.assertEqual(schema.validate_against(DICTIONARY), [])

    def test_all_violations_are_reported(self):
        schema = PromptSchema(
            action="delete", entities=["customer"], params={"colour": "red"}, group_by=["city"]
        )

        errors = schema.validate_against(DICTIONARY)

        self.assertEqual(errors, [
            "Action 'delete' is not in dictionary",
            "Entity 'customer' is not in dictionary",
            "Param key 'colour' is not in dictionary",
            "Group by field 'city' is not in dictionary",
        ])

    def test_missing_action(self):
        self.assertEqual(PromptSchema(action=" ").validate_against(DICTIONARY), ["Action is required for cache key"])

    def test_local_action_is_always_allowed(self):
        self.assertEqual(PromptSchema(action="local").validate_against(DICTIONARY), [])


class TestPromptSchemaWorkflow(unittest.TestCase):

    def test_step_errors_are_prefixed(self):
        workflow = PromptSchemaWorkflow(steps=[
            PromptSchemaStep(ps=PromptSchema(action="search", entities=["sale"])),
            PromptSchemaStep(ps=PromptSchema(action="search", entities=["invoice"])),
        ])

        self.assertEqual(workflow.validate_against(DICTIONARY), ["Step 2: Entity 'invoice' is not in dictionary"])

    def test_unsupported_type_and_missing_steps(self):
        workflow = PromptSchemaWorkflow(workflow_type="parallel", steps=[])

        errors = workflow.validate_against(DICTIONARY)

        self.assertIn("Unsupported workflow type: parallel", errors)
        self.assertIn("At least one step is required", errors)

    def test_empty_dictionary_rejects_every_action(self):
        workflow = PromptSchemaWorkflow.model_validate(
            {"workflow_type": "sequential", "steps": [{"ps": {"action": "search"}}]}
        )

        self.assertEqual(workflow.validate_against(PromptDictionary()), ["Step 1: Action 'search' is not in dictionary"])

    def test_generate_cache_keys_for_every_step(self):
        workflow = PromptSchemaWorkflow(steps=[
            PromptSchemaStep(ps=PromptSchema(action="search", entities=["sale"])),
            PromptSchemaStep(ps=PromptSchema(action="summarize")),
        ])

        self.assertEqual(workflow.generate_cache_keys(), ["search-sale", "summarize"])
        self.assertEqual(workflow.steps[0].ps.cache_key, "search-sale")


class TestPromptDictionary(unittest.TestCase):

    def test_membership_and_deduplication(self):
        dictionary = PromptDictionary.from_mapping({"actions": ["search", "search"], "entities": ["sale"]})

        self.assertEqual(dictionary.actions, ("search",))
        self.assertTrue(dictionary.has_entity("sale"))
        self.assertFalse(dictionary.has_field("region"))

    def test_missing_categories_are_warned_not_fatal(self):
        with self.assertLogs("core.dictionary", level="WARNING") as logs:
            dictionary = PromptDictionary.from_mapping({"actions": ["search"]})

        self.assertEqual(dictionary.entities, ())
        self.assertTrue(any("entities" in line for line in logs.output))


if __name__ == '__main__':
    unittest.main()
