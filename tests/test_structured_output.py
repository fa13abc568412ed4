# /tests/test_structured_output.py

import json
import unittest
from unittest.mock import MagicMock
import sys
import os

# Add root directory to path to allow imports from 'core'
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from core.errors import ExecutionError, StateError, StructuralError
from core.llm import Role, TextResponse, ToolCallResponse, schema_for, tool_for
from core.models import AssignmentContext, ExecutionPlan
from core.structured_output import extract_fenced_block, parse_structured_response, request_structured

ASSIGNMENT = {
    "refined_assignment": "Total sales in EMEA",
    "unhandled_parts": [],
    "context": [{"entity": "Sale", "operations": ["querySalesData"]}],
}


def scripted_client(*responses):
    client = MagicMock()
    client.chat.side_effect = list(responses)
    return client


class TestParseStructuredResponse(unittest.TestCase):

    def test_tool_call(self):
        result = parse_structured_response(ToolCallResponse(name="AssignmentContext", arguments=ASSIGNMENT), AssignmentContext)

        self.assertEqual(result.context[0].entity, "Sale")

    def test_camel_case_aliases(self):
        result = parse_structured_response(
            ToolCallResponse(name="AssignmentContext", arguments={"refinedAssignment": "x", "unhandledParts": ["y"]}),
            AssignmentContext,
        )

        self.assertEqual((result.refined_assignment, result.unhandled_parts), ("x", ["y"]))

    def test_typed_yaml_block(self):
        text = "Sure.\n```yaml\ntype: AssignmentContext\ndata:\n  refined_assignment: Total sales\n  context:\n    - entity: Sale\n```"

        result = parse_structured_response(TextResponse(text=text), AssignmentContext)

        self.assertEqual(result.refined_assignment, "Total sales")
        self.assertEqual(result.context[0].operations, [])

    def test_json_block_is_accepted(self):
        text = "```json\n" + json.dumps({"type": "AssignmentContext", "data": ASSIGNMENT}) + "\n```"

        self.assertEqual(parse_structured_response(TextResponse(text=text), AssignmentContext).unhandled_parts, [])

    def test_missing_block(self):
        with self.assertRaises(StructuralError) as cm:
            parse_structured_response(TextResponse(text="The total is 42."), AssignmentContext)

        self.assertIn("Calling the Function / Tool AssignmentContext is not optional", str(cm.exception))

    def test_wrong_type_or_tool(self):
        with self.assertRaises(StructuralError):
            parse_structured_response(TextResponse(text="```yaml\ntype: ExecutionPlan\ndata: {}\n```"), AssignmentContext)
        with self.assertRaises(StructuralError):
            parse_structured_response(ToolCallResponse(name="ExecutionPlan", arguments={}), AssignmentContext)

    def test_schema_mismatch(self):
        with self.assertRaises(StructuralError):
            parse_structured_response(ToolCallResponse(name="ExecutionPlan", arguments={"nodes": "none"}), ExecutionPlan)

    def test_extract_fenced_block_skips_other_languages(self):
        text = "```python\nprint(1)\n```\n```yaml\na: 1\n```"

        self.assertEqual(extract_fenced_block(text), "a: 1")


class TestRequestStructured(unittest.TestCase):

    def test_retry_appends_feedback(self):
        # --- Arrange ---
        client = scripted_client(
            TextResponse(text="I think you want sales."),
            ToolCallResponse(name="AssignmentContext", arguments=ASSIGNMENT),
        )

        # --- Act ---
        result = request_structured(client, [], AssignmentContext)

        # --- Assert ---
        self.assertEqual(result.refined_assignment, "Total sales in EMEA")
        self.assertEqual(client.chat.call_count, 2)
        second_conversation = client.chat.call_args_list[1][0][0]
        self.assertEqual(second_conversation[-2].role, Role.ASSISTANT)
        self.assertEqual(second_conversation[-2].content, "I think you want sales.")
        self.assertIn("is not optional", second_conversation[-1].content)
        self.assertEqual(client.chat.call_args_list[1][1]["tools"][0].name, "AssignmentContext")

    def test_validator_errors_exhaust_the_budget(self):
        responses = [ToolCallResponse(name="AssignmentContext", arguments=ASSIGNMENT) for _ in range(4)]
        client = scripted_client(*responses)

        with self.assertRaises(ExecutionError) as cm:
            request_structured(client, [], AssignmentContext, validator=lambda a: ["unknown entity 'Sale'"], max_attempts=4)

        self.assertEqual(client.chat.call_count, 4)
        self.assertTrue(str(cm.exception).startswith("Aborted after 4 attempts"))
        self.assertIsInstance(cm.exception.__cause__, StateError)

    def test_text_only_mode_sends_no_tools(self):
        client = scripted_client(TextResponse(text="```yaml\ntype: AssignmentContext\ndata: {}\n```"))

        request_structured(client, [], AssignmentContext, use_tools=False)

        self.assertIsNone(client.chat.call_args[1]["tools"])


class TestToolSchemas(unittest.TestCase):

    def test_refs_are_inlined(self):
        dumped = json.dumps(schema_for(ExecutionPlan))

        self.assertNotIn("$ref", dumped)
        self.assertNotIn("$defs", dumped)
        self.assertIn("dependencies", dumped)

    def test_tool_named_after_model(self):
        tool = tool_for(AssignmentContext)

        self.assertEqual(tool.name, "AssignmentContext")
        self.assertIn("context", tool.parameters["properties"])


if __name__ == '__main__':
    unittest.main()
