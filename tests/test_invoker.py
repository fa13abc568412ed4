# /tests/test_invoker.py

import time
import unittest
from unittest.mock import patch, MagicMock
import sys
import os

import requests

# Add root directory to path to allow imports from 'core'
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from core.config import settings
from core.errors import ExecutionPlanError
from core.invoker import HttpOperationInvoker, build_operation_registry
from core.retry import backoff_delays
from ingestion.sources import LocalHandbookSource

HANDBOOK_DIR = os.path.join(os.path.dirname(__file__), '..', 'handbook')
BASE_URL = "http://sales.test/api"


def fake_response(status_code=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.content = b"x" if payload is not None or text else b""
    response.text = text
    if payload is None:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = payload
    return response


class TestHttpOperationInvoker(unittest.TestCase):

    def setUp(self):
        self.handbook = LocalHandbookSource(HANDBOOK_DIR).load_handbook()
        self.session = MagicMock()
        sleep_patcher = patch('core.retry.time.sleep')
        self.mock_sleep = sleep_patcher.start()
        self.addCleanup(sleep_patcher.stop)

    def invoker(self, operation_id):
        _, op = self.handbook.find_operation(operation_id)
        return HttpOperationInvoker(BASE_URL, op, self.session, timeout=5)

    def test_path_parameters_are_quoted(self):
        self.session.request.return_value = fake_response(payload={"productId": "P 1"})

        result = self.invoker("getProduct")({"productId": "P 1"})

        self.assertEqual(result, {"productId": "P 1"})
        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ("GET", f"{BASE_URL}/products/P%201"))
        self.assertIsNone(kwargs["params"])
        self.assertIsNone(kwargs["json"])

    def test_query_parameters_and_extra_arguments(self):
        self.session.request.return_value = fake_response(payload=[])

        self.invoker("listSales")({"region": "EMEA", "limit": 5})

        self.assertEqual(self.session.request.call_args[1]["params"], {"region": "EMEA", "limit": 5})

    def test_post_body(self):
        self.session.request.return_value = fake_response(payload={"total": 10})
        body = {"filter": {"region": "EMEA"}, "aggregate": "sum"}

        self.invoker("querySalesData")({"body": body})

        args, kwargs = self.session.request.call_args
        self.assertEqual(args[0], "POST")
        self.assertEqual(kwargs["json"], body)

    def test_missing_required_parameter(self):
        with self.assertRaises(ExecutionPlanError) as cm:
            self.invoker("getProduct")({})

        self.assertIn("missing required path parameter 'productId'", str(cm.exception))
        self.session.request.assert_not_called()

    def test_transient_status_is_retried(self):
        # --- Arrange ---
        self.session.request.side_effect = [fake_response(503), fake_response(502), fake_response(payload={"ok": True})]

        # --- Act ---
        result = self.invoker("listSales")({})

        # --- Assert ---
        self.assertEqual(result, {"ok": True})
        self.assertEqual(self.session.request.call_count, 3)
        self.assertEqual(self.mock_sleep.call_count, 2)

    def test_client_error_is_not_retried(self):
        self.session.request.return_value = fake_response(404, text="no such product")

        with self.assertRaises(ExecutionPlanError) as cm:
            self.invoker("getProduct")({"productId": "P-404"})

        self.assertEqual(self.session.request.call_count, 1)
        self.assertEqual(cm.exception.operation_id, "getProduct")
        self.assertIn("HTTP 404", str(cm.exception))

    def test_connection_errors_exhaust_the_budget(self):
        self.session.request.side_effect = requests.ConnectionError("connection refused")

        with self.assertRaises(ExecutionPlanError):
            self.invoker("listSales")({})

        self.assertEqual(self.session.request.call_count, settings.NETWORK_RETRY_ATTEMPTS)

    def test_non_idempotent_request_is_not_resent_on_server_error(self):
        self.session.request.return_value = fake_response(503)

        with self.assertRaises(ExecutionPlanError) as cm:
            self.invoker("querySalesData")({"body": {"aggregate": "sum"}})

        self.assertEqual(self.session.request.call_count, 1)
        self.assertIn("HTTP 503", str(cm.exception))
        self.mock_sleep.assert_not_called()

    def test_non_idempotent_request_is_resent_when_it_never_connected(self):
        self.session.request.side_effect = [requests.ConnectTimeout("connect timed out"), fake_response(payload={"total": 1})]

        self.assertEqual(self.invoker("querySalesData")({"body": {}}), {"total": 1})
        self.assertEqual(self.session.request.call_count, 2)

    def test_expired_deadline_sends_nothing(self):
        with self.assertRaises(ExecutionPlanError) as cm:
            self.invoker("listSales")({}, deadline=time.monotonic() - 1)

        self.assertIn("reached its deadline", str(cm.exception))
        self.session.request.assert_not_called()

    def test_deadline_bounds_timeout_and_retries(self):
        # --- Arrange ---
        self.session.request.return_value = fake_response(503)
        deadline = time.monotonic() + 2.5

        # --- Act ---
        with patch.object(settings, "NETWORK_RETRY_INITIAL_DELAY", 1.0), patch.object(settings, "NETWORK_RETRY_MAX_DELAY", 8.0):
            with self.assertRaises(ExecutionPlanError):
                self.invoker("listSales")({}, deadline=deadline)

        # --- Assert ---
        # Sleeps of 1s and 2s fit before the deadline, the next 4s does not.
        self.assertEqual(self.session.request.call_count, 3)
        self.assertEqual([c[0][0] for c in self.mock_sleep.call_args_list], [1.0, 2.0])
        for call in self.session.request.call_args_list:
            self.assertLessEqual(call[1]["timeout"], 2.5)

    def test_text_and_empty_bodies(self):
        self.session.request.side_effect = [fake_response(text="plain"), fake_response()]

        self.assertEqual(self.invoker("listSales")({}), "plain")
        self.assertIsNone(self.invoker("listSales")({}))

    def test_registry_covers_every_operation(self):
        registry = build_operation_registry(self.handbook, session=self.session)

        self.assertEqual(sorted(registry.operation_ids), sorted(self.handbook.operation_ids()))
        self.assertEqual(registry.get("listSales").base_url, "http://localhost:8080/api")


class TestBackoff(unittest.TestCase):

    def test_delays_double_and_are_capped(self):
        self.assertEqual(list(backoff_delays(6, 0.25, 1.0)), [0.25, 0.5, 1.0, 1.0, 1.0])
        self.assertEqual(list(backoff_delays(1, 0.25, 1.0)), [])


if __name__ == '__main__':
    unittest.main()
