# /core/invoker.py

from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import requests

from core.config import settings
from core.engine import DeadlineAwareInvoker, OperationRegistry
from core.errors import ExecutionPlanError
from core.handbook import Handbook, OperationDefinition
from core.logger import get_logger
from core.retry import call_with_backoff, remaining_time

logger = get_logger(__name__)

RETRYABLE_STATUSES = {502, 503, 504}
IDEMPOTENT_METHODS = {"GET", "HEAD", "OPTIONS", "PUT", "DELETE"}
BODY_METHODS = {"POST", "PUT", "PATCH"}


class _TransientHTTPError(Exception):
    def __init__(self, response: requests.Response):
        super().__init__(f"HTTP {response.status_code}")
        self.response = response


class HttpOperationInvoker(DeadlineAwareInvoker):
    """Calls one handbook operation over HTTP. Instances are the values of an OperationRegistry."""

    def __init__(self, base_url: str, operation: OperationDefinition, session: requests.Session = None, timeout: float = None):
        self.base_url = base_url.rstrip("/")
        self.operation = operation
        self.session = session or requests.Session()
        self.timeout = timeout or settings.OPERATION_TIMEOUT_SECONDS

    def _split_arguments(self, arguments: Dict[str, Any]) -> Tuple[str, Dict[str, Any], Dict[str, str], Optional[Any]]:
        op = self.operation
        remaining = dict(arguments or {})
        path = op.path
        query, headers = {}, {}
        body = remaining.pop("body", None)

        for param in op.parameters:
            if param.location == "body":
                continue
            if param.name not in remaining:
                if param.required:
                    raise ExecutionPlanError(
                        f"Operation '{op.operation_id}' is missing required {param.location} parameter '{param.name}'",
                        operation_id=op.operation_id,
                    )
                continue
            value = remaining.pop(param.name)
            if param.location == "path":
                path = path.replace("{" + param.name + "}", quote(str(value), safe=""))
            elif param.location == "header":
                headers[param.name] = str(value)
            else:
                query[param.name] = value

        if remaining:
            if op.method.upper() in BODY_METHODS and body is None:
                body = remaining
            else:
                query.update(remaining)
        return path, query, headers, body

    def _retry_on(self) -> Tuple[type, ...]:
        if self.operation.method.upper() in IDEMPOTENT_METHODS:
            return (requests.ConnectionError, requests.Timeout, _TransientHTTPError)
        # A non-idempotent request is only resent when it never reached the service.
        return (requests.ConnectTimeout,)

    def __call__(self, arguments: Dict[str, Any], deadline: Optional[float] = None) -> Any:
        op = self.operation
        path, query, headers, body = self._split_arguments(arguments)
        url = f"{self.base_url}{path}"

        def _send():
            timeout = self.timeout
            left = remaining_time(deadline)
            if left is not None:
                if left <= 0:
                    raise ExecutionPlanError(
                        f"Operation '{op.operation_id}' reached its deadline before the request was sent",
                        operation_id=op.operation_id,
                    )
                timeout = min(timeout, left)
            response = self.session.request(
                op.method.upper(), url,
                params=query or None,
                json=body,
                headers=headers or None,
                timeout=timeout,
            )
            if response.status_code in RETRYABLE_STATUSES:
                raise _TransientHTTPError(response)
            return response

        try:
            response = call_with_backoff(
                _send,
                retry_on=self._retry_on(),
                description=f"Operation '{op.operation_id}'",
                deadline=deadline,
            )
        except _TransientHTTPError as e:
            raise ExecutionPlanError(
                f"Operation '{op.operation_id}' failed with HTTP {e.response.status_code}",
                operation_id=op.operation_id,
            ) from e
        except requests.RequestException as e:
            raise ExecutionPlanError(f"Operation '{op.operation_id}' failed: {e}", operation_id=op.operation_id) from e

        if response.status_code >= 400:
            raise ExecutionPlanError(
                f"Operation '{op.operation_id}' failed with HTTP {response.status_code}: {response.text[:500]}",
                operation_id=op.operation_id,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text


def build_operation_registry(handbook: Handbook, session: requests.Session = None, base_url: str = None) -> OperationRegistry:
    """Registers every handbook operation, bound to the transport of the service declaring it."""
    session = session or requests.Session()
    registry = OperationRegistry()
    for service, op in handbook.all_operations():
        service_url = service.base_url or base_url or settings.SERVICE_BASE_URL
        registry.register(op.operation_id, HttpOperationInvoker(service_url, op, session))
    logger.info(f"Operation registry built with {len(registry)} operations.")
    return registry
