# /core/engine.py

import json
import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from core.config import settings
from core.errors import ExecutionPlanError
from core.logger import get_logger
from core.models import START_NODE, ExecutionPlan

logger = get_logger(__name__)

OperationInvoker = Callable[[Dict[str, Any]], Any]


class DeadlineAwareInvoker:
    """
    An invoker that also accepts the ``time.monotonic()`` deadline of its call.
    The engine passes the deadline so the invoker can bound its own I/O and retries.
    """

    def __call__(self, arguments: Dict[str, Any], deadline: Optional[float] = None) -> Any:
        raise NotImplementedError

ANSWER_KEY = "answer"

_REF_RE = re.compile(r"\$\{([A-Za-z0-9_\-]+)((?:\.[A-Za-z0-9_\-]+)*)\}")


class OperationRegistry:
    """Maps operation ids to the callables that invoke them."""

    def __init__(self):
        self._invokers: Dict[str, OperationInvoker] = {}

    def register(self, operation_id: str, invoker: OperationInvoker):
        if operation_id in self._invokers:
            logger.warning(f"Operation '{operation_id}' registered twice; keeping the latest invoker.")
        self._invokers[operation_id] = invoker

    def get(self, operation_id: str) -> OperationInvoker:
        try:
            return self._invokers[operation_id]
        except KeyError:
            raise ExecutionPlanError(f"Unknown operation '{operation_id}'", operation_id=operation_id) from None

    @property
    def operation_ids(self) -> List[str]:
        return list(self._invokers)

    def __contains__(self, operation_id: str) -> bool:
        return operation_id in self._invokers

    def __len__(self):
        return len(self._invokers)


# --- Variable references: "${node}" or "${node.path.0.field}" ---

def referenced_nodes(value: Any) -> Set[str]:
    if isinstance(value, str):
        return {m.group(1) for m in _REF_RE.finditer(value)}
    if isinstance(value, dict):
        return set().union(*(referenced_nodes(v) for v in value.values())) if value else set()
    if isinstance(value, list):
        return set().union(*(referenced_nodes(v) for v in value)) if value else set()
    return set()


def _lookup(match: re.Match, results: Dict[str, Any]) -> Any:
    node_id, path = match.group(1), match.group(2)
    if node_id not in results:
        raise ExecutionPlanError(f"Reference '{match.group(0)}' points to a node without output", node_id=node_id)
    value = results[node_id]
    for part in filter(None, path.split(".")):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.lstrip("-").isdigit() and -len(value) <= int(part) < len(value):
            value = value[int(part)]
        else:
            raise ExecutionPlanError(f"Reference '{match.group(0)}' cannot be resolved at '{part}'", node_id=node_id)
    return value


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def resolve_references(value: Any, results: Dict[str, Any]) -> Any:
    """
    Replaces references with earlier outputs. A string that is exactly one reference
    takes the referenced value as is; references embedded in text are rendered as text.
    """
    if isinstance(value, str):
        whole = _REF_RE.fullmatch(value)
        if whole:
            return _lookup(whole, results)
        return _REF_RE.sub(lambda m: _as_text(_lookup(m, results)), value)
    if isinstance(value, dict):
        return {k: resolve_references(v, results) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, results) for v in value]
    return value


def render_template(template: str, results: Dict[str, Any]) -> str:
    return _REF_RE.sub(lambda m: _as_text(_lookup(m, results)), template)


def topological_order(plan: ExecutionPlan) -> List[str]:
    """Deterministic execution order: start_node first, then Kahn's algorithm in declaration order."""
    pending = {
        node_id: [d for d in node.dependencies if d != START_NODE]
        for node_id, node in plan.nodes.items() if node_id != START_NODE
    }
    order = [START_NODE] if START_NODE in plan.nodes else []
    done = set(order)
    while pending:
        ready = [n for n, deps in pending.items() if all(d in done for d in deps)]
        if not ready:
            raise ExecutionPlanError(f"Execution plan has a dependency cycle among: {', '.join(sorted(pending))}")
        for node_id in ready:
            order.append(node_id)
            done.add(node_id)
            del pending[node_id]
    return order


class ExecutionPlanValidator:

    @staticmethod
    def validate(plan: ExecutionPlan, allowed_operations: Iterable[str]) -> List[str]:
        allowed = set(allowed_operations)
        nodes = plan.nodes
        errors = []

        if START_NODE not in nodes:
            errors.append(f"The plan must contain a '{START_NODE}' node")
        elif nodes[START_NODE].operation:
            errors.append(f"'{START_NODE}' must not invoke an operation")
        if ANSWER_KEY in nodes:
            errors.append(f"'{ANSWER_KEY}' is reserved and cannot be used as a node id")

        for node_id, node in nodes.items():
            if node.operation and node.operation not in allowed:
                errors.append(f"Node '{node_id}': unknown operation '{node.operation}'")
            for dep in node.dependencies:
                if dep == node_id:
                    errors.append(f"Node '{node_id}' depends on itself")
                elif dep not in nodes:
                    errors.append(f"Node '{node_id}': dependency '{dep}' does not exist")
            # An answer template may read the node's own output.
            answer_refs = referenced_nodes(node.answer or "") - {node_id}
            for ref in sorted(referenced_nodes(node.vars) | answer_refs):
                if ref not in nodes:
                    errors.append(f"Node '{node_id}' references unknown node '{ref}'")
                elif ref != START_NODE and ref not in node.dependencies:
                    errors.append(f"Node '{node_id}' references '{ref}' without declaring it as a dependency")

        if not errors:
            try:
                topological_order(plan)
            except ExecutionPlanError as e:
                errors.append(str(e))
        return errors


class ExecutionPlanEngine:
    """
    Runs an ExecutionPlan against an OperationRegistry.

    Nodes run one at a time in dependency order, each operation call bounded by a
    deadline. The first failing operation aborts the whole plan: the raised
    ExecutionPlanError names the operation and node and carries the outputs produced
    so far. Nothing after the failure is invoked, including independent branches.

    A Python thread cannot be interrupted, so an operation that misses its deadline
    is abandoned, not stopped: it keeps running on its worker thread until it returns.
    A DeadlineAwareInvoker receives the deadline and stops its own I/O and retries
    once it has passed; any other callable runs to completion in the background.
    """

    def __init__(self, registry: OperationRegistry, operation_timeout: float = None):
        self.registry = registry
        self.operation_timeout = operation_timeout or settings.OPERATION_TIMEOUT_SECONDS

    def execute(self, plan: ExecutionPlan, initial_vars: Optional[Dict[str, Any]] = None, run_id: str = None) -> Dict[str, Any]:
        errors = ExecutionPlanValidator.validate(plan, self.registry.operation_ids)
        if errors:
            raise ExecutionPlanError("Invalid execution plan: " + "; ".join(errors))

        results: Dict[str, Any] = {}
        answer = None
        node_id = None
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="operation")
        try:
            for node_id in topological_order(plan):
                node = plan.nodes[node_id]
                if node_id == START_NODE:
                    results[START_NODE] = {**node.vars, **(initial_vars or {})}
                    continue

                arguments = resolve_references(node.vars, results)
                if node.operation:
                    logger.info(f"Executing node '{node_id}' -> {node.operation}", extra={"execution_id": run_id})
                    results[node_id] = self._invoke(executor, node_id, node.operation, arguments)
                else:
                    results[node_id] = arguments
                if node.answer is not None:
                    answer = render_template(node.answer, results)
        except ExecutionPlanError as e:
            e.node_id = e.node_id or node_id
            e.partial_results = e.partial_results or dict(results)
            logger.error(f"Execution aborted at node '{e.node_id}': {e}", extra={"execution_id": run_id})
            raise
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if answer is not None:
            results[ANSWER_KEY] = answer
        return results

    def _invoke(self, executor, node_id: str, operation_id: str, arguments: Dict[str, Any]) -> Any:
        invoker = self.registry.get(operation_id)
        if isinstance(invoker, DeadlineAwareInvoker):
            call = partial(invoker, arguments, deadline=time.monotonic() + self.operation_timeout)
        else:
            call = partial(invoker, arguments)
        future = executor.submit(call)
        try:
            return future.result(timeout=self.operation_timeout)
        except FutureTimeoutError as e:
            future.cancel()
            raise ExecutionPlanError(
                f"Operation '{operation_id}' exceeded its deadline of {self.operation_timeout}s",
                operation_id=operation_id, node_id=node_id,
            ) from e
        except ExecutionPlanError as e:
            e.operation_id = e.operation_id or operation_id
            e.node_id = e.node_id or node_id
            raise
        except Exception as e:
            raise ExecutionPlanError(
                f"Operation '{operation_id}' failed: {e}", operation_id=operation_id, node_id=node_id
            ) from e
