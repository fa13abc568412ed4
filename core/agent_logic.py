# /core/agent_logic.py

import json
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TypedDict

from langgraph.graph import END, StateGraph
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from core.config import settings
from core.dictionary import DictionaryRegistry
from core.engine import ANSWER_KEY, ExecutionPlanEngine, ExecutionPlanValidator, OperationRegistry
from core.errors import ExecutionError, StateError, StructuralError
from core.graph_store import KnowledgeGraphStore
from core.handbook import Handbook
from core.invoker import build_operation_registry
from core.llm import InferenceClient, Message, TextResponse, ToolCallResponse
from core.logger import get_logger
from core.models import AssignmentContext, ExecutionPlan
from core.normalizer import NormalizationResult, PromptSchemaNormalizer
from core.report import RunContext
from core.retriever import format_context, retrieve_context
from core.structured_output import extract_fenced_block, request_structured

logger = get_logger(__name__)

NO_RESULT_MESSAGE = "Execution completed but no result was produced."


class Phase(str, Enum):
    EXTRACT = "EXTRACT"
    PLAN = "PLAN"
    EXECUTE = "EXECUTE"
    SUMMARY = "SUMMARY"
    COMPLETED = "COMPLETED"


# --- Pipeline State ---
class PipelineState(TypedDict, total=False):
    prompt: str
    run: RunContext
    phase: Phase
    assignment: AssignmentContext
    grounding: List[Dict[str, Any]]
    execution_plan: ExecutionPlan
    execution_result: Optional[Dict[str, Any]]
    answer: str


class PromptResponse(BaseModel):
    content: str
    report_path: Optional[str] = None


EXTRACT_PROMPT = """{instructions}

You analyse a user's assignment and map it onto the entities and operations of the services below.

--- AVAILABLE ENTITIES AND OPERATIONS ---
{catalog}
---

- Restate the part of the assignment that these services can handle as `refined_assignment`.
- List every part that no operation can handle in `unhandled_parts`.
- In `context`, list each entity involved together with the ids of the operations needed on it.
  Every entity MUST have at least one operation.

Answer with a single ```json block and nothing else:
```json
{{"refined_assignment": "...", "unhandled_parts": [], "context": [{{"entity": "<entity>", "operations": ["<operation id>"]}}]}}
```"""

PLAN_PROMPT = """{instructions}

You write an execution plan that fulfils the assignment using ONLY the operations listed below.

--- OPERATIONS ---
{operations}
---

--- HANDBOOK KNOWLEDGE ---
{context}
---

The plan is a map of node id -> node:
- "start_node" holds constant inputs in "vars" and never has an operation.
- Every other node has an "operation" id, its "dependencies" (node ids) and its arguments in "vars".
- A string "${{node_id}}" or "${{node_id.path.0.field}}" in vars takes the output of an earlier node;
  that node must be listed in "dependencies" (start_node excepted).
- Exactly one node should carry an "answer" template that states the final answer for the user,
  using references to earlier outputs."""


def build_pipeline(orchestrator: "Orchestrator"):
    """Wires the four phases into a linear state machine: extract -> plan -> execute -> summary."""
    workflow = StateGraph(PipelineState)
    workflow.add_node("extract", orchestrator.extract)
    workflow.add_node("plan", orchestrator.plan)
    workflow.add_node("execute", orchestrator.execute)
    workflow.add_node("summary", orchestrator.summary)

    workflow.set_entry_point("extract")
    workflow.add_edge("extract", "plan")
    workflow.add_edge("plan", "execute")
    workflow.add_edge("execute", "summary")
    workflow.add_edge("summary", END)
    return workflow.compile()


class Orchestrator:
    """
    Turns a natural-language request into grounded API calls.

    Per-request state lives in a RunContext created by handle_prompt; the
    orchestrator itself only holds shared, read-mostly collaborators, so concurrent
    requests on different threads do not interfere.
    """

    def __init__(
        self,
        client: InferenceClient,
        handbook: Handbook,
        graph_store: KnowledgeGraphStore,
        registry_factory: Callable[[], OperationRegistry] = None,
        dictionary_registry: DictionaryRegistry = None,
        normalizer: PromptSchemaNormalizer = None,
    ):
        self.client = client
        self.handbook = handbook
        self.graph_store = graph_store
        self.registry_factory = registry_factory or (lambda: build_operation_registry(handbook))
        self.dictionary_registry = dictionary_registry or DictionaryRegistry.instance()
        self.normalizer = normalizer or PromptSchemaNormalizer(client)
        self._background = ThreadPoolExecutor(max_workers=4, thread_name_prefix="normalizer")
        self.app = build_pipeline(self)

    # --- Entry point ---

    def handle_prompt(self, prompt: str) -> PromptResponse:
        if not prompt or not prompt.strip():
            raise ValueError("Prompt must not be empty")
        run = RunContext.start(prompt)
        logger.info(f"Handling prompt: {prompt[:200]}", extra=run.log_extra)

        try:
            final_state = self.app.invoke({"prompt": prompt, "run": run, "phase": Phase.EXTRACT})
        except Exception as e:
            run.report.finish(success=False, error=f"{type(e).__name__}: {e}")
            self._write_report(run)
            logger.error(f"Request failed: {e}", extra=run.log_extra)
            raise

        normalization = self._start_normalization(run, prompt)
        self._await_normalization(run, normalization)
        run.report.finish(success=True)
        report_path = self._write_report(run)
        return PromptResponse(content=final_state["answer"], report_path=report_path)

    def shutdown(self):
        # Normalizations already submitted drain; new ones are skipped.
        self._background.shutdown(wait=False)

    # --- EXTRACT ---

    def _entity_catalog(self) -> str:
        lines = []
        for service in self.handbook.services:
            for entity in service.entities:
                ops = [
                    f"{op.operation_id} ({op.signature}): {op.summary}".rstrip(": ")
                    for op in service.operations if entity.name in service.entities_for(op)
                ]
                lines.append(f"- {entity.name}: {entity.description}".rstrip(": "))
                lines.extend(f"    - {o}" for o in ops)
        return "\n".join(lines) or "(no entities registered)"

    @staticmethod
    def check_assignment(assignment: AssignmentContext):
        refined = assignment.refined_assignment.strip()
        if not refined and not assignment.unhandled_parts:
            raise StateError("Either the refined assignment or the unhandled parts must be provided")
        if refined and not assignment.context:
            raise StateError(
                "The refined assignment is present but did not detect any entities and their corresponding operations"
            )
        for item in assignment.context:
            if not item.operations:
                raise StateError(
                    f"Each entity must have at least one operation associated to it, review the entity {item.entity}"
                )

    @staticmethod
    def _answer_text(response) -> str:
        match response:
            case TextResponse(text=text):
                return text
            case ToolCallResponse(arguments=arguments):
                # The arguments are the JSON object the prompt asks for.
                return f"```json\n{json.dumps(arguments, default=str)}\n```"
            case _:
                raise StructuralError(f"Unexpected answer of type {type(response).__name__}.")

    def extract_assignment(self, prompt: str, run: RunContext) -> AssignmentContext:
        max_attempts = settings.EXTRACT_MAX_ATTEMPTS
        messages = [
            Message.system(EXTRACT_PROMPT.format(instructions=self.handbook.instructions, catalog=self._entity_catalog())),
            Message.user(prompt),
        ]
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            text = ""
            try:
                text = self._answer_text(self.client.chat(messages)) or ""
                if not text.strip():
                    raise StructuralError("The answer was empty.")
                snippet = extract_fenced_block(text, ("json", ""))
                if snippet is None:
                    raise StructuralError("No ```json block was found in the answer.")
                try:
                    assignment = AssignmentContext.model_validate_json(snippet)
                except PydanticValidationError as e:
                    raise StructuralError(f"The JSON block does not match the expected shape: {e}") from e
                self.check_assignment(assignment)
                logger.info(f"Assignment extracted in {attempt} attempt(s)", extra=run.log_extra)
                return assignment
            except (StructuralError, StateError) as e:
                last_error = e
                logger.warning(f"Extraction attempt {attempt}/{max_attempts} rejected: {e}", extra=run.log_extra)
                messages += [
                    Message.assistant(text or "(empty answer)"),
                    Message.user(f"Error: {e}\nFix the problem and answer again with a single ```json block."),
                ]

        raise ExecutionError(
            f"Failed to extract entities from assignment after {max_attempts} attempts: {last_error}"
        ) from last_error

    def extract(self, state: PipelineState):
        run = state["run"]
        with run.phase(Phase.EXTRACT.value):
            assignment = self.extract_assignment(state["prompt"], run)
        run.report.assignment = assignment.model_dump()
        return {"assignment": assignment, "phase": Phase.PLAN}

    # --- PLAN ---

    def _operation_catalog(self) -> str:
        return "\n".join(
            f"- {op.operation_id}: {op.signature} [{op.resolved_category}] {op.summary}".rstrip()
            for _, op in self.handbook.all_operations()
        ) or "(no operations registered)"

    def generate_plan(self, assignment: AssignmentContext, grounding: List[Dict[str, Any]], run: RunContext) -> ExecutionPlan:
        allowed = self.handbook.operation_ids()
        messages = [
            Message.system(PLAN_PROMPT.format(
                instructions=self.handbook.instructions,
                operations=self._operation_catalog(),
                context=format_context(grounding),
            )),
            Message.user(f"Assignment: {assignment.refined_assignment}"),
        ]
        return request_structured(
            self.client,
            messages,
            ExecutionPlan,
            validator=lambda plan: ExecutionPlanValidator.validate(plan, allowed),
            run_id=run.execution_id,
        )

    def plan(self, state: PipelineState):
        run = state["run"]
        assignment = state["assignment"]
        with run.phase(Phase.PLAN.value) as record:
            if not assignment.refined_assignment.strip():
                grounding, execution_plan = [], ExecutionPlan.empty()
                record.detail["skipped"] = "nothing in the request can be handled"
            else:
                grounding = retrieve_context(self.graph_store, assignment)
                execution_plan = self.generate_plan(assignment, grounding, run)
            record.detail["grounding_nodes"] = len(grounding)
            record.detail["plan_nodes"] = len(execution_plan.nodes)
        run.report.plan = execution_plan.model_dump()
        return {"grounding": grounding, "execution_plan": execution_plan, "phase": Phase.EXECUTE}

    # --- EXECUTE ---

    def execute(self, state: PipelineState):
        run = state["run"]
        execution_plan = state["execution_plan"]
        with run.phase(Phase.EXECUTE.value) as record:
            if len(execution_plan.nodes) <= 1:
                result = None
                record.detail["skipped"] = "empty plan"
            else:
                engine = ExecutionPlanEngine(self.registry_factory())
                result = engine.execute(execution_plan, run_id=run.execution_id)
        run.report.result = result
        return {"execution_result": result, "phase": Phase.SUMMARY}

    # --- SUMMARY ---

    @staticmethod
    def summarize(result: Optional[Dict[str, Any]], assignment: Optional[AssignmentContext] = None) -> str:
        answer = result.get(ANSWER_KEY) if result else None
        if isinstance(answer, str) and answer.strip():
            content = answer
        elif result:
            content = json.dumps(result, indent=2, default=str)
        else:
            content = NO_RESULT_MESSAGE
        if assignment is not None and assignment.unhandled_parts:
            listed = "\n".join(f"- {p}" for p in assignment.unhandled_parts)
            content += f"\n\nThe following parts of the request could not be handled:\n{listed}"
        return content

    def summary(self, state: PipelineState):
        run = state["run"]
        with run.phase(Phase.SUMMARY.value):
            answer = self.summarize(state.get("execution_result"), state.get("assignment"))
        run.report.answer = answer
        return {"answer": answer, "phase": Phase.COMPLETED}

    # --- Background normalization ---

    def _start_normalization(self, run: RunContext, prompt: str) -> Optional[Future]:
        if not settings.NORMALIZATION_ENABLED:
            run.report.normalization = {"status": "disabled"}
            return None
        dictionary = self.dictionary_registry.get_optional()
        if dictionary is None:
            logger.warning("No prompt dictionary loaded; skipping normalization.", extra=run.log_extra)
            run.report.normalization = {"status": "skipped", "reason": "dictionary not found"}
            return None
        try:
            return self._background.submit(
                self.normalizer.normalize_with_diagnostics, prompt, dictionary, run.cancel_event, run.execution_id
            )
        except RuntimeError as e:
            # The executor is closed once a re-index retires this orchestrator.
            logger.warning(f"Normalization not started: {e}", extra=run.log_extra)
            run.report.normalization = {"status": "skipped", "reason": "orchestrator shut down"}
            return None

    def _await_normalization(self, run: RunContext, future: Optional[Future]):
        if future is None:
            return
        timeout = settings.NORMALIZATION_TIMEOUT_SECONDS
        try:
            outcome: NormalizationResult = future.result(timeout=timeout)
        except FutureTimeoutError:
            run.cancel_event.set()
            future.cancel()
            logger.warning(f"Prompt normalization timed out after {timeout}s", extra=run.log_extra)
            run.report.normalization = {"status": "timeout", "timeout_seconds": timeout}
            return
        except Exception as e:
            # Normalization is diagnostic only; its failure never fails the request.
            logger.warning(f"Prompt normalization failed: {e}", extra=run.log_extra)
            run.report.normalization = {
                "status": "failed",
                "error": f"{type(e).__name__}: {e}",
                "raw_payload": getattr(e, "raw_payload", None),
            }
            return

        run.report.normalization = {
            "status": "ok" if outcome.is_valid else "invalid",
            "attempts": outcome.attempts,
            "workflow": outcome.workflow.model_dump(),
            "cache_keys": outcome.workflow.generate_cache_keys(),
            "validation_errors": outcome.validation_errors,
        }

    def _write_report(self, run: RunContext) -> Optional[str]:
        if not settings.REPORTS_ENABLED:
            return None
        try:
            path = run.report.write(settings.REPORTS_DIR)
        except OSError as e:
            logger.error(f"Could not write execution report: {e}", extra=run.log_extra)
            return None
        logger.info(f"Execution report written to {path}", extra=run.log_extra)
        return path
