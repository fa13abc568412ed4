# /core/normalizer.py

import json
import re
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from core.config import settings
from core.dictionary import PromptDictionary
from core.errors import NormalizationCancelled, PromptNormalizationError
from core.llm import InferenceClient, Message, TextResponse, ToolCallResponse
from core.logger import get_logger
from core.prompt_schema import PromptSchemaWorkflow

logger = get_logger(__name__)

_FENCE_MARK_RE = re.compile(r"```(?:json|JSON)?")

WORKFLOW_SHAPE = """{
  "workflow_type": "sequential",
  "steps": [
    {
      "ps": {
        "action": "<one of dictionary.actions, or 'local'>",
        "entities": ["<dictionary.entities>"],
        "params": {"<dictionary.fields>": "<value from the prompt>"},
        "group_by": ["<dictionary.fields>"]
      }
    }
  ]
}"""

SYSTEM_PROMPT = """You convert a user prompt into a normalized prompt schema workflow.
Use ONLY the vocabulary of the dictionary below: every action, entity, param key and group_by
field must be copied verbatim from it. Use the action "local" when the prompt needs no service.
Split the prompt into several steps only when it contains several independent requests.

Dictionary:
{dictionary}

Answer with JSON only, exactly in this shape:
{shape}"""


def extract_json_payload(response: Optional[str]) -> Optional[str]:
    """Strips code fences and returns the text from the first '{', or None if there is none."""
    if not response or not response.strip():
        return None
    text = _FENCE_MARK_RE.sub("", response).strip()
    start = text.find("{")
    if start < 0:
        return None
    return text[start:]


def _trim_to_root(payload: str) -> str:
    depth = 0
    in_string = False
    escaped = False
    for i, ch in enumerate(payload):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                return payload[:i + 1]
    return payload.rstrip()


def _strip_trailing_commas(payload: str) -> str:
    out = []
    in_string = False
    escaped = False
    length = len(payload)
    for i, ch in enumerate(payload):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            out.append(ch)
            continue
        if ch == '"':
            in_string = True
        elif ch == ",":
            j = i + 1
            while j < length and payload[j].isspace():
                j += 1
            if j < length and payload[j] in "}]":
                continue
        out.append(ch)
    return "".join(out)


def clean_json(payload: str) -> str:
    """
    Repairs the usual LLM JSON defects: text or duplicated closing brackets after the
    root object, and commas directly before a closing brace or bracket.
    """
    return _strip_trailing_commas(_trim_to_root(payload.strip()))


@dataclass
class NormalizationResult:
    workflow: PromptSchemaWorkflow
    attempts: int
    validation_errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.validation_errors


class PromptSchemaNormalizer:
    """
    Turns free text into a PromptSchemaWorkflow restricted to the dictionary's vocabulary.

    A payload that still cannot be parsed after the last attempt is fatal
    (PromptNormalizationError). A payload that parses but breaks vocabulary rules
    is returned anyway after the last attempt, with the violations in the result.
    """

    def __init__(self, client: InferenceClient, max_attempts: int = None):
        self.client = client
        self.max_attempts = max_attempts or settings.NORMALIZER_MAX_ATTEMPTS

    def normalize(self, prompt: str, dictionary: PromptDictionary, cancel_event: Optional[threading.Event] = None) -> PromptSchemaWorkflow:
        return self.normalize_with_diagnostics(prompt, dictionary, cancel_event).workflow

    def normalize_with_diagnostics(
        self,
        prompt: str,
        dictionary: PromptDictionary,
        cancel_event: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
    ) -> NormalizationResult:
        if not prompt or not prompt.strip():
            raise ValueError("Prompt must not be empty")
        for category in ("actions", "entities", "fields"):
            if not getattr(dictionary, category):
                logger.warning(f"Dictionary has no {category}; normalization will likely fail validation.")

        messages = [
            Message.system(SYSTEM_PROMPT.format(dictionary=dictionary.to_prompt_json(), shape=WORKFLOW_SHAPE)),
            Message.user(prompt),
        ]
        log_extra = {"execution_id": run_id}

        for attempt in range(1, self.max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise NormalizationCancelled(f"Normalization cancelled before attempt {attempt}")
            last_attempt = attempt == self.max_attempts

            response = self.client.chat(messages)
            match response:
                case TextResponse(text=text):
                    raw = text
                case ToolCallResponse(arguments=arguments):
                    raw = json.dumps(arguments)
                case _:
                    raw = str(response)

            payload = extract_json_payload(raw)
            if payload is None:
                error = "No JSON content found in the response"
                if last_attempt:
                    raise PromptNormalizationError(f"{error} after {attempt} attempts", raw_payload=raw)
                logger.warning(f"Normalization attempt {attempt}: {error}", extra=log_extra)
                messages += [Message.assistant(raw or ""), Message.user(self._feedback([error]))]
                continue

            cleaned = clean_json(payload)
            try:
                workflow = PromptSchemaWorkflow.model_validate(json.loads(cleaned))
            except (json.JSONDecodeError, PydanticValidationError) as e:
                if last_attempt:
                    raise PromptNormalizationError(
                        f"Failed to parse prompt schema after {attempt} attempts: {e}", raw_payload=cleaned
                    ) from e
                logger.warning(f"Normalization attempt {attempt}: unparsable payload: {e}", extra=log_extra)
                messages += [Message.assistant(raw), Message.user(self._feedback([f"Invalid JSON: {e}"]))]
                continue

            workflow.generate_cache_keys()
            errors = workflow.validate_against(dictionary)
            if not errors:
                logger.info(f"Prompt normalized in {attempt} attempt(s)", extra=log_extra)
                return NormalizationResult(workflow=workflow, attempts=attempt)
            if last_attempt:
                logger.warning(
                    f"Returning prompt schema with {len(errors)} validation error(s) after {attempt} attempts",
                    extra=log_extra,
                )
                return NormalizationResult(workflow=workflow, attempts=attempt, validation_errors=errors)
            logger.warning(f"Normalization attempt {attempt}: {len(errors)} validation error(s)", extra=log_extra)
            messages += [Message.assistant(raw), Message.user(self._feedback(errors))]

        # max_attempts < 1
        raise PromptNormalizationError("Normalizer configured with no attempts")

    @staticmethod
    def _feedback(errors: List[str]) -> str:
        listed = "\n".join(f"- {e}" for e in errors)
        return (
            f"The previous answer has the following problems:\n{listed}\n\n"
            f"Use only values from the dictionary and answer again with JSON in exactly this shape:\n{WORKFLOW_SHAPE}"
        )
