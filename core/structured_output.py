# /core/structured_output.py

import json
import re
from typing import Callable, List, Optional, Type, TypeVar

import yaml
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from core.config import settings
from core.errors import ExecutionError, StateError, StructuralError
from core.llm import InferenceClient, Message, TextResponse, ToolCallResponse, schema_for, tool_for
from core.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"```([A-Za-z]*)[ \t]*\n(.*?)```", re.DOTALL)


def extract_fenced_block(text: str, languages=("json", "yaml", "yml", "")) -> Optional[str]:
    """Returns the body of the first fenced code block whose language is in ``languages``."""
    for language, body in _FENCE_RE.findall(text or ""):
        if language.lower() in languages:
            return body.strip()
    return None


def _raw_text(response) -> str:
    match response:
        case ToolCallResponse(name=name, arguments=arguments):
            return json.dumps({"tool": name, "arguments": arguments}, default=str)
        case TextResponse(text=text):
            return text
        case _:
            return str(response)


def _format_instructions(model_cls: Type[BaseModel]) -> str:
    name = model_cls.__name__
    return (
        f"Respond by calling the function / tool `{name}`. If you cannot call tools, answer with a single "
        f"```yaml fenced block of the form:\n"
        f"```yaml\ntype: {name}\ndata:\n  <fields of {name}>\n```\n"
        f"The data must follow this JSON schema:\n{json.dumps(schema_for(model_cls), indent=2)}"
    )


def parse_structured_response(response, model_cls: Type[T]) -> T:
    """Turns either a tool call or a typed fenced block into ``model_cls``."""
    name = model_cls.__name__
    match response:
        case ToolCallResponse(name=tool_name, arguments=arguments):
            if tool_name != name:
                raise StructuralError(f"Unexpected tool '{tool_name}', the only valid tool is '{name}'.")
            payload = arguments
        case TextResponse(text=text):
            snippet = extract_fenced_block(text)
            if snippet is None:
                raise StructuralError(
                    f"Calling the Function / Tool {name} is not optional. "
                    f"No tool call and no fenced yaml block were found in the answer."
                )
            try:
                message = yaml.safe_load(snippet)
            except yaml.YAMLError as e:
                raise StructuralError(f"The fenced block is not valid YAML/JSON: {e}") from e
            if not isinstance(message, dict) or message.get("type") != name:
                raise StructuralError(f"The fenced block must declare 'type: {name}' and carry a 'data' mapping.")
            payload = message.get("data")
        case _:
            raise StructuralError(f"Unsupported response variant: {type(response).__name__}")

    try:
        return model_cls.model_validate(payload)
    except PydanticValidationError as e:
        raise StructuralError(f"The {name} payload does not match the schema: {e}") from e


def request_structured(
    client: InferenceClient,
    messages: List[Message],
    model_cls: Type[T],
    validator: Optional[Callable[[T], List[str]]] = None,
    max_attempts: int = None,
    use_tools: bool = True,
    run_id: Optional[str] = None,
) -> T:
    """
    Asks the model for a ``model_cls`` payload and retries with corrective feedback.

    Each failed attempt (no tool call, wrong type, unparsable block, schema mismatch or a
    non-empty list of errors from ``validator``) appends the model's answer and an
    explanation of the problem to the conversation. After ``max_attempts`` the call is
    aborted with an ExecutionError chained to the last problem.
    """
    max_attempts = max_attempts or settings.STRUCTURED_OUTPUT_MAX_ATTEMPTS
    tools = [tool_for(model_cls)] if use_tools else None
    conversation = list(messages) + [Message.user(_format_instructions(model_cls))]
    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        response = client.chat(conversation, tools=tools)
        try:
            result = parse_structured_response(response, model_cls)
            if validator:
                errors = validator(result)
                if errors:
                    raise StateError("; ".join(errors))
            return result
        except (StructuralError, StateError) as e:
            last_error = e
            logger.warning(
                f"{model_cls.__name__} attempt {attempt}/{max_attempts} rejected: {e}",
                extra={"execution_id": run_id},
            )
            conversation.append(Message.assistant(_raw_text(response)))
            conversation.append(Message.user(
                f"Your previous answer was rejected: {e}\n"
                f"Fix every problem and answer again.\n\n{_format_instructions(model_cls)}"
            ))

    raise ExecutionError(f"Aborted after {max_attempts} attempts: {last_error}") from last_error
