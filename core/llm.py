# /core/llm.py

from abc import ABC, abstractmethod
from enum import Enum
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Type, Union

from google.api_core import exceptions as google_exceptions
from pydantic import BaseModel, Field

from core.config import settings
from core.logger import get_logger
from core.retry import call_with_backoff

logger = get_logger(__name__)

# Transient failures surfaced by the Gemini client.
TRANSIENT_LLM_ERRORS = (
    ConnectionError,
    TimeoutError,
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
    google_exceptions.TooManyRequests,
)

EventCallback = Callable[[str, str], None]


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=content)


class ToolDefinition(BaseModel):
    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


# --- Response union: consumers match on the concrete variant ---

class TextResponse(BaseModel):
    kind: Literal["text"] = "text"
    text: str = ""


class ToolCallResponse(BaseModel):
    kind: Literal["tool_call"] = "tool_call"
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    text: str = ""


LLMResponse = Annotated[Union[TextResponse, ToolCallResponse], Field(discriminator="kind")]


def _inline_refs(schema: Any, defs: Dict[str, Any], seen: tuple = ()) -> Any:
    if isinstance(schema, dict):
        ref = schema.get("$ref")
        if ref and ref.startswith("#/$defs/"):
            name = ref.split("/")[-1]
            if name in seen:
                return {"type": "object"}
            return _inline_refs(defs.get(name, {}), defs, seen + (name,))
        return {k: _inline_refs(v, defs, seen) for k, v in schema.items() if k not in ("$defs", "title")}
    if isinstance(schema, list):
        return [_inline_refs(v, defs, seen) for v in schema]
    return schema


def schema_for(model_cls: Type[BaseModel]) -> Dict[str, Any]:
    """JSON schema of a model with every ``$ref`` inlined (tool APIs reject ``$defs``)."""
    schema = model_cls.model_json_schema()
    return _inline_refs(schema, schema.get("$defs", {}))


def tool_for(model_cls: Type[BaseModel]) -> ToolDefinition:
    return ToolDefinition(
        name=model_cls.__name__,
        description=(model_cls.__doc__ or f"Return a {model_cls.__name__}.").strip(),
        parameters=schema_for(model_cls),
    )


class InferenceClient(ABC):
    """The single contract between the orchestrator and a language model."""

    @abstractmethod
    def chat(
        self,
        messages: List[Message],
        tools: Optional[List[ToolDefinition]] = None,
        streaming: bool = False,
        event_callback: Optional[EventCallback] = None,
    ) -> LLMResponse:
        pass


class GeminiInferenceClient(InferenceClient):
    """InferenceClient backed by ``ChatGoogleGenerativeAI``."""

    def __init__(self, model: str = None, temperature: float = None):
        from langchain_google_genai import ChatGoogleGenerativeAI

        self.model = model or settings.GENERATION_MODEL
        self._llm = ChatGoogleGenerativeAI(
            model=self.model,
            temperature=settings.LLM_TEMPERATURE if temperature is None else temperature,
            google_api_key=settings.GOOGLE_API_KEY or None,
        )

    @staticmethod
    def _to_langchain(messages: List[Message]):
        from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

        converted = []
        for m in messages:
            if m.role == Role.SYSTEM:
                converted.append(SystemMessage(content=m.content))
            elif m.role == Role.ASSISTANT:
                converted.append(AIMessage(content=m.content))
            else:
                converted.append(HumanMessage(content=m.content))
        return converted

    @staticmethod
    def _text_of(message) -> str:
        content = message.content
        if isinstance(content, list):
            return "".join(part.get("text", "") if isinstance(part, dict) else str(part) for part in content)
        return content or ""

    def chat(self, messages, tools=None, streaming=False, event_callback=None):
        llm = self._llm
        if tools:
            llm = llm.bind_tools([
                {"type": "function", "function": {"name": t.name, "description": t.description, "parameters": t.parameters}}
                for t in tools
            ])
        lc_messages = self._to_langchain(messages)

        def _invoke():
            if not streaming:
                return llm.invoke(lc_messages)
            full = None
            for chunk in llm.stream(lc_messages):
                if event_callback:
                    event_callback("token", self._text_of(chunk))
                full = chunk if full is None else full + chunk
            return full

        # Connection-level failures only; the structured retry loops sit above this.
        result = call_with_backoff(_invoke, retry_on=TRANSIENT_LLM_ERRORS, description=f"LLM call ({self.model})")
        if result is None:
            return TextResponse(text="")

        text = self._text_of(result)
        tool_calls = getattr(result, "tool_calls", None) or []
        if tool_calls:
            call = tool_calls[0]
            logger.info(f"LLM answered with tool call '{call['name']}'")
            return ToolCallResponse(name=call["name"], arguments=call.get("args") or {}, text=text)
        return TextResponse(text=text)
