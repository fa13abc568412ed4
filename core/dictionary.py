# /core/dictionary.py

import json
import threading
from typing import Any, Dict, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.errors import StateError
from core.logger import get_logger

logger = get_logger(__name__)

CATEGORIES = ("actions", "entities", "fields", "operators", "aggregates")


class PromptDictionary(BaseModel):
    """The canonical vocabulary the normalizer is allowed to use. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    actions: Tuple[str, ...] = Field(default=(), description="Canonical verbs, e.g. search, summarize, update.")
    entities: Tuple[str, ...] = Field(default=(), description="Domain object names.")
    fields: Tuple[str, ...] = Field(default=(), description="Attribute names usable as parameters or group-by keys.")
    operators: Tuple[str, ...] = Field(default=(), description="Comparison and filter operators.")
    aggregates: Tuple[str, ...] = Field(default=(), description="Aggregation functions.")

    @field_validator(*CATEGORIES, mode="before")
    @classmethod
    def _dedupe(cls, value):
        if value is None:
            return ()
        return tuple(dict.fromkeys(str(v) for v in value))

    def has_action(self, value: str) -> bool:
        return value in self.actions

    def has_entity(self, value: str) -> bool:
        return value in self.entities

    def has_field(self, value: str) -> bool:
        return value in self.fields

    def has_operator(self, value: str) -> bool:
        return value in self.operators

    def has_aggregate(self, value: str) -> bool:
        return value in self.aggregates

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> "PromptDictionary":
        data = data or {}
        for category in CATEGORIES:
            if not data.get(category):
                logger.warning(f"Prompt dictionary has no '{category}'; normalization results will be poor.")
        return cls(**{c: data.get(c) or () for c in CATEGORIES})

    @classmethod
    def load(cls, path: str) -> "PromptDictionary":
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_mapping(yaml.safe_load(f))

    def to_prompt_json(self) -> str:
        return json.dumps({c: list(getattr(self, c)) for c in CATEGORIES}, indent=2)


class DictionaryRegistry:
    """
    Process-wide holder of the active PromptDictionary.
    Readers always get a complete dictionary: rebuild() swaps the reference atomically.
    """
    _instance: Optional["DictionaryRegistry"] = None
    _instance_lock = threading.Lock()

    def __init__(self):
        self._lock = threading.Lock()
        self._dictionary: Optional[PromptDictionary] = None

    @classmethod
    def instance(cls) -> "DictionaryRegistry":
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def get(self) -> PromptDictionary:
        dictionary = self._dictionary
        if dictionary is None:
            raise StateError("Prompt dictionary has not been loaded.")
        return dictionary

    def get_optional(self) -> Optional[PromptDictionary]:
        return self._dictionary

    def rebuild(self, dictionary: PromptDictionary) -> PromptDictionary:
        with self._lock:
            self._dictionary = dictionary
        logger.info(
            f"Prompt dictionary rebuilt: {len(dictionary.actions)} actions, "
            f"{len(dictionary.entities)} entities, {len(dictionary.fields)} fields."
        )
        return dictionary

    def load_file(self, path: str) -> PromptDictionary:
        return self.rebuild(PromptDictionary.load(path))

    def clear(self):
        with self._lock:
            self._dictionary = None


class DictionaryExtractor:
    """Derives a PromptDictionary from the handbook's service definitions with the LLM."""

    def __init__(self, client):
        self.client = client

    def extract(self, handbook) -> PromptDictionary:
        from core.llm import Message
        from core.structured_output import request_structured

        services = []
        for service in handbook.services:
            services.append({
                "service": service.name,
                "description": service.description,
                "entities": [
                    {"name": e.name, "description": e.description, "fields": [f.name for f in e.fields]}
                    for e in service.entities
                ],
                "operations": [
                    {"id": op.operation_id, "signature": op.signature, "summary": op.summary}
                    for op in service.operations
                ],
            })

        messages = [
            Message.system(
                "You build the canonical vocabulary used to normalize user prompts against a set of APIs.\n"
                "- actions: short lowercase verbs describing what users ask for (search, count, summarize, create, update, delete...).\n"
                "- entities: the domain objects exposed by the services, using their exact names.\n"
                "- fields: attribute names users filter, group or sort by.\n"
                "- operators: comparison operators (equals, greater_than, between, in...).\n"
                "- aggregates: aggregation functions (sum, avg, count, min, max...).\n"
                "Do not invent entities that are not in the service definitions."
            ),
            Message.user(f"Service definitions:\n{json.dumps(services, indent=2)}"),
        ]
        dictionary = request_structured(self.client, messages, PromptDictionary)
        logger.info(f"Extracted dictionary with {len(dictionary.entities)} entities from {len(services)} services.")
        return dictionary
