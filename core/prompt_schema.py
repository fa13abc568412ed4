# /core/prompt_schema.py

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.dictionary import PromptDictionary

# The "local" action is always accepted: it marks prompts answered without a service call.
LOCAL_ACTION = "local"


class WorkflowType(str, Enum):
    SEQUENTIAL = "sequential"


@dataclass(frozen=True)
class PromptSchemaKey:
    """
    Structural identity of a prompt. Two prompts that differ only in parameter
    values (or in entity/param ordering) share the same key.
    """
    action: str
    entities: Tuple[str, ...]
    fields: Tuple[str, ...]
    group_by: Tuple[str, ...]

    @classmethod
    def of(cls, schema: "PromptSchema") -> "PromptSchemaKey":
        return cls(
            action=schema.action,
            entities=tuple(sorted(set(schema.entities))),
            fields=tuple(sorted(set(schema.params.keys()))),
            group_by=tuple(schema.group_by),
        )

    @property
    def string_key(self) -> str:
        parts = [self.action]
        if self.entities:
            parts.append("_".join(self.entities))
        if self.fields:
            parts.append("_".join(self.fields))
        if self.group_by:
            parts.append("group_" + "_".join(self.group_by))
        return "-".join(parts)

    @property
    def hash_key(self) -> str:
        return hashlib.sha256(self.string_key.encode("utf-8")).hexdigest()

    def __str__(self):
        return self.string_key


class PromptSchema(BaseModel):
    """One normalized request: an action over entities with parameters and grouping."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    action: str = ""
    entities: List[str] = Field(default_factory=list)
    group_by: List[str] = Field(default_factory=list)
    params: Dict[str, Any] = Field(default_factory=dict)
    cache_key: Optional[str] = None

    @field_validator("entities", "group_by", mode="before")
    @classmethod
    def _ordered_unique(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return list(dict.fromkeys(value))

    @field_validator("params", mode="before")
    @classmethod
    def _params_or_empty(cls, value):
        return value or {}

    def key(self) -> PromptSchemaKey:
        return PromptSchemaKey.of(self)

    def generate_cache_key(self) -> str:
        self.cache_key = self.key().string_key
        return self.cache_key

    def validate_against(self, dictionary: PromptDictionary) -> List[str]:
        """Returns every violation, not just the first one."""
        errors = []
        if not self.action or not self.action.strip():
            errors.append("Action is required for cache key")
        elif self.action != LOCAL_ACTION and not dictionary.has_action(self.action):
            errors.append(f"Action '{self.action}' is not in dictionary")

        for entity in self.entities:
            if not dictionary.has_entity(entity):
                errors.append(f"Entity '{entity}' is not in dictionary")
        for field in self.params:
            if not dictionary.has_field(field):
                errors.append(f"Param key '{field}' is not in dictionary")
        for field in self.group_by:
            if not dictionary.has_field(field):
                errors.append(f"Group by field '{field}' is not in dictionary")
        return errors


class PromptSchemaStep(BaseModel):
    ps: PromptSchema


class PromptSchemaWorkflow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    workflow_type: str = WorkflowType.SEQUENTIAL.value
    steps: List[PromptSchemaStep] = Field(default_factory=list)

    def generate_cache_keys(self) -> List[str]:
        return [step.ps.generate_cache_key() for step in self.steps]

    def validate_against(self, dictionary: PromptDictionary) -> List[str]:
        errors = []
        if not self.workflow_type:
            errors.append("Workflow type is required")
        elif self.workflow_type not in {w.value for w in WorkflowType}:
            errors.append(f"Unsupported workflow type: {self.workflow_type}")

        if not self.steps:
            errors.append("At least one step is required")
        for i, step in enumerate(self.steps, start=1):
            errors.extend(f"Step {i}: {e}" for e in step.ps.validate_against(dictionary))
        return errors
