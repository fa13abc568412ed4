# /core/handbook.py

import hashlib
import re
from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from core.dictionary import PromptDictionary

_QUERY_LIKE = re.compile(r"(query|search|compute|calculate|aggregate|report|analy[sz]e)", re.IGNORECASE)


def category_for(method: str, path: str = "", operation_id: str = "") -> str:
    """Maps an HTTP operation onto one of Retrieve, Compute, Create, Update or Delete."""
    method = method.upper()
    if method in ("GET", "HEAD"):
        return "Retrieve"
    if method == "POST":
        if _QUERY_LIKE.search(path) or _QUERY_LIKE.search(operation_id):
            return "Compute"
        return "Create"
    if method in ("PUT", "PATCH"):
        return "Update"
    if method == "DELETE":
        return "Delete"
    return "Compute"


class FieldDefinition(BaseModel):
    name: str
    type: str = "string"
    description: str = ""


class EntityDefinition(BaseModel):
    name: str
    description: str = ""
    tag: Optional[str] = Field(None, description="OpenAPI tag grouping the entity's operations. Defaults to the name.")
    fields: List[FieldDefinition] = Field(default_factory=list)
    operations: List[str] = Field(default_factory=list, description="Explicit operation ids; overrides tag matching.")


class ParameterDefinition(BaseModel):
    name: str
    location: Literal["path", "query", "header", "body"] = "query"
    required: bool = False
    description: str = ""
    param_schema: Dict[str, Any] = Field(default_factory=dict)


class OperationExample(BaseModel):
    name: str
    summary: str = ""
    request: Any = None
    response: Any = None


class OperationDefinition(BaseModel):
    operation_id: str
    method: str = "GET"
    path: str = "/"
    summary: str = ""
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    parameters: List[ParameterDefinition] = Field(default_factory=list)
    request_schema: Optional[Dict[str, Any]] = None
    response_schema: Optional[Dict[str, Any]] = None
    examples: List[OperationExample] = Field(default_factory=list)

    @property
    def signature(self) -> str:
        return f"{self.method.upper()} {self.path}"

    @property
    def resolved_category(self) -> str:
        return self.category or category_for(self.method, self.path, self.operation_id)


class ServiceDefinition(BaseModel):
    slug: str
    name: str
    description: str = ""
    base_url: Optional[str] = None
    entities: List[EntityDefinition] = Field(default_factory=list)
    operations: List[OperationDefinition] = Field(default_factory=list)

    def entities_for(self, operation: OperationDefinition) -> List[str]:
        """Entities an operation acts on: explicit listing first, then tag matching."""
        explicit = [e.name for e in self.entities if operation.operation_id in e.operations]
        if explicit:
            return explicit
        tags = {t.lower() for t in operation.tags}
        return [e.name for e in self.entities if (e.tag or e.name).lower() in tags]


class Handbook(BaseModel):
    """Everything the agent knows about the services it can call."""
    name: str = "handbook"
    instructions: str = ""
    services: List[ServiceDefinition] = Field(default_factory=list)
    docs: Dict[str, str] = Field(default_factory=dict)
    dictionary: Optional[PromptDictionary] = None

    def all_operations(self) -> Iterator[Tuple[ServiceDefinition, OperationDefinition]]:
        for service in self.services:
            for operation in service.operations:
                yield service, operation

    def find_operation(self, operation_id: str) -> Optional[Tuple[ServiceDefinition, OperationDefinition]]:
        for service, operation in self.all_operations():
            if operation.operation_id == operation_id:
                return service, operation
        return None

    def operation_ids(self) -> List[str]:
        return [op.operation_id for _, op in self.all_operations()]

    def entity_names(self) -> List[str]:
        return sorted({e.name for s in self.services for e in s.entities})

    def fingerprint(self) -> str:
        return hashlib.sha256(self.model_dump_json().encode("utf-8")).hexdigest()
