# /core/models.py

import hashlib
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter

# This file holds the shared Pydantic data structures of the knowledge graph,
# the extraction phase and the execution plan.

# --- Knowledge Graph ---

class NodeType(str, Enum):
    ENTITY = "entity"
    OPERATION = "operation"
    FIELD = "field"
    EXAMPLE = "example"
    DOC_CHUNK = "doc_chunk"


class EdgeType(str, Enum):
    HAS_ENTITY = "HasEntity"
    HAS_OPERATION = "HasOperation"
    HAS_FIELD = "HasField"
    HAS_EXAMPLE = "HasExample"
    HAS_DOCUMENTATION = "HasDocumentation"


def entity_key(name: str) -> str:
    return f"entity|{name}"

def operation_key(operation_id: str) -> str:
    return f"op|{operation_id}"

def field_key(owner: str, name: str) -> str:
    return f"field|{owner}|{name}"

def example_key(operation_id: str, name: str) -> str:
    return f"example|{operation_id}|{name}"

def doc_key(path: str, content: str) -> str:
    digest = hashlib.sha1(content.encode("utf-8")).hexdigest()[:12]
    return f"doc|{path}|{digest}"

def key_name(key: str) -> str:
    """The human name encoded in an entity or operation key (``entity|Sale`` -> ``Sale``)."""
    return key.split("|", 1)[1] if "|" in key else key


class GraphEdge(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_key: str
    to_key: str
    edge_type: EdgeType


class GraphNode(BaseModel):
    """
    Common shape of every knowledge graph node.
    Nodes are immutable: re-indexing replaces a node as a whole, and its outbound
    edges are derived only from its own attributes.
    """
    model_config = ConfigDict(frozen=True)

    key: str
    node_type: str
    name: str = ""
    entities: Tuple[str, ...] = ()
    operations: Tuple[str, ...] = ()
    content: str = ""
    service_slug: Optional[str] = None

    def outbound_edges(self) -> List[GraphEdge]:
        edges = [
            GraphEdge(from_key=self.key, to_key=entity_key(e), edge_type=EdgeType.HAS_ENTITY)
            for e in dict.fromkeys(self.entities)
        ]
        edges += [
            GraphEdge(from_key=self.key, to_key=operation_key(o), edge_type=EdgeType.HAS_OPERATION)
            for o in dict.fromkeys(self.operations)
        ]
        for edge_type, target in self._links():
            edges.append(GraphEdge(from_key=self.key, to_key=target, edge_type=edge_type))
        return edges

    def _links(self) -> List[Tuple[EdgeType, str]]:
        return []


class EntityNode(GraphNode):
    node_type: Literal["entity"] = "entity"
    description: str = ""
    field_keys: Tuple[str, ...] = ()
    doc_keys: Tuple[str, ...] = ()

    def _links(self):
        return [(EdgeType.HAS_FIELD, k) for k in self.field_keys] + \
               [(EdgeType.HAS_DOCUMENTATION, k) for k in self.doc_keys]


class OperationNode(GraphNode):
    node_type: Literal["operation"] = "operation"
    operation_id: str
    method: str
    path: str
    signature: str
    category: str = ""
    summary: str = ""
    request_schema: Optional[Dict[str, Any]] = None
    response_schema: Optional[Dict[str, Any]] = None
    field_keys: Tuple[str, ...] = ()
    example_keys: Tuple[str, ...] = ()
    doc_keys: Tuple[str, ...] = ()

    def _links(self):
        return [(EdgeType.HAS_FIELD, k) for k in self.field_keys] + \
               [(EdgeType.HAS_EXAMPLE, k) for k in self.example_keys] + \
               [(EdgeType.HAS_DOCUMENTATION, k) for k in self.doc_keys]


class FieldNode(GraphNode):
    node_type: Literal["field"] = "field"
    owner: str
    field_type: str = "string"
    description: str = ""


class ExampleNode(GraphNode):
    node_type: Literal["example"] = "example"
    operation_id: str
    summary: str = ""
    request: Any = None
    response: Any = None


class DocChunkNode(GraphNode):
    node_type: Literal["doc_chunk"] = "doc_chunk"
    doc_path: str
    section: str = ""


KnowledgeNode = Annotated[
    Union[EntityNode, OperationNode, FieldNode, ExampleNode, DocChunkNode],
    Field(discriminator="node_type"),
]

_NODE_ADAPTER = TypeAdapter(KnowledgeNode)

def node_from_dict(data: Dict[str, Any]) -> GraphNode:
    """Rebuilds the concrete node variant from its serialized form."""
    return _NODE_ADAPTER.validate_python(data)


class GraphContextTuple(BaseModel):
    """An entity and the operations requested on it. An empty list means 'any operation'."""
    entity: str
    operations: List[str] = Field(default_factory=list)


# --- Extraction ---

class EntityContext(BaseModel):
    entity: str = Field(description="Name of an entity from the handbook.")
    operations: List[str] = Field(default_factory=list, description="Operation ids needed on this entity.")


class AssignmentContext(BaseModel):
    """What the Extract phase understood from the user's request."""
    refined_assignment: str = Field(
        "",
        validation_alias=AliasChoices("refined_assignment", "refinedAssignment"),
        description="The part of the request that can be handled, restated precisely.",
    )
    unhandled_parts: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("unhandled_parts", "unhandledParts"),
        description="Parts of the request that no registered service can handle.",
    )
    context: List[EntityContext] = Field(default_factory=list)

    def to_context_tuples(self) -> List[GraphContextTuple]:
        return [GraphContextTuple(entity=c.entity, operations=list(c.operations)) for c in self.context]


# --- Execution Plan ---

START_NODE = "start_node"


class PlanNode(BaseModel):
    operation: Optional[str] = Field(None, description="Operation id to invoke. Empty for the start node and pure value nodes.")
    dependencies: List[str] = Field(default_factory=list, description="Ids of the nodes that must complete first.")
    vars: Dict[str, Any] = Field(default_factory=dict, description="Arguments. Strings like '${node_id.path}' reference earlier outputs.")
    answer: Optional[str] = Field(None, description="Optional answer template rendered from earlier outputs.")


class ExecutionPlan(BaseModel):
    """A dependency graph of operation calls keyed by node id, always containing 'start_node'."""
    nodes: Dict[str, PlanNode] = Field(description="Plan nodes keyed by node id.")

    @classmethod
    def empty(cls, initial_vars: Optional[Dict[str, Any]] = None) -> "ExecutionPlan":
        return cls(nodes={START_NODE: PlanNode(vars=initial_vars or {})})

    def operation_ids(self) -> List[str]:
        return [n.operation for n in self.nodes.values() if n.operation]
