# /core/retriever.py

import json
from typing import Any, Dict, List

from core.graph_store import KnowledgeGraphStore
from core.logger import get_logger
from core.models import AssignmentContext, NodeType

logger = get_logger(__name__)

_SECTION_TITLES = [
    (NodeType.OPERATION, "Operations"),
    (NodeType.ENTITY, "Entities"),
    (NodeType.FIELD, "Fields"),
    (NodeType.EXAMPLE, "Examples"),
    (NodeType.DOC_CHUNK, "Documentation"),
]


def retrieve_context(store: KnowledgeGraphStore, assignment: AssignmentContext) -> List[Dict[str, Any]]:
    """Fetches the knowledge graph nodes relevant to the extracted entities and operations."""
    tuples = assignment.to_context_tuples()
    if not tuples:
        return []
    nodes = store.query_by_context(tuples)
    logger.info(f"Retrieved {len(nodes)} graph nodes for {len(tuples)} context tuple(s).")
    return nodes


def _render_node(node: Dict[str, Any]) -> str:
    node_type = node.get("node_type")
    if node_type == NodeType.OPERATION:
        lines = [f"### {node['operation_id']} ({node['signature']}, {node.get('category', '')})"]
        if node.get("summary"):
            lines.append(node["summary"])
        if node.get("content") and node.get("content") != node.get("summary"):
            lines.append(node["content"])
        if node.get("request_schema"):
            lines.append(f"Input schema: {json.dumps(node['request_schema'])}")
        if node.get("response_schema"):
            lines.append(f"Output schema: {json.dumps(node['response_schema'])}")
        return "\n".join(lines)
    if node_type == NodeType.ENTITY:
        return f"- {node['name']}: {node.get('description', '')}".rstrip(": ")
    if node_type == NodeType.FIELD:
        return f"- {node['owner']}.{node['name']} ({node.get('field_type', 'string')}): {node.get('description', '')}".rstrip(": ")
    if node_type == NodeType.EXAMPLE:
        return (
            f"- {node['operation_id']} / {node['name']}: {node.get('summary', '')}\n"
            f"  request: {json.dumps(node.get('request'), default=str)}\n"
            f"  response: {json.dumps(node.get('response'), default=str)}"
        )
    header = f"[{node.get('doc_path', '')}{' > ' + node['section'] if node.get('section') else ''}]"
    return f"{header}\n{node.get('content', '')}"


def format_context(nodes: List[Dict[str, Any]]) -> str:
    """Renders retrieved nodes as markdown sections grouped by node type."""
    if not nodes:
        return "No handbook knowledge matched the request."
    sections = []
    for node_type, title in _SECTION_TITLES:
        rendered = [_render_node(n) for n in nodes if n.get("node_type") == node_type]
        if rendered:
            sections.append(f"## {title}\n" + "\n\n".join(rendered))
    return "\n\n".join(sections)
