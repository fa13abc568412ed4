# /core/graph_builder.py

import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml
from langchain_text_splitters import MarkdownHeaderTextSplitter, RecursiveCharacterTextSplitter

from core.config import settings
from core.handbook import Handbook
from core.logger import get_logger
from core.models import (
    DocChunkNode, EntityNode, ExampleNode, FieldNode, GraphNode, OperationNode,
    doc_key, entity_key, example_key, field_key, operation_key,
)

logger = get_logger(__name__)

_FRONT_MATTER_RE = re.compile(r"\A---[ \t]*\n(.*?)\n---[ \t]*(?:\n|\Z)", re.DOTALL)

HEADERS_TO_SPLIT_ON = [("#", "h1"), ("##", "h2"), ("###", "h3")]


def split_front_matter(text: str) -> Tuple[Dict[str, Any], str]:
    """Separates an optional YAML front matter block from a markdown document."""
    match = _FRONT_MATTER_RE.match(text)
    if not match:
        return {}, text
    try:
        meta = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Ignoring malformed front matter: {e}")
        return {}, text[match.end():]
    return (meta if isinstance(meta, dict) else {}), text[match.end():]


def chunk_markdown(text: str, chunk_size: int = None, chunk_overlap: int = None) -> List[Tuple[str, str]]:
    """Splits markdown by headers, then by size. Returns (section title, content) pairs."""
    header_splitter = MarkdownHeaderTextSplitter(headers_to_split_on=HEADERS_TO_SPLIT_ON, strip_headers=False)
    text_splitter = RecursiveCharacterTextSplitter(
        chunk_size=chunk_size or settings.CHUNK_SIZE,
        chunk_overlap=settings.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap,
    )
    chunks = []
    for section in header_splitter.split_text(text):
        title = " > ".join(section.metadata[h] for _, h in HEADERS_TO_SPLIT_ON if h in section.metadata)
        for piece in text_splitter.split_text(section.page_content):
            if piece.strip():
                chunks.append((title, piece))
    return chunks


def mentioned(text: str, names: Iterable[str]) -> List[str]:
    """Names appearing in ``text`` as whole words (a trailing plural 's' is tolerated)."""
    found = []
    for name in names:
        if re.search(rf"\b{re.escape(name)}s?\b", text, re.IGNORECASE):
            found.append(name)
    return found


def _schema_properties(schema: Optional[Dict[str, Any]]) -> List[str]:
    if not isinstance(schema, dict):
        return []
    if schema.get("type") == "array":
        return _schema_properties(schema.get("items"))
    return list((schema.get("properties") or {}).keys())


def _doc_nodes(handbook: Handbook, entity_names: List[str], operation_ids: List[str], chunk_size, chunk_overlap) -> List[DocChunkNode]:
    nodes = []
    for path in sorted(handbook.docs):
        meta, body = split_front_matter(handbook.docs[path])
        for section, content in chunk_markdown(body, chunk_size, chunk_overlap):
            entities = meta.get("entities") or mentioned(content, entity_names)
            operations = meta.get("operations") or [o for o in operation_ids if re.search(rf"\b{re.escape(o)}\b", content)]
            nodes.append(DocChunkNode(
                key=doc_key(path, section + content),
                name=section or path,
                doc_path=path,
                section=section,
                content=content,
                entities=tuple(entities),
                operations=tuple(operations),
            ))

    for service in handbook.services:
        if service.description.strip():
            path = f"services/{service.slug}"
            nodes.append(DocChunkNode(
                key=doc_key(path, service.description),
                name=service.name,
                doc_path=path,
                content=service.description,
                entities=tuple(e.name for e in service.entities),
                service_slug=service.slug,
            ))
    return nodes


def build_handbook_nodes(handbook: Handbook, chunk_size: int = None, chunk_overlap: int = None) -> List[GraphNode]:
    """
    Turns a handbook into knowledge graph nodes. Keys are derived from names and
    content only, so indexing the same handbook twice yields the same nodes.
    """
    entity_defs = {}
    for service in handbook.services:
        for entity in service.entities:
            entity_defs.setdefault(entity.name, (service, entity))
    op_entities = {op.operation_id: service.entities_for(op) for service, op in handbook.all_operations()}

    docs = _doc_nodes(handbook, list(entity_defs), list(op_entities), chunk_size, chunk_overlap)
    nodes: Dict[str, GraphNode] = {}

    for name, (service, entity) in entity_defs.items():
        field_keys = []
        for f in entity.fields:
            fk = field_key(name, f.name)
            field_keys.append(fk)
            nodes.setdefault(fk, FieldNode(
                key=fk, name=f.name, owner=name, field_type=f.type,
                description=f.description, content=f.description,
                entities=(name,), service_slug=service.slug,
            ))
        nodes[entity_key(name)] = EntityNode(
            key=entity_key(name),
            name=name,
            description=entity.description,
            content=entity.description,
            entities=(name,),
            field_keys=tuple(field_keys),
            doc_keys=tuple(d.key for d in docs if name in d.entities),
            service_slug=service.slug,
        )

    for service, op in handbook.all_operations():
        op_id = op.operation_id
        entities = tuple(op_entities[op_id])

        example_keys = []
        for example in op.examples:
            ek = example_key(op_id, example.name)
            example_keys.append(ek)
            nodes[ek] = ExampleNode(
                key=ek, name=example.name, operation_id=op_id, summary=example.summary,
                request=example.request, response=example.response, content=example.summary,
                entities=entities, operations=(op_id,), service_slug=service.slug,
            )

        properties = set(_schema_properties(op.request_schema)) | set(_schema_properties(op.response_schema))
        field_keys = [
            field_key(e, f.name)
            for e in entities if e in entity_defs
            for f in entity_defs[e][1].fields if f.name in properties
        ]

        nodes[operation_key(op_id)] = OperationNode(
            key=operation_key(op_id),
            name=op_id,
            operation_id=op_id,
            method=op.method.upper(),
            path=op.path,
            signature=op.signature,
            category=op.resolved_category,
            summary=op.summary,
            content=op.description or op.summary,
            request_schema=op.request_schema,
            response_schema=op.response_schema,
            entities=entities,
            operations=(op_id,),
            field_keys=tuple(field_keys),
            example_keys=tuple(example_keys),
            doc_keys=tuple(d.key for d in docs if op_id in d.operations),
            service_slug=service.slug,
        )

    for doc in docs:
        nodes.setdefault(doc.key, doc)

    logger.info(
        f"Built {len(nodes)} graph nodes from handbook '{handbook.name}' "
        f"({len(entity_defs)} entities, {len(op_entities)} operations, {len(docs)} doc chunks)."
    )
    return list(nodes.values())
