# /ingestion/openapi.py

import re
from typing import Any, Dict, List, Optional

import yaml

from core.handbook import OperationDefinition, OperationExample, ParameterDefinition

HTTP_METHODS = ("get", "post", "put", "patch", "delete", "head")
PARAMETER_LOCATIONS = ("path", "query", "header")


def load_openapi(path: str) -> Dict[str, Any]:
    """Reads an OpenAPI document (YAML or JSON)."""
    with open(path, "r", encoding="utf-8") as f:
        document = yaml.safe_load(f) or {}
    if not isinstance(document, dict) or "paths" not in document:
        raise ValueError(f"{path} is not an OpenAPI document (no 'paths').")
    return document


def resolve_refs(document: Dict[str, Any], value: Any, seen: tuple = ()) -> Any:
    """Inlines local '#/...' references. Recursive references are cut at their second visit."""
    if isinstance(value, dict):
        ref = value.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/"):
            if ref in seen:
                return {"type": "object", "description": f"recursive reference to {ref.split('/')[-1]}"}
            target: Any = document
            for part in ref[2:].split("/"):
                target = target.get(part, {}) if isinstance(target, dict) else {}
            return resolve_refs(document, target, seen + (ref,))
        return {k: resolve_refs(document, v, seen) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_refs(document, v, seen) for v in value]
    return value


def _json_content(container: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    content = (container or {}).get("content") or {}
    for media_type, media in content.items():
        if "json" in media_type:
            return media or {}
    return next(iter(content.values()), None) or {}


def _success_response(responses: Dict[str, Any]) -> Dict[str, Any]:
    for status in sorted(responses or {}, key=str):
        if str(status).startswith("2"):
            return responses[status] or {}
    return {}


def _named_examples(media: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    examples = dict(media.get("examples") or {})
    if not examples and "example" in media:
        examples["default"] = {"value": media["example"]}
    return examples


def default_operation_id(method: str, path: str) -> str:
    return f"{method.lower()}_{re.sub(r'[^A-Za-z0-9]+', '_', path).strip('_')}"


def parse_operations(document: Dict[str, Any]) -> List[OperationDefinition]:
    document = resolve_refs(document, document)
    operations = []
    for path, item in (document.get("paths") or {}).items():
        shared_parameters = item.get("parameters") or []
        for method in HTTP_METHODS:
            op = item.get(method)
            if not op:
                continue

            parameters = []
            for p in list(shared_parameters) + list(op.get("parameters") or []):
                location = p.get("in", "query")
                if location not in PARAMETER_LOCATIONS:
                    continue
                parameters.append(ParameterDefinition(
                    name=p["name"],
                    location=location,
                    required=p.get("required", location == "path"),
                    description=p.get("description", ""),
                    param_schema=p.get("schema") or {},
                ))

            request_media = _json_content(op.get("requestBody"))
            response_media = _json_content(_success_response(op.get("responses") or {}))
            request_examples = _named_examples(request_media)
            response_examples = _named_examples(response_media)
            examples = [
                OperationExample(
                    name=name,
                    summary=(example or {}).get("summary", ""),
                    request=(example or {}).get("value"),
                    response=(response_examples.get(name) or {}).get("value"),
                )
                for name, example in request_examples.items()
            ]
            examples += [
                OperationExample(name=name, summary=(example or {}).get("summary", ""), response=(example or {}).get("value"))
                for name, example in response_examples.items() if name not in request_examples
            ]

            operations.append(OperationDefinition(
                operation_id=op.get("operationId") or default_operation_id(method, path),
                method=method.upper(),
                path=path,
                summary=op.get("summary", ""),
                description=op.get("description", ""),
                tags=op.get("tags") or [],
                category=op.get("x-category"),
                parameters=parameters,
                request_schema=request_media.get("schema"),
                response_schema=response_media.get("schema"),
                examples=examples,
            ))
    return operations
