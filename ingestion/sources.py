# /ingestion/sources.py

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List

import yaml

from core.dictionary import PromptDictionary
from core.handbook import EntityDefinition, Handbook, ServiceDefinition
from core.logger import get_logger
from ingestion.openapi import load_openapi, parse_operations

logger = get_logger(__name__)

AGENT_FILE = "Agent.yaml"
DICTIONARY_FILE = "apis/dictionary.yaml"
DOCS_DIR = "docs"


class HandbookSource(ABC):
    """Abstract base class for a place a handbook can be loaded from."""
    @abstractmethod
    def load_handbook(self) -> Handbook:
        pass


class LocalHandbookSource(HandbookSource):
    """
    Loads a handbook directory:

        Agent.yaml             name, instructions and the list of apis
        apis/*.yaml            OpenAPI definitions referenced from Agent.yaml
        apis/dictionary.yaml   optional prompt dictionary
        docs/**/*.md           free-form documentation
    """
    def __init__(self, path: str):
        if not Path(path).is_dir():
            raise ValueError(f"The path {path} is not a valid directory.")
        self.path = Path(path)

    def _read_yaml(self, relative: str) -> Any:
        with open(self.path / relative, "r", encoding="utf-8") as f:
            return yaml.safe_load(f)

    def _load_service(self, spec: Dict[str, Any]) -> ServiceDefinition:
        slug = spec.get("slug") or spec["name"].lower().replace(" ", "-")
        operations = []
        if spec.get("definition"):
            operations = parse_operations(load_openapi(str(self.path / spec["definition"])))
        service = ServiceDefinition(
            slug=slug,
            name=spec.get("name", slug),
            description=spec.get("description", ""),
            base_url=spec.get("base_url"),
            entities=[EntityDefinition.model_validate(e) for e in spec.get("entities") or []],
            operations=operations,
        )
        logger.info(f"Loaded service '{slug}' with {len(service.entities)} entities and {len(operations)} operations.")
        return service

    def _load_docs(self) -> Dict[str, str]:
        docs_dir = self.path / DOCS_DIR
        docs = {}
        if docs_dir.is_dir():
            for file in sorted(docs_dir.rglob("*.md")):
                docs[file.relative_to(self.path).as_posix()] = file.read_text(encoding="utf-8")
        return docs

    def load_handbook(self) -> Handbook:
        print(f"--- Loading handbook from: {self.path} ---")
        if not (self.path / AGENT_FILE).is_file():
            raise ValueError(f"{self.path} has no {AGENT_FILE}.")
        agent = self._read_yaml(AGENT_FILE) or {}

        instructions = agent.get("instructions", "")
        if not instructions and (self.path / "instructions.md").is_file():
            instructions = (self.path / "instructions.md").read_text(encoding="utf-8")

        services: List[ServiceDefinition] = [self._load_service(s) for s in agent.get("apis") or []]

        dictionary = None
        if (self.path / DICTIONARY_FILE).is_file():
            dictionary = PromptDictionary.from_mapping(self._read_yaml(DICTIONARY_FILE))

        handbook = Handbook(
            name=agent.get("name", self.path.name),
            instructions=instructions,
            services=services,
            docs=self._load_docs(),
            dictionary=dictionary,
        )
        print(f"  - Loaded {len(services)} service(s) and {len(handbook.docs)} doc file(s).")
        return handbook
