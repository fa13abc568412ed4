# /ingestion/engine.py

from typing import Any, Dict, Optional

from core.dictionary import DictionaryExtractor, DictionaryRegistry, PromptDictionary
from core.graph_store import KnowledgeGraphStore
from core.handbook import Handbook
from core.llm import InferenceClient
from core.logger import get_logger
from ingestion.sources import HandbookSource

logger = get_logger(__name__)


class IngestionEngine:
    def __init__(
        self,
        source: HandbookSource,
        graph_store: KnowledgeGraphStore,
        dictionary_registry: DictionaryRegistry = None,
        client: Optional[InferenceClient] = None,
    ):
        self.source = source
        self.graph_store = graph_store
        self.dictionary_registry = dictionary_registry or DictionaryRegistry.instance()
        self.client = client
        self.handbook: Optional[Handbook] = None

    def run(self, force: bool = False) -> Dict[str, Any]:
        """
        Runs the ingestion pipeline:
        1. Loads the handbook from the source.
        2. Rebuilds the knowledge graph (skipped when the handbook content is unchanged).
        3. Rebuilds the prompt dictionary.
        """
        handbook = self.source.load_handbook()
        self.graph_store.initialize()
        written = self.graph_store.index_handbook(handbook, force=force)
        dictionary = self._rebuild_dictionary(handbook)
        self.handbook = handbook

        summary = {
            "handbook": handbook.name,
            "services": len(handbook.services),
            "nodes_written": written,
            "dictionary_loaded": dictionary is not None,
        }
        logger.info(f"Ingestion complete: {summary}")
        return summary

    def _rebuild_dictionary(self, handbook: Handbook) -> Optional[PromptDictionary]:
        if handbook.dictionary is not None:
            return self.dictionary_registry.rebuild(handbook.dictionary)
        if self.client is not None and handbook.services:
            return self.dictionary_registry.rebuild(DictionaryExtractor(self.client).extract(handbook))
        logger.warning("Handbook has no dictionary and no LLM client was given to extract one.")
        return None
