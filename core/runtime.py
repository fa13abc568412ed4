# /core/runtime.py

import threading
from typing import Any, Dict, Optional

from core.agent_logic import Orchestrator
from core.config import settings
from core.dictionary import DictionaryRegistry
from core.graph_store import get_graph_store
from core.handbook import Handbook
from core.llm import GeminiInferenceClient, InferenceClient
from core.logger import get_logger
from core.normalizer import PromptSchemaNormalizer

logger = get_logger(__name__)

# Process-wide wiring shared by the API and the ingestion script.
_lock = threading.RLock()
_client: Optional[InferenceClient] = None
_fast_client: Optional[InferenceClient] = None
_handbook: Optional[Handbook] = None
_orchestrator: Optional[Orchestrator] = None


def get_client() -> InferenceClient:
    global _client
    with _lock:
        if _client is None:
            _client = GeminiInferenceClient()
        return _client


def get_fast_client() -> InferenceClient:
    """Client on FAST_MODEL, used for prompt normalization."""
    global _fast_client
    with _lock:
        if _fast_client is None:
            _fast_client = GeminiInferenceClient(model=settings.FAST_MODEL)
        return _fast_client


def ingest_handbook(path: str = None, force: bool = False) -> Dict[str, Any]:
    """Loads and indexes a handbook, then makes it the active one."""
    from ingestion.engine import IngestionEngine
    from ingestion.sources import LocalHandbookSource

    global _handbook, _orchestrator
    engine = IngestionEngine(
        LocalHandbookSource(path or settings.HANDBOOK_DIR),
        get_graph_store(),
        DictionaryRegistry.instance(),
        client=get_client() if settings.GOOGLE_API_KEY else None,
    )
    summary = engine.run(force=force)
    with _lock:
        _handbook = engine.handbook
        if _orchestrator is not None:
            _orchestrator.shutdown()
        _orchestrator = None
    return summary


def get_handbook() -> Handbook:
    with _lock:
        if _handbook is None:
            ingest_handbook()
        return _handbook


def get_orchestrator() -> Orchestrator:
    global _orchestrator
    with _lock:
        if _orchestrator is None:
            _orchestrator = Orchestrator(
                get_client(), get_handbook(), get_graph_store(),
                normalizer=PromptSchemaNormalizer(get_fast_client()),
            )
            logger.info("Orchestrator ready.")
        return _orchestrator
