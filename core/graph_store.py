# /core/graph_store.py

import threading
from typing import Any, Dict, Iterable, List, Optional

from core.config import settings
from core.database import GraphDriver, create_graph_driver
from core.errors import GraphStoreNotInitializedError
from core.logger import get_logger
from core.models import GraphContextTuple, GraphNode

logger = get_logger(__name__)


class KnowledgeGraphStore:
    """
    Process-wide entry point to the knowledge graph.

    Writes (rebuilds, upserts, deletes) are serialized by an exclusive lock.
    Queries do not take the lock: a query issued while a rebuild is running may
    observe a partially rebuilt graph.
    """

    def __init__(self, driver: GraphDriver):
        self.driver = driver
        self._rebuild_lock = threading.RLock()
        self._fingerprint: Optional[str] = None

    def initialize(self):
        if not self.driver.is_initialized():
            self.driver.initialize()

    def is_initialized(self) -> bool:
        return self.driver.is_initialized()

    def _require_initialized(self):
        if not self.driver.is_initialized():
            raise GraphStoreNotInitializedError()

    @property
    def fingerprint(self) -> Optional[str]:
        return self._fingerprint

    def rebuild(self, nodes: Iterable[GraphNode], clear: bool = None, fingerprint: str = None) -> int:
        """
        Replaces the graph content with ``nodes`` and returns the number of nodes written.
        The write is all-or-nothing: when it fails the previous graph stays in place.
        """
        self._require_initialized()
        clear = settings.GRAPH_CLEAR_ON_STARTUP if clear is None else clear
        nodes = list(nodes)
        with self._rebuild_lock:
            if clear:
                self.driver.replace_all(nodes)
            else:
                self.driver.upsert_nodes(nodes)
            self._fingerprint = fingerprint
        logger.info(f"Knowledge graph rebuilt on '{self.driver.driver_name}' with {len(nodes)} nodes (clear={clear}).")
        return len(nodes)

    def index_handbook(self, handbook, force: bool = False) -> int:
        """
        Indexes a whole handbook. Any content change triggers a full rebuild;
        an unchanged handbook is skipped unless ``force`` is set.
        """
        from core.graph_builder import build_handbook_nodes

        fingerprint = handbook.fingerprint()
        if not force and fingerprint == self._fingerprint:
            logger.info("Handbook unchanged since last index; skipping rebuild.")
            return 0
        return self.rebuild(build_handbook_nodes(handbook), fingerprint=fingerprint)

    def upsert_nodes(self, nodes: Iterable[GraphNode]):
        self._require_initialized()
        with self._rebuild_lock:
            self.driver.upsert_nodes(nodes)
            self._fingerprint = None

    def delete_nodes_by_keys(self, keys: Iterable[str]):
        self._require_initialized()
        with self._rebuild_lock:
            self.driver.delete_nodes_by_keys(keys)
            self._fingerprint = None

    def clear_all(self):
        self._require_initialized()
        with self._rebuild_lock:
            self.driver.clear_all()
            self._fingerprint = None

    def query_by_context(self, tuples: List[GraphContextTuple]) -> List[Dict[str, Any]]:
        self._require_initialized()
        return self.driver.query_by_context(tuples)

    def shutdown(self):
        self.driver.shutdown()


_store: Optional[KnowledgeGraphStore] = None
_store_lock = threading.Lock()


def configure_graph_store(driver: GraphDriver) -> KnowledgeGraphStore:
    """Installs a store around ``driver`` as the process-wide instance."""
    global _store
    with _store_lock:
        _store = KnowledgeGraphStore(driver)
        return _store


def get_graph_store() -> KnowledgeGraphStore:
    global _store
    with _store_lock:
        if _store is None:
            _store = KnowledgeGraphStore(create_graph_driver())
        return _store
