# /core/database.py

import json
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Set, Tuple

from neo4j import GraphDatabase
from neo4j.exceptions import DriverError, Neo4jError

from core.config import settings
from core.errors import GraphStoreNotInitializedError, InfrastructureError
from core.logger import get_logger
from core.models import EdgeType, GraphContextTuple, GraphNode, entity_key, key_name

logger = get_logger(__name__)


def operations_match(requested: Set[str], node_operations: Set[str]) -> bool:
    """
    A node is relevant when no operations were requested, when it is not tied to any
    operation (entity-wide knowledge), or when both sets share an operation.
    """
    return not requested or not node_operations or bool(requested & node_operations)


class GraphDriver(ABC):
    """
    An abstract base class defining the narrow interface every graph backend implements.
    Every method raises GraphStoreNotInitializedError until initialize() has succeeded.
    """
    driver_name = "abstract"

    @abstractmethod
    def initialize(self):
        pass

    @abstractmethod
    def is_initialized(self) -> bool:
        pass

    @abstractmethod
    def upsert_nodes(self, nodes: Iterable[GraphNode]):
        """Creates or fully replaces nodes, deleting and recreating their outbound edges."""
        pass

    @abstractmethod
    def delete_nodes_by_keys(self, keys: Iterable[str]):
        pass

    @abstractmethod
    def clear_all(self):
        pass

    @abstractmethod
    def replace_all(self, nodes: Iterable[GraphNode]):
        """Clears the graph and writes ``nodes`` as one unit; on failure the previous graph is kept."""
        pass

    @abstractmethod
    def query_by_context(self, tuples: List[GraphContextTuple]) -> List[Dict[str, Any]]:
        """Returns serialized nodes relevant to the (entity, operations) tuples."""
        pass

    @abstractmethod
    def shutdown(self):
        pass

    def _require_initialized(self):
        if not self.is_initialized():
            raise GraphStoreNotInitializedError(f"Graph driver '{self.driver_name}'")


class InMemoryGraphDriver(GraphDriver):
    """
    Graph kept in process memory with forward and reverse adjacency indexes, so a
    context query only touches the neighbours of the requested entities.
    Writes are staged on a copy and swapped in, which makes a batch all-or-nothing.
    """
    driver_name = "in-memory"

    def __init__(self):
        self._initialized = False
        self._write_lock = threading.Lock()
        self._nodes: Dict[str, GraphNode] = {}
        self._out: Dict[str, Set[Tuple[EdgeType, str]]] = {}
        self._in: Dict[str, Set[Tuple[EdgeType, str]]] = {}

    def initialize(self):
        self._initialized = True
        logger.info("In-memory graph driver initialized.")

    def is_initialized(self) -> bool:
        return self._initialized

    def _staged(self):
        return (
            dict(self._nodes),
            {k: set(v) for k, v in self._out.items()},
            {k: set(v) for k, v in self._in.items()},
        )

    @staticmethod
    def _drop_outbound(key, out, inbound):
        for edge_type, target in out.pop(key, set()):
            inbound.get(target, set()).discard((edge_type, key))

    @classmethod
    def _write_nodes(cls, nodes, staged_nodes, out, inbound) -> int:
        count = 0
        for node in nodes:
            cls._drop_outbound(node.key, out, inbound)
            staged_nodes[node.key] = node
            for edge in node.outbound_edges():
                out.setdefault(edge.from_key, set()).add((edge.edge_type, edge.to_key))
                inbound.setdefault(edge.to_key, set()).add((edge.edge_type, edge.from_key))
            count += 1
        return count

    def upsert_nodes(self, nodes):
        self._require_initialized()
        with self._write_lock:
            staged_nodes, out, inbound = self._staged()
            count = self._write_nodes(nodes, staged_nodes, out, inbound)
            self._nodes, self._out, self._in = staged_nodes, out, inbound
        logger.info(f"Upserted {count} nodes into the in-memory graph.")

    def replace_all(self, nodes):
        self._require_initialized()
        with self._write_lock:
            staged_nodes, out, inbound = {}, {}, {}
            count = self._write_nodes(nodes, staged_nodes, out, inbound)
            self._nodes, self._out, self._in = staged_nodes, out, inbound
        logger.info(f"Replaced the in-memory graph with {count} nodes.")

    def delete_nodes_by_keys(self, keys):
        self._require_initialized()
        with self._write_lock:
            staged_nodes, out, inbound = self._staged()
            for key in keys:
                staged_nodes.pop(key, None)
                self._drop_outbound(key, out, inbound)
                for edge_type, source in inbound.pop(key, set()):
                    out.get(source, set()).discard((edge_type, key))
            self._nodes, self._out, self._in = staged_nodes, out, inbound

    def clear_all(self):
        self._require_initialized()
        with self._write_lock:
            self._nodes, self._out, self._in = {}, {}, {}
        logger.info("In-memory graph cleared.")

    def query_by_context(self, tuples):
        self._require_initialized()
        nodes, out, inbound = self._nodes, self._out, self._in
        if not tuples:
            return [n.model_dump(mode="json") for n in nodes.values()]

        matched: Dict[str, GraphNode] = {}
        for context in tuples:
            requested = set(context.operations)
            for edge_type, source in sorted(inbound.get(entity_key(context.entity), ())):
                if edge_type != EdgeType.HAS_ENTITY or source in matched:
                    continue
                node = nodes.get(source)
                if node is None:
                    continue
                node_ops = {key_name(t) for et, t in out.get(source, ()) if et == EdgeType.HAS_OPERATION}
                if operations_match(requested, node_ops):
                    matched[source] = node
        return [n.model_dump(mode="json") for n in matched.values()]

    def edges_from(self, key: str) -> Set[Tuple[EdgeType, str]]:
        return set(self._out.get(key, ()))

    def node_keys(self) -> List[str]:
        return list(self._nodes)

    def shutdown(self):
        self._initialized = False


class Neo4jGraphDriver(GraphDriver):
    """Concrete implementation of the GraphDriver for Neo4j."""
    driver_name = "neo4j"

    def __init__(self, uri: str = None, username: str = None, password: str = None, database: str = None):
        self.uri = uri or settings.NEO4J_URI
        self.username = username or settings.NEO4J_USERNAME
        self.password = password or settings.NEO4J_PASSWORD
        self.database = database or settings.NEO4J_DATABASE
        self._driver = None

    def initialize(self):
        if not all([self.uri, self.username, self.password]):
            raise InfrastructureError("Neo4j credentials not found in settings or .env file.")
        try:
            self._driver = GraphDatabase.driver(self.uri, auth=(self.username, self.password))
            self._driver.verify_connectivity()
            with self._driver.session(database=self.database) as session:
                session.run(
                    "CREATE CONSTRAINT knowledge_node_key IF NOT EXISTS "
                    "FOR (n:KnowledgeNode) REQUIRE n.key IS UNIQUE"
                )
        except (DriverError, Neo4jError) as e:
            self._driver = None
            raise InfrastructureError(f"Could not connect to Neo4j at {self.uri}: {e}") from e
        logger.info(f"Neo4j graph driver initialized against {self.uri}.")

    def is_initialized(self) -> bool:
        return self._driver is not None

    def _write(self, work, **params):
        try:
            with self._driver.session(database=self.database) as session:
                return session.execute_write(work, **params)
        except (DriverError, Neo4jError) as e:
            raise InfrastructureError(f"Neo4j write failed: {e}") from e

    def _read(self, work, **params):
        try:
            with self._driver.session(database=self.database) as session:
                return session.execute_read(work, **params)
        except (DriverError, Neo4jError) as e:
            raise InfrastructureError(f"Neo4j read failed: {e}") from e

    @staticmethod
    def _upsert_work(nodes: List[GraphNode]):
        rows = [
            {"key": n.key, "node_type": n.node_type, "name": n.name, "payload": n.model_dump_json()}
            for n in nodes
        ]
        edges_by_type = defaultdict(list)
        for node in nodes:
            for edge in node.outbound_edges():
                edges_by_type[edge.edge_type].append(
                    {"source": edge.from_key, "target": edge.to_key, "name": key_name(edge.to_key)}
                )

        def _work(tx):
            if not rows:
                return
            tx.run("UNWIND $rows AS row MERGE (n:KnowledgeNode {key: row.key}) SET n = row", rows=rows)
            tx.run(
                "UNWIND $keys AS key MATCH (:KnowledgeNode {key: key})-[r]->() DELETE r",
                keys=[r["key"] for r in rows],
            )
            for edge_type, batch in edges_by_type.items():
                tx.run(
                    f"""
                    UNWIND $edges AS e
                    MATCH (a:KnowledgeNode {{key: e.source}})
                    MERGE (b:KnowledgeNode {{key: e.target}})
                    ON CREATE SET b.name = e.name, b.node_type = 'stub'
                    MERGE (a)-[:`{edge_type.value}`]->(b)
                    """,
                    edges=batch,
                )

        return _work

    def upsert_nodes(self, nodes):
        self._require_initialized()
        nodes = list(nodes)
        if not nodes:
            return
        # One transaction per batch: the whole upsert commits or nothing does.
        self._write(self._upsert_work(nodes))
        logger.info(f"Upserted {len(nodes)} nodes into Neo4j.")

    def replace_all(self, nodes):
        self._require_initialized()
        nodes = list(nodes)
        upsert = self._upsert_work(nodes)

        def _work(tx):
            tx.run("MATCH (n:KnowledgeNode) DETACH DELETE n")
            upsert(tx)

        self._write(_work)
        logger.info(f"Replaced the Neo4j knowledge graph with {len(nodes)} nodes.")

    def delete_nodes_by_keys(self, keys):
        self._require_initialized()
        keys = list(keys)
        self._write(lambda tx: tx.run("MATCH (n:KnowledgeNode) WHERE n.key IN $keys DETACH DELETE n", keys=keys))

    def clear_all(self):
        self._require_initialized()
        self._write(lambda tx: tx.run("MATCH (n:KnowledgeNode) DETACH DELETE n"))
        logger.info("Neo4j knowledge graph cleared.")

    def query_by_context(self, tuples):
        self._require_initialized()
        if not tuples:
            records = self._read(lambda tx: tx.run(
                "MATCH (n:KnowledgeNode) WHERE n.payload IS NOT NULL RETURN n.key AS key, n.payload AS payload"
            ).data())
            return [json.loads(r["payload"]) for r in records]

        query = """
        MATCH (:KnowledgeNode {key: $entity_key})<-[:HasEntity]-(n:KnowledgeNode)
        WHERE n.payload IS NOT NULL
        OPTIONAL MATCH (n)-[:HasOperation]->(o:KnowledgeNode)
        WITH n, collect(DISTINCT o.name) AS ops
        WHERE size($operations) = 0 OR size(ops) = 0 OR any(op IN ops WHERE op IN $operations)
        RETURN n.key AS key, n.payload AS payload
        ORDER BY key
        """
        matched: Dict[str, Dict[str, Any]] = {}
        for context in tuples:
            records = self._read(lambda tx: tx.run(
                query, entity_key=entity_key(context.entity), operations=list(context.operations)
            ).data())
            for record in records:
                matched.setdefault(record["key"], json.loads(record["payload"]))
        return list(matched.values())

    def shutdown(self):
        if self._driver is not None:
            self._driver.close()
            self._driver = None


def create_graph_driver(name: str = None) -> GraphDriver:
    """Builds the backend adapter selected by GRAPH_DRIVER."""
    name = name or settings.GRAPH_DRIVER
    if name == "in-memory":
        return InMemoryGraphDriver()
    if name == "neo4j":
        return Neo4jGraphDriver()
    if name == "neptune":
        from core.neptune_database import NeptuneGraphDriver
        return NeptuneGraphDriver()
    raise InfrastructureError(f"Unknown graph driver '{name}'")
