# /core/neptune_database.py

import json
from typing import Any, Dict

import boto3
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.driver.protocol import GremlinServerError
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, P

from core.config import settings
from core.database import GraphDriver, operations_match
from core.errors import InfrastructureError
from core.logger import get_logger
from core.models import EdgeType, entity_key, key_name

logger = get_logger(__name__)

LABEL = "KnowledgeNode"


class NeptuneGraphDriver(GraphDriver):
    """
    Concrete implementation of the GraphDriver for AWS Neptune, using Gremlin bytecode
    traversals and, when enabled, IAM (SigV4) signed connections.
    """
    driver_name = "neptune"

    def __init__(self, endpoint: str = None, use_iam: bool = None, region: str = None):
        self.endpoint = endpoint or settings.NEPTUNE_ENDPOINT
        self.use_iam = settings.NEPTUNE_USE_IAM if use_iam is None else use_iam
        self.region = region or settings.NEPTUNE_REGION or self._region_from_endpoint(self.endpoint)
        self._connection = None
        self._g = None

    @staticmethod
    def _region_from_endpoint(endpoint: str) -> str:
        # wss://<cluster>.<id>.<region>.neptune.amazonaws.com:8182/gremlin
        parts = endpoint.split('.')
        return parts[2] if len(parts) > 2 else ""

    def _iam_headers(self) -> Dict[str, str]:
        credentials = boto3.Session().get_credentials()
        if credentials is None:
            raise InfrastructureError("No AWS credentials available for Neptune IAM authentication.")
        request = AWSRequest(method="GET", url=self.endpoint.replace("wss://", "https://", 1))
        SigV4Auth(credentials.get_frozen_credentials(), "neptune-db", self.region).add_auth(request)
        return dict(request.headers)

    def initialize(self):
        if not self.endpoint:
            raise InfrastructureError("NEPTUNE_ENDPOINT is not configured.")
        try:
            headers = self._iam_headers() if self.use_iam else None
            self._connection = DriverRemoteConnection(self.endpoint, 'g', headers=headers)
            self._g = traversal().withRemote(self._connection)
            self._g.V().limit(1).toList()
        except (GremlinServerError, OSError) as e:
            self._connection = None
            self._g = None
            raise InfrastructureError(f"Could not connect to Neptune at {self.endpoint}: {e}") from e
        logger.info(f"Neptune graph driver initialized against {self.endpoint}.")

    def is_initialized(self) -> bool:
        return self._g is not None

    @staticmethod
    def _upsert_vertex(g, node):
        (g.V().has(LABEL, "key", node.key).fold()
            .coalesce(__.unfold(), __.addV(LABEL).property("key", node.key))
            .property(Cardinality.single, "node_type", node.node_type)
            .property(Cardinality.single, "name", node.name)
            .property(Cardinality.single, "payload", node.model_dump_json())
            .iterate())

    @staticmethod
    def _ensure_vertex(g, key: str):
        (g.V().has(LABEL, "key", key).fold()
            .coalesce(
                __.unfold(),
                __.addV(LABEL).property("key", key).property("name", key_name(key)).property("node_type", "stub"),
            )
            .iterate())

    def _write_nodes(self, gtx, nodes):
        for node in nodes:
            self._upsert_vertex(gtx, node)
            gtx.V().has(LABEL, "key", node.key).outE().drop().iterate()
        for node in nodes:
            for edge in node.outbound_edges():
                self._ensure_vertex(gtx, edge.to_key)
                (gtx.V().has(LABEL, "key", edge.from_key)
                    .addE(edge.edge_type.value)
                    .to(__.V().has(LABEL, "key", edge.to_key))
                    .iterate())

    def _in_transaction(self, work, action: str):
        tx = self._g.tx()
        gtx = tx.begin()
        try:
            work(gtx)
            tx.commit()
        except GremlinServerError as e:
            tx.rollback()
            raise InfrastructureError(f"Neptune {action} failed: {e}") from e

    def upsert_nodes(self, nodes):
        self._require_initialized()
        nodes = list(nodes)
        if not nodes:
            return
        self._in_transaction(lambda gtx: self._write_nodes(gtx, nodes), "upsert")
        logger.info(f"Upserted {len(nodes)} nodes into Neptune.")

    def replace_all(self, nodes):
        self._require_initialized()
        nodes = list(nodes)

        def _work(gtx):
            gtx.V().hasLabel(LABEL).drop().iterate()
            self._write_nodes(gtx, nodes)

        self._in_transaction(_work, "rebuild")
        logger.info(f"Replaced the Neptune knowledge graph with {len(nodes)} nodes.")

    def delete_nodes_by_keys(self, keys):
        self._require_initialized()
        keys = list(keys)
        if not keys:
            return
        try:
            self._g.V().hasLabel(LABEL).has("key", P.within(keys)).drop().iterate()
        except GremlinServerError as e:
            raise InfrastructureError(f"Neptune delete failed: {e}") from e

    def clear_all(self):
        self._require_initialized()
        try:
            self._g.V().hasLabel(LABEL).drop().iterate()
        except GremlinServerError as e:
            raise InfrastructureError(f"Neptune clear failed: {e}") from e
        logger.info("Neptune knowledge graph cleared.")

    def query_by_context(self, tuples):
        self._require_initialized()
        try:
            if not tuples:
                payloads = self._g.V().hasLabel(LABEL).has("payload").values("payload").toList()
                return [json.loads(p) for p in payloads]

            matched: Dict[str, Dict[str, Any]] = {}
            for context in tuples:
                requested = set(context.operations)
                rows = (self._g.V().has(LABEL, "key", entity_key(context.entity))
                        .in_(EdgeType.HAS_ENTITY.value).has("payload").dedup()
                        .project("key", "payload", "ops")
                        .by("key")
                        .by("payload")
                        .by(__.out(EdgeType.HAS_OPERATION.value).values("name").fold())
                        .toList())
                for row in sorted(rows, key=lambda r: r["key"]):
                    if row["key"] in matched:
                        continue
                    if operations_match(requested, set(row["ops"])):
                        matched[row["key"]] = json.loads(row["payload"])
            return list(matched.values())
        except GremlinServerError as e:
            raise InfrastructureError(f"Neptune query failed: {e}") from e

    def shutdown(self):
        if self._connection is not None:
            self._connection.close()
        self._connection = None
        self._g = None
