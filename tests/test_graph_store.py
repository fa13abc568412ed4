# /tests/test_graph_store.py

import unittest
import sys
import os

# Add root directory to path to allow imports from 'core'
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from core.database import InMemoryGraphDriver, create_graph_driver
from core.errors import GraphStoreNotInitializedError, InfrastructureError
from core.graph_store import KnowledgeGraphStore
from core.models import (
    DocChunkNode, EdgeType, EntityNode, ExampleNode, GraphContextTuple, OperationNode,
    entity_key, operation_key,
)
from ingestion.sources import LocalHandbookSource

HANDBOOK_DIR = os.path.join(os.path.dirname(__file__), '..', 'handbook')


def operation(op_id, entity):
    return OperationNode(
        key=operation_key(op_id), name=op_id, operation_id=op_id, method="GET",
        path=f"/{op_id}", signature=f"GET /{op_id}", entities=(entity,), operations=(op_id,),
    )


def sample_nodes():
    return [
        EntityNode(key=entity_key("Sale"), name="Sale", entities=("Sale",)),
        operation("querySales", "Sale"),
        operation("listSales", "Sale"),
        ExampleNode(key="example|listSales|basic", name="basic", operation_id="listSales",
                    entities=("Sale",), operations=("listSales",)),
        DocChunkNode(key="doc|guide.md|1", name="guide", doc_path="guide.md", content="Sales guide",
                     entities=("Sale",)),
        EntityNode(key=entity_key("Product"), name="Product", entities=("Product",)),
    ]


class TestInMemoryGraphDriver(unittest.TestCase):

    def setUp(self):
        self.driver = InMemoryGraphDriver()
        self.driver.initialize()
        self.driver.upsert_nodes(sample_nodes())

    def keys(self, nodes):
        return sorted(n["key"] for n in nodes)

    def test_uninitialized_driver_fails_fast(self):
        driver = InMemoryGraphDriver()

        with self.assertRaises(GraphStoreNotInitializedError):
            driver.query_by_context([GraphContextTuple(entity="Sale")])
        with self.assertRaises(GraphStoreNotInitializedError):
            driver.upsert_nodes(sample_nodes())

    def test_operation_filter(self):
        nodes = self.driver.query_by_context([GraphContextTuple(entity="Sale", operations=["querySales"])])

        # Nodes tied to another operation are filtered out; entity-wide nodes stay.
        self.assertEqual(self.keys(nodes), ["doc|guide.md|1", "entity|Sale", "op|querySales"])

    def test_empty_operations_return_the_whole_neighbourhood(self):
        nodes = self.driver.query_by_context([GraphContextTuple(entity="Sale", operations=[])])

        self.assertEqual(len(nodes), 5)
        self.assertNotIn("entity|Product", self.keys(nodes))

    def test_tuples_are_unioned_without_duplicates(self):
        nodes = self.driver.query_by_context([
            GraphContextTuple(entity="Sale", operations=["querySales"]),
            GraphContextTuple(entity="Sale", operations=["listSales"]),
            GraphContextTuple(entity="Product", operations=["getProduct"]),
        ])

        self.assertEqual(len(nodes), len(set(self.keys(nodes))))
        self.assertIn("example|listSales|basic", self.keys(nodes))
        self.assertIn("entity|Product", self.keys(nodes))

    def test_unknown_entity_matches_nothing(self):
        self.assertEqual(self.driver.query_by_context([GraphContextTuple(entity="Invoice")]), [])

    def test_empty_context_returns_every_node(self):
        self.assertEqual(len(self.driver.query_by_context([])), 6)

    def test_reupsert_replaces_outbound_edges(self):
        # --- Arrange ---
        doc = DocChunkNode(key="doc|x.md|1", name="x", doc_path="x.md", entities=("Sale",))
        self.driver.upsert_nodes([doc])

        # --- Act ---
        self.driver.upsert_nodes([doc.model_copy(update={"entities": ("Product",)})])

        # --- Assert ---
        self.assertEqual(self.driver.edges_from("doc|x.md|1"), {(EdgeType.HAS_ENTITY, "entity|Product")})
        self.assertNotIn("doc|x.md|1", self.keys(self.driver.query_by_context([GraphContextTuple(entity="Sale")])))

    def test_delete_nodes_by_keys(self):
        self.driver.delete_nodes_by_keys(["op|listSales"])

        self.assertNotIn("op|listSales", self.driver.node_keys())
        self.assertEqual(self.driver.edges_from("op|listSales"), set())

    def test_clear_all(self):
        self.driver.clear_all()

        self.assertEqual(self.driver.query_by_context([]), [])


class TestKnowledgeGraphStore(unittest.TestCase):

    def setUp(self):
        self.driver = InMemoryGraphDriver()
        self.store = KnowledgeGraphStore(self.driver)
        self.handbook = LocalHandbookSource(HANDBOOK_DIR).load_handbook()

    def test_store_requires_initialization(self):
        with self.assertRaises(GraphStoreNotInitializedError):
            self.store.query_by_context([GraphContextTuple(entity="Sale")])
        with self.assertRaises(GraphStoreNotInitializedError):
            self.store.rebuild(sample_nodes())

    def test_rebuild_with_clear_drops_stale_nodes(self):
        self.store.initialize()
        self.store.rebuild(sample_nodes(), clear=True)

        self.store.rebuild([EntityNode(key=entity_key("Invoice"), name="Invoice", entities=("Invoice",))], clear=True)

        self.assertEqual(self.driver.node_keys(), ["entity|Invoice"])

    def test_rebuild_without_clear_keeps_existing_nodes(self):
        self.store.initialize()
        self.store.rebuild(sample_nodes(), clear=True)

        self.store.rebuild([EntityNode(key=entity_key("Invoice"), name="Invoice", entities=("Invoice",))], clear=False)

        self.assertEqual(len(self.driver.node_keys()), 7)

    def test_indexing_the_same_handbook_twice_is_idempotent(self):
        self.store.initialize()
        self.store.index_handbook(self.handbook, force=True)
        first_keys = sorted(self.driver.node_keys())
        first_edges = {k: self.driver.edges_from(k) for k in first_keys}

        self.store.index_handbook(self.handbook, force=True)

        self.assertEqual(sorted(self.driver.node_keys()), first_keys)
        self.assertEqual({k: self.driver.edges_from(k) for k in first_keys}, first_edges)

    def test_unchanged_handbook_is_skipped(self):
        self.store.initialize()
        written = self.store.index_handbook(self.handbook)

        self.assertGreater(written, 0)
        self.assertEqual(self.store.index_handbook(self.handbook), 0)

    def test_handbook_context_query(self):
        self.store.initialize()
        self.store.index_handbook(self.handbook)

        nodes = self.store.query_by_context([GraphContextTuple(entity="Sale", operations=["querySalesData"])])
        keys = {n["key"] for n in nodes}

        self.assertIn("op|querySalesData", keys)
        self.assertIn("example|querySalesData|emeaTotal", keys)
        self.assertNotIn("op|listSales", keys)
        self.assertNotIn("op|getProduct", keys)

class FailingWriteDriver(InMemoryGraphDriver):
    """In-memory driver whose writes can be switched to fail half way through a batch."""

    def __init__(self):
        super().__init__()
        self.fail_writes = False

    def _write_nodes(self, nodes, staged_nodes, out, inbound):
        count = super()._write_nodes(nodes[:1], staged_nodes, out, inbound)
        if self.fail_writes:
            raise InfrastructureError("write rejected")
        return count + super()._write_nodes(nodes[1:], staged_nodes, out, inbound)


class TestAtomicRebuild(unittest.TestCase):

    def setUp(self):
        self.driver = FailingWriteDriver()
        self.store = KnowledgeGraphStore(self.driver)
        self.store.initialize()

    def test_failed_rebuild_keeps_the_previous_graph(self):
        # --- Arrange ---
        self.store.rebuild([EntityNode(key=entity_key("Sale"), name="Sale", entities=("Sale",))], clear=True, fingerprint="v1")
        self.driver.fail_writes = True

        # --- Act ---
        with self.assertRaises(InfrastructureError):
            self.store.rebuild(sample_nodes(), clear=True, fingerprint="v2")

        # --- Assert ---
        self.assertEqual(self.driver.node_keys(), ["entity|Sale"])
        self.assertEqual(self.store.fingerprint, "v1")
        self.assertEqual([n["key"] for n in self.store.query_by_context([])], ["entity|Sale"])

    def test_failed_upsert_keeps_the_previous_graph(self):
        self.store.rebuild(sample_nodes(), clear=True)
        self.driver.fail_writes = True

        with self.assertRaises(InfrastructureError):
            self.store.upsert_nodes([EntityNode(key=entity_key("Invoice"), name="Invoice", entities=("Invoice",))] * 2)

        self.assertNotIn("entity|Invoice", self.driver.node_keys())


class TestDriverFactory(unittest.TestCase):

    def test_known_and_unknown_drivers(self):
        self.assertIsInstance(create_graph_driver("in-memory"), InMemoryGraphDriver)
        with self.assertRaises(InfrastructureError):
            create_graph_driver("arangodb")


if __name__ == '__main__':
    unittest.main()
