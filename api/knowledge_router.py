from fastapi import APIRouter
from pydantic import BaseModel, Field
from typing import Any, Dict, List
from pathlib import Path

# Add the root directory to the Python path
import sys
sys.path.append(str(Path(__file__).parent.parent))

from core.graph_store import get_graph_store
from core.models import GraphContextTuple

router = APIRouter(
    prefix="/knowledge",
    tags=["Knowledge Graph"]
)


class ContextQuery(BaseModel):
    context: List[GraphContextTuple] = Field(default_factory=list, description="Entities with the operations requested on them.")


@router.post("/context", response_model=List[Dict[str, Any]])
def query_context(query: ContextQuery):
    """Returns the knowledge graph nodes relevant to the given (entity, operations) tuples."""
    return get_graph_store().query_by_context(query.context)


@router.delete("/clear")
def clear_knowledge_graph():
    """Deletes every node and edge of the knowledge graph."""
    get_graph_store().clear_all()
    return {"message": "Knowledge graph cleared successfully."}
