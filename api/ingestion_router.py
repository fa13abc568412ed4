from fastapi import APIRouter, BackgroundTasks, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
import os
from pathlib import Path

# Add the root directory to the Python path
import sys
sys.path.append(str(Path(__file__).parent.parent))

from core.config import settings
from core.errors import OrchestratorError
from core.logger import get_logger
from core.runtime import ingest_handbook

logger = get_logger(__name__)

router = APIRouter(
    prefix="/ingestion",
    tags=["Ingestion"]
)


class HandbookIngestionRequest(BaseModel):
    path: Optional[str] = Field(None, description="Handbook directory. Defaults to HANDBOOK_DIR.")
    force: bool = Field(False, description="Rebuild even if the handbook content did not change.")


def index_in_background(path: str, force: bool):
    """Background task: a failed re-index is logged, the previous graph stays in place."""
    logger.info(f"Background indexing started for: {path}")
    try:
        summary = ingest_handbook(path, force=force)
        logger.info(f"Background indexing finished: {summary}")
    except (OrchestratorError, ValueError, OSError) as e:
        logger.error(f"Background indexing of {path} failed: {e}", exc_info=True)


@router.post("/handbook")
def ingest_handbook_directory(background_tasks: BackgroundTasks, request: Optional[HandbookIngestionRequest] = None):
    """Validates the handbook directory and schedules a full re-index in the background."""
    request = request or HandbookIngestionRequest()
    path = request.path or settings.HANDBOOK_DIR
    if not os.path.isdir(path):
        raise HTTPException(status_code=400, detail=f"The path {path} is not a valid directory.")
    if not os.path.isfile(os.path.join(path, "Agent.yaml")):
        raise HTTPException(status_code=400, detail=f"{path} does not contain an Agent.yaml.")

    background_tasks.add_task(index_in_background, path, request.force)
    return {"status": "processing_started", "message": f"Handbook {path} submitted for indexing."}
