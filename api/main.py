from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import sys
from pathlib import Path

# Add the root directory to the Python path
sys.path.append(str(Path(__file__).parent.parent))

from api.dictionary_router import router as dictionary_router
from api.ingestion_router import router as ingestion_router
from api.knowledge_router import router as knowledge_router
from core.agent_logic import PromptResponse
from core.errors import ExecutionError, InfrastructureError, OrchestratorError, StateError, StructuralError
from core.logger import get_logger
from core.runtime import get_orchestrator

logger = get_logger(__name__)


class QueryRequest(BaseModel):
    question: str


app = FastAPI(
    title="Handbook Orchestrator API",
    description="Turns natural-language requests into grounded API calls against the services of a handbook.",
    version="1.0.0"
)

origins = [
    "http://localhost",
    "http://localhost:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(dictionary_router)
app.include_router(ingestion_router)
app.include_router(knowledge_router)


@app.exception_handler(OrchestratorError)
def orchestrator_error_handler(request: Request, exc: OrchestratorError):
    if isinstance(exc, (StructuralError, StateError)):
        status = 422
    elif isinstance(exc, InfrastructureError):
        status = 503
    elif isinstance(exc, ExecutionError):
        status = 502
    else:
        status = 500
    logger.error(f"{request.url.path} failed with {type(exc).__name__}: {exc}")
    return JSONResponse(status_code=status, content={"error": type(exc).__name__, "detail": str(exc)})


@app.post("/query", response_model=PromptResponse)
def query_agent(request: QueryRequest):
    """Runs the full Extract -> Plan -> Execute -> Summary pipeline for one question."""
    logger.info(f"Received query: {request.question}")
    return get_orchestrator().handle_prompt(request.question)


@app.get("/")
def read_root():
    return {"message": "Handbook Orchestrator API is running."}
