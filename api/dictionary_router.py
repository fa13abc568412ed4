from fastapi import APIRouter, Body, HTTPException
from pydantic import BaseModel

from core.dictionary import DictionaryRegistry, PromptDictionary
from core.normalizer import PromptSchemaNormalizer
from core.prompt_schema import PromptSchemaWorkflow
from core.runtime import get_fast_client

# --- Pydantic Models ---
class NormalizationResponse(BaseModel):
    workflow: PromptSchemaWorkflow
    attempts: int
    validation_errors: list[str]

# --- Router Initialization ---
router = APIRouter(
    prefix="/dictionary",
    tags=["Prompt Dictionary"]
)


def _active_dictionary() -> PromptDictionary:
    dictionary = DictionaryRegistry.instance().get_optional()
    if dictionary is None:
        raise HTTPException(status_code=404, detail="No prompt dictionary has been loaded yet.")
    return dictionary


# --- API Endpoints ---

@router.get("/", response_model=PromptDictionary)
def get_dictionary():
    """Returns the active prompt dictionary."""
    return _active_dictionary()


@router.put("/", response_model=PromptDictionary)
def replace_dictionary(dictionary: PromptDictionary):
    """Replaces the active prompt dictionary."""
    return DictionaryRegistry.instance().rebuild(PromptDictionary.from_mapping(dictionary.model_dump()))


@router.post("/normalize", response_model=NormalizationResponse)
def normalize_prompt(prompt: str = Body(..., embed=True)):
    """Normalizes a prompt into a cache-keyed prompt schema workflow."""
    if not prompt.strip():
        raise HTTPException(status_code=400, detail="Prompt cannot be empty.")
    result = PromptSchemaNormalizer(get_fast_client()).normalize_with_diagnostics(prompt, _active_dictionary())
    return NormalizationResponse(
        workflow=result.workflow,
        attempts=result.attempts,
        validation_errors=result.validation_errors,
    )
