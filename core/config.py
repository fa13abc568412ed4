# /core/config.py

from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
    """
    Centralized application settings. Pydantic's BaseSettings will automatically
    load these from environment variables or a .env file.
    """
    # --- LLM Models ---
    GENERATION_MODEL: str = Field("gemini-2.5-flash", description="The primary model for extraction and planning.")
    FAST_MODEL: str = Field("gemini-2.5-flash", description="The model for fast tasks like prompt normalization.")
    GOOGLE_API_KEY: str = Field("", description="API key for the Gemini models.")
    LLM_TEMPERATURE: float = Field(0.0, description="Sampling temperature used for every structured call.")

    # --- Handbook ---
    HANDBOOK_DIR: str = Field("handbook", description="Directory holding Agent.yaml, API definitions and docs.")
    SERVICE_BASE_URL: str = Field("http://localhost:8080", description="Fallback base URL for services that do not declare one.")

    # --- Knowledge Graph Backend ---
    GRAPH_DRIVER: Literal["in-memory", "neo4j", "neptune"] = Field("in-memory", description="Which graph backend adapter to use.")
    GRAPH_CLEAR_ON_STARTUP: bool = Field(True, description="Wipe the graph before every full handbook index.")

    # --- Neo4j Database Credentials ---
    NEO4J_URI: str = Field("", description="Bolt URI of the Neo4j server.")
    NEO4J_USERNAME: str = Field("", description="Username for Neo4j.")
    NEO4J_PASSWORD: str = Field("", description="Password for Neo4j.")
    NEO4J_DATABASE: str = Field("neo4j", description="Neo4j database name.")

    # --- AWS Neptune Credentials ---
    NEPTUNE_ENDPOINT: str = Field("", description="The WebSocket endpoint for the Neptune cluster.")
    NEPTUNE_USE_IAM: bool = Field(True, description="Sign Neptune connections with SigV4 using the boto3 credential chain.")
    NEPTUNE_REGION: str = Field("", description="AWS region of the cluster; derived from the endpoint when empty.")

    # --- Pipeline Parameters ---
    EXTRACT_MAX_ATTEMPTS: int = Field(3, description="Attempts for the entity extraction phase.")
    STRUCTURED_OUTPUT_MAX_ATTEMPTS: int = Field(4, description="Attempts for tool/template structured LLM calls.")
    NORMALIZER_MAX_ATTEMPTS: int = Field(3, description="Attempts for prompt schema normalization.")
    NORMALIZATION_ENABLED: bool = Field(True, description="Run prompt normalization in the background after each request.")
    NORMALIZATION_TIMEOUT_SECONDS: float = Field(60.0, description="How long a request waits for background normalization.")

    # --- Execution ---
    OPERATION_TIMEOUT_SECONDS: float = Field(30.0, description="Deadline for a single operation invocation.")
    NETWORK_RETRY_ATTEMPTS: int = Field(10, description="Attempts for transient network failures.")
    NETWORK_RETRY_INITIAL_DELAY: float = Field(0.25, description="First backoff delay in seconds; doubles on every retry.")
    NETWORK_RETRY_MAX_DELAY: float = Field(4.0, description="Upper bound for a single backoff delay in seconds.")

    # --- Documentation Chunking ---
    CHUNK_SIZE: int = Field(2000, description="Maximum characters per documentation chunk.")
    CHUNK_OVERLAP: int = Field(200, description="Character overlap between documentation chunks.")

    # --- Reports ---
    REPORTS_ENABLED: bool = Field(True, description="Write a JSON diagnostic report for every request.")
    REPORTS_DIR: str = Field("reports", description="Directory receiving execution reports.")

    # --- Logging ---
    LOG_LEVEL: str = Field("INFO", description="Level of every project logger.")

    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

settings = Settings()
