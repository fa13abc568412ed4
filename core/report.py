# /core/report.py

import os
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from core.logger import get_logger, run_extra

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PhaseRecord(BaseModel):
    phase: str
    status: str = "running"
    started_at: datetime = Field(default_factory=_now)
    duration_ms: float = 0.0
    detail: Dict[str, Any] = Field(default_factory=dict)


class ExecutionReport(BaseModel):
    """Diagnostic artifact of one request. Low-level details live here, not in the answer."""
    execution_id: str
    prompt: str
    started_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None
    success: Optional[bool] = None
    phases: List[PhaseRecord] = Field(default_factory=list)
    assignment: Optional[Dict[str, Any]] = None
    plan: Optional[Dict[str, Any]] = None
    result: Any = None
    answer: Optional[str] = None
    error: Optional[str] = None
    normalization: Dict[str, Any] = Field(default_factory=dict)

    def finish(self, success: bool, error: Optional[str] = None):
        self.finished_at = _now()
        self.success = success
        self.error = error

    def write(self, directory: str) -> str:
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, f"execution-{self.execution_id}.json")
        with open(path, "w", encoding="utf-8") as f:
            f.write(self.model_dump_json(indent=2))
        return path


@dataclass
class RunContext:
    """
    Everything scoped to one handle_prompt call. It is passed explicitly to every
    phase and to the background normalization task.
    """
    execution_id: str
    report: ExecutionReport
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def start(cls, prompt: str) -> "RunContext":
        execution_id = uuid.uuid4().hex
        return cls(execution_id=execution_id, report=ExecutionReport(execution_id=execution_id, prompt=prompt))

    @property
    def log_extra(self) -> Dict[str, str]:
        return run_extra(self.execution_id)

    @contextmanager
    def phase(self, name: str):
        record = PhaseRecord(phase=name)
        started = time.perf_counter()
        try:
            yield record
            record.status = "ok"
        except Exception as e:
            record.status = "error"
            record.detail["error"] = f"{type(e).__name__}: {e}"
            raise
        finally:
            record.duration_ms = round((time.perf_counter() - started) * 1000, 2)
            self.report.phases.append(record)
            logger.info(f"Phase {name} finished with status {record.status} in {record.duration_ms}ms", extra=self.log_extra)
