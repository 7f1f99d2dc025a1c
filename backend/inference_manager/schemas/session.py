from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from inference_manager.schemas.job import Credentials, JobInfo, JobResources
from inference_manager.services.job_kinds import JOB_KINDS
from inference_manager.services.tunnels.schemas import TunnelInfo


class SessionState(str, Enum):
    IDLE = "IDLE"
    SUBMITTING = "SUBMITTING"
    QUEUED = "QUEUED"
    STARTING_TUNNEL = "STARTING_TUNNEL"
    READY = "READY"
    ERROR = "ERROR"
    STOPPED = "STOPPED"
    # job ended before a node was ever observed; nothing to serve
    FINISHED = "FINISHED"


# start() is accepted only from these
STARTABLE_STATES = frozenset(
    {SessionState.IDLE, SessionState.ERROR, SessionState.STOPPED, SessionState.FINISHED}
)


class SessionStatus(BaseModel):
    session_id: str
    kind: str
    state: SessionState
    reason: Optional[str] = None
    host: Optional[str] = None
    username: Optional[str] = None
    local_port: int
    job: Optional[JobInfo] = None
    tunnel: TunnelInfo
    logs: List[str] = []
    created_at: datetime
    updated_at: datetime


class SessionCreate(BaseModel):
    kind: str = Field(default="notebook", description="Job kind to run (see /job-kinds)")
    credentials: Credentials
    resources: JobResources = Field(default_factory=JobResources)
    model_id: Optional[str] = Field(default=None, description="Model to serve, if the kind allows it")

    @field_validator("kind")
    @classmethod
    def _check_kind(cls, value: str) -> str:
        if value not in JOB_KINDS:
            raise ValueError(f"unknown job kind, expected one of: {', '.join(sorted(JOB_KINDS))}")
        return value


class QueryRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    system_instruction: Optional[str] = None


class QueryResponse(BaseModel):
    response: Optional[str] = None
    error: Optional[str] = None


class InferenceHealth(BaseModel):
    status: str
    model_loaded: Optional[bool] = None
    device: Optional[str] = None
    file_count: Optional[int] = None
    details: Dict[str, Any] = {}


class JobKindInfo(BaseModel):
    name: str
    job_name: str
    port: int
    description: str
    model_selectable: bool
    default_model: Optional[str] = None
