import re
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator

from inference_manager.core.config import settings

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")
_SAFE_MODULE = re.compile(r"^[A-Za-z0-9_.+/-]+$")
_MEMORY = re.compile(r"^\d+[KMGT]?$")
_TIME_LIMIT = re.compile(r"^(\d+-)?\d{1,2}:\d{2}:\d{2}$")


class JobState(str, Enum):
    """Canonical job state, independent of the scheduler's spelling."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"
    NODE_FAIL = "NODE_FAIL"
    UNKNOWN = "UNKNOWN"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATES

    @classmethod
    def from_slurm(cls, raw: Optional[str]) -> "JobState":
        """
        Normalize a squeue/sacct state string.

        Handles long names (RUNNING), compact codes (R, PD) and sacct
        decorations such as "CANCELLED by 1000" or "FAILED+".
        """
        if not raw:
            return cls.UNKNOWN
        token = raw.strip().split()[0].rstrip("+").upper() if raw.strip() else ""
        return _SLURM_STATE_MAP.get(token, cls.UNKNOWN)


TERMINAL_JOB_STATES = frozenset(
    {
        JobState.COMPLETED,
        JobState.FAILED,
        JobState.CANCELLED,
        JobState.TIMEOUT,
        JobState.NODE_FAIL,
    }
)

_SLURM_STATE_MAP = {
    "PENDING": JobState.PENDING,
    "PD": JobState.PENDING,
    "CONFIGURING": JobState.PENDING,
    "CF": JobState.PENDING,
    "REQUEUED": JobState.PENDING,
    "RQ": JobState.PENDING,
    "REQUEUE_HOLD": JobState.PENDING,
    "REQUEUE_FED": JobState.PENDING,
    "RESIZING": JobState.PENDING,
    "SUSPENDED": JobState.PENDING,
    "S": JobState.PENDING,
    "RUNNING": JobState.RUNNING,
    "R": JobState.RUNNING,
    "COMPLETING": JobState.COMPLETED,
    "CG": JobState.COMPLETED,
    "COMPLETED": JobState.COMPLETED,
    "CD": JobState.COMPLETED,
    "FAILED": JobState.FAILED,
    "F": JobState.FAILED,
    "BOOT_FAIL": JobState.FAILED,
    "BF": JobState.FAILED,
    "OUT_OF_MEMORY": JobState.FAILED,
    "OOM": JobState.FAILED,
    "DEADLINE": JobState.FAILED,
    "DL": JobState.FAILED,
    "PREEMPTED": JobState.FAILED,
    "PR": JobState.FAILED,
    "REVOKED": JobState.FAILED,
    "RV": JobState.FAILED,
    "CANCELLED": JobState.CANCELLED,
    "CA": JobState.CANCELLED,
    "TIMEOUT": JobState.TIMEOUT,
    "TO": JobState.TIMEOUT,
    "NODE_FAIL": JobState.NODE_FAIL,
    "NF": JobState.NODE_FAIL,
}

# squeue prints these while no node has been allocated
UNASSIGNED_NODE_VALUES = frozenset({"", "(N/A)", "N/A", "(null)", "None", "None assigned"})

_HOST_RANGE = re.compile(r"\[([^\]]*)\]")


def first_host(hostlist: str) -> str:
    """
    First host of a SLURM hostlist: "node[41-42,45]" -> "node41".

    Zero padding inside a range is kept ("gpu[01-04]" -> "gpu01").
    """
    depth = 0
    for index, char in enumerate(hostlist):
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
        elif char == "," and depth == 0:
            hostlist = hostlist[:index]
            break

    def _first(match: "re.Match") -> str:
        return match.group(1).split(",")[0].split("-")[0]

    return _HOST_RANGE.sub(_first, hostlist)


def normalize_node(raw: Optional[str]) -> Optional[str]:
    """Allocated node to tunnel to, or None while nothing is allocated."""
    if raw is None:
        return None
    value = raw.strip()
    if value in UNASSIGNED_NODE_VALUES:
        return None
    return first_host(value)


class Credentials(BaseModel):
    """SSH credentials for the cluster login host. Kept in memory only."""
    host: str = Field(
        default_factory=lambda: settings.SLURM_HOST,
        min_length=1,
        description="Login host of the cluster",
    )
    username: str = Field(..., min_length=1, description="Cluster account name")
    secret: SecretStr = Field(..., description="Password or private key material")
    port: int = Field(
        default_factory=lambda: settings.SLURM_PORT, ge=1, le=65535, description="SSH port"
    )

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        if not _SAFE_NAME.match(value):
            raise ValueError("username contains unsupported characters")
        return value

    @property
    def uses_key(self) -> bool:
        return "PRIVATE KEY-----" in self.secret.get_secret_value()


class JobResources(BaseModel):
    num_nodes: int = Field(default=1, ge=1, description="Number of nodes to allocate")
    tasks_per_node: int = Field(default=1, ge=1, description="Number of tasks per node")
    num_cpus: int = Field(default=4, ge=1, description="Number of CPUs per task")
    memory: str = Field(default="32G", description="Memory per node, e.g. 32G")
    num_gpus: int = Field(default=1, ge=0, description="Number of GPUs to allocate")
    time_limit: str = Field(default="04:00:00", description="Wall clock limit HH:MM:SS or D-HH:MM:SS")
    partition: str = Field(default="kamiak", description="SLURM partition to use")
    modules: List[str] = Field(
        default_factory=lambda: ["python3/3.13.1", "cuda/12.2.0"],
        description="Environment modules loaded before the server starts",
    )

    @field_validator("memory")
    @classmethod
    def _check_memory(cls, value: str) -> str:
        value = value.strip().upper()
        if not _MEMORY.match(value):
            raise ValueError("memory must look like 32G, 512M or 16000")
        return value

    @field_validator("time_limit")
    @classmethod
    def _check_time_limit(cls, value: str) -> str:
        if not _TIME_LIMIT.match(value.strip()):
            raise ValueError("time_limit must be HH:MM:SS or D-HH:MM:SS")
        return value.strip()

    @field_validator("partition")
    @classmethod
    def _check_partition(cls, value: str) -> str:
        if not _SAFE_NAME.match(value):
            raise ValueError("partition contains unsupported characters")
        return value

    @field_validator("modules")
    @classmethod
    def _check_modules(cls, value: List[str]) -> List[str]:
        for module in value:
            if not _SAFE_MODULE.match(module):
                raise ValueError(f"module name {module!r} contains unsupported characters")
        return value


class JobStatus(BaseModel):
    job_id: str
    state: JobState
    node: Optional[str] = None
    raw_state: str = Field(default="", description="State text as printed by the scheduler")
    source: str = Field(default="live", description="'live' (squeue) or 'history' (sacct)")


class JobInfo(BaseModel):
    job_id: str
    job_name: str
    kind: str
    state: JobState = JobState.PENDING
    node: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None


class SubmissionResult(BaseModel):
    """Outcome of a submission: exactly one of job_id / error is set."""
    job_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    script_path: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "SubmissionResult":
        if (self.job_id is None) == (self.error is None):
            raise ValueError("SubmissionResult needs exactly one of job_id or error")
        return self

    @property
    def success(self) -> bool:
        return self.job_id is not None


class JobPreview(BaseModel):
    kind: str
    job_name: str
    script: str
