from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from pydantic import BaseModel, Field

from inference_manager.core.exceptions import (
    ClusterError,
    InferenceError,
    InvalidTransitionError,
)
from inference_manager.core.logging import get_logger
from inference_manager.dependencies.sessions import get_session_registry
from inference_manager.schemas.job import Credentials, JobPreview, JobResources
from inference_manager.schemas.session import (
    InferenceHealth,
    JobKindInfo,
    QueryRequest,
    QueryResponse,
    SessionCreate,
    SessionState,
    SessionStatus,
)
from inference_manager.services.inference_client import InferenceClient
from inference_manager.services.job_kinds import get_job_kind, list_job_kinds
from inference_manager.services.orchestrator import JobOrchestrator
from inference_manager.services.session_registry import SessionRegistry
from inference_manager.services.tunnels.schemas import TunnelHealthInfo

router = APIRouter()
kinds_router = APIRouter()
api_logger = get_logger("api")


class SessionStart(BaseModel):
    credentials: Credentials
    resources: JobResources = Field(default_factory=JobResources)
    model_id: Optional[str] = None


class ScriptPreviewRequest(BaseModel):
    resources: JobResources = Field(default_factory=JobResources)
    model_id: Optional[str] = None


def _to_http(exc: Exception) -> HTTPException:
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    if isinstance(exc, KeyError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc.args[0]))
    if isinstance(exc, InferenceError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message)
    if isinstance(exc, ClusterError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def get_session(
    session_id: str, registry: SessionRegistry = Depends(get_session_registry)
) -> JobOrchestrator:
    try:
        return registry.get(session_id)
    except KeyError as exc:
        raise _to_http(exc)


def _ready_client(session: JobOrchestrator) -> InferenceClient:
    if session.state != SessionState.READY:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session is {session.state.value}, not READY",
        )
    return InferenceClient(session.local_port)


@kinds_router.get("/", response_model=List[JobKindInfo])
def get_job_kinds():
    """List the job kinds that can be started."""
    return [
        JobKindInfo(
            name=kind.name,
            job_name=kind.job_name,
            port=kind.port,
            description=kind.description,
            model_selectable=kind.model_selectable,
            default_model=kind.default_model,
        )
        for kind in list_job_kinds()
    ]


@kinds_router.post("/{kind_name}/preview", response_model=JobPreview)
def preview_job_script(
    kind_name: str,
    preview_in: ScriptPreviewRequest,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Render the job script for a kind without submitting it."""
    try:
        kind = get_job_kind(kind_name)
        return registry.submitter.preview(kind, preview_in.resources, preview_in.model_id)
    except KeyError as exc:
        raise _to_http(exc)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    except ClusterError as exc:
        raise _to_http(exc)


@router.post("/", response_model=SessionStatus, status_code=status.HTTP_202_ACCEPTED)
async def create_session(
    session_in: SessionCreate,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """
    Create a session and submit its job.

    Returns once sbatch answered; poll GET /{session_id} to follow the job
    through QUEUED and STARTING_TUNNEL to READY.
    """
    try:
        session = await registry.create_session(session_in.kind, session_in.credentials)
        return await session.start(
            session_in.credentials, session_in.resources, session_in.model_id
        )
    except (ClusterError, KeyError) as exc:
        raise _to_http(exc)


@router.get("/", response_model=List[SessionStatus])
def list_sessions(registry: SessionRegistry = Depends(get_session_registry)):
    return [session.snapshot() for session in registry.list()]


@router.get("/{session_id}", response_model=SessionStatus)
def get_session_status(session: JobOrchestrator = Depends(get_session)):
    return session.snapshot()


@router.post("/{session_id}/start", response_model=SessionStatus)
async def restart_session(
    start_in: SessionStart,
    session: JobOrchestrator = Depends(get_session),
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Start an existing session again after ERROR, FINISHED or STOPPED."""
    try:
        await registry.ensure_available(session, start_in.credentials)
        return await session.start(start_in.credentials, start_in.resources, start_in.model_id)
    except ClusterError as exc:
        raise _to_http(exc)


@router.post("/{session_id}/stop", response_model=SessionStatus)
async def stop_session(session: JobOrchestrator = Depends(get_session)):
    """Close the tunnel and cancel the job, including an orphaned one after ERROR."""
    return await session.stop()


@router.post("/{session_id}/cancel", response_model=SessionStatus)
async def cancel_session(session: JobOrchestrator = Depends(get_session)):
    return await session.cancel()


@router.delete("/{session_id}", response_model=SessionStatus)
async def delete_session(
    session_id: str, registry: SessionRegistry = Depends(get_session_registry)
):
    try:
        session = await registry.remove(session_id)
    except KeyError as exc:
        raise _to_http(exc)
    return session.snapshot()


@router.get("/{session_id}/tunnel/health", response_model=TunnelHealthInfo)
async def tunnel_health(session: JobOrchestrator = Depends(get_session)):
    return await session.tunnel.health()


@router.get("/{session_id}/inference/health", response_model=InferenceHealth)
async def inference_health(session: JobOrchestrator = Depends(get_session)):
    client = _ready_client(session)
    try:
        payload = await client.health()
    except InferenceError as exc:
        return InferenceHealth(status="down", details={"error": exc.message})

    known = {"status", "model_loaded", "device", "file_count"}
    serving = payload.get("status") == session.kind.health_status
    return InferenceHealth(
        status="ok" if serving else "down",
        model_loaded=payload.get("model_loaded"),
        device=payload.get("device"),
        file_count=payload.get("file_count"),
        details={k: v for k, v in payload.items() if k not in known},
    )


@router.post("/{session_id}/query", response_model=QueryResponse)
async def query_session(
    query_in: QueryRequest, session: JobOrchestrator = Depends(get_session)
):
    client = _ready_client(session)
    try:
        payload = await client.query(query_in.prompt, query_in.system_instruction)
    except InferenceError as exc:
        api_logger.warning(f"Query on session {session.session_id} failed: {exc.message}")
        return QueryResponse(error=exc.message)
    return QueryResponse(response=payload.get("response"), error=payload.get("error"))


@router.get("/{session_id}/files")
async def list_files(session: JobOrchestrator = Depends(get_session)) -> Dict[str, Any]:
    client = _ready_client(session)
    try:
        return {"files": await client.list_files()}
    except InferenceError as exc:
        raise _to_http(exc)


@router.post("/{session_id}/files")
async def upload_file(
    file: UploadFile = File(...), session: JobOrchestrator = Depends(get_session)
) -> Dict[str, Any]:
    client = _ready_client(session)
    content = await file.read()
    try:
        return await client.upload_file(file.filename, content, file.content_type)
    except InferenceError as exc:
        raise _to_http(exc)


@router.delete("/{session_id}/files/{filename}")
async def delete_file(
    filename: str, session: JobOrchestrator = Depends(get_session)
) -> Dict[str, Any]:
    client = _ready_client(session)
    try:
        return await client.delete_file(filename)
    except InferenceError as exc:
        raise _to_http(exc)
