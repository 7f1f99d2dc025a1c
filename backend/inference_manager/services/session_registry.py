import asyncio
from typing import Callable, Dict, List, Optional

from inference_manager.core.exceptions import InvalidTransitionError
from inference_manager.core.logging import cluster_logger
from inference_manager.schemas.job import Credentials
from inference_manager.schemas.session import SessionState
from inference_manager.services.job_kinds import JobKind, get_job_kind
from inference_manager.services.job_status import JobStatusPoller
from inference_manager.services.job_submitter import JobSubmitter
from inference_manager.services.orchestrator import JobOrchestrator
from inference_manager.services.remote_executor import RemoteExecutor

OrchestratorFactory = Callable[[JobKind], JobOrchestrator]


class SessionRegistry:
    """
    Keeps the sessions of this process.

    The local forwarding port and the named job of a user are shared
    resources, so at most one live session may hold each of them. A session
    is live until it reaches STOPPED.
    """

    def __init__(
        self,
        executor: RemoteExecutor = None,
        orchestrator_factory: OrchestratorFactory = None,
    ):
        self.executor = executor or RemoteExecutor()
        self.submitter = JobSubmitter(self.executor)
        self.poller = JobStatusPoller(self.executor)
        self.orchestrator_factory = orchestrator_factory or self._default_factory
        self._sessions: Dict[str, JobOrchestrator] = {}
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _default_factory(self, kind: JobKind) -> JobOrchestrator:
        return JobOrchestrator(kind, self.submitter, self.poller)

    @staticmethod
    def _is_live(session: JobOrchestrator) -> bool:
        return session.state != SessionState.STOPPED

    def _find_conflict(
        self, kind: JobKind, credentials: Credentials, exclude: Optional[str] = None
    ) -> Optional[str]:
        for session in self._sessions.values():
            if session.session_id == exclude or not self._is_live(session):
                continue
            if (
                session.kind.name == kind.name
                and session.host == credentials.host
                and session.username == credentials.username
            ):
                return (
                    f"{credentials.username}@{credentials.host} already has a "
                    f"'{kind.name}' session ({session.session_id})"
                )
            if session.local_port == kind.port:
                return f"Local port {kind.port} is held by session {session.session_id}"
        return None

    async def create_session(self, kind_name: str, credentials: Credentials) -> JobOrchestrator:
        """Register a new session, refusing one that would share a port or job name."""
        kind = get_job_kind(kind_name)
        async with self._get_lock():
            conflict = self._find_conflict(kind, credentials)
            if conflict:
                raise InvalidTransitionError(conflict)
            session = self.orchestrator_factory(kind)
            # claim the job name for this user before start() runs
            session.host = credentials.host
            session.username = credentials.username
            self._sessions[session.session_id] = session
        cluster_logger.info(
            f"Created '{kind.name}' session {session.session_id} for "
            f"{credentials.username}@{credentials.host}"
        )
        return session

    async def ensure_available(self, session: JobOrchestrator, credentials: Credentials) -> None:
        """Check a restart of an existing session against the other live sessions."""
        async with self._get_lock():
            conflict = self._find_conflict(session.kind, credentials, exclude=session.session_id)
        if conflict:
            raise InvalidTransitionError(conflict)

    def get(self, session_id: str) -> JobOrchestrator:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise KeyError(f"Session {session_id} not found")

    def list(self) -> List[JobOrchestrator]:
        return list(self._sessions.values())

    async def remove(self, session_id: str) -> JobOrchestrator:
        """Stop the session (tunnel and job) and forget it."""
        session = self.get(session_id)
        await session.stop()
        async with self._get_lock():
            self._sessions.pop(session_id, None)
        return session

    async def shutdown(self) -> None:
        """Close every tunnel; remote jobs keep running until their wall clock ends."""
        for session in list(self._sessions.values()):
            await session.close()
        cluster_logger.info(f"Closed tunnels of {len(self._sessions)} sessions")
