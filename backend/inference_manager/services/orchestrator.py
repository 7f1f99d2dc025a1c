"""
Job Orchestrator

State machine for one inference session: submit the job, poll it until a node
is assigned, open the tunnel to that node, and tear everything down again.

    IDLE -> SUBMITTING -> QUEUED -> STARTING_TUNNEL -> READY
                 |           |             |             |
                 +-> ERROR <-+-------------+-------------+
                             +-> FINISHED (job ended before a node was seen)
    any active state -> STOPPED on stop()/cancel()

All state changes happen under one asyncio.Lock. Remote calls run outside it,
and their results are applied only if the session generation and expected
state are unchanged, so a result that raced with a cancel is dropped.
"""

import asyncio
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Iterable, Optional

from inference_manager.core.config import settings
from inference_manager.core.exceptions import (
    ClusterError,
    InvalidTransitionError,
    JobNotFoundError,
)
from inference_manager.core.logging import cluster_logger
from inference_manager.schemas.job import (
    Credentials,
    JobInfo,
    JobResources,
    JobState,
    JobStatus,
)
from inference_manager.schemas.session import (
    STARTABLE_STATES,
    SessionState,
    SessionStatus,
)
from inference_manager.services.job_kinds import JobKind
from inference_manager.services.job_status import JobStatusPoller
from inference_manager.services.job_submitter import JobSubmitter
from inference_manager.services.tunnels.tunnel_manager import TunnelManager


class JobOrchestrator:
    """Owns exactly one job and one tunnel for a session."""

    MAX_LOG_LINES = 200

    def __init__(
        self,
        kind: JobKind,
        submitter: JobSubmitter,
        poller: JobStatusPoller,
        tunnel: TunnelManager = None,
        local_port: int = None,
        session_id: str = None,
        poll_interval: float = None,
        queue_timeout: Optional[float] = None,
        not_found_limit: int = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.kind = kind
        self.submitter = submitter
        self.poller = poller
        self.tunnel = tunnel or TunnelManager()
        self.tunnel.on_exit = self._on_tunnel_exit
        self.local_port = local_port or kind.port
        self.poll_interval = poll_interval if poll_interval is not None else settings.STATUS_POLL_INTERVAL
        self.queue_timeout = queue_timeout if queue_timeout is not None else settings.QUEUE_TIMEOUT
        self.not_found_limit = not_found_limit or settings.POLL_NOT_FOUND_LIMIT

        self.state = SessionState.IDLE
        self.reason: Optional[str] = None
        self.job: Optional[JobInfo] = None
        self.host: Optional[str] = None
        self.username: Optional[str] = None
        self.created_at = datetime.now(timezone.utc)
        self.updated_at = self.created_at

        self._credentials: Optional[Credentials] = None
        self._generation = 0
        self._lock: Optional[asyncio.Lock] = None
        self._state_event: Optional[asyncio.Event] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._logs: deque = deque(maxlen=self.MAX_LOG_LINES)

    # ------------------------------------------------------------------ helpers

    def _get_lock(self) -> asyncio.Lock:
        """Get or create the asyncio lock (lazy initialization)"""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _get_state_event(self) -> asyncio.Event:
        if self._state_event is None:
            self._state_event = asyncio.Event()
        return self._state_event

    def _log(self, message: str) -> None:
        stamp = datetime.now().strftime("%H:%M:%S")
        self._logs.append(f"[{stamp}] {message}")
        cluster_logger.info(f"[{self.kind.name}:{self.session_id[:8]}] {message}")

    def _set_state(self, state: SessionState, reason: Optional[str] = None) -> None:
        previous = self.state
        self.state = state
        self.reason = reason
        self.updated_at = datetime.now(timezone.utc)
        if previous != state:
            cluster_logger.debug(
                f"Session {self.session_id[:8]}: {previous.value} -> {state.value}"
            )
        event = self._state_event
        self._state_event = None
        if event is not None:
            event.set()

    def _fail(self, reason: str) -> None:
        self._log(f"Error: {reason}")
        self._set_state(SessionState.ERROR, reason)

    def _is_current(self, generation: int, *states: SessionState) -> bool:
        return generation == self._generation and self.state in states

    @property
    def is_active(self) -> bool:
        return self.state not in STARTABLE_STATES

    @property
    def has_credentials(self) -> bool:
        return self._credentials is not None

    def snapshot(self) -> SessionStatus:
        return SessionStatus(
            session_id=self.session_id,
            kind=self.kind.name,
            state=self.state,
            reason=self.reason,
            host=self.host,
            username=self.username,
            local_port=self.local_port,
            job=self.job.model_copy() if self.job else None,
            tunnel=self.tunnel.info,
            logs=list(self._logs),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    async def wait_for_state(
        self, states: Iterable[SessionState], timeout: Optional[float] = None
    ) -> SessionState:
        """Block until the session reaches one of the given states."""
        wanted = set(states)

        async def _wait():
            while self.state not in wanted:
                await self._get_state_event().wait()
            return self.state

        return await asyncio.wait_for(_wait(), timeout=timeout)

    # ------------------------------------------------------------------ start

    async def start(
        self,
        credentials: Credentials,
        resources: JobResources = None,
        model_id: Optional[str] = None,
    ) -> SessionStatus:
        """Submit the job and begin polling. Rejected while a job is in flight."""
        async with self._get_lock():
            if self.state not in STARTABLE_STATES:
                raise InvalidTransitionError(
                    f"Session is {self.state.value}; stop it before starting again"
                )
            self._generation += 1
            generation = self._generation
            self._credentials = credentials
            self.host = credentials.host
            self.username = credentials.username
            self.job = None
            self._logs.clear()
            self._log(f"Submitting SBATCH job '{self.kind.job_name}'...")
            self._set_state(SessionState.SUBMITTING)

        result = await self.submitter.submit(credentials, self.kind, resources, model_id)

        async with self._get_lock():
            if not self._is_current(generation, SessionState.SUBMITTING):
                stale_job = result.job_id
            else:
                stale_job = None
                if result.success:
                    self.job = JobInfo(
                        job_id=result.job_id, job_name=self.kind.job_name, kind=self.kind.name
                    )
                    self._log(f"Job submitted: {result.job_id}")
                    self._set_state(SessionState.QUEUED)
                    self._poll_task = asyncio.create_task(self._poll_loop(generation))
                else:
                    self._fail(result.error or "Failed to submit job")

        if stale_job is not None:
            # The session was cancelled while sbatch was running, so the
            # teardown's scancel may have missed this job.
            cluster_logger.warning(
                f"Discarding job {stale_job} submitted after the session was cancelled"
            )
            try:
                await self.submitter.cancel_named_job(credentials, self.kind.job_name)
            except ClusterError as exc:
                cluster_logger.error(f"Failed to cancel stale job {stale_job}: {exc}")
        return self.snapshot()

    # ------------------------------------------------------------------ polling

    async def _poll_loop(self, generation: int) -> None:
        queued_at = asyncio.get_running_loop().time()
        not_found = 0
        last_state: Optional[JobState] = None

        while True:
            await asyncio.sleep(self.poll_interval)
            if not self._is_current(generation, SessionState.QUEUED):
                return

            credentials = self._credentials
            job_id = self.job.job_id
            error: Optional[ClusterError] = None
            status: Optional[JobStatus] = None
            try:
                status = await self.poller.get_status(credentials, job_id)
            except ClusterError as exc:
                error = exc

            async with self._get_lock():
                if not self._is_current(generation, SessionState.QUEUED):
                    return

                if isinstance(error, JobNotFoundError):
                    not_found += 1
                    self._log(f"Job {job_id} not visible yet ({not_found}/{self.not_found_limit})")
                    if not_found >= self.not_found_limit:
                        self._fail(error.message)
                        return
                    continue
                if error is not None:
                    self._fail(error.message)
                    return
                not_found = 0

                if status.state != last_state:
                    self._log(
                        f"Job State: {status.state.value}"
                        + (f" Node: {status.node}" if status.node else "")
                    )
                    last_state = status.state
                self.job.state = status.state
                self.job.updated_at = datetime.now(timezone.utc)
                if status.node:
                    self.job.node = status.node

                if status.state == JobState.RUNNING and status.node:
                    self.poller.forget(job_id)
                    self._set_state(SessionState.STARTING_TUNNEL)
                    break

                if status.state.is_terminal:
                    self.poller.forget(job_id)
                    if status.state == JobState.COMPLETED and self.job.node is None:
                        self._log("Job finished before a node was assigned")
                        self._set_state(
                            SessionState.FINISHED,
                            f"Job {job_id} finished before a node was captured",
                        )
                    elif self.job.node is not None:
                        self._fail(
                            f"Job ended with state: {status.state.value} on {self.job.node}"
                        )
                    else:
                        self._fail(f"Job ended with state: {status.state.value}")
                    return

                elapsed = asyncio.get_running_loop().time() - queued_at
                if self.queue_timeout and elapsed > self.queue_timeout:
                    timed_out = True
                    self._fail(
                        f"Job {job_id} still {status.state.value} after {int(elapsed)}s"
                    )
                else:
                    timed_out = False

            if timed_out:
                await self._cancel_job(credentials)
                return

        await self._start_tunnel(generation)

    async def _start_tunnel(self, generation: int) -> None:
        node = self.job.node
        self._log(f"Starting tunnel to {node}...")
        result = await self.tunnel.start_tunnel(
            self._credentials, node, self.kind.port, self.local_port
        )
        async with self._get_lock():
            if not self._is_current(generation, SessionState.STARTING_TUNNEL):
                return
            if result.success:
                self._log("Tunnel established successfully.")
                self._set_state(SessionState.READY)
            else:
                self._fail(result.error or "Failed to start tunnel")

    async def _on_tunnel_exit(self, exit_code: int, output: str) -> None:
        """Tunnel died after it was ready: the session can no longer serve."""
        async with self._get_lock():
            if self.state != SessionState.READY:
                return
            self._fail(f"Tunnel process exited with code {exit_code}")
            if output:
                self._log(output.splitlines()[-1])

    # ------------------------------------------------------------------ teardown

    async def _cancel_job(self, credentials: Optional[Credentials]) -> None:
        if credentials is None:
            return
        self._log(f"Cancelling job '{self.kind.job_name}' for {credentials.username}")
        try:
            await self.submitter.cancel_named_job(credentials, self.kind.job_name)
        except ClusterError as exc:
            cluster_logger.error(f"Failed to cancel job {self.kind.job_name}: {exc}")
            self._log(f"Failed to cancel job: {exc.message}")

    async def _teardown(self, reason: str) -> SessionStatus:
        async with self._get_lock():
            if self.state in (SessionState.IDLE, SessionState.STOPPED):
                return self.snapshot()

            self._generation += 1
            self._log(reason)
            poll_task = self._poll_task
            self._poll_task = None
            if poll_task is not None and poll_task is not asyncio.current_task():
                poll_task.cancel()

            await self.tunnel.stop_tunnel()
            await self._cancel_job(self._credentials)

            if self.job is not None:
                self.poller.forget(self.job.job_id)
                if not self.job.state.is_terminal:
                    self.job.state = JobState.CANCELLED
            self._credentials = None
            self._set_state(SessionState.STOPPED)
            return self.snapshot()

    async def stop(self) -> SessionStatus:
        """Stop the tunnel, then cancel the job by name. Also cleans up after ERROR."""
        return await self._teardown("Stopping session")

    async def cancel(self) -> SessionStatus:
        """Abort whatever is in progress. No-op from IDLE and STOPPED."""
        return await self._teardown("Cancelling session")

    async def close(self) -> None:
        """Release local resources only (tunnel); the remote job is left alone."""
        async with self._get_lock():
            self._generation += 1
            if self._poll_task is not None:
                self._poll_task.cancel()
                self._poll_task = None
            await self.tunnel.stop_tunnel()
