import asyncio
import re
from typing import Dict, Optional

from inference_manager.core.exceptions import JobNotFoundError
from inference_manager.core.logging import log_slurm_job, slurm_logger
from inference_manager.schemas.job import Credentials, JobState, JobStatus, normalize_node
from inference_manager.services.remote_executor import RemoteExecutor

_NUMERIC_JOB_ID = re.compile(r"^\d+$")


class JobStatusPoller:
    """
    Reads a job's state from squeue, falling back to sacct.

    There is no timer here; callers poll on their own schedule. Polls for the
    same job id are serialized so a slow round-trip cannot overlap the next one.
    """

    def __init__(self, executor: RemoteExecutor):
        self.executor = executor
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    def forget(self, job_id: str) -> None:
        """Drop the per-job lock once the caller stops polling this job."""
        lock = self._locks.get(job_id)
        if lock is not None and not lock.locked():
            del self._locks[job_id]

    async def _query_live(self, credentials: Credentials, job_id: str) -> Optional[JobStatus]:
        result = await self.executor.execute_command(
            credentials, f'squeue -j {job_id} --noheader --format="%T %N"'
        )
        if not result.ok:
            slurm_logger.debug(
                f"squeue rejected job {job_id} (exit {result.exit_code}), checking accounting"
            )
            return None

        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            return None

        parts = lines[0].split(None, 1)
        raw_state = parts[0]
        node = normalize_node(parts[1]) if len(parts) > 1 else None
        return JobStatus(
            job_id=job_id,
            state=JobState.from_slurm(raw_state),
            node=node,
            raw_state=raw_state,
            source="live",
        )

    async def _query_history(self, credentials: Credentials, job_id: str) -> Optional[JobStatus]:
        result = await self.executor.execute_command(
            credentials, f"sacct -j {job_id} --noheader -X --format=State"
        )
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            if not result.ok:
                slurm_logger.debug(
                    f"sacct failed for job {job_id}: {result.stderr.strip() or result.exit_code}"
                )
            return None

        raw_state = lines[0]
        return JobStatus(
            job_id=job_id,
            state=JobState.from_slurm(raw_state),
            node=None,
            raw_state=raw_state,
            source="history",
        )

    async def get_status(self, credentials: Credentials, job_id: str) -> JobStatus:
        """Return the canonical state of a job.

        Raises JobNotFoundError when neither squeue nor sacct know the job.
        A job missing from the live queue is never assumed to have completed.
        """
        job_id = str(job_id).strip()
        if not _NUMERIC_JOB_ID.match(job_id):
            raise ValueError(f"Invalid job id: {job_id!r}")

        async with self._lock_for(job_id):
            status = await self._query_live(credentials, job_id)
            if status is None:
                status = await self._query_history(credentials, job_id)
            if status is None:
                slurm_logger.warning(f"Job {job_id} not found in squeue or sacct")
                raise JobNotFoundError(job_id)

        log_slurm_job(
            job_id,
            status.state.value,
            {"node": status.node or "-", "raw": status.raw_state, "source": status.source},
        )
        return status
