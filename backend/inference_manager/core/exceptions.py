"""
Exception taxonomy for cluster operations.

Leaf services raise these; the orchestrator turns them into session state
and the HTTP layer turns them into status codes.
"""

from typing import Optional


class ClusterError(Exception):
    """Base class for every failure raised by the job/tunnel services."""

    kind = "cluster_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class RemoteConnectionError(ClusterError, ConnectionError):
    """Authentication or network failure talking to the login host."""

    kind = "connection_error"


class CommandError(ClusterError):
    """Remote command finished with a non-zero exit code."""

    kind = "command_error"

    def __init__(self, context: str, exit_code: int, stderr: str = ""):
        self.context = context
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip() or f"exit code {exit_code}"
        super().__init__(f"{context} failed: {detail}")


class SubmissionError(ClusterError):
    """sbatch rejected the script or its acknowledgement had no job id."""

    kind = "submission_error"


class JobNotFoundError(ClusterError):
    """Job unknown to both the live queue and the accounting history."""

    kind = "not_found"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found in queue or accounting history")


class TunnelError(ClusterError):
    """Tunnel subprocess never became ready or exited prematurely."""

    kind = "tunnel_error"

    def __init__(self, message: str, exit_code: Optional[int] = None, output: str = ""):
        self.exit_code = exit_code
        self.output = output
        super().__init__(message)


class InvalidTransitionError(ClusterError):
    """Operation is not allowed from the session's current state."""

    kind = "invalid_transition"


class InferenceError(ClusterError):
    """Forwarded inference endpoint was unreachable or returned an error."""

    kind = "inference_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
