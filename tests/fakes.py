"""In-memory stand-ins for the remote side, shared by the test modules."""

import asyncio
import re
from typing import Callable, List, Optional, Tuple, Union

from inference_manager.schemas.job import JobState, JobStatus, SubmissionResult
from inference_manager.services.remote_executor import CommandResult
from inference_manager.services.tunnels.enums import TunnelState
from inference_manager.services.tunnels.schemas import TunnelInfo, TunnelResult

Response = Union[CommandResult, Exception, Callable[[str], CommandResult]]


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(stdout=stdout, stderr="", exit_code=0)


def failed(stderr: str = "error", exit_code: int = 1) -> CommandResult:
    return CommandResult(stdout="", stderr=stderr, exit_code=exit_code)


def status(state: JobState, node: Optional[str] = None, job_id: str = "123456") -> JobStatus:
    return JobStatus(job_id=job_id, state=state, node=node, raw_state=state.value)


class FakeExecutor:
    """Stands in for RemoteExecutor: answers commands by regex, records them."""

    def __init__(self):
        self.commands: List[str] = []
        self._rules: List[Tuple[re.Pattern, List[Response]]] = []

    def on(self, pattern: str, *responses: Response) -> "FakeExecutor":
        """Answer commands matching pattern; the last response repeats."""
        self._rules.append((re.compile(pattern), list(responses)))
        return self

    def count(self, pattern: str) -> int:
        regex = re.compile(pattern)
        return sum(1 for command in self.commands if regex.search(command))

    async def execute_command(self, credentials, command, sensitive=False):
        self.commands.append(command)
        for regex, responses in self._rules:
            if regex.search(command):
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(command)
                return response
        return ok()


class FakeSubmitter:
    def __init__(self, result: SubmissionResult = None):
        self.result = result or SubmissionResult(job_id="123456")
        self.submissions = 0
        self.cancelled: List[str] = []
        # when set, submit() blocks until the test opens it
        self.gate: Optional[asyncio.Event] = None

    async def submit(self, credentials, kind, resources=None, model_id=None):
        self.submissions += 1
        if self.gate is not None:
            await self.gate.wait()
        return self.result

    async def cancel_named_job(self, credentials, job_name):
        self.cancelled.append(job_name)
        return True


class FakePoller:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0
        self.forgotten: List[str] = []

    async def get_status(self, credentials, job_id):
        self.calls += 1
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def forget(self, job_id):
        self.forgotten.append(job_id)


class FakeTunnel:
    def __init__(self, result: TunnelResult = None):
        self.result = result or TunnelResult(success=True, message="Tunnel started")
        self.info = TunnelInfo()
        self.on_exit = None
        self.starts: List[Tuple[str, int, int]] = []
        self.stops = 0

    async def start_tunnel(self, credentials, target_host, remote_port, local_port):
        self.starts.append((target_host, remote_port, local_port))
        if self.result.success:
            self.info = TunnelInfo(
                local_port=local_port,
                target_host=target_host,
                target_port=remote_port,
                state=TunnelState.LISTENING,
            )
        return self.result

    async def stop_tunnel(self):
        self.stops += 1
        self.info = TunnelInfo()
        return True


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
