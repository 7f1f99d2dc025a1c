"""
Tunnel Manager

Owns the forwarder subprocess of one session: spawns it, waits for its ready
line, watches it for exits and terminates it. One instance per session, so
sessions never share a tunnel handle.
"""

import asyncio
import sys
from collections import deque
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

import psutil

from inference_manager.core.config import settings
from inference_manager.core.exceptions import TunnelError
from inference_manager.core.logging import tunnel_logger
from inference_manager.schemas.job import Credentials
from .enums import HealthStatus, TunnelState
from .schemas import ProcessInfo, TunnelHealthInfo, TunnelInfo, TunnelResult, ready_marker

FORWARDER_MODULE = "inference_manager.services.tunnels.forwarder"

# Builds the argv of the forwarder; the secret travels over stdin.
CommandFactory = Callable[[Credentials, str, int, int], List[str]]
ExitCallback = Callable[[int, str], Awaitable[None]]


def default_forwarder_command(
    credentials: Credentials, target_host: str, target_port: int, local_port: int
) -> List[str]:
    return [
        sys.executable,
        "-m",
        FORWARDER_MODULE,
        credentials.host,
        credentials.username,
        "-",
        target_host,
        str(target_port),
        str(local_port),
        "--ssh-port",
        str(credentials.port),
    ]


class TunnelManager:
    """
    Manages the forwarder process backing a session's tunnel.

    This class is responsible for:
    - Spawning the forwarder and resolving start requests on its ready line
    - Sharing one pending start between concurrent callers
    - Reporting exits (before ready: start failure, after ready: exit callback)
    - Terminating the process safely
    """

    OUTPUT_TAIL_LINES = 50

    def __init__(
        self,
        command_factory: CommandFactory = None,
        ready_timeout: float = None,
        stop_timeout: float = None,
        on_exit: Optional[ExitCallback] = None,
    ):
        self.command_factory = command_factory or default_forwarder_command
        self.ready_timeout = ready_timeout or settings.TUNNEL_READY_TIMEOUT
        self.stop_timeout = stop_timeout or settings.TUNNEL_STOP_TIMEOUT
        self.on_exit = on_exit

        self.info = TunnelInfo()
        self.spawn_count = 0
        self._process: Optional[asyncio.subprocess.Process] = None
        self._ready: Optional[asyncio.Future] = None
        self._tasks: List[asyncio.Task] = []
        self._output: deque = deque(maxlen=self.OUTPUT_TAIL_LINES)
        self._stopping = False

    @property
    def state(self) -> TunnelState:
        return self.info.state

    @property
    def output_tail(self) -> str:
        return "\n".join(self._output)

    async def start_tunnel(
        self,
        credentials: Credentials,
        target_host: str,
        remote_port: int,
        local_port: int,
    ) -> TunnelResult:
        """
        Start the tunnel, or join the one already starting or listening.

        Resolves when the forwarder prints its ready line, fails if it exits
        first or if the ready timeout expires.
        """
        if self.info.state == TunnelState.LISTENING:
            return TunnelResult(success=True, message="Tunnel already running")
        if self.info.state == TunnelState.STARTING and self._ready is not None:
            return await self._await_ready(self._ready)

        try:
            ready = await self._spawn(credentials, target_host, remote_port, local_port)
        except TunnelError as exc:
            return TunnelResult(success=False, error=exc.message, error_type=exc.kind)
        return await self._await_ready(ready)

    async def _spawn(
        self,
        credentials: Credentials,
        target_host: str,
        remote_port: int,
        local_port: int,
    ) -> asyncio.Future:
        cmd = self.command_factory(credentials, target_host, remote_port, local_port)
        tunnel_logger.info(
            f"Creating tunnel: {settings.TUNNEL_BIND_HOST}:{local_port} -> "
            f"{credentials.host} -> {target_host}:{remote_port}"
        )

        self._output.clear()
        self._stopping = False
        ready = self._ready = asyncio.get_running_loop().create_future()
        self.info = TunnelInfo(
            local_port=local_port,
            target_host=target_host,
            target_port=remote_port,
            state=TunnelState.STARTING,
            started_at=datetime.utcnow(),
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            tunnel_logger.error(f"Failed to spawn tunnel process: {exc}")
            self.info.state = TunnelState.ERRORED
            self._ready = None
            raise TunnelError(f"Failed to spawn tunnel process: {exc}")

        self.spawn_count += 1
        if self._ready is not ready:
            # stop_tunnel() ran before the process existed
            process.kill()
            await process.wait()
            return ready
        self._process = process
        self.info.pid = process.pid
        tunnel_logger.info(f"Tunnel process started with PID: {process.pid}")

        process.stdin.write(credentials.secret.get_secret_value().encode() + b"\n")
        try:
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            pass
        process.stdin.close()
        if self._ready is not ready:
            # stopped while the secret was being written
            return ready

        marker = ready_marker(local_port, target_host, remote_port)
        readers = [
            asyncio.create_task(self._read_stdout(process, marker)),
            asyncio.create_task(self._read_stderr(process)),
        ]
        self._tasks = readers + [asyncio.create_task(self._watch(process, readers))]
        return ready

    async def _await_ready(self, ready: asyncio.Future) -> TunnelResult:
        try:
            await asyncio.wait_for(asyncio.shield(ready), timeout=self.ready_timeout)
        except asyncio.TimeoutError:
            tunnel_logger.error(
                f"Tunnel did not become ready within {self.ready_timeout}s"
            )
            if self._ready is ready:
                await self.stop_tunnel()
                self.info.state = TunnelState.ERRORED
            return TunnelResult(
                success=False,
                error=f"Tunnel did not become ready within {self.ready_timeout}s",
                error_type=TunnelError.kind,
            )
        except TunnelError as exc:
            return TunnelResult(success=False, error=exc.message, error_type=exc.kind)
        except asyncio.CancelledError:
            if ready.cancelled():
                return TunnelResult(
                    success=False,
                    error="Tunnel start was cancelled",
                    error_type=TunnelError.kind,
                )
            raise
        return TunnelResult(success=True, message="Tunnel started")

    async def _read_stdout(self, process: asyncio.subprocess.Process, marker: str) -> None:
        async for raw in process.stdout:
            line = raw.decode(errors="replace").rstrip("\r\n")
            self._output.append(line)
            tunnel_logger.debug(f"Tunnel Out: {line}")
            if line == marker and self._ready is not None and not self._ready.done():
                self.info.state = TunnelState.LISTENING
                self.info.ready_at = datetime.utcnow()
                self._ready.set_result(True)
                tunnel_logger.info(
                    f"Tunnel ready: PID={process.pid}, port={self.info.local_port}"
                )

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        async for raw in process.stderr:
            line = raw.decode(errors="replace").rstrip("\r\n")
            if line:
                self._output.append(line)
                tunnel_logger.debug(f"Tunnel Err: {line}")

    async def _watch(
        self, process: asyncio.subprocess.Process, readers: List[asyncio.Task]
    ) -> None:
        exit_code = await process.wait()
        # let the readers drain what the process printed before exiting
        await asyncio.gather(*readers, return_exceptions=True)
        if process is not self._process:
            return

        tunnel_logger.info(f"Tunnel exited with code {exit_code}")
        self.info.exit_code = exit_code
        self.info.pid = None
        self._process = None
        was_ready = self.info.state == TunnelState.LISTENING

        if self._ready is not None and not self._ready.done():
            self.info.state = TunnelState.ERRORED
            self._ready.set_exception(
                TunnelError(
                    f"Tunnel process exited with code {exit_code}. Output: {self.output_tail}",
                    exit_code=exit_code,
                    output=self.output_tail,
                )
            )
            return

        if self._stopping:
            return

        self.info.state = TunnelState.ERRORED if exit_code != 0 else TunnelState.STOPPED
        if was_ready:
            tunnel_logger.error(
                f"Tunnel process exited after becoming ready (code {exit_code})"
            )
            if self.on_exit is not None:
                await self.on_exit(exit_code, self.output_tail)

    async def stop_tunnel(self) -> bool:
        """Terminate the forwarder. Safe to call when nothing is running."""
        process = self._process
        self._stopping = True
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()

        if process is not None and process.returncode is None:
            try:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
                    tunnel_logger.info(f"Process {process.pid} terminated gracefully")
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()
                    tunnel_logger.warning(f"Process {process.pid} force killed")
            except ProcessLookupError:
                tunnel_logger.debug(f"Process {process.pid} already dead")

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        await asyncio.gather(
            *(t for t in self._tasks if t is not current), return_exceptions=True
        )
        self._tasks = []
        self._process = None
        self._ready = None
        self.info = TunnelInfo(exit_code=self.info.exit_code)
        return True

    def check_process_health(self, pid: int) -> Optional[ProcessInfo]:
        """Inspect a PID with psutil; None if the process is gone."""
        try:
            process = psutil.Process(pid)
            with process.oneshot():
                status = process.status()
                return ProcessInfo(
                    pid=pid,
                    is_alive=process.is_running() and status != psutil.STATUS_ZOMBIE,
                    status=status,
                    cpu_percent=process.cpu_percent(interval=None),
                    memory_mb=process.memory_info().rss / (1024 * 1024),
                )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None

    async def test_port_connectivity(
        self, port: int, host: str = None, timeout: float = 3.0
    ) -> bool:
        """Test if port is accessible."""
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host or settings.TUNNEL_BIND_HOST, port),
                timeout=timeout,
            )
            writer.close()
            await writer.wait_closed()
            return True
        except (asyncio.TimeoutError, ConnectionRefusedError, OSError):
            return False

    async def health(self) -> TunnelHealthInfo:
        """Process liveness plus a connect probe on the local port."""
        health_info = TunnelHealthInfo(is_healthy=False, state=self.info.state)
        if self.info.state == TunnelState.STOPPED:
            health_info.error_message = "Tunnel is not running"
            return health_info

        if self.info.pid is not None:
            health_info.process = self.check_process_health(self.info.pid)
        if self.info.local_port is not None:
            health_info.port_connectivity = await self.test_port_connectivity(
                self.info.local_port
            )

        process_alive = health_info.process is not None and health_info.process.is_alive
        if process_alive and health_info.port_connectivity:
            health_info.is_healthy = True
            health_info.health_status = HealthStatus.HEALTHY
        elif process_alive:
            health_info.health_status = HealthStatus.DEGRADED
            health_info.error_message = "Process alive but local port is not accepting"
        else:
            health_info.health_status = HealthStatus.UNHEALTHY
            health_info.error_message = "Tunnel process is dead"
        return health_info
