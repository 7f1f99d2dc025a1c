import asyncio
from dataclasses import dataclass

import asyncssh

from inference_manager.core.config import settings
from inference_manager.core.exceptions import CommandError, RemoteConnectionError
from inference_manager.core.logging import log_command, log_ssh_connection, ssh_logger
from inference_manager.schemas.job import Credentials


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def require_success(result: CommandResult, context: str) -> CommandResult:
    """Raise CommandError when a command exited non-zero."""
    if not result.ok:
        raise CommandError(context, result.exit_code, result.stderr or result.stdout)
    return result


class RemoteExecutor:
    """Runs shell commands on the cluster login host over asyncssh.

    One connection per command; nothing is cached between calls so the
    credentials live only as long as the caller holds them. A non-zero exit
    status is returned, not raised.
    """

    def __init__(
        self,
        connect_timeout: float = None,
        command_timeout: float = None,
    ):
        self.connect_timeout = connect_timeout or settings.SSH_CONNECT_TIMEOUT
        self.command_timeout = command_timeout or settings.SSH_COMMAND_TIMEOUT

    def _connect_options(self, credentials: Credentials) -> dict:
        secret = credentials.secret.get_secret_value()
        options = {
            "host": credentials.host,
            "port": credentials.port,
            "username": credentials.username,
            "known_hosts": None,
            "connect_timeout": self.connect_timeout,
        }
        if credentials.uses_key:
            try:
                options["client_keys"] = [asyncssh.import_private_key(secret)]
            except (asyncssh.KeyImportError, ValueError) as exc:
                raise RemoteConnectionError(f"Unable to load private key: {exc}")
            options["password"] = None
        else:
            options["password"] = secret
            options["client_keys"] = None
        return options

    async def _run(self, credentials: Credentials, command: str) -> CommandResult:
        async with asyncssh.connect(**self._connect_options(credentials)) as conn:
            ssh_logger.debug("SSH connection established successfully")
            result = await conn.run(command, check=False)
            exit_code = result.exit_status
            if exit_code is None:
                # killed by a signal on the remote side
                exit_code = 255
            return CommandResult(
                stdout=result.stdout or "",
                stderr=result.stderr or "",
                exit_code=exit_code,
            )

    async def execute_command(
        self, credentials: Credentials, command: str, sensitive: bool = False
    ) -> CommandResult:
        """Execute a command and return stdout, stderr and exit code.

        The command text is sent as-is, so multi-line heredoc payloads reach
        the remote shell untouched.
        """
        log_ssh_connection(credentials.host, credentials.username, using_key=credentials.uses_key)
        log_command(ssh_logger, command, sensitive=sensitive)
        try:
            result = await asyncio.wait_for(
                self._run(credentials, command), timeout=self.command_timeout
            )
        except RemoteConnectionError:
            raise
        except asyncio.TimeoutError:
            ssh_logger.error(
                f"SSH command timed out after {self.command_timeout}s on {credentials.host}"
            )
            raise RemoteConnectionError(
                f"SSH command timed out after {self.command_timeout}s"
            )
        except asyncssh.PermissionDenied as exc:
            ssh_logger.error(f"SSH authentication failed for {credentials.username}@{credentials.host}")
            raise RemoteConnectionError(f"SSH authentication failed: {exc.reason}")
        except asyncssh.Error as exc:
            ssh_logger.error(f"SSH connection failed: {exc}")
            raise RemoteConnectionError(f"SSH connection failed: {exc}")
        except OSError as os_error:
            ssh_logger.error(f"OS error during SSH connection: {os_error}")
            raise RemoteConnectionError(f"OS error during SSH connection: {os_error}")

        if not result.ok:
            ssh_logger.debug(
                f"Command exited with code {result.exit_code}: {result.stderr.strip()}"
            )
        return result
