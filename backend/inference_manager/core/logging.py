import logging
from typing import Any, Dict, Mapping, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

from inference_manager.core.config import settings

ROOT_LOGGER_NAME = "inference_manager"

# One colour per component logger; messages use rich markup.
THEME = Theme(
    {
        "info": "cyan",
        "warning": "yellow",
        "error": "bold red",
        "debug": "grey50",
        "cluster": "green",
        "slurm": "blue",
        "ssh": "magenta",
        "tunnel": "bright_cyan",
        "field": "cyan",
    }
)

# stdout belongs to the tunnel subprocess protocol, so logs go to stderr
console = Console(theme=THEME, stderr=True)

rich_handler = RichHandler(
    console=console,
    rich_tracebacks=True,
    markup=True,
    show_time=True,
    show_path=settings.DEBUG,
    log_time_format="[%X]",
)


def _resolve_level() -> int:
    if settings.DEBUG:
        return logging.DEBUG
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Return a logger wired to the shared rich handler.

    Loggers are configured once; later calls with the same name return the
    same instance untouched.
    """
    component = logging.getLogger(name or ROOT_LOGGER_NAME)
    if rich_handler not in component.handlers:
        component.setLevel(_resolve_level())
        component.addHandler(rich_handler)
        component.propagate = False
    return component


logger = get_logger()
cluster_logger = get_logger("cluster")
slurm_logger = get_logger("slurm")
ssh_logger = get_logger("ssh")
tunnel_logger = get_logger("tunnel")


def _fields(details: Mapping[str, Any]) -> str:
    return "".join(f"\n  [field]{key}:[/field] {value}" for key, value in details.items())


def log_command(logger: logging.Logger, command: str, sensitive: bool = False) -> None:
    """Log a remote command; only its first line, since scripts travel inline."""
    if sensitive:
        shown = "<sensitive command>"
    else:
        lines = command.strip().splitlines()
        shown = lines[0] if lines else ""
        if len(lines) > 1:
            shown += f" [debug](+{len(lines) - 1} lines)[/debug]"
    logger.debug(f"[bold]Executing command:[/bold] {shown}")


def log_ssh_connection(host: str, username: str, using_key: bool = True) -> None:
    auth = "key-based" if using_key else "password"
    ssh_logger.debug(
        "[bold]Opening SSH connection[/bold]"
        + _fields({"Host": host, "Username": username, "Auth method": auth})
    )


def log_slurm_job(job_id: str, status: str, details: Optional[Dict[str, Any]] = None) -> None:
    slurm_logger.debug(
        f"[bold]Job[/bold] [slurm]{job_id}[/slurm] is {status}" + _fields(details or {})
    )


def log_cluster_operation(operation: str, details: Optional[Dict[str, Any]] = None) -> None:
    cluster_logger.debug(f"[bold]Cluster operation:[/bold] {operation}" + _fields(details or {}))
