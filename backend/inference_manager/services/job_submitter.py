import os
import re
import shlex
import time
from typing import Dict, Optional

from inference_manager.core.config import settings
from inference_manager.core.exceptions import ClusterError, SubmissionError
from inference_manager.core.logging import (
    cluster_logger,
    log_cluster_operation,
    slurm_logger,
)
from inference_manager.schemas.job import (
    Credentials,
    JobPreview,
    JobResources,
    SubmissionResult,
)
from inference_manager.services.job_kinds import JobKind
from inference_manager.services.remote_executor import RemoteExecutor

TEMPLATE_NAME = "inference_job.template"
SCRIPT_DELIMITER = "ENDOFSCRIPT"

_PLACEHOLDER = re.compile(r"(?<!\$)\{([a-z_]+)\}")
_JOB_ID = re.compile(r"Submitted batch job (\d+)")


def parse_job_id(output: str) -> Optional[str]:
    """Extract the numeric job id from sbatch's acknowledgement."""
    match = _JOB_ID.search(output or "")
    return match.group(1) if match else None


class JobSubmitter:
    """Renders the job script for a job kind and submits it with sbatch."""

    def __init__(self, executor: RemoteExecutor, template_dir: str = None):
        self.executor = executor
        self.template_dir = template_dir or settings.TEMPLATE_DIR

    def read_template(self, template_name: str = TEMPLATE_NAME) -> str:
        """Read content of a template file."""
        template_path = os.path.join(self.template_dir, template_name)
        try:
            with open(template_path, "r") as f:
                return f.read()
        except FileNotFoundError:
            cluster_logger.error(f"Template not found: {template_path}")
            raise SubmissionError(f"Template {template_name} not found")

    def fill_template(self, template_content: str, params: Dict[str, object]) -> str:
        """Fill {placeholders} in one pass; bash ${VAR} references are left alone."""
        missing = sorted(
            {name for name in _PLACEHOLDER.findall(template_content) if name not in params}
        )
        if missing:
            cluster_logger.error(f"Unfilled placeholders found: {missing}")
            raise SubmissionError(
                f"Not all placeholders were replaced in the template: {missing}"
            )
        return _PLACEHOLDER.sub(lambda m: str(params[m.group(1)]), template_content)

    def _server_setup(self, kind: JobKind) -> str:
        if kind.server_source:
            try:
                with open(os.path.expanduser(kind.server_source), "r") as f:
                    source = f.read()
            except OSError as exc:
                raise SubmissionError(f"Cannot read server source {kind.server_source}: {exc}")
            if "\nAPPEOF\n" in f"\n{source}\n":
                raise SubmissionError("Server source contains the APPEOF heredoc delimiter")
            return (
                f'echo "Writing {kind.server_file}..."\n'
                f"cat << 'APPEOF' > {kind.server_file}\n{source.rstrip()}\nAPPEOF"
            )
        return (
            f'if [ ! -f "{kind.server_file}" ]; then\n'
            f'    echo "Server entrypoint $BASE_DIR/{kind.server_file} is missing" >&2\n'
            f"    exit 1\n"
            f"fi"
        )

    def render_script(
        self,
        kind: JobKind,
        resources: JobResources,
        model_id: Optional[str] = None,
    ) -> str:
        """Render the job script for a job kind and resource request."""
        model = kind.resolve_model(model_id)
        params = {
            "kind": kind.name,
            "job_name": kind.job_name,
            "port": kind.port,
            "num_nodes": resources.num_nodes,
            "tasks_per_node": resources.tasks_per_node,
            "num_cpus": resources.num_cpus,
            "memory": resources.memory,
            "gres_line": (
                f"#SBATCH --gres=gpu:{resources.num_gpus}" if resources.num_gpus else ""
            ),
            "time_limit": resources.time_limit,
            "partition": resources.partition,
            "module_lines": "\n".join(f"module load {m}" for m in resources.modules),
            "base_dir": kind.base_dir,
            "requirements": "\n".join(kind.requirements),
            "server_setup": self._server_setup(kind),
            "model_line": f'export HF_MODEL_ID="{model}"' if model else "",
            "server_command": kind.server_command,
        }
        script = self.fill_template(self.read_template(), params)
        cluster_logger.debug(f"Rendered job script for kind '{kind.name}' ({len(script)} bytes)")
        return script

    def preview(
        self,
        kind: JobKind,
        resources: JobResources = None,
        model_id: Optional[str] = None,
    ) -> JobPreview:
        """Render the script exactly as submit() would, without touching the cluster."""
        script = self.render_script(kind, resources or JobResources(), model_id)
        return JobPreview(kind=kind.name, job_name=kind.job_name, script=script)

    def _script_path(self, kind: JobKind) -> str:
        timestamp = time.time_ns() // 1_000_000
        directory = settings.JOB_SCRIPT_DIR.rstrip("/") or "."
        return f"{directory}/{kind.name}_job_{timestamp}.slurm"

    def build_submit_command(self, script: str, script_path: str) -> str:
        """Write the script via a quoted heredoc, sbatch it, remove it, keep sbatch's status."""
        if f"\n{SCRIPT_DELIMITER}\n" in f"\n{script}\n":
            raise SubmissionError(f"Job script contains the {SCRIPT_DELIMITER} delimiter")
        quoted = shlex.quote(script_path)
        return (
            f"cat << '{SCRIPT_DELIMITER}' > {quoted}\n"
            f"{script.rstrip()}\n"
            f"{SCRIPT_DELIMITER}\n"
            f"sbatch {quoted}\n"
            f"rc=$?\n"
            f"rm -f {quoted}\n"
            f"exit $rc\n"
        )

    async def cancel_named_job(self, credentials: Credentials, job_name: str) -> bool:
        """Cancel every job of the user with this name. Returns False if scancel failed."""
        command = f"scancel -n {shlex.quote(job_name)} -u {shlex.quote(credentials.username)}"
        slurm_logger.debug(f"Cancelling jobs named {job_name} for {credentials.username}")
        result = await self.executor.execute_command(credentials, command)
        if not result.ok:
            slurm_logger.warning(
                f"Failed to cancel job {job_name}: {result.stderr.strip() or result.exit_code}"
            )
            return False
        log_cluster_operation(
            "Job Cancelled", {"job_name": job_name, "user": credentials.username}
        )
        return True

    async def _submit(
        self,
        credentials: Credentials,
        kind: JobKind,
        resources: JobResources,
        model_id: Optional[str],
    ) -> SubmissionResult:
        script = self.render_script(kind, resources, model_id)

        # Free the port held by a previous instance of this job
        await self.cancel_named_job(credentials, kind.job_name)

        script_path = self._script_path(kind)
        slurm_logger.debug(f"Submitting job script {script_path}")
        result = await self.executor.execute_command(
            credentials, self.build_submit_command(script, script_path)
        )
        if not result.ok:
            slurm_logger.error(f"sbatch failed with exit code {result.exit_code}")
            raise SubmissionError(result.stderr.strip() or "Failed to submit job")

        job_id = parse_job_id(result.stdout)
        if job_id is None:
            slurm_logger.error(f"No job id in sbatch output: {result.stdout.strip()!r}")
            raise SubmissionError(
                f"Could not parse job id from sbatch output: {result.stdout.strip() or '<empty>'}"
            )

        log_cluster_operation(
            "Job Submission",
            {
                "job_id": job_id,
                "kind": kind.name,
                "job_name": kind.job_name,
                "script": script_path,
                "user": credentials.username,
            },
        )
        return SubmissionResult(job_id=job_id, script_path=script_path)

    async def submit(
        self,
        credentials: Credentials,
        kind: JobKind,
        resources: JobResources = None,
        model_id: Optional[str] = None,
    ) -> SubmissionResult:
        """Submit a job; the result carries either the job id or the failure."""
        resources = resources or JobResources()
        try:
            return await self._submit(credentials, kind, resources, model_id)
        except ClusterError as exc:
            return SubmissionResult(error=exc.message, error_type=exc.kind)
        except ValueError as exc:
            return SubmissionResult(error=str(exc), error_type=SubmissionError.kind)
