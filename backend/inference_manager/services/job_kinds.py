"""
Job kinds served by the cluster.

Each kind fixes the job name (used for cancel-by-name), the service port the
tunnel targets, and the bootstrap that prepares and starts the server.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from inference_manager.core.config import settings

BASE_REQUIREMENTS = (
    "flask",
    "flask-cors",
    "torch",
    "transformers",
    "accelerate",
    "numpy<2.0",
)


@dataclass(frozen=True)
class JobKind:
    name: str
    job_name: str
    port: int
    server_file: str
    description: str = ""
    base_dir: str = "$HOME/llm"
    requirements: Tuple[str, ...] = BASE_REQUIREMENTS
    default_model: Optional[str] = None
    model_selectable: bool = False
    # value of "status" in the server's GET /health payload once it is up
    health_status: str = "ok"
    # optional local file whose content is written to server_file on each run
    server_source: Optional[str] = None

    @property
    def server_command(self) -> str:
        return f"python {self.server_file} --host 0.0.0.0 --port {self.port}"

    def resolve_model(self, model_id: Optional[str]) -> Optional[str]:
        """Pick the model for a submission, rejecting models outside the allow-list."""
        if model_id is None:
            return self.default_model
        if not self.model_selectable:
            raise ValueError(f"Job kind '{self.name}' does not accept a model selection")
        if model_id not in settings.ALLOWED_MODELS:
            raise ValueError("Invalid model selection")
        return model_id


JOB_KINDS: Dict[str, JobKind] = {
    "llm": JobKind(
        name="llm",
        job_name="rag_app",
        port=5000,
        server_file="app.py",
        description="General chat model behind GET /health and POST /query",
        default_model="meta-llama/Meta-Llama-3-8B-Instruct",
    ),
    "notebook": JobKind(
        name="notebook",
        job_name="notebook_llm",
        port=5001,
        server_file="NotebookLLM.py",
        description="Document-grounded model with file upload endpoints",
        requirements=BASE_REQUIREMENTS + ("pypdf", "python-docx", "werkzeug"),
        default_model="meta-llama/Meta-Llama-3-8B-Instruct",
        model_selectable=True,
        health_status="notebook_ok",
    ),
}


def get_job_kind(name: str) -> JobKind:
    try:
        return JOB_KINDS[name]
    except KeyError:
        raise KeyError(f"Unknown job kind '{name}'. Available: {', '.join(sorted(JOB_KINDS))}")


def list_job_kinds() -> List[JobKind]:
    return list(JOB_KINDS.values())
