from pydantic_settings import BaseSettings
from typing import List, Optional
import os


class Settings(BaseSettings):
    # Debug settings
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # API settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "Cluster Inference Manager"

    # SLURM SSH settings (used when a request does not name its own host)
    SLURM_HOST: str = "kamiak.wsu.edu"
    SLURM_PORT: int = 22
    SSH_CONNECT_TIMEOUT: float = 15.0
    SSH_COMMAND_TIMEOUT: float = 60.0

    # Job settings
    JOB_SCRIPT_DIR: str = "."
    TEMPLATE_DIR: str = os.getenv(
        "TEMPLATE_DIR", os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")
    )
    ALLOWED_MODELS: List[str] = [
        "meta-llama/Meta-Llama-3-8B-Instruct",
        "mistralai/Mistral-7B-Instruct-v0.2",
        "google/gemma-7b-it",
        "google/gemma-3-1b-it",
    ]

    # Polling
    STATUS_POLL_INTERVAL: float = 5.0
    QUEUE_TIMEOUT: Optional[float] = 6 * 60 * 60
    POLL_NOT_FOUND_LIMIT: int = 3

    # Tunnel settings
    TUNNEL_BIND_HOST: str = "127.0.0.1"
    TUNNEL_READY_TIMEOUT: float = 60.0
    TUNNEL_STOP_TIMEOUT: float = 5.0

    # Inference endpoint
    INFERENCE_REQUEST_TIMEOUT: float = 300.0

    # CORS
    BACKEND_CORS_ORIGINS: List[str] = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
