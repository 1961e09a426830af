"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is driven by environment variables."""

    # Cluster connection
    cluster_host: str = "login.rc.colorado.edu"
    cluster_port: int = 22
    ssh_connect_timeout: float = 30.0
    ssh_keepalive_interval: int = 30
    ssh_worker_threads: int = 4

    # Per-call timeouts (seconds)
    command_timeout: float = 120.0
    scheduler_timeout: float = 60.0
    quick_timeout: float = 30.0
    submit_timeout: float = 30.0
    status_timeout: float = 10.0

    # File transfer
    transfer_chunk_size: int = Field(default=256 * 1024, gt=0)
    transfer_chunk_timeout: float = 60.0

    # Retry presets
    retry_quick_max_attempts: int = 2
    retry_quick_base_delay: float = 0.2
    retry_quick_max_delay: float = 2.0
    retry_files_max_attempts: int = 5
    retry_files_base_delay: float = 2.0
    retry_files_max_delay: float = 60.0
    retry_jitter_ratio: float = 0.5

    # Remote directory layout
    project_root: str = "/projects"
    scratch_root: str = "/scratch/alpine"
    job_directory_name: str = "namdrunner_jobs"

    # Local API key
    api_key: str = ""

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "SLURMLINK_"}


# Singleton – import this from anywhere
settings = Settings()
