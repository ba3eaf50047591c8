"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    # HTTP service
    service_port: int = 8080
    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Known hosts (static list unless a hosts file is configured)
    known_hosts: List[str] = ["ci-vm-01", "ci-vm-02"]
    known_hosts_file: Optional[str] = None

    # Runner
    runner_mode: str = "simulated"  # "simulated" or "command"
    runner_command: str = ""  # e.g. "ansible-playbook site.yml -l {host} -t {tool}"
    simulated_step_delay: float = 0.5
    max_concurrent_runners: int = 8
    runner_shutdown_grace_seconds: float = 5.0

    # Log streaming
    log_subscriber_queue_size: int = 1000
    sse_keepalive_seconds: float = 15.0

    # Job retention
    job_retention_hours: int = 24
    retention_sweep_interval_seconds: float = 300.0

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
