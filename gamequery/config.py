"""
Core configuration management
"""
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Query engine settings"""

    # Default per-server options (overridable per server)
    debug: bool = False
    raw: bool = False
    timeout: float = 3  # seconds, shared listen budget per phase

    # Sockets
    connect_timeout: float = 5.0
    read_size: int = 8192
    linear_read_size: int = 4096
    max_response_bytes: int = 1024 * 1024

    # Pacing between sends and between readiness polls (seconds)
    challenge_send_interval: float = 0.2
    query_send_interval: float = 0.05
    poll_interval: float = 0.05

    # Address validation
    allow_private_addresses: bool = False

    # Paths
    project_root: Path = Path(__file__).parent.parent
    log_dir: Optional[Path] = project_root / "logs"  # None logs to stderr only

    class Config:
        env_prefix = "GAMEQUERY_"
        env_file = ".env"


settings = Settings()
