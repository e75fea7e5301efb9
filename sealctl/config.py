"""Configuration management for the sealctl application."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()


class Config:
    """Application configuration with sensible defaults."""

    # Local working directory: persisted cluster state, pulled kubeconfigs, PKI
    DATA_DIR: Path = Path(os.getenv("SEALCTL_DATA_DIR", "~/.sealctl")).expanduser()

    # Timeouts (in seconds)
    SSH_TIMEOUT: int = int(os.getenv("SSH_TIMEOUT", "30"))
    COMMAND_TIMEOUT: int = int(os.getenv("COMMAND_TIMEOUT", "600"))

    # Concurrency ceiling for host batches
    MAX_WORKERS: int = int(os.getenv("MAX_WORKERS", "32"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.getenv(
        "LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Security
    REDACT_KEYS: tuple = ("passwd", "password", "pk_passwd", "passphrase", "secret", "token", "certificate_key")

    @classmethod
    def cluster_dir(cls, cluster_name: str) -> Path:
        """Local directory holding everything sealctl keeps for one cluster."""
        return cls.DATA_DIR / cluster_name
