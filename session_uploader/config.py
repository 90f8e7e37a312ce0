"""
Runtime configuration, read from the environment (and an optional .env file).
"""

import enum
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

MiB = 1024 * 1024
GiB = 1024 * MiB

_DEFAULTS = {
    "PART_SIZE_MB": 5,
    "CONCURRENCY": 4,
    "JOB_WORKERS": 1,

    "MAX_RETRIES": 3,
    "RETRY_BASE_DELAY": 2,

    "POLL_INTERVAL": 10,
    "POLL_TIMEOUT": 0,

    "CONNECT_TIMEOUT": 30,
    "READ_TIMEOUT": 120,
}

# Storage protocol limits for a single part
MIN_PART_SIZE = 5 * MiB
MAX_PART_SIZE = 5 * GiB


class ErrorPolicy(enum.Enum):
    STRICT = "strict"
    LENIENT = "lenient"

    @classmethod
    def from_flag(cls, continue_on_error: bool) -> "ErrorPolicy":
        return cls.LENIENT if continue_on_error else cls.STRICT


@dataclass(frozen=True)
class TransportConfig:
    """Connection settings handed to every HTTP and storage client."""

    verify_tls: bool = True
    connect_timeout: float = 30.0
    read_timeout: float = 120.0


def _parse_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in ("true", "1", "yes", "on")


class Config:
    def __init__(self) -> None:
        load_dotenv()

        self.server_dns: str = os.getenv("SERVER_DNS", "")
        self.auth_cookie: str = os.getenv("AUTH_COOKIE", "")
        self.username: str = os.getenv("UPLOAD_USERNAME", "")
        self.password: str = os.getenv("UPLOAD_PASSWORD", "")
        self.folder_id: str = os.getenv("FOLDER_ID", "")
        self.part_size: int = (
            int(os.getenv("PART_SIZE_MB", _DEFAULTS["PART_SIZE_MB"])) * MiB
        )
        self.concurrency: int = int(
            os.getenv("CONCURRENCY", _DEFAULTS["CONCURRENCY"])
        )
        self.job_workers: int = int(
            os.getenv("JOB_WORKERS", _DEFAULTS["JOB_WORKERS"])
        )
        self.max_retries: int = int(
            os.getenv("MAX_RETRIES", _DEFAULTS["MAX_RETRIES"])
        )
        self.retry_base_delay: float = float(
            os.getenv("RETRY_BASE_DELAY", _DEFAULTS["RETRY_BASE_DELAY"])
        )
        self.poll_interval: float = float(
            os.getenv("POLL_INTERVAL", _DEFAULTS["POLL_INTERVAL"])
        )
        self.poll_timeout: float = float(
            os.getenv("POLL_TIMEOUT", _DEFAULTS["POLL_TIMEOUT"])
        )
        self.connect_timeout: float = float(
            os.getenv("CONNECT_TIMEOUT", _DEFAULTS["CONNECT_TIMEOUT"])
        )
        self.read_timeout: float = float(
            os.getenv("READ_TIMEOUT", _DEFAULTS["READ_TIMEOUT"])
        )
        self.continue_on_error: bool = _parse_bool(os.getenv("CONTINUE_ON_ERROR"))
        self.ignore_ssl_errors: bool = _parse_bool(os.getenv("IGNORE_SSL_ERRORS"))
        self.log_path: Optional[str] = os.getenv("LOG_PATH")

        self.validate()

    def validate(self) -> None:
        if self.part_size < MIN_PART_SIZE:
            raise ValueError("PART_SIZE_MB must be at least 5 MB.")
        if self.part_size > MAX_PART_SIZE:
            raise ValueError(
                f"PART_SIZE_MB exceeds the 5 GiB part limit. Got {self.part_size // MiB} MB."
            )
        if self.concurrency < 1:
            raise ValueError("CONCURRENCY must be at least 1.")
        if self.job_workers < 1:
            raise ValueError("JOB_WORKERS must be at least 1.")
        if self.max_retries < 0:
            raise ValueError("MAX_RETRIES cannot be negative.")
        if self.poll_interval <= 0:
            raise ValueError("POLL_INTERVAL must be positive.")
        if self.poll_timeout < 0:
            raise ValueError("POLL_TIMEOUT cannot be negative (0 disables the timeout).")
        if self.connect_timeout <= 0 or self.read_timeout <= 0:
            raise ValueError("CONNECT_TIMEOUT and READ_TIMEOUT must be positive.")

    @property
    def policy(self) -> ErrorPolicy:
        return ErrorPolicy.from_flag(self.continue_on_error)

    @property
    def transport(self) -> TransportConfig:
        return TransportConfig(
            verify_tls=not self.ignore_ssl_errors,
            connect_timeout=self.connect_timeout,
            read_timeout=self.read_timeout,
        )
