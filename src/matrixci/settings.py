from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runner settings, read from MATRIXCI_* environment variables or `.env`."""

    model_config = SettingsConfigDict(env_prefix="MATRIXCI_", env_file=".env", extra="ignore")

    max_workers: Optional[int] = Field(default=None, ge=1)
    # seconds; None disables the limit
    job_timeout: Optional[float] = Field(default=3600.0, gt=0)
    step_timeout: Optional[float] = Field(default=1800.0, gt=0)

    work_dir: Path = Path(".matrixci/work")
    source_dir: Path = Path(".")
    toolchain_install: str = "rustup toolchain install {toolchain} --profile minimal"
    # captured output kept per step (characters, tail)
    output_limit: int = 64_000
    # finished runs a long-lived dispatcher keeps in memory
    run_history: int = Field(default=200, ge=1)

    log_level: str = "INFO"
    log_json: bool = False

    host: str = "127.0.0.1"
    port: int = 8000


@lru_cache()
def get_settings() -> Settings:
    return Settings()
