from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

ENV_PREFIX = "OT_SEQ_"


class Settings(BaseModel):
    """
    Runtime configuration, read from `OT_SEQ_*` environment variables.

    None of these values are prescribed by the robot: they are the knobs an
    operator tunes per lab (how often to poll, how long a run may take,
    how hard to retry a flaky network).
    """
    # Robot
    robot_url: str = "http://localhost:31950"
    api_version: str = "2"              # sent as the Opentrons-Version header
    request_timeout: float = 30.0       # seconds per HTTP request

    # Polling
    poll_interval: float = 1.0
    run_timeout: float = 3600.0

    # Retries of transient network errors
    retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0

    # Housekeeping
    delete_protocols: bool = False

    # Job service
    robots_file: Optional[Path] = None

    # App
    log_level: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    # Load .env once
    load_dotenv()
    values = {}
    for name in Settings.model_fields:
        env_name = f"{ENV_PREFIX}{name.upper()}"
        if env_name in os.environ:
            values[name] = os.environ[env_name]
    return Settings(**values)


def configure_logging(level: str = "INFO") -> None:
    """Set up root logging for entry points (CLI, job service)."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
