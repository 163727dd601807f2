"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    GITLAB_TOKEN               — Required GitLab API token (never logged)
    GITLAB_BASE_URL            — GitLab instance URL (default: https://gitlab.com)
    CILENS_LIMIT               — Max pipelines to sample (default: 500)
    CILENS_MIN_TYPE_PERCENTAGE — Drop pipeline types below this share (default: 1)
    CILENS_MAX_CONCURRENCY     — Max in-flight job fetches (default: 500)
    CILENS_MAX_RETRIES         — Retry ceiling for transient failures (default: 30)
    CILENS_RETRY_DELAY         — Fixed delay in seconds between retries (default: 10)
    CILENS_REQUEST_TIMEOUT     — HTTP timeout in seconds (default: 30)
    CILENS_CACHE_DIR           — Overrides the platform cache directory
    CILENS_LOG_LEVEL           — Logging level (default: INFO)

Settings files:
    Per-run settings can also be read from cilens.yaml / cilens.yml / cilens.json
    in the working directory (or an explicit path). Values from the file fill an
    InsightsRequest; anything invalid raises ConfigurationError.
"""
import os
import json
import logging
from pathlib import Path
from typing import Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from cilens.core.constants import (
    DEFAULT_LIMIT,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MIN_TYPE_PERCENTAGE,
    DEFAULT_RETRY_DELAY,
)
from cilens.core.exceptions import ConfigurationError
from cilens.models.settings import InsightsRequest

load_dotenv()

logger = logging.getLogger(__name__)

GITLAB_TOKEN = os.getenv("GITLAB_TOKEN")
GITLAB_BASE_URL = os.getenv("GITLAB_BASE_URL", "https://gitlab.com")
CILENS_LIMIT = int(os.getenv("CILENS_LIMIT", DEFAULT_LIMIT))
CILENS_MIN_TYPE_PERCENTAGE = float(os.getenv("CILENS_MIN_TYPE_PERCENTAGE", DEFAULT_MIN_TYPE_PERCENTAGE))
MAX_CONCURRENCY = int(os.getenv("CILENS_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY))
MAX_RETRIES = int(os.getenv("CILENS_MAX_RETRIES", DEFAULT_MAX_RETRIES))
RETRY_DELAY = float(os.getenv("CILENS_RETRY_DELAY", DEFAULT_RETRY_DELAY))
REQUEST_TIMEOUT = float(os.getenv("CILENS_REQUEST_TIMEOUT", 30))
CACHE_DIR = os.getenv("CILENS_CACHE_DIR")
LOG_LEVEL = os.getenv("CILENS_LOG_LEVEL", "INFO").upper()

SETTINGS_FILE_CANDIDATES = ("cilens.yaml", "cilens.yml", "cilens.json")


def require_token(token: Optional[str] = None) -> str:
    """Return the explicit token or GITLAB_TOKEN, raising if neither is set."""
    value = token or GITLAB_TOKEN
    if not value or not value.strip():
        raise ConfigurationError(
            "A GitLab access token is required (set GITLAB_TOKEN)"
        )
    return value.strip()


def find_settings_file(directory: Union[str, Path] = ".") -> Optional[Path]:
    """Return the first settings file found in ``directory``, if any."""
    for candidate in SETTINGS_FILE_CANDIDATES:
        path = Path(directory) / candidate
        if path.is_file():
            return path
    return None


def load_settings_file(path: Union[str, Path]) -> InsightsRequest:
    """
    Parse a YAML or JSON settings file into an InsightsRequest.

    Parameters
    ----------
    path : str | Path
        File to read. The extension selects the parser; unknown extensions
        are tried as YAML (a superset of JSON).

    Returns
    -------
    InsightsRequest
        Validated per-run settings.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read settings file {path}: {e}") from e

    try:
        if path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to parse settings file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {path} must contain a mapping")

    # Files use kebab-case keys (project-path, min-type-percentage, ...)
    normalized = {str(k).replace("-", "_"): v for k, v in data.items()}
    try:
        settings = InsightsRequest(**normalized)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings in {path}: {e}") from e

    logger.info("Loaded settings from %s", path)
    return settings
