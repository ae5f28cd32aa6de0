"""Constants and runtime configuration used in the project."""

import logging
import os
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    RESOLUTION_ERROR = 3
    INTEGRITY_ERROR = 4
    INSTALL_ERROR = 5


class TieBreak(Enum):
    """Which descriptor wins when several artifacts match the same tags.

    Args:
        Enum (string): Tie-break policy names accepted in configuration.
    """

    FIRST = "first"
    LAST = "last"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    PROJECT_NAME = "pkgflow"
    INDEX_URL = "https://pypi.org/pypi/"
    CACHE_DIR = os.path.join(os.path.expanduser("~"), ".cache", "pkgflow")
    MANIFEST_FILE = "pyproject.toml"
    REQUIREMENTS_FILE = "requirements.txt"
    LOCK_FILE = "pkgflow.lock"
    LOCK_VERSION = 1
    PACKAGES_DIR = "__pypackages__"
    DEFAULT_PY_VERSION = "3.11"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
    METADATA_CACHE_TTL_SEC = 600
    DOWNLOAD_CHUNK_SIZE = 64 * 1024
    MAX_WORKERS = 8
    ARTIFACT_TIE_BREAK = TieBreak.FIRST.value
    USER_AGENT = "pkgflow/0.1"
    ENV_CONFIG = "PKGFLOW_CONFIG"
    ENV_LOG_LEVEL = "PKGFLOW_LOG_LEVEL"
    ENV_INDEX_URL = "PKGFLOW_INDEX_URL"
    ENV_CACHE_DIR = "PKGFLOW_CACHE_DIR"


# Keys accepted from YAML configuration, mapped onto Constants attributes.
_CONFIG_KEYS = {
    "index_url": ("INDEX_URL", str),
    "cache_dir": ("CACHE_DIR", str),
    "request_timeout": ("REQUEST_TIMEOUT", int),
    "http_retry_max": ("HTTP_RETRY_MAX", int),
    "http_retry_base_delay": ("HTTP_RETRY_BASE_DELAY_SEC", float),
    "metadata_cache_ttl": ("METADATA_CACHE_TTL_SEC", int),
    "max_workers": ("MAX_WORKERS", int),
    "artifact_tie_break": ("ARTIFACT_TIE_BREAK", str),
    "py_version": ("DEFAULT_PY_VERSION", str),
}


def _default_config_paths():
    """Return candidate configuration file locations in priority order."""
    paths = []
    env_path = os.environ.get(Constants.ENV_CONFIG)
    if env_path:
        paths.append(env_path)
    paths.append(os.path.join(os.getcwd(), "pkgflow.yml"))
    paths.append(os.path.join(os.getcwd(), "pkgflow.yaml"))
    paths.append(os.path.join(os.path.expanduser("~"), ".config", "pkgflow", "pkgflow.yml"))
    return paths


def _load_yaml_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load the first available YAML configuration file.

    Args:
        path: Explicit configuration path; default locations are used when omitted.

    Returns:
        dict: Parsed configuration mapping, empty when nothing was found.
    """
    import yaml  # pylint: disable=import-outside-toplevel

    candidates = [path] if path else _default_config_paths()
    for candidate in candidates:
        if not candidate or not os.path.isfile(candidate):
            continue
        try:
            with open(candidate, "r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Failed to load config %s: %s", candidate, e)
            continue
        if isinstance(data, dict):
            logger.debug("Loaded configuration from %s", candidate)
            return data
        logger.warning("Ignoring config %s: top-level value is not a mapping", candidate)
    return {}


def apply_config(cfg: Dict[str, Any]) -> None:
    """Apply configuration values and environment overrides onto Constants.

    Unknown keys are ignored; values that cannot be coerced are logged and skipped.
    """
    for key, value in (cfg or {}).items():
        target = _CONFIG_KEYS.get(key)
        if target is None:
            logger.debug("Ignoring unknown config key: %s", key)
            continue
        attr, cast = target
        try:
            setattr(Constants, attr, cast(value))
        except (TypeError, ValueError):
            logger.warning("Invalid value for config key %s: %r", key, value)

    env_index = os.environ.get(Constants.ENV_INDEX_URL)
    if env_index:
        Constants.INDEX_URL = env_index
    env_cache = os.environ.get(Constants.ENV_CACHE_DIR)
    if env_cache:
        Constants.CACHE_DIR = env_cache

    if Constants.ARTIFACT_TIE_BREAK not in {t.value for t in TieBreak}:
        logger.warning(
            "Unknown artifact_tie_break %r; using %r",
            Constants.ARTIFACT_TIE_BREAK,
            TieBreak.FIRST.value,
        )
        Constants.ARTIFACT_TIE_BREAK = TieBreak.FIRST.value
