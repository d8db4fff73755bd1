#!/usr/bin/env python3
"""
Configuration management for the feed refresher.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the optional .env file and YAML secrets file,
and provides a clean interface for accessing configuration values throughout
the application.
"""

from os import environ, path
from typing import Dict, Any
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering so queue consumer runs can be
    followed in real time. All modules should use get_logger() to create
    module-specific loggers that inherit this configuration.
    """
    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"
    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # aiohttp access logs are noisy at INFO for a queue endpoint hit every few seconds
    access_level = level_map.get(environ.get("ACCESS_LOG_LEVEL", "WARNING").upper(), WARNING)
    getLogger("aiohttp.access").setLevel(access_level)

    return getLogger("FeedRefresher")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    Args:
        name: The logger name (e.g., "consumer", "reconciler", "enrichment")

    Returns:
        A logger named "FeedRefresher.{name}"
    """
    return getLogger(f"FeedRefresher.{name}")

# Create single global logger instance
logger = _setup_global_logger()

class Config:
    """Configuration manager for the feed refresher.

    Values are loaded from, in increasing order of precedence:
    1. Environment variables
    2. .env file (if present next to this module)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    Example secrets.yaml format:
    ```yaml
    REDIS_URL: "redis://:password@redis:6379/0"
    METADATA_SERVICE_URL: "https://metadata.internal"
    ```
    """

    DELEGATION_MODES = ("inline", "signal")
    STATUS_BACKENDS = ("memory", "redis")

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_choice(self, env_var: str, default: str, choices) -> str:
        """Validate a lowercase enumerated environment variable."""
        value = environ.get(env_var, default).strip().lower()
        if value not in choices:
            logger.warning(f"{env_var} must be one of {', '.join(choices)}, using default {default}")
            return default
        return value

    def _optional_url(self, env_var: str) -> str | None:
        value = (environ.get(env_var) or "").strip()
        return value.rstrip("/") or None

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "feeds.db")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 10, 1)
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; FeedRefresher/1.0)")

        # Staleness detection
        self.STALE_THRESHOLD_HOURS = self._validate_positive_float("STALE_THRESHOLD_HOURS", 4.0, 0.01)

        # Reconciliation
        self.RECONCILE_SAFETY_CAP = self._validate_positive_int("RECONCILE_SAFETY_CAP", 100, 1)
        self.NEW_FEED_FIRST_PAGE = self._validate_positive_int("NEW_FEED_FIRST_PAGE", 30, 1)
        self.RESULT_PAGE_SIZE = self._validate_positive_int("RESULT_PAGE_SIZE", 50, 1)
        self.RECONCILE_SCAN_LIMIT = self._validate_positive_int("RECONCILE_SCAN_LIMIT", 5000, 100)
        # Window used when the worker ran out of band and reported no cycle start
        self.FRESHNESS_WINDOW_SECONDS = self._validate_positive_int("FRESHNESS_WINDOW_SECONDS", 300, 1)
        # How long a batch may hold a feed's refresh lock before another may take it
        self.FEED_LOCK_SECONDS = self._validate_positive_int("FEED_LOCK_SECONDS", 300, 1)

        # Refresh delegation
        self.DELEGATION_MODE = self._validate_choice("DELEGATION_MODE", "inline", self.DELEGATION_MODES)
        self.WORKER_URL = self._optional_url("WORKER_URL")
        self.WORKER_TIMEOUT = self._validate_positive_int("WORKER_TIMEOUT", 60, 1)

        # Metadata enrichment
        self.METADATA_SERVICE_URL = self._optional_url("METADATA_SERVICE_URL")
        self.ENRICHMENT_TIMEOUT = self._validate_positive_float("ENRICHMENT_TIMEOUT", 8.0, 0.1)
        self.ENRICHMENT_MAX_ATTEMPTS = self._validate_positive_int("ENRICHMENT_MAX_ATTEMPTS", 3, 1)
        self.RETRY_DELAY_BASE = self._validate_positive_float("RETRY_DELAY_BASE", 0.5, 0.01)
        self.RETRY_MAX_DELAY = self._validate_positive_float("RETRY_MAX_DELAY", 4.0, 0.01)
        self.METADATA_CACHE_SIZE = self._validate_positive_int("METADATA_CACHE_SIZE", 500, 1)
        self.METADATA_CACHE_TTL = self._validate_positive_float("METADATA_CACHE_TTL", 600.0, 1.0)

        # Batch status store
        self.STATUS_BACKEND = self._validate_choice("STATUS_BACKEND", "memory", self.STATUS_BACKENDS)
        self.REDIS_URL = environ.get("REDIS_URL", "redis://localhost:6379/0")
        self.STATUS_TTL_SECONDS = self._validate_positive_int("STATUS_TTL_SECONDS", 300, 1)

        # Real-time notification
        self.NOTIFY_URL_TEMPLATE = (environ.get("NOTIFY_URL_TEMPLATE") or "").strip() or None
        self.NOTIFY_TIMEOUT = self._validate_positive_float("NOTIFY_TIMEOUT", 5.0, 0.1)
        self.SSE_HEARTBEAT_SECONDS = self._validate_positive_float("SSE_HEARTBEAT_SECONDS", 15.0, 0.1)
        self.SSE_MAX_WAIT_SECONDS = self._validate_positive_float("SSE_MAX_WAIT_SECONDS", 120.0, 1.0)

        # HTTP server/client
        self.HTTP_HOST = environ.get("HTTP_HOST", "0.0.0.0")
        self.HTTP_PORT = self._validate_positive_int("HTTP_PORT", 8080, 1)
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 1)

        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, loads the YAML mapping it points to and exports
        each entry as an environment variable. Both a top-level mapping and the
        older nested `environment:` section are accepted.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if secrets_config is None:
            return
        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config
        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
            logger.debug(f"Using 'environment' section from secrets file {secrets_file_path}")

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "stale_threshold_hours": self.STALE_THRESHOLD_HOURS,
            "delegation_mode": self.DELEGATION_MODE,
            "has_worker_url": bool(self.WORKER_URL),
            "has_metadata_service": bool(self.METADATA_SERVICE_URL),
            "enrichment_timeout": self.ENRICHMENT_TIMEOUT,
            "status_backend": self.STATUS_BACKEND,
            "status_ttl_seconds": self.STATUS_TTL_SECONDS,
            "has_notify_url": bool(self.NOTIFY_URL_TEMPLATE),
            "result_page_size": self.RESULT_PAGE_SIZE,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
