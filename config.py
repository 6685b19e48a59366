#!/usr/bin/env python3
"""
Configuration management for the HN Station ingestion service.

This module centralizes configuration loading, validation and logging setup.
It handles environment variables, an optional .env file and an optional YAML
secrets file, and exposes a single global ``config`` instance.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, Optional
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv


def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    All modules should use get_logger() to create module-specific loggers that
    inherit this configuration.
    """
    environ["PYTHONUNBUFFERED"] = "1"

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
        force=True
    )

    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except AttributeError:
        # Replaced streams (e.g. pytest capture) may not support reconfigure
        pass

    # Third-party libraries are chatty at INFO
    for name in ("readability", "readability.readability", "pypdf", "openai", "httpx", "azure"):
        getLogger(name).setLevel(WARNING)

    return getLogger("HNStation")


def get_logger(name: str):
    """Get a module-specific logger named ``HNStation.{name}``.

    Example:
        logger = get_logger("ingest")
        logger.info("Fetched 500 top stories")
    """
    return getLogger(f"HNStation.{name}")


logger = _setup_global_logger()


def _sqlite_path_from_url(url: Optional[str]) -> Optional[str]:
    """Turn a ``sqlite:///path`` style connection string into a filesystem path.

    Plain paths are returned unchanged.
    """
    if not url:
        return None
    value = url.strip()
    for prefix in ("sqlite:///", "sqlite://", "file:"):
        if value.startswith(prefix):
            return value[len(prefix):] or None
    return value


class Config:
    """Configuration manager for the ingestion service.

    Loading order:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)

    Secrets file variables override both system and .env variables.

    Example secrets.yaml format:
    ```yaml
    DATABASE_URL: "sqlite:////data/hn_station.db"
    OPENAI_API_KEY: "your-api-key"
    ```
    """

    DEFAULT_USER_AGENT = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )

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

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        # Storage
        self.DATABASE_URL = environ.get("DATABASE_URL")
        self.DATABASE_PATH = _sqlite_path_from_url(self.DATABASE_URL)
        self.USER_AGENT = environ.get("USER_AGENT", self.DEFAULT_USER_AGENT)

        # Content source
        self.HN_BASE_URL = environ.get("HN_BASE_URL", "https://hacker-news.firebaseio.com/v0").rstrip("/")
        self.HN_TIMEOUT = self._validate_positive_float("HN_TIMEOUT", 10.0, 1.0)

        # Driver
        self.INGEST_INTERVAL_SECONDS = self._validate_positive_int("INGEST_INTERVAL_SECONDS", 60, 5)
        self.ONE_SHOT = environ.get("ONE_SHOT", "false").lower() == "true"
        self.INGEST_WORKERS = self._validate_positive_int("INGEST_WORKERS", 4, 1)
        self.MAX_STORIES_PER_CYCLE = self._validate_positive_int("MAX_STORIES_PER_CYCLE", 200, 1)
        self.FRESH_RANK_LIMIT = self._validate_positive_int("FRESH_RANK_LIMIT", 50, 1)
        self.RETAIN_STORIES = self._validate_positive_int("RETAIN_STORIES", 100, 1)
        self.AUTHOR_TASK_LIMIT = self._validate_positive_int("AUTHOR_TASK_LIMIT", 8, 1)

        # Article fetching
        self.HTTP_TIMEOUT = self._validate_positive_int("HTTP_TIMEOUT", 30, 5)
        self.MAX_ARTICLE_BYTES = self._validate_positive_int("MAX_ARTICLE_BYTES", 2 * 1024 * 1024, 1024)
        self.MAX_PDF_BYTES = self._validate_positive_int("MAX_PDF_BYTES", 20 * 1024 * 1024, 1024)
        self.PDF_MAX_PAGES = self._validate_positive_int("PDF_MAX_PAGES", 20, 1)
        self.CONTENT_MIN_CHARS = self._validate_positive_int("CONTENT_MIN_CHARS", 100, 1)
        self.CONTENT_MAX_CHARS = self._validate_positive_int("CONTENT_MAX_CHARS", 20000, 500)

        # Summarization queue
        self.SUMMARY_QUEUE_SIZE = self._validate_positive_int("SUMMARY_QUEUE_SIZE", 500, 1)
        self.SUMMARY_WORKERS = self._validate_positive_int("SUMMARY_WORKERS", 1, 1)
        self.SUMMARY_INTERVAL_SECONDS = self._validate_positive_float("SUMMARY_INTERVAL_SECONDS", 5.0, 0.01)
        self.SUMMARY_SCORE_THRESHOLD = self._validate_positive_int("SUMMARY_SCORE_THRESHOLD", 10, 0)
        self.SUMMARY_JOB_TIMEOUT = self._validate_positive_int("SUMMARY_JOB_TIMEOUT", 600, 10)
        # 0 waits for the whole summary queue on shutdown
        self.SHUTDOWN_DRAIN_TIMEOUT = self._validate_positive_int("SHUTDOWN_DRAIN_TIMEOUT", 0, 0)
        self.CATCHUP_LIMIT = self._validate_positive_int("CATCHUP_LIMIT", 20, 1)
        self.CATCHUP_DELAY_SECONDS = self._validate_positive_float("CATCHUP_DELAY_SECONDS", 2.0, 0.0)

        # AI backend
        self.AI_BACKEND = environ.get("AI_BACKEND", "ollama").strip().lower()
        if self.AI_BACKEND not in ("ollama", "openai"):
            logger.warning(f"Unknown AI_BACKEND '{self.AI_BACKEND}', using ollama")
            self.AI_BACKEND = "ollama"
        self.OLLAMA_URL = environ.get("OLLAMA_URL", "http://ollama:11434").rstrip("/")
        self.OLLAMA_MODEL = environ.get("OLLAMA_MODEL", "llama3:latest")
        self.OPENAI_API_KEY = environ.get("OPENAI_API_KEY")
        self.OPENAI_BASE_URL = environ.get("OPENAI_BASE_URL")
        self.OPENAI_MODEL = environ.get("OPENAI_MODEL", "gpt-4o-mini")
        self.AI_TIMEOUT = self._validate_positive_int("AI_TIMEOUT", 1800, 10)
        self.SUMMARIZER_MAX_RETRIES = self._validate_positive_int("SUMMARIZER_MAX_RETRIES", 3, 1)
        self.SUMMARIZER_RETRY_DELAY_BASE = self._validate_positive_float("SUMMARIZER_RETRY_DELAY_BASE", 2.0, 0.0)

        # File paths
        base_dir = path.dirname(path.abspath(__file__))
        self.SCHEMA_FILE_PATH = path.join(base_dir, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 1, 1)

    @property
    def ai_endpoint(self) -> Optional[str]:
        """Base address handed to the AI client for the configured backend."""
        if self.AI_BACKEND == "openai":
            return self.OPENAI_BASE_URL
        return self.OLLAMA_URL

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        Accepts either a top-level mapping or a mapping nested under
        ``environment``.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        try:
            if not path.isfile(secrets_file_path):
                logger.warning(f"Secrets file not found at {secrets_file_path}")
                return
            if not access(secrets_file_path, R_OK):
                logger.error(f"No read permission for secrets file at {secrets_file_path}")
                return
            file_size = path.getsize(secrets_file_path)
            max_size = 2 * 1024 * 1024
            if file_size > max_size:
                logger.error(f"Secrets file too large: {file_size} bytes (limit: {max_size} bytes)")
                return

            with open(secrets_file_path, 'r') as f:
                secrets_config = yaml.safe_load(f)

            if not isinstance(secrets_config, dict):
                logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
                return

            env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config
            secrets_loaded = 0
            for key, value in env_vars.items():
                if isinstance(key, str) and value is not None:
                    environ[key] = str(value)
                    secrets_loaded += 1
                else:
                    logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

            logger.info(f"Loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in secrets file {secrets_file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading secrets file {secrets_file_path}: {e}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "hn_base_url": self.HN_BASE_URL,
            "interval_seconds": self.INGEST_INTERVAL_SECONDS,
            "one_shot": self.ONE_SHOT,
            "ingest_workers": self.INGEST_WORKERS,
            "max_stories_per_cycle": self.MAX_STORIES_PER_CYCLE,
            "retain_stories": self.RETAIN_STORIES,
            "summary_workers": self.SUMMARY_WORKERS,
            "summary_interval_seconds": self.SUMMARY_INTERVAL_SECONDS,
            "summary_queue_size": self.SUMMARY_QUEUE_SIZE,
            "ai_backend": self.AI_BACKEND,
            "ai_endpoint": self.ai_endpoint,
            "has_openai_key": bool(self.OPENAI_API_KEY),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
