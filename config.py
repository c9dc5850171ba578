#!/usr/bin/env python3
"""
Configuration management for the Feed Ticker.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, the optional YAML settings file, validation,
and provides immutable snapshots that the scheduler reads fresh on every tick
so that configuration changes take effect on the next loop iteration.
"""

from dataclasses import dataclass, field
from os import environ, path, access, R_OK
from typing import Dict, Any, Optional, Tuple
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
from urllib.parse import urlparse
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    This function configures the logging system for the whole ticker.
    It sets up a unified logging configuration that can be controlled via environment variables:

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
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

    # Line buffering keeps the ticker output real-time when piped
    try:
        sys.stdout.reconfigure(line_buffering=True)
        sys.stderr.reconfigure(line_buffering=True)
    except AttributeError:
        # Replaced streams (e.g. under pytest capture) may not support reconfigure
        pass

    # aiohttp access chatter is only interesting when debugging
    getLogger("aiohttp").setLevel(level_map.get(environ.get("AIOHTTP_LOG_LEVEL", "WARNING").upper(), WARNING))

    return getLogger("FeedTicker")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    This function creates a logger with a name in the format "FeedTicker.{name}".
    All loggers created this way inherit the global logging configuration set by _setup_global_logger().

    Args:
        name: The logger name (e.g., "fetcher", "selector", "scheduler")

    Returns:
        A logger instance with the unified configuration

    Example:
        logger = get_logger("mymodule")
        logger.info("This will appear as 'FeedTicker.mymodule - INFO - This will appear...'")
    """
    return getLogger(f"FeedTicker.{name}")

# Create single global logger instance
logger = _setup_global_logger()


# Defaults for every tunable
DEFAULT_REFRESH_INTERVAL_SECONDS = 300
MIN_REFRESH_INTERVAL_SECONDS = 30
DEFAULT_CACHE_SIZE = 1000
DEFAULT_INITIAL_LOAD_DAYS = 30
DEFAULT_INCREMENTAL_HOURS = 6
DEFAULT_EPSILON = 0.15
DEFAULT_DIVERSITY_HALF_LIFE = 1200.0
DEFAULT_DISPLAY_MIN_SECONDS = 6.0
DEFAULT_DISPLAY_MAX_SECONDS = 15.0
DEFAULT_RECENTLY_SHOWN_TTL = 7200
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; FeedTicker/1.0)"


def _is_http_url(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable view of every tunable, taken at the start of a tick."""

    feed_url: Optional[str] = None
    auth_token: Optional[str] = None
    refresh_interval: int = DEFAULT_REFRESH_INTERVAL_SECONDS
    cache_size: int = DEFAULT_CACHE_SIZE
    initial_load_days: int = DEFAULT_INITIAL_LOAD_DAYS
    incremental_hours: int = DEFAULT_INCREMENTAL_HOURS
    incremental_enabled: bool = True
    epsilon: float = DEFAULT_EPSILON
    diversity_half_life: float = DEFAULT_DIVERSITY_HALF_LIFE
    display_min: float = DEFAULT_DISPLAY_MIN_SECONDS
    display_max: float = DEFAULT_DISPLAY_MAX_SECONDS
    debug_log: bool = False
    debug_log_path: str = "feed-debug.log"
    actualize_url: Optional[str] = None
    actualize_feed_ids: Tuple[str, ...] = field(default_factory=tuple)
    cache_path: str = "feed-cache.json"
    http_timeout: int = 30
    actualize_timeout: int = 10
    actualize_settle_seconds: float = 2.0
    user_agent: str = DEFAULT_USER_AGENT
    open_command: str = "xdg-open"
    recently_shown_ttl: int = DEFAULT_RECENTLY_SHOWN_TTL
    redecay_weights: bool = False
    skip_unopenable: bool = False

    @property
    def avg_display_time(self) -> float:
        return (self.display_min + self.display_max) / 2


class Config:
    """Configuration manager for the Feed Ticker.

    This class handles loading and validation of configuration from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. ticker.yaml settings file (if present)

    The loading order ensures that:
    - .env file variables override system environment variables
    - Secrets file variables override both system and .env variables
    - ticker.yaml values override all of the above

    Environment and ticker.yaml are re-read by snapshot(), so edits are picked
    up on the next scheduler tick without restarting the process.

    Example ticker.yaml format:
    ```yaml
    feed:
      url: "https://rss.example.com/api/greader.php/reader/api/0/stream/contents/reading-list"
      auth_token: "user/0123456789abcdef"
      actualize_url: "https://rss.example.com/i/?c=feed&a=actualize"
      actualize_feed_ids: [12, 15]
    cache:
      size: 1000
      initial_load_days: 30
      incremental_hours: 6
    selection:
      epsilon: 0.15
      diversity_half_life: 1200
    display:
      min_seconds: 6
      max_seconds: 15
    ```
    """

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

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1, source: Optional[Dict[str, Any]] = None) -> int:
        """Validate and parse a positive integer setting."""
        raw = self._raw_value(env_var, default, source)
        try:
            value = int(str(raw).strip())
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1, source: Optional[Dict[str, Any]] = None) -> float:
        """Validate and parse a positive float setting."""
        raw = self._raw_value(env_var, default, source)
        try:
            value = float(str(raw).strip())
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_bool(self, env_var: str, default: bool, source: Optional[Dict[str, Any]] = None) -> bool:
        raw = self._raw_value(env_var, default, source)
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in ("1", "true", "yes", "on")

    def _raw_value(self, env_var: str, default: Any, source: Optional[Dict[str, Any]]) -> Any:
        """Return the YAML override for env_var if present, else the environment value."""
        if source and env_var in source and source[env_var] is not None:
            return source[env_var]
        return environ.get(env_var, default)

    def _validate_and_set_config(self):
        """Validate and set the process-level configuration values."""
        base_dir = path.dirname(path.abspath(__file__))
        # DATA_PATH: base folder for the cache file and debug log (defaults to repo root)
        self.DATA_PATH = environ.get("DATA_PATH", base_dir)
        self.TICKER_CONFIG_PATH = environ.get("TICKER_CONFIG_PATH", path.join(base_dir, "ticker.yaml"))
        self.CACHE_PATH = environ.get("CACHE_PATH", path.join(self.DATA_PATH, "feed-cache.json"))
        self.DEBUG_LOG_PATH = environ.get("DEBUG_LOG_PATH", path.join(self.DATA_PATH, "feed-debug.log"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE environment variable is set, loads the specified YAML file
        and sets environment variables from it. This keeps the feed auth token
        out of the settings file.

        Expected YAML formats (both supported):
        ```yaml
        # Preferred: top-level mapping
        FEED_AUTH_TOKEN: "user/0123456789abcdef"

        # Nested under `environment`
        # environment:
        #   FEED_AUTH_TOKEN: "user/0123456789abcdef"
        ```
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.debug("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return
        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        if isinstance(secrets_config.get('environment'), dict):
            env_vars = secrets_config['environment']
            logger.debug(f"Using 'environment' section from secrets file {secrets_file_path}")
        else:
            env_vars = secrets_config
            logger.debug(f"Using top-level mapping from secrets file {secrets_file_path}")

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    # ------------------------------------------------------------------
    # Internal YAML loading helpers
    # ------------------------------------------------------------------
    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str, quiet_missing: bool = False) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'settings')
            quiet_missing: Log a missing file at debug level instead of warning

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                if quiet_missing:
                    logger.debug(f"{kind.capitalize()} file not found at {file_path}")
                else:
                    logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
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

    def _load_settings_overrides(self) -> Dict[str, Any]:
        """Flatten ticker.yaml sections into environment-style keys.

        Unknown keys are ignored; a missing or broken file yields no overrides.
        """
        data = self._safe_read_yaml(self.TICKER_CONFIG_PATH, 5 * 1024 * 1024, 'settings', quiet_missing=True)
        if not isinstance(data, dict):
            return {}

        section_keys = {
            'feed': {
                'url': 'FEED_URL',
                'auth_token': 'FEED_AUTH_TOKEN',
                'actualize_url': 'ACTUALIZE_URL',
                'actualize_feed_ids': 'ACTUALIZE_FEED_IDS',
                'refresh_interval_seconds': 'REFRESH_INTERVAL_SECONDS',
                'incremental_enabled': 'INCREMENTAL_ENABLED',
            },
            'cache': {
                'size': 'CACHE_SIZE',
                'initial_load_days': 'INITIAL_LOAD_DAYS',
                'incremental_hours': 'INCREMENTAL_HOURS',
            },
            'selection': {
                'epsilon': 'EPSILON',
                'diversity_half_life': 'DIVERSITY_HALF_LIFE',
                'redecay_weights': 'REDECAY_WEIGHTS',
                'skip_unopenable': 'SKIP_UNOPENABLE',
            },
            'display': {
                'min_seconds': 'DISPLAY_MIN_SECONDS',
                'max_seconds': 'DISPLAY_MAX_SECONDS',
            },
            'debug': {
                'enabled': 'DEBUG_LOG',
                'path': 'DEBUG_LOG_PATH',
            },
        }

        overrides: Dict[str, Any] = {}
        for section, keys in section_keys.items():
            values = data.get(section)
            if values is None:
                continue
            if not isinstance(values, dict):
                logger.warning(f"Section '{section}' in {self.TICKER_CONFIG_PATH} must be a mapping; ignoring")
                continue
            for yaml_key, env_key in keys.items():
                if yaml_key in values:
                    overrides[env_key] = values[yaml_key]
        return overrides

    def _parse_feed_ids(self, raw: Any) -> Tuple[str, ...]:
        if raw is None:
            return ()
        if isinstance(raw, (list, tuple)):
            items = [str(item) for item in raw]
        else:
            items = str(raw).split(',')
        return tuple(item.strip() for item in items if item is not None and str(item).strip())

    def snapshot(self) -> ConfigSnapshot:
        """Read every tunable fresh and return an immutable snapshot.

        Never raises: invalid values fall back to defaults with a warning.
        A missing or non-http(s) feed URL is reported as ``feed_url=None`` so the
        fetcher can surface it as a configuration error.
        """
        overrides = self._load_settings_overrides()

        feed_url = self._raw_value("FEED_URL", None, overrides)
        feed_url = str(feed_url).strip() if feed_url else None
        if feed_url and not _is_http_url(feed_url):
            logger.warning("FEED_URL must be an http(s) URL; ignoring configured value")
            feed_url = None

        auth_token = self._raw_value("FEED_AUTH_TOKEN", None, overrides)
        auth_token = str(auth_token) if auth_token else None

        refresh_interval = self._validate_positive_int("REFRESH_INTERVAL_SECONDS", DEFAULT_REFRESH_INTERVAL_SECONDS, 1, overrides)
        if refresh_interval < MIN_REFRESH_INTERVAL_SECONDS:
            logger.warning(
                f"REFRESH_INTERVAL_SECONDS={refresh_interval} is below the minimum; using {MIN_REFRESH_INTERVAL_SECONDS}"
            )
            refresh_interval = MIN_REFRESH_INTERVAL_SECONDS

        epsilon = self._validate_positive_float("EPSILON", DEFAULT_EPSILON, 0.0, overrides)
        if epsilon > 1.0:
            logger.warning(f"EPSILON must be within [0, 1], using default {DEFAULT_EPSILON}")
            epsilon = DEFAULT_EPSILON

        display_min = self._validate_positive_float("DISPLAY_MIN_SECONDS", DEFAULT_DISPLAY_MIN_SECONDS, 0.1, overrides)
        display_max = self._validate_positive_float("DISPLAY_MAX_SECONDS", DEFAULT_DISPLAY_MAX_SECONDS, 0.1, overrides)
        if display_min > display_max:
            logger.warning("DISPLAY_MIN_SECONDS exceeds DISPLAY_MAX_SECONDS; swapping bounds")
            display_min, display_max = display_max, display_min

        actualize_url = self._raw_value("ACTUALIZE_URL", None, overrides)
        actualize_url = str(actualize_url).strip() if actualize_url else None
        if actualize_url and not _is_http_url(actualize_url):
            logger.warning("ACTUALIZE_URL must be an http(s) URL; actualize disabled")
            actualize_url = None

        return ConfigSnapshot(
            feed_url=feed_url,
            auth_token=auth_token,
            refresh_interval=refresh_interval,
            cache_size=self._validate_positive_int("CACHE_SIZE", DEFAULT_CACHE_SIZE, 1, overrides),
            initial_load_days=self._validate_positive_int("INITIAL_LOAD_DAYS", DEFAULT_INITIAL_LOAD_DAYS, 1, overrides),
            incremental_hours=self._validate_positive_int("INCREMENTAL_HOURS", DEFAULT_INCREMENTAL_HOURS, 1, overrides),
            incremental_enabled=self._validate_bool("INCREMENTAL_ENABLED", True, overrides),
            epsilon=epsilon,
            diversity_half_life=self._validate_positive_float("DIVERSITY_HALF_LIFE", DEFAULT_DIVERSITY_HALF_LIFE, 1.0, overrides),
            display_min=display_min,
            display_max=display_max,
            debug_log=self._validate_bool("DEBUG_LOG", False, overrides),
            debug_log_path=str(self._raw_value("DEBUG_LOG_PATH", self.DEBUG_LOG_PATH, overrides)),
            actualize_url=actualize_url,
            actualize_feed_ids=self._parse_feed_ids(self._raw_value("ACTUALIZE_FEED_IDS", None, overrides)),
            cache_path=environ.get("CACHE_PATH", self.CACHE_PATH),
            http_timeout=self._validate_positive_int("HTTP_TIMEOUT", 30, 1, overrides),
            actualize_timeout=self._validate_positive_int("ACTUALIZE_TIMEOUT", 10, 1, overrides),
            actualize_settle_seconds=self._validate_positive_float("ACTUALIZE_SETTLE_SECONDS", 2.0, 0.0, overrides),
            user_agent=environ.get("USER_AGENT", DEFAULT_USER_AGENT),
            open_command=environ.get("OPEN_COMMAND", "xdg-open"),
            recently_shown_ttl=self._validate_positive_int("RECENTLY_SHOWN_TTL", DEFAULT_RECENTLY_SHOWN_TTL, 60, overrides),
            redecay_weights=self._validate_bool("REDECAY_WEIGHTS", False, overrides),
            skip_unopenable=self._validate_bool("SKIP_UNOPENABLE", False, overrides),
        )

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        snap = self.snapshot()
        return {
            "feed_url_configured": bool(snap.feed_url),
            "has_auth_token": bool(snap.auth_token),
            "refresh_interval_seconds": snap.refresh_interval,
            "cache_size": snap.cache_size,
            "cache_path": snap.cache_path,
            "initial_load_days": snap.initial_load_days,
            "incremental_hours": snap.incremental_hours,
            "incremental_enabled": snap.incremental_enabled,
            "epsilon": snap.epsilon,
            "diversity_half_life": snap.diversity_half_life,
            "display_bounds": (snap.display_min, snap.display_max),
            "debug_log": snap.debug_log,
            "actualize_feeds": len(snap.actualize_feed_ids),
            "settings_file": self.TICKER_CONFIG_PATH,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
