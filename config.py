"""
Configuration Module
====================
Centralized environment variable loading, validation, and access for the
POS terminal. Validates all configuration at startup to fail fast.
"""

import os
import logging
from typing import Optional, Dict, Any
from pathlib import Path
from dotenv import load_dotenv


# ============================================================================
# LOGGING
# ============================================================================

logger = logging.getLogger(__name__)


# ============================================================================
# ENVIRONMENT LOADING
# ============================================================================

def load_environment():
    """
    Load environment variables from .env file if present.
    Safe to call multiple times.
    """
    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from .env file")
    else:
        logger.info("No .env file found, using system environment variables")


# ============================================================================
# CONFIGURATION EXCEPTION
# ============================================================================

class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def _get_required_env(key: str, description: str = None) -> str:
    """
    Get required environment variable.

    Args:
        key: Environment variable name
        description: Optional description for error message

    Returns:
        Environment variable value

    Raises:
        ConfigurationError: If variable is missing or empty
    """
    value = os.getenv(key)

    if not value or value.strip() == "":
        desc = f" ({description})" if description else ""
        raise ConfigurationError(
            f"Missing required environment variable: {key}{desc}"
        )

    return value.strip()


def _get_optional_env(key: str, default: str = None) -> Optional[str]:
    """Get optional environment variable (stripped) or default."""
    value = os.getenv(key, default)
    return value.strip() if value else default


def _get_bool_env(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on", "enabled")


def _get_int_env(key: str, default: int = None) -> Optional[int]:
    """
    Get integer environment variable.

    Raises:
        ConfigurationError: If value is not a valid integer
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid integer value for {key}: {value}"
        )


def _get_float_env(key: str, default: float = None) -> Optional[float]:
    """
    Get float environment variable.

    Raises:
        ConfigurationError: If value is not a valid number
    """
    value = os.getenv(key)

    if not value:
        return default

    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(
            f"Invalid numeric value for {key}: {value}"
        )


# ============================================================================
# TERMINAL CONFIGURATION
# ============================================================================

class TerminalConfig:
    """Identity of this terminal and its pricing rules."""

    def __init__(self):
        self.outlet_id = _get_required_env(
            "POS_OUTLET_ID",
            "Outlet this terminal belongs to"
        )

        self.staff_id = _get_required_env(
            "POS_STAFF_ID",
            "Staff member signed in on this terminal"
        )

        # Issued by the auth service, passed through untouched
        self.auth_token = _get_optional_env("POS_AUTH_TOKEN")

        self.terminal_id = _get_optional_env("POS_TERMINAL_ID", "pos_001")

        self.tax_rate = _get_float_env("POS_TAX_RATE", 0.10)

        if not 0.0 <= self.tax_rate < 1.0:
            raise ConfigurationError(
                f"POS_TAX_RATE must be between 0.0 and 1.0: {self.tax_rate}"
            )


# ============================================================================
# BACKEND CONFIGURATION
# ============================================================================

class BackendConfig:
    """Remote order service endpoints."""

    def __init__(self):
        self.api_url = _get_optional_env(
            "POS_API_URL",
            "http://localhost:3000"
        ).rstrip("/")

        if not self.api_url.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"POS_API_URL must start with http:// or https://: {self.api_url}"
            )

        self.ws_url = _get_optional_env(
            "POS_WS_URL",
            "ws://localhost:3010"
        )

        if not self.ws_url.startswith(("ws://", "wss://")):
            raise ConfigurationError(
                f"POS_WS_URL must start with ws:// or wss://: {self.ws_url}"
            )

        self.request_timeout = _get_float_env("POS_REQUEST_TIMEOUT", 10.0)
        self.health_path = _get_optional_env("POS_HEALTH_PATH", "/health")


# ============================================================================
# REAL-TIME CONFIGURATION
# ============================================================================

class RealtimeConfig:
    """Event channel reconnect and heartbeat settings."""

    def __init__(self):
        self.reconnect_attempts = _get_int_env("POS_WS_RECONNECT_ATTEMPTS", 5)
        self.reconnect_delay = _get_float_env("POS_WS_RECONNECT_DELAY", 1.0)
        self.backoff_factor = _get_float_env("POS_WS_BACKOFF_FACTOR", 2.0)
        self.max_reconnect_delay = _get_float_env("POS_WS_MAX_RECONNECT_DELAY", 30.0)
        self.heartbeat_interval = _get_float_env("POS_WS_HEARTBEAT_INTERVAL", 30.0)

        if self.reconnect_attempts < 0:
            raise ConfigurationError(
                f"POS_WS_RECONNECT_ATTEMPTS must be >= 0: {self.reconnect_attempts}"
            )

        if self.reconnect_delay <= 0 or self.heartbeat_interval <= 0:
            raise ConfigurationError(
                "POS_WS_RECONNECT_DELAY and POS_WS_HEARTBEAT_INTERVAL must be positive"
            )

        if self.backoff_factor < 1.0:
            raise ConfigurationError(
                f"POS_WS_BACKOFF_FACTOR must be >= 1.0: {self.backoff_factor}"
            )


# ============================================================================
# OFFLINE CONFIGURATION
# ============================================================================

class OfflineConfig:
    """Offline queue and reachability probe settings."""

    def __init__(self):
        self.storage_limit = _get_int_env("POS_OFFLINE_STORAGE_LIMIT", 50)
        self.probe_interval = _get_float_env("POS_CONNECTIVITY_PROBE_INTERVAL", 15.0)

        if self.storage_limit <= 0:
            raise ConfigurationError(
                f"POS_OFFLINE_STORAGE_LIMIT must be positive: {self.storage_limit}"
            )


# ============================================================================
# STORAGE CONFIGURATION
# ============================================================================

class StorageConfig:
    """Device-local durable storage."""

    def __init__(self):
        self.data_dir = Path(_get_optional_env("POS_DATA_DIR", "data"))


# ============================================================================
# FEATURE FLAGS
# ============================================================================

class FeatureFlags:
    """Feature flags for optional functionality."""

    def __init__(self):
        self.enable_offline_mode = _get_bool_env("ENABLE_OFFLINE_MODE", True)
        self.enable_real_time_updates = _get_bool_env("ENABLE_REAL_TIME_UPDATES", True)
        self.enable_connectivity_probe = _get_bool_env("ENABLE_CONNECTIVITY_PROBE", True)
        self.debug_mode = _get_bool_env("DEBUG_MODE", False)


# ============================================================================
# SERVER CONFIGURATION
# ============================================================================

class ServerConfig:
    """Local status server configuration."""

    def __init__(self):
        self.host = _get_optional_env("HOST", "127.0.0.1")
        self.port = _get_int_env("PORT", 8000)

        self.log_level = _get_optional_env("LOG_LEVEL", "INFO").upper()

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ConfigurationError(
                f"Invalid LOG_LEVEL: {self.log_level}"
            )


# ============================================================================
# MAIN CONFIGURATION CLASS
# ============================================================================

class Config:
    """
    Main configuration container.
    Loads and validates all configuration on initialization.
    """

    def __init__(self):
        """
        Initialize and validate all configuration.

        Raises:
            ConfigurationError: If any required configuration is missing or invalid
        """
        try:
            self.terminal = TerminalConfig()
            self.backend = BackendConfig()
            self.realtime = RealtimeConfig()
            self.offline = OfflineConfig()
            self.storage = StorageConfig()
            self.features = FeatureFlags()
            self.server = ServerConfig()

            logger.info("Configuration loaded and validated successfully")

        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error loading configuration: {str(e)}")
            raise ConfigurationError(f"Configuration initialization failed: {str(e)}")

    def get_safe_summary(self) -> Dict[str, Any]:
        """
        Get safe configuration summary (no secrets).

        Returns:
            Dictionary with non-sensitive configuration
        """
        return {
            "outlet_id": self.terminal.outlet_id,
            "staff_id": self.terminal.staff_id,
            "terminal_id": self.terminal.terminal_id,
            "has_auth_token": bool(self.terminal.auth_token),
            "tax_rate": self.terminal.tax_rate,
            "api_url": self.backend.api_url,
            "ws_url": self.backend.ws_url,
            "realtime": {
                "reconnect_attempts": self.realtime.reconnect_attempts,
                "reconnect_delay": self.realtime.reconnect_delay,
                "backoff_factor": self.realtime.backoff_factor,
                "heartbeat_interval": self.realtime.heartbeat_interval,
            },
            "offline": {
                "storage_limit": self.offline.storage_limit,
                "probe_interval": self.offline.probe_interval,
            },
            "features": {
                "offline_mode": self.features.enable_offline_mode,
                "real_time_updates": self.features.enable_real_time_updates,
                "connectivity_probe": self.features.enable_connectivity_probe,
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "log_level": self.server.log_level,
            },
            "data_dir": str(self.storage.data_dir),
        }


def load_config() -> Config:
    """
    Load configuration from the environment (and .env if present).

    Returns a new instance on every call; the composition root owns it.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    load_environment()
    return Config()


def log_configuration_summary(config: Config):
    """Log a non-sensitive configuration summary at startup."""
    summary = config.get_safe_summary()

    logger.info("Configuration Summary:")
    logger.info(f"  Outlet: {summary['outlet_id']} (terminal {summary['terminal_id']})")
    logger.info(f"  Order API: {summary['api_url']}")
    logger.info(f"  Event channel: {summary['ws_url']}")
    logger.info(f"  Tax rate: {summary['tax_rate']:.2%}")
    logger.info(f"  Data dir: {summary['data_dir']}")

    logger.info("Feature Flags:")
    for feature, enabled in summary['features'].items():
        status = "enabled" if enabled else "disabled"
        logger.info(f"  {feature}: {status}")
