"""
Static configuration for foobot.

Purpose
-------
Load process configuration from environment variables (with `.env` support),
validate it, and freeze it into an immutable `BotSettings` snapshot that the
supervisor passes explicitly to every component.

Responsibilities
----------------
- Load configuration from environment variables with typed helpers
- Track which values came from the environment versus defaults
- Collect every malformed value and fail startup with `ConfigurationError`
- Produce the `BotSettings` snapshot (`Config.to_settings()`)

Non-Responsibilities
--------------------
- Secret storage (use environment variables)
- Runtime reconfiguration (settings are frozen after startup)

Architecture Notes
------------------
- `Config` is a class-level namespace (no instantiation), read only by the
  supervisor. Components never import it; they receive `BotSettings`.
- Unlike a lenient loader, a malformed value is never silently replaced by
  its default: the process refuses to start in an inconsistent state.

Environment Variables
---------------------
Required:
- FOOBOT_NICKNAME: Login name of the bot account
- FOOBOT_OAUTH_TOKEN: OAuth token (with or without ``oauth:`` prefix)
- DATABASE_URL: SQLAlchemy async DSN

Optional (with defaults):
- FOOBOT_ENDPOINT: Chat endpoint (default: ircs://irc.chat.twitch.tv:6697)
- FOOBOT_CHANNELS: Comma separated channels to join
- FOOBOT_PREFIX: Default command prefix (default: "!")
- FOOBOT_CHANNEL_PREFIXES: Per-channel prefixes, ``chan=prefix,chan2=?``
- TEMPLATE_DIR: Template directory (default: <project>/templates)
- HEARTBEAT_INTERVAL / HEARTBEAT_TIMEOUT / AUTH_TIMEOUT (seconds)
- RECONNECT_BACKOFF_BASE / RECONNECT_BACKOFF_MAX / RECONNECT_JITTER
- HANDLER_TIMEOUT, MAX_CONCURRENT_HANDLERS
- OUTBOUND_QUEUE_MAX, OUTBOUND_SEND_INTERVAL, ORDERED_REPLIES
- ENVIRONMENT, LOG_LEVEL, LOG_JSON, LOGS_DIR
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from dotenv import load_dotenv

from foobot.core.exceptions import ConfigurationError

load_dotenv()

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Environment(Enum):
    """Deployment environment types."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"

    @classmethod
    def from_string(cls, value: str) -> "Environment":
        try:
            return cls(value.lower())
        except ValueError:
            logging.warning(f"Unknown environment '{value}', defaulting to development")
            return cls.DEVELOPMENT


# ============================================================================
# Immutable settings snapshot
# ============================================================================


@dataclass(frozen=True)
class Credentials:
    """Login credentials for the chat endpoint."""

    nickname: str
    token: str

    @property
    def password(self) -> str:
        """Token in the ``oauth:`` form expected by the PASS command."""
        return self.token if self.token.startswith("oauth:") else f"oauth:{self.token}"

    def __repr__(self) -> str:
        return f"Credentials(nickname={self.nickname!r}, token='***')"


@dataclass(frozen=True)
class Endpoint:
    """Parsed chat endpoint address."""

    host: str
    port: int
    tls: bool

    @classmethod
    def parse(cls, url: str) -> "Endpoint":
        """
        Parse ``irc://host:port`` or ``ircs://host:port``.

        Raises
        ------
        ConfigurationError
            If the scheme is unknown or the host is missing.
        """
        parts = urlsplit(url)
        if parts.scheme not in ("irc", "ircs"):
            raise ConfigurationError("FOOBOT_ENDPOINT", f"unsupported scheme in {url!r}")
        if not parts.hostname:
            raise ConfigurationError("FOOBOT_ENDPOINT", f"missing host in {url!r}")
        tls = parts.scheme == "ircs"
        try:
            port = parts.port or (6697 if tls else 6667)
        except ValueError as exc:
            raise ConfigurationError("FOOBOT_ENDPOINT", str(exc)) from exc
        return cls(host=parts.hostname, port=port, tls=tls)

    def __str__(self) -> str:
        return f"{'ircs' if self.tls else 'irc'}://{self.host}:{self.port}"


@dataclass(frozen=True)
class BotSettings:
    """
    Opaque configuration object handed from the supervisor to each component.

    Durations are in seconds.
    """

    endpoint: Endpoint
    credentials: Credentials
    store_dsn: str
    template_dir: Path
    channels: Tuple[str, ...] = ()
    default_prefix: str = "!"
    channel_prefixes: Mapping[str, str] = field(default_factory=dict)
    super_users: frozenset = frozenset()

    heartbeat_interval: float = 60.0
    heartbeat_timeout: float = 10.0
    auth_timeout: float = 10.0
    connect_timeout: float = 10.0
    reconnect_backoff_base: float = 1.0
    reconnect_backoff_max: float = 300.0
    reconnect_jitter: float = 0.2
    max_auth_failures: Optional[int] = None

    handler_timeout: float = 30.0
    max_concurrent_handlers: int = 32
    ordered_replies: bool = True

    outbound_queue_max: int = 100
    outbound_send_interval: float = 1.0

    store_pool_size: int = 5
    store_max_overflow: int = 10
    store_echo: bool = False

    def prefix_for(self, channel: str) -> str:
        return self.channel_prefixes.get(channel, self.default_prefix)


# ============================================================================
# Configuration Metrics Tracker
# ============================================================================


class _ConfigLoadMetrics:
    """Tracks which values came from the environment and which were invalid."""

    def __init__(self) -> None:
        self.env_vars_loaded: Dict[str, bool] = {}
        self.validation_errors: Dict[str, str] = {}
        self.last_reload: Optional[str] = None

    def record_env_load(self, key: str, from_env: bool) -> None:
        self.env_vars_loaded[key] = from_env

    def record_validation_error(self, key: str, error: str) -> None:
        self.validation_errors[key] = error

    def get_summary(self) -> Dict[str, Any]:
        return {
            "total_configs": len(self.env_vars_loaded),
            "from_environment": sum(1 for v in self.env_vars_loaded.values() if v),
            "from_defaults": sum(1 for v in self.env_vars_loaded.values() if not v),
            "validation_errors": len(self.validation_errors),
            "last_reload": self.last_reload,
        }


# ============================================================================
# Main Configuration Class
# ============================================================================


class Config:
    """
    Centralized static configuration for foobot.

    Usage
    -----
    >>> Config.validate()
    >>> settings = Config.to_settings()
    >>> settings.heartbeat_interval
    60.0
    """

    _metrics: Optional[_ConfigLoadMetrics] = None
    _validated: bool = False

    # =========================================================================
    # Chat Endpoint
    # =========================================================================

    ENDPOINT: str = "ircs://irc.chat.twitch.tv:6697"
    NICKNAME: str = ""
    OAUTH_TOKEN: str = ""
    CHANNELS: List[str] = []
    PREFIX: str = "!"
    CHANNEL_PREFIXES: Dict[str, str] = {}
    SUPER_USERS: List[str] = []

    # =========================================================================
    # Store
    # =========================================================================

    DATABASE_URL: str = ""
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    # =========================================================================
    # Session Timing
    # =========================================================================

    HEARTBEAT_INTERVAL: float = 60.0
    HEARTBEAT_TIMEOUT: float = 10.0
    AUTH_TIMEOUT: float = 10.0
    CONNECT_TIMEOUT: float = 10.0
    RECONNECT_BACKOFF_BASE: float = 1.0
    RECONNECT_BACKOFF_MAX: float = 300.0
    RECONNECT_JITTER: float = 0.2
    MAX_AUTH_FAILURES: Optional[int] = None

    # =========================================================================
    # Dispatch / Outbound
    # =========================================================================

    HANDLER_TIMEOUT: float = 30.0
    MAX_CONCURRENT_HANDLERS: int = 32
    ORDERED_REPLIES: bool = True
    OUTBOUND_QUEUE_MAX: int = 100
    OUTBOUND_SEND_INTERVAL: float = 1.0

    # =========================================================================
    # Environment / Directories
    # =========================================================================

    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: Optional[bool] = None
    LOGS_DIR: Path = PROJECT_ROOT / "logs"
    TEMPLATE_DIR: Path = PROJECT_ROOT / "templates"
    SUPERVISOR_RESTART_DELAY: float = 5.0

    # =========================================================================
    # Helper Methods
    # =========================================================================

    @classmethod
    def _init_metrics(cls) -> _ConfigLoadMetrics:
        if cls._metrics is None:
            cls._metrics = _ConfigLoadMetrics()
        return cls._metrics

    @classmethod
    def _invalid(cls, key: str, error: str) -> None:
        logging.error(error)
        cls._init_metrics().record_validation_error(key, error)

    @classmethod
    def _safe_int(
        cls,
        key: str,
        default: int,
        min_val: Optional[int] = None,
        max_val: Optional[int] = None,
    ) -> int:
        """
        Parse an integer from the environment.

        An unparsable or out-of-bounds value is recorded as a validation error
        and the default is returned so loading can continue and report every
        problem at once.

        Example
        -------
        >>> Config._safe_int("DATABASE_POOL_SIZE", 5, min_val=1, max_val=200)
        5
        """
        metrics = cls._init_metrics()
        raw_value = os.getenv(key)

        if raw_value is None:
            metrics.record_env_load(key, False)
            return default

        try:
            value = int(raw_value)
        except ValueError:
            cls._invalid(key, f"{key}='{raw_value}' is not a valid integer")
            return default

        if min_val is not None and value < min_val:
            cls._invalid(key, f"{key}={value} is below minimum {min_val}")
            return default
        if max_val is not None and value > max_val:
            cls._invalid(key, f"{key}={value} exceeds maximum {max_val}")
            return default

        metrics.record_env_load(key, True)
        return value

    @classmethod
    def _safe_optional_int(cls, key: str, min_val: int = 1) -> Optional[int]:
        if os.getenv(key) in (None, ""):
            cls._init_metrics().record_env_load(key, False)
            return None
        return cls._safe_int(key, 0, min_val=min_val) or None

    @classmethod
    def _safe_float(
        cls,
        key: str,
        default: float,
        min_val: Optional[float] = None,
    ) -> float:
        """Parse a positive duration or ratio from the environment."""
        metrics = cls._init_metrics()
        raw_value = os.getenv(key)

        if raw_value is None:
            metrics.record_env_load(key, False)
            return default

        try:
            value = float(raw_value)
        except ValueError:
            cls._invalid(key, f"{key}='{raw_value}' is not a valid number")
            return default

        if min_val is not None and value < min_val:
            cls._invalid(key, f"{key}={value} is below minimum {min_val}")
            return default

        metrics.record_env_load(key, True)
        return value

    @classmethod
    def _safe_bool(cls, key: str, default: Optional[bool]) -> Optional[bool]:
        """
        Parse a boolean from the environment.

        Recognizes: true/false, yes/no, 1/0, on/off (case-insensitive).
        """
        metrics = cls._init_metrics()
        raw_value = os.getenv(key)

        if raw_value is None:
            metrics.record_env_load(key, False)
            return default

        normalized = raw_value.lower().strip()
        if normalized in {"true", "yes", "1", "on"}:
            value = True
        elif normalized in {"false", "no", "0", "off"}:
            value = False
        else:
            cls._invalid(key, f"{key}='{raw_value}' is not a valid boolean")
            return default

        metrics.record_env_load(key, True)
        return value

    @classmethod
    def _safe_str(cls, key: str, default: str, required: bool = False) -> str:
        metrics = cls._init_metrics()
        value = os.getenv(key, default).strip()
        metrics.record_env_load(key, key in os.environ)

        if required and not value:
            cls._invalid(key, f"Required environment variable {key} is not set")

        return value

    @classmethod
    def _safe_list(cls, key: str) -> List[str]:
        raw = cls._safe_str(key, "")
        return [item.strip().lstrip("#").lower() for item in raw.split(",") if item.strip()]

    @classmethod
    def _safe_mapping(cls, key: str) -> Dict[str, str]:
        """Parse ``name=value,name2=value2``."""
        result: Dict[str, str] = {}
        for item in cls._safe_list_raw(key):
            name, sep, value = item.partition("=")
            if not sep or not name.strip() or not value.strip():
                cls._invalid(key, f"{key} entry '{item}' is not of the form name=value")
                continue
            result[name.strip().lstrip("#").lower()] = value.strip()
        return result

    @classmethod
    def _safe_list_raw(cls, key: str) -> List[str]:
        raw = cls._safe_str(key, "")
        return [item.strip() for item in raw.split(",") if item.strip()]

    # =========================================================================
    # Configuration Loading
    # =========================================================================

    @classmethod
    def load(cls) -> None:
        """Load all configuration from environment variables."""
        cls._metrics = _ConfigLoadMetrics()

        cls.ENDPOINT = cls._safe_str("FOOBOT_ENDPOINT", "ircs://irc.chat.twitch.tv:6697")
        cls.NICKNAME = cls._safe_str("FOOBOT_NICKNAME", "", required=True).lower()
        cls.OAUTH_TOKEN = cls._safe_str("FOOBOT_OAUTH_TOKEN", "", required=True)
        cls.CHANNELS = cls._safe_list("FOOBOT_CHANNELS")
        cls.PREFIX = cls._safe_str("FOOBOT_PREFIX", "!")
        cls.CHANNEL_PREFIXES = cls._safe_mapping("FOOBOT_CHANNEL_PREFIXES")
        cls.SUPER_USERS = cls._safe_list("FOOBOT_SUPER_USERS")

        cls.DATABASE_URL = cls._safe_str("DATABASE_URL", "", required=True)
        cls.DATABASE_POOL_SIZE = cls._safe_int("DATABASE_POOL_SIZE", 5, min_val=1, max_val=200)
        cls.DATABASE_MAX_OVERFLOW = cls._safe_int(
            "DATABASE_MAX_OVERFLOW", 10, min_val=0, max_val=200
        )
        cls.DATABASE_ECHO = bool(cls._safe_bool("DATABASE_ECHO", False))

        cls.HEARTBEAT_INTERVAL = cls._safe_float("HEARTBEAT_INTERVAL", 60.0, min_val=0.01)
        cls.HEARTBEAT_TIMEOUT = cls._safe_float("HEARTBEAT_TIMEOUT", 10.0, min_val=0.01)
        cls.AUTH_TIMEOUT = cls._safe_float("AUTH_TIMEOUT", 10.0, min_val=0.01)
        cls.CONNECT_TIMEOUT = cls._safe_float("CONNECT_TIMEOUT", 10.0, min_val=0.01)
        cls.RECONNECT_BACKOFF_BASE = cls._safe_float(
            "RECONNECT_BACKOFF_BASE", 1.0, min_val=0.0
        )
        cls.RECONNECT_BACKOFF_MAX = cls._safe_float("RECONNECT_BACKOFF_MAX", 300.0, min_val=0.0)
        cls.RECONNECT_JITTER = cls._safe_float("RECONNECT_JITTER", 0.2, min_val=0.0)
        cls.MAX_AUTH_FAILURES = cls._safe_optional_int("MAX_AUTH_FAILURES")

        cls.HANDLER_TIMEOUT = cls._safe_float("HANDLER_TIMEOUT", 30.0, min_val=0.01)
        cls.MAX_CONCURRENT_HANDLERS = cls._safe_int(
            "MAX_CONCURRENT_HANDLERS", 32, min_val=1, max_val=1024
        )
        cls.ORDERED_REPLIES = bool(cls._safe_bool("ORDERED_REPLIES", True))
        cls.OUTBOUND_QUEUE_MAX = cls._safe_int("OUTBOUND_QUEUE_MAX", 100, min_val=1)
        cls.OUTBOUND_SEND_INTERVAL = cls._safe_float(
            "OUTBOUND_SEND_INTERVAL", 1.0, min_val=0.0
        )

        cls.ENVIRONMENT = Environment.from_string(
            cls._safe_str("ENVIRONMENT", "development")
        ).value
        cls.LOG_LEVEL = cls._safe_str("LOG_LEVEL", "INFO").upper()
        cls.LOG_JSON = cls._safe_bool("LOG_JSON", None)
        cls.LOGS_DIR = Path(cls._safe_str("LOGS_DIR", str(PROJECT_ROOT / "logs")))
        cls.TEMPLATE_DIR = Path(cls._safe_str("TEMPLATE_DIR", str(PROJECT_ROOT / "templates")))
        cls.SUPERVISOR_RESTART_DELAY = cls._safe_float(
            "SUPERVISOR_RESTART_DELAY", 5.0, min_val=0.0
        )

        cls._metrics.last_reload = datetime.now(timezone.utc).isoformat()

    @classmethod
    def validate(cls) -> None:
        """
        Load and validate configuration.

        Raises
        ------
        ConfigurationError
            On the first invalid key, after every problem has been logged.
        """
        logger = logging.getLogger(__name__)
        cls.load()
        metrics = cls._init_metrics()

        if cls.LOG_LEVEL not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            cls._invalid("LOG_LEVEL", f"LOG_LEVEL='{cls.LOG_LEVEL}' is not a logging level")

        if cls.RECONNECT_BACKOFF_MAX < cls.RECONNECT_BACKOFF_BASE:
            cls._invalid(
                "RECONNECT_BACKOFF_MAX",
                "RECONNECT_BACKOFF_MAX must not be smaller than RECONNECT_BACKOFF_BASE",
            )

        if cls.RECONNECT_JITTER > 1.0:
            cls._invalid("RECONNECT_JITTER", "RECONNECT_JITTER must be between 0 and 1")

        if not cls.PREFIX:
            cls._invalid("FOOBOT_PREFIX", "FOOBOT_PREFIX must not be empty")

        try:
            Endpoint.parse(cls.ENDPOINT)
        except ConfigurationError as exc:
            cls._invalid("FOOBOT_ENDPOINT", exc.message)

        if metrics.validation_errors:
            key, error = next(iter(metrics.validation_errors.items()))
            raise ConfigurationError(key, error)

        if cls.is_production() and "localhost" in cls.DATABASE_URL:
            logger.warning("Production environment using localhost database")

        cls._validated = True
        logger.info(f"Configuration loaded: {metrics.get_summary()}")

    @classmethod
    def to_settings(cls) -> BotSettings:
        """Freeze the loaded configuration into a `BotSettings` snapshot."""
        if not cls._validated:
            cls.validate()

        return BotSettings(
            endpoint=Endpoint.parse(cls.ENDPOINT),
            credentials=Credentials(nickname=cls.NICKNAME, token=cls.OAUTH_TOKEN),
            store_dsn=cls.DATABASE_URL,
            template_dir=cls.TEMPLATE_DIR,
            channels=tuple(cls.CHANNELS),
            default_prefix=cls.PREFIX,
            channel_prefixes=dict(cls.CHANNEL_PREFIXES),
            super_users=frozenset(cls.SUPER_USERS),
            heartbeat_interval=cls.HEARTBEAT_INTERVAL,
            heartbeat_timeout=cls.HEARTBEAT_TIMEOUT,
            auth_timeout=cls.AUTH_TIMEOUT,
            connect_timeout=cls.CONNECT_TIMEOUT,
            reconnect_backoff_base=cls.RECONNECT_BACKOFF_BASE,
            reconnect_backoff_max=cls.RECONNECT_BACKOFF_MAX,
            reconnect_jitter=cls.RECONNECT_JITTER,
            max_auth_failures=cls.MAX_AUTH_FAILURES,
            handler_timeout=cls.HANDLER_TIMEOUT,
            max_concurrent_handlers=cls.MAX_CONCURRENT_HANDLERS,
            ordered_replies=cls.ORDERED_REPLIES,
            outbound_queue_max=cls.OUTBOUND_QUEUE_MAX,
            outbound_send_interval=cls.OUTBOUND_SEND_INTERVAL,
            store_pool_size=cls.DATABASE_POOL_SIZE,
            store_max_overflow=cls.DATABASE_MAX_OVERFLOW,
            store_echo=cls.DATABASE_ECHO,
        )

    # =========================================================================
    # Environment Checks
    # =========================================================================

    @classmethod
    def is_production(cls) -> bool:
        return cls.ENVIRONMENT.lower() == "production"

    @classmethod
    def get_metrics(cls) -> Optional[_ConfigLoadMetrics]:
        return cls._metrics

    @classmethod
    def get_config_summary(cls) -> Dict[str, Any]:
        """Non-sensitive configuration summary for startup logs."""
        return {
            "environment": cls.ENVIRONMENT,
            "log_level": cls.LOG_LEVEL,
            "endpoint": cls.ENDPOINT,
            "channels": list(cls.CHANNELS),
            "nickname": cls.NICKNAME,
            "oauth_token_set": bool(cls.OAUTH_TOKEN),
            "database_url_set": bool(cls.DATABASE_URL),
            "template_dir": str(cls.TEMPLATE_DIR),
        }
