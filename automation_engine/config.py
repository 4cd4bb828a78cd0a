"""Configuration management for the Automation Engine."""

import os
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field, field_validator
from enum import Enum

from .models.core import BusinessHours, WorkflowSettings


ENV_PREFIX = "AUTOMATION_ENGINE_"

DEFAULT_STOP_KEYWORDS = ["STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"]
DEFAULT_AI_MODELS = ["gpt-3.5-turbo", "gpt-4", "claude-3-sonnet"]


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DatabaseType(str, Enum):
    """Supported database types."""
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"


class OrganizationPolicy(BaseModel):
    """Organization-wide policy handed to executors with every dispatch."""
    business_hours: BusinessHours = Field(default_factory=BusinessHours, description="Business hours window")
    ai_models: List[str] = Field(default_factory=lambda: list(DEFAULT_AI_MODELS), description="Allowed AI models")
    webhook_allowed_schemes: List[str] = Field(default_factory=lambda: ["https", "http"], description="Allowed webhook schemes")


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Automation Engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./automation_engine.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Scheduler settings
    scheduler_enabled: bool = Field(default=True, description="Run the background sweep loop")
    scheduler_interval_seconds: float = Field(default=60.0, description="Seconds between sweeps")
    scheduler_batch_size: int = Field(default=100, description="Maximum enrollments claimed per sweep")
    lease_seconds: int = Field(default=300, description="Lease duration for a claimed enrollment")
    max_dispatch_workers: int = Field(default=10, description="Concurrent enrollment dispatches per sweep")
    max_steps_per_dispatch: int = Field(
        default=25,
        description="Maximum nodes executed back to back for one enrollment"
    )

    # Retry settings
    retry_base_seconds: float = Field(default=60.0, description="Base delay for exponential backoff")
    max_retry_attempts: int = Field(default=3, description="Attempts before a node is marked failed")
    external_call_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for each messaging, webhook or AI call"
    )

    # Policy settings
    webhook_allowed_schemes: List[str] = Field(default=["https", "http"], description="Allowed webhook URL schemes")
    ai_allowed_models: List[str] = Field(default=list(DEFAULT_AI_MODELS), description="AI model allow-list")
    stop_keywords: List[str] = Field(default=list(DEFAULT_STOP_KEYWORDS), description="Opt-out keywords")
    max_condition_depth: int = Field(default=5, description="Maximum nesting depth of condition groups")
    business_start_hour: int = Field(default=9, description="Default business day start hour")
    business_end_hour: int = Field(default=17, description="Default business day end hour")
    business_days: List[int] = Field(default=[0, 1, 2, 3, 4], description="Default business weekdays, Monday=0")
    timezone: str = Field(default="UTC", description="Default organization timezone")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    # Health check settings
    health_check_timeout: float = Field(
        default=5.0,
        description="Health check timeout in seconds"
    )

    # Performance monitoring settings
    slow_request_threshold: float = Field(
        default=5.0,
        description="Slow request threshold in seconds"
    )
    enable_performance_monitoring: bool = Field(
        default=True,
        description="Enable performance monitoring middleware"
    )

    # Security settings
    cors_origins: list = Field(
        default=["*"],
        description="CORS allowed origins"
    )
    cors_methods: list = Field(
        default=["GET", "POST", "PUT", "DELETE"],
        description="CORS allowed methods"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].lower().split('+')[0]

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('scheduler_batch_size', 'max_dispatch_workers', 'max_steps_per_dispatch', 'max_retry_attempts')
    @classmethod
    def validate_positive(cls, v):
        """Validate scheduler limits."""
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('lease_seconds', 'external_call_timeout', 'scheduler_interval_seconds')
    @classmethod
    def validate_timeouts(cls, v):
        """Validate timeout values."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @field_validator('stop_keywords')
    @classmethod
    def normalize_stop_keywords(cls, v):
        """Stop keywords are matched case-insensitively."""
        return [keyword.strip().upper() for keyword in v if keyword.strip()]

    @property
    def database_type(self) -> DatabaseType:
        """Get the database type from the URL."""
        scheme = self.database_url.split('://')[0].lower()
        if scheme == 'sqlite':
            return DatabaseType.SQLITE
        elif scheme.startswith('postgresql'):
            return DatabaseType.POSTGRESQL
        elif scheme.startswith('mysql'):
            return DatabaseType.MYSQL
        else:
            raise ValueError(f"Unknown database type: {scheme}")

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_type == DatabaseType.SQLITE

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False, "timeout": 30}
        return {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.lower(),
            "access_log": self.debug
        }

    def organization_policy(self, settings: Optional[WorkflowSettings] = None) -> OrganizationPolicy:
        """Build the policy passed to executors, applying workflow overrides."""
        business_hours = BusinessHours(
            start_hour=self.business_start_hour,
            end_hour=self.business_end_hour,
            business_days=self.business_days,
            timezone=self.timezone
        )
        if settings is not None:
            if settings.business_hours is not None:
                business_hours = settings.business_hours
            if settings.timezone:
                business_hours = business_hours.model_copy(update={"timezone": settings.timezone})

        return OrganizationPolicy(
            business_hours=business_hours,
            ai_models=list(self.ai_allowed_models),
            webhook_allowed_schemes=list(self.webhook_allowed_schemes)
        )

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return [item.strip() for item in value.split(',')] if value else default
            return type_func(value)

        business_days = get_env("BUSINESS_DAYS", None, list)

        return cls(
            app_name=get_env("APP_NAME", "Automation Engine"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./automation_engine.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            scheduler_enabled=get_env("SCHEDULER_ENABLED", True, bool),
            scheduler_interval_seconds=get_env("SCHEDULER_INTERVAL_SECONDS", 60.0, float),
            scheduler_batch_size=get_env("SCHEDULER_BATCH_SIZE", 100, int),
            lease_seconds=get_env("LEASE_SECONDS", 300, int),
            max_dispatch_workers=get_env("MAX_DISPATCH_WORKERS", 10, int),
            max_steps_per_dispatch=get_env("MAX_STEPS_PER_DISPATCH", 25, int),
            retry_base_seconds=get_env("RETRY_BASE_SECONDS", 60.0, float),
            max_retry_attempts=get_env("MAX_RETRY_ATTEMPTS", 3, int),
            external_call_timeout=get_env("EXTERNAL_CALL_TIMEOUT", 30.0, float),
            webhook_allowed_schemes=get_env("WEBHOOK_ALLOWED_SCHEMES", ["https", "http"], list),
            ai_allowed_models=get_env("AI_ALLOWED_MODELS", list(DEFAULT_AI_MODELS), list),
            stop_keywords=get_env("STOP_KEYWORDS", list(DEFAULT_STOP_KEYWORDS), list),
            max_condition_depth=get_env("MAX_CONDITION_DEPTH", 5, int),
            business_start_hour=get_env("BUSINESS_START_HOUR", 9, int),
            business_end_hour=get_env("BUSINESS_END_HOUR", 17, int),
            business_days=[int(day) for day in business_days] if business_days else [0, 1, 2, 3, 4],
            timezone=get_env("TIMEZONE", "UTC"),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO")),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_file=get_env("LOG_FILE", None),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            health_check_timeout=get_env("HEALTH_CHECK_TIMEOUT", 5.0, float),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", 5.0, float),
            enable_performance_monitoring=get_env("ENABLE_PERFORMANCE_MONITORING", True, bool),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list)
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from file or environment variables."""
    global _config

    # Load .env file if it exists
    if config_file and os.path.exists(config_file):
        from dotenv import load_dotenv
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        from dotenv import load_dotenv
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Validate configuration settings."""
    errors = []

    # Check database connectivity requirements
    if config.is_sqlite and ":memory:" not in config.database_url:
        db_path = config.database_url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    # Validate log file directory
    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    # A lease must outlive the calls made while holding it
    if config.lease_seconds <= config.external_call_timeout:
        errors.append("Lease duration must exceed the external call timeout")

    if config.business_start_hour >= config.business_end_hour:
        errors.append("Business start hour must be before business end hour")

    if errors:
        raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")


# Environment-specific configurations
def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
        scheduler_interval_seconds=10.0,
        enable_performance_monitoring=True
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        log_structured=True,
        database_echo=False,
        enable_performance_monitoring=True,
        cors_origins=[]  # Restrict CORS in production
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        scheduler_enabled=False,
        max_dispatch_workers=2,
        retry_base_seconds=60.0,
        external_call_timeout=5.0,
        lease_seconds=60
    )
