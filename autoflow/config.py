"""Configuration management for the automation engine."""

import os
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum


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


class MessagingProvider(str, Enum):
    """Outbound messaging backends."""
    WHATSAPP_CLOUD = "whatsapp_cloud"
    DRY_RUN = "dry_run"


class RetryMode(str, Enum):
    """Node failure handling."""
    NONE = "none"
    BACKOFF = "backoff"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Autoflow", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(default="sqlite:///./autoflow.db", description="Database connection URL")
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Execution settings
    max_steps_per_run: int = Field(default=1000, description="Maximum nodes executed by one start or resume call")
    trigger_workers: int = Field(default=1, description="Threads used to evaluate workflows for one event")
    retry_mode: RetryMode = Field(default=RetryMode.NONE, description="How failed nodes are handled")
    retry_max_attempts: int = Field(default=3, description="Node retries before an execution fails")
    retry_base_delay: float = Field(default=60.0, description="First retry delay in seconds")
    retry_max_delay: float = Field(default=3600.0, description="Upper bound on retry delay in seconds")

    # Scheduler settings
    scheduler_enabled: bool = Field(default=True, description="Run the resumption scheduler in the background")
    scheduler_interval: float = Field(default=30.0, description="Seconds between resumption sweeps")
    scheduler_batch_size: int = Field(default=100, description="Executions fetched per sweep query")
    schedule_max_contacts: int = Field(default=1000, description="Contacts targeted per scheduled workflow run")

    # Messaging settings
    messaging_provider: MessagingProvider = Field(default=MessagingProvider.WHATSAPP_CLOUD,
                                                  description="Outbound messaging backend")
    whatsapp_api_url: str = Field(default="https://graph.facebook.com/v18.0", description="WhatsApp Graph API root")
    whatsapp_timeout: float = Field(default=30.0, description="WhatsApp request timeout in seconds")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_structured: bool = Field(default=False, description="Emit JSON log lines")
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")

    # Security settings
    cors_origins: list = Field(default=["*"], description="CORS allowed origins")
    cors_methods: list = Field(default=["GET", "POST", "PUT", "DELETE"], description="CORS allowed methods")

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

    @field_validator('max_steps_per_run', 'trigger_workers', 'scheduler_batch_size', 'schedule_max_contacts')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('scheduler_interval', 'retry_base_delay', 'retry_max_delay', 'whatsapp_timeout')
    @classmethod
    def validate_durations(cls, v):
        if v <= 0:
            raise ValueError("Duration must be positive")
        return v

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

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return not self.debug and not self.reload

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False}
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

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from AUTOFLOW_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"AUTOFLOW_{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return value.split(',') if value else default
            return type_func(value)

        return cls(
            app_name=get_env("APP_NAME", "Autoflow"),
            app_version=get_env("APP_VERSION", "1.0.0"),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", "0.0.0.0"),
            port=get_env("PORT", 8000, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", "sqlite:///./autoflow.db"),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            max_steps_per_run=get_env("MAX_STEPS_PER_RUN", 1000, int),
            trigger_workers=get_env("TRIGGER_WORKERS", 1, int),
            retry_mode=RetryMode(get_env("RETRY_MODE", "none")),
            retry_max_attempts=get_env("RETRY_MAX_ATTEMPTS", 3, int),
            retry_base_delay=get_env("RETRY_BASE_DELAY", 60.0, float),
            retry_max_delay=get_env("RETRY_MAX_DELAY", 3600.0, float),
            scheduler_enabled=get_env("SCHEDULER_ENABLED", True, bool),
            scheduler_interval=get_env("SCHEDULER_INTERVAL", 30.0, float),
            scheduler_batch_size=get_env("SCHEDULER_BATCH_SIZE", 100, int),
            schedule_max_contacts=get_env("SCHEDULE_MAX_CONTACTS", 1000, int),
            messaging_provider=MessagingProvider(get_env("MESSAGING_PROVIDER", "whatsapp_cloud")),
            whatsapp_api_url=get_env("WHATSAPP_API_URL", "https://graph.facebook.com/v18.0"),
            whatsapp_timeout=get_env("WHATSAPP_TIMEOUT", 30.0, float),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
            log_structured=get_env("LOG_STRUCTURED", False, bool),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", 10485760, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", 5, int),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
            cors_methods=get_env("CORS_METHODS", ["GET", "POST", "PUT", "DELETE"], list),
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
    """Load configuration from a .env file and environment variables."""
    global _config

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

    if config.is_sqlite and ":memory:" not in config.database_url:
        db_path = config.database_url.replace("sqlite:///", "")
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except Exception as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except Exception as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.retry_base_delay > config.retry_max_delay:
        errors.append("Retry base delay cannot exceed retry max delay")

    if config.trigger_workers > 32:
        errors.append("Warning: High trigger worker count may exhaust database connections")

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
        messaging_provider=MessagingProvider.DRY_RUN,
    )


def get_production_config() -> AppConfig:
    """Get production configuration."""
    return AppConfig(
        debug=False,
        reload=False,
        log_level=LogLevel.INFO,
        log_structured=True,
        database_echo=False,
        cors_origins=[]  # Restrict CORS in production
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        scheduler_enabled=False,
        messaging_provider=MessagingProvider.DRY_RUN,
    )
