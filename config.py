# --- FILE: config.py ---
import os
import logging
import threading
from typing import Any, Dict, List, Literal, Optional

from dotenv import load_dotenv, find_dotenv
from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger(__name__)

APP_VERSION = "0.1.0"


class AppSettings(BaseSettings):
    app_env: Literal["development", "production"] = Field("development", alias="APP_ENV")
    port: int = Field(3978, alias="PORT", gt=0, lt=65536)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field("INFO", alias="LOG_LEVEL")

    # API Endpoints
    bot_api_messages_endpoint: str = Field("/api/messages", alias="BOT_API_MESSAGES_ENDPOINT")
    bot_api_healthcheck_endpoint: str = Field("/api/healthz", alias="BOT_API_HEALTHCHECK_ENDPOINT")

    MicrosoftAppId: Optional[str] = Field(None, alias="MICROSOFT_APP_ID")
    MicrosoftAppPassword: Optional[str] = Field(None, alias="MICROSOFT_APP_PASSWORD")
    MicrosoftAppTenantId: Optional[str] = Field(None, alias="MICROSOFT_APP_TENANT_ID")
    MicrosoftAppType: Optional[str] = Field(None, alias="MICROSOFT_APP_TYPE")

    # Storage
    memory_type: Literal["memory", "redis"] = Field("memory", alias="MEMORY_TYPE")
    redis_url: Optional[str] = Field(None, alias="REDIS_URL")
    redis_host: Optional[str] = Field(None, alias="REDIS_HOST")
    redis_port: Optional[int] = Field(6379, alias="REDIS_PORT")
    redis_password: Optional[str] = Field(None, alias="REDIS_PASSWORD")
    redis_db: int = Field(0, alias="REDIS_DB")
    redis_ssl_enabled: bool = Field(False, alias="REDIS_SSL_ENABLED")
    redis_prefix: str = Field("agentstate:", alias="REDIS_PREFIX")

    # Turn behaviour
    start_typing_timer: bool = Field(False, alias="START_TYPING_TIMER")
    long_running_messages: bool = Field(False, alias="LONG_RUNNING_MESSAGES")

    # Comma separated auth handler ids, e.g. "GRAPH,GITHUB"
    auth_handlers: str = Field("", alias="AUTH_HANDLERS")

    @field_validator("auth_handlers", mode="before")
    @classmethod
    def _normalize_auth_handlers(cls, v: Any) -> str:
        if v is None:
            return ""
        if isinstance(v, (list, tuple)):
            items = v
        else:
            items = str(v).split(",")
        seen: List[str] = []
        for item in items:
            item = str(item).strip()
            if item and item not in seen:
                seen.append(item)
        return ",".join(seen)

    @model_validator(mode='after')
    def check_redis_config_if_needed(self) -> 'AppSettings':
        if self.memory_type == "redis":
            if self.redis_url:
                if not str(self.redis_url).strip(): raise ValueError("REDIS_URL is set but empty.")
                log.info(f"Using REDIS_URL for Redis connection: {self.redis_url}")
            elif not self.redis_host: raise ValueError("REDIS_HOST must be set if REDIS_URL is not provided and memory_type is 'redis'.")
        return self

    model_config = SettingsConfigDict(
        env_file=find_dotenv(), # Automatically find and load .env
        env_file_encoding='utf-8',
        extra='ignore',
        case_sensitive=False,
        populate_by_name=True,
    )

    @property
    def auth_handler_ids(self) -> List[str]:
        return [h for h in self.auth_handlers.split(",") if h]


class Config:
    """
    Main configuration class that wraps AppSettings and provides a unified interface
    for accessing all application configuration values.
    """

    def __init__(self, env_file: Optional[str] = None):
        # An explicit env file (e.g. for tests) overrides what AppSettings finds itself.
        if env_file and os.path.exists(env_file):
            if load_dotenv(env_file, override=True):
                log.info(f"Config explicitly loaded .env file: {env_file}")

        try:
            self.settings = AppSettings()
            log.info("AppSettings initialized within Config object.")
        except ValidationError as e:
            log.error(f"AppSettings validation failed within Config: {e}")
            raise

        self._log_config_summary()

    def _log_config_summary(self):
        """Log a summary of the loaded configuration."""
        log.info("=== Configuration Summary ===")
        log.info(f"Environment: {self.settings.app_env}")
        log.info(f"Port: {self.settings.port}")
        log.info(f"Log Level: {self.settings.log_level}")
        log.info(f"Memory Type: {self.settings.memory_type}")
        log.info(f"App Id configured: {bool(self.settings.MicrosoftAppId)}")
        if self.settings.auth_handler_ids:
            log.info(f"Auth Handlers: {', '.join(self.settings.auth_handler_ids)}")
        else:
            log.info("No auth handlers configured")
        log.info("=============================")

    @property
    def APP_ENV(self) -> str:
        return self.settings.app_env

    @property
    def PORT(self) -> int:
        return self.settings.port

    @property
    def LOG_LEVEL(self) -> str:
        return self.settings.log_level

    @property
    def BOT_API_MESSAGES_ENDPOINT(self) -> str:
        return self.settings.bot_api_messages_endpoint

    @property
    def BOT_API_HEALTHCHECK_ENDPOINT(self) -> str:
        return self.settings.bot_api_healthcheck_endpoint

    @property
    def MICROSOFT_APP_ID(self) -> Optional[str]:
        return self.settings.MicrosoftAppId

    @property
    def MICROSOFT_APP_PASSWORD(self) -> Optional[str]:
        return self.settings.MicrosoftAppPassword

    @property
    def MICROSOFT_APP_TENANT_ID(self) -> Optional[str]:
        return self.settings.MicrosoftAppTenantId

    @property
    def MICROSOFT_APP_TYPE(self) -> Optional[str]:
        return self.settings.MicrosoftAppType

    @property
    def MEMORY_TYPE(self) -> str:
        return self.settings.memory_type

    @property
    def START_TYPING_TIMER(self) -> bool:
        return self.settings.start_typing_timer

    @property
    def LONG_RUNNING_MESSAGES(self) -> bool:
        return self.settings.long_running_messages

    @property
    def AUTH_HANDLERS(self) -> List[str]:
        return self.settings.auth_handler_ids

    def health_check(self) -> Dict[str, Any]:
        return {
            "status": "OK",
            "version": APP_VERSION,
            "environment": self.settings.app_env,
            "memory_type": self.settings.memory_type,
        }


# Global configuration instance
_config_instance: Optional[Config] = None
_config_lock = threading.Lock()


def get_config(env_file: Optional[str] = None, force_reload: bool = False) -> Config:
    """
    Get the global configuration instance (singleton pattern).

    Args:
        env_file: Optional path to a .env file to load (only used on first initialization)
        force_reload: Force reloading the configuration (useful for testing)

    Returns:
        The global Config instance
    """
    global _config_instance

    with _config_lock:
        if _config_instance is None or force_reload:
            try:
                _config_instance = Config(env_file=env_file)
                log.info("Global configuration instance initialized")
            except Exception as e:
                log.error(f"Failed to initialize global configuration: {e}")
                raise

        return _config_instance


def reload_config(env_file: Optional[str] = None) -> Config:
    """
    Force reload the global configuration instance.
    Useful when environment variables have changed.
    """
    return get_config(env_file=env_file, force_reload=True)
