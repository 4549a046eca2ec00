import logging
from pathlib import Path
from typing import Dict, Literal, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import AliasChoices, BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigError

# --- Base Path ---
BASE_DIR = Path(__file__).resolve().parent.parent
logger = logging.getLogger(__name__)

# Provider tag -> AppSettings attribute holding its API key.
_API_KEY_FIELDS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "grok": "XAI_API_KEY",
    "perplexity": "PERPLEXITY_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "requesty": "REQUESTY_API_KEY",
}

# --- Environment-based Settings ---

class AppSettings(BaseSettings):
    """
    Main application settings loaded from environment variables.
    The .env file is loaded automatically by pydantic-settings.
    """
    model_config = SettingsConfigDict(
        env_file='.env', env_file_encoding='utf-8', extra='ignore', populate_by_name=True
    )

    # --- General & Core ---
    LOG_LEVEL: str = Field("INFO", description="Log level for the application (e.g., DEBUG, INFO, WARNING, ERROR)")
    LOG_FILE: Optional[str] = Field(None, description="Optional: Path of a rotating JSON log file.")
    GATEWAY_CONFIG_PATH: Optional[str] = Field(None, description="Optional: Path to the gateway YAML configuration file.")
    METRICS_PORT: Optional[int] = Field(None, description="Optional: Expose Prometheus metrics on this localhost port.")

    # --- Provider API keys ---
    OPENAI_API_KEY: Optional[str] = Field(None)
    ANTHROPIC_API_KEY: Optional[str] = Field(None)
    GOOGLE_API_KEY: Optional[str] = Field(None, validation_alias=AliasChoices("GOOGLE_API_KEY", "GEMINI_API_KEY"))
    MISTRAL_API_KEY: Optional[str] = Field(None)
    GROQ_API_KEY: Optional[str] = Field(None)
    XAI_API_KEY: Optional[str] = Field(None, validation_alias=AliasChoices("XAI_API_KEY", "GROK_API_KEY"))
    PERPLEXITY_API_KEY: Optional[str] = Field(None)
    OPENROUTER_API_KEY: Optional[str] = Field(None)
    REQUESTY_API_KEY: Optional[str] = Field(None)

    def api_key_for(self, provider: str) -> Optional[str]:
        field = _API_KEY_FIELDS.get(provider)
        return getattr(self, field) if field else None

# --- YAML-based Configuration Models ---

class CacheConfig(BaseModel):
    backend: Literal["memory", "file"] = "memory"
    max_size: int = Field(1000, gt=0)
    default_ttl: float = Field(3600.0, gt=0, description="Entry lifetime in seconds.")
    persist_to_disk: bool = False
    cache_dir: str = ".cache/llmgate"

class RetryConfig(BaseModel):
    max_attempts: int = Field(3, ge=1)
    base_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(30.0, ge=0)
    exponential_base: float = Field(2.0, ge=1)
    jitter: bool = True

class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = Field(5, ge=1)
    reset_timeout: float = Field(60.0, ge=0)
    monitoring_period: float = Field(120.0, gt=0)

class RateLimitConfig(BaseModel):
    limit: int = Field(60, ge=1)
    window: float = Field(60.0, gt=0)

class GatewayConfig(BaseModel):
    cache: CacheConfig = Field(default_factory=CacheConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    rate_limits: Dict[str, RateLimitConfig] = Field(
        default_factory=dict, description="Per-provider overrides of rate_limit."
    )

    def rate_limit_for(self, provider: str) -> RateLimitConfig:
        return self.rate_limits.get(provider, self.rate_limit)

# --- Loaders ---

def load_env(path: Optional[Union[str, Path]] = None) -> bool:
    """Loads a .env file into os.environ without overriding existing variables."""
    env_path = Path(path) if path else BASE_DIR / '.env'
    return load_dotenv(env_path, override=False)

def load_config(path: Optional[Union[str, Path]] = None) -> GatewayConfig:
    """Loads a YAML file and validates it as a GatewayConfig. No path means defaults."""
    if path is None:
        return GatewayConfig()
    config_path = Path(path)
    if not config_path.is_absolute() and not config_path.exists():
        config_path = BASE_DIR / config_path
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read configuration file {config_path}: {e}") from e
    try:
        return GatewayConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e

# --- Global Settings Instance ---
_settings_instance: Optional[AppSettings] = None

def get_settings() -> AppSettings:
    """
    Returns a singleton instance of AppSettings.
    Settings are read on first call rather than at import, which keeps
    tests free to patch the environment beforehand.
    """
    global _settings_instance
    if _settings_instance is None:
        try:
            _settings_instance = AppSettings()
        except ValidationError as e:
            logger.critical(f"Configuration validation error: {e}")
            raise ConfigError(str(e)) from e
    return _settings_instance

def reset_settings() -> None:
    global _settings_instance
    _settings_instance = None
